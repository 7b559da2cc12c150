"""
Delivery policy tables and tunables.

Every tunable is read from Django settings at call time so tests can
override them with the ``settings`` fixture.

Settings:
    NOTIFICATION_RETRY_BUDGET: Max automatic re-attempts (default 3)
    NOTIFICATION_RETRY_BACKOFF: "exponential" or "linear"
    NOTIFICATION_RETRY_BASE_DELAY_SECONDS: First retry delay (floor 60s)
    NOTIFICATION_RETRY_MAX_DELAY_SECONDS: Backoff cap
    NOTIFICATION_CLAIM_LEASE_SECONDS: In-flight claim lifetime
    NOTIFICATION_HISTORY_RETENTION_DAYS: Terminal row retention window
    NOTIFICATION_SWEEP_BATCH_SIZE: Rows handled per sweep
    NOTIFICATION_DEFAULT_CHANNELS: Channels for users without preferences
"""

from __future__ import annotations

from datetime import timedelta

from django.conf import settings
from django.db.models import Case, IntegerField, Value, When

from notifications.enums import (
    DeliveryChannel,
    DeliveryStatus,
    NotificationCategory,
    NotificationPriority,
)

# Backoff never goes below one minute
MIN_RETRY_DELAY_SECONDS = 60


# =============================================================================
# Policy Tables
# =============================================================================

# Channels each category may use when its NotificationType does not
# list allowed_channels explicitly.
CATEGORY_CHANNEL_POLICY: dict[str, tuple[str, ...]] = {
    NotificationCategory.ACADEMIC: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.EMAIL,
        DeliveryChannel.PUSH,
        DeliveryChannel.SLACK,
        DeliveryChannel.DISCORD,
        DeliveryChannel.WEBHOOK,
    ),
    NotificationCategory.SOCIAL: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.EMAIL,
        DeliveryChannel.PUSH,
    ),
    NotificationCategory.SYSTEM: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.EMAIL,
        DeliveryChannel.PUSH,
        DeliveryChannel.SLACK,
        DeliveryChannel.DISCORD,
        DeliveryChannel.WEBHOOK,
    ),
    NotificationCategory.SECURITY: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.EMAIL,
        DeliveryChannel.PUSH,
        DeliveryChannel.SMS,
    ),
    NotificationCategory.MARKETING: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.EMAIL,
    ),
    NotificationCategory.ADMINISTRATIVE: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.EMAIL,
        DeliveryChannel.SLACK,
        DeliveryChannel.DISCORD,
        DeliveryChannel.WEBHOOK,
    ),
    NotificationCategory.CHAT: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.PUSH,
    ),
    NotificationCategory.VIDEO: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.PUSH,
        DeliveryChannel.SMS,
    ),
    NotificationCategory.FORUM: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.EMAIL,
        DeliveryChannel.PUSH,
    ),
    NotificationCategory.FORUM_REPORT: (
        DeliveryChannel.IN_APP,
        DeliveryChannel.EMAIL,
    ),
}

PRIORITY_RANK: dict[str, int] = {
    NotificationPriority.LOW: 0,
    NotificationPriority.NORMAL: 1,
    NotificationPriority.MEDIUM: 2,
    NotificationPriority.HIGH: 3,
    NotificationPriority.URGENT: 4,
}

# Statuses no automatic process will move a row out of. FAILED is terminal
# only once the row is permanent or out of budget (see NotificationDelivery).
TERMINAL_STATUSES = frozenset(
    {
        DeliveryStatus.DELIVERED,
        DeliveryStatus.OPENED,
        DeliveryStatus.CLICKED,
        DeliveryStatus.BOUNCED,
        DeliveryStatus.UNSUBSCRIBED,
    }
)

# Channels where transport acceptance is final delivery
CONFIRM_ON_ACCEPT_CHANNELS = frozenset(
    {
        DeliveryChannel.IN_APP,
        DeliveryChannel.SLACK,
        DeliveryChannel.DISCORD,
        DeliveryChannel.WEBHOOK,
    }
)


# =============================================================================
# Tunables
# =============================================================================


def retry_budget() -> int:
    return getattr(settings, "NOTIFICATION_RETRY_BUDGET", 3)


def claim_lease() -> timedelta:
    return timedelta(seconds=getattr(settings, "NOTIFICATION_CLAIM_LEASE_SECONDS", 300))


def history_retention() -> timedelta:
    return timedelta(days=getattr(settings, "NOTIFICATION_HISTORY_RETENTION_DAYS", 90))


def sweep_batch_size() -> int:
    return getattr(settings, "NOTIFICATION_SWEEP_BATCH_SIZE", 100)


def default_channels() -> tuple[str, ...]:
    return tuple(
        getattr(settings, "NOTIFICATION_DEFAULT_CHANNELS", [DeliveryChannel.IN_APP])
    )


def compute_backoff(retry_count: int) -> timedelta:
    """
    Delay before the next attempt of a row that has been retried
    ``retry_count`` times.

    exponential: base * 2^retry_count
    linear:      base * (retry_count + 1)

    The result is clamped to [60s, NOTIFICATION_RETRY_MAX_DELAY_SECONDS].
    """
    base = getattr(settings, "NOTIFICATION_RETRY_BASE_DELAY_SECONDS", 60)
    cap = getattr(settings, "NOTIFICATION_RETRY_MAX_DELAY_SECONDS", 3600)
    curve = getattr(settings, "NOTIFICATION_RETRY_BACKOFF", "exponential")

    if curve == "linear":
        seconds = base * (retry_count + 1)
    else:
        seconds = base * (2**retry_count)

    seconds = max(MIN_RETRY_DELAY_SECONDS, min(seconds, max(cap, MIN_RETRY_DELAY_SECONDS)))
    return timedelta(seconds=seconds)


def priority_rank_expression(field: str = "priority") -> Case:
    """ORM expression ranking priorities so querysets can order urgent first."""
    return Case(
        *[When(**{field: priority}, then=Value(rank)) for priority, rank in PRIORITY_RANK.items()],
        default=Value(0),
        output_field=IntegerField(),
    )
