"""
Notification delivery models.

This module defines the models for the notification subsystem:
- NotificationType: Registry of notification types (seeded by migration)
- Notification: Immutable record of a notification for one recipient
- UserChannelPreference: Per-user channels, frequency, quiet hours, addresses
- UserCategoryPreference: Category-level channel overrides
- UserNotificationPreference: Type-level channel overrides
- NotificationDelivery: One tracker row per (notification, channel)
- DigestBatch: One consolidated digest delivery per (user, channel, run)

Design Decisions:
    - Notification types are data, not an enum, so the vocabulary can grow
      without code changes
    - Notification is immutable except for soft deletion (expiry)
    - NotificationDelivery.status is an FSMField; every write to a delivery
      row goes through notifications.locks.compare_and_set with a version check
    - The (notification, channel) pair is unique, making fan-out idempotent

Usage:
    from notifications.models import Notification, NotificationDelivery

    delivery = NotificationDelivery.objects.get(
        notification=notification,
        channel=DeliveryChannel.EMAIL,
    )
    delivery.mark_sent(at=timezone.now(), provider_message_id="abc")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import FSMField, transition

from core.managers import SoftDeleteManager
from core.model_mixins import SoftDeleteMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from notifications.enums import (
    DeliveryChannel,
    DeliveryStatus,
    DigestBatchStatus,
    DigestFrequency,
    NotificationCategory,
    NotificationPriority,
)
from notifications.exceptions import NotificationImmutableError
from notifications.policies import (
    CATEGORY_CHANNEL_POLICY,
    TERMINAL_STATUSES,
    compute_backoff,
    retry_budget,
)

if TYPE_CHECKING:
    from datetime import datetime

    from notifications.exceptions import TransportError

__all__ = [
    "DeliveryChannel",
    "DeliveryStatus",
    "DigestBatch",
    "DigestBatchStatus",
    "DigestFrequency",
    "Notification",
    "NotificationCategory",
    "NotificationDelivery",
    "NotificationPriority",
    "NotificationType",
    "UserCategoryPreference",
    "UserChannelPreference",
    "UserNotificationPreference",
]


# =============================================================================
# Registry
# =============================================================================


class NotificationType(models.Model):
    """
    Registry of notification type definitions.

    Fields:
        key: Unique programmatic identifier (e.g., "grade_posted")
        display_name: Human-readable name for admin display
        category: Category used for channel policy and preferences
        default_priority: Priority used when the caller does not pass one
        allowed_channels: Channels this type may use; empty means the
            category policy from notifications.policies applies
        title_template / body_template: str.format() templates
        is_active: Inactive types reject new notifications
    """

    key = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Unique programmatic identifier (e.g., 'grade_posted')",
    )

    display_name = models.CharField(
        max_length=200,
        help_text="Human-readable name for display",
    )

    category = models.CharField(
        max_length=20,
        choices=NotificationCategory.choices,
        default=NotificationCategory.SYSTEM,
        db_index=True,
    )

    default_priority = models.CharField(
        max_length=10,
        choices=NotificationPriority.choices,
        default=NotificationPriority.NORMAL,
    )

    allowed_channels = models.JSONField(
        default=list,
        blank=True,
        help_text="Channels this type may use (empty = category policy)",
    )

    title_template = models.CharField(
        max_length=500,
        blank=True,
        default="",
        help_text="Python format string for title (e.g., 'Grade posted for {course}')",
    )

    body_template = models.TextField(
        blank=True,
        default="",
        help_text="Python format string for body",
    )

    is_active = models.BooleanField(
        default=True,
        db_index=True,
    )

    class Meta:
        db_table = "notifications_notification_type"
        verbose_name = "notification type"
        verbose_name_plural = "notification types"
        ordering = ["key"]

    def __str__(self) -> str:
        return f"{self.display_name} ({self.key})"

    def get_allowed_channels(self) -> tuple[str, ...]:
        """Channels this type may be delivered on, in canonical order."""
        allowed = set(self.allowed_channels or CATEGORY_CHANNEL_POLICY.get(self.category, ()))
        return tuple(channel for channel in DeliveryChannel.values if channel in allowed)


# =============================================================================
# Notification Store
# =============================================================================


class Notification(UUIDPrimaryKeyMixin, SoftDeleteMixin, BaseModel):
    """
    Individual notification record for a user.

    Notifications are immutable once created. Corrections are new
    notifications. The only permitted change is soft deletion, which the
    retention sweeper applies once expires_at has passed.

    Fields:
        notification_type: Registry entry this notification was built from
        recipient: User receiving the notification
        category: Copied from the type at creation
        priority: Routing priority (URGENT bypasses digests/quiet hours)
        title / body: Fully rendered text
        data: Opaque JSON payload for rendering and deep links
        expires_at: Optional end of life
        idempotency_key: Optional caller key to prevent duplicates
    """

    notification_type = models.ForeignKey(
        NotificationType,
        on_delete=models.PROTECT,
        related_name="notifications",
    )

    recipient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notifications",
        db_index=True,
    )

    category = models.CharField(
        max_length=20,
        choices=NotificationCategory.choices,
        db_index=True,
    )

    priority = models.CharField(
        max_length=10,
        choices=NotificationPriority.choices,
        default=NotificationPriority.NORMAL,
        db_index=True,
    )

    title = models.CharField(max_length=500)

    body = models.TextField(blank=True, default="")

    data = models.JSONField(default=dict, blank=True)

    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When the notification expires (soft-deleted by the retention sweeper)",
    )

    idempotency_key = models.CharField(
        max_length=255,
        null=True,
        blank=True,
    )

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    class Meta:
        db_table = "notifications_notification"
        ordering = ["-created_at"]
        base_manager_name = "all_objects"
        indexes = [
            models.Index(
                fields=["recipient", "-created_at"],
                name="notif_recipient_created_idx",
            ),
            models.Index(
                fields=["is_deleted", "expires_at"],
                name="notif_expiry_idx",
            ),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["idempotency_key"],
                name="notif_idempotency_key_unique",
                condition=models.Q(idempotency_key__isnull=False),
            ),
        ]

    def __str__(self) -> str:
        return f"Notification({self.notification_type_id}) -> User {self.recipient_id}"

    def save(self, *args, **kwargs):
        """Insert, or persist soft-delete fields only."""
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= set(self.SOFT_DELETE_FIELDS):
                raise NotificationImmutableError(
                    f"Notification {self.pk} is immutable",
                    details={"pk": str(self.pk), "update_fields": update_fields},
                )
        super().save(*args, **kwargs)

    @property
    def is_urgent(self) -> bool:
        return self.priority == NotificationPriority.URGENT

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or timezone.now())


# =============================================================================
# Preference Models
# =============================================================================


class UserChannelPreference(BaseModel):
    """
    A user's delivery preferences.

    Written by PreferenceService and read by the dispatch engine only
    through PreferenceResolver. Users without a row get
    NOTIFICATION_DEFAULT_CHANNELS at IMMEDIATE frequency.

    Quiet hours:
        quiet_hours_start/end are local times in ``timezone``. A window
        whose end is earlier than its start wraps midnight.
        quiet_hours_weekdays restricts the window to given weekdays
        (0 = Monday); empty means every day.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        primary_key=True,
        related_name="notification_channel_preference",
    )

    enabled_channels = models.JSONField(
        default=list,
        blank=True,
        help_text="Channels the user receives notifications on",
    )

    frequency = models.CharField(
        max_length=10,
        choices=DigestFrequency.choices,
        default=DigestFrequency.IMMEDIATE,
    )

    digest_max_items = models.PositiveSmallIntegerField(
        default=10,
        help_text="Maximum notifications listed in one digest",
    )

    # Quiet hours
    quiet_hours_enabled = models.BooleanField(default=False)
    quiet_hours_start = models.TimeField(null=True, blank=True)
    quiet_hours_end = models.TimeField(null=True, blank=True)
    quiet_hours_weekdays = models.JSONField(default=list, blank=True)
    timezone = models.CharField(max_length=64, default="UTC")

    # Channel addresses
    phone_number = models.CharField(max_length=32, blank=True, default="")
    device_token = models.CharField(max_length=512, blank=True, default="")
    slack_webhook_url = models.URLField(max_length=500, blank=True, default="")
    discord_webhook_url = models.URLField(max_length=500, blank=True, default="")
    webhook_url = models.URLField(max_length=500, blank=True, default="")

    class Meta:
        db_table = "notifications_user_channel_preference"
        verbose_name = "user channel preference"
        verbose_name_plural = "user channel preferences"

    def __str__(self) -> str:
        channels = ",".join(self.enabled_channels) or "none"
        return f"ChannelPreference(user={self.user_id}, {channels}, {self.frequency})"


class UserCategoryPreference(BaseModel):
    """
    Category-level preference overrides.

    disabled blocks every channel for the category. channels, when set,
    narrows the user's enabled channels for the category.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notification_category_preferences",
    )

    category = models.CharField(
        max_length=20,
        choices=NotificationCategory.choices,
    )

    disabled = models.BooleanField(default=False)

    channels = models.JSONField(
        null=True,
        blank=True,
        help_text="Channel subset for this category (null = inherit)",
    )

    class Meta:
        db_table = "notifications_user_category_preference"
        verbose_name = "user category preference"
        verbose_name_plural = "user category preferences"
        constraints = [
            models.UniqueConstraint(
                fields=["user", "category"],
                name="unique_user_category_pref",
            ),
        ]

    def __str__(self) -> str:
        status = "disabled" if self.disabled else "enabled"
        return f"CategoryPreference(user={self.user_id}, {self.category}={status})"


class UserNotificationPreference(BaseModel):
    """Type-level preference overrides. Same semantics as UserCategoryPreference."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notification_type_preferences",
    )

    notification_type = models.ForeignKey(
        NotificationType,
        on_delete=models.CASCADE,
        related_name="user_preferences",
    )

    disabled = models.BooleanField(default=False)

    channels = models.JSONField(
        null=True,
        blank=True,
        help_text="Channel subset for this type (null = inherit)",
    )

    class Meta:
        db_table = "notifications_user_notification_preference"
        verbose_name = "user notification preference"
        verbose_name_plural = "user notification preferences"
        constraints = [
            models.UniqueConstraint(
                fields=["user", "notification_type"],
                name="unique_user_notif_type_pref",
            ),
        ]

    def __str__(self) -> str:
        status = "disabled" if self.disabled else "enabled"
        return f"TypePreference(user={self.user_id}, type={self.notification_type_id}, {status})"


# =============================================================================
# Digest Batches
# =============================================================================


class DigestBatch(UUIDPrimaryKeyMixin, BaseModel):
    """
    One consolidated digest delivery for a (user, channel) pair.

    Delivery rows are claimed into a batch by the digest aggregator,
    sent with a single transport call, then marked sent together.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notification_digests",
    )

    channel = models.CharField(max_length=20, choices=DeliveryChannel.choices)

    frequency = models.CharField(max_length=10, choices=DigestFrequency.choices)

    status = models.CharField(
        max_length=10,
        choices=DigestBatchStatus.choices,
        default=DigestBatchStatus.OPEN,
        db_index=True,
    )

    window_start = models.DateTimeField(null=True, blank=True)
    window_end = models.DateTimeField()

    notification_count = models.PositiveIntegerField(default=0)

    provider_message_id = models.CharField(max_length=255, null=True, blank=True)
    failure_code = models.CharField(max_length=50, blank=True, default="")
    failure_reason = models.TextField(blank=True, default="")
    sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "notifications_digest_batch"
        verbose_name = "digest batch"
        verbose_name_plural = "digest batches"
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["user", "channel", "-created_at"],
                name="notif_digest_user_chan_idx",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"DigestBatch({self.user_id}, {self.channel}, {self.frequency}, "
            f"{self.notification_count} items, {self.status})"
        )


# =============================================================================
# Delivery Tracker
# =============================================================================


class NotificationDelivery(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks delivery of one notification on one channel.

    State Flow:
        PENDING -> SENT -> DELIVERED -> OPENED -> CLICKED
                        -> BOUNCED
        PENDING/SENT -> FAILED -> PENDING (requeue, budget permitting)
        any (except UNSUBSCRIBED) -> UNSUBSCRIBED

    Claims:
        A row is "in flight" while lease_expires_at is set and in the future.
        Deferred rows (digest_frequency != "") wait for the digest
        aggregator and are never attempted individually.

    Note:
        Transitions only change the in-memory instance. Persist them with
        notifications.locks.compare_and_set so concurrent writers are
        detected by the version check.
    """

    TRACKED_FIELDS = (
        "status",
        "retry_count",
        "attempt_count",
        "next_retry_at",
        "last_attempt_at",
        "lease_expires_at",
        "sent_at",
        "delivered_at",
        "opened_at",
        "clicked_at",
        "bounced_at",
        "failed_at",
        "unsubscribed_at",
        "provider_message_id",
        "failure_code",
        "failure_reason",
        "is_permanent_failure",
    )

    notification = models.ForeignKey(
        Notification,
        on_delete=models.CASCADE,
        related_name="deliveries",
    )

    channel = models.CharField(
        max_length=20,
        choices=DeliveryChannel.choices,
    )

    status = FSMField(
        default=DeliveryStatus.PENDING,
        choices=DeliveryStatus.choices,
        db_index=True,
    )

    # Retry accounting
    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Automatic re-attempts made so far (bounded by the retry budget)",
    )
    attempt_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Transport calls made for this row",
    )
    next_retry_at = models.DateTimeField(null=True, blank=True)
    last_attempt_at = models.DateTimeField(null=True, blank=True)

    # Claim / lease
    lease_expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="In-flight claim expiry; expired leases are recovered by the retry sweep",
    )

    # Digest routing
    digest_frequency = models.CharField(
        max_length=10,
        choices=DigestFrequency.choices,
        blank=True,
        default="",
        help_text="Digest tier this row is deferred to (blank = immediate)",
    )
    digest_batch = models.ForeignKey(
        DigestBatch,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="deliveries",
    )

    # State timestamps
    sent_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    opened_at = models.DateTimeField(null=True, blank=True)
    clicked_at = models.DateTimeField(null=True, blank=True)
    bounced_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    unsubscribed_at = models.DateTimeField(null=True, blank=True)

    # Provider tracking
    provider_message_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Message ID from provider for receipt correlation",
    )

    # Failure details
    failure_code = models.CharField(max_length=50, blank=True, default="")
    failure_reason = models.TextField(blank=True, default="")
    is_permanent_failure = models.BooleanField(
        default=False,
        help_text="True if retry won't help (e.g., invalid token)",
    )

    # Concurrency control
    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each write",
    )

    class Meta:
        db_table = "notifications_notification_delivery"
        verbose_name = "notification delivery"
        verbose_name_plural = "notification deliveries"
        ordering = ["channel"]
        constraints = [
            models.UniqueConstraint(
                fields=["notification", "channel"],
                name="unique_notification_channel",
            ),
        ]
        indexes = [
            models.Index(
                fields=["status", "next_retry_at"],
                name="notif_delivery_retry_idx",
            ),
            models.Index(
                fields=["status", "lease_expires_at"],
                name="notif_delivery_lease_idx",
            ),
            models.Index(
                fields=["digest_frequency", "status"],
                name="notif_delivery_digest_idx",
            ),
            models.Index(
                fields=["provider_message_id"],
                name="notif_delivery_provider_idx",
                condition=models.Q(provider_message_id__isnull=False),
            ),
        ]

    def __str__(self) -> str:
        return f"Delivery({self.notification_id}, {self.channel}, {self.status})"

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.

        Worker code writes through locks.compare_and_set instead; this
        keeps admin edits and fixtures from slipping past version checks.
        """
        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
            update_fields = kwargs.get("update_fields")
            if update_fields is not None:
                kwargs["update_fields"] = {*update_fields, "version"}
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    # ==========================================================================
    # Derived state
    # ==========================================================================

    @property
    def is_deferred(self) -> bool:
        return bool(self.digest_frequency)

    @property
    def is_retryable(self) -> bool:
        return (
            self.status == DeliveryStatus.FAILED
            and not self.is_permanent_failure
            and self.retry_count < retry_budget()
        )

    @property
    def is_terminal(self) -> bool:
        if self.status in TERMINAL_STATUSES:
            return True
        return self.status == DeliveryStatus.FAILED and not self.is_retryable

    def lease_is_active(self, now: datetime) -> bool:
        return self.lease_expires_at is not None and self.lease_expires_at > now

    def can_retry(self) -> bool:
        """Guard for requeue: not permanent and retry budget remaining."""
        return not self.is_permanent_failure and self.retry_count < retry_budget()

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=DeliveryStatus.PENDING,
        target=DeliveryStatus.SENT,
    )
    def mark_sent(self, at: datetime, provider_message_id: str | None = None):
        """
        Transport accepted the message.

        Transition: PENDING -> SENT
        """
        self.sent_at = at
        self.last_attempt_at = at
        self.attempt_count += 1
        self.provider_message_id = provider_message_id or self.provider_message_id
        self.lease_expires_at = None
        self.next_retry_at = None

    @transition(
        field=status,
        source=DeliveryStatus.SENT,
        target=DeliveryStatus.DELIVERED,
    )
    def mark_delivered(self, at: datetime):
        """Transition: SENT -> DELIVERED"""
        self.delivered_at = at

    @transition(
        field=status,
        source=DeliveryStatus.SENT,
        target=DeliveryStatus.BOUNCED,
    )
    def mark_bounced(self, at: datetime, code: str = "hard_bounce", reason: str = ""):
        """
        Provider reported a bounce. Terminal.

        Transition: SENT -> BOUNCED
        """
        self.bounced_at = at
        self.failure_code = code
        self.failure_reason = reason
        self.is_permanent_failure = True

    @transition(
        field=status,
        source=DeliveryStatus.DELIVERED,
        target=DeliveryStatus.OPENED,
    )
    def mark_opened(self, at: datetime):
        """Transition: DELIVERED -> OPENED"""
        self.opened_at = at

    @transition(
        field=status,
        source=[DeliveryStatus.DELIVERED, DeliveryStatus.OPENED],
        target=DeliveryStatus.CLICKED,
    )
    def mark_clicked(self, at: datetime):
        """Transition: DELIVERED/OPENED -> CLICKED"""
        self.clicked_at = at
        if self.opened_at is None:
            self.opened_at = at

    @transition(
        field=status,
        source=[DeliveryStatus.PENDING, DeliveryStatus.SENT],
        target=DeliveryStatus.FAILED,
    )
    def mark_failed(self, at: datetime, error: TransportError):
        """
        Attempt failed (from PENDING) or provider reported failure (from SENT).

        Transition: PENDING/SENT -> FAILED

        Schedules next_retry_at = at + backoff(retry_count) while the
        failure is transient and budget remains; otherwise the row is
        terminal and next_retry_at is cleared.
        """
        if self.status == DeliveryStatus.PENDING:
            self.attempt_count += 1
            self.last_attempt_at = at
        self.failed_at = at
        self.failure_code = error.code
        self.failure_reason = error.message
        self.is_permanent_failure = error.is_permanent
        self.lease_expires_at = None

        if not self.is_permanent_failure and self.retry_count < retry_budget():
            self.next_retry_at = at + compute_backoff(self.retry_count)
        else:
            self.next_retry_at = None

    @transition(
        field=status,
        source=DeliveryStatus.FAILED,
        target=DeliveryStatus.PENDING,
        conditions=[can_retry],
    )
    def requeue(self, at: datetime, lease_until: datetime):
        """
        Claim a failed row for another attempt.

        Transition: FAILED -> PENDING

        Counts the retry up front so a crash mid-attempt still consumes budget.
        """
        self.retry_count += 1
        self.next_retry_at = None
        self.last_attempt_at = at
        self.lease_expires_at = lease_until

    @transition(
        field=status,
        source="+",
        target=DeliveryStatus.UNSUBSCRIBED,
    )
    def unsubscribe(self, at: datetime):
        """
        Recipient opted out of this channel. Suppresses further retries.

        Transition: any (except UNSUBSCRIBED) -> UNSUBSCRIBED
        """
        self.unsubscribed_at = at
        self.next_retry_at = None
        self.lease_expires_at = None
