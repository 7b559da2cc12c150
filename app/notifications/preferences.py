"""
Notification preference resolution.

This module handles the hierarchical preference resolution:
Channel preference -> Category override -> Type override

The resolution returns a ResolvedPreferences dataclass holding the
channels a user accepts for one notification type, their digest
frequency, quiet hours, and channel addresses.

Design Decisions:
    - TTL-based caching (5 min) for preference lookups
    - Writes go through PreferenceService, which invalidates the cache
    - Users without a UserChannelPreference row get
      NOTIFICATION_DEFAULT_CHANNELS at IMMEDIATE frequency

Usage:
    from notifications.preferences import PreferenceResolver

    prefs = PreferenceResolver.resolve(user.id, notification_type)
    if prefs.in_quiet_hours(now):
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.core.cache import cache

from notifications.enums import DeliveryChannel, DigestFrequency
from notifications.models import (
    NotificationType,
    UserCategoryPreference,
    UserChannelPreference,
    UserNotificationPreference,
)
from notifications.policies import default_channels

if TYPE_CHECKING:
    from datetime import datetime, time

logger = logging.getLogger(__name__)


# Cache configuration
PREFERENCE_CACHE_TTL = 300  # 5 minutes
PREFERENCE_CACHE_PREFIX = "notif_pref"


@dataclass(frozen=True)
class ResolvedPreferences:
    """
    Resolved notification preferences for a user/type combination.

    Attributes:
        enabled_channels: Channels the user accepts for this type
        frequency: DigestFrequency value
        blocked_reason: Set when a category or type override disabled everything
    """

    user_id: int
    enabled_channels: frozenset[str]
    frequency: str = DigestFrequency.IMMEDIATE
    digest_max_items: int = 10
    quiet_hours_enabled: bool = False
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    quiet_hours_weekdays: tuple[int, ...] = ()
    timezone: str = "UTC"
    addresses: dict[str, str] = field(default_factory=dict, compare=False)
    blocked_reason: str | None = None

    @property
    def any_enabled(self) -> bool:
        return bool(self.enabled_channels)

    def is_channel_enabled(self, channel: str) -> bool:
        return channel in self.enabled_channels

    def address_for(self, channel: str) -> str:
        return self.addresses.get(channel, "")

    def in_quiet_hours(self, at: datetime) -> bool:
        """
        True if ``at`` falls inside the user's quiet-hours window.

        Windows are evaluated in the user's timezone. A window whose end
        is before its start wraps midnight (22:00-07:00). Equal start and
        end is an empty window.
        """
        if not self.quiet_hours_enabled:
            return False
        if self.quiet_hours_start is None or self.quiet_hours_end is None:
            return False
        if self.quiet_hours_start == self.quiet_hours_end:
            return False

        try:
            zone = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                f"Unknown timezone {self.timezone!r} for user {self.user_id}, using UTC"
            )
            zone = ZoneInfo("UTC")

        local = at.astimezone(zone)
        start, end = self.quiet_hours_start, self.quiet_hours_end
        now_time = local.time().replace(tzinfo=None)

        if start < end:
            inside = start <= now_time < end
            window_day = local.weekday()
        else:
            inside = now_time >= start or now_time < end
            # After midnight the window belongs to the previous evening
            window_day = local.weekday() if now_time >= start else (local.weekday() - 1) % 7

        if not inside:
            return False
        if self.quiet_hours_weekdays and window_day not in self.quiet_hours_weekdays:
            return False
        return True


class PreferenceResolver:
    """
    Resolves notification preferences using the hierarchy:
    Channel preference -> Category override -> Type override

    Uses TTL-based caching to reduce database queries.
    """

    @staticmethod
    def _get_cache_key(user_id: int, notification_type_id: int | None) -> str:
        """Build cache key for preferences."""
        return f"{PREFERENCE_CACHE_PREFIX}:{user_id}:{notification_type_id or 'base'}"

    @classmethod
    def get_preferences(cls, user_id: int) -> ResolvedPreferences:
        """Base preferences, without category or type overrides."""
        return cls.resolve(user_id, None)

    @classmethod
    def resolve(
        cls,
        user_id: int,
        notification_type: NotificationType | None,
        use_cache: bool = True,
    ) -> ResolvedPreferences:
        """
        Resolve preferences for a single user/type combination.

        Args:
            user_id: The user to resolve preferences for
            notification_type: The notification type (None for base preferences)
            use_cache: Whether to use cache (default True)

        Returns:
            ResolvedPreferences with enabled channels
        """
        type_id = notification_type.id if notification_type is not None else None
        cache_key = cls._get_cache_key(user_id, type_id)

        if use_cache:
            cached = cache.get(cache_key)
            if cached is not None:
                return cached

        resolved = cls._resolve_from_db(user_id, notification_type)

        if use_cache:
            cache.set(cache_key, resolved, timeout=PREFERENCE_CACHE_TTL)

        return resolved

    @classmethod
    def _resolve_from_db(
        cls,
        user_id: int,
        notification_type: NotificationType | None,
    ) -> ResolvedPreferences:
        channel_pref = UserChannelPreference.objects.filter(user_id=user_id).first()

        if channel_pref is None:
            return ResolvedPreferences(
                user_id=user_id,
                enabled_channels=frozenset(default_channels()),
            )

        enabled = set(channel_pref.enabled_channels) & set(DeliveryChannel.values)
        blocked_reason = None

        if notification_type is not None:
            category_pref = UserCategoryPreference.objects.filter(
                user_id=user_id,
                category=notification_type.category,
            ).first()
            type_pref = UserNotificationPreference.objects.filter(
                user_id=user_id,
                notification_type=notification_type,
            ).first()

            for level, override in (("category", category_pref), ("type", type_pref)):
                if override is None:
                    continue
                if override.disabled:
                    enabled = set()
                    blocked_reason = f"{level}_disabled"
                    break
                if override.channels is not None:
                    enabled &= set(override.channels)

        return ResolvedPreferences(
            user_id=user_id,
            enabled_channels=frozenset(enabled),
            frequency=channel_pref.frequency,
            digest_max_items=channel_pref.digest_max_items,
            quiet_hours_enabled=channel_pref.quiet_hours_enabled,
            quiet_hours_start=channel_pref.quiet_hours_start,
            quiet_hours_end=channel_pref.quiet_hours_end,
            quiet_hours_weekdays=tuple(channel_pref.quiet_hours_weekdays or ()),
            timezone=channel_pref.timezone or "UTC",
            addresses={
                DeliveryChannel.SMS: channel_pref.phone_number,
                DeliveryChannel.PUSH: channel_pref.device_token,
                DeliveryChannel.SLACK: channel_pref.slack_webhook_url,
                DeliveryChannel.DISCORD: channel_pref.discord_webhook_url,
                DeliveryChannel.WEBHOOK: channel_pref.webhook_url,
            },
            blocked_reason=blocked_reason,
        )

    @classmethod
    def invalidate_cache(cls, user_id: int) -> None:
        """
        Invalidate every cached resolution for a user.

        Called by PreferenceService after any preference write.
        """
        type_ids = list(NotificationType.objects.values_list("id", flat=True))
        keys = [cls._get_cache_key(user_id, None)]
        keys.extend(cls._get_cache_key(user_id, type_id) for type_id in type_ids)
        cache.delete_many(keys)
        logger.debug(f"Invalidated {len(keys)} preference cache keys for user {user_id}")
