"""
Notification service layer.

This module provides the business logic for the notification system,
encapsulating the operations other apps call.

Services:
    NotificationService: Create and dispatch notifications, query delivery
        status, unsubscribe, apply provider receipts
    PreferenceService: User notification preference management

Design Principles:
    - Services are stateless (use class methods)
    - Expected failures return ServiceResult.failure()
    - Persistence errors propagate
    - Creation succeeds once the notification is stored, whatever
      happens to the individual channel attempts

Usage:
    from notifications.services import NotificationService, PreferenceService

    # Create with template rendering and dispatch
    result = NotificationService.create_and_dispatch(
        recipient=user,
        type_key="grade_posted",
        data={"course": "Algebra I", "grade": "A"},
    )
    for ref in result.data:
        print(ref["channel"], ref["status"])

    # Query delivery status
    result = NotificationService.get_delivery_status(notification_id)

    # Opt out of a channel
    result = NotificationService.mark_unsubscribed(user, "email")

    # Batch email into a daily digest
    PreferenceService.update_preferences(user, frequency="daily")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from django_fsm import TransitionNotAllowed

from core.services import BaseService, ServiceResult

from notifications.dispatch import DispatchEngine
from notifications.enums import (
    DeliveryChannel,
    DeliveryEvent,
    DeliveryStatus,
    DigestFrequency,
    NotificationCategory,
    NotificationPriority,
)
from notifications.exceptions import (
    InvalidDeliveryTransitionError,
    StaleDeliveryError,
    TransportError,
)
from notifications.locks import compare_and_set
from notifications.models import (
    Notification,
    NotificationDelivery,
    NotificationType,
    UserCategoryPreference,
    UserChannelPreference,
    UserNotificationPreference,
)
from notifications.policies import default_channels
from notifications.preferences import PreferenceResolver
from notifications.rendering import render_templates

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from django.contrib.auth.models import AbstractBaseUser as User

logger = logging.getLogger(__name__)

# Attempts at a version-checked write before giving up on a contended row
MAX_WRITE_ATTEMPTS = 3


def _channel_order(channel: str) -> int:
    return DeliveryChannel.values.index(channel)


def _delivery_ref(delivery: NotificationDelivery) -> dict:
    return {
        "delivery_id": str(delivery.id),
        "channel": delivery.channel,
        "status": delivery.status,
    }


class NotificationService(BaseService):
    """
    Service for notification operations.

    Methods:
        create_and_dispatch: Store a notification and fan it out to channels
        get_delivery_status: Per-channel delivery state for a notification
        mark_unsubscribed: Opt a user out of a channel
        record_delivery_event: Apply a provider receipt to the deliveries carrying it
    """

    @classmethod
    def create_and_dispatch(
        cls,
        recipient: User,
        type_key: str,
        data: dict | None = None,
        title: str | None = None,
        body: str | None = None,
        priority: str | None = None,
        expires_at: datetime | None = None,
        idempotency_key: str | None = None,
        engine: DispatchEngine | None = None,
    ) -> ServiceResult[list[dict]]:
        """
        Create a notification and dispatch it.

        If title/body are not provided, templates from NotificationType are
        rendered using the data dict. Explicit title/body override templates.

        Args:
            recipient: User to notify
            type_key: NotificationType.key
            data: Dict for template rendering and the opaque payload
            title: Explicit title (overrides template)
            body: Explicit body (overrides template)
            priority: NotificationPriority value (default: type's default)
            expires_at: Optional expiry; expired notifications are soft-deleted
            idempotency_key: Optional key; a second call with the same key
                is rejected with DUPLICATE
            engine: DispatchEngine to use (default: a new engine)

        Returns:
            ServiceResult with delivery refs:
            [{"delivery_id": str, "channel": str, "status": str}, ...]

        Error codes:
            TYPE_NOT_FOUND: No NotificationType with this key
            TYPE_INACTIVE: Type exists but is disabled
            INVALID_PRIORITY: Unknown priority value
            DUPLICATE: idempotency_key already used
            TEMPLATE_ERROR: Template placeholder missing from data
        """
        data = data or {}

        try:
            notification_type = NotificationType.objects.get(key=type_key)
        except NotificationType.DoesNotExist:
            cls.get_logger().warning(f"Notification type not found: {type_key}")
            return ServiceResult.failure(
                f"Notification type not found: {type_key}",
                error_code="TYPE_NOT_FOUND",
            )

        if not notification_type.is_active:
            cls.get_logger().info(f"Notification type inactive: {type_key} - skipping creation")
            return ServiceResult.failure(
                f"Notification type is inactive: {type_key}",
                error_code="TYPE_INACTIVE",
            )

        priority = priority or notification_type.default_priority
        if priority not in NotificationPriority.values:
            return ServiceResult.failure(
                f"Unknown priority: {priority}",
                error_code="INVALID_PRIORITY",
            )

        if idempotency_key and Notification.all_objects.filter(idempotency_key=idempotency_key).exists():
            cls.get_logger().info(
                f"Duplicate notification prevented: idempotency_key={idempotency_key}"
            )
            return ServiceResult.failure(
                f"Notification with idempotency_key already exists: {idempotency_key}",
                error_code="DUPLICATE",
            )

        try:
            rendered_title, rendered_body = render_templates(notification_type, data, title, body)
        except (KeyError, IndexError) as e:
            cls.get_logger().warning(f"Template rendering failed for {type_key}: missing {e}")
            return ServiceResult.failure(
                f"Template placeholder missing from data: {e}",
                error_code="TEMPLATE_ERROR",
            )

        try:
            with transaction.atomic():
                notification = Notification.objects.create(
                    notification_type=notification_type,
                    recipient=recipient,
                    category=notification_type.category,
                    priority=priority,
                    title=rendered_title,
                    body=rendered_body,
                    data=data,
                    expires_at=expires_at,
                    idempotency_key=idempotency_key,
                )
        except IntegrityError:
            if idempotency_key:
                return ServiceResult.failure(
                    f"Notification with idempotency_key already exists: {idempotency_key}",
                    error_code="DUPLICATE",
                )
            raise

        cls.get_logger().info(
            f"Created notification {notification.id} of type {type_key} for user {recipient.pk}"
        )

        engine = engine or DispatchEngine()
        try:
            deliveries = engine.dispatch(notification)
        except Exception as e:
            # The notification is stored; its rows are inspectable via
            # get_delivery_status and recoverable by the retry sweep.
            cls.get_logger().exception(
                f"Dispatch failed for notification {notification.id}: {e}"
            )
            deliveries = list(notification.deliveries.all())

        refs = [_delivery_ref(delivery) for delivery in deliveries]
        refs.sort(key=lambda ref: _channel_order(ref["channel"]))
        return ServiceResult.success(refs)

    @classmethod
    def get_delivery_status(cls, notification_id: UUID | str) -> ServiceResult[list[dict]]:
        """
        Per-channel delivery state of a notification.

        Works for expired (soft-deleted) notifications too.

        Returns:
            ServiceResult with:
            [{"channel", "status", "retry_count", "next_retry_at",
              "last_attempt_at"}, ...] in canonical channel order

        Error codes:
            NOT_FOUND: No such notification
        """
        try:
            exists = Notification.all_objects.filter(pk=notification_id).exists()
        except ValidationError:
            exists = False
        if not exists:
            return ServiceResult.failure(
                f"Notification not found: {notification_id}",
                error_code="NOT_FOUND",
            )

        rows = [
            {
                "channel": delivery.channel,
                "status": delivery.status,
                "retry_count": delivery.retry_count,
                "next_retry_at": delivery.next_retry_at,
                "last_attempt_at": delivery.last_attempt_at,
            }
            for delivery in NotificationDelivery.objects.filter(notification_id=notification_id)
        ]
        rows.sort(key=lambda row: _channel_order(row["channel"]))
        return ServiceResult.success(rows)

    @classmethod
    def mark_unsubscribed(
        cls,
        user: User,
        channel: str,
        now: datetime | None = None,
    ) -> ServiceResult[int]:
        """
        Opt a user out of a channel.

        Disables the channel in the user's preferences, then moves every
        non-terminal delivery row for (user, channel) to UNSUBSCRIBED:
        PENDING, SENT, and FAILED rows that could still be retried.

        Returns:
            ServiceResult with the number of rows unsubscribed

        Error codes:
            INVALID_CHANNEL: Unknown channel
        """
        if channel not in DeliveryChannel.values:
            return ServiceResult.failure(
                f"Unknown channel: {channel}",
                error_code="INVALID_CHANNEL",
            )

        now = now or timezone.now()
        PreferenceService.disable_channel(user, channel)

        candidates = NotificationDelivery.objects.filter(
            notification__recipient=user,
            channel=channel,
            status__in=[DeliveryStatus.PENDING, DeliveryStatus.SENT, DeliveryStatus.FAILED],
        )

        count = 0
        for delivery in candidates:
            if cls._unsubscribe_row(delivery, now):
                count += 1

        cls.get_logger().info(
            f"Unsubscribed user {user.pk} from {channel}: {count} deliveries cancelled"
        )
        return ServiceResult.success(count)

    @classmethod
    def _unsubscribe_row(cls, delivery: NotificationDelivery, now: datetime) -> bool:
        for _ in range(MAX_WRITE_ATTEMPTS):
            if delivery.status == DeliveryStatus.FAILED and not delivery.is_retryable:
                return False
            if delivery.status not in (DeliveryStatus.PENDING, DeliveryStatus.SENT, DeliveryStatus.FAILED):
                return False

            expected_version = delivery.version
            delivery.unsubscribe(at=now)
            try:
                compare_and_set(delivery, expected_version, now=now)
                return True
            except StaleDeliveryError:
                delivery.refresh_from_db()

        cls.get_logger().warning(
            f"Could not unsubscribe delivery {delivery.id} after {MAX_WRITE_ATTEMPTS} attempts"
        )
        return False

    @classmethod
    def record_delivery_event(
        cls,
        provider_message_id: str,
        event: str,
        error_code: str | None = None,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> ServiceResult[list[NotificationDelivery]]:
        """
        Apply an out-of-band provider receipt.

        A digest is one provider message shared by every row in its
        batch, so the receipt is applied to each row carrying the id,
        each with its own version-checked write.

        Events:
            delivered: SENT -> DELIVERED
            opened:    (SENT ->) DELIVERED -> OPENED
            clicked:   (SENT ->) DELIVERED/OPENED -> CLICKED
            bounced:   SENT -> BOUNCED
            failed:    SENT -> FAILED (retried per policy unless permanent)

        Receipts that repeat a row's current status are acknowledged
        without a write.

        Returns:
            ServiceResult with the rows the receipt applied to. Succeeds
            if at least one row accepted it; otherwise carries the first
            row's error.

        Error codes:
            INVALID_EVENT: Unknown event
            NOT_FOUND: No delivery with this provider_message_id
            INVALID_TRANSITION: Event not allowed from the row's status
            STALE_DELIVERY: Row kept changing under us
        """
        if event not in DeliveryEvent.values:
            return ServiceResult.failure(f"Unknown event: {event}", error_code="INVALID_EVENT")

        deliveries = list(
            NotificationDelivery.objects.filter(provider_message_id=provider_message_id).order_by("created_at")
        )
        if not deliveries:
            return ServiceResult.failure(
                f"No delivery with provider_message_id {provider_message_id}",
                error_code="NOT_FOUND",
            )

        now = now or timezone.now()
        applied = []
        first_failure = None
        for delivery in deliveries:
            result = cls._apply_receipt(delivery, event, now, error_code, error_message)
            if result:
                applied.append(result.data)
            elif first_failure is None:
                first_failure = result

        if not applied:
            return first_failure
        if len(deliveries) > 1:
            cls.get_logger().info(
                f"Applied {event} receipt to {len(applied)} of {len(deliveries)} deliveries "
                f"sharing {provider_message_id}"
            )
        return ServiceResult.success(applied)

    @classmethod
    def _apply_receipt(
        cls,
        delivery: NotificationDelivery,
        event: str,
        now: datetime,
        error_code: str | None,
        error_message: str | None,
    ) -> ServiceResult[NotificationDelivery]:
        for _ in range(MAX_WRITE_ATTEMPTS):
            if delivery.status == event:
                return ServiceResult.success(delivery)

            expected_version = delivery.version
            try:
                cls._apply_event(delivery, event, now, error_code, error_message)
            except TransitionNotAllowed as e:
                delivery.refresh_from_db()
                return cls.handle_exception(
                    _invalid_transition(delivery, event, e),
                    context="record_delivery_event",
                    log_level=logging.WARNING,
                )

            try:
                compare_and_set(delivery, expected_version, now=now)
            except StaleDeliveryError:
                delivery.refresh_from_db()
                continue

            cls.get_logger().info(
                f"Applied {event} receipt to delivery {delivery.id} ({delivery.channel})"
            )
            return ServiceResult.success(delivery)

        return ServiceResult.failure(
            f"Delivery {delivery.id} changed concurrently, receipt not applied",
            error_code="STALE_DELIVERY",
        )

    @staticmethod
    def _apply_event(
        delivery: NotificationDelivery,
        event: str,
        now: datetime,
        error_code: str | None,
        error_message: str | None,
    ) -> None:
        if event == DeliveryEvent.DELIVERED:
            delivery.mark_delivered(at=now)
        elif event in (DeliveryEvent.OPENED, DeliveryEvent.CLICKED):
            if delivery.status == DeliveryStatus.SENT:
                delivery.mark_delivered(at=now)
            if event == DeliveryEvent.OPENED:
                delivery.mark_opened(at=now)
            else:
                delivery.mark_clicked(at=now)
        elif event == DeliveryEvent.BOUNCED:
            delivery.mark_bounced(
                at=now,
                code=error_code or "hard_bounce",
                reason=error_message or "",
            )
        elif event == DeliveryEvent.FAILED:
            delivery.mark_failed(
                at=now,
                error=TransportError(
                    error_message or "Provider reported delivery failure",
                    code=error_code or "transport_error",
                ),
            )


def _invalid_transition(delivery, event, exc) -> InvalidDeliveryTransitionError:
    return InvalidDeliveryTransitionError(
        f"Cannot apply {event} to delivery in status {delivery.status}: {exc}",
        details={"delivery_id": str(delivery.id), "status": delivery.status, "event": event},
    )


class PreferenceService(BaseService):
    """
    Service for user notification preference management.

    Preference writes invalidate cached resolutions (see notifications.signals).

    Methods:
        get_user_preferences: Get all preferences for API display
        update_preferences: Update channels, frequency, quiet hours, addresses
        disable_channel: Remove one channel from the enabled set
        set_category_preference: Update category override
        set_type_preference: Update type-level override
    """

    UPDATABLE_FIELDS = (
        "enabled_channels",
        "frequency",
        "digest_max_items",
        "quiet_hours_enabled",
        "quiet_hours_start",
        "quiet_hours_end",
        "quiet_hours_weekdays",
        "timezone",
        "phone_number",
        "device_token",
        "slack_webhook_url",
        "discord_webhook_url",
        "webhook_url",
    )

    @classmethod
    def _get_or_create(cls, user: User) -> UserChannelPreference:
        pref, _ = UserChannelPreference.objects.get_or_create(
            user=user,
            defaults={"enabled_channels": list(default_channels())},
        )
        return pref

    @staticmethod
    def _invalid_channels(channels) -> list[str]:
        return [channel for channel in channels if channel not in DeliveryChannel.values]

    @classmethod
    def get_user_preferences(cls, user: User) -> ServiceResult[dict]:
        """
        Get all notification preferences for a user.

        Returns:
            ServiceResult with:
            {
                "enabled_channels": [...],
                "frequency": str,
                "quiet_hours": {...},
                "categories": [{"category", "disabled", "channels"}, ...],
                "types": [{"type_key", "disabled", "channels"}, ...],
            }
        """
        prefs = PreferenceResolver.get_preferences(user.pk)

        categories = [
            {"category": pref.category, "disabled": pref.disabled, "channels": pref.channels}
            for pref in UserCategoryPreference.objects.filter(user=user)
        ]
        types = [
            {
                "type_key": pref.notification_type.key,
                "disabled": pref.disabled,
                "channels": pref.channels,
            }
            for pref in UserNotificationPreference.objects.filter(user=user).select_related(
                "notification_type"
            )
        ]

        return ServiceResult.success(
            {
                "enabled_channels": sorted(prefs.enabled_channels, key=_channel_order),
                "frequency": prefs.frequency,
                "digest_max_items": prefs.digest_max_items,
                "quiet_hours": {
                    "enabled": prefs.quiet_hours_enabled,
                    "start": prefs.quiet_hours_start,
                    "end": prefs.quiet_hours_end,
                    "weekdays": list(prefs.quiet_hours_weekdays),
                    "timezone": prefs.timezone,
                },
                "categories": categories,
                "types": types,
            }
        )

    @classmethod
    def update_preferences(cls, user: User, **fields) -> ServiceResult[UserChannelPreference]:
        """
        Update the user's channel preference row (created if missing).

        Error codes:
            UNKNOWN_FIELD: Field is not a preference
            INVALID_CHANNEL: enabled_channels contains an unknown channel
            INVALID_FREQUENCY: Unknown frequency
        """
        unknown = sorted(set(fields) - set(cls.UPDATABLE_FIELDS))
        if unknown:
            return ServiceResult.failure(
                f"Unknown preference fields: {', '.join(unknown)}",
                error_code="UNKNOWN_FIELD",
            )

        if "enabled_channels" in fields:
            invalid = cls._invalid_channels(fields["enabled_channels"])
            if invalid:
                return ServiceResult.failure(
                    f"Unknown channels: {', '.join(invalid)}",
                    error_code="INVALID_CHANNEL",
                )
            fields["enabled_channels"] = [
                channel for channel in DeliveryChannel.values if channel in fields["enabled_channels"]
            ]

        if "frequency" in fields and fields["frequency"] not in DigestFrequency.values:
            return ServiceResult.failure(
                f"Unknown frequency: {fields['frequency']}",
                error_code="INVALID_FREQUENCY",
            )

        with cls.atomic():
            pref = cls._get_or_create(user)
            for name, value in fields.items():
                setattr(pref, name, value)
            pref.save()

        cls.get_logger().debug(f"Updated preferences for user {user.pk}: {sorted(fields)}")
        return ServiceResult.success(pref)

    @classmethod
    def disable_channel(cls, user: User, channel: str) -> ServiceResult[UserChannelPreference]:
        if channel not in DeliveryChannel.values:
            return ServiceResult.failure(f"Unknown channel: {channel}", error_code="INVALID_CHANNEL")

        with cls.atomic():
            pref = cls._get_or_create(user)
            if channel in pref.enabled_channels:
                pref.enabled_channels = [c for c in pref.enabled_channels if c != channel]
                pref.save(update_fields=["enabled_channels", "updated_at"])

        return ServiceResult.success(pref)

    @classmethod
    def set_category_preference(
        cls,
        user: User,
        category: str,
        disabled: bool = False,
        channels: list[str] | None = None,
    ) -> ServiceResult[UserCategoryPreference]:
        """
        Error codes:
            INVALID_CATEGORY: Unknown category
            INVALID_CHANNEL: channels contains an unknown channel
        """
        if category not in NotificationCategory.values:
            return ServiceResult.failure(
                f"Unknown category: {category}",
                error_code="INVALID_CATEGORY",
            )
        if channels is not None and cls._invalid_channels(channels):
            return ServiceResult.failure(
                f"Unknown channels: {', '.join(cls._invalid_channels(channels))}",
                error_code="INVALID_CHANNEL",
            )

        pref, _ = UserCategoryPreference.objects.update_or_create(
            user=user,
            category=category,
            defaults={"disabled": disabled, "channels": channels},
        )
        return ServiceResult.success(pref)

    @classmethod
    def set_type_preference(
        cls,
        user: User,
        type_key: str,
        disabled: bool = False,
        channels: list[str] | None = None,
    ) -> ServiceResult[UserNotificationPreference]:
        """
        Error codes:
            TYPE_NOT_FOUND: No NotificationType with this key
            INVALID_CHANNEL: channels contains an unknown channel
        """
        try:
            notification_type = NotificationType.objects.get(key=type_key)
        except NotificationType.DoesNotExist:
            return ServiceResult.failure(
                f"Notification type not found: {type_key}",
                error_code="TYPE_NOT_FOUND",
            )
        if channels is not None and cls._invalid_channels(channels):
            return ServiceResult.failure(
                f"Unknown channels: {', '.join(cls._invalid_channels(channels))}",
                error_code="INVALID_CHANNEL",
            )

        pref, _ = UserNotificationPreference.objects.update_or_create(
            user=user,
            notification_type=notification_type,
            defaults={"disabled": disabled, "channels": channels},
        )
        return ServiceResult.success(pref)
