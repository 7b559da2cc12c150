"""
Dispatch engine: fan a notification out to its channels.

For one notification the engine:
1. Resolves the recipient's preferences for the notification's type
2. Selects channels: type-allowed ∩ user-enabled, narrowed to in-app
   for non-urgent notifications during quiet hours or at frequency NEVER
3. Creates (or reuses) one NotificationDelivery per channel
4. Defers rows to the digest aggregator when the user batches
   non-urgent notifications, otherwise attempts each row immediately

Transport calls run outside any transaction. The outcome of an attempt
is recorded with one version-checked write, so a row that changed
mid-flight (e.g., unsubscribed) keeps the other writer's state.

Usage:
    from notifications.dispatch import DispatchEngine

    deliveries = DispatchEngine().dispatch(notification)

    # Tests inject a clock and fake transports
    engine = DispatchEngine(clock=lambda: fixed_now, transports={"email": fake})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from notifications.enums import DeliveryChannel, DeliveryStatus, DigestFrequency
from notifications.exceptions import StaleDeliveryError, TransportError
from notifications.locks import acquire_lease, compare_and_set
from notifications.models import NotificationDelivery
from notifications.policies import CONFIRM_ON_ACCEPT_CHANNELS, claim_lease
from notifications.preferences import PreferenceResolver
from notifications.rendering import render_notification
from notifications.transports import Recipient, get_transport

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import datetime

    from notifications.models import Notification
    from notifications.preferences import ResolvedPreferences
    from notifications.transports import BaseTransport

logger = logging.getLogger(__name__)

DIGEST_FREQUENCIES = frozenset(
    {DigestFrequency.HOURLY, DigestFrequency.DAILY, DigestFrequency.WEEKLY}
)


def recipient_for(
    notification: Notification,
    channel: str,
    prefs: ResolvedPreferences,
) -> Recipient:
    """Build the transport recipient for one channel."""
    if channel == DeliveryChannel.EMAIL:
        address = notification.recipient.email or ""
    elif channel == DeliveryChannel.IN_APP:
        address = ""
    else:
        address = prefs.address_for(channel)
    return Recipient(user_id=notification.recipient_id, address=address)


class DispatchEngine:
    """
    Fans notifications out to channel transports and records outcomes.

    Args:
        clock: Callable returning the current aware datetime
        transports: Optional channel -> transport mapping; channels not
            listed use the NOTIFICATION_TRANSPORTS registry
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        transports: Mapping[str, BaseTransport] | None = None,
    ):
        self.clock = clock or timezone.now
        self.transports = dict(transports or {})

    def get_transport(self, channel: str) -> BaseTransport:
        if channel in self.transports:
            return self.transports[channel]
        return get_transport(channel)

    # =========================================================================
    # Channel selection
    # =========================================================================

    def select_channels(
        self,
        notification: Notification,
        prefs: ResolvedPreferences,
        now: datetime,
    ) -> list[str]:
        """Channels to create rows for, in canonical order."""
        allowed = notification.notification_type.get_allowed_channels()
        channels = [channel for channel in allowed if prefs.is_channel_enabled(channel)]

        if notification.is_urgent:
            return channels

        if prefs.frequency == DigestFrequency.NEVER or prefs.in_quiet_hours(now):
            channels = [channel for channel in channels if channel == DeliveryChannel.IN_APP]

        return channels

    @staticmethod
    def digest_tier(notification: Notification, prefs: ResolvedPreferences, channel: str) -> str:
        """Digest frequency a new row is deferred under ("" = attempt now)."""
        if notification.is_urgent or channel == DeliveryChannel.IN_APP:
            return ""
        if prefs.frequency in DIGEST_FREQUENCIES:
            return prefs.frequency
        return ""

    # =========================================================================
    # Dispatch
    # =========================================================================

    def dispatch(self, notification: Notification) -> list[NotificationDelivery]:
        """
        Create delivery rows for a notification and attempt the immediate ones.

        Idempotent: existing rows are reused, and only PENDING rows with a
        free or expired lease are attempted again.

        Returns:
            The notification's delivery rows (empty if no channel applies)
        """
        now = self.clock()
        log_extra = {
            "notification_id": str(notification.id),
            "recipient_id": notification.recipient_id,
            "priority": notification.priority,
        }

        if notification.is_deleted or notification.is_expired(now):
            logger.info(
                "Notification expired before dispatch, skipping",
                extra={**log_extra, "outcome": "expired"},
            )
            return []

        prefs = PreferenceResolver.resolve(
            notification.recipient_id,
            notification.notification_type,
        )
        channels = self.select_channels(notification, prefs, now)

        if not channels:
            logger.info(
                "No eligible channels, nothing to dispatch",
                extra={
                    **log_extra,
                    "outcome": "no_channels",
                    "blocked_reason": prefs.blocked_reason,
                },
            )
            return []

        lease_until = now + claim_lease()
        deliveries: list[NotificationDelivery] = []
        created_rows: list[NotificationDelivery] = []
        reused_rows: list[NotificationDelivery] = []

        with transaction.atomic():
            for channel in channels:
                tier = self.digest_tier(notification, prefs, channel)
                delivery, created = NotificationDelivery.objects.get_or_create(
                    notification=notification,
                    channel=channel,
                    defaults={
                        "digest_frequency": tier,
                        "lease_expires_at": None if tier else lease_until,
                    },
                )
                deliveries.append(delivery)
                if created:
                    if not tier:
                        created_rows.append(delivery)
                elif self._is_reattemptable(delivery, now):
                    reused_rows.append(delivery)

        claimed = list(created_rows)
        for delivery in reused_rows:
            try:
                claimed.append(acquire_lease(delivery, now=now, lease_until=lease_until))
            except StaleDeliveryError:
                logger.info(
                    "Delivery already claimed by another worker",
                    extra={**log_extra, "delivery_id": str(delivery.id), "channel": delivery.channel},
                )

        deferred = sum(1 for delivery in deliveries if delivery.is_deferred)
        logger.info(
            "Dispatching notification",
            extra={
                **log_extra,
                "channels": channels,
                "attempting": len(claimed),
                "deferred": deferred,
            },
        )

        for delivery in claimed:
            delivery.notification = notification
            self.attempt(delivery, prefs=prefs)

        return deliveries

    @staticmethod
    def _is_reattemptable(delivery: NotificationDelivery, now: datetime) -> bool:
        return (
            delivery.status == DeliveryStatus.PENDING
            and not delivery.is_deferred
            and not delivery.lease_is_active(now)
        )

    # =========================================================================
    # Single attempt
    # =========================================================================

    def attempt(
        self,
        delivery: NotificationDelivery,
        prefs: ResolvedPreferences | None = None,
    ) -> NotificationDelivery:
        """
        Make one transport call for a claimed PENDING row and record the outcome.

        The caller must hold the row's lease. No transaction is open
        while the transport runs.

        Returns:
            The delivery, reflecting the stored state
        """
        notification = delivery.notification
        expected_version = delivery.version
        log_extra = {
            "delivery_id": str(delivery.id),
            "notification_id": str(notification.id),
            "channel": delivery.channel,
            "retry_count": delivery.retry_count,
        }

        if prefs is None:
            prefs = PreferenceResolver.resolve(
                notification.recipient_id,
                notification.notification_type,
            )

        error: TransportError | None = None
        result = None
        try:
            transport = self.get_transport(delivery.channel)
            result = transport.send(
                recipient_for(notification, delivery.channel, prefs),
                render_notification(notification),
            )
        except TransportError as e:
            error = e
        except Exception as e:
            logger.exception(
                f"Unexpected transport error: {e}",
                extra=log_extra,
            )
            error = TransportError(f"Unexpected transport error: {e}")

        finished = self.clock()

        if error is None:
            delivery.mark_sent(at=finished, provider_message_id=result.provider_message_id)
            if result.delivered or delivery.channel in CONFIRM_ON_ACCEPT_CHANNELS:
                delivery.mark_delivered(at=finished)
        else:
            delivery.mark_failed(at=finished, error=error)

        try:
            compare_and_set(delivery, expected_version, now=finished)
        except StaleDeliveryError:
            logger.warning(
                "Delivery superseded during attempt, outcome discarded",
                extra={**log_extra, "outcome": "superseded"},
            )
            delivery.refresh_from_db()
            return delivery

        if error is None:
            logger.info(
                "Delivery sent",
                extra={
                    **log_extra,
                    "status": delivery.status,
                    "provider_message_id": delivery.provider_message_id,
                },
            )
        else:
            logger.warning(
                f"Delivery failed: {error.message}",
                extra={
                    **log_extra,
                    "failure_code": error.code,
                    "is_permanent": error.is_permanent,
                    "next_retry_at": delivery.next_retry_at.isoformat()
                    if delivery.next_retry_at
                    else None,
                },
            )
        return delivery

