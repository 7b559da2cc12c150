"""
Retry scheduler for failed deliveries.

This module provides Celery tasks that re-attempt failed deliveries
whose backoff has elapsed, within the retry budget.

Tasks:
- retry_failed_deliveries: Periodic sweep (every minute via celery-beat)
- retry_delivery: Re-attempts a single delivery

Sweep:
1. Recover stale leases: an immediate PENDING row whose claim expired
   belongs to a worker that died mid-attempt. It is recorded as a
   failed attempt (code "lease_expired") and retried per policy.
2. Select FAILED rows that are not permanent, have budget left and
   are due (next_retry_at <= now), urgent notifications first.
3. Queue retry_delivery per row.

The per-row task claims the row with the requeue transition
(FAILED -> PENDING, retry_count + 1, lease set) as a version-checked
write. Two sweeps racing for the same row cannot both win, so
retry_count is never incremented twice for one attempt.

Usage:
    from notifications.workers import retry_failed_deliveries

    retry_failed_deliveries.delay()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from celery import shared_task
from django.core.exceptions import ValidationError
from django_fsm import TransitionNotAllowed

from notifications.dispatch import DispatchEngine
from notifications.enums import DeliveryStatus
from notifications.exceptions import StaleDeliveryError, TransportError
from notifications.locks import compare_and_set
from notifications.models import NotificationDelivery
from notifications.policies import (
    claim_lease,
    priority_rank_expression,
    retry_budget,
    sweep_batch_size,
)
from notifications.preferences import PreferenceResolver
from notifications.workers.common import resolve_now

if TYPE_CHECKING:
    from datetime import datetime

    from django.db.models import QuerySet

logger = logging.getLogger(__name__)


# =============================================================================
# Sweep functions
# =============================================================================


def recover_stale_leases(now: datetime, limit: int | None = None) -> int:
    """
    Fail immediate PENDING rows whose attempt lease has expired.

    Returns:
        Number of rows recovered
    """
    stale = NotificationDelivery.objects.filter(
        status=DeliveryStatus.PENDING,
        digest_frequency="",
        lease_expires_at__lte=now,
    ).order_by("lease_expires_at")[: limit or sweep_batch_size()]

    recovered = 0
    for delivery in stale:
        expected_version = delivery.version
        delivery.mark_failed(
            at=now,
            error=TransportError(
                "Attempt lease expired before an outcome was recorded",
                code="lease_expired",
            ),
        )
        try:
            compare_and_set(delivery, expected_version, now=now)
        except StaleDeliveryError:
            continue

        recovered += 1
        logger.warning(
            "Recovered delivery with expired lease",
            extra={
                "delivery_id": str(delivery.id),
                "channel": delivery.channel,
                "retry_count": delivery.retry_count,
            },
        )

    return recovered


def find_due_retries(now: datetime, limit: int | None = None) -> QuerySet:
    """
    FAILED rows eligible for another attempt, urgent first then oldest due.

    Rows of expired (soft-deleted) notifications are left alone.
    """
    return (
        NotificationDelivery.objects.filter(
            status=DeliveryStatus.FAILED,
            is_permanent_failure=False,
            retry_count__lt=retry_budget(),
            next_retry_at__lte=now,
            notification__is_deleted=False,
        )
        .annotate(priority_rank=priority_rank_expression("notification__priority"))
        .order_by("-priority_rank", "next_retry_at")[: limit or sweep_batch_size()]
    )


def retry_single_delivery(
    delivery_id: str,
    now: datetime,
    engine: DispatchEngine | None = None,
) -> dict:
    """
    Claim a due FAILED row and re-attempt it.

    Returns:
        Dict with status: one of "retried", "not_found", "not_retryable",
        "not_due", "cancelled", "lost_race"; plus delivery_id and, once
        attempted, the resulting delivery_status and retry_count
    """
    try:
        delivery = NotificationDelivery.objects.select_related(
            "notification__notification_type",
            "notification__recipient",
        ).get(pk=delivery_id)
    except (NotificationDelivery.DoesNotExist, ValidationError):
        logger.warning("Delivery not found for retry", extra={"delivery_id": str(delivery_id)})
        return {"status": "not_found", "delivery_id": str(delivery_id)}

    log_extra = {
        "delivery_id": str(delivery.id),
        "channel": delivery.channel,
        "retry_count": delivery.retry_count,
    }

    if not delivery.is_retryable:
        logger.info("Delivery no longer retryable, skipping", extra={**log_extra, "status": delivery.status})
        return {"status": "not_retryable", "delivery_id": str(delivery.id)}

    if delivery.next_retry_at is None or delivery.next_retry_at > now:
        return {"status": "not_due", "delivery_id": str(delivery.id)}

    notification = delivery.notification
    prefs = PreferenceResolver.resolve(
        notification.recipient_id,
        notification.notification_type,
        use_cache=False,
    )

    expected_version = delivery.version
    if not prefs.is_channel_enabled(delivery.channel):
        delivery.unsubscribe(at=now)
        try:
            compare_and_set(delivery, expected_version, now=now)
        except StaleDeliveryError:
            return {"status": "lost_race", "delivery_id": str(delivery.id)}
        logger.info("Channel disabled since failure, retry cancelled", extra=log_extra)
        return {"status": "cancelled", "delivery_id": str(delivery.id)}

    try:
        delivery.requeue(at=now, lease_until=now + claim_lease())
        compare_and_set(delivery, expected_version, now=now)
    except TransitionNotAllowed:
        return {"status": "not_retryable", "delivery_id": str(delivery.id)}
    except StaleDeliveryError:
        logger.info("Delivery claimed by another sweep, skipping", extra=log_extra)
        return {"status": "lost_race", "delivery_id": str(delivery.id)}

    engine = engine or DispatchEngine()
    delivery = engine.attempt(delivery, prefs=prefs)

    return {
        "status": "retried",
        "delivery_id": str(delivery.id),
        "delivery_status": delivery.status,
        "retry_count": delivery.retry_count,
    }


# =============================================================================
# Periodic Task: Retry Sweep
# =============================================================================


@shared_task(bind=True)
def retry_failed_deliveries(self, now: str | None = None) -> dict:
    """
    Recover stale leases and queue due retries.

    Returns:
        Dict with:
        - recovered_count: Rows whose expired lease was recorded as a failure
        - queued_count: Rows queued for retry
    """
    current = resolve_now(now)
    logger.info("Starting delivery retry sweep", extra={"now": current.isoformat()})

    recovered_count = recover_stale_leases(current)

    queued_count = 0
    for delivery in find_due_retries(current):
        try:
            retry_delivery.delay(str(delivery.id), current.isoformat())
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue delivery for retry: {e}",
                extra={"delivery_id": str(delivery.id), "error": str(e)},
            )

    logger.info(
        f"Delivery retry sweep complete: queued {queued_count} deliveries",
        extra={"queued_count": queued_count, "recovered_count": recovered_count},
    )
    return {"recovered_count": recovered_count, "queued_count": queued_count}


# =============================================================================
# Individual Retry Task
# =============================================================================


@shared_task(bind=True, acks_late=True)
def retry_delivery(self, delivery_id: str, now: str | None = None) -> dict:
    """Re-attempt one delivery. See retry_single_delivery."""
    return retry_single_delivery(delivery_id, resolve_now(now))
