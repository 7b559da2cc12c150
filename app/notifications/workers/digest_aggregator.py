"""
Digest aggregator for deferred deliveries.

Users with an hourly, daily or weekly frequency get non-urgent
notifications batched. The dispatch engine creates their rows PENDING
with digest_frequency set; this worker consolidates them.

Tasks:
- run_digest: Periodic task, scheduled once per tier via celery-beat

For each (user, channel) with unclaimed deferred rows of the tier:
1. One transaction creates a DigestBatch and claims the rows into it
   with a single conditional UPDATE
2. One digest is rendered and sent with one transport call
3. Success marks every claimed row SENT (DELIVERED for channels that
   confirm on accept) in one UPDATE
4. A transient failure releases the rows for the next run, counting a
   retry against each row's budget; a permanent failure, or a transient
   one on a row already at the budget, fails them

No rows, no batch: a user never receives an empty digest.

Usage:
    from notifications.workers import run_digest

    run_digest.delay("daily")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from celery import shared_task
from django.db import transaction
from django.db.models import F, Q

from notifications.dispatch import DIGEST_FREQUENCIES, recipient_for
from notifications.enums import DeliveryStatus, DigestBatchStatus
from notifications.exceptions import TransportError
from notifications.models import DigestBatch, Notification, NotificationDelivery
from notifications.policies import (
    CONFIRM_ON_ACCEPT_CHANNELS,
    claim_lease,
    priority_rank_expression,
    retry_budget,
)
from notifications.preferences import PreferenceResolver
from notifications.rendering import render_digest
from notifications.transports import get_transport
from notifications.workers.common import resolve_now

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from django.db.models import QuerySet

    from notifications.transports import BaseTransport

logger = logging.getLogger(__name__)


# =============================================================================
# Sweep functions
# =============================================================================


def deferred_rows(frequency: str, now: datetime) -> QuerySet:
    """Unclaimed deferred PENDING rows of a tier whose notification is live."""
    return NotificationDelivery.objects.filter(
        status=DeliveryStatus.PENDING,
        digest_frequency=frequency,
        digest_batch__isnull=True,
        notification__is_deleted=False,
    ).filter(Q(notification__expires_at__isnull=True) | Q(notification__expires_at__gt=now))


def release_abandoned_batches(now: datetime) -> int:
    """
    Release rows held by OPEN batches whose claim has expired.

    A batch stays OPEN only if the run that created it died before
    recording an outcome.

    Returns:
        Number of rows released
    """
    abandoned = NotificationDelivery.objects.filter(
        status=DeliveryStatus.PENDING,
        digest_batch__status=DigestBatchStatus.OPEN,
        lease_expires_at__lte=now,
    )
    batch_ids = set(abandoned.values_list("digest_batch_id", flat=True))
    if not batch_ids:
        return 0

    released = abandoned.update(
        digest_batch=None,
        lease_expires_at=None,
        version=F("version") + 1,
        updated_at=now,
    )
    DigestBatch.objects.filter(pk__in=batch_ids, status=DigestBatchStatus.OPEN).update(
        status=DigestBatchStatus.FAILED,
        failure_code="lease_expired",
        updated_at=now,
    )
    logger.warning(
        f"Released {released} deliveries from {len(batch_ids)} abandoned digest batches",
        extra={"released_count": released, "batch_count": len(batch_ids)},
    )
    return released


def claim_digest_rows(
    user_id: int,
    channel: str,
    frequency: str,
    now: datetime,
) -> DigestBatch | None:
    """
    Create a batch and claim the user's deferred rows for one channel.

    Returns:
        The OPEN batch, or None if another run claimed everything first
    """
    lease_until = now + claim_lease()

    with transaction.atomic():
        rows = deferred_rows(frequency, now).filter(
            notification__recipient_id=user_id,
            channel=channel,
        )
        row_ids = list(rows.values_list("pk", flat=True))
        if not row_ids:
            return None

        batch = DigestBatch.objects.create(
            user_id=user_id,
            channel=channel,
            frequency=frequency,
            window_end=now,
        )
        claimed = NotificationDelivery.objects.filter(
            pk__in=row_ids,
            status=DeliveryStatus.PENDING,
            digest_batch__isnull=True,
        ).update(
            digest_batch=batch,
            lease_expires_at=lease_until,
            version=F("version") + 1,
            updated_at=now,
        )
        if claimed == 0:
            batch.delete()
            return None

        first_created = (
            Notification.all_objects.filter(deliveries__digest_batch=batch)
            .order_by("created_at")
            .values_list("created_at", flat=True)
            .first()
        )
        batch.notification_count = claimed
        batch.window_start = first_created
        batch.save(update_fields=["notification_count", "window_start", "updated_at"])

    return batch


def send_digest(
    batch: DigestBatch,
    now: datetime,
    transport: BaseTransport | None = None,
) -> DigestBatch:
    """
    Render and send one batch, then record the outcome on every row.

    No transaction is held during the transport call.
    """
    rows = NotificationDelivery.objects.filter(digest_batch=batch, status=DeliveryStatus.PENDING)
    notifications = list(
        Notification.all_objects.filter(deliveries__in=rows)
        .select_related("notification_type", "recipient")
        .annotate(priority_rank=priority_rank_expression())
        .order_by("-priority_rank", "created_at")
    )
    log_extra = {
        "batch_id": str(batch.id),
        "user_id": batch.user_id,
        "channel": batch.channel,
        "frequency": batch.frequency,
        "notification_count": len(notifications),
    }

    if not notifications:
        batch.status = DigestBatchStatus.FAILED
        batch.failure_code = "empty"
        batch.save(update_fields=["status", "failure_code", "updated_at"])
        return batch

    prefs = PreferenceResolver.resolve(batch.user_id, None, use_cache=False)
    content = render_digest(notifications, batch.frequency, max_items=prefs.digest_max_items)
    recipient = recipient_for(notifications[0], batch.channel, prefs)

    try:
        transport = transport or get_transport(batch.channel)
        result = transport.send(recipient, content)
    except TransportError as e:
        return _record_failure(batch, rows, now, e, log_extra)
    except Exception as e:
        logger.exception(f"Unexpected transport error sending digest: {e}", extra=log_extra)
        return _record_failure(batch, rows, now, TransportError(f"Unexpected transport error: {e}"), log_extra)

    confirmed = result.delivered or batch.channel in CONFIRM_ON_ACCEPT_CHANNELS
    updated = rows.update(
        status=DeliveryStatus.DELIVERED if confirmed else DeliveryStatus.SENT,
        sent_at=now,
        delivered_at=now if confirmed else None,
        last_attempt_at=now,
        attempt_count=F("attempt_count") + 1,
        lease_expires_at=None,
        provider_message_id=result.provider_message_id,
        version=F("version") + 1,
        updated_at=now,
    )

    batch.status = DigestBatchStatus.SENT
    batch.sent_at = now
    batch.provider_message_id = result.provider_message_id
    batch.notification_count = updated
    batch.save(update_fields=["status", "sent_at", "provider_message_id", "notification_count", "updated_at"])

    logger.info("Digest sent", extra={**log_extra, "rows_marked": updated})
    return batch


def _record_failure(batch, rows, now, error: TransportError, log_extra: dict) -> DigestBatch:
    """
    Record a failed digest send on every claimed row.

    Transient failures follow the retry budget: a row with budget left
    goes back to the queue with retry_count counted up front, as a
    requeue does; a row already at the budget fails terminally.
    """
    common = {
        "last_attempt_at": now,
        "attempt_count": F("attempt_count") + 1,
        "lease_expires_at": None,
        "failure_code": error.code,
        "failure_reason": error.message,
        "version": F("version") + 1,
        "updated_at": now,
    }
    exhausted = released = 0
    if error.is_permanent:
        exhausted = rows.update(
            status=DeliveryStatus.FAILED,
            failed_at=now,
            is_permanent_failure=True,
            next_retry_at=None,
            **common,
        )
    else:
        exhausted = rows.filter(retry_count__gte=retry_budget()).update(
            status=DeliveryStatus.FAILED,
            failed_at=now,
            next_retry_at=None,
            **common,
        )
        # Back to the queue; the next run of this tier picks them up
        released = rows.update(
            digest_batch=None,
            retry_count=F("retry_count") + 1,
            **common,
        )

    batch.status = DigestBatchStatus.FAILED
    batch.failure_code = error.code
    batch.failure_reason = error.message
    batch.save(update_fields=["status", "failure_code", "failure_reason", "updated_at"])

    logger.warning(
        f"Digest failed: {error.message}",
        extra={
            **log_extra,
            "failure_code": error.code,
            "is_permanent": error.is_permanent,
            "rows_failed": exhausted,
            "rows_released": released,
        },
    )
    return batch


def aggregate_digests(
    frequency: str,
    now: datetime,
    transports: Mapping[str, BaseTransport] | None = None,
) -> dict:
    """
    Build and send every digest of a tier that has rows waiting.

    Returns:
        Dict with released_count, batch_count, sent_count, failed_count
    """
    if frequency not in DIGEST_FREQUENCIES:
        raise ValueError(f"Not a digest frequency: {frequency!r}")

    transports = transports or {}
    released_count = release_abandoned_batches(now)

    groups = list(
        deferred_rows(frequency, now)
        .values_list("notification__recipient_id", "channel")
        .distinct()
        .order_by("notification__recipient_id", "channel")
    )

    batch_count = sent_count = failed_count = 0
    for user_id, channel in groups:
        batch = claim_digest_rows(user_id, channel, frequency, now)
        if batch is None:
            continue
        batch_count += 1
        batch = send_digest(batch, now, transports.get(channel))
        if batch.status == DigestBatchStatus.SENT:
            sent_count += 1
        else:
            failed_count += 1

    return {
        "frequency": frequency,
        "released_count": released_count,
        "batch_count": batch_count,
        "sent_count": sent_count,
        "failed_count": failed_count,
    }


# =============================================================================
# Periodic Task
# =============================================================================


@shared_task(bind=True)
def run_digest(self, frequency: str, now: str | None = None) -> dict:
    """
    Send the digests of one tier (hourly, daily or weekly).

    Returns:
        Dict with the counts from aggregate_digests
    """
    current = resolve_now(now)
    logger.info(f"Starting {frequency} digest run", extra={"frequency": frequency})

    summary = aggregate_digests(frequency, current)

    logger.info(
        f"{frequency.capitalize()} digest run complete: {summary['sent_count']} sent",
        extra=summary,
    )
    return summary
