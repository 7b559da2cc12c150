"""
Retention sweeper for expired notifications and old delivery history.

Tasks:
- expire_notifications: Soft-deletes notifications past expires_at
  (every 15 minutes). Delivery rows are left untouched.
- prune_delivery_history: Hard-deletes terminal delivery rows older than
  NOTIFICATION_HISTORY_RETENTION_DAYS, then soft-deleted notifications
  past the window with no rows left (daily).

Only terminal rows are ever pruned: DELIVERED, OPENED, CLICKED, BOUNCED,
UNSUBSCRIBED, and FAILED rows that are permanent or out of budget.
PENDING, SENT and retryable FAILED rows stay regardless of age.

Errors:
    An IntegrityError on one row is logged and the sweep moves on.
    Any other DatabaseError (lost connection, etc.) propagates and
    aborts the task; the next beat run picks up where it stopped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from celery import shared_task
from django.db import IntegrityError, transaction
from django.db.models import Q

from notifications.enums import DeliveryStatus
from notifications.models import Notification, NotificationDelivery
from notifications.policies import (
    TERMINAL_STATUSES,
    history_retention,
    retry_budget,
    sweep_batch_size,
)
from notifications.workers.common import resolve_now

if TYPE_CHECKING:
    from datetime import datetime

    from django.db.models import QuerySet

logger = logging.getLogger(__name__)


# =============================================================================
# Sweep functions
# =============================================================================


def terminal_deliveries() -> QuerySet:
    exhausted_or_permanent = Q(status=DeliveryStatus.FAILED) & (
        Q(is_permanent_failure=True) | Q(retry_count__gte=retry_budget())
    )
    return NotificationDelivery.objects.filter(
        Q(status__in=TERMINAL_STATUSES) | exhausted_or_permanent
    )


def expire_due_notifications(now: datetime, limit: int | None = None) -> dict:
    """
    Soft-delete live notifications whose expires_at has passed.

    Returns:
        Dict with expired_count and error_count
    """
    due = Notification.objects.filter(expires_at__lte=now).order_by("expires_at")[
        : limit or sweep_batch_size()
    ]

    expired_count = error_count = 0
    for notification in due:
        try:
            with transaction.atomic():
                notification.soft_delete(at=now)
        except IntegrityError as e:
            error_count += 1
            logger.error(
                f"Failed to expire notification: {e}",
                extra={"notification_id": str(notification.id), "error": str(e)},
            )
            continue
        expired_count += 1

    return {"expired_count": expired_count, "error_count": error_count}


def prune_terminal_deliveries(now: datetime, limit: int | None = None) -> dict:
    """
    Hard-delete terminal delivery rows created before the retention window,
    then soft-deleted notifications in the window with no rows left.

    Returns:
        Dict with pruned_count, notifications_pruned and error_count
    """
    cutoff = now - history_retention()
    limit = limit or sweep_batch_size()

    candidates = list(
        terminal_deliveries()
        .filter(created_at__lt=cutoff)
        .order_by("created_at")
        .values_list("pk", flat=True)[:limit]
    )

    pruned_count = error_count = 0
    for pk in candidates:
        try:
            with transaction.atomic():
                deleted, _ = NotificationDelivery.objects.filter(pk=pk).delete()
        except IntegrityError as e:
            error_count += 1
            logger.error(
                f"Failed to prune delivery: {e}",
                extra={"delivery_id": str(pk), "error": str(e)},
            )
            continue
        pruned_count += deleted

    orphans = list(
        Notification.all_objects.filter(
            is_deleted=True,
            created_at__lt=cutoff,
            deliveries__isnull=True,
        ).values_list("pk", flat=True)[:limit]
    )

    notifications_pruned = 0
    for pk in orphans:
        try:
            with transaction.atomic():
                deleted, _ = Notification.all_objects.filter(pk=pk).delete()
        except IntegrityError as e:
            error_count += 1
            logger.error(
                f"Failed to prune notification: {e}",
                extra={"notification_id": str(pk), "error": str(e)},
            )
            continue
        notifications_pruned += 1 if deleted else 0

    return {
        "pruned_count": pruned_count,
        "notifications_pruned": notifications_pruned,
        "error_count": error_count,
        "cutoff": cutoff.isoformat(),
    }


# =============================================================================
# Periodic Tasks
# =============================================================================


@shared_task(bind=True)
def expire_notifications(self, now: str | None = None) -> dict:
    """Soft-delete notifications past expires_at. See expire_due_notifications."""
    current = resolve_now(now)
    logger.info("Starting notification expiry sweep")

    summary = expire_due_notifications(current)

    logger.info(
        f"Notification expiry sweep complete: expired {summary['expired_count']}",
        extra=summary,
    )
    return summary


@shared_task(bind=True)
def prune_delivery_history(self, now: str | None = None) -> dict:
    """Hard-delete old terminal delivery history. See prune_terminal_deliveries."""
    current = resolve_now(now)
    logger.info("Starting delivery history prune")

    summary = prune_terminal_deliveries(current)

    logger.info(
        f"Delivery history prune complete: pruned {summary['pruned_count']} deliveries",
        extra=summary,
    )
    return summary
