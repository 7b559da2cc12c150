"""
Celery tasks for notification delivery.

This module provides async tasks for:
- Dispatching a stored notification to its channels
- Retrying failed deliveries (re-exported from workers)
- Sending digests (re-exported from workers)
- Expiring notifications and pruning history (re-exported from workers)

Usage:
    from notifications.tasks import dispatch_notification

    # Re-dispatch a notification whose inline dispatch was interrupted
    dispatch_notification.delay(str(notification.id))

    # Periodic sweeps (normally via celery-beat)
    from notifications.tasks import retry_failed_deliveries
    retry_failed_deliveries.delay()
"""

from __future__ import annotations

import logging

from celery import shared_task
from django.core.exceptions import ValidationError

from notifications.dispatch import DispatchEngine
from notifications.models import Notification
from notifications.workers import (
    expire_notifications,
    prune_delivery_history,
    retry_delivery,
    retry_failed_deliveries,
    run_digest,
)

logger = logging.getLogger(__name__)

__all__ = [
    "dispatch_notification",
    "expire_notifications",
    "prune_delivery_history",
    "retry_delivery",
    "retry_failed_deliveries",
    "run_digest",
]


@shared_task(bind=True, acks_late=True)
def dispatch_notification(self, notification_id: str) -> dict:
    """
    Dispatch (or re-dispatch) a stored notification.

    Idempotent: existing delivery rows are reused and only PENDING rows
    with a free lease are attempted.

    Returns:
        Dict with:
        - status: "dispatched" or "not_found"
        - notification_id: The notification processed
        - deliveries: [{"channel", "status"}, ...]
    """
    try:
        notification = Notification.objects.select_related(
            "notification_type",
            "recipient",
        ).get(pk=notification_id)
    except (Notification.DoesNotExist, ValidationError):
        logger.warning(
            "Notification not found for dispatch",
            extra={"notification_id": str(notification_id)},
        )
        return {"status": "not_found", "notification_id": str(notification_id)}

    deliveries = DispatchEngine().dispatch(notification)

    return {
        "status": "dispatched",
        "notification_id": str(notification.id),
        "deliveries": [
            {"channel": delivery.channel, "status": delivery.status} for delivery in deliveries
        ],
    }
