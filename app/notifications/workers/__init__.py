"""
Workers for async notification processing.

This module contains Celery tasks for background delivery operations:
- RetryScheduler: Re-attempts failed deliveries within the retry budget
- DigestAggregator: Sends hourly/daily/weekly digests of deferred deliveries
- RetentionSweeper: Expires notifications and prunes old delivery history

Usage:
    from notifications.workers import (
        retry_failed_deliveries,
        retry_delivery,
        run_digest,
        expire_notifications,
        prune_delivery_history,
    )

    # Trigger manual processing
    retry_failed_deliveries.delay()
    run_digest.delay("daily")

    # Pin the clock (ISO string)
    expire_notifications.delay(now="2026-01-01T00:00:00+00:00")
"""

from notifications.workers.digest_aggregator import run_digest
from notifications.workers.retention_sweeper import (
    expire_notifications,
    prune_delivery_history,
)
from notifications.workers.retry_scheduler import (
    retry_delivery,
    retry_failed_deliveries,
)

__all__ = [
    # Retry Scheduler
    "retry_delivery",
    "retry_failed_deliveries",
    # Digest Aggregator
    "run_digest",
    # Retention Sweeper
    "expire_notifications",
    "prune_delivery_history",
]
