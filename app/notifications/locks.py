"""
Optimistic concurrency for delivery rows.

Every write to a NotificationDelivery after creation goes through
compare_and_set: a conditional UPDATE that only matches when the row
still carries the version the caller read. Zero matched rows means
another worker got there first, and StaleDeliveryError is raised.

Claims are written the same way. A claim sets lease_expires_at; while
the lease is live, no sweep will pick the row up. A worker that dies
mid-attempt leaves an expired lease behind, which the retry sweep
recovers.

Usage:
    from notifications.locks import compare_and_set

    delivery.mark_sent(at=now, provider_message_id="abc")
    compare_and_set(delivery, expected_version, now=now)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db.models import Q

from notifications.enums import DeliveryStatus
from notifications.exceptions import StaleDeliveryError
from notifications.models import NotificationDelivery

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime


def compare_and_set(
    delivery: NotificationDelivery,
    expected_version: int,
    now: datetime,
    fields: Iterable[str] | None = None,
) -> NotificationDelivery:
    """
    Persist ``fields`` of an in-memory delivery if the stored version matches.

    Args:
        delivery: Instance carrying the new field values
        expected_version: Version the caller read before mutating
        now: Write timestamp (stored as updated_at)
        fields: Fields to write (default: NotificationDelivery.TRACKED_FIELDS)

    Returns:
        The same instance with version bumped

    Raises:
        StaleDeliveryError: If the row changed since it was read
    """
    fields = tuple(fields or NotificationDelivery.TRACKED_FIELDS)
    values = {name: getattr(delivery, name) for name in fields}

    updated = NotificationDelivery.objects.filter(
        pk=delivery.pk,
        version=expected_version,
    ).update(
        **values,
        version=expected_version + 1,
        updated_at=now,
    )

    if updated == 0:
        raise StaleDeliveryError(
            f"Delivery {delivery.pk} was modified by another process",
            details={"pk": str(delivery.pk), "expected_version": expected_version},
        )

    delivery.version = expected_version + 1
    delivery.updated_at = now
    return delivery


def acquire_lease(
    delivery: NotificationDelivery,
    now: datetime,
    lease_until: datetime,
) -> NotificationDelivery:
    """
    Claim a PENDING row for an attempt.

    The claim succeeds only if the row is still at the version read and
    no live lease is held.

    Raises:
        StaleDeliveryError: If the row changed or is already claimed
    """
    expected_version = delivery.version
    updated = (
        NotificationDelivery.objects.filter(
            pk=delivery.pk,
            version=expected_version,
            status=DeliveryStatus.PENDING,
        )
        .filter(Q(lease_expires_at__isnull=True) | Q(lease_expires_at__lte=now))
        .update(
            lease_expires_at=lease_until,
            version=expected_version + 1,
            updated_at=now,
        )
    )

    if updated == 0:
        raise StaleDeliveryError(
            f"Delivery {delivery.pk} is already claimed",
            details={"pk": str(delivery.pk), "expected_version": expected_version},
        )

    delivery.lease_expires_at = lease_until
    delivery.version = expected_version + 1
    delivery.updated_at = now
    return delivery
