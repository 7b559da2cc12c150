"""
Tests for optimistic concurrency on delivery rows.

Tests compare_and_set and acquire_lease against concurrent writers,
simulated by writing the same row through a second instance.
"""

from datetime import timedelta

import pytest

from notifications.enums import DeliveryStatus
from notifications.exceptions import StaleDeliveryError, TransportError
from notifications.locks import acquire_lease, compare_and_set
from notifications.models import NotificationDelivery
from notifications.tests.factories import NotificationDeliveryFactory


class TestCompareAndSet:
    """Tests for compare_and_set."""

    def test_writes_when_version_matches(self, db, now):
        """The write lands and the version is bumped."""
        delivery = NotificationDeliveryFactory()
        expected = delivery.version

        delivery.mark_sent(at=now, provider_message_id="msg-1")
        compare_and_set(delivery, expected, now=now)

        stored = NotificationDelivery.objects.get(pk=delivery.pk)
        assert stored.status == DeliveryStatus.SENT
        assert stored.provider_message_id == "msg-1"
        assert stored.version == expected + 1
        assert delivery.version == expected + 1

    def test_raises_when_row_changed(self, db, now):
        """A concurrent write makes the caller's write stale."""
        delivery = NotificationDeliveryFactory()
        expected = delivery.version

        # Another worker unsubscribes the row first
        other = NotificationDelivery.objects.get(pk=delivery.pk)
        other.unsubscribe(at=now)
        compare_and_set(other, other.version, now=now)

        delivery.mark_sent(at=now)
        with pytest.raises(StaleDeliveryError) as exc_info:
            compare_and_set(delivery, expected, now=now)

        assert exc_info.value.details["expected_version"] == expected
        stored = NotificationDelivery.objects.get(pk=delivery.pk)
        assert stored.status == DeliveryStatus.UNSUBSCRIBED

    def test_only_one_of_two_retry_claims_wins(self, db, now):
        """Two sweeps requeueing the same row cannot both count a retry."""
        delivery = NotificationDeliveryFactory(status=DeliveryStatus.FAILED, next_retry_at=now)
        first = NotificationDelivery.objects.get(pk=delivery.pk)
        second = NotificationDelivery.objects.get(pk=delivery.pk)

        first.requeue(at=now, lease_until=now + timedelta(minutes=5))
        compare_and_set(first, delivery.version, now=now)

        second.requeue(at=now, lease_until=now + timedelta(minutes=5))
        with pytest.raises(StaleDeliveryError):
            compare_and_set(second, delivery.version, now=now)

        assert NotificationDelivery.objects.get(pk=delivery.pk).retry_count == 1

    def test_limits_write_to_given_fields(self, db, now):
        """Only the listed fields are written."""
        delivery = NotificationDeliveryFactory()
        delivery.mark_failed(at=now, error=TransportError("boom", code="timeout"))

        compare_and_set(delivery, delivery.version, now=now, fields=["failure_code"])

        stored = NotificationDelivery.objects.get(pk=delivery.pk)
        assert stored.failure_code == "timeout"
        assert stored.status == DeliveryStatus.PENDING


class TestAcquireLease:
    """Tests for acquire_lease."""

    def test_claims_free_pending_row(self, db, now):
        """A PENDING row without a lease is claimed."""
        delivery = NotificationDeliveryFactory()
        until = now + timedelta(minutes=5)

        acquire_lease(delivery, now=now, lease_until=until)

        assert NotificationDelivery.objects.get(pk=delivery.pk).lease_expires_at == until

    def test_claims_row_with_expired_lease(self, db, now):
        """An expired lease can be taken over."""
        delivery = NotificationDeliveryFactory(lease_expires_at=now - timedelta(seconds=1))

        acquire_lease(delivery, now=now, lease_until=now + timedelta(minutes=5))

        assert delivery.lease_expires_at == now + timedelta(minutes=5)

    def test_refuses_live_lease(self, db, now):
        """A live lease blocks a second claim."""
        delivery = NotificationDeliveryFactory(lease_expires_at=now + timedelta(minutes=1))

        with pytest.raises(StaleDeliveryError):
            acquire_lease(delivery, now=now, lease_until=now + timedelta(minutes=5))

    def test_refuses_non_pending_row(self, db, now):
        """Only PENDING rows can be claimed."""
        delivery = NotificationDeliveryFactory(status=DeliveryStatus.SENT)

        with pytest.raises(StaleDeliveryError):
            acquire_lease(delivery, now=now, lease_until=now + timedelta(minutes=5))
