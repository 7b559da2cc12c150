"""
Tests for the digest aggregator.

Test Classes:
    TestAggregateDigests: One digest per (user, channel, tier)
    TestDigestFailures: Transient vs permanent transport failures, retry budget, receipts
    TestClaiming: Batch claims and abandoned batch recovery
"""

from datetime import timedelta

import pytest

from notifications.enums import DeliveryStatus, DigestBatchStatus, DigestFrequency
from notifications.models import DigestBatch, NotificationDelivery
from notifications.services import NotificationService
from notifications.tests.factories import (
    DigestBatchFactory,
    NotificationDeliveryFactory,
    NotificationFactory,
    UserChannelPreferenceFactory,
)
from notifications.workers.digest_aggregator import (
    aggregate_digests,
    claim_digest_rows,
    release_abandoned_batches,
    run_digest,
    send_digest,
)


def _deferred(user, frequency=DigestFrequency.DAILY, channel="email", **notification_kwargs):
    notification = NotificationFactory(recipient=user, **notification_kwargs)
    return NotificationDeliveryFactory(
        notification=notification,
        channel=channel,
        digest_frequency=frequency,
    )


@pytest.fixture
def daily_user(user):
    UserChannelPreferenceFactory(user=user, frequency=DigestFrequency.DAILY)
    return user


class TestAggregateDigests:
    """Tests for aggregate_digests()."""

    def test_one_message_per_user_and_channel(self, daily_user, now, fake_transports):
        """Three deferred rows produce one transport call."""
        rows = [_deferred(daily_user, title=f"Item {i}") for i in range(3)]

        summary = aggregate_digests(DigestFrequency.DAILY, now, fake_transports)

        assert summary == {
            "frequency": DigestFrequency.DAILY,
            "released_count": 0,
            "batch_count": 1,
            "sent_count": 1,
            "failed_count": 0,
        }
        assert fake_transports["email"].calls == 1
        recipient, content = fake_transports["email"].sent[0]
        assert recipient.address == daily_user.email
        assert content.data["count"] == 3
        assert content.subject == "Your daily summary: 3 new notifications"

        batch = DigestBatch.objects.get()
        assert batch.status == DigestBatchStatus.SENT
        assert batch.notification_count == 3
        assert batch.provider_message_id == "email-msg-1"
        for row in rows:
            row.refresh_from_db()
            assert row.status == DeliveryStatus.SENT
            assert row.digest_batch_id == batch.id
            assert row.provider_message_id == "email-msg-1"
            assert row.attempt_count == 1

    def test_dispatch_then_digest(self, daily_user, email_type, engine, now, fake_transports):
        """Rows deferred by the dispatch engine are picked up by their tier."""
        for _ in range(2):
            engine.dispatch(NotificationFactory(recipient=daily_user, notification_type=email_type))
        assert fake_transports["email"].calls == 0

        aggregate_digests(DigestFrequency.DAILY, now, fake_transports)

        assert fake_transports["email"].calls == 1
        assert fake_transports["email"].sent[0][1].data["count"] == 2

    def test_other_tiers_untouched(self, daily_user, now, fake_transports):
        _deferred(daily_user)

        summary = aggregate_digests(DigestFrequency.WEEKLY, now, fake_transports)

        assert summary["batch_count"] == 0
        assert not fake_transports["email"].calls

    def test_no_rows_no_digest(self, db, now, fake_transports):
        """Nothing pending means nothing is sent and no batch is created."""
        summary = aggregate_digests(DigestFrequency.HOURLY, now, fake_transports)

        assert summary["batch_count"] == 0
        assert not DigestBatch.objects.exists()

    def test_separate_users_and_channels(self, daily_user, other_user, now, fake_transports):
        UserChannelPreferenceFactory(user=other_user, frequency=DigestFrequency.DAILY)
        _deferred(daily_user, channel="email")
        _deferred(daily_user, channel="slack")
        _deferred(other_user, channel="email")

        summary = aggregate_digests(DigestFrequency.DAILY, now, fake_transports)

        assert summary["batch_count"] == 3
        assert fake_transports["email"].calls == 2
        assert fake_transports["slack"].calls == 1

    def test_confirm_on_accept_channel_marks_delivered(self, daily_user, now, fake_transports):
        row = _deferred(daily_user, channel="slack")

        aggregate_digests(DigestFrequency.DAILY, now, fake_transports)

        row.refresh_from_db()
        assert row.status == DeliveryStatus.DELIVERED
        assert row.delivered_at == now

    def test_expired_notifications_excluded(self, daily_user, now, fake_transports):
        _deferred(daily_user, title="Live")
        _deferred(daily_user, title="Stale", expires_at=now - timedelta(minutes=1))

        aggregate_digests(DigestFrequency.DAILY, now, fake_transports)

        _, content = fake_transports["email"].sent[0]
        assert content.data["count"] == 1
        assert "Live" in content.body

    def test_item_limit_from_preferences(self, user, now, fake_transports):
        UserChannelPreferenceFactory(user=user, frequency=DigestFrequency.DAILY, digest_max_items=2)
        for i in range(4):
            _deferred(user, title=f"Item {i}")

        aggregate_digests(DigestFrequency.DAILY, now, fake_transports)

        _, content = fake_transports["email"].sent[0]
        assert content.body.splitlines()[-1] == "...and 2 more"

    def test_rejects_non_digest_frequency(self, db, now):
        with pytest.raises(ValueError):
            aggregate_digests(DigestFrequency.IMMEDIATE, now)

    def test_task_uses_registry(self, daily_user, now, mailoutbox):
        """run_digest sends through the configured email transport."""
        _deferred(daily_user)
        _deferred(daily_user)

        summary = run_digest(DigestFrequency.DAILY, now=now.isoformat())

        assert summary["sent_count"] == 1
        assert len(mailoutbox) == 1
        assert mailoutbox[0].to == [daily_user.email]
        assert mailoutbox[0].subject == "Your daily summary: 2 new notifications"


class TestDigestFailures:
    """Tests for digest transport failures."""

    def test_transient_failure_releases_rows(self, daily_user, now, fake_transports):
        """Rows return to the queue and go out with the next run."""
        row = _deferred(daily_user)
        fake_transports["email"].fail_with("rate_limited")

        summary = aggregate_digests(DigestFrequency.DAILY, now, fake_transports)

        assert summary["failed_count"] == 1
        row.refresh_from_db()
        assert row.status == DeliveryStatus.PENDING
        assert row.digest_batch_id is None
        assert row.failure_code == "rate_limited"
        assert row.retry_count == 1
        assert DigestBatch.objects.get().status == DigestBatchStatus.FAILED

        fake_transports["email"].succeed()
        summary = aggregate_digests(DigestFrequency.DAILY, now + timedelta(days=1), fake_transports)

        assert summary["sent_count"] == 1
        row.refresh_from_db()
        assert row.status == DeliveryStatus.SENT

    def test_transient_failures_exhaust_budget(self, daily_user, now, fake_transports, settings):
        """Repeated transient failures end in a terminal FAILED row."""
        settings.NOTIFICATION_RETRY_BUDGET = 2
        row = _deferred(daily_user)
        fake_transports["email"].fail_with("provider_unavailable")

        for day in range(4):
            aggregate_digests(DigestFrequency.DAILY, now + timedelta(days=day), fake_transports)

        row.refresh_from_db()
        assert row.status == DeliveryStatus.FAILED
        assert row.retry_count == 2
        assert row.attempt_count == 3
        assert row.next_retry_at is None
        assert row.failed_at == now + timedelta(days=2)
        assert not row.is_permanent_failure
        assert row.is_terminal
        assert fake_transports["email"].calls == 3

    def test_rows_at_budget_fail_while_others_release(self, daily_user, now, fake_transports, settings):
        settings.NOTIFICATION_RETRY_BUDGET = 1
        fresh = _deferred(daily_user)
        spent = _deferred(daily_user)
        NotificationDelivery.objects.filter(pk=spent.pk).update(retry_count=1)
        fake_transports["email"].fail_with("timeout")

        aggregate_digests(DigestFrequency.DAILY, now, fake_transports)

        fresh.refresh_from_db()
        spent.refresh_from_db()
        assert (fresh.status, fresh.retry_count) == (DeliveryStatus.PENDING, 1)
        assert (spent.status, spent.retry_count) == (DeliveryStatus.FAILED, 1)
        assert spent.is_terminal

    def test_receipt_reaches_every_row_of_the_digest(self, daily_user, now, fake_transports):
        """One provider message id covers the whole batch."""
        rows = [_deferred(daily_user, title=f"Item {i}") for i in range(3)]
        aggregate_digests(DigestFrequency.DAILY, now, fake_transports)
        message_id = DigestBatch.objects.get().provider_message_id

        result = NotificationService.record_delivery_event(message_id, "bounced", now=now)

        assert result.success
        assert len(result.data) == 3
        for row in rows:
            row.refresh_from_db()
            assert row.status == DeliveryStatus.BOUNCED
            assert row.is_permanent_failure

    def test_permanent_failure_fails_rows(self, daily_user, now, fake_transports):
        row = _deferred(daily_user)
        fake_transports["email"].fail_with("invalid_email")

        aggregate_digests(DigestFrequency.DAILY, now, fake_transports)

        row.refresh_from_db()
        assert row.status == DeliveryStatus.FAILED
        assert row.is_permanent_failure
        assert row.is_terminal


class TestClaiming:
    """Tests for claim_digest_rows() and release_abandoned_batches()."""

    def test_claimed_rows_not_claimed_twice(self, daily_user, now):
        _deferred(daily_user)
        _deferred(daily_user)

        first = claim_digest_rows(daily_user.pk, "email", DigestFrequency.DAILY, now)
        second = claim_digest_rows(daily_user.pk, "email", DigestFrequency.DAILY, now)

        assert first.notification_count == 2
        assert second is None
        assert DigestBatch.objects.count() == 1

    def test_window_start_is_oldest_notification(self, daily_user, now):
        row = _deferred(daily_user)

        batch = claim_digest_rows(daily_user.pk, "email", DigestFrequency.DAILY, now)

        assert batch.window_start == row.notification.created_at
        assert batch.window_end == now

    def test_abandoned_batch_released(self, daily_user, now):
        row = _deferred(daily_user)
        batch = DigestBatchFactory(user=daily_user)
        NotificationDelivery.objects.filter(pk=row.pk).update(
            digest_batch=batch,
            lease_expires_at=now - timedelta(seconds=1),
        )

        assert release_abandoned_batches(now) == 1

        row.refresh_from_db()
        batch.refresh_from_db()
        assert row.digest_batch_id is None
        assert batch.status == DigestBatchStatus.FAILED
        assert batch.failure_code == "lease_expired"

    def test_live_batch_kept(self, daily_user, now):
        row = _deferred(daily_user)
        batch = DigestBatchFactory(user=daily_user)
        NotificationDelivery.objects.filter(pk=row.pk).update(
            digest_batch=batch,
            lease_expires_at=now + timedelta(minutes=1),
        )

        assert release_abandoned_batches(now) == 0

    def test_send_empty_batch(self, daily_user, now, fake_transports):
        """A batch whose rows were taken elsewhere sends nothing."""
        batch = DigestBatchFactory(user=daily_user)

        batch = send_digest(batch, now, fake_transports["email"])

        assert batch.status == DigestBatchStatus.FAILED
        assert batch.failure_code == "empty"
        assert not fake_transports["email"].calls
