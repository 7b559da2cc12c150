"""
Tests for DispatchEngine.

Test Classes:
    TestChannelSelection: allowed ∩ enabled, quiet hours, NEVER, urgency
    TestDigestDeferral: Rows parked for the digest aggregator
    TestDispatchOutcomes: Sent / delivered / failed rows
    TestDispatchIdempotency: Re-dispatch reuses rows and leases
    TestAttempt: Version-checked recording of outcomes
"""

from datetime import time, timedelta

from notifications.dispatch import DispatchEngine
from notifications.enums import DeliveryChannel, DeliveryStatus, DigestFrequency, NotificationPriority
from notifications.models import NotificationDelivery
from notifications.tests.conftest import FakeTransport
from notifications.tests.factories import (
    NotificationDeliveryFactory,
    NotificationFactory,
    UserChannelPreferenceFactory,
    UserNotificationPreferenceFactory,
)


def _channels(deliveries):
    return [d.channel for d in deliveries]


class TestChannelSelection:
    """Tests for which channels receive a delivery row."""

    def test_intersection_of_allowed_and_enabled(self, engine, user, email_type):
        """Only channels both allowed by the type and enabled by the user."""
        UserChannelPreferenceFactory(user=user, enabled_channels=["email", "sms", "push"])
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        deliveries = engine.dispatch(notification)

        assert _channels(deliveries) == ["email"]

    def test_canonical_channel_order(self, engine, user, all_channels_type):
        """Rows are created in the fixed channel order, whatever the preference order."""
        UserChannelPreferenceFactory(
            user=user,
            enabled_channels=["webhook", "email", "in_app", "push"],
            device_token="token-1",
            webhook_url="https://hooks.example.com/n",
        )
        notification = NotificationFactory(recipient=user, notification_type=all_channels_type)

        deliveries = engine.dispatch(notification)

        assert _channels(deliveries) == ["in_app", "email", "push", "webhook"]

    def test_default_preferences_use_in_app(self, engine, user, email_type, fake_transports):
        """A user with no preference row gets in-app only."""
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        deliveries = engine.dispatch(notification)

        assert _channels(deliveries) == ["in_app"]
        assert not fake_transports["email"].sent

    def test_nothing_enabled_creates_no_rows(self, engine, user, email_type):
        """A disabled type produces no deliveries."""
        UserChannelPreferenceFactory(user=user)
        UserNotificationPreferenceFactory(user=user, notification_type=email_type, disabled=True)
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        assert engine.dispatch(notification) == []
        assert not NotificationDelivery.objects.filter(notification=notification).exists()

    def test_quiet_hours_narrow_to_in_app(self, engine, user, email_type, fake_transports):
        """During quiet hours non-urgent notifications reach the inbox only."""
        UserChannelPreferenceFactory(
            user=user,
            quiet_hours_enabled=True,
            quiet_hours_start=time(11),
            quiet_hours_end=time(13),
        )
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        deliveries = engine.dispatch(notification)

        assert _channels(deliveries) == ["in_app"]
        assert not fake_transports["email"].calls

    def test_urgent_bypasses_quiet_hours(self, engine, user, email_type):
        UserChannelPreferenceFactory(
            user=user,
            quiet_hours_enabled=True,
            quiet_hours_start=time(11),
            quiet_hours_end=time(13),
        )
        notification = NotificationFactory(
            recipient=user,
            notification_type=email_type,
            priority=NotificationPriority.URGENT,
        )

        assert _channels(engine.dispatch(notification)) == ["in_app", "email"]

    def test_frequency_never_keeps_in_app(self, engine, user, email_type):
        """NEVER silences external channels, not the inbox."""
        UserChannelPreferenceFactory(user=user, frequency=DigestFrequency.NEVER)
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        assert _channels(engine.dispatch(notification)) == ["in_app"]

    def test_urgent_bypasses_frequency_never(self, engine, user, email_type):
        UserChannelPreferenceFactory(user=user, frequency=DigestFrequency.NEVER)
        notification = NotificationFactory(
            recipient=user,
            notification_type=email_type,
            priority=NotificationPriority.URGENT,
        )

        assert _channels(engine.dispatch(notification)) == ["in_app", "email"]

    def test_expired_notification_is_skipped(self, engine, user, email_type, email_prefs, now):
        notification = NotificationFactory(
            recipient=user,
            notification_type=email_type,
            expires_at=now - timedelta(minutes=1),
        )

        assert engine.dispatch(notification) == []


class TestDigestDeferral:
    """Tests for rows deferred to a digest tier."""

    def test_external_channels_deferred(self, engine, user, email_type, fake_transports):
        """A daily-digest user gets email deferred and in-app immediately."""
        UserChannelPreferenceFactory(user=user, frequency=DigestFrequency.DAILY)
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        deliveries = {d.channel: d for d in engine.dispatch(notification)}

        email = deliveries["email"]
        assert email.status == DeliveryStatus.PENDING
        assert email.digest_frequency == DigestFrequency.DAILY
        assert email.lease_expires_at is None
        assert not fake_transports["email"].calls

        in_app = deliveries["in_app"]
        assert in_app.digest_frequency == ""
        assert in_app.status == DeliveryStatus.DELIVERED

    def test_urgent_is_never_deferred(self, engine, user, email_type, fake_transports):
        UserChannelPreferenceFactory(user=user, frequency=DigestFrequency.HOURLY)
        notification = NotificationFactory(
            recipient=user,
            notification_type=email_type,
            priority=NotificationPriority.URGENT,
        )

        deliveries = {d.channel: d for d in engine.dispatch(notification)}

        assert deliveries["email"].digest_frequency == ""
        assert deliveries["email"].status == DeliveryStatus.SENT
        assert len(fake_transports["email"].sent) == 1

    def test_urgent_email_and_push_on_daily_digest(self, engine, user, all_channels_type, fake_transports):
        """Two enabled channels give two rows, both attempted now."""
        UserChannelPreferenceFactory(
            user=user,
            enabled_channels=[DeliveryChannel.EMAIL, DeliveryChannel.PUSH],
            frequency=DigestFrequency.DAILY,
            device_token="device-abc",
        )
        notification = NotificationFactory(
            recipient=user,
            notification_type=all_channels_type,
            priority=NotificationPriority.URGENT,
        )

        deliveries = engine.dispatch(notification)

        assert _channels(deliveries) == ["email", "push"]
        assert all(d.status == DeliveryStatus.SENT for d in deliveries)
        assert fake_transports["email"].calls == 1
        assert fake_transports["push"].calls == 1
        assert fake_transports["push"].sent[0][0].address == "device-abc"


class TestDispatchOutcomes:
    """Tests for the recorded result of immediate attempts."""

    def test_email_stays_sent(self, engine, user, email_type, email_prefs, now, fake_transports):
        """Email waits for a provider receipt before DELIVERED."""
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        deliveries = {d.channel: d for d in engine.dispatch(notification)}

        email = deliveries["email"]
        email.refresh_from_db()
        assert email.status == DeliveryStatus.SENT
        assert email.sent_at == now
        assert email.attempt_count == 1
        assert email.provider_message_id == "email-msg-1"
        assert email.lease_expires_at is None

        recipient, content = fake_transports["email"].sent[0]
        assert recipient.address == user.email
        assert content.subject == notification.title

    def test_in_app_confirmed_on_accept(self, engine, user, email_type, email_prefs, now):
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        engine.dispatch(notification)

        in_app = NotificationDelivery.objects.get(notification=notification, channel="in_app")
        assert in_app.status == DeliveryStatus.DELIVERED
        assert in_app.delivered_at == now

    def test_transport_reporting_delivery(self, now, user, email_type, email_prefs, fake_transports):
        """A transport that confirms delivery moves the row straight to DELIVERED."""
        fake_transports["email"] = FakeTransport("email", delivered=True)
        engine = DispatchEngine(clock=lambda: now, transports=fake_transports)
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        engine.dispatch(notification)

        email = NotificationDelivery.objects.get(notification=notification, channel="email")
        assert email.status == DeliveryStatus.DELIVERED

    def test_transient_failure_schedules_retry(self, engine, user, email_type, email_prefs, now, fake_transports):
        fake_transports["email"].fail_with("timeout")
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        engine.dispatch(notification)

        email = NotificationDelivery.objects.get(notification=notification, channel="email")
        assert email.status == DeliveryStatus.FAILED
        assert email.failure_code == "timeout"
        assert not email.is_permanent_failure
        assert email.retry_count == 0
        assert email.next_retry_at == now + timedelta(seconds=60)
        assert email.is_retryable

    def test_permanent_failure_is_terminal(self, engine, user, email_type, email_prefs, fake_transports):
        fake_transports["email"].fail_with("invalid_email")
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        engine.dispatch(notification)

        email = NotificationDelivery.objects.get(notification=notification, channel="email")
        assert email.status == DeliveryStatus.FAILED
        assert email.is_permanent_failure
        assert email.next_retry_at is None
        assert email.is_terminal

    def test_failure_does_not_affect_other_channels(self, engine, user, email_type, email_prefs, fake_transports):
        fake_transports["email"].fail_with("provider_unavailable")
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        engine.dispatch(notification)

        statuses = dict(
            NotificationDelivery.objects.filter(notification=notification).values_list("channel", "status")
        )
        assert statuses == {"in_app": DeliveryStatus.DELIVERED, "email": DeliveryStatus.FAILED}

    def test_unexpected_exception_is_transient(self, now, user, email_type, email_prefs, fake_transports):
        """A transport bug is recorded as a transient transport_error."""

        class BrokenTransport(FakeTransport):
            def send(self, recipient, content):
                raise RuntimeError("boom")

        fake_transports["email"] = BrokenTransport("email")
        engine = DispatchEngine(clock=lambda: now, transports=fake_transports)
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        engine.dispatch(notification)

        email = NotificationDelivery.objects.get(notification=notification, channel="email")
        assert email.status == DeliveryStatus.FAILED
        assert email.failure_code == "transport_error"
        assert email.next_retry_at is not None

    def test_unconfigured_channel_is_retried(self, now, user, email_type, email_prefs, fake_transports, settings):
        """A missing transport is a deployment fault; the row stays retryable."""
        settings.NOTIFICATION_TRANSPORTS = {"email": ""}
        del fake_transports["email"]
        engine = DispatchEngine(clock=lambda: now, transports=fake_transports)
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        engine.dispatch(notification)

        email = NotificationDelivery.objects.get(notification=notification, channel="email")
        assert email.status == DeliveryStatus.FAILED
        assert email.failure_code == "not_configured"
        assert not email.is_permanent_failure
        assert email.is_retryable
        assert email.next_retry_at == now + timedelta(seconds=60)


class TestDispatchIdempotency:
    """Tests for re-dispatching the same notification."""

    def test_redispatch_reuses_rows(self, engine, user, email_type, email_prefs, fake_transports):
        """A second dispatch neither duplicates rows nor re-sends."""
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        first = engine.dispatch(notification)
        second = engine.dispatch(notification)

        assert {d.id for d in first} == {d.id for d in second}
        assert NotificationDelivery.objects.filter(notification=notification).count() == 2
        assert fake_transports["email"].calls == 1

    def test_redispatch_attempts_unleased_pending_row(self, engine, user, email_type, email_prefs, now, fake_transports):
        """A PENDING row whose lease expired (crashed worker) is attempted again."""
        notification = NotificationFactory(recipient=user, notification_type=email_type)
        NotificationDeliveryFactory(
            notification=notification,
            channel="email",
            lease_expires_at=now - timedelta(minutes=1),
        )

        engine.dispatch(notification)

        email = NotificationDelivery.objects.get(notification=notification, channel="email")
        assert email.status == DeliveryStatus.SENT
        assert fake_transports["email"].calls == 1

    def test_redispatch_skips_live_lease(self, engine, user, email_type, email_prefs, now, fake_transports):
        """A row another worker is attempting is left alone."""
        notification = NotificationFactory(recipient=user, notification_type=email_type)
        NotificationDeliveryFactory(
            notification=notification,
            channel="email",
            lease_expires_at=now + timedelta(minutes=4),
        )

        engine.dispatch(notification)

        email = NotificationDelivery.objects.get(notification=notification, channel="email")
        assert email.status == DeliveryStatus.PENDING
        assert fake_transports["email"].calls == 0


class TestAttempt:
    """Tests for DispatchEngine.attempt()."""

    def test_superseded_outcome_is_discarded(self, now, user, email_type, email_prefs):
        """A row unsubscribed mid-attempt keeps UNSUBSCRIBED."""

        class UnsubscribingTransport(FakeTransport):
            def send(self, recipient, content):
                row = NotificationDelivery.objects.get(pk=self.delivery_id)
                row.unsubscribe(at=now)
                row.save()
                return super().send(recipient, content)

        transport = UnsubscribingTransport("email")
        engine = DispatchEngine(clock=lambda: now, transports={"email": transport})
        notification = NotificationFactory(recipient=user, notification_type=email_type)
        delivery = NotificationDeliveryFactory(
            notification=notification,
            channel="email",
            lease_expires_at=now + timedelta(minutes=5),
        )
        transport.delivery_id = delivery.pk

        result = engine.attempt(delivery)

        assert result.status == DeliveryStatus.UNSUBSCRIBED
        delivery.refresh_from_db()
        assert delivery.status == DeliveryStatus.UNSUBSCRIBED
        assert delivery.sent_at is None

    def test_attempt_bumps_version(self, engine, now, user, email_type, email_prefs):
        notification = NotificationFactory(recipient=user, notification_type=email_type)
        delivery = NotificationDeliveryFactory(notification=notification, channel="email")

        engine.attempt(delivery)

        delivery.refresh_from_db()
        assert delivery.version == 2
        assert delivery.status == DeliveryStatus.SENT
