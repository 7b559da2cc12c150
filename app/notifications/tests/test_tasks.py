"""
Tests for notification Celery tasks and their beat schedules.
"""

import json
from datetime import datetime, timezone as dt_timezone

import pytest
from django_celery_beat.models import PeriodicTask
from freezegun import freeze_time

from config.celery import app as celery_app
from notifications.enums import DeliveryStatus
from notifications.models import NotificationDelivery
from notifications.tasks import dispatch_notification
from notifications.tests.factories import NotificationFactory
from notifications.workers.common import resolve_now


class TestDispatchNotificationTask:
    """Tests for dispatch_notification."""

    def test_dispatches_stored_notification(self, user, email_type, email_prefs, mailoutbox):
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        result = dispatch_notification.delay(str(notification.id)).get()

        assert result["status"] == "dispatched"
        assert result["deliveries"] == [
            {"channel": "in_app", "status": DeliveryStatus.DELIVERED},
            {"channel": "email", "status": DeliveryStatus.SENT},
        ]
        assert len(mailoutbox) == 1

    def test_second_run_is_idempotent(self, user, email_type, email_prefs, mailoutbox):
        notification = NotificationFactory(recipient=user, notification_type=email_type)

        dispatch_notification(str(notification.id))
        dispatch_notification(str(notification.id))

        assert NotificationDelivery.objects.filter(notification=notification).count() == 2
        assert len(mailoutbox) == 1

    @pytest.mark.parametrize("notification_id", ["00000000-0000-0000-0000-000000000000", "not-a-uuid"])
    def test_not_found(self, db, notification_id):
        assert dispatch_notification(notification_id)["status"] == "not_found"


class TestBeatSchedules:
    """Periodic tasks are created by migration and point at registered tasks."""

    def test_schedules_exist(self, db):
        names = set(PeriodicTask.objects.filter(name__startswith="Notifications:").values_list("name", flat=True))

        assert names == {
            "Notifications: Retry Failed Deliveries",
            "Notifications: Hourly Digest",
            "Notifications: Daily Digest",
            "Notifications: Weekly Digest",
            "Notifications: Expire Notifications",
            "Notifications: Prune Delivery History",
        }

    def test_scheduled_tasks_are_registered(self, db):
        registered = set(celery_app.tasks.keys())

        for task in PeriodicTask.objects.filter(name__startswith="Notifications:"):
            assert task.task in registered

    def test_digest_schedules_pass_frequency(self, db):
        weekly = PeriodicTask.objects.get(name="Notifications: Weekly Digest")

        assert json.loads(weekly.kwargs) == {"frequency": "weekly"}
        assert weekly.crontab.day_of_week == "1"

    def test_retry_sweep_every_minute(self, db):
        retry = PeriodicTask.objects.get(name="Notifications: Retry Failed Deliveries")

        assert (retry.interval.every, retry.interval.period) == (1, "minutes")


class TestResolveNow:
    """Sweeps accept an optional ISO ``now``; None means the wall clock."""

    @freeze_time("2026-03-04 12:00:00")
    def test_defaults_to_current_time(self):
        assert resolve_now(None) == datetime(2026, 3, 4, 12, 0, tzinfo=dt_timezone.utc)

    def test_naive_string_is_utc(self):
        assert resolve_now("2026-03-04T08:15:00") == datetime(2026, 3, 4, 8, 15, tzinfo=dt_timezone.utc)

    def test_offset_is_kept(self):
        parsed = resolve_now("2026-03-04T08:15:00+09:00")

        assert parsed == datetime(2026, 3, 3, 23, 15, tzinfo=dt_timezone.utc)

    def test_invalid_string_raises(self):
        with pytest.raises(ValueError):
            resolve_now("yesterday")
