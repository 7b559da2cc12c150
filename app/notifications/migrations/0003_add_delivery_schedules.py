"""
Add Celery Beat schedules for notification delivery sweeps.

This migration creates periodic task schedules for:
- Retry sweep (failed deliveries and expired leases)
- Digest aggregation (hourly, daily, weekly)
- Retention (notification expiry, delivery history prune)
"""

import json

from django.db import migrations

TASK_NAMES = [
    "Notifications: Retry Failed Deliveries",
    "Notifications: Hourly Digest",
    "Notifications: Daily Digest",
    "Notifications: Weekly Digest",
    "Notifications: Expire Notifications",
    "Notifications: Prune Delivery History",
]


def create_periodic_tasks(apps, schema_editor):
    """Create periodic tasks for notification delivery."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    CrontabSchedule = apps.get_model("django_celery_beat", "CrontabSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    # =========================================================================
    # Interval Schedules
    # =========================================================================

    schedule_1min, _ = IntervalSchedule.objects.get_or_create(
        every=1,
        period="minutes",
    )

    schedule_15min, _ = IntervalSchedule.objects.get_or_create(
        every=15,
        period="minutes",
    )

    # =========================================================================
    # Crontab Schedules
    # =========================================================================

    crontab_hourly, _ = CrontabSchedule.objects.get_or_create(
        minute="0",
        hour="*",
        day_of_week="*",
        day_of_month="*",
        month_of_year="*",
    )

    # Daily at midnight UTC
    crontab_daily_midnight, _ = CrontabSchedule.objects.get_or_create(
        minute="0",
        hour="0",
        day_of_week="*",
        day_of_month="*",
        month_of_year="*",
    )

    # Weekly on Monday at midnight UTC
    crontab_weekly_mon, _ = CrontabSchedule.objects.get_or_create(
        minute="0",
        hour="0",
        day_of_week="1",
        day_of_month="*",
        month_of_year="*",
    )

    # Daily at 3 AM UTC
    crontab_daily_3am, _ = CrontabSchedule.objects.get_or_create(
        minute="0",
        hour="3",
        day_of_week="*",
        day_of_month="*",
        month_of_year="*",
    )

    # =========================================================================
    # Periodic Tasks - Retry
    # =========================================================================

    PeriodicTask.objects.get_or_create(
        name="Notifications: Retry Failed Deliveries",
        defaults={
            "task": "notifications.workers.retry_scheduler.retry_failed_deliveries",
            "interval": schedule_1min,
            "enabled": True,
            "description": (
                "Recovers deliveries whose in-flight lease expired and queues "
                "failed deliveries whose backoff has elapsed."
            ),
        },
    )

    # =========================================================================
    # Periodic Tasks - Digests
    # =========================================================================

    for name, frequency, crontab in (
        ("Notifications: Hourly Digest", "hourly", crontab_hourly),
        ("Notifications: Daily Digest", "daily", crontab_daily_midnight),
        ("Notifications: Weekly Digest", "weekly", crontab_weekly_mon),
    ):
        PeriodicTask.objects.get_or_create(
            name=name,
            defaults={
                "task": "notifications.workers.digest_aggregator.run_digest",
                "crontab": crontab,
                "kwargs": json.dumps({"frequency": frequency}),
                "enabled": True,
                "description": (
                    f"Sends one {frequency} digest per user and channel for "
                    "deliveries deferred to that tier."
                ),
            },
        )

    # =========================================================================
    # Periodic Tasks - Retention
    # =========================================================================

    PeriodicTask.objects.get_or_create(
        name="Notifications: Expire Notifications",
        defaults={
            "task": "notifications.workers.retention_sweeper.expire_notifications",
            "interval": schedule_15min,
            "enabled": True,
            "description": "Soft-deletes notifications whose expires_at has passed.",
        },
    )

    PeriodicTask.objects.get_or_create(
        name="Notifications: Prune Delivery History",
        defaults={
            "task": "notifications.workers.retention_sweeper.prune_delivery_history",
            "crontab": crontab_daily_3am,
            "enabled": True,
            "description": (
                "Hard-deletes terminal delivery rows older than the retention "
                "window (default 90 days)."
            ),
        },
    )


def remove_periodic_tasks(apps, schema_editor):
    """Remove notification periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(name__in=TASK_NAMES).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("notifications", "0002_seed_notification_types"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
