"""
Celery configuration for the notification delivery service.

Celery runs:
- Per-notification dispatch and per-row retries (notifications queue)
- Periodic sweeps scheduled by django-celery-beat: retry, digests,
  expiry and history pruning

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps.

Usage:
    from notifications.tasks import dispatch_notification

    dispatch_notification.delay(str(notification.id))

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# Load configuration from Django settings
# All Celery settings should be prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Looks for tasks.py in each installed app; the sweeps in
# notifications.workers are registered through notifications.tasks
app.autodiscover_tasks()
