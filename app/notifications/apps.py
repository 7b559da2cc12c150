"""
Django app configuration for notifications.

The notifications app records notifications, fans them out to delivery
channels, and runs the retry, digest and retention sweeps.
"""

from django.apps import AppConfig


class NotificationsConfig(AppConfig):
    """Configuration for the notification delivery application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "notifications"
    verbose_name = "Notification Delivery"

    def ready(self) -> None:
        """Connect signal handlers when app is ready."""
        from notifications.signals import connect_signals

        connect_signals()
