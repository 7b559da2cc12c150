"""
Django signals for the notifications app.

Provides handlers for:
- Preference cache invalidation on any preference write (services,
  admin, fixtures)
"""

from __future__ import annotations

import logging

from django.db.models.signals import post_delete, post_save

logger = logging.getLogger(__name__)


def connect_signals():
    """
    Connect all signal handlers.

    Called from NotificationsConfig.ready() to ensure signals are
    connected after all models are loaded.
    """
    from notifications.models import (
        UserCategoryPreference,
        UserChannelPreference,
        UserNotificationPreference,
    )

    for model in (UserChannelPreference, UserCategoryPreference, UserNotificationPreference):
        post_save.connect(
            invalidate_preference_cache,
            sender=model,
            dispatch_uid=f"notif_pref_saved_{model.__name__}",
        )
        post_delete.connect(
            invalidate_preference_cache,
            sender=model,
            dispatch_uid=f"notif_pref_deleted_{model.__name__}",
        )

    logger.debug("Notification signals connected")


def invalidate_preference_cache(sender, instance, **kwargs) -> None:
    """Drop the cached preference resolutions of the preference's user."""
    from notifications.preferences import PreferenceResolver

    PreferenceResolver.invalidate_cache(instance.user_id)
