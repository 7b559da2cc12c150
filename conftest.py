"""
Root pytest configuration for the Django project.

This module configures pytest-django and test-only settings:
- Local-memory cache (preference cache)
- Eager Celery (sweeps queue per-row tasks with .delay())
- In-memory channel layer (in-app WebSocket broadcasts)

App-specific fixtures are defined in each app's tests/conftest.py.
"""

import os

import django

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")


def pytest_configure():
    """Configure Django settings before tests run."""
    django.setup()

    from django.conf import settings

    settings.SECRET_KEY = "test-secret-key-not-for-production"
    settings.SECURE_SSL_REDIRECT = False

    settings.CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "notifications-tests",
        }
    }
    settings.CHANNEL_LAYERS = {
        "default": {"BACKEND": "channels.layers.InMemoryChannelLayer"},
    }

    settings.CELERY_TASK_ALWAYS_EAGER = True
    settings.CELERY_TASK_EAGER_PROPAGATES = True

    from config.celery import app as celery_app

    celery_app.conf.update(task_always_eager=True, task_eager_propagates=True)
