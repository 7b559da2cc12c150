"""
Pytest configuration shared by all apps.

Provides:
- Test-speed settings (throttling off, fast password hasher)
- Automatic unit/integration markers by test file name
"""

import pytest


def pytest_configure():
    """Tune settings for test speed."""
    from django.conf import settings

    # Disable throttling during tests to prevent rate limit failures
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

    # Use fast password hasher for tests (PBKDF2 is too slow with 870K iterations)
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full notification journeys)
    - test_services.py, test_dispatch.py, test_webhooks.py, etc. → integration
    - test_models.py, test_locks.py, test_rendering.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_services.py",
        "test_dispatch.py",
        "test_tasks.py",
        "test_webhooks.py",
        "test_retry_scheduler.py",
        "test_digest_aggregator.py",
        "test_retention_sweeper.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_locks.py",
        "test_preferences.py",
        "test_rendering.py",
        "test_policies.py",
        "test_transports.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filename = str(item.fspath).split("/")[-1]

        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            # Default: integration (safe for Django where most tests hit DB)
            item.add_marker(pytest.mark.integration)
