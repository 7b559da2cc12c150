"""
Test configuration and fixtures for notification tests.

This module provides:
- A pinned clock (``now``) for time-window tests
- FakeTransport: records sends, optionally fails, injected into DispatchEngine
- User, type and preference fixtures
- Cache and transport registry isolation between tests

Usage:
    def test_example(user, email_type, engine, fake_transports):
        ...
        assert fake_transports["email"].sent
"""

from datetime import datetime, timezone as dt_timezone

import pytest
from django.core.cache import cache

from notifications.dispatch import DispatchEngine
from notifications.enums import DeliveryChannel
from notifications.exceptions import TransportError
from notifications.transports import BaseTransport, TransportResult, reset_transports
from notifications.tests.factories import (
    NotificationTypeFactory,
    UserChannelPreferenceFactory,
    UserFactory,
)


# =============================================================================
# Fake Transport
# =============================================================================


class FakeTransport(BaseTransport):
    """
    In-memory transport double.

    Attributes:
        sent: [(recipient, content), ...] for every successful send
        calls: Number of send() calls, including failures
        error: TransportError to raise on every call (None = succeed)
        delivered: Returned TransportResult.delivered
    """

    def __init__(self, channel: str, error: TransportError | None = None, delivered: bool = False):
        super().__init__(timeout=1)
        self.channel = channel
        self.error = error
        self.delivered = delivered
        self.sent = []
        self.calls = 0

    def send(self, recipient, content):
        self.calls += 1
        if self.error is not None:
            raise self.error
        self.sent.append((recipient, content))
        return TransportResult(
            provider_message_id=f"{self.channel}-msg-{self.calls}",
            delivered=self.delivered,
        )

    def fail_with(self, code: str, is_permanent: bool | None = None) -> "FakeTransport":
        self.error = TransportError(f"{self.channel} failed: {code}", code=code, is_permanent=is_permanent)
        return self

    def succeed(self) -> "FakeTransport":
        self.error = None
        return self


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _clear_preference_cache():
    """Resolved preferences are cached; user ids can repeat across tests."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture(autouse=True)
def _reset_transport_registry():
    reset_transports()
    yield
    reset_transports()


# =============================================================================
# Clock Fixtures
# =============================================================================


@pytest.fixture
def now():
    """Fixed aware 'current time': Wednesday 2026-03-04 12:00 UTC."""
    return datetime(2026, 3, 4, 12, 0, tzinfo=dt_timezone.utc)


# =============================================================================
# Transport / Engine Fixtures
# =============================================================================


@pytest.fixture
def fake_transports():
    """One FakeTransport per channel, all succeeding."""
    return {channel: FakeTransport(channel) for channel in DeliveryChannel.values}


@pytest.fixture
def engine(now, fake_transports):
    """DispatchEngine with a pinned clock and fake transports."""
    return DispatchEngine(clock=lambda: now, transports=fake_transports)


# =============================================================================
# User / Type Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    """Recipient with an email address and no saved preferences."""
    return UserFactory()


@pytest.fixture
def other_user(db):
    return UserFactory()


@pytest.fixture
def email_type(db):
    """Active type allowed on in-app and email, with placeholders."""
    return NotificationTypeFactory(
        key="grade_update",
        allowed_channels=[DeliveryChannel.IN_APP, DeliveryChannel.EMAIL],
        title_template="Grade posted for {course}",
        body_template="Your grade is {grade}.",
    )


@pytest.fixture
def all_channels_type(db):
    """Active type allowed on every channel."""
    return NotificationTypeFactory(
        key="everything",
        allowed_channels=list(DeliveryChannel.values),
    )


@pytest.fixture
def inactive_type(db):
    return NotificationTypeFactory(key="retired_type", is_active=False)


@pytest.fixture
def email_prefs(user):
    """User accepts in-app and email immediately."""
    return UserChannelPreferenceFactory(
        user=user,
        enabled_channels=[DeliveryChannel.IN_APP, DeliveryChannel.EMAIL],
    )
