"""
Channel transports.

Each DeliveryChannel maps to a transport class by dotted path. The
defaults below can be overridden per channel with the
NOTIFICATION_TRANSPORTS setting, e.g. to point email at a test double:

    NOTIFICATION_TRANSPORTS = {
        "email": "myproject.transports.ConsoleTransport",
    }

Usage:
    from notifications.transports import get_transport

    transport = get_transport("email")
    result = transport.send(recipient, content)
"""

from __future__ import annotations

from django.conf import settings
from django.utils.module_loading import import_string

from notifications.enums import DeliveryChannel
from notifications.exceptions import TransportError
from notifications.transports.base import BaseTransport, Recipient, TransportResult

__all__ = [
    "BaseTransport",
    "DEFAULT_TRANSPORTS",
    "Recipient",
    "TransportResult",
    "get_transport",
    "reset_transports",
]

DEFAULT_TRANSPORTS = {
    DeliveryChannel.IN_APP: "notifications.transports.in_app.InAppTransport",
    DeliveryChannel.EMAIL: "notifications.transports.email.EmailTransport",
    DeliveryChannel.PUSH: "notifications.transports.http.PushTransport",
    DeliveryChannel.SMS: "notifications.transports.http.SmsTransport",
    DeliveryChannel.SLACK: "notifications.transports.http.SlackTransport",
    DeliveryChannel.DISCORD: "notifications.transports.http.DiscordTransport",
    DeliveryChannel.WEBHOOK: "notifications.transports.http.WebhookTransport",
}

_instances: dict[str, BaseTransport] = {}


def get_transport(channel: str) -> BaseTransport:
    """
    Return the transport instance for a channel.

    Raises:
        TransportError: If no transport is configured (transient)
    """
    paths = {**DEFAULT_TRANSPORTS, **getattr(settings, "NOTIFICATION_TRANSPORTS", {})}
    path = paths.get(channel)
    if not path:
        raise TransportError(
            f"No transport configured for channel {channel!r}",
            code="not_configured",
        )

    if path not in _instances:
        transport = import_string(path)()
        transport.channel = transport.channel or channel
        _instances[path] = transport
    return _instances[path]


def reset_transports() -> None:
    """Drop cached transport instances (after settings change)."""
    _instances.clear()
