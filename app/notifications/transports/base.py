"""
Transport interface.

A transport makes exactly one delivery attempt per send() call. It
returns a TransportResult when the provider accepted the message and
raises TransportError otherwise. Transports never touch delivery rows;
recording the outcome is the dispatch engine's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.conf import settings

if TYPE_CHECKING:
    from notifications.rendering import RenderedContent


@dataclass(frozen=True)
class Recipient:
    """
    Who to deliver to on one channel.

    Attributes:
        user_id: Recipient user pk
        address: Channel address (email, phone number, device token, URL);
            empty for in-app
    """

    user_id: int
    address: str = ""


@dataclass(frozen=True)
class TransportResult:
    """
    Attributes:
        provider_message_id: Provider reference used to correlate receipts
        delivered: True if the provider confirmed final delivery on accept
    """

    provider_message_id: str | None = None
    delivered: bool = False


class BaseTransport:
    """Base class for channel transports."""

    channel: str = ""

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout or getattr(settings, "NOTIFICATION_TRANSPORT_TIMEOUT_SECONDS", 10)

    def send(self, recipient: Recipient, content: RenderedContent) -> TransportResult:
        """
        Attempt delivery once.

        Raises:
            TransportError: If the attempt failed
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(channel={self.channel!r}, timeout={self.timeout})"
