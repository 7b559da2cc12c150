"""
In-app transport.

The notification row itself is the in-app message, so acceptance is
delivery. When the recipient has an open WebSocket, the notification
is also pushed to their group ``notifications_{user_id}``.
"""

from __future__ import annotations

import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from notifications.enums import DeliveryChannel
from notifications.transports.base import BaseTransport, TransportResult

logger = logging.getLogger(__name__)


def user_group_name(user_id: int) -> str:
    return f"notifications_{user_id}"


class InAppTransport(BaseTransport):
    channel = DeliveryChannel.IN_APP

    def send(self, recipient, content):
        channel_layer = get_channel_layer()
        if channel_layer is not None:
            try:
                async_to_sync(channel_layer.group_send)(
                    user_group_name(recipient.user_id),
                    {
                        "type": "notification.message",
                        "subject": content.subject,
                        "body": content.body,
                        "data": content.data,
                    },
                )
            except Exception as e:
                # Live push is best effort; the stored row is the delivery
                logger.warning(
                    f"WebSocket broadcast failed for user {recipient.user_id}: {e}",
                    extra={"user_id": recipient.user_id},
                )

        return TransportResult(
            provider_message_id=content.data.get("notification_id"),
            delivered=True,
        )
