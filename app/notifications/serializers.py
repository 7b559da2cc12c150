"""
Serializers for the notification receipt webhook.

Serializers:
    DeliveryEventRequestSerializer: Provider receipt payload
    NotificationDeliverySerializer: Delivery status details
    WebhookErrorResponseSerializer: Error response body

Usage:
    from notifications.serializers import NotificationDeliverySerializer

    serializer = NotificationDeliverySerializer(delivery)
    data = serializer.data
"""

from __future__ import annotations

from rest_framework import serializers

from notifications.enums import DeliveryEvent
from notifications.models import NotificationDelivery


# ============================================================================
# Webhook Serializers
# ============================================================================


class DeliveryEventRequestSerializer(serializers.Serializer):
    """Request body for the delivery receipt webhook."""

    message_id = serializers.CharField(
        max_length=255,
        help_text="Provider message ID for correlation",
    )
    event = serializers.ChoiceField(
        choices=DeliveryEvent.choices,
        help_text="Delivery event type",
    )
    error_code = serializers.CharField(
        required=False,
        allow_null=True,
        allow_blank=True,
        max_length=50,
        help_text="Error code for bounced/failed events",
    )
    error_message = serializers.CharField(
        required=False,
        allow_null=True,
        allow_blank=True,
        help_text="Error message for bounced/failed events",
    )


class WebhookErrorResponseSerializer(serializers.Serializer):
    """Error response from webhooks."""

    error = serializers.CharField(help_text="Error description")
    error_code = serializers.CharField(required=False, help_text="Machine-readable error code")


# ============================================================================
# Delivery Serializers
# ============================================================================


class NotificationDeliverySerializer(serializers.ModelSerializer):
    """
    Serializer for NotificationDelivery model.

    Read-only serializer showing delivery status for a channel.

    Fields:
        id: Delivery UUID
        notification: Notification UUID
        channel: Delivery channel
        status: Current status
        retry_count: Automatic re-attempts made so far
        next_retry_at: When the next retry is due (if any)
        failure_code / failure_reason: Last failure details
    """

    class Meta:
        model = NotificationDelivery
        fields = [
            "id",
            "notification",
            "channel",
            "status",
            "retry_count",
            "attempt_count",
            "next_retry_at",
            "last_attempt_at",
            "sent_at",
            "delivered_at",
            "opened_at",
            "clicked_at",
            "bounced_at",
            "failed_at",
            "failure_code",
            "failure_reason",
        ]
        read_only_fields = fields
