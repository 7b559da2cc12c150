"""
Webhook endpoint for provider delivery receipts.

Push, SMS and email providers report what happened to a message after
they accepted it: delivered, opened, clicked, bounced, failed. The
receipt is correlated to delivery rows by provider_message_id (every row
of a digest shares one id) and applied through
NotificationService.record_delivery_event.

Endpoints:
    POST /api/v1/notifications/webhooks/delivery-events/

Security:
    - Requests require an HMAC-SHA256 signature of the raw body in the
      X-Notification-Signature header (hex, optionally "sha256=" prefixed)
    - Signatures are validated against NOTIFICATION_RECEIPT_WEBHOOK_SECRET
    - Invalid signatures return 401 Unauthorized

Usage:
    # In urls.py
    from notifications.webhooks import DeliveryEventWebhookView

    urlpatterns = [
        path(
            "webhooks/delivery-events/",
            DeliveryEventWebhookView.as_view(),
            name="delivery-events-webhook",
        ),
    ]
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from django.conf import settings

from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from drf_spectacular.utils import OpenApiResponse, extend_schema

from notifications.serializers import (
    DeliveryEventRequestSerializer,
    NotificationDeliverySerializer,
    WebhookErrorResponseSerializer,
)
from notifications.services import NotificationService
from notifications.transports.http import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

# ServiceResult error codes -> HTTP status
ERROR_STATUS = {
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INVALID_EVENT": status.HTTP_400_BAD_REQUEST,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "STALE_DELIVERY": status.HTTP_409_CONFLICT,
}


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify an HMAC-SHA256 signature of the raw request body.

    Returns:
        True if signature is valid
    """
    if not secret:
        logger.warning("Receipt webhook secret not configured, rejecting request")
        return False

    if signature.startswith("sha256="):
        signature = signature[len("sha256=") :]

    expected = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected, signature)


class DeliveryEventWebhookView(APIView):
    """
    Provider delivery receipt webhook.

    Requires HMAC-SHA256 signature verification via X-Notification-Signature.
    """

    permission_classes = [AllowAny]
    authentication_classes = []  # No auth required - signature-based validation

    @extend_schema(
        operation_id="notification_delivery_event_webhook",
        summary="Delivery receipt callback",
        description=(
            "Webhook endpoint for providers to report delivery events "
            "(delivered, opened, clicked, bounced, failed). Requires HMAC-SHA256 "
            "signature verification using the X-Notification-Signature header."
        ),
        request=DeliveryEventRequestSerializer,
        responses={
            200: NotificationDeliverySerializer(many=True),
            400: OpenApiResponse(
                response=WebhookErrorResponseSerializer,
                description="Invalid request payload",
            ),
            401: OpenApiResponse(
                response=WebhookErrorResponseSerializer,
                description="Invalid or missing signature",
            ),
            404: OpenApiResponse(
                response=WebhookErrorResponseSerializer,
                description="Delivery record not found",
            ),
            409: OpenApiResponse(
                response=WebhookErrorResponseSerializer,
                description="Event not allowed from the delivery's current status",
            ),
        },
        tags=["Notifications - Webhooks"],
    )
    def post(self, request):
        """Handle a delivery receipt."""
        signature = request.headers.get(SIGNATURE_HEADER, "")
        secret = getattr(settings, "NOTIFICATION_RECEIPT_WEBHOOK_SECRET", "")

        if not verify_signature(request.body, signature, secret):
            logger.warning("Receipt webhook signature verification failed")
            return Response(
                {"error": "Invalid signature"},
                status=status.HTTP_401_UNAUTHORIZED,
            )

        serializer = DeliveryEventRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(
                {"error": "Invalid payload", "details": serializer.errors},
                status=status.HTTP_400_BAD_REQUEST,
            )

        data = serializer.validated_data
        result = NotificationService.record_delivery_event(
            provider_message_id=data["message_id"],
            event=data["event"],
            error_code=data.get("error_code") or None,
            error_message=data.get("error_message") or None,
        )

        if not result:
            return Response(
                {"error": result.error, "error_code": result.error_code},
                status=ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
            )

        return Response(NotificationDeliverySerializer(result.data, many=True).data)
