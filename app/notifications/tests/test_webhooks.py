"""
API tests for the delivery receipt webhook.

Test Classes:
    TestVerifySignature: HMAC verification helper
    TestDeliveryEventWebhook: POST /api/v1/notifications/webhooks/delivery-events/
"""

import json

import pytest
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from notifications.enums import DeliveryStatus
from notifications.tests.factories import NotificationDeliveryFactory
from notifications.transports.http import sign_payload
from notifications.webhooks import verify_signature

SECRET = "receipt-secret"


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def webhook_secret(settings):
    settings.NOTIFICATION_RECEIPT_WEBHOOK_SECRET = SECRET
    return SECRET


@pytest.fixture
def post_event(api_client, webhook_secret):
    """POST a signed receipt; ``signature`` overrides the computed one."""

    def _post(payload, signature=None):
        body = json.dumps(payload).encode()
        return api_client.post(
            reverse("notifications:delivery-events-webhook"),
            data=body,
            content_type="application/json",
            HTTP_X_NOTIFICATION_SIGNATURE=signature if signature is not None else sign_payload(body, SECRET),
        )

    return _post


class TestVerifySignature:
    def test_valid_prefixed(self):
        assert verify_signature(b"{}", sign_payload(b"{}", SECRET), SECRET)

    def test_valid_bare_hex(self):
        assert verify_signature(b"{}", sign_payload(b"{}", SECRET).removeprefix("sha256="), SECRET)

    def test_wrong_secret(self):
        assert not verify_signature(b"{}", sign_payload(b"{}", "other"), SECRET)

    def test_no_secret_configured(self):
        assert not verify_signature(b"{}", sign_payload(b"{}", ""), "")


class TestDeliveryEventWebhook:
    """Tests for DeliveryEventWebhookView."""

    def test_url(self):
        assert reverse("notifications:delivery-events-webhook") == "/api/v1/notifications/webhooks/delivery-events/"

    def test_applies_receipt(self, db, post_event):
        delivery = NotificationDeliveryFactory(status=DeliveryStatus.SENT, provider_message_id="msg-1")

        response = post_event({"message_id": "msg-1", "event": "delivered"})

        assert response.status_code == status.HTTP_200_OK
        assert [row["id"] for row in response.data] == [str(delivery.id)]
        assert response.data[0]["status"] == DeliveryStatus.DELIVERED
        delivery.refresh_from_db()
        assert delivery.delivered_at is not None

    def test_bounce_with_error(self, db, post_event):
        delivery = NotificationDeliveryFactory(status=DeliveryStatus.SENT, provider_message_id="msg-2")

        response = post_event(
            {
                "message_id": "msg-2",
                "event": "bounced",
                "error_code": "hard_bounce",
                "error_message": "mailbox unavailable",
            }
        )

        assert response.status_code == status.HTTP_200_OK
        delivery.refresh_from_db()
        assert delivery.status == DeliveryStatus.BOUNCED
        assert delivery.failure_reason == "mailbox unavailable"

    def test_bad_signature(self, db, post_event):
        delivery = NotificationDeliveryFactory(status=DeliveryStatus.SENT, provider_message_id="msg-3")

        response = post_event({"message_id": "msg-3", "event": "delivered"}, signature="sha256=deadbeef")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        delivery.refresh_from_db()
        assert delivery.status == DeliveryStatus.SENT

    def test_missing_signature(self, db, post_event):
        response = post_event({"message_id": "msg-3", "event": "delivered"}, signature="")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_invalid_payload(self, db, post_event):
        response = post_event({"message_id": "msg-4", "event": "exploded"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "event" in response.data["details"]

    def test_unknown_message(self, db, post_event):
        response = post_event({"message_id": "nope", "event": "delivered"})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.data["error_code"] == "NOT_FOUND"

    def test_invalid_transition(self, db, post_event):
        NotificationDeliveryFactory(status=DeliveryStatus.PENDING, provider_message_id="msg-5")

        response = post_event({"message_id": "msg-5", "event": "clicked"})

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.data["error_code"] == "INVALID_TRANSITION"

    def test_get_not_allowed(self, db, api_client):
        response = api_client.get(reverse("notifications:delivery-events-webhook"))

        assert response.status_code == status.HTTP_405_METHOD_NOT_ALLOWED
