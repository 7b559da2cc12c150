"""
HTTP transports: push gateway, SMS gateway, Slack, Discord, webhooks.

All of them POST a JSON body with ``requests`` and a bounded timeout,
then classify the outcome:

    timeout                 -> timeout (transient)
    connection failure      -> connection_error (transient)
    429                     -> rate_limited (transient)
    5xx                     -> provider_unavailable (transient)
    404 / 410               -> unregistered (permanent)
    other 4xx               -> rejected (permanent)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging

import requests
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder

from notifications.enums import DeliveryChannel
from notifications.exceptions import TransportError
from notifications.transports.base import BaseTransport, TransportResult

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Notification-Signature"

# SMS bodies longer than this are truncated (10 concatenated segments)
SMS_MAX_LENGTH = 1530


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature in the ``sha256=<hex>`` form."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class HttpTransport(BaseTransport):
    """Base for transports that deliver with one JSON POST."""

    def build_payload(self, recipient, content) -> dict:
        raise NotImplementedError

    def get_url(self, recipient) -> str:
        return recipient.address

    def get_headers(self, body: bytes) -> dict[str, str]:
        return {}

    def send(self, recipient, content):
        url = self.get_url(recipient)
        if not url:
            raise TransportError(
                f"No {self.channel} destination for user {recipient.user_id}",
                code="no_address",
            )

        response = self.post(url, self.build_payload(recipient, content))
        return TransportResult(provider_message_id=self.get_message_id(response))

    def post(self, url: str, payload: dict) -> requests.Response:
        body = json.dumps(payload, cls=DjangoJSONEncoder).encode()
        headers = {"Content-Type": "application/json", **self.get_headers(body)}

        try:
            response = requests.post(url, data=body, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransportError(f"{self.channel} request timed out", code="timeout") from e
        except requests.ConnectionError as e:
            raise TransportError(
                f"{self.channel} connection failed: {e}",
                code="connection_error",
            ) from e
        except requests.RequestException as e:
            raise TransportError(f"{self.channel} request failed: {e}") from e

        status = response.status_code
        if status < 400:
            return response

        details = {"status_code": status, "response": response.text[:500]}
        if status == 429:
            raise TransportError(f"{self.channel} rate limited", code="rate_limited", details=details)
        if status >= 500:
            raise TransportError(
                f"{self.channel} provider unavailable ({status})",
                code="provider_unavailable",
                details=details,
            )
        if status in (404, 410):
            raise TransportError(
                f"{self.channel} destination no longer exists ({status})",
                code="unregistered",
                details=details,
            )
        raise TransportError(
            f"{self.channel} provider rejected the message ({status})",
            code="rejected",
            details=details,
        )

    @staticmethod
    def get_message_id(response: requests.Response) -> str | None:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        for key in ("message_id", "id", "sid"):
            if body.get(key):
                return str(body[key])
        return None


class _GatewayTransport(HttpTransport):
    """Provider gateways addressed by URL setting, authenticated by API key."""

    url_setting = ""
    api_key_setting = ""

    def get_url(self, recipient):
        url = getattr(settings, self.url_setting, "")
        if not url:
            raise TransportError(
                f"{self.url_setting} is not configured",
                code="not_configured",
            )
        if not recipient.address:
            raise TransportError(
                f"User {recipient.user_id} has no {self.channel} address",
                code="no_address",
            )
        return url

    def get_headers(self, body):
        api_key = getattr(settings, self.api_key_setting, "")
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}


class PushTransport(_GatewayTransport):
    channel = DeliveryChannel.PUSH
    url_setting = "NOTIFICATION_PUSH_GATEWAY_URL"
    api_key_setting = "NOTIFICATION_PUSH_GATEWAY_API_KEY"

    def build_payload(self, recipient, content):
        return {
            "token": recipient.address,
            "title": content.subject,
            "body": content.body,
            "data": content.data,
        }


class SmsTransport(_GatewayTransport):
    channel = DeliveryChannel.SMS
    url_setting = "NOTIFICATION_SMS_GATEWAY_URL"
    api_key_setting = "NOTIFICATION_SMS_GATEWAY_API_KEY"

    def build_payload(self, recipient, content):
        text = f"{content.subject}\n{content.body}".strip()
        return {
            "to": recipient.address,
            "from": getattr(settings, "NOTIFICATION_SMS_FROM_NUMBER", ""),
            "body": text[:SMS_MAX_LENGTH],
        }


class SlackTransport(HttpTransport):
    channel = DeliveryChannel.SLACK

    def build_payload(self, recipient, content):
        return {"text": f"*{content.subject}*\n{content.body}".strip()}

    def send(self, recipient, content):
        result = super().send(recipient, content)
        return TransportResult(provider_message_id=result.provider_message_id, delivered=True)


class DiscordTransport(HttpTransport):
    channel = DeliveryChannel.DISCORD

    def build_payload(self, recipient, content):
        return {"content": f"**{content.subject}**\n{content.body}".strip()[:2000]}

    def send(self, recipient, content):
        result = super().send(recipient, content)
        return TransportResult(provider_message_id=result.provider_message_id, delivered=True)


class WebhookTransport(HttpTransport):
    """
    Generic signed webhook.

    The body is signed with NOTIFICATION_WEBHOOK_SIGNING_SECRET and the
    signature sent in the X-Notification-Signature header.
    """

    channel = DeliveryChannel.WEBHOOK

    def build_payload(self, recipient, content):
        return {
            "user_id": recipient.user_id,
            "subject": content.subject,
            "body": content.body,
            "data": content.data,
        }

    def get_headers(self, body):
        secret = getattr(settings, "NOTIFICATION_WEBHOOK_SIGNING_SECRET", "")
        return {SIGNATURE_HEADER: sign_payload(body, secret)} if secret else {}

    def send(self, recipient, content):
        result = super().send(recipient, content)
        return TransportResult(provider_message_id=result.provider_message_id, delivered=True)
