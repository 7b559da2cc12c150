"""
Email transport using Django's mail framework.

The SMTP connection is opened with NOTIFICATION_TRANSPORT_TIMEOUT_SECONDS
so a stalled relay cannot hold a worker. A Message-ID is generated up
front and stored as the provider reference for bounce correlation.
"""

from __future__ import annotations

import logging
import smtplib
from email.utils import make_msgid

from django.conf import settings
from django.core.mail import EmailMultiAlternatives, get_connection

from notifications.enums import DeliveryChannel
from notifications.exceptions import TransportError
from notifications.transports.base import BaseTransport, TransportResult

logger = logging.getLogger(__name__)


class EmailTransport(BaseTransport):
    channel = DeliveryChannel.EMAIL

    def send(self, recipient, content):
        if not recipient.address:
            raise TransportError(
                f"User {recipient.user_id} has no email address",
                code="no_address",
            )

        message_id = make_msgid(domain=getattr(settings, "EMAIL_MESSAGE_ID_DOMAIN", None))
        connection = get_connection(fail_silently=False, timeout=self.timeout)

        email = EmailMultiAlternatives(
            subject=content.subject,
            body=content.body,
            from_email=settings.DEFAULT_FROM_EMAIL,
            to=[recipient.address],
            headers={"Message-ID": message_id},
            connection=connection,
        )
        if content.html_body:
            email.attach_alternative(content.html_body, "text/html")

        try:
            email.send(fail_silently=False)
        except smtplib.SMTPRecipientsRefused as e:
            raise TransportError(
                f"Recipient refused: {recipient.address}",
                code="invalid_recipient",
            ) from e
        except TimeoutError as e:
            raise TransportError(f"SMTP timeout: {e}", code="timeout") from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(
                f"SMTP error: {e}",
                code="provider_unavailable",
            ) from e

        logger.debug(f"Email sent to user {recipient.user_id}: {content.subject}")
        return TransportResult(provider_message_id=message_id.strip("<>"))
