"""
Email boundary.

One async call per message. Senders return the provider's message id or
raise EmailDeliveryError; callers treat that as a soft failure.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx

from .errors import EmailDeliveryError

logger = logging.getLogger("email_sender")

# Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
EMAIL_FROM = os.getenv("ATELIER_EMAIL_FROM", "Atelier <notifications@atelier.local>")
HTTP_TIMEOUT = float(os.getenv("ATELIER_HTTP_TIMEOUT", "10.0"))


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str
    to_name: Optional[str] = None


class EmailSender:
    """Base class for email providers."""

    async def send(self, message: EmailMessage) -> str:
        raise NotImplementedError


class ResendEmailSender(EmailSender):
    """Sends through the Resend HTTP API."""

    def __init__(self, api_key: str = None, from_address: str = None, transport: httpx.AsyncBaseTransport = None):
        self._api_key = api_key or RESEND_API_KEY
        self._from = from_address or EMAIL_FROM
        self._transport = transport

    async def send(self, message: EmailMessage) -> str:
        if not message.to:
            raise EmailDeliveryError("Recipient has no email address")

        recipient = f"{message.to_name} <{message.to}>" if message.to_name else message.to
        payload = {
            "from": self._from,
            "to": [recipient],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport) as client:
            try:
                response = await client.post(RESEND_API_URL, json=payload, headers=headers)
            except httpx.HTTPError as e:
                logger.error(f"Resend request failed for {message.to}: {e}")
                raise EmailDeliveryError(f"Email provider unreachable: {e}", {"to": message.to})

        if response.status_code >= 300:
            logger.error(f"Resend rejected email to {message.to}: {response.status_code} {response.text}")
            raise EmailDeliveryError(
                f"Email provider returned {response.status_code}",
                {"to": message.to, "status_code": response.status_code, "response": response.text},
            )

        message_id = response.json().get("id", "")
        logger.info(f"Email sent to {message.to} (id={message_id})")
        return message_id


class NullEmailSender(EmailSender):
    """Used when no provider is configured. Every send fails softly."""

    async def send(self, message: EmailMessage) -> str:
        logger.warning(f"Email not configured; not sending '{message.subject}' to {message.to}")
        raise EmailDeliveryError("Email provider not configured", {"to": message.to})


def get_email_sender() -> EmailSender:
    if RESEND_API_KEY:
        return ResendEmailSender()
    return NullEmailSender()
