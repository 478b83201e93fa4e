"""
Treatment AI Backend — Email Delivery
======================================

What:  Sends login codes and shared chat transcripts by email.
How:   SendGrid v3 mail/send over httpx, one request per recipient. SendGrid
       accepts a message with 202; anything else, a network error or
       missing SENDGRID_API_KEY / EMAIL_FROM raises UpstreamServiceError.

Rendering of message bodies lives with the callers (auth_service for codes,
share_service for transcripts); this module only ships text + HTML.
"""

import html
import logging
from typing import Optional

import httpx

from treatment_api.config import settings
from treatment_api.exceptions import UpstreamServiceError

logger = logging.getLogger(__name__)

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailService:

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # Injected by tests (httpx.MockTransport)
        self._transport = transport

    async def send(self, to: str, subject: str, text: str, html_body: str) -> None:
        """
        Raises:
            UpstreamServiceError: not configured, unreachable or rejected
        """
        if not settings.sendgrid_api_key or not settings.email_from:
            logger.error("Email requested but SENDGRID_API_KEY / EMAIL_FROM are not set")
            raise UpstreamServiceError(message="Email delivery is not configured", service="email")

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": settings.email_from, "name": settings.email_from_name},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html_body},
            ],
        }
        headers = {
            "Authorization": f"Bearer {settings.sendgrid_api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(
                timeout=settings.email_timeout, transport=self._transport
            ) as client:
                response = await client.post(SENDGRID_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("SendGrid unreachable sending to %s: %s", to, str(e))
            raise UpstreamServiceError(
                message="Failed to send email",
                service="email",
                context={"error_type": type(e).__name__},
            ) from e

        if response.status_code != 202:
            logger.error(
                "SendGrid rejected email to %s (%d): %s", to, response.status_code, response.text[:300]
            )
            raise UpstreamServiceError(
                message="Failed to send email",
                service="email",
                context={"status_code": response.status_code},
            )
        logger.info("Email '%s' sent to %s", subject, to)

    async def send_login_code(self, to: str, code: str) -> None:
        minutes = settings.otp_expiry_minutes
        text = (
            f"Your Treatment AI verification code is {code}.\n\n"
            f"It expires in {minutes} minutes. If you did not try to sign in, "
            "you can ignore this email."
        )
        html_body = (
            "<p>Your <strong>Treatment AI</strong> verification code is:</p>"
            f"<p style=\"font-size:24px;letter-spacing:4px\"><code>{html.escape(code)}</code></p>"
            f"<p>It expires in {minutes} minutes. If you did not try to sign in, "
            "you can ignore this email.</p>"
        )
        await self.send(to, "Your Treatment AI verification code", text, html_body)


# ── Singleton Instance ────────────────────────────────────────────────────
email_service = EmailService()
