"""
Treatment AI Backend — Chat Sharing Service
============================================

What:  Shares a chat transcript three ways: with a linked account inside
       the app, by email, or as a downloadable PDF.
How:   - internal: one request writes three rows in the request transaction:
         the shared session (expires after SHARE_EXPIRY_DAYS), a
         `chat_shared` notification for the recipient, and a
         `chat_share_internal` row in the sharing activity log
       - email: one SendGrid message per recipient through EmailService,
         logged as `chat_share_email`
       - pdf: reportlab platypus document, built in memory
Who:   Called by routes/sharing.py.

Transcript messages are `{id, content, sender, timestamp}` dicts as the
chat screen renders them; `sender == "user"` is the patient, anything
else is the assistant.
"""

import asyncio
import html
import io
import logging
import re
import secrets
import string
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, NamedTuple, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.config import settings
from treatment_api.exceptions import DatabaseError, UpstreamServiceError, ValidationError
from treatment_api.models.sharing import SharedChatSession, SharingActivityLog, UserNotification
from treatment_api.models.user import User
from treatment_api.services.account_link_service import EMAIL_PATTERN, account_link_service
from treatment_api.services.email_service import EmailService, email_service

logger = logging.getLogger(__name__)

_SHARE_ALPHABET = string.ascii_lowercase + string.digits
DEFAULT_TITLE = "Shared chat session"
DISCLAIMER = (
    "Medical Disclaimer: This AI conversation is for educational purposes only. "
    "Always consult with qualified healthcare professionals for medical advice."
)


def generate_share_id() -> str:
    """`share_<epoch ms>_<13 random base36 chars>`"""
    suffix = "".join(secrets.choice(_SHARE_ALPHABET) for _ in range(13))
    return f"share_{int(time.time() * 1000)}_{suffix}"


class EmailShareResult(NamedTuple):
    successful: int
    failed: int


# ── Transcript rendering ──────────────────────────────────────────────────

def sender_label(message: Dict[str, Any]) -> str:
    return "You" if message.get("sender") == "user" else "Treatment AI"


def format_timestamp(value: Any) -> str:
    """ISO string or epoch milliseconds, as `Jan 15, 2025 12:00`."""
    if value in (None, ""):
        return ""
    try:
        if isinstance(value, (int, float)):
            moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return str(value)
    return moment.strftime("%b %d, %Y %H:%M")


def clean_message_text(content: Any) -> str:
    """Strip markdown emphasis and headers, HTML tags and the common entities."""
    text = str(content or "")
    text = re.sub(r"#{1,6}\s", "", text)
    text = re.sub(r"\*\*(.*?)\*\*", r"\1", text)
    text = re.sub(r"\*(.*?)\*", r"\1", text)
    text = re.sub(r"<[^>]*>", "", text)
    return html.unescape(text.replace("&nbsp;", " "))


def render_transcript_text(
    messages: List[Dict[str, Any]], personal_message: Optional[str] = None
) -> str:
    parts = []
    if personal_message:
        parts.append(f"Personal message:\n{personal_message}\n")
    for message in messages:
        parts.append(
            f"{sender_label(message)} ({format_timestamp(message.get('timestamp'))}):\n"
            f"{message.get('content') or ''}\n"
        )
    parts.append(DISCLAIMER)
    return "\n---\n\n".join(parts)


def render_transcript_html(
    messages: List[Dict[str, Any]],
    personal_message: Optional[str] = None,
    session_id: Optional[str] = None,
) -> str:
    """Every user-supplied string is escaped; newlines become <br>."""
    blocks = ['<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">']
    blocks.append("<h1>Treatment AI Chat Session</h1><p>Shared Healthcare Conversation</p>")
    if personal_message:
        blocks.append(
            "<div style=\"background: #f8f9fa; padding: 16px; border-left: 4px solid #667eea;\">"
            f"<h3>Personal Message:</h3><p>{_escape_html(personal_message)}</p></div>"
        )
    blocks.append(
        f"<h2>Chat Conversation</h2><p>Session ID: {html.escape(session_id or 'N/A')} | "
        f"{len(messages)} messages</p>"
    )
    for message in messages:
        colour = "#667eea" if message.get("sender") == "user" else "#28a745"
        blocks.append(
            f"<div style=\"margin-bottom: 20px; border-left: 4px solid {colour}; padding: 12px;\">"
            f"<strong>{sender_label(message)}</strong> "
            f"<span style=\"color: #888;\">{html.escape(format_timestamp(message.get('timestamp')))}</span>"
            f"<p>{_escape_html(message.get('content'))}</p></div>"
        )
    blocks.append(f"<p style=\"color: #888; font-size: 12px;\">{html.escape(DISCLAIMER)}</p></div>")
    return "".join(blocks)


def _escape_html(value: Any) -> str:
    return html.escape(str(value or "")).replace("\n", "<br>")


def _escape_markup(value: str) -> str:
    # reportlab Paragraph text is a small XML dialect
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def render_transcript_pdf(
    messages: List[Dict[str, Any]],
    session_id: Optional[str] = None,
    title: Optional[str] = None,
) -> bytes:
    styles = getSampleStyleSheet()
    body = ParagraphStyle("body", parent=styles["Normal"], fontName="Helvetica", fontSize=10, leading=13)
    meta = ParagraphStyle("meta", parent=body, fontSize=9, textColor=colors.grey)
    sender = ParagraphStyle("sender", parent=body, fontName="Helvetica-Bold", fontSize=11, spaceBefore=10)

    story = [
        Paragraph("Treatment AI Chat Session", styles["Title"]),
        Paragraph(_escape_markup((title or "").strip() or DEFAULT_TITLE), styles["Heading3"]),
        Paragraph(f"Generated: {datetime.now(timezone.utc).strftime('%b %d, %Y %H:%M')} UTC", meta),
    ]
    if session_id:
        story.append(Paragraph(f"Session ID: {_escape_markup(session_id)}", meta))
    story.append(Paragraph(f"Total Messages: {len(messages)}", meta))
    story.append(Spacer(1, 12))

    for message in messages:
        story.append(Paragraph(f"{sender_label(message)}:", sender))
        stamp = format_timestamp(message.get("timestamp"))
        if stamp:
            story.append(Paragraph(_escape_markup(stamp), meta))
        for line in clean_message_text(message.get("content")).splitlines() or [""]:
            story.append(Paragraph(_escape_markup(line) or "&nbsp;", body))

    def footer(canvas, doc):
        canvas.saveState()
        canvas.setFont("Helvetica", 8)
        canvas.setFillColor(colors.grey)
        canvas.drawCentredString(
            letter[0] / 2, 25, f"Page {doc.page} - Treatment AI Chat Session"
        )
        canvas.restoreState()

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        leftMargin=50,
        rightMargin=50,
        topMargin=45,
        bottomMargin=45,
        title="Treatment AI Chat Session",
    )
    doc.build(story, onFirstPage=footer, onLaterPages=footer)
    return buffer.getvalue()


class ShareService:

    def __init__(self, mailer: EmailService = email_service):
        self.mailer = mailer

    async def share_internal(
        self,
        db: AsyncSession,
        user: User,
        linked_account_id: Optional[uuid.UUID],
        messages: Optional[List[Dict[str, Any]]],
        session_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> SharedChatSession:
        """
        Raises:
            ValidationError: link id or a non-empty messages list missing (400)
            NotFoundError: link not the caller's or inactive (404)
        """
        if linked_account_id is None or not messages:
            raise ValidationError("Linked account ID and messages are required")

        link = await account_link_service.get_owned_link(db, user.id, linked_account_id)

        share_title = (title or "").strip() or DEFAULT_TITLE
        share_id = generate_share_id()
        now = datetime.now(timezone.utc)

        shared = SharedChatSession(
            share_id=share_id,
            sender_user_id=user.id,
            sender_email=user.email,
            recipient_email=link.linked_email or "",
            session_id=session_id,
            title=share_title,
            messages=messages,
            expires_at=now + timedelta(days=settings.share_expiry_days),
            created_at=now,
        )
        notification = UserNotification(
            user_id=link.linked_user_id,
            type="chat_shared",
            title="New Chat Session Shared",
            message=f'{user.email} has shared a Treatment AI chat session with you: "{share_title}"',
            data={"shareId": share_id, "senderEmail": user.email, "sessionId": session_id},
            is_read=False,
        )
        activity = SharingActivityLog(
            user_id=user.id,
            activity_type="chat_share_internal",
            share_id=share_id,
            recipient_email=link.linked_email,
            details={"sessionId": session_id, "messageCount": len(messages)},
        )

        try:
            db.add_all([shared, notification, activity])
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error sharing chat from %s: %s", user.id, str(e))
            raise DatabaseError(
                message="Failed to share chat session",
                context={"error_type": type(e).__name__},
            ) from e

        logger.info(
            "Chat shared: %s -> %s (%s, %d messages)",
            user.id, link.linked_user_id, share_id, len(messages),
        )
        return shared

    # ══════════════════════════════════════════════════════════════════════
    # Email and PDF export
    # ══════════════════════════════════════════════════════════════════════

    async def send_email(
        self,
        db: AsyncSession,
        user: User,
        emails: Optional[List[str]],
        messages: Optional[List[Dict[str, Any]]],
        personal_message: Optional[str] = None,
        session_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> EmailShareResult:
        """
        Mail the transcript to every address, one message per recipient.

        Returns the per-recipient tally; the route answers 206 when only
        some deliveries went out.

        Raises:
            ValidationError: no addresses, no messages or malformed addresses (400)
            UpstreamServiceError: no delivery succeeded (502)
        """
        if not emails:
            raise ValidationError("Email addresses are required", field="emails")
        if not messages:
            raise ValidationError("Messages are required", field="messages")

        recipients = [str(e).strip() for e in emails]
        invalid = [e for e in recipients if not EMAIL_PATTERN.match(e)]
        if invalid:
            raise ValidationError(
                f"Invalid email addresses: {', '.join(invalid)}",
                field="emails",
                context={"invalid": invalid},
            )

        share_title = (title or "").strip() or DEFAULT_TITLE
        subject = f"Shared: {share_title}"
        text = render_transcript_text(messages, personal_message)
        html_body = render_transcript_html(messages, personal_message, session_id)

        outcomes = await asyncio.gather(
            *(self._deliver(address, subject, text, html_body) for address in recipients)
        )
        successful = sum(outcomes)
        failed = len(outcomes) - successful

        if successful == 0:
            raise UpstreamServiceError(
                message="Failed to send email to all recipients",
                service="email",
                context={"successful": 0, "failed": failed},
            )

        activity = SharingActivityLog(
            user_id=user.id,
            activity_type="chat_share_email",
            recipient_email=", ".join(recipients)[:255],
            details={
                "sessionId": session_id,
                "messageCount": len(messages),
                "successful": successful,
                "failed": failed,
            },
        )
        try:
            db.add(activity)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error logging email share for %s: %s", user.id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Chat emailed by %s: %d sent, %d failed", user.id, successful, failed)
        return EmailShareResult(successful=successful, failed=failed)

    async def _deliver(self, address: str, subject: str, text: str, html_body: str) -> bool:
        try:
            await self.mailer.send(address, subject, text, html_body)
        except UpstreamServiceError as e:
            logger.warning("Share email to %s failed: %s", address, e.message)
            return False
        return True

    async def render_pdf(
        self,
        messages: Optional[List[Dict[str, Any]]],
        session_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> bytes:
        """Transcript as a PDF document. reportlab layout runs in a worker thread."""
        if not messages:
            raise ValidationError("Messages are required", field="messages")
        return await asyncio.to_thread(render_transcript_pdf, messages, session_id, title)


# ── Singleton Instance ────────────────────────────────────────────────────
share_service = ShareService()
