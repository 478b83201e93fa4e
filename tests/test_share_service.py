"""
Treatment AI Backend — Share Service Unit Tests
================================================

What:  Internal sharing, email delivery tallies and transcript rendering.
"""

import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from treatment_api.exceptions import NotFoundError, UpstreamServiceError, ValidationError
from treatment_api.models.account_link import LinkedAccount
from treatment_api.models.sharing import SharedChatSession, SharingActivityLog, UserNotification
from treatment_api.services.share_service import (
    DEFAULT_TITLE,
    EmailShareResult,
    ShareService,
    clean_message_text,
    format_timestamp,
    generate_share_id,
    render_transcript_html,
)

MESSAGES = [
    {"role": "user", "content": "My chest feels tight"},
    {"role": "assistant", "content": "How long has this been going on?"},
]


def test_share_id_format():
    share_id = generate_share_id()
    assert re.fullmatch(r"share_\d{13}_[a-z0-9]{13}", share_id)
    assert generate_share_id() != share_id


class TestShareInternal:

    def setup_method(self):
        self.service = ShareService()

    @pytest.mark.parametrize("link_id, messages", [(None, MESSAGES), (uuid4(), []), (uuid4(), None)])
    @pytest.mark.asyncio
    async def test_required_fields(self, mock_db_session, sample_user, link_id, messages):
        with pytest.raises(ValidationError, match="Linked account ID and messages are required"):
            await self.service.share_internal(mock_db_session, sample_user, link_id, messages)
        mock_db_session.add_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_writes_share_notification_and_activity(self, mock_db_session, sample_user):
        link = LinkedAccount(
            id=uuid4(),
            user_id=sample_user.id,
            linked_user_id=uuid4(),
            linked_email="relative@example.com",
            permissions=["all"],
        )

        with patch(
            "treatment_api.services.share_service.account_link_service.get_owned_link",
            new=AsyncMock(return_value=link),
        ):
            shared = await self.service.share_internal(
                mock_db_session, sample_user, link.id, MESSAGES, session_id="session-9", title="  "
            )

        assert isinstance(shared, SharedChatSession)
        assert shared.title == DEFAULT_TITLE
        assert shared.recipient_email == "relative@example.com"
        remaining = shared.expires_at - datetime.now(timezone.utc)
        assert timedelta(days=29, hours=23) < remaining <= timedelta(days=30)

        rows = mock_db_session.add_all.call_args.args[0]
        assert [type(r) for r in rows] == [SharedChatSession, UserNotification, SharingActivityLog]
        notification, activity = rows[1], rows[2]
        assert notification.user_id == link.linked_user_id
        assert notification.type == "chat_shared"
        assert notification.data["shareId"] == shared.share_id
        assert activity.activity_type == "chat_share_internal"
        assert activity.details == {"sessionId": "session-9", "messageCount": 2}
        mock_db_session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_link_not_owned(self, mock_db_session, sample_user):
        with patch(
            "treatment_api.services.share_service.account_link_service.get_owned_link",
            new=AsyncMock(side_effect=NotFoundError(resource="linked account")),
        ):
            with pytest.raises(NotFoundError):
                await self.service.share_internal(mock_db_session, sample_user, uuid4(), MESSAGES)

        mock_db_session.add_all.assert_not_called()


TRANSCRIPT = [
    {"id": "1", "sender": "user", "content": "My chest feels <tight>", "timestamp": "2025-01-15T12:00:00Z"},
    {"id": "2", "sender": "assistant", "content": "## Next steps\n**Rest** and *monitor*", "timestamp": 1736942460000},
]


def _mailer(failing=()):
    mailer = AsyncMock()

    async def send(to, subject, text, html_body):
        if to in failing:
            raise UpstreamServiceError(message="Failed to send email", service="email")

    mailer.send = AsyncMock(side_effect=send)
    return mailer


def test_clean_message_text():
    assert clean_message_text("## Title\n**bold** and *it* <b>x</b> &amp; &nbsp;y") == "Title\nbold and it x &  y"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2025-01-15T12:00:00Z", "Jan 15, 2025 12:00"),
        (1736942460000, "Jan 15, 2025 12:01"),
        ("yesterday", "yesterday"),
        (None, ""),
    ],
)
def test_format_timestamp(value, expected):
    assert format_timestamp(value) == expected


def test_html_escapes_user_content():
    rendered = render_transcript_html(TRANSCRIPT, personal_message="<script>x</script>\nbye")
    assert "<script>" not in rendered
    assert "&lt;script&gt;x&lt;/script&gt;<br>bye" in rendered
    assert "My chest feels &lt;tight&gt;" in rendered
    assert "Session ID: N/A | 2 messages" in rendered


class TestSendEmail:

    @pytest.mark.asyncio
    async def test_every_recipient_gets_a_message(self, mock_db_session, sample_user):
        mailer = _mailer()
        service = ShareService(mailer=mailer)

        result = await service.send_email(
            mock_db_session, sample_user, ["a@example.com", "b@example.com"], TRANSCRIPT,
            personal_message="FYI", session_id="s-1", title="Chest pain chat",
        )

        assert result == EmailShareResult(successful=2, failed=0)
        subjects = {call.args[1] for call in mailer.send.await_args_list}
        assert subjects == {"Shared: Chest pain chat"}
        activity = mock_db_session.add.call_args.args[0]
        assert activity.activity_type == "chat_share_email"
        assert activity.details["successful"] == 2

    @pytest.mark.asyncio
    async def test_partial_delivery(self, mock_db_session, sample_user):
        service = ShareService(mailer=_mailer(failing={"b@example.com"}))

        result = await service.send_email(
            mock_db_session, sample_user, ["a@example.com", "b@example.com"], TRANSCRIPT
        )

        assert result == EmailShareResult(successful=1, failed=1)

    @pytest.mark.asyncio
    async def test_nothing_delivered(self, mock_db_session, sample_user):
        service = ShareService(mailer=_mailer(failing={"a@example.com"}))

        with pytest.raises(UpstreamServiceError, match="Failed to send email to all recipients"):
            await service.send_email(mock_db_session, sample_user, ["a@example.com"], TRANSCRIPT)
        mock_db_session.add.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "emails, messages, error",
        [
            ([], TRANSCRIPT, "Email addresses are required"),
            (None, TRANSCRIPT, "Email addresses are required"),
            (["a@example.com"], [], "Messages are required"),
            (["a@example.com", "nope", "x@y"], TRANSCRIPT, "Invalid email addresses: nope, x@y"),
        ],
    )
    async def test_validation(self, mock_db_session, sample_user, emails, messages, error):
        mailer = _mailer()
        service = ShareService(mailer=mailer)

        with pytest.raises(ValidationError, match=error):
            await service.send_email(mock_db_session, sample_user, emails, messages)
        mailer.send.assert_not_awaited()


class TestRenderPdf:

    @pytest.mark.asyncio
    async def test_pdf_document(self):
        pdf = await ShareService(mailer=_mailer()).render_pdf(TRANSCRIPT, "s-1", "Chest <pain>")
        assert pdf.startswith(b"%PDF-")
        assert pdf.rstrip().endswith(b"%%EOF")

    @pytest.mark.asyncio
    async def test_messages_required(self):
        with pytest.raises(ValidationError, match="Messages are required"):
            await ShareService(mailer=_mailer()).render_pdf([])
