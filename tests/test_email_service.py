"""
Treatment AI Backend — Email Delivery Unit Tests
=================================================

What:  SendGrid request shape and failure mapping.
How:   httpx.MockTransport answers instead of SendGrid.
"""

import json
from unittest.mock import patch

import httpx
import pytest

from treatment_api.config import settings
from treatment_api.exceptions import UpstreamServiceError
from treatment_api.services.email_service import SENDGRID_API_URL, EmailService


@pytest.fixture
def configured():
    with patch.object(settings, "sendgrid_api_key", "SG.test-key"), \
            patch.object(settings, "email_from", "noreply@treatment.test"):
        yield


@pytest.mark.asyncio
async def test_login_code_request(configured):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(202)

    await EmailService(transport=httpx.MockTransport(handler)).send_login_code(
        "patient@example.com", "482913"
    )

    assert seen["url"] == SENDGRID_API_URL
    assert seen["auth"] == "Bearer SG.test-key"
    body = seen["body"]
    assert body["personalizations"] == [{"to": [{"email": "patient@example.com"}]}]
    assert body["from"] == {"email": "noreply@treatment.test", "name": "Treatment AI"}
    assert [c["type"] for c in body["content"]] == ["text/plain", "text/html"]
    assert "482913" in body["content"][0]["value"]


@pytest.mark.asyncio
async def test_rejected_by_sendgrid(configured):
    service = EmailService(transport=httpx.MockTransport(lambda request: httpx.Response(400)))

    with pytest.raises(UpstreamServiceError, match="Failed to send email") as exc_info:
        await service.send("patient@example.com", "Hi", "text", "<p>html</p>")

    assert exc_info.value.context["status_code"] == 400
    assert exc_info.value.service == "email"


@pytest.mark.asyncio
async def test_unreachable(configured):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(UpstreamServiceError) as exc_info:
        await EmailService(transport=httpx.MockTransport(handler)).send(
            "patient@example.com", "Hi", "text", "<p>html</p>"
        )
    assert exc_info.value.context["error_type"] == "ConnectTimeout"


@pytest.mark.asyncio
async def test_not_configured():
    calls = []
    service = EmailService(transport=httpx.MockTransport(lambda request: calls.append(request)))

    with patch.object(settings, "sendgrid_api_key", ""):
        with pytest.raises(UpstreamServiceError, match="not configured"):
            await service.send("patient@example.com", "Hi", "text", "<p>html</p>")

    assert calls == []
