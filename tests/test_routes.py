"""
Treatment AI Backend — API Route Tests
=======================================

What:  End-to-end behaviour of a few representative routes through the
       full middleware and exception-handler stack.
How:   The `test_client` fixture overrides the DB session and current user;
       service singletons are patched where a route would reach the network.
"""

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from treatment_api.config import settings
from treatment_api.exceptions import AccountLockedError, LLMServiceError, NotFoundError
from treatment_api.middleware.logging import client_ip
from treatment_api.middleware.rate_limit import RateLimitMiddleware
from treatment_api.schemas.diagnostic import DiagnosticSessionResponse
from treatment_api.schemas.timeline import SymptomCount, TimelineStats
from treatment_api.schemas.upload import FileAnalysisResponse
from treatment_api.services.account_link_service import account_link_service
from treatment_api.services.answer_detection_service import answer_detection_service
from treatment_api.services.auth_service import auth_service
from treatment_api.services.condition_service import condition_service
from treatment_api.services.diagnostic_service import diagnostic_service
from treatment_api.services.medication_service import medication_service
from treatment_api.services.openai_service import openai_service
from treatment_api.services.session_service import session_service
from treatment_api.services.share_service import EmailShareResult, share_service
from treatment_api.services.timeline_service import timeline_service
from treatment_api.services.upload_service import upload_service
from treatment_api.services.vector_search_service import vector_search_service


def _terra_signature(body: bytes) -> str:
    digest = hmac.new(b"test-terra-secret", body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class TestHealth:

    @pytest.mark.asyncio
    async def test_healthy(self, test_client):
        engine = MagicMock()
        engine.connect.return_value.__aenter__.return_value = AsyncMock()

        with patch("treatment_api.routes.health.engine", engine), \
                patch.object(openai_service, "health_check", AsyncMock(return_value=True)):
            response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["openai"] == "available"

    @pytest.mark.asyncio
    async def test_database_down_is_unhealthy(self, test_client):
        engine = MagicMock()
        engine.connect.side_effect = OSError("connection refused")

        with patch("treatment_api.routes.health.engine", engine), \
                patch.object(openai_service, "health_check", AsyncMock(return_value=False)):
            response = await test_client.get("/health")

        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["database"] == "disconnected"
        assert body["openai"] == "unavailable"


class TestValidateSession:

    @pytest.mark.asyncio
    async def test_missing_token(self, test_client):
        response = await test_client.post("/api/auth/validate-session", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert response.json()["message"] == "Session token is required"

    @pytest.mark.asyncio
    async def test_unknown_token(self, test_client):
        with patch.object(session_service, "validate_session", AsyncMock(return_value=None)):
            response = await test_client.post(
                "/api/auth/validate-session", json={"sessionToken": "stale"}
            )

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid or expired session"

    @pytest.mark.asyncio
    async def test_legacy_session_object(self, test_client, sample_user):
        with patch.object(
            session_service, "validate_session", AsyncMock(return_value=sample_user)
        ) as validate:
            response = await test_client.post(
                "/api/auth/validate-session",
                json={"sessionToken": {"session_token": "tok", "user_id": "x"}},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["sessionToken"] == "tok"
        assert body["user"]["email"] == sample_user.email
        assert body["user"]["firstName"] == "Pat"
        assert validate.await_args.args[1] == "tok"


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_bearer_token_required(self, test_client):
        from treatment_api.deps import get_current_user
        from treatment_api.main import app

        app.dependency_overrides.pop(get_current_user)
        response = await test_client.get("/api/conditions/user")

        assert response.status_code == 401
        assert response.json()["message"] == "Authentication required"


class TestDetectAnswer:

    @pytest.mark.asyncio
    async def test_model_failure_returns_neutral_result(self, test_client):
        with patch.object(
            answer_detection_service,
            "detect",
            AsyncMock(side_effect=LLMServiceError("model timed out")),
        ):
            response = await test_client.post(
                "/api/chat/detect-answer",
                json={
                    "userMessage": "no chest pain",
                    "diagnosticQuestion": {
                        "question": "Do you have chest pain?",
                        "answerList": ["Absent", "Present"],
                    },
                },
            )

        assert response.status_code == 500
        assert response.json() == {
            "error": "Answer detection failed",
            "answered": False,
            "answerIndex": None,
            "confidence": 0,
            "explanation": "Error analyzing response",
        }

    @pytest.mark.asyncio
    async def test_unexpected_failure_returns_neutral_result(self, test_client):
        with patch.object(
            answer_detection_service, "detect", AsyncMock(side_effect=RuntimeError("boom"))
        ):
            response = await test_client.post(
                "/api/chat/detect-answer",
                json={
                    "userMessage": "yes",
                    "diagnosticQuestion": {"question": "Fever?", "answerList": ["No", "Yes"]},
                },
            )

        assert response.status_code == 500
        assert response.json()["answered"] is False
        assert response.json()["explanation"] == "Error analyzing response"

    @pytest.mark.asyncio
    async def test_missing_question_keeps_error_envelope(self, test_client):
        response = await test_client.post(
            "/api/chat/detect-answer", json={"userMessage": "yes"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


class TestTerraWebhook:

    @pytest.mark.asyncio
    async def test_bad_signature(self, test_client):
        body = json.dumps({"type": "daily", "user": {"user_id": "t-1"}}).encode()

        response = await test_client.post(
            "/api/webhooks/terra", content=body, headers={"terra-signature": "bm9wZQ=="}
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid signature"

    @pytest.mark.asyncio
    async def test_missing_signature(self, test_client):
        response = await test_client.post("/api/webhooks/terra", content=b"{}")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_signed_event_is_acknowledged(self, test_client):
        body = json.dumps({"type": "athlete", "user": {"user_id": "t-1"}}).encode()

        response = await test_client.post(
            "/api/webhooks/terra",
            content=body,
            headers={"terra-signature": _terra_signature(body)},
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Webhook processed successfully"}

    @pytest.mark.asyncio
    async def test_signed_garbage(self, test_client):
        body = b'{"user": {}}'

        response = await test_client.post(
            "/api/webhooks/terra",
            content=body,
            headers={"terra-signature": _terra_signature(body)},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid webhook payload"


class TestErrorEnvelope:

    @pytest.mark.asyncio
    async def test_not_found_carries_request_id(self, test_client, mock_db_session):
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = None

        response = await test_client.get(
            f"/api/health-timeline/{uuid4()}", headers={"X-Request-ID": "req-42"}
        )

        assert response.status_code == 404
        assert response.headers["X-Request-ID"] == "req-42"
        body = response.json()
        assert body["error"] == "not_found"
        assert body["message"] == "Timeline entry not found"
        assert body["details"]["resource"] == "timeline entry"
        assert body["request_id"] == "req-42"

    @pytest.mark.asyncio
    async def test_generated_request_id(self, test_client):
        response = await test_client.post("/api/auth/validate-session", json={})

        rid = response.headers["X-Request-ID"]
        assert len(rid) == 8
        assert response.json()["request_id"] == rid


class TestAccountRoutes:

    @pytest.mark.asyncio
    async def test_access_history(self, test_client, sample_user):
        with patch.object(
            account_link_service, "access_history", AsyncMock(return_value=([], []))
        ) as history:
            response = await test_client.get("/api/accounts/access-history?limit=5")

        assert response.status_code == 200
        assert response.json() == {"success": True, "access_logs": [], "access_stats": []}
        assert history.await_args.kwargs == {"limit": 5}
        assert history.await_args.args[1] is sample_user

    @pytest.mark.asyncio
    async def test_manage_permissions_rejects_bad_permission(self, test_client):
        response = await test_client.put(
            "/api/accounts/manage-permissions",
            json={"linkedAccountId": str(uuid4()), "newPermissions": ["everything"]},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid permissions: everything"

    @pytest.mark.asyncio
    async def test_validate_access_passes_client_address(self, test_client):
        link = MagicMock(linked_email="relative@example.com", relationship_type="family")
        with patch.object(
            account_link_service, "validate_access", AsyncMock(return_value=link)
        ) as validate:
            response = await test_client.post(
                "/api/accounts/validate-access",
                json={"linkedAccountId": str(uuid4()), "dataType": "vitals"},
                headers={"User-Agent": "treatment-ios/3.1", "X-Forwarded-For": "198.51.100.1"},
            )

        assert response.status_code == 200
        assert response.json()["linkedUser"] == "relative@example.com"
        assert response.json()["permission"] == "vitals"
        # No trusted proxies configured: the forwarded header is ignored
        assert validate.await_args.kwargs["ip_address"] == "127.0.0.1"
        assert validate.await_args.kwargs["user_agent"] == "treatment-ios/3.1"


class TestConditionRoutes:

    @pytest.mark.asyncio
    async def test_search_is_public(self, test_client):
        from treatment_api.deps import get_current_user
        from treatment_api.main import app

        app.dependency_overrides.pop(get_current_user)
        with patch.object(condition_service, "search_conditions", AsyncMock(return_value=[])):
            response = await test_client.get("/api/conditions/search?q=%20asthma%20")

        assert response.status_code == 200
        assert response.json() == {"conditions": [], "total": 0, "query": "asthma"}

    @pytest.mark.asyncio
    async def test_sync_without_token_is_forbidden(self, test_client):
        upsert = AsyncMock(return_value=1)
        with patch.object(settings, "conditions_sync_token", "catalog-secret"), \
                patch.object(condition_service, "upsert_conditions", upsert):
            response = await test_client.post(
                "/api/conditions/sync", json=[{"id": "asthma", "name": "Asthma"}]
            )

        assert response.status_code == 403
        assert response.json()["message"] == "Catalog sync requires a valid X-Sync-Token"
        upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_with_wrong_token_is_forbidden(self, test_client):
        with patch.object(settings, "conditions_sync_token", "catalog-secret"):
            response = await test_client.post(
                "/api/conditions/sync",
                json=[{"id": "asthma", "name": "Asthma"}],
                headers={"X-Sync-Token": "guess"},
            )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_sync_closed_when_no_token_configured(self, test_client):
        with patch.object(settings, "conditions_sync_token", ""):
            response = await test_client.post(
                "/api/conditions/sync",
                json=[{"id": "asthma", "name": "Asthma"}],
                headers={"X-Sync-Token": ""},
            )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_sync_with_token(self, test_client):
        upsert = AsyncMock(return_value=1)
        with patch.object(settings, "conditions_sync_token", "catalog-secret"), \
                patch.object(condition_service, "upsert_conditions", upsert):
            response = await test_client.post(
                "/api/conditions/sync",
                json=[{"id": "asthma", "name": "Asthma", "category": "Respiratory"}],
                headers={"X-Sync-Token": "catalog-secret"},
            )

        assert response.status_code == 200
        assert response.json()["message"] == "Synced 1 conditions"
        items = upsert.await_args.args[1]
        assert items[0].id == "asthma"
        assert items[0].category == "Respiratory"


class TestMedicationRoutes:

    @pytest.mark.asyncio
    async def test_search_requires_query_or_class(self, test_client):
        response = await test_client.get("/api/medications/search")

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_list_user_medications(self, test_client, sample_user):
        with patch.object(
            medication_service, "list_user_medications", AsyncMock(return_value=[])
        ) as list_user:
            response = await test_client.get("/api/medications/user")

        assert response.status_code == 200
        assert response.json()["medications"] == []
        assert list_user.await_args.args[1] == sample_user.id


class TestTimelineRoutes:

    @pytest.mark.asyncio
    async def test_stats(self, test_client):
        stats = TimelineStats(
            total_entries=2,
            most_common_symptoms=[SymptomCount(symptom="headache", count=2)],
        )
        with patch.object(timeline_service, "stats", AsyncMock(return_value=stats)):
            response = await test_client.get("/api/health-timeline/stats")

        assert response.status_code == 200
        body = response.json()["stats"]
        assert body["totalEntries"] == 2
        assert body["mostCommonSymptoms"] == [{"symptom": "headache", "count": 2}]

    @pytest.mark.asyncio
    async def test_entry_id_must_be_uuid(self, test_client):
        response = await test_client.get("/api/health-timeline/not-a-uuid")
        assert response.status_code == 422


class TestSharingRoutes:

    CHAT = [{"id": "1", "content": "I have a headache", "sender": "user"}]

    @pytest.mark.asyncio
    async def test_email_all_delivered(self, test_client):
        with patch.object(
            share_service, "send_email", AsyncMock(return_value=EmailShareResult(2, 0))
        ):
            response = await test_client.post(
                "/api/share/send-email",
                json={"emails": ["a@example.com", "b@example.com"], "messages": self.CHAT},
            )

        assert response.status_code == 200
        assert response.json()["message"] == "Email sent successfully to 2 recipients"

    @pytest.mark.asyncio
    async def test_email_partial_delivery(self, test_client):
        with patch.object(
            share_service, "send_email", AsyncMock(return_value=EmailShareResult(1, 1))
        ):
            response = await test_client.post(
                "/api/share/send-email",
                json={"emails": ["a@example.com", "b@example.com"], "messages": self.CHAT},
            )

        assert response.status_code == 206
        body = response.json()
        assert body["message"] == "Email sent to 1 recipient, failed for 1"
        assert body["details"] == {"successful": 1, "failed": 1}

    @pytest.mark.asyncio
    async def test_email_validation(self, test_client):
        response = await test_client.post(
            "/api/share/send-email", json={"emails": ["not-an-address"], "messages": self.CHAT}
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid email addresses: not-an-address"

    @pytest.mark.asyncio
    async def test_download_pdf(self, test_client):
        with patch.object(
            share_service, "render_pdf", AsyncMock(return_value=b"%PDF-1.4 transcript")
        ):
            response = await test_client.post(
                "/api/share/download-pdf",
                json={"messages": self.CHAT, "sessionId": "abc/../123"},
            )

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content == b"%PDF-1.4 transcript"
        disposition = response.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="treatment-ai-chat-abc123-')
        assert disposition.endswith('.pdf"')

    @pytest.mark.asyncio
    async def test_download_pdf_without_messages(self, test_client):
        response = await test_client.post("/api/share/download-pdf", json={"messages": []})

        assert response.status_code == 400
        assert response.json()["message"] == "Messages are required"


class TestUploadRoutes:

    @pytest.mark.asyncio
    async def test_no_file(self, test_client):
        response = await test_client.post(
            "/api/upload/file", files={"attachment": ("a.txt", b"x", "text/plain")}
        )

        assert response.status_code == 400
        assert response.json()["message"] == "No file uploaded"

    @pytest.mark.asyncio
    async def test_file_is_analyzed(self, test_client, sample_pdf_bytes):
        analysis = FileAnalysisResponse(
            file_name="labs.pdf",
            file_type="application/pdf",
            file_size=len(sample_pdf_bytes),
            analysis="A lipid panel.",
        )
        with patch.object(upload_service, "analyze", AsyncMock(return_value=analysis)) as analyze:
            response = await test_client.post(
                "/api/upload/file",
                files={"file": ("labs.pdf", sample_pdf_bytes, "application/pdf")},
            )

        assert response.status_code == 200
        assert response.json()["fileName"] == "labs.pdf"
        assert response.json()["analysis"] == "A lipid panel."
        assert analyze.await_args.kwargs["content"] == sample_pdf_bytes
        assert analyze.await_args.kwargs["filename"] == "labs.pdf"


class TestVectorRoutes:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"query": "   "}])
    async def test_query_required(self, test_client, body):
        search = AsyncMock(return_value=[])
        with patch.object(vector_search_service, "search", search):
            response = await test_client.post("/api/vector/search", json=body)

        assert response.status_code == 400
        assert response.json()["message"] == "Query parameter required"
        search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_search(self, test_client):
        with patch.object(vector_search_service, "search", AsyncMock(return_value=[])), \
                patch.object(
                    vector_search_service, "contextual_information", AsyncMock(return_value="")
                ):
            response = await test_client.post(
                "/api/vector/search", json={"query": " wheeze ", "sdco_id": "asthma"}
            )

        assert response.status_code == 200
        metadata = response.json()["search_metadata"]
        assert metadata["query"] == "wheeze"
        assert metadata["sdco_id"] == "asthma"
        assert metadata["result_count"] == 0


class TestDiagnosticRoutes:

    @pytest.mark.asyncio
    async def test_create_accepts_user_input(self, test_client, sample_user):
        session = DiagnosticSessionResponse(session_id="merlin-1", total_symptoms_processed=1)
        with patch.object(
            diagnostic_service, "create_session", AsyncMock(return_value=session)
        ) as create:
            response = await test_client.post(
                "/api/session/create", json={"userInput": "sore throat"}
            )

        assert response.status_code == 200
        assert response.json()["sessionId"] == "merlin-1"
        assert response.json()["fallbackMode"] is False
        assert create.await_args.args[1:] == (sample_user, "sore throat")

    @pytest.mark.asyncio
    async def test_create_without_symptoms(self, test_client):
        response = await test_client.post("/api/session/create", json={})

        assert response.status_code == 400
        assert response.json()["message"] == "Missing symptoms or user input"

    @pytest.mark.asyncio
    async def test_next_question_legacy_session_key(self, test_client, sample_user):
        from treatment_api.schemas.diagnostic import NextQuestionResponse

        reply = NextQuestionResponse(session_id="merlin-1", no_more_questions=True)
        with patch.object(
            diagnostic_service, "next_question", AsyncMock(return_value=reply)
        ) as next_question:
            response = await test_client.post(
                "/api/diagnostic/next-question", json={"persistanceSession": "merlin-1"}
            )

        assert response.status_code == 200
        assert response.json()["noMoreQuestions"] is True
        assert next_question.await_args.args[2] == "merlin-1"

    @pytest.mark.asyncio
    async def test_unknown_session(self, test_client):
        error = NotFoundError(resource="diagnostic session", message="Diagnostic session not found")
        with patch.object(diagnostic_service, "refresh_diagnosis", AsyncMock(side_effect=error)):
            response = await test_client.post(
                "/api/session/refresh-diagnosis", json={"sessionId": "nope"}
            )

        assert response.status_code == 404
        assert response.json()["message"] == "Diagnostic session not found"

    @pytest.mark.asyncio
    async def test_submit_answer_requires_index(self, test_client):
        response = await test_client.post(
            "/api/diagnostic/submit-answer", json={"sessionId": "merlin-1"}
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Session ID and answerIndex are required"


class TestLoginRoutes:

    @pytest.mark.asyncio
    async def test_request_otp(self, test_client):
        with patch.object(auth_service, "request_otp", AsyncMock()) as request_otp:
            response = await test_client.post(
                "/api/auth/request-otp", json={"email": "patient@example.com"}
            )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Verification code sent to your email",
            "otpSent": True,
            "method": "email",
        }
        assert request_otp.await_args.args[1:] == ("patient@example.com", "login")

    @pytest.mark.asyncio
    async def test_request_otp_malformed_email(self, test_client):
        response = await test_client.post("/api/auth/request-otp", json={"email": "nope"})

        assert response.status_code == 400
        assert response.json()["message"] == "Valid email address is required"

    @pytest.mark.asyncio
    async def test_verify_login_otp_issues_session(self, test_client, sample_user):
        with patch.object(
            auth_service, "login_with_code", AsyncMock(return_value=(sample_user, "tok-123"))
        ) as login:
            response = await test_client.post(
                "/api/auth/verify-login-otp",
                json={"email": "patient@example.com", "otpCode": "123456"},
                headers={"User-Agent": "treatment-web/2.0"},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["sessionToken"] == "tok-123"
        assert body["user"]["email"] == "patient@example.com"
        kwargs = login.await_args.kwargs
        assert kwargs["code_type"] == "login"
        assert kwargs["ip_address"] == "127.0.0.1"
        assert kwargs["user_agent"] == "treatment-web/2.0"

    @pytest.mark.asyncio
    async def test_verify_otp_unknown_purpose(self, test_client):
        response = await test_client.post(
            "/api/auth/verify-otp",
            json={"email": "patient@example.com", "otpCode": "123456", "purpose": "signup"},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Purpose must be one of: login, verification"

    @pytest.mark.asyncio
    async def test_locked_account(self, test_client):
        error = AccountLockedError(locked_until="2026-10-19T12:30:00+00:00")
        with patch.object(auth_service, "login_with_password", AsyncMock(side_effect=error)):
            response = await test_client.post(
                "/api/auth/login-with-password",
                json={"email": "patient@example.com", "password": "guess"},
            )

        assert response.status_code == 423
        body = response.json()
        assert body["error"] == "account_locked"
        assert body["details"] == {"lockedUntil": "2026-10-19T12:30:00+00:00"}

    @pytest.mark.asyncio
    async def test_login_routes_need_no_session(self, test_client):
        from treatment_api.deps import get_current_user
        from treatment_api.main import app

        app.dependency_overrides.pop(get_current_user)
        with patch.object(auth_service, "login_with_password", AsyncMock()):
            response = await test_client.post(
                "/api/auth/login-with-password",
                json={"email": "patient@example.com", "password": "s3cret-pass"},
            )

        assert response.status_code == 200
        assert response.json()["otpSent"] is True


# ══════════════════════════════════════════════════════════════════════════
# Rate limiting
# ══════════════════════════════════════════════════════════════════════════

def _limited_client(peer: str, max_requests: int = 2) -> AsyncClient:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, max_requests=max_requests)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    transport = ASGITransport(app=app, client=(peer, 40000))
    return AsyncClient(transport=transport, base_url="http://test")


def _request(peer: str, forwarded_for: str = None) -> Request:
    headers = []
    if forwarded_for is not None:
        headers.append((b"x-forwarded-for", forwarded_for.encode()))
    return Request({"type": "http", "headers": headers, "client": (peer, 40000)})


class TestRateLimit:

    @pytest.mark.asyncio
    async def test_limit_reached(self):
        async with _limited_client("203.0.113.7") as client:
            statuses = [(await client.get("/ping")).status_code for _ in range(3)]
            blocked = await client.get("/ping")

        assert statuses == [200, 200, 429]
        assert blocked.json()["error"] == "rate_limit_exceeded"
        assert int(blocked.headers["Retry-After"]) > 0

    @pytest.mark.asyncio
    async def test_rotating_forwarded_for_does_not_reset_window(self):
        async with _limited_client("203.0.113.7") as client:
            statuses = [
                (await client.get("/ping", headers={"X-Forwarded-For": f"10.0.0.{i}"})).status_code
                for i in range(5)
            ]

        assert statuses == [200, 200, 429, 429, 429]

    @pytest.mark.asyncio
    async def test_clients_behind_trusted_proxy_are_counted_separately(self):
        with patch.object(settings, "trusted_proxies", "192.0.2.10"):
            async with _limited_client("192.0.2.10") as client:
                statuses = [
                    (await client.get("/ping", headers={"X-Forwarded-For": ip})).status_code
                    for ip in ["198.51.100.1", "198.51.100.2", "198.51.100.1", "198.51.100.1"]
                ]

        assert statuses == [200, 200, 200, 429]

    @pytest.mark.asyncio
    async def test_health_is_never_limited(self):
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, max_requests=1)

        @app.get("/health")
        async def health():
            return {"status": "healthy"}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            statuses = [(await client.get("/health")).status_code for _ in range(3)]

        assert statuses == [200, 200, 200]


class TestClientIp:

    def test_untrusted_peer_ignores_header(self):
        with patch.object(settings, "trusted_proxies", ""):
            assert client_ip(_request("203.0.113.7", "10.0.0.1")) == "203.0.113.7"

    def test_trusted_peer_uses_nearest_untrusted_hop(self):
        with patch.object(settings, "trusted_proxies", "192.0.2.10, 192.0.2.11"):
            request = _request("192.0.2.10", "1.2.3.4, 198.51.100.5, 192.0.2.11")
            assert client_ip(request) == "198.51.100.5"

    def test_trusted_peer_without_header(self):
        with patch.object(settings, "trusted_proxies", "192.0.2.10"):
            assert client_ip(_request("192.0.2.10")) == "192.0.2.10"
