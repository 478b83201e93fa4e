"""
Treatment AI Backend — Terra Webhook Service Unit Tests
========================================================

What:  Signature verification, payload normalization and event dispatch.
How:   Mock DB session; statements are inspected by compiling them for the
       PostgreSQL dialect.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from treatment_api.exceptions import NotFoundError, ValidationError
from treatment_api.models.wearable import WearableConnection
from treatment_api.schemas.wearables import TerraWebhookEvent
from treatment_api.services.terra_webhook_service import (
    COMPREHENSIVE_DATA_TYPE,
    TerraWebhookService,
    normalize_item,
)

SECRET = "webhook-secret"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


SAMPLE_ITEM = {
    "metadata": {"start_time": "2025-01-15T00:00:00Z", "end_time": "2025-01-16T00:00:00Z"},
    "calories_data": {"BMR_calories": 1650, "total_burned_calories": 2400},
    "heart_rate_data": {"summary": {"avg_hr_bpm": 72, "resting_hr_bpm": 58}},
    "distance_data": {"steps": 8042, "elevation": {"gain_actual_meters": 31.5}},
    "oxygen_data": {"avg_saturation_percentage": 97},
    "tag_data": {"tags": [{"tag_name": "travel"}]},
}


class TestSignature:

    def setup_method(self):
        self.service = TerraWebhookService(secret=SECRET)

    def test_valid_signature(self):
        body = b'{"type":"auth"}'
        assert self.service.verify_signature(body, _sign(body)) is True

    def test_tampered_body(self):
        assert self.service.verify_signature(b'{"type":"daily"}', _sign(b'{"type":"auth"}')) is False

    def test_missing_header(self):
        assert self.service.verify_signature(b"{}", None) is False

    def test_missing_secret_never_verifies(self):
        service = TerraWebhookService(secret="")
        assert service.verify_signature(b"{}", _sign(b"{}", "")) is False


class TestNormalizeItem:

    def test_metric_groups(self):
        data = normalize_item(SAMPLE_ITEM)

        assert data["raw_data"] is SAMPLE_ITEM
        assert data["calories"]["bmr_calories"] == 1650
        assert data["heart_rate"]["resting_bpm"] == 58
        assert data["activity"]["steps"] == 8042
        assert data["activity"]["elevation_gain"] == 31.5
        assert data["oxygen"]["avg_saturation"] == 97
        assert data["tags"] == [{"tag_name": "travel"}]
        assert data["metadata"]["start_time"] == "2025-01-15T00:00:00Z"

    def test_missing_sections_are_none(self):
        data = normalize_item({})

        assert data["heart_rate"]["avg_bpm"] is None
        assert data["stress"]["avg_level"] is None
        assert data["tags"] == []
        assert data["device_info"] is None


class TestHandleEvent:

    def setup_method(self):
        self.service = TerraWebhookService(secret=SECRET)

    @pytest.mark.asyncio
    async def test_auth_event_upserts_connection(self, mock_db_session):
        our_user = uuid4()
        event = TerraWebhookEvent.model_validate({
            "type": "auth",
            "user": {
                "user_id": "terra-123",
                "provider": "OURA",
                "scopes": "daily, sleep",
                "reference_id": str(our_user),
            },
        })

        message = await self.service.handle_event(mock_db_session, event)

        assert message == "Webhook processed successfully"
        sql = _compiled(mock_db_session.execute.await_args.args[0])
        assert "INSERT INTO wearable_connections" in sql
        assert "ON CONFLICT (user_id, provider) DO UPDATE" in sql

    @pytest.mark.asyncio
    async def test_auth_event_with_bad_reference(self, mock_db_session):
        event = TerraWebhookEvent.model_validate({
            "type": "auth",
            "user": {"user_id": "terra-123", "provider": "OURA", "reference_id": "not-a-uuid"},
        })

        with pytest.raises(ValidationError, match="reference_id"):
            await self.service.handle_event(mock_db_session, event)
        mock_db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_data_event_upserts_items(self, mock_db_session):
        connection = WearableConnection(
            id=uuid4(), user_id=uuid4(), provider="OURA", terra_user_id="terra-123"
        )
        lookup = MagicMock()
        lookup.scalar_one_or_none.return_value = connection
        mock_db_session.execute.side_effect = [lookup, MagicMock(), MagicMock()]
        event = TerraWebhookEvent.model_validate({
            "type": "daily",
            "user": {"user_id": "terra-123", "provider": "OURA"},
            "data": [SAMPLE_ITEM, {}],
        })

        message = await self.service.handle_event(mock_db_session, event)

        assert message == "Webhook processed successfully"
        upsert = mock_db_session.execute.await_args_list[1].args[0]
        sql = _compiled(upsert)
        assert "INSERT INTO health_data" in sql
        assert "ON CONFLICT (user_id, provider, data_type, recorded_at) DO UPDATE" in sql
        params = upsert.compile(dialect=postgresql.dialect()).params
        assert params["data_type_m0"] == COMPREHENSIVE_DATA_TYPE
        assert params["user_id_m0"] == connection.user_id
        assert params["recorded_at_m0"] == datetime(2025, 1, 15, tzinfo=timezone.utc)
        # No metadata: falls back to receipt time
        assert params["recorded_at_m1"].tzinfo is not None
        assert "UPDATE wearable_connections" in _compiled(mock_db_session.execute.await_args.args[0])
        mock_db_session.add_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_redelivered_items_collapse_to_one_row(self, mock_db_session):
        connection = WearableConnection(
            id=uuid4(), user_id=uuid4(), provider="OURA", terra_user_id="terra-123"
        )
        event = TerraWebhookEvent.model_validate({
            "type": "daily",
            "user": {"user_id": "terra-123", "provider": "OURA"},
            "data": [SAMPLE_ITEM, SAMPLE_ITEM],
        })

        written = await self.service._store_items(mock_db_session, connection, event)

        assert written == 1
        upsert = mock_db_session.execute.await_args_list[0].args[0]
        assert "recorded_at_m1" not in upsert.compile(dialect=postgresql.dialect()).params

    @pytest.mark.asyncio
    async def test_data_event_without_connection(self, mock_db_session):
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = None
        event = TerraWebhookEvent.model_validate({
            "type": "sleep",
            "user": {"user_id": "unknown", "provider": "OURA"},
            "data": [SAMPLE_ITEM],
        })

        message = await self.service.handle_event(mock_db_session, event)

        assert message == "No connection found"
        mock_db_session.add_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_events_acknowledged(self, mock_db_session):
        event = TerraWebhookEvent.model_validate({"type": "healthcheck"})

        assert await self.service.handle_event(mock_db_session, event) == "Webhook processed successfully"
        mock_db_session.execute.assert_not_awaited()


class TestConnections:

    @pytest.mark.asyncio
    async def test_disconnect_unknown_provider(self, mock_db_session):
        mock_db_session.execute.return_value.rowcount = 0

        with pytest.raises(NotFoundError, match="Wearable connection not found"):
            await TerraWebhookService().disconnect(mock_db_session, uuid4(), "FITBIT")

    @pytest.mark.asyncio
    async def test_disconnect(self, mock_db_session):
        mock_db_session.execute.return_value.rowcount = 1

        await TerraWebhookService().disconnect(mock_db_session, uuid4(), "FITBIT")

        sql = _compiled(mock_db_session.execute.await_args.args[0])
        assert "UPDATE wearable_connections SET status" in sql
