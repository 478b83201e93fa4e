"""
Treatment AI Backend — Terra Webhook Service
=============================================

What:  Ingests Terra webhooks: device authorisations and pushed health data.
Why:   Terra never answers a pull for fresh data; it calls us. Each delivery
       either links a Terra user to one of ours or carries metric payloads
       that we normalize and keep.
How:   The route verifies the `terra-signature` header, then hands the parsed
       event here:
         - `auth`                          → upsert wearable_connections
         - `activity|sleep|body|daily`     → upsert one health_data row per item
         - anything else                   → acknowledged, nothing stored
Who:   Called by routes/wearables.py.

Normalized Payload (health_data.data, data_type = "daily_comprehensive"):
    calories, heart_rate, activity, met_data, oxygen, stress, scores,
    strain, swimming, tags, device_info, enrichment, metadata, raw_data
"""

import base64
import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.config import settings
from treatment_api.exceptions import DatabaseError, NotFoundError, ValidationError
from treatment_api.models.wearable import HealthData, WearableConnection
from treatment_api.schemas.wearables import TerraWebhookEvent

logger = logging.getLogger(__name__)

DATA_EVENT_TYPES = {"activity", "sleep", "body", "daily"}
COMPREHENSIVE_DATA_TYPE = "daily_comprehensive"


def _dig(source: Any, *path: str) -> Any:
    """Walk nested dicts; any missing level yields None."""
    for key in path:
        if not isinstance(source, dict):
            return None
        source = source.get(key)
    return source


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Map one Terra data item onto our metric groups, keeping the raw item."""
    hr = _dig(item, "heart_rate_data", "summary")
    distance = item.get("distance_data")
    durations = item.get("active_durations_data")
    met = item.get("MET_data")
    oxygen = item.get("oxygen_data")
    stress = item.get("stress_data")

    return {
        "raw_data": item,
        "calories": {
            "bmr_calories": _dig(item, "calories_data", "BMR_calories"),
            "total_burned": _dig(item, "calories_data", "total_burned_calories"),
            "net_activity": _dig(item, "calories_data", "net_activity_calories"),
            "net_intake": _dig(item, "calories_data", "net_intake_calories"),
        },
        "heart_rate": {
            "avg_bpm": _dig(hr, "avg_hr_bpm"),
            "resting_bpm": _dig(hr, "resting_hr_bpm"),
            "max_bpm": _dig(hr, "max_hr_bpm"),
            "min_bpm": _dig(hr, "min_hr_bpm"),
            "user_max_bpm": _dig(hr, "user_max_hr_bpm"),
            "avg_hrv_rmssd": _dig(hr, "avg_hrv_rmssd"),
            "avg_hrv_sdnn": _dig(hr, "avg_hrv_sdnn"),
            "detailed_samples": _dig(item, "heart_rate_data", "detailed"),
        },
        "activity": {
            "steps": _dig(distance, "steps"),
            "distance_meters": _dig(distance, "distance_meters"),
            "floors_climbed": _dig(distance, "floors_climbed"),
            "elevation_gain": _dig(distance, "elevation", "gain_actual_meters"),
            "active_duration": _dig(durations, "activity_seconds"),
            "low_intensity_seconds": _dig(durations, "low_intensity_seconds"),
            "moderate_intensity_seconds": _dig(durations, "moderate_intensity_seconds"),
            "vigorous_intensity_seconds": _dig(durations, "vigorous_intensity_seconds"),
            "inactivity_seconds": _dig(durations, "inactivity_seconds"),
        },
        "met_data": {
            "avg_level": _dig(met, "avg_level"),
            "high_intensity_minutes": _dig(met, "num_high_intensity_minutes"),
            "moderate_intensity_minutes": _dig(met, "num_moderate_intensity_minutes"),
            "low_intensity_minutes": _dig(met, "num_low_intensity_minutes"),
            "inactive_minutes": _dig(met, "num_inactive_minutes"),
            "samples": _dig(met, "MET_samples"),
        },
        "oxygen": {
            "vo2_max": _dig(oxygen, "vo2max_ml_per_min_per_kg"),
            "avg_saturation": _dig(oxygen, "avg_saturation_percentage"),
            "vo2_samples": _dig(oxygen, "vo2_samples"),
            "saturation_samples": _dig(oxygen, "saturation_samples"),
        },
        "stress": {
            "avg_level": _dig(stress, "avg_stress_level"),
            "max_level": _dig(stress, "max_stress_level"),
            "high_stress_duration": _dig(stress, "high_stress_duration_seconds"),
            "medium_stress_duration": _dig(stress, "medium_stress_duration_seconds"),
            "low_stress_duration": _dig(stress, "low_stress_duration_seconds"),
            "samples": _dig(stress, "samples"),
        },
        "scores": {
            "recovery": _dig(item, "scores", "recovery"),
            "activity": _dig(item, "scores", "activity"),
            "sleep": _dig(item, "scores", "sleep"),
        },
        "strain": {"level": _dig(item, "strain_data", "strain_level")},
        "swimming": _dig(distance, "swimming"),
        "tags": _dig(item, "tag_data", "tags") or [],
        "device_info": item.get("device_data"),
        "enrichment": item.get("data_enrichment"),
        "metadata": {
            "start_time": _dig(item, "metadata", "start_time"),
            "end_time": _dig(item, "metadata", "end_time"),
            "upload_type": _dig(item, "metadata", "upload_type"),
            "timestamp_localization": _dig(item, "metadata", "timestamp_localization"),
        },
    }


class TerraWebhookService:

    def __init__(self, secret: Optional[str] = None):
        self._secret = secret

    @property
    def secret(self) -> str:
        return self._secret if self._secret is not None else settings.terra_secret

    # ── Signature ─────────────────────────────────────────────────────────

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        base64(HMAC-SHA256(TERRA_SECRET, body)) compared in constant time.
        A missing secret or header never verifies.
        """
        if not self.secret or not signature:
            return False
        digest = hmac.new(self.secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("ascii")
        return hmac.compare_digest(expected, signature.strip())

    # ── Event dispatch ────────────────────────────────────────────────────

    async def handle_event(self, db: AsyncSession, event: TerraWebhookEvent) -> str:
        """Returns the acknowledgement message for the webhook response."""
        logger.info("Terra webhook received: type=%s provider=%s", event.type, event.user.provider)

        if event.type == "auth":
            await self._save_connection(db, event)
        elif event.type in DATA_EVENT_TYPES:
            connection = await self._get_connection(db, event.user.user_id)
            if connection is None:
                logger.warning("No connection found for Terra user %s", event.user.user_id)
                return "No connection found"
            await self._store_items(db, connection, event)
        else:
            logger.info("Ignoring Terra event type %s", event.type)

        return "Webhook processed successfully"

    async def _save_connection(self, db: AsyncSession, event: TerraWebhookEvent) -> None:
        terra_user = event.user
        if not terra_user.user_id or not terra_user.provider or not terra_user.reference_id:
            raise ValidationError("Auth event is missing user_id, provider or reference_id")
        try:
            our_user_id = uuid.UUID(terra_user.reference_id)
        except ValueError as e:
            raise ValidationError(
                "Auth event reference_id is not a valid user id", field="reference_id"
            ) from e

        scopes = [s.strip() for s in (terra_user.scopes or "").split(",") if s.strip()]
        now = datetime.now(timezone.utc)
        stmt = pg_insert(WearableConnection).values(
            user_id=our_user_id,
            provider=terra_user.provider,
            terra_user_id=terra_user.user_id,
            status="connected",
            scopes=scopes,
            connected_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[WearableConnection.user_id, WearableConnection.provider],
            set_={
                "terra_user_id": stmt.excluded.terra_user_id,
                "status": "connected",
                "scopes": stmt.excluded.scopes,
                "connected_at": now,
                "updated_at": now,
            },
        )
        try:
            await db.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Database error saving Terra connection for %s: %s", our_user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info(
            "Terra connection saved: %s -> %s (scopes: %s)",
            terra_user.provider, terra_user.user_id, ", ".join(scopes),
        )

    async def _get_connection(
        self, db: AsyncSession, terra_user_id: Optional[str]
    ) -> Optional[WearableConnection]:
        if not terra_user_id:
            return None
        try:
            result = await db.execute(
                select(WearableConnection).where(WearableConnection.terra_user_id == terra_user_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error looking up Terra user %s: %s", terra_user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

    async def _store_items(
        self, db: AsyncSession, connection: WearableConnection, event: TerraWebhookEvent
    ) -> int:
        """
        Upsert one health_data row per item, keyed by (user, provider,
        data type, recorded_at). Terra redelivers events it considers
        unacknowledged; a redelivery refreshes the row instead of adding one.

        Returns:
            Number of distinct rows written.
        """
        now = datetime.now(timezone.utc)
        # Later items win when two share a start time; one statement may not
        # update the same row twice
        by_time: Dict[datetime, Dict[str, Any]] = {}
        for item in event.data:
            recorded_at = (
                _parse_timestamp(_dig(item, "metadata", "start_time"))
                or _parse_timestamp(_dig(item, "metadata", "end_time"))
                or now
            )
            by_time[recorded_at] = {
                "user_id": connection.user_id,
                "provider": connection.provider,
                "data_type": COMPREHENSIVE_DATA_TYPE,
                "data": normalize_item(item),
                "recorded_at": recorded_at,
                "synced_at": now,
            }

        try:
            if by_time:
                stmt = pg_insert(HealthData).values(list(by_time.values()))
                stmt = stmt.on_conflict_do_update(
                    index_elements=[
                        HealthData.user_id,
                        HealthData.provider,
                        HealthData.data_type,
                        HealthData.recorded_at,
                    ],
                    set_={"data": stmt.excluded.data, "synced_at": stmt.excluded.synced_at},
                )
                await db.execute(stmt)
            await db.execute(
                update(WearableConnection)
                .where(WearableConnection.id == connection.id)
                .values(last_sync=now, updated_at=now)
            )
        except SQLAlchemyError as e:
            logger.error(
                "Database error storing Terra %s data for %s: %s",
                event.type, connection.user_id, str(e),
            )
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Processed %d %s records for %s", len(by_time), event.type, connection.provider)
        return len(by_time)

    # ── User-facing ───────────────────────────────────────────────────────

    async def list_connections(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> List[WearableConnection]:
        try:
            result = await db.execute(
                select(WearableConnection)
                .where(WearableConnection.user_id == user_id)
                .order_by(WearableConnection.connected_at.desc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing wearables for %s: %s", user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

    async def disconnect(self, db: AsyncSession, user_id: uuid.UUID, provider: str) -> None:
        """Marks the connection disconnected; stored health data is kept."""
        now = datetime.now(timezone.utc)
        try:
            result = await db.execute(
                update(WearableConnection)
                .where(
                    WearableConnection.user_id == user_id,
                    WearableConnection.provider == provider,
                )
                .values(status="disconnected", updated_at=now)
            )
        except SQLAlchemyError as e:
            logger.error("Database error disconnecting %s for %s: %s", provider, user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        if not result.rowcount:
            raise NotFoundError(
                resource="wearable connection",
                resource_id=provider,
                message="Wearable connection not found",
            )
        logger.info("Wearable %s disconnected for user %s", provider, user_id)


# ── Singleton Instance ────────────────────────────────────────────────────
terra_webhook_service = TerraWebhookService()
