"""
Treatment AI Backend — Condition Service
=========================================

What:  Condition catalog search/sync plus the caller's own condition list.
Who:   Called by routes/conditions.py.

Soft deletes:
    Removing a condition sets `is_active = false`. Re-adding the same
    catalog id later inserts a fresh row; the duplicate check only looks at
    active rows.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.exceptions import (
    ConflictError,
    DatabaseError,
    NotFoundError,
    ValidationError,
)
from treatment_api.models.condition import ConditionMaster, UserCondition
from treatment_api.schemas.conditions import ConditionUpsert, UserConditionItem

logger = logging.getLogger(__name__)

UNKNOWN_CONDITION = "Unknown Condition"


class ConditionService:

    # ── Catalog ───────────────────────────────────────────────────────────

    async def search_conditions(
        self, db: AsyncSession, query: Optional[str], limit: int = 50
    ) -> List[ConditionMaster]:
        """
        Case-insensitive substring search over name, category and ICD-10.

        Ranking: exact name match, then name contains, then category
        contains, then alphabetical.
        """
        term = (query or "").strip()
        if not term:
            raise ValidationError('Query parameter "q" is required', field="q")

        pattern = f"%{term}%"
        rank = case(
            (func.lower(ConditionMaster.name) == term.lower(), 0),
            (ConditionMaster.name.ilike(pattern), 1),
            (ConditionMaster.category.ilike(pattern), 2),
            else_=3,
        )
        try:
            result = await db.execute(
                select(ConditionMaster)
                .where(
                    or_(
                        ConditionMaster.name.ilike(pattern),
                        ConditionMaster.category.ilike(pattern),
                        ConditionMaster.icd10_code.ilike(pattern),
                    )
                )
                .order_by(rank, ConditionMaster.name)
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error searching conditions for %r: %s", term, str(e))
            raise DatabaseError(
                message="Could not search conditions. Please try again.",
                context={"error_type": type(e).__name__},
            ) from e

    async def list_conditions(self, db: AsyncSession) -> List[ConditionMaster]:
        try:
            result = await db.execute(select(ConditionMaster).order_by(ConditionMaster.name))
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing conditions: %s", str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

    async def get_condition(self, db: AsyncSession, condition_id: str) -> ConditionMaster:
        try:
            result = await db.execute(
                select(ConditionMaster).where(ConditionMaster.id == condition_id)
            )
            condition = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error fetching condition %s: %s", condition_id, str(e))
            raise DatabaseError(context={"condition_id": condition_id}) from e

        if condition is None:
            raise NotFoundError(resource="condition", resource_id=condition_id)
        return condition

    async def upsert_conditions(
        self, db: AsyncSession, items: Sequence[ConditionUpsert]
    ) -> int:
        """
        Catalog sync: INSERT ... ON CONFLICT (id) DO UPDATE.

        Returns the number of rows written.
        """
        if not items:
            return 0

        rows = [item.model_dump() for item in items]
        stmt = pg_insert(ConditionMaster).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ConditionMaster.id],
            set_={
                "name": stmt.excluded.name,
                "icd10_code": stmt.excluded.icd10_code,
                "category": stmt.excluded.category,
                "description": stmt.excluded.description,
                "symptoms": stmt.excluded.symptoms,
                "related_conditions": stmt.excluded.related_conditions,
                "severity_levels": stmt.excluded.severity_levels,
                "common_treatments": stmt.excluded.common_treatments,
                "risk_factors": stmt.excluded.risk_factors,
                "updated_at": func.now(),
            },
        )
        try:
            await db.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Database error syncing %d conditions: %s", len(rows), str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Condition catalog synced: %d rows", len(rows))
        return len(rows)

    # ── User conditions ───────────────────────────────────────────────────

    async def list_user_conditions(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> List[UserConditionItem]:
        """Active conditions, newest first, display name resolved from the catalog."""
        try:
            result = await db.execute(
                select(
                    UserCondition.condition_id.label("id"),
                    func.coalesce(
                        UserCondition.display_name,
                        ConditionMaster.name,
                    ).label("display_name"),
                    UserCondition.added_date,
                    UserCondition.severity,
                    UserCondition.notes,
                )
                .outerjoin(ConditionMaster, ConditionMaster.id == UserCondition.condition_id)
                .where(UserCondition.user_id == user_id, UserCondition.is_active.is_(True))
                .order_by(UserCondition.added_date.desc())
            )
            rows = result.mappings().all()
        except SQLAlchemyError as e:
            logger.error("Database error listing conditions for %s: %s", user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        return [
            UserConditionItem(
                id=row["id"],
                display_name=row["display_name"] or UNKNOWN_CONDITION,
                added_date=row["added_date"],
                severity=row["severity"],
                notes=row["notes"],
            )
            for row in rows
        ]

    async def add_user_condition(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        condition_id: Optional[str],
        display_name: Optional[str] = None,
        severity: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> UserConditionItem:
        """
        Raises:
            ValidationError: conditionId missing (400)
            ConflictError: already active on the profile (409)
        """
        if not condition_id or not condition_id.strip():
            raise ValidationError("conditionId is required", field="conditionId")
        condition_id = condition_id.strip()

        try:
            existing = await db.execute(
                select(UserCondition.id).where(
                    UserCondition.user_id == user_id,
                    UserCondition.condition_id == condition_id,
                    UserCondition.is_active.is_(True),
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise ConflictError(
                    "Condition already exists for user",
                    context={"conditionId": condition_id},
                )

            if not display_name:
                catalog = await db.execute(
                    select(ConditionMaster.name).where(ConditionMaster.id == condition_id)
                )
                display_name = catalog.scalar_one_or_none()

            now = datetime.now(timezone.utc)
            row = UserCondition(
                user_id=user_id,
                condition_id=condition_id,
                display_name=display_name,
                severity=severity,
                notes=notes,
                added_date=now,
                is_active=True,
            )
            db.add(row)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error adding condition %s: %s", condition_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Condition %s added for user %s", condition_id, user_id)
        return UserConditionItem(
            id=condition_id,
            display_name=display_name or UNKNOWN_CONDITION,
            added_date=row.added_date,
            severity=severity,
            notes=notes,
        )

    async def remove_user_condition(
        self, db: AsyncSession, user_id: uuid.UUID, condition_id: Optional[str]
    ) -> None:
        """Soft delete. 0 rows touched → 404."""
        if not condition_id:
            raise ValidationError("conditionId is required", field="conditionId")

        try:
            result = await db.execute(
                update(UserCondition)
                .where(
                    UserCondition.user_id == user_id,
                    UserCondition.condition_id == condition_id,
                    UserCondition.is_active.is_(True),
                )
                .values(is_active=False, updated_at=func.now())
            )
        except SQLAlchemyError as e:
            logger.error("Database error removing condition %s: %s", condition_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        if not result.rowcount:
            raise NotFoundError(
                resource="condition",
                resource_id=condition_id,
                message="Condition not found for user",
            )
        logger.info("Condition %s removed for user %s", condition_id, user_id)


# ── Singleton Instance ────────────────────────────────────────────────────
condition_service = ConditionService()
