"""
Treatment AI Backend — Medication Service Unit Tests
=====================================================

What:  Catalog search, the user medication list (including legacy field
       names) and prescription scanning with a mocked vision model.
"""

from datetime import date
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from treatment_api.exceptions import LLMServiceError, NotFoundError, ValidationError
from treatment_api.models.medication import MedicationMaster, UserMedication
from treatment_api.schemas.medications import MedicationPayload
from treatment_api.services.medication_service import NOT_FOUND_MESSAGE, MedicationService


def _sql(mock_db_session) -> str:
    return str(mock_db_session.execute.await_args.args[0].compile(dialect=postgresql.dialect()))


class TestSearchCatalog:

    @pytest.mark.asyncio
    async def test_requires_query_or_class(self, mock_llm, mock_db_session):
        with pytest.raises(ValidationError, match='"q" or "class"'):
            await MedicationService(llm=mock_llm).search_catalog(mock_db_session)

    @pytest.mark.asyncio
    async def test_name_search(self, mock_llm, mock_db_session):
        await MedicationService(llm=mock_llm).search_catalog(mock_db_session, query="metf")

        sql = _sql(mock_db_session)
        assert "medications_master.generic_name ILIKE" in sql
        assert "CASE" in sql

    @pytest.mark.asyncio
    async def test_class_listing(self, mock_llm, mock_db_session):
        await MedicationService(llm=mock_llm).search_catalog(
            mock_db_session, therapeutic_class="statin"
        )

        sql = _sql(mock_db_session)
        assert "medications_master.therapeutic_class ILIKE" in sql
        assert "generic_name ILIKE" not in sql


class TestPayloadAliases:

    def test_legacy_names(self):
        payload = MedicationPayload(
            medication_name=" Lisinopril ",
            date_started=date(2024, 3, 1),
            currently_taking=False,
        )
        assert payload.resolved_name() == "Lisinopril"
        assert payload.resolved_start_date() == date(2024, 3, 1)
        assert payload.resolved_status() == "inactive"

    def test_explicit_status_wins(self):
        payload = MedicationPayload(name="x", status="discontinued", currently_taking=True)
        assert payload.resolved_status() == "discontinued"


class TestUserMedications:

    def setup_method(self):
        self.user_id = uuid4()

    @pytest.mark.asyncio
    async def test_list_orders_active_first(self, mock_llm, mock_db_session):
        rows = [UserMedication(id=uuid4(), user_id=self.user_id, name="Metformin", status="active")]
        mock_db_session.execute.return_value.scalars.return_value.all.return_value = rows

        medications = await MedicationService(llm=mock_llm).list_user_medications(
            mock_db_session, self.user_id
        )

        assert medications == rows
        sql = _sql(mock_db_session)
        assert "WHERE user_medications.user_id = " in sql
        order_by = sql.split("ORDER BY", 1)[1]
        assert order_by.index("CASE WHEN") < order_by.index("start_date DESC NULLS LAST")
        assert order_by.rstrip().endswith("user_medications.name ASC")

    @pytest.mark.asyncio
    async def test_add_defaults_to_active(self, mock_llm, mock_db_session):
        payload = MedicationPayload(name="Metformin", dosage="500mg", frequency="")

        medication = await MedicationService(llm=mock_llm).add_user_medication(
            mock_db_session, self.user_id, payload
        )

        assert medication.status == "active"
        assert medication.frequency is None
        mock_db_session.add.assert_called_once_with(medication)
        mock_db_session.refresh.assert_awaited_once_with(medication)

    @pytest.mark.asyncio
    async def test_add_requires_name(self, mock_llm, mock_db_session):
        with pytest.raises(ValidationError, match="Medication name is required"):
            await MedicationService(llm=mock_llm).add_user_medication(
                mock_db_session, self.user_id, MedicationPayload(name="  ")
            )

    @pytest.mark.asyncio
    async def test_update_only_sent_fields(self, mock_llm, mock_db_session):
        existing = UserMedication(
            id=uuid4(), user_id=self.user_id, name="Metformin", dosage="500mg", status="active"
        )
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = existing

        updated = await MedicationService(llm=mock_llm).update_user_medication(
            mock_db_session,
            self.user_id,
            MedicationPayload(id=existing.id, dosage="1000mg"),
        )

        assert updated.dosage == "1000mg"
        assert updated.name == "Metformin"
        assert updated.updated_at is not None

    @pytest.mark.asyncio
    async def test_update_requires_id(self, mock_llm, mock_db_session):
        with pytest.raises(ValidationError, match="required for updates"):
            await MedicationService(llm=mock_llm).update_user_medication(
                mock_db_session, self.user_id, MedicationPayload(name="x")
            )

    @pytest.mark.asyncio
    async def test_update_someone_elses_medication(self, mock_llm, mock_db_session):
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = None

        with pytest.raises(NotFoundError, match=NOT_FOUND_MESSAGE):
            await MedicationService(llm=mock_llm).update_user_medication(
                mock_db_session, self.user_id, MedicationPayload(id=uuid4(), dosage="1mg")
            )

    @pytest.mark.asyncio
    async def test_delete_missing(self, mock_llm, mock_db_session):
        mock_db_session.execute.return_value = MagicMock(rowcount=0)

        with pytest.raises(NotFoundError):
            await MedicationService(llm=mock_llm).delete_user_medication(
                mock_db_session, self.user_id, uuid4()
            )


class TestScanPrescription:

    @pytest.mark.asyncio
    async def test_extracts_fields_and_matches_catalog(self, mock_llm, mock_db_session):
        mock_llm.describe_image.return_value = (
            '```json\n{"medication_name": "Atorvastatin", "dosage": "20mg", '
            '"frequency": "once daily", "confidence": 0.92, "unexpected": "x"}\n```'
        )
        match = MedicationMaster(id="atorvastatin", name="Atorvastatin")
        mock_db_session.execute.return_value.scalars.return_value.all.return_value = [match]

        extracted, matched = await MedicationService(llm=mock_llm).scan_prescription(
            mock_db_session, b"jpeg", "image/jpeg"
        )

        assert extracted["medication_name"] == "Atorvastatin"
        assert extracted["pharmacy"] is None
        assert extracted["confidence"] == 0.92
        assert "unexpected" not in extracted
        assert matched is match

    @pytest.mark.asyncio
    async def test_unreadable_label_skips_catalog(self, mock_llm, mock_db_session):
        mock_llm.describe_image.return_value = '{"medication_name": null, "confidence": 0.1}'

        extracted, matched = await MedicationService(llm=mock_llm).scan_prescription(
            mock_db_session, b"jpeg", "image/jpeg"
        )

        assert matched is None
        mock_db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_json_reply(self, mock_llm, mock_db_session):
        mock_llm.describe_image.return_value = "I can't read this label."

        with pytest.raises(LLMServiceError, match="Failed to parse prescription information"):
            await MedicationService(llm=mock_llm).scan_prescription(
                mock_db_session, b"jpeg", "image/jpeg"
            )
