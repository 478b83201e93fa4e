"""
Treatment AI Backend — Timeline Service Unit Tests
===================================================

What:  Diagnosis flattening, summary text and the timeline CRUD paths.
"""

from datetime import date
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from treatment_api.exceptions import NotFoundError, ValidationError
from treatment_api.models.health_timeline import HealthTimelineEntry
from treatment_api.schemas.timeline import (
    DiagnosisSummary,
    SaveTimelineRequest,
    UpdateTimelineRequest,
)
from treatment_api.services.timeline_service import (
    TimelineService,
    generate_chat_summary,
    summarize_diagnosis,
)


class TestSummarizeDiagnosis:

    def test_nested_shape(self):
        summary = summarize_diagnosis({
            "diagnosis": {"display_name": "Migraine", "display_name_layman": "Bad headache"},
            "probability": 72.4,
        })
        assert summary == DiagnosisSummary(
            condition="Migraine",
            probability=72.4,
            medical_term="Migraine",
            layman_term="Bad headache",
        )

    def test_flat_shape(self):
        summary = summarize_diagnosis({
            "condition": "Sinusitis",
            "probability": "15",
            "medicalTerm": "Rhinosinusitis",
            "laymanTerm": "Sinus infection",
        })
        assert summary.condition == "Sinusitis"
        assert summary.probability == 15.0
        assert summary.medical_term == "Rhinosinusitis"

    def test_missing_everything(self):
        summary = summarize_diagnosis({"probability": "n/a"})
        assert summary.condition == "Unknown"
        assert summary.probability == 0
        assert summary.layman_term == "Unknown"

    @pytest.mark.parametrize("raw", ["nan", "Infinity", "-inf", float("nan")])
    def test_non_finite_probability_is_zero(self, raw):
        summary = summarize_diagnosis({"condition": "Flu", "probability": raw})

        assert summary.probability == 0
        text = generate_chat_summary(["fever"], None, [summary], [])
        assert "Primary consideration: Flu." in text


class TestGenerateChatSummary:

    def test_full_summary(self):
        diagnoses = [
            DiagnosisSummary(condition="Migraine", probability=72.5),
            DiagnosisSummary(condition="Tension headache", probability=20),
            DiagnosisSummary(condition="Sinusitis", probability=5),
            DiagnosisSummary(condition="Cluster headache", probability=2),
        ]

        text = generate_chat_summary(
            ["headache", "nausea"], "Throbbing pain", diagnoses, [{}] * 14
        )

        assert text == (
            "Medical consultation regarding headache, nausea. "
            "Key findings: Throbbing pain. "
            "Primary consideration: Migraine (73% probability). "
            "Other considerations include: Tension headache, Sinusitis. "
            "Consultation included 14 exchanges with comprehensive diagnostic analysis."
        )

    def test_sparse_summary(self):
        text = generate_chat_summary([], None, [DiagnosisSummary(condition="Cold")], None)

        assert text == (
            "Medical consultation regarding various symptoms. "
            "Primary consideration: Cold. "
            "Consultation included 0 exchanges with comprehensive diagnostic analysis."
        )

    def test_infinite_probability_on_summary_model(self):
        diagnoses = [DiagnosisSummary(condition="Cold", probability=float("inf"))]

        text = generate_chat_summary(["cough"], None, diagnoses, None)

        assert "Primary consideration: Cold." in text


class TestSave:

    def setup_method(self):
        self.service = TimelineService()
        self.user_id = uuid4()

    @pytest.mark.parametrize(
        "payload, message",
        [
            ({"symptoms": ["cough"], "differentialDiagnoses": []}, "Session ID and symptoms"),
            ({"sessionId": "s1", "differentialDiagnoses": []}, "Session ID and symptoms"),
            ({"sessionId": "s1", "symptoms": ["cough"]}, "Differential diagnoses are required"),
        ],
    )
    @pytest.mark.asyncio
    async def test_required_fields(self, mock_db_session, payload, message):
        with pytest.raises(ValidationError, match=message):
            await self.service.save(
                mock_db_session, self.user_id, SaveTimelineRequest.model_validate(payload)
            )

    @pytest.mark.asyncio
    async def test_keeps_top_five_and_generates_summary(self, mock_db_session):
        payload = SaveTimelineRequest.model_validate({
            "sessionId": "session-1",
            "symptoms": ["cough", "fever"],
            "differentialDiagnoses": [
                {"condition": f"Condition {i}", "probability": 50 - i} for i in range(7)
            ],
            "chatHistory": [{"role": "user", "content": "I have a cough"}],
        })

        entry = await self.service.save(mock_db_session, self.user_id, payload)

        assert entry.date == date.today()
        assert len(entry.top_differential_diagnoses) == 5
        assert entry.top_differential_diagnoses[0]["medicalTerm"] == "Unknown"
        assert entry.findings == "Patient reported: cough, fever"
        assert entry.chat_summary.startswith("Medical consultation regarding cough, fever.")
        assert "Primary consideration: Condition 0 (50% probability)" in entry.chat_summary
        mock_db_session.add.assert_called_once_with(entry)
        mock_db_session.refresh.assert_awaited_once_with(entry)

    @pytest.mark.asyncio
    async def test_fallback_summary_without_history(self, mock_db_session):
        payload = SaveTimelineRequest(
            session_id="session-2", symptoms=["rash"], differential_diagnoses=[]
        )

        entry = await self.service.save(mock_db_session, self.user_id, payload)

        assert entry.chat_summary == "Consultation regarding rash"
        assert entry.full_chat_history == []

    @pytest.mark.asyncio
    async def test_explicit_summary_wins(self, mock_db_session):
        payload = SaveTimelineRequest(
            session_id="session-3",
            symptoms=["rash"],
            differential_diagnoses=[],
            full_chat_history=[{"role": "user", "content": "itchy"}],
            chat_summary="Doctor-written summary",
        )

        entry = await self.service.save(mock_db_session, self.user_id, payload)

        assert entry.chat_summary == "Doctor-written summary"
        assert entry.full_chat_history == [{"role": "user", "content": "itchy"}]


class TestEntries:

    def setup_method(self):
        self.service = TimelineService()
        self.user_id = uuid4()

    @pytest.mark.asyncio
    async def test_get_missing(self, mock_db_session):
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = None

        with pytest.raises(NotFoundError, match="Timeline entry not found"):
            await self.service.get_entry(mock_db_session, self.user_id, uuid4())

    @pytest.mark.asyncio
    async def test_update_only_sent_fields(self, mock_db_session):
        entry = HealthTimelineEntry(
            id=uuid4(), user_id=self.user_id, session_id="s", symptoms=["cough"], findings="old"
        )
        mock_db_session.execute.return_value.scalar_one_or_none.return_value = entry

        updated = await self.service.update_entry(
            mock_db_session, self.user_id, entry.id, UpdateTimelineRequest(findings="new")
        )

        assert updated.findings == "new"
        assert updated.symptoms == ["cough"]
        assert updated.updated_at is not None

    @pytest.mark.asyncio
    async def test_delete_missing(self, mock_db_session):
        mock_db_session.execute.return_value = MagicMock(rowcount=0)

        with pytest.raises(NotFoundError):
            await self.service.delete_entry(mock_db_session, self.user_id, uuid4())

    @pytest.mark.asyncio
    async def test_stats(self, mock_db_session):
        totals = MagicMock()
        totals.one.return_value = (3, date(2025, 2, 1))
        top = MagicMock()
        top.all.return_value = [
            MagicMock(symptom="cough", occurrences=2),
            MagicMock(symptom="fever", occurrences=1),
        ]
        mock_db_session.execute.side_effect = [totals, top]

        stats = await self.service.stats(mock_db_session, self.user_id)

        assert stats.total_entries == 3
        assert stats.last_entry == date(2025, 2, 1)
        assert [(s.symptom, s.count) for s in stats.most_common_symptoms] == [
            ("cough", 2), ("fever", 1),
        ]

    @pytest.mark.asyncio
    async def test_stats_without_entries(self, mock_db_session):
        totals = MagicMock()
        totals.one.return_value = (0, None)
        top = MagicMock()
        top.all.return_value = []
        mock_db_session.execute.side_effect = [totals, top]

        stats = await self.service.stats(mock_db_session, self.user_id)

        assert stats.total_entries == 0
        assert stats.last_entry is None
        assert stats.most_common_symptoms == []
