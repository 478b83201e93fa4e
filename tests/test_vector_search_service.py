"""
Treatment AI Backend — Vector Search Service Unit Tests
========================================================

What:  Similarity scoring, the pgvector query shape, contextual text and
       document indexing.
"""

import pytest
from sqlalchemy.dialects import postgresql

from treatment_api.models.sdco_document import SdcoDocument
from treatment_api.schemas.vector import SdcoDocumentItem, SdcoDocumentUpsert, SearchResult
from treatment_api.services.vector_search_service import (
    NO_CONTEXT_MESSAGE,
    VectorSearchService,
    relevance_score,
)


def _document(doc_id: int, name: str, severity=None, content=None) -> SdcoDocument:
    return SdcoDocument(
        id=doc_id,
        sdco_id=f"{name.lower().replace(' ', '_')}@C000{doc_id}",
        display_name=name,
        display_name_layman=None,
        severity_level=severity,
        synonyms=[],
        related_terms=[],
        content=content,
    )


def _hit(document: SdcoDocument, similarity: float) -> SearchResult:
    return SearchResult(
        document=SdcoDocumentItem.model_validate(document),
        similarity=similarity,
        relevance_score=similarity,
    )


@pytest.mark.parametrize(
    "similarity, severity, expected",
    [
        (0.8, None, 0.8),
        (0.8, "moderate", 0.8),
        (0.75, "high", 0.9),
        (0.75, "critical", 0.975),
        (0.9, "critical", 1.0),
    ],
)
def test_relevance_score(similarity, severity, expected):
    assert relevance_score(similarity, severity) == pytest.approx(expected)


class TestSearch:

    @pytest.mark.asyncio
    async def test_rows_become_results(self, mock_db_session, mock_llm):
        mock_db_session.execute.return_value.all.return_value = [
            (_document(1, "Chest pain", severity="high"), 0.25),
            (_document(2, "Heartburn"), 0.28),
        ]
        service = VectorSearchService(llm=mock_llm)

        results = await service.search(mock_db_session, "burning in my chest")

        mock_llm.embed.assert_awaited_once_with("burning in my chest")
        assert [r.document.display_name for r in results] == ["Chest pain", "Heartburn"]
        assert results[0].similarity == pytest.approx(0.75)
        assert results[0].relevance_score == pytest.approx(0.9)
        assert results[1].relevance_score == pytest.approx(0.72)

    @pytest.mark.asyncio
    async def test_query_shape(self, mock_db_session, mock_llm):
        mock_db_session.execute.return_value.all.return_value = []
        service = VectorSearchService(llm=mock_llm)

        await service.search(mock_db_session, "cough", limit=3, body_system="respiratory")

        stmt = mock_db_session.execute.await_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "<=>" in sql
        assert "embedding IS NOT NULL" in sql
        assert "sdco_documents.body_system = " in sql
        assert "ORDER BY" in sql and "LIMIT" in sql


class TestContextualInformation:

    @pytest.mark.asyncio
    async def test_no_results(self, mock_db_session, mock_llm):
        service = VectorSearchService(llm=mock_llm)
        text = await service.contextual_information(mock_db_session, "cough", results=[])
        assert text == NO_CONTEXT_MESSAGE

    @pytest.mark.asyncio
    async def test_snippets(self, mock_db_session, mock_llm):
        service = VectorSearchService(llm=mock_llm)
        results = [_hit(_document(1, "Dyspnea", content="Shortness of breath."), 0.9)]
        results[0].document.display_name_layman = "Breathlessness"

        text = await service.contextual_information(mock_db_session, "can't breathe", results=results)

        assert text == (
            'Relevant medical information for "can\'t breathe":\n\n'
            "Dyspnea (Breathlessness): Shortness of breath.\n"
        )
        mock_llm.embed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_character_budget(self, mock_db_session, mock_llm):
        service = VectorSearchService(llm=mock_llm)
        results = [_hit(_document(i, f"Doc {i}", content="x" * 50), 0.9) for i in range(1, 4)]

        text = await service.contextual_information(
            mock_db_session, "q", max_chars=140, results=results
        )

        assert "Doc 1" in text and "Doc 2" in text
        assert "Doc 3" not in text

    @pytest.mark.asyncio
    async def test_oversized_first_hit_is_truncated(self, mock_db_session, mock_llm):
        service = VectorSearchService(llm=mock_llm)
        results = [_hit(_document(1, "Asthma", content="y" * 500), 0.9)]

        text = await service.contextual_information(
            mock_db_session, "wheeze", max_chars=100, results=results
        )

        header = 'Relevant medical information for "wheeze":\n\n'
        body = text[len(header):]
        assert body.startswith("Asthma (Asthma): yyy")
        assert len(body) == 100
        assert body.endswith("\n")


class TestUpsertDocument:

    @pytest.mark.asyncio
    async def test_upsert_embeds_content(self, mock_db_session, mock_llm):
        service = VectorSearchService(llm=mock_llm)
        doc = SdcoDocumentUpsert(
            sdco_id="headache@C0018681",
            display_name="Headache",
            content="Pain in the head or neck region.",
        )

        await service.upsert_document(mock_db_session, doc)

        mock_llm.embed.assert_awaited_once_with("Pain in the head or neck region.")
        sql = str(mock_db_session.execute.await_args.args[0].compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT (sdco_id) DO UPDATE" in sql
