"""Tests for privacy-aware retrieval: ranking, over-fetching and session scoping."""

from datetime import datetime, timedelta, timezone

import pytest

from archivist.common.errors import InvalidFilter
from archivist.common.schemas import PrivacyDecision, PrivacyTier
from archivist.ingestion.validator import find_pii
from archivist.retriever.searcher import RetrievalEngine
from archivist.tests.conftest import SECURITY_TEXT, TREASURY_TEXT, VOTING_TEXT, make_document

CONFIDENTIAL_TEXT = (
    "The treasury committee reviewed a confidential grant for the core developers. "
    "Contact the lead at treasurer@dao.example.org before the payout is approved. "
    "Members agreed that milestone based payouts reduce the risk of abandoned projects."
)


async def ingest(processor, *documents):
    for document in documents:
        result = await processor.process(document)
        assert result.ok, result.to_dict()


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_verbatim_text_is_found(self, processor, retrieval):
        await ingest(processor, make_document(TREASURY_TEXT, privacy_level="minimal"),
                     make_document(VOTING_TEXT, privacy_level="minimal"))

        results = await retrieval.retrieve(TREASURY_TEXT, PrivacyTier.MINIMAL)

        assert results[0].chunk.text == TREASURY_TEXT
        assert results[0].similarity_score >= 0.95
        assert results[0].privacy_decision == PrivacyDecision.ALLOW

    @pytest.mark.asyncio
    async def test_results_ordered_by_rank_score(self, processor, retrieval):
        await ingest(processor, *[
            make_document(t, privacy_level="minimal") for t in (TREASURY_TEXT, VOTING_TEXT, SECURITY_TEXT)
        ])

        results = await retrieval.retrieve("treasury grant payouts", "minimal")

        scores = [r.rank_score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert len(results) <= retrieval.top_k

    @pytest.mark.asyncio
    async def test_minimal_requester_over_maximum_corpus(self, processor, retrieval):
        await ingest(processor, *[
            make_document(t, privacy_level="maximum") for t in (TREASURY_TEXT, VOTING_TEXT, SECURITY_TEXT)
        ])

        report = await retrieval.retrieve_with_stats(TREASURY_TEXT, PrivacyTier.MINIMAL)

        assert report.results == []
        assert report.denied_count == 3
        assert report.all_denied

    @pytest.mark.asyncio
    async def test_denied_candidates_replaced_from_over_fetch(self, processor, retrieval):
        secret = [
            make_document(f"{TREASURY_TEXT} Minute {n} was recorded by the secretary.", privacy_level="maximum")
            for n in ("one", "two", "three")
        ]
        public = [make_document(t, privacy_level="minimal") for t in (VOTING_TEXT, SECURITY_TEXT)]
        await ingest(processor, *secret, *public)

        report = await retrieval.retrieve_with_stats(TREASURY_TEXT, PrivacyTier.MINIMAL)

        assert {r.chunk.text for r in report.results} == {VOTING_TEXT, SECURITY_TEXT}
        assert report.denied_count == 3
        assert report.candidates_seen == 5

    @pytest.mark.asyncio
    async def test_partially_shareable_chunk_is_redacted(self, processor, retrieval):
        await ingest(processor, make_document(CONFIDENTIAL_TEXT, privacy_level="high", partially_shareable=True))

        results = await retrieval.retrieve(CONFIDENTIAL_TEXT, PrivacyTier.SELECTIVE)

        assert len(results) == 1
        result = results[0]
        assert result.is_redacted
        assert result.text != CONFIDENTIAL_TEXT
        assert len(result.text) <= 100
        assert find_pii(result.text) == []

    @pytest.mark.asyncio
    async def test_track_filter(self, processor, retrieval):
        await ingest(
            processor,
            make_document(TREASURY_TEXT, privacy_level="minimal", track="treasury"),
            make_document(VOTING_TEXT, privacy_level="minimal", track="governance"),
        )

        results = await retrieval.retrieve(TREASURY_TEXT, "minimal", filters={"track": "governance"})

        assert [r.chunk.text for r in results] == [VOTING_TEXT]

    @pytest.mark.asyncio
    async def test_invalid_filter_raises(self, processor, retrieval):
        await ingest(processor, make_document(TREASURY_TEXT))
        with pytest.raises(InvalidFilter):
            await retrieval.retrieve(TREASURY_TEXT, "minimal", filters={"colour": "blue"})

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, retrieval):
        with pytest.raises(ValueError):
            await retrieval.retrieve("  ", "minimal")


class TestSessions:
    @pytest.mark.asyncio
    async def test_session_scoped_search(self, processor, retrieval):
        await ingest(
            processor,
            make_document(TREASURY_TEXT, session_id="s1", privacy_level="minimal"),
            make_document(VOTING_TEXT, session_id="s2", privacy_level="minimal"),
        )

        results = await retrieval.retrieve(VOTING_TEXT, "minimal", session_id="s1")

        assert {r.origin_session for r in results} == {"s1"}

    @pytest.mark.asyncio
    async def test_cross_session_results_tagged_with_origin(self, processor, retrieval):
        await ingest(
            processor,
            make_document(TREASURY_TEXT, session_id="s1", privacy_level="minimal"),
            make_document(VOTING_TEXT, session_id="s2", privacy_level="minimal"),
        )

        report = await retrieval.retrieve_with_stats(
            "treasury voting governance", "minimal", session_id="s1", cross_session=True,
        )

        assert report.sessions_searched == ["s1", "s2"]
        grouped = RetrievalEngine.group_by_session(report.results)
        assert set(grouped) == {"s1", "s2"}

    @pytest.mark.asyncio
    async def test_unknown_session_searches_nothing(self, processor, retrieval):
        await ingest(processor, make_document(TREASURY_TEXT, privacy_level="minimal"))
        report = await retrieval.retrieve_with_stats(TREASURY_TEXT, "minimal", session_id="nope")
        assert report.results == []
        assert report.sessions_searched == []


class TestScoring:
    def test_recency_half_life(self, embedding_service, router):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        engine = RetrievalEngine(embedding_service, router, recency_half_life_days=90, clock=lambda: now)

        assert engine.recency(now) == pytest.approx(1.0)
        assert engine.recency(now - timedelta(days=90)) == pytest.approx(0.5)
        assert engine.recency(now - timedelta(days=180)) == pytest.approx(0.25)
        # naive timestamps are read as UTC
        assert engine.recency(datetime(2024, 3, 3)) == pytest.approx(0.5)

    def test_rank_score_weights(self, embedding_service, router):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        engine = RetrievalEngine(
            embedding_service, router,
            similarity_weight=0.7, recency_weight=0.2, quality_weight=0.1,
            clock=lambda: now,
        )
        assert engine.rank_score(0.8, now, 0.5) == pytest.approx(0.7 * 0.8 + 0.2 + 0.05)
