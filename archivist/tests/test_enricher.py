"""Tests for document summaries and keywords."""

import pytest

from archivist.common.errors import InvalidInput, RateLimited
from archivist.ingestion.enricher import DocumentEnricher, extract_keywords, lexical_summary
from archivist.tests.conftest import TREASURY_TEXT, FakeLLM, make_document


class TestLexical:
    def test_keywords_ranked_by_frequency(self):
        text = "Grants fund audits. Audits protect grants. Grants need reports and the audits."
        assert extract_keywords(text, count=3) == ["grants", "audits", "fund"]

    def test_stopwords_and_short_words_skipped(self):
        assert extract_keywords("the of and to is it an ox", count=5) == []

    def test_summary_takes_leading_sentences(self):
        summary = lexical_summary(TREASURY_TEXT)
        assert summary.startswith("The treasury committee reviewed the grant program")
        assert "quarterly report" not in summary


class TestEnrich:
    @pytest.mark.asyncio
    async def test_provider_reply_used(self):
        llm = FakeLLM(reply='```json\n{"summary": "Milestone grants.", "keywords": ["Grant program", "grant program", "payouts"]}\n```')
        enrichment = await DocumentEnricher([llm], keyword_count=5).enrich(make_document())

        assert enrichment.summary == "Milestone grants."
        assert enrichment.keywords == ["grant program", "payouts"]
        assert enrichment.source == "fake:model"
        assert TREASURY_TEXT in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_missing_keywords_filled_lexically(self):
        llm = FakeLLM(reply='{"summary": "Milestone grants."}')
        enrichment = await DocumentEnricher([llm], keyword_count=3).enrich(make_document())
        assert enrichment.keywords == extract_keywords(TREASURY_TEXT, 3)

    @pytest.mark.asyncio
    async def test_failed_provider_falls_through_to_next(self):
        first = FakeLLM(name="first", always_raise=RateLimited("slow down"))
        second = FakeLLM(name="second", reply='{"summary": "From the second provider."}')

        enrichment = await DocumentEnricher([first, second]).enrich(make_document())

        assert enrichment.source == "second"
        assert len(first.prompts) == 1

    @pytest.mark.asyncio
    async def test_lexical_fallback(self):
        clients = [
            FakeLLM(name="broken", always_raise=InvalidInput("bad request")),
            FakeLLM(name="chatty", reply="Here is a summary without any JSON."),
            FakeLLM(name="offline", available=False),
        ]

        enrichment = await DocumentEnricher(clients).enrich(make_document())

        assert enrichment.source == "lexical"
        assert enrichment.summary == lexical_summary(TREASURY_TEXT)
        assert enrichment.keywords[0] == "treasury"
        assert clients[2].prompts == []

    @pytest.mark.asyncio
    async def test_summary_is_redacted(self):
        llm = FakeLLM(reply='{"summary": "Write to chair@dao.example.com for the grant."}')
        enrichment = await DocumentEnricher([llm]).enrich(make_document())
        assert "chair@dao.example.com" not in enrichment.summary
        assert "[email]" in enrichment.summary

    @pytest.mark.asyncio
    async def test_no_clients_is_lexical(self):
        enrichment = await DocumentEnricher().enrich(make_document())
        assert enrichment.to_dict()["source"] == "lexical"
