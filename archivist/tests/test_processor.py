"""Tests for the document processor: gating, idempotence, atomic writes and rollback."""

import asyncio
import logging
from unittest.mock import Mock, patch

import pytest

from archivist.common.embedding_service import EmbeddingProvider, EmbeddingService
from archivist.common.errors import EmbeddingFailed, PartiallyIndexed, ProviderUnavailable, RejectedLowQuality
from archivist.common.schemas import DocumentStatus
from archivist.common.text import generate_chunk_id
from archivist.common.vector_index import SessionIndexRouter
from archivist.ingestion.chunker import Chunker
from archivist.ingestion.enricher import DocumentEnricher
from archivist.ingestion.processor import DocumentProcessor
from archivist.retriever.correlator import KnowledgeCorrelator
from archivist.tests.conftest import (
    LOW_QUALITY_TEXT,
    SECURITY_TEXT,
    TREASURY_TEXT,
    VOTING_TEXT,
    FakeLLM,
    make_document,
)


class BrokenProvider(EmbeddingProvider):
    name = "broken"

    async def embed(self, texts):
        raise ProviderUnavailable("model crashed", provider=self.name)


class TestProcess:
    @pytest.mark.asyncio
    async def test_indexes_document(self, processor, router, store):
        document = make_document(title="Grants", author="alice", track="treasury", tags=["grants"])

        result = await processor.process(document)

        assert result.ok
        assert result.status == DocumentStatus.INDEXED
        assert len(result.chunks) == 1
        chunk = result.chunks[0]
        assert chunk.id == generate_chunk_id(TREASURY_TEXT)
        assert chunk.session_id == "s1"
        assert chunk.metadata["track"] == "treasury"
        assert chunk.metadata["author_hash"] and "alice" not in chunk.metadata["author_hash"]
        assert chunk.quality_score == result.quality_score
        assert router.get("s1", chunk.id) is not None
        assert store.get_document(document.id).status == DocumentStatus.INDEXED

    @pytest.mark.asyncio
    async def test_quality_score_recorded_before_indexing(self, processor, store):
        document = make_document()
        result = await processor.process(document)
        assert result.quality_score is not None
        assert store.get_document(document.id).quality_score == pytest.approx(result.quality_score)

    @pytest.mark.asyncio
    async def test_low_quality_document_rejected(self, processor, router, store):
        document = make_document(LOW_QUALITY_TEXT)

        result = await processor.process(document)

        assert result.status == DocumentStatus.REJECTED
        assert isinstance(result.error, RejectedLowQuality)
        assert router.size() == 0
        assert store.get_document(document.id).status == DocumentStatus.REJECTED
        with pytest.raises(RejectedLowQuality):
            result.raise_for_status()

    @pytest.mark.asyncio
    async def test_reingest_is_idempotent(self, processor, router, store):
        document = make_document()

        first = await processor.process(document)
        size_after_first = router.size()
        second = await processor.process(document)

        assert [c.id for c in first.chunks] == [c.id for c in second.chunks]
        assert router.size() == size_after_first
        assert len(store.list_chunks(document_id=document.id)) == len(first.chunks)

    @pytest.mark.asyncio
    async def test_changed_text_replaces_stale_chunks(self, processor, router, store):
        changed = Mock()
        processor._on_chunks_changed = changed

        await processor.process(make_document(TREASURY_TEXT, id="doc-1"))
        await processor.process(make_document(VOTING_TEXT, id="doc-1"))

        old_id = generate_chunk_id(TREASURY_TEXT)
        new_id = generate_chunk_id(VOTING_TEXT)
        assert router.get("s1", old_id) is None
        assert router.get("s1", new_id) is not None
        assert store.chunk_ids_for_document("doc-1") == [new_id]
        assert set(changed.call_args_list[-1].args[0]) == {old_id, new_id}

    @pytest.mark.asyncio
    async def test_rejected_reingest_keeps_indexed_version(self, processor, store):
        document = make_document(id="doc-keep")
        await processor.process(document)

        result = await processor.process(make_document(LOW_QUALITY_TEXT, id="doc-keep"))

        assert result.status == DocumentStatus.REJECTED
        assert store.get_document("doc-keep").status == DocumentStatus.INDEXED

    @pytest.mark.asyncio
    async def test_long_document_chunks_overlap(self, embedding_service, router, store, reconciliation):
        processor = DocumentProcessor(
            embedding_service, router, store,
            chunker=Chunker(window=20, overlap=5, min_chunk=5),
            reconciliation=reconciliation,
        )
        text = " ".join([TREASURY_TEXT, VOTING_TEXT, SECURITY_TEXT])

        result = await processor.process(make_document(text))

        assert result.ok
        assert len(result.chunks) > 1
        assert [c.position for c in result.chunks] == list(range(len(result.chunks)))
        assert router.size() == len(result.chunks)

    @pytest.mark.asyncio
    async def test_process_many_keeps_input_order(self, processor):
        documents = [make_document(t) for t in (TREASURY_TEXT, LOW_QUALITY_TEXT, VOTING_TEXT)]
        results = await processor.process_many(documents, concurrency=2)
        assert [r.document_id for r in results] == [d.id for d in documents]
        assert [r.status for r in results] == [
            DocumentStatus.INDEXED, DocumentStatus.REJECTED, DocumentStatus.INDEXED,
        ]


class TestFailures:
    @pytest.mark.asyncio
    async def test_embedding_failure_marks_document_failed(self, router, store, reconciliation):
        processor = DocumentProcessor(
            EmbeddingService([BrokenProvider()]), router, store, reconciliation=reconciliation,
        )
        document = make_document()

        result = await processor.process(document)

        assert result.status == DocumentStatus.FAILED
        assert isinstance(result.error, EmbeddingFailed)
        assert router.size() == 0
        assert store.get_document(document.id).status == DocumentStatus.FAILED

    @pytest.mark.asyncio
    async def test_vector_write_failure_writes_no_metadata_chunks(self, processor, router, store):
        document = make_document()
        with patch.object(router, "upsert_many", side_effect=RuntimeError("index offline")):
            result = await processor.process(document)

        assert result.status == DocumentStatus.FAILED
        assert store.list_chunks(document_id=document.id) == []
        assert store.get_document(document.id).status == DocumentStatus.FAILED

    @pytest.mark.asyncio
    async def test_metadata_failure_rolls_back_vectors(self, processor, router, store, reconciliation):
        document = make_document()
        with patch.object(store, "write_document", side_effect=RuntimeError("disk full")):
            result = await processor.process(document)

        assert result.status == DocumentStatus.FAILED
        assert str(result.error) == "disk full"
        assert router.size() == 0
        assert store.get_document(document.id) is None
        assert reconciliation.pending() == []

    @pytest.mark.asyncio
    async def test_metadata_failure_restores_previous_vectors(self, processor, router, store):
        document = make_document()
        await processor.process(document)
        chunk_id = generate_chunk_id(TREASURY_TEXT)
        before = router.get("s1", chunk_id)

        with patch.object(store, "write_document", side_effect=RuntimeError("disk full")):
            await processor.process(document)

        after = router.get("s1", chunk_id)
        assert after is not None
        assert after.metadata == before.metadata

    @pytest.mark.asyncio
    async def test_failed_rollback_is_partially_indexed(self, processor, router, store, reconciliation, caplog):
        document = make_document()
        with patch.object(store, "write_document", side_effect=RuntimeError("disk full")), \
                patch.object(router, "delete_many", side_effect=RuntimeError("index locked")), \
                caplog.at_level(logging.ERROR, logger="archivist.ingestion.reconciliation"):
            result = await processor.process(document)

        assert result.status == DocumentStatus.PARTIALLY_INDEXED
        assert isinstance(result.error, PartiallyIndexed)
        assert store.get_document(document.id).status == DocumentStatus.PARTIALLY_INDEXED
        pending = reconciliation.pending()
        assert [item.document_id for item in pending] == [document.id]
        assert pending[0].written_side == "vectors"
        assert "partially indexed" in caplog.text


class TestDeleteAndRestore:
    @pytest.mark.asyncio
    async def test_delete_document(self, processor, router, store):
        document = make_document()
        await processor.process(document)

        removed = await processor.delete_document(document.id)

        assert removed == 1
        assert router.size() == 0
        assert store.get_document(document.id) is None
        assert await processor.delete_document(document.id) == 0

    @pytest.mark.asyncio
    async def test_delete_keeps_vector_owned_by_another_document(self, processor, router):
        first = make_document(TREASURY_TEXT, id="doc-a")
        second = make_document(TREASURY_TEXT, id="doc-b")
        await processor.process(first)
        await processor.process(second)

        await processor.delete_document("doc-a")

        assert router.get("s1", generate_chunk_id(TREASURY_TEXT)) is not None

    @pytest.mark.asyncio
    async def test_delete_latest_owner_keeps_earlier_document(self, processor, router, store, retrieval):
        chunk_id = generate_chunk_id(TREASURY_TEXT)
        await processor.process(make_document(TREASURY_TEXT, id="doc-a"))
        await processor.process(make_document(TREASURY_TEXT, id="doc-b"))
        assert store.chunk_owners("s1", chunk_id) == ["doc-a", "doc-b"]

        assert await processor.delete_document("doc-b") == 1

        assert store.get_document("doc-a").status == DocumentStatus.INDEXED
        assert store.chunk_ids_for_document("doc-a") == [chunk_id]
        match = router.get("s1", chunk_id)
        assert match is not None
        assert match.metadata["document_id"] == "doc-a"
        results = await retrieval.retrieve(TREASURY_TEXT, "selective")
        assert [r.chunk.document_id for r in results] == ["doc-a"]

        await processor.delete_document("doc-a")
        assert router.get("s1", chunk_id) is None

    @pytest.mark.asyncio
    async def test_changed_text_keeps_chunk_shared_with_another_document(self, processor, router, store):
        chunk_id = generate_chunk_id(TREASURY_TEXT)
        await processor.process(make_document(TREASURY_TEXT, id="doc-a"))
        await processor.process(make_document(TREASURY_TEXT, id="doc-b"))

        await processor.process(make_document(VOTING_TEXT, id="doc-b"))

        assert store.chunk_owners("s1", chunk_id) == ["doc-a"]
        assert router.get("s1", chunk_id).metadata["document_id"] == "doc-a"

    @pytest.mark.asyncio
    async def test_restore_index_from_store(self, processor, embedding_service, store, reconciliation):
        await processor.process(make_document(TREASURY_TEXT))
        await processor.process(make_document(VOTING_TEXT, session_id="s2"))
        await processor.process(make_document(LOW_QUALITY_TEXT))

        fresh_router = SessionIndexRouter()
        restarted = DocumentProcessor(embedding_service, fresh_router, store, reconciliation=reconciliation)

        assert await restarted.restore_index() == 2
        assert fresh_router.sessions() == ["s1", "s2"]
        match = fresh_router.get("s2", generate_chunk_id(VOTING_TEXT))
        assert match.metadata["text"] == VOTING_TEXT

    @pytest.mark.asyncio
    async def test_same_document_is_processed_serially(self, processor):
        document = make_document()
        results = await asyncio.gather(processor.process(document), processor.process(document))
        assert all(r.ok for r in results)

    @pytest.mark.asyncio
    async def test_document_locks_released_after_processing(self, processor):
        documents = [make_document(t) for t in (TREASURY_TEXT, VOTING_TEXT)]
        await processor.process_many(documents + documents)
        await processor.delete_document(documents[0].id)
        assert processor._doc_locks == {}
        assert processor._lock_users == {}


class TestQualityGate:
    @pytest.mark.asyncio
    async def test_supplied_score_cannot_bypass_gate(self, processor, router):
        result = await processor.process(make_document(LOW_QUALITY_TEXT, quality_score=0.99))

        assert result.status == DocumentStatus.REJECTED
        assert result.quality_score < 0.4
        assert router.size() == 0

    @pytest.mark.asyncio
    async def test_supplied_score_replaced_by_validator(self, processor, store):
        document = make_document(quality_score=0.01)

        result = await processor.process(document)

        assert result.ok
        assert result.quality_score > 0.7
        assert store.get_document(document.id).quality_score == pytest.approx(result.quality_score)


class TestEnrichment:
    @pytest.mark.asyncio
    async def test_llm_summary_and_keywords(self, embedding_service, router, store, reconciliation):
        llm = FakeLLM(reply='{"summary": "Grants are paid per milestone.", "keywords": ["Grants", "milestones"]}')
        processor = DocumentProcessor(
            embedding_service, router, store,
            reconciliation=reconciliation,
            enricher=DocumentEnricher([llm]),
        )
        document = make_document(tags=["treasury"])

        result = await processor.process(document)

        assert result.summary == "Grants are paid per milestone."
        assert result.keywords == ["grants", "milestones"]
        assert result.chunks[0].metadata["keywords"] == ["grants", "milestones"]
        assert result.chunks[0].metadata["tags"] == ["treasury"]
        assert router.get("s1", result.chunks[0].id).metadata["keywords"] == ["grants", "milestones"]
        row = store.get_document(document.id)
        assert row.summary == "Grants are paid per milestone."
        assert row.keywords == ["grants", "milestones"]
        assert result.to_dict()["summary"] == row.summary

    @pytest.mark.asyncio
    async def test_rejected_document_is_not_enriched(self, embedding_service, router, store, reconciliation):
        llm = FakeLLM()
        processor = DocumentProcessor(
            embedding_service, router, store,
            reconciliation=reconciliation,
            enricher=DocumentEnricher([llm]),
        )
        await processor.process(make_document(LOW_QUALITY_TEXT))
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_no_enricher_leaves_summary_empty(self, processor, store):
        document = make_document()
        result = await processor.process(document)
        assert result.summary == ""
        assert result.chunks[0].metadata["keywords"] == []
        assert "summary" not in result.to_dict()


class TestCorrelationCacheHook:
    @pytest.mark.asyncio
    async def test_reingest_and_delete_invalidate_correlations(self, embedding_service, router, store, reconciliation):
        correlator = KnowledgeCorrelator(threshold=0.0)
        processor = DocumentProcessor(
            embedding_service, router, store,
            reconciliation=reconciliation,
            on_chunks_changed=correlator.invalidate_chunks,
        )
        first = await processor.process(make_document(TREASURY_TEXT, id="doc-1", session_id="s1"))
        second = await processor.process(make_document(VOTING_TEXT, id="doc-2", session_id="s2"))
        third = await processor.process(make_document(SECURITY_TEXT, id="doc-3", session_id="s3"))

        await correlator.correlate(first.chunks, second.chunks)
        await correlator.correlate(second.chunks, third.chunks)
        assert correlator.cache_size == 2

        await processor.process(make_document(SECURITY_TEXT + " The runbook is due next week.", id="doc-3", session_id="s3"))
        assert correlator.cache_size == 1

        await processor.delete_document("doc-1")
        assert correlator.cache_size == 0
