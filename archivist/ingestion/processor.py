"""
Document Processor

Implements the ingestion pipeline:
1. Validate: quality score (computed before anything is indexed) and PII scan
2. Gate: reject documents below the quality threshold
3. Enrich: summary and keywords (LLM, with a lexical fallback)
4. Chunk: overlapping token windows snapped to paragraph boundaries
5. Embed: batched, with per-item retry on batch failure
6. Store: vectors and metadata written as one unit per document

Vectors are staged in memory for the whole document and swapped into the
index in a single step, then the metadata transaction runs. If the metadata
write fails the vector write is undone; if undoing fails too the document is
marked PartiallyIndexed and queued for reconciliation.

Chunk ids are content addresses, so documents in one session can share a
chunk. A shared vector is removed only when its last owning document lets go
of it.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from ..common.config import IngestionConfig
from ..common.embedding_service import EmbeddingService
from ..common.errors import ArchivistError, EmbeddingFailed, PartiallyIndexed, RejectedLowQuality
from ..common.metadata_store import MetadataStore
from ..common.schemas import Chunk, Document, DocumentStatus
from ..common.text import generate_chunk_id, hash_author
from ..common.vector_index import SessionIndexRouter, VectorMatch
from .chunker import Chunker
from .enricher import DocumentEnricher
from .reconciliation import WRITTEN_VECTORS, ReconciliationQueue
from .validator import DataValidator, ValidationReport, find_pii

logger = logging.getLogger("archivist.ingestion.processor")

InvalidationHook = Callable[[Iterable[str]], None]


@dataclass
class ProcessingResult:
    """Outcome of ingesting one document"""
    document_id: str
    status: DocumentStatus
    chunks: List[Chunk] = field(default_factory=list)
    quality_score: Optional[float] = None
    rejected_reason: Optional[str] = None
    error: Optional[Exception] = None
    report: Optional[ValidationReport] = None
    summary: str = ""
    keywords: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == DocumentStatus.INDEXED

    def raise_for_status(self) -> None:
        """Raise the recorded error for any non-indexed outcome."""
        if self.ok:
            return
        if self.error is not None:
            raise self.error
        raise ArchivistError(f"Document {self.document_id} ended in status {self.status.value}")

    def to_dict(self) -> Dict:
        data = {
            "document_id": self.document_id,
            "status": self.status.value,
            "chunk_count": len(self.chunks),
            "chunk_ids": [c.id for c in self.chunks],
            "quality_score": self.quality_score,
        }
        if self.summary:
            data["summary"] = self.summary
            data["keywords"] = list(self.keywords)
        if self.rejected_reason:
            data["rejected_reason"] = self.rejected_reason
        if self.error is not None:
            data["error"] = (
                self.error.to_dict() if isinstance(self.error, ArchivistError)
                else {"code": type(self.error).__name__, "message": str(self.error)}
            )
        if self.report is not None:
            data["pii_kinds"] = list(self.report.pii_kinds)
            data["issues"] = list(self.report.issues)
        return data


class DocumentProcessor:
    """
    Validates, chunks, embeds and stores documents.

    Different documents may be processed concurrently; processing of the same
    document id is serialized.
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        router: SessionIndexRouter,
        store: MetadataStore,
        validator: Optional[DataValidator] = None,
        chunker: Optional[Chunker] = None,
        reconciliation: Optional[ReconciliationQueue] = None,
        quality_threshold: float = 0.4,
        concurrency: int = 4,
        on_chunks_changed: Optional[InvalidationHook] = None,
        enricher: Optional[DocumentEnricher] = None,
    ):
        self._embedding = embedding_service
        self._router = router
        self._store = store
        self._validator = validator or DataValidator(quality_threshold=quality_threshold)
        self._chunker = chunker or Chunker()
        self._reconciliation = reconciliation or ReconciliationQueue()
        self._threshold = quality_threshold
        self._concurrency = max(1, concurrency)
        self._on_chunks_changed = on_chunks_changed
        self._enricher = enricher
        # Per-document locks, dropped once no task holds or waits on them
        self._doc_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @classmethod
    def from_config(
        cls,
        config: IngestionConfig,
        embedding_service: EmbeddingService,
        router: SessionIndexRouter,
        store: MetadataStore,
        reconciliation: Optional[ReconciliationQueue] = None,
        on_chunks_changed: Optional[InvalidationHook] = None,
        enricher: Optional[DocumentEnricher] = None,
    ) -> "DocumentProcessor":
        return cls(
            embedding_service=embedding_service,
            router=router,
            store=store,
            validator=DataValidator(quality_threshold=config.quality_threshold),
            chunker=Chunker(
                window=config.window_tokens,
                overlap=config.overlap_tokens,
                min_chunk=config.min_chunk_tokens,
            ),
            reconciliation=reconciliation,
            quality_threshold=config.quality_threshold,
            concurrency=config.concurrency,
            on_chunks_changed=on_chunks_changed,
            enricher=enricher if config.enrich else None,
        )

    @property
    def reconciliation(self) -> ReconciliationQueue:
        return self._reconciliation

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        lock = self._doc_locks.get(document_id)
        if lock is None:
            lock = self._doc_locks[document_id] = asyncio.Lock()
        self._lock_users[document_id] = self._lock_users.get(document_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if not self._lock_users[document_id]:
                del self._lock_users[document_id]
                del self._doc_locks[document_id]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process(self, document: Document) -> ProcessingResult:
        """
        Ingest one document.

        Returns:
            ProcessingResult with status INDEXED, REJECTED, FAILED or
            PARTIALLY_INDEXED; call raise_for_status() to turn failures into
            exceptions.
        """
        async with self._document_lock(document.id):
            return await self._process_locked(document)

    async def process_many(
        self,
        documents: List[Document],
        concurrency: Optional[int] = None,
    ) -> List[ProcessingResult]:
        """Ingest documents in parallel, results in input order."""
        semaphore = asyncio.Semaphore(max(1, concurrency or self._concurrency))

        async def _bounded(doc: Document) -> ProcessingResult:
            async with semaphore:
                return await self.process(doc)

        return list(await asyncio.gather(*(_bounded(doc) for doc in documents)))

    async def delete_document(self, document_id: str) -> int:
        """
        Remove a document's vectors and metadata.

        Returns:
            Number of chunks removed (0 if the document is unknown)
        """
        async with self._document_lock(document_id):
            if self._store.get_document(document_id) is None:
                return 0
            removed = self._store.delete_document(document_id)
            self._release_chunks(removed)
            self._notify_changed(cid for _, cid in removed)
            logger.info("Deleted document %s (%d chunks)", document_id, len(removed))
            return len(removed)

    async def restore_index(self) -> int:
        """
        Re-embed the stored chunks of every indexed document into the vector index.

        The index lives in memory, so a restarted process rebuilds it from the
        metadata store. Documents whose chunks cannot be embedded are skipped.

        Returns:
            Number of vectors restored
        """
        restored = 0
        for document in self._store.list_documents(status=DocumentStatus.INDEXED):
            rows = self._store.list_chunks(document_id=document.id)
            if not rows:
                continue
            try:
                vectors = await self._embedding.embed([r.text for r in rows])
            except EmbeddingFailed as e:
                logger.warning("Could not restore vectors for %s: %s", document.id, e)
                continue
            by_session: Dict[str, List[Tuple[str, List[float], Dict]]] = defaultdict(list)
            for row, vector in zip(rows, vectors):
                chunk = row.to_chunk(vector)
                by_session[row.session_id].append((chunk.id, vector, chunk.index_metadata()))
            for session_id, entries in by_session.items():
                restored += self._router.upsert_many(session_id, entries)
        logger.info("Restored %d vectors from the metadata store", restored)
        return restored

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    async def _process_locked(self, document: Document) -> ProcessingResult:
        # The validator's score is authoritative; a caller-supplied one is replaced
        scored, report = self._validator.validate(document)
        score = scored.quality_score

        if score < self._threshold:
            return self._reject(scored, report)

        if self._enricher is not None:
            enrichment = await self._enricher.enrich(scored)
            scored = scored.model_copy(update={
                "summary": enrichment.summary,
                "keywords": enrichment.keywords,
            })

        chunks = self.build_chunks(scored, report)
        if not chunks:
            return self._reject(scored, report, reason="document produced no chunks")

        try:
            vectors = await self._embedding.embed([c.text for c in chunks])
        except EmbeddingFailed as e:
            logger.warning("Embedding failed for %s: %s", scored.id, e)
            self._store.save_document(scored, DocumentStatus.FAILED, e.message)
            return ProcessingResult(
                document_id=scored.id,
                status=DocumentStatus.FAILED,
                quality_score=score,
                error=e,
                report=report,
            )

        embedded = [c.model_copy(update={"embedding": v}) for c, v in zip(chunks, vectors)]
        return self._store_document(scored, embedded, report)

    def _reject(self, document: Document, report: ValidationReport, reason: Optional[str] = None) -> ProcessingResult:
        reason = reason or (
            f"quality score {document.quality_score:.2f} below threshold {self._threshold:.2f}"
        )
        existing = self._store.get_document(document.id)
        if existing is not None and existing.status == DocumentStatus.INDEXED:
            logger.warning("Re-ingest of %s rejected; keeping the indexed version", document.id)
        else:
            self._store.save_document(document, DocumentStatus.REJECTED, reason)
        logger.info("Rejected document %s: %s", document.id, reason)
        return ProcessingResult(
            document_id=document.id,
            status=DocumentStatus.REJECTED,
            quality_score=document.quality_score,
            rejected_reason=reason,
            error=RejectedLowQuality(reason, document_id=document.id, quality_score=document.quality_score),
            report=report,
        )

    def build_chunks(self, document: Document, report: Optional[ValidationReport] = None) -> List[Chunk]:
        """Split a scored document into chunks with metadata (no embeddings)."""
        author_hash = hash_author(document.author)
        chunks: List[Chunk] = []
        seen = set()
        for window in self._chunker.split(document.raw_text):
            chunk_id = generate_chunk_id(window.text)
            if chunk_id in seen:
                continue
            seen.add(chunk_id)
            chunks.append(Chunk(
                id=chunk_id,
                document_id=document.id,
                text=window.text,
                position=len(chunks),
                metadata={
                    "title": document.title,
                    "track": document.track,
                    "author_hash": author_hash,
                    "tags": list(document.tags),
                    "keywords": list(document.keywords),
                    "source_type": document.source_type.value,
                    "source_url": document.source_url,
                    "token_count": window.token_count,
                    "pii_flagged": bool(find_pii(window.text)),
                },
                privacy_level=document.privacy_level,
                session_id=document.session_id,
                partially_shareable=document.partially_shareable,
                quality_score=document.quality_score or 0.0,
                created_at=document.created_at,
            ))
        return chunks

    def _store_document(
        self,
        document: Document,
        chunks: List[Chunk],
        report: ValidationReport,
    ) -> ProcessingResult:
        session_id = document.session_id
        new_ids = [c.id for c in chunks]
        previous_rows = [(r.session_id, r.id) for r in self._store.list_chunks(document_id=document.id)]
        previous_vectors: Dict[str, Optional[VectorMatch]] = {
            cid: self._router.get(session_id, cid) for cid in new_ids
        }

        # Step 1: vectors (all-or-nothing snapshot swap)
        try:
            self._router.upsert_many(session_id, [(c.id, c.embedding, c.index_metadata()) for c in chunks])
        except Exception as e:
            logger.error("Vector write failed for %s: %s", document.id, e, exc_info=True)
            self._store.save_document(document, DocumentStatus.FAILED, f"vector write failed: {e}")
            return ProcessingResult(
                document_id=document.id,
                status=DocumentStatus.FAILED,
                quality_score=document.quality_score,
                error=e,
                report=report,
            )

        # Step 2: metadata (one transaction)
        try:
            self._store.write_document(document, chunks, DocumentStatus.INDEXED)
        except Exception as e:
            logger.error("Metadata write failed for %s: %s", document.id, e, exc_info=True)
            return self._undo_vectors(document, chunks, previous_vectors, e, report)

        # Step 3: drop chunks the new version no longer has
        new_keys = {(session_id, cid) for cid in new_ids}
        stale = [key for key in previous_rows if key not in new_keys]
        self._release_chunks(stale)

        self._notify_changed(new_ids + [cid for _, cid in stale])
        logger.info(
            "Indexed %s: %d chunks (session=%s, score=%.2f, stale=%d)",
            document.id, len(chunks), session_id, document.quality_score, len(stale),
        )
        return ProcessingResult(
            document_id=document.id,
            status=DocumentStatus.INDEXED,
            chunks=chunks,
            quality_score=document.quality_score,
            report=report,
            summary=document.summary,
            keywords=list(document.keywords),
        )

    def _undo_vectors(
        self,
        document: Document,
        chunks: List[Chunk],
        previous: Dict[str, Optional[VectorMatch]],
        cause: Exception,
        report: ValidationReport,
    ) -> ProcessingResult:
        session_id = document.session_id
        added = [cid for cid, match in previous.items() if match is None]
        restored: List[Tuple[str, List[float], Dict]] = [
            (cid, match.vector, match.metadata) for cid, match in previous.items() if match is not None
        ]
        try:
            self._router.delete_many(session_id, added)
            self._router.upsert_many(session_id, restored)
        except Exception as rollback_error:
            message = f"metadata write failed ({cause}); vector rollback failed ({rollback_error})"
            self._reconciliation.add(
                document_id=document.id,
                session_id=session_id,
                chunk_ids=[c.id for c in chunks],
                written_side=WRITTEN_VECTORS,
                error=message,
            )
            try:
                self._store.save_document(document, DocumentStatus.PARTIALLY_INDEXED, message)
            except Exception as status_error:
                logger.error("Could not record PartiallyIndexed status for %s: %s", document.id, status_error)
            return ProcessingResult(
                document_id=document.id,
                status=DocumentStatus.PARTIALLY_INDEXED,
                chunks=chunks,
                quality_score=document.quality_score,
                error=PartiallyIndexed(message, document_id=document.id),
                report=report,
            )

        logger.info("Rolled back %d vectors for %s", len(chunks), document.id)
        return ProcessingResult(
            document_id=document.id,
            status=DocumentStatus.FAILED,
            quality_score=document.quality_score,
            error=cause,
            report=report,
        )

    def _release_chunks(self, keys: Iterable[Tuple[str, str]]) -> None:
        """
        Let go of (session_id, chunk_id) pairs whose rows were just removed.

        Vectors no remaining document references are deleted. A vector still
        owned by another document is re-labelled with that document's metadata.
        """
        orphans: Dict[str, List[str]] = defaultdict(list)
        for session_id, chunk_id in keys:
            owner = self._store.get_chunk(session_id, chunk_id)
            if owner is None:
                orphans[session_id].append(chunk_id)
                continue
            match = self._router.get(session_id, chunk_id)
            if match is not None and match.metadata.get("document_id") != owner.document_id:
                chunk = owner.to_chunk(match.vector)
                self._router.upsert_many(session_id, [(chunk.id, match.vector, chunk.index_metadata())])
        for session_id, chunk_ids in orphans.items():
            self._router.delete_many(session_id, chunk_ids)

    def _notify_changed(self, chunk_ids: Iterable[str]) -> None:
        if self._on_chunks_changed is None:
            return
        ids = list(chunk_ids)
        if ids:
            self._on_chunks_changed(ids)
