"""
Relational Metadata Store

SQLAlchemy-backed persistence for document and chunk metadata. Vectors live
in the vector index; this store keeps everything needed to list, filter by
session and privacy level, audit ingestion status and reconcile the two.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .schemas import Chunk, Document, DocumentStatus, PrivacyTier
from .text import hash_author

logger = logging.getLogger("archivist.common.metadata_store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for the archive tables."""


class DocumentRow(Base):
    """
    One ingested document.

    Attributes:
        id: Document id (content address unless supplied by the caller)
        session_id: Research session the document belongs to
        status: Ingestion lifecycle state
        privacy_rank: PrivacyTier.rank, stored for SQL-side tier filtering
        error_message: Failure detail for rejected/failed/partial documents
    """

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(512), default="")
    author_hash: Mapped[str] = mapped_column(String(64), default="")
    track: Mapped[str] = mapped_column(String(255), default="", index=True)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    source_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    privacy_level: Mapped[str] = mapped_column(String(16), nullable=False)
    privacy_rank: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    partially_shareable: Mapped[bool] = mapped_column(Boolean, default=False)
    quality_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    summary: Mapped[str] = mapped_column(Text, default="")
    keywords: Mapped[List[str]] = mapped_column(JSON, default=list)
    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        default=DocumentStatus.PENDING,
        nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    chunk_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ChunkRow(Base):
    """
    One chunk of an indexed document.

    Chunk ids are content addresses, so two documents holding the same passage
    share an id. Each owning document keeps its own row; the vector for the id
    stays indexed while any row references it.
    """

    __tablename__ = "chunks"

    session_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    document_id: Mapped[str] = mapped_column(
        String(80), ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    privacy_level: Mapped[str] = mapped_column(String(16), nullable=False)
    privacy_rank: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    partially_shareable: Mapped[bool] = mapped_column(Boolean, default=False)
    quality_score: Mapped[float] = mapped_column(Float, default=0.0)
    extra: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    stored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_chunk(self, embedding: Optional[List[float]] = None) -> Chunk:
        created_at = self.created_at
        if created_at.tzinfo is None:
            # SQLite hands timestamps back naive
            created_at = created_at.replace(tzinfo=timezone.utc)
        return Chunk(
            id=self.id,
            document_id=self.document_id,
            text=self.text,
            position=self.position,
            embedding=list(embedding or []),
            metadata=dict(self.extra or {}),
            privacy_level=self.privacy_level,
            session_id=self.session_id,
            partially_shareable=self.partially_shareable,
            quality_score=self.quality_score,
            created_at=created_at,
        )


def _make_engine(database_url: str, echo: bool = False):
    url = make_url(database_url)
    kwargs: Dict[str, Any] = {"echo": echo}
    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if not url.database or url.database == ":memory:":
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, **kwargs)


class MetadataStore:
    """
    CRUD over documents and chunks.

    Every public write runs in its own transaction; write_document() stores a
    document together with its full chunk set so the relational side of an
    ingest is all-or-nothing.
    """

    def __init__(self, database_url: str = "sqlite://", echo: bool = False):
        self._engine = _make_engine(database_url, echo=echo)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)
        logger.info("Metadata store ready at %s", make_url(database_url).render_as_string(hide_password=True))

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session wrapped in BEGIN/COMMIT, rolled back on any exception."""
        with self._sessions() as session:
            with session.begin():
                yield session

    def close(self) -> None:
        self._engine.dispose()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _document_row(document: Document, status: DocumentStatus, error: Optional[str]) -> DocumentRow:
        return DocumentRow(
            id=document.id,
            session_id=document.session_id,
            source_type=document.source_type.value,
            title=document.title,
            author_hash=hash_author(document.author) if document.author else "",
            track=document.track,
            tags=list(document.tags),
            source_url=document.source_url,
            privacy_level=document.privacy_level.value,
            privacy_rank=document.privacy_level.rank,
            partially_shareable=document.partially_shareable,
            quality_score=document.quality_score,
            summary=document.summary,
            keywords=list(document.keywords),
            status=status,
            error_message=error,
            created_at=document.created_at,
        )

    @staticmethod
    def _chunk_row(chunk: Chunk) -> ChunkRow:
        return ChunkRow(
            session_id=chunk.session_id,
            id=chunk.id,
            document_id=chunk.document_id,
            position=chunk.position,
            text=chunk.text,
            privacy_level=chunk.privacy_level.value,
            privacy_rank=chunk.privacy_level.rank,
            partially_shareable=chunk.partially_shareable,
            quality_score=chunk.quality_score,
            extra=dict(chunk.metadata),
            created_at=chunk.created_at,
        )

    def save_document(
        self,
        document: Document,
        status: DocumentStatus = DocumentStatus.PENDING,
        error: Optional[str] = None,
    ) -> None:
        """Insert or replace the document row without touching its chunks."""
        with self.transaction() as session:
            existing = session.get(DocumentRow, document.id)
            row = self._document_row(document, status, error)
            if existing is not None:
                row.chunk_count = existing.chunk_count
            session.merge(row)

    def write_document(
        self,
        document: Document,
        chunks: Sequence[Chunk],
        status: DocumentStatus = DocumentStatus.INDEXED,
    ) -> None:
        """
        Replace a document and its full chunk set in one transaction.

        Chunks previously owned by the document but absent from `chunks` are
        removed. Rows of other documents sharing a chunk id are left alone.
        """
        with self.transaction() as session:
            row = self._document_row(document, status, None)
            row.chunk_count = len(chunks)
            session.merge(row)
            session.flush()
            session.execute(delete(ChunkRow).where(ChunkRow.document_id == document.id))
            for chunk in chunks:
                session.merge(self._chunk_row(chunk))
        logger.debug("Stored metadata for %s (%d chunks)", document.id, len(chunks))

    def set_status(self, document_id: str, status: DocumentStatus, error: Optional[str] = None) -> bool:
        with self.transaction() as session:
            row = session.get(DocumentRow, document_id)
            if row is None:
                return False
            row.status = status
            row.error_message = error
            return True

    def delete_document(self, document_id: str) -> List[Tuple[str, str]]:
        """
        Delete a document and its chunks.

        Returns:
            (session_id, chunk_id) pairs that were removed
        """
        with self.transaction() as session:
            chunk_keys = [
                (r.session_id, r.id)
                for r in session.scalars(select(ChunkRow).where(ChunkRow.document_id == document_id))
            ]
            session.execute(delete(ChunkRow).where(ChunkRow.document_id == document_id))
            session.execute(delete(DocumentRow).where(DocumentRow.id == document_id))
        return chunk_keys

    def delete_chunks(self, session_id: str, chunk_ids: Sequence[str]) -> int:
        if not chunk_ids:
            return 0
        with self.transaction() as session:
            result = session.execute(
                delete(ChunkRow).where(ChunkRow.session_id == session_id, ChunkRow.id.in_(list(chunk_ids)))
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_document(self, document_id: str) -> Optional[DocumentRow]:
        with self._sessions() as session:
            return session.get(DocumentRow, document_id)

    def list_documents(
        self,
        session_id: Optional[str] = None,
        max_privacy: Optional[PrivacyTier] = None,
        status: Optional[DocumentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[DocumentRow]:
        """Documents filtered by session, highest readable tier and status."""
        stmt = select(DocumentRow).order_by(DocumentRow.created_at)
        if session_id is not None:
            stmt = stmt.where(DocumentRow.session_id == session_id)
        if max_privacy is not None:
            stmt = stmt.where(DocumentRow.privacy_rank <= PrivacyTier.parse(max_privacy).rank)
        if status is not None:
            stmt = stmt.where(DocumentRow.status == status)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._sessions() as session:
            return list(session.scalars(stmt))

    def list_chunks(
        self,
        document_id: Optional[str] = None,
        session_id: Optional[str] = None,
        max_privacy: Optional[PrivacyTier] = None,
    ) -> List[ChunkRow]:
        stmt = select(ChunkRow).order_by(ChunkRow.document_id, ChunkRow.position)
        if document_id is not None:
            stmt = stmt.where(ChunkRow.document_id == document_id)
        if session_id is not None:
            stmt = stmt.where(ChunkRow.session_id == session_id)
        if max_privacy is not None:
            stmt = stmt.where(ChunkRow.privacy_rank <= PrivacyTier.parse(max_privacy).rank)
        with self._sessions() as session:
            return list(session.scalars(stmt))

    def chunk_ids_for_document(self, document_id: str) -> List[str]:
        stmt = select(ChunkRow.id).where(ChunkRow.document_id == document_id).order_by(ChunkRow.position)
        with self._sessions() as session:
            return list(session.scalars(stmt))

    def get_chunk(
        self,
        session_id: str,
        chunk_id: str,
        document_id: Optional[str] = None,
    ) -> Optional[ChunkRow]:
        """The document's row for a chunk id, or the most recently stored owner's row."""
        with self._sessions() as session:
            if document_id is not None:
                return session.get(ChunkRow, (session_id, chunk_id, document_id))
            stmt = (
                select(ChunkRow)
                .where(ChunkRow.session_id == session_id, ChunkRow.id == chunk_id)
                .order_by(ChunkRow.stored_at.desc(), ChunkRow.document_id)
                .limit(1)
            )
            return session.scalars(stmt).first()

    def chunk_owners(self, session_id: str, chunk_id: str) -> List[str]:
        """Ids of the documents holding a chunk id in a session."""
        stmt = (
            select(ChunkRow.document_id)
            .where(ChunkRow.session_id == session_id, ChunkRow.id == chunk_id)
            .order_by(ChunkRow.document_id)
        )
        with self._sessions() as session:
            return list(session.scalars(stmt))

    def session_ids(self) -> List[str]:
        stmt = select(DocumentRow.session_id).distinct().order_by(DocumentRow.session_id)
        with self._sessions() as session:
            return list(session.scalars(stmt))

    def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for row in self.list_documents():
            counts[row.status.value] = counts.get(row.status.value, 0) + 1
        return counts
