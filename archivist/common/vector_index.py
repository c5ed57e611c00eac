"""
Vector Index

In-process vector store for chunk embeddings with metadata filtering.

Writers build a new immutable snapshot and swap it in under a lock; readers
take the current snapshot reference and never see half of a document's
chunks. Search scores are normalized to [0, 1] for every metric.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .filters import SearchFilters

logger = logging.getLogger("archivist.common.vector_index")

SUPPORTED_METRICS = ("cosine", "dot", "euclidean")

# (chunk_id, vector, metadata)
IndexEntry = Tuple[str, Sequence[float], Dict[str, Any]]


class DimensionMismatch(ValueError):
    """Vector size differs from the index dimension."""


@dataclass
class VectorMatch:
    """A single search hit"""
    chunk_id: str
    score: float
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    session_id: str = ""


@dataclass(frozen=True)
class _Snapshot:
    ids: Tuple[str, ...]
    matrix: np.ndarray
    metadata: Tuple[Dict[str, Any], ...]

    @classmethod
    def empty(cls, dim: int = 0) -> "_Snapshot":
        return cls(ids=(), matrix=np.zeros((0, dim), dtype=np.float32), metadata=())


class InMemoryVectorIndex:
    """
    numpy-backed vector index.

    Args:
        name: Index name (one per session when used through SessionIndexRouter)
        dim: Fixed embedding dimension; inferred from the first write if None
        metric: cosine, dot or euclidean
    """

    def __init__(self, name: str = "default", dim: Optional[int] = None, metric: str = "cosine"):
        if metric not in SUPPORTED_METRICS:
            raise ValueError(f"Unsupported metric {metric!r}; expected one of {SUPPORTED_METRICS}")
        self.name = name
        self.metric = metric
        self._dim = dim
        self._snapshot = _Snapshot.empty(dim or 0)
        self._write_lock = threading.Lock()

    @property
    def dimension(self) -> Optional[int]:
        return self._dim

    def __len__(self) -> int:
        return len(self._snapshot.ids)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._snapshot.ids

    def ids(self) -> List[str]:
        return list(self._snapshot.ids)

    def _check_vector(self, vector: Sequence[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32).reshape(-1)
        if self._dim is None:
            self._dim = int(arr.shape[0])
        elif arr.shape[0] != self._dim:
            raise DimensionMismatch(
                f"Index {self.name}: vector dimension {arr.shape[0]} != index dimension {self._dim}"
            )
        return arr

    def upsert(self, chunk_id: str, vector: Sequence[float], metadata: Optional[Dict[str, Any]] = None) -> None:
        self.upsert_many([(chunk_id, vector, metadata or {})])

    def upsert_many(self, entries: Iterable[IndexEntry]) -> int:
        """
        Insert or replace a group of vectors as one atomic step.

        Either every entry becomes visible to readers or none does.

        Returns:
            Number of entries written
        """
        entries = list(entries)
        if not entries:
            return 0

        with self._write_lock:
            dim_before = self._dim
            try:
                staged = [(cid, self._check_vector(vec), dict(meta or {})) for cid, vec, meta in entries]
            except DimensionMismatch:
                self._dim = dim_before
                raise

            current = self._snapshot
            positions = {cid: i for i, cid in enumerate(current.ids)}
            ids = list(current.ids)
            rows = list(current.matrix) if len(current.ids) else []
            metadata = list(current.metadata)

            for cid, vec, meta in staged:
                if cid in positions:
                    pos = positions[cid]
                    rows[pos] = vec
                    metadata[pos] = meta
                else:
                    positions[cid] = len(ids)
                    ids.append(cid)
                    rows.append(vec)
                    metadata.append(meta)

            matrix = np.vstack(rows).astype(np.float32) if rows else np.zeros((0, self._dim or 0), dtype=np.float32)
            self._snapshot = _Snapshot(ids=tuple(ids), matrix=matrix, metadata=tuple(metadata))

        logger.debug("Index %s: upserted %d vectors (size=%d)", self.name, len(staged), len(ids))
        return len(staged)

    def delete(self, chunk_id: str) -> bool:
        return self.delete_many([chunk_id]) == 1

    def delete_many(self, chunk_ids: Iterable[str]) -> int:
        """Remove vectors by id; unknown ids are ignored. Returns the number removed."""
        targets = set(chunk_ids)
        if not targets:
            return 0

        with self._write_lock:
            current = self._snapshot
            keep = [i for i, cid in enumerate(current.ids) if cid not in targets]
            removed = len(current.ids) - len(keep)
            if removed == 0:
                return 0
            self._snapshot = _Snapshot(
                ids=tuple(current.ids[i] for i in keep),
                matrix=current.matrix[keep] if keep else np.zeros((0, self._dim or 0), dtype=np.float32),
                metadata=tuple(current.metadata[i] for i in keep),
            )

        logger.debug("Index %s: deleted %d vectors", self.name, removed)
        return removed

    def get(self, chunk_id: str) -> Optional[VectorMatch]:
        snapshot = self._snapshot
        try:
            pos = snapshot.ids.index(chunk_id)
        except ValueError:
            return None
        return VectorMatch(
            chunk_id=chunk_id,
            score=1.0,
            vector=snapshot.matrix[pos].tolist(),
            metadata=dict(snapshot.metadata[pos]),
            session_id=self.name,
        )

    def _scores(self, matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        if self.metric == "euclidean":
            distances = np.linalg.norm(matrix - query, axis=1)
            return 1.0 / (1.0 + distances)

        if self.metric == "cosine":
            norms = np.linalg.norm(matrix, axis=1)
            norms[norms == 0] = 1.0
            q_norm = float(np.linalg.norm(query)) or 1.0
            raw = (matrix @ query) / (norms * q_norm)
        else:
            raw = matrix @ query
        return np.clip(raw, 0.0, 1.0)

    def search(
        self,
        query_vector: Sequence[float],
        topk: int = 10,
        filters: Optional[SearchFilters] = None,
    ) -> List[VectorMatch]:
        """
        Nearest neighbours of a query vector.

        Args:
            query_vector: Query embedding
            topk: Maximum number of matches
            filters: Optional metadata filters applied before ranking

        Returns:
            Matches sorted by score descending, scores in [0, 1]
        """
        snapshot = self._snapshot
        if not snapshot.ids or topk <= 0:
            return []

        query = self._check_vector(query_vector)

        if filters is not None and not filters.is_empty:
            candidates = [i for i, meta in enumerate(snapshot.metadata) if filters.matches(meta)]
        else:
            candidates = list(range(len(snapshot.ids)))
        if not candidates:
            return []

        scores = self._scores(snapshot.matrix[candidates], query)
        order = np.argsort(-scores, kind="stable")[:topk]

        return [
            VectorMatch(
                chunk_id=snapshot.ids[candidates[i]],
                score=float(scores[i]),
                vector=snapshot.matrix[candidates[i]].tolist(),
                metadata=dict(snapshot.metadata[candidates[i]]),
                session_id=self.name,
            )
            for i in order
        ]


class SessionIndexRouter:
    """
    One vector index per session, created on first write.

    Cross-session queries fan out to each session's index and merge by score;
    every match carries the session it came from.
    """

    def __init__(self, dim: Optional[int] = None, metric: str = "cosine"):
        self._dim = dim
        self._metric = metric
        self._indexes: Dict[str, InMemoryVectorIndex] = {}
        self._lock = threading.Lock()

    def index_for(self, session_id: str, create: bool = True) -> Optional[InMemoryVectorIndex]:
        index = self._indexes.get(session_id)
        if index is None and create:
            with self._lock:
                index = self._indexes.get(session_id)
                if index is None:
                    index = InMemoryVectorIndex(name=session_id, dim=self._dim, metric=self._metric)
                    self._indexes[session_id] = index
                    logger.info("Created vector index for session %s", session_id)
        return index

    def sessions(self) -> List[str]:
        return sorted(self._indexes)

    def size(self) -> int:
        return sum(len(index) for index in self._indexes.values())

    def upsert_many(self, session_id: str, entries: Iterable[IndexEntry]) -> int:
        return self.index_for(session_id).upsert_many(entries)

    def delete_many(self, session_id: str, chunk_ids: Iterable[str]) -> int:
        index = self.index_for(session_id, create=False)
        return index.delete_many(chunk_ids) if index else 0

    def get(self, session_id: str, chunk_id: str) -> Optional[VectorMatch]:
        index = self.index_for(session_id, create=False)
        return index.get(chunk_id) if index else None

    def search(
        self,
        query_vector: Sequence[float],
        topk: int = 10,
        session_ids: Optional[Iterable[str]] = None,
        filters: Optional[SearchFilters] = None,
    ) -> List[VectorMatch]:
        """Search the given sessions (all when None) and merge matches by score."""
        targets = list(session_ids) if session_ids is not None else self.sessions()
        matches: List[VectorMatch] = []
        for session_id in targets:
            index = self.index_for(session_id, create=False)
            if index is None:
                continue
            matches.extend(index.search(query_vector, topk=topk, filters=filters))
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:topk]
