"""
Retrieval Engine

Semantic search over the session indexes with privacy gating.

Steps (each exposed separately for the research pipeline):
1. embed_query: embed the query with the ingestion embedding service
2. search_candidates: over-fetch top_k * factor matches and re-rank them
3. apply_privacy: gate every candidate, keep the first top_k visible ones

Re-ranking score:
    similarity * w_s + recency * w_r + quality * w_q
with recency = 0.5 ** (age_days / half_life_days).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..common.config import PrivacyConfig, RetrievalConfig
from ..common.embedding_service import EmbeddingService
from ..common.filters import SearchFilters, parse_filters
from ..common.schemas import Chunk, PrivacyDecision, PrivacyTier
from ..common.vector_index import SessionIndexRouter
from .privacy_filter import PrivacyFilter

logger = logging.getLogger("archivist.retriever.searcher")

FilterInput = Union[SearchFilters, Mapping[str, Any], None]


@dataclass
class RetrievalResult:
    """A ranked, privacy-checked retrieval hit"""
    chunk: Chunk
    similarity_score: float
    privacy_decision: PrivacyDecision = PrivacyDecision.ALLOW
    redacted_text: Optional[str] = None
    rank_score: float = 0.0
    origin_session: str = ""

    @property
    def is_redacted(self) -> bool:
        return self.privacy_decision == PrivacyDecision.REDACT

    @property
    def text(self) -> str:
        """Text the requester may see."""
        if self.is_redacted:
            return self.redacted_text or ""
        return self.chunk.text

    @property
    def chunk_id(self) -> str:
        return self.chunk.id


@dataclass
class RetrievalReport:
    """Results plus the counts needed to tell 'nothing relevant' from 'all denied'"""
    results: List[RetrievalResult] = field(default_factory=list)
    candidates_seen: int = 0
    denied_count: int = 0
    sessions_searched: List[str] = field(default_factory=list)

    @property
    def all_denied(self) -> bool:
        return not self.results and self.denied_count > 0


class RetrievalEngine:
    """
    Retrieves privacy-eligible chunks for a query.

    Features:
    - Over-fetching so denied candidates can be replaced
    - Weighted re-ranking (similarity, recency, quality)
    - Session-scoped or cross-session search with origin tagging
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        router: SessionIndexRouter,
        privacy_filter: Optional[PrivacyFilter] = None,
        top_k: int = 10,
        over_fetch_factor: int = 3,
        similarity_weight: float = 0.7,
        recency_weight: float = 0.2,
        quality_weight: float = 0.1,
        recency_half_life_days: float = 90.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._embedding = embedding_service
        self._router = router
        self._privacy = privacy_filter or PrivacyFilter()
        self.top_k = top_k
        self.over_fetch_factor = max(1, over_fetch_factor)
        self.weights = (similarity_weight, recency_weight, quality_weight)
        self.half_life_days = recency_half_life_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(
        cls,
        config: RetrievalConfig,
        embedding_service: EmbeddingService,
        router: SessionIndexRouter,
        privacy: Optional[PrivacyConfig] = None,
    ) -> "RetrievalEngine":
        return cls(
            embedding_service=embedding_service,
            router=router,
            privacy_filter=PrivacyFilter(summary_length=privacy.summary_length if privacy else 100),
            top_k=config.topk,
            over_fetch_factor=config.over_fetch_factor,
            similarity_weight=config.similarity_weight,
            recency_weight=config.recency_weight,
            quality_weight=config.quality_weight,
            recency_half_life_days=config.recency_half_life_days,
        )

    @property
    def privacy_filter(self) -> PrivacyFilter:
        return self._privacy

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def recency(self, created_at: datetime) -> float:
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        age_days = max(0.0, (self._clock() - created_at).total_seconds() / 86400.0)
        if self.half_life_days <= 0:
            return 1.0
        return 0.5 ** (age_days / self.half_life_days)

    def rank_score(self, similarity: float, created_at: datetime, quality: float) -> float:
        w_s, w_r, w_q = self.weights
        return w_s * similarity + w_r * self.recency(created_at) + w_q * quality

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def embed_query(self, query_text: str) -> List[float]:
        if not query_text or not query_text.strip():
            raise ValueError("Query text is empty")
        return await self._embedding.embed_single(query_text)

    def target_sessions(
        self,
        session_id: Optional[str],
        filters: SearchFilters,
        cross_session: bool = False,
    ) -> List[str]:
        """Which session indexes a query should read."""
        known = self._router.sessions()
        if cross_session:
            wanted = filters.session_ids or known
        elif session_id:
            wanted = [session_id]
        else:
            wanted = filters.session_ids or known
        return [s for s in wanted if s in known]

    def search_candidates(
        self,
        query_vector: Sequence[float],
        filters: SearchFilters,
        sessions: List[str],
        top_k: int,
    ) -> List[RetrievalResult]:
        """Over-fetched, re-ranked candidates (privacy not yet applied)."""
        pool_size = top_k * self.over_fetch_factor
        matches = self._router.search(query_vector, topk=pool_size, session_ids=sessions, filters=filters)

        candidates: List[RetrievalResult] = []
        for match in matches:
            chunk = Chunk.from_index(match.chunk_id, match.vector, match.metadata)
            candidates.append(RetrievalResult(
                chunk=chunk,
                similarity_score=match.score,
                rank_score=self.rank_score(match.score, chunk.created_at, chunk.quality_score),
                origin_session=match.session_id,
            ))
        candidates.sort(key=lambda r: r.rank_score, reverse=True)
        return candidates

    def apply_privacy(
        self,
        candidates: List[RetrievalResult],
        requester_tier: PrivacyTier,
        top_k: int,
    ) -> Tuple[List[RetrievalResult], int]:
        """
        Gate every candidate; keep the best top_k visible ones.

        Returns:
            (results, denied_count)
        """
        visible: List[RetrievalResult] = []
        denied = 0
        for candidate in candidates:
            outcome = self._privacy.filter(candidate.chunk, requester_tier)
            candidate.privacy_decision = outcome.decision
            candidate.redacted_text = outcome.sanitized_text
            if outcome.decision == PrivacyDecision.DENY:
                denied += 1
                continue
            visible.append(candidate)
        return visible[:top_k], denied

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def retrieve_with_stats(
        self,
        query_text: str,
        requester_tier: PrivacyTier,
        filters: FilterInput = None,
        top_k: Optional[int] = None,
        session_id: Optional[str] = None,
        cross_session: bool = False,
        query_vector: Optional[List[float]] = None,
    ) -> RetrievalReport:
        """
        Retrieve and report how many candidates were seen and denied.

        Raises:
            InvalidFilter: malformed filters
            EmbeddingFailed: the query could not be embedded
        """
        tier = PrivacyTier.parse(requester_tier)
        parsed = parse_filters(filters)
        top_k = top_k or self.top_k

        if query_vector is None:
            query_vector = await self.embed_query(query_text)
        sessions = self.target_sessions(session_id, parsed, cross_session)
        candidates = self.search_candidates(query_vector, parsed, sessions, top_k)
        results, denied = self.apply_privacy(candidates, tier, top_k)

        logger.info(
            "Retrieved %d/%d candidates for tier %s across %d sessions (%d denied)",
            len(results), len(candidates), tier.value, len(sessions), denied,
        )
        return RetrievalReport(
            results=results,
            candidates_seen=len(candidates),
            denied_count=denied,
            sessions_searched=sessions,
        )

    async def retrieve(
        self,
        query_text: str,
        requester_tier: PrivacyTier,
        filters: FilterInput = None,
        top_k: Optional[int] = None,
        session_id: Optional[str] = None,
        cross_session: bool = False,
    ) -> List[RetrievalResult]:
        report = await self.retrieve_with_stats(
            query_text,
            requester_tier,
            filters=filters,
            top_k=top_k,
            session_id=session_id,
            cross_session=cross_session,
        )
        return report.results

    @staticmethod
    def group_by_session(results: List[RetrievalResult]) -> Dict[str, List[RetrievalResult]]:
        grouped: Dict[str, List[RetrievalResult]] = {}
        for result in results:
            grouped.setdefault(result.origin_session, []).append(result)
        return grouped
