"""
Knowledge Correlator

Discovers relationships between two sets of retrieved chunks.

Pairs whose embeddings are at least `threshold` similar become edges. The
relation comes from comparing the stance of the two texts:
- same stance (both support or both oppose) -> supportive
- opposing stances                          -> contradictory
- otherwise                                 -> thematic

Edges are computed once per unordered pair of chunk-id sets, in a canonical
orientation, and swapped for the reverse call; correlate(B, A) is therefore
exactly correlate(A, B) with source and target exchanged.
"""

import logging
import re
from collections import OrderedDict
from enum import Enum
from itertools import combinations
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple, Union

import numpy as np

from ..common.errors import ProviderError
from ..common.llm_client import LLMClient
from ..common.llm_utils import extract_label
from ..common.schemas import Chunk, CorrelationEdge, RelationType
from .searcher import RetrievalReport, RetrievalResult

logger = logging.getLogger("archivist.retriever.correlator")

Correlatable = Union[RetrievalResult, Chunk]
CacheKey = FrozenSet[FrozenSet[str]]


class Stance(str, Enum):
    SUPPORT = "support"
    OPPOSE = "oppose"
    NEUTRAL = "neutral"


SUPPORT_TERMS = {
    "support", "supports", "supported", "endorse", "endorses", "agree", "agrees", "approve",
    "approves", "approved", "favor", "favour", "recommend", "recommends", "adopt", "adopted",
    "beneficial", "benefit", "benefits", "effective", "advocate", "advocates", "welcome", "accept",
    "accepted", "promote", "promotes", "should",
}
OPPOSE_TERMS = {
    "oppose", "opposes", "opposed", "reject", "rejects", "rejected", "disagree", "disagrees",
    "against", "harmful", "risk", "risks", "risky", "concern", "concerns", "ineffective",
    "object", "objects", "criticize", "criticizes", "criticise", "ban", "prohibit", "prohibits",
    "drawback", "drawbacks", "flawed", "problematic", "dangerous",
}
NEGATIONS = {"not", "no", "never", "don't", "doesn't", "didn't", "isn't", "aren't", "cannot", "can't", "won't", "shouldn't"}

_WORD_RE = re.compile(r"[a-z']+")

STANCE_PROMPT = """Classify the stance the following passage takes toward the main proposal or policy it discusses.

Passage:
{text}

Respond with JSON only: {{"stance": "support|oppose|neutral"}}"""


def detect_stance(text: str) -> Stance:
    """Lexical stance: count support/oppose cues, flipping cues preceded by a negation."""
    words = _WORD_RE.findall((text or "").lower())
    pro = con = 0
    for i, word in enumerate(words):
        negated = any(w in NEGATIONS for w in words[max(0, i - 2):i])
        if word in SUPPORT_TERMS:
            if negated:
                con += 1
            else:
                pro += 1
        elif word in OPPOSE_TERMS:
            if negated:
                pro += 1
            else:
                con += 1
    if pro > con:
        return Stance.SUPPORT
    if con > pro:
        return Stance.OPPOSE
    return Stance.NEUTRAL


def relation_for(a: Stance, b: Stance) -> RelationType:
    if a == b and a != Stance.NEUTRAL:
        return RelationType.SUPPORTIVE
    if {a, b} == {Stance.SUPPORT, Stance.OPPOSE}:
        return RelationType.CONTRADICTORY
    return RelationType.THEMATIC


def _unpack(item: Correlatable) -> Tuple[Chunk, str, str]:
    """(chunk, session, text visible to the requester)"""
    if isinstance(item, RetrievalResult):
        return item.chunk, item.origin_session or item.chunk.session_id, item.text
    return item, item.session_id, item.text


def _view_id(chunk: Chunk, text: str) -> str:
    """Cache identity of a chunk as seen by the requester (full or redacted)."""
    return chunk.id if text == chunk.text else f"{chunk.id}~redacted"


class KnowledgeCorrelator:
    """
    Pairwise correlation with a cache invalidated by chunk id.

    Both the edge cache and the stance cache are LRU-bounded; the least
    recently used entry is evicted once a cache is full.

    Args:
        threshold: Minimum cosine similarity for an edge
        stance_client: Optional LLM used to judge stance (lexical fallback)
        max_cached_pairs: Edge-cache capacity (pairs of chunk-id sets)
        max_cached_stances: Stance-cache capacity (chunk ids)
    """

    def __init__(
        self,
        threshold: float = 0.75,
        stance_client: Optional[LLMClient] = None,
        stance_timeout: float = 30.0,
        max_cached_pairs: int = 1024,
        max_cached_stances: int = 8192,
    ):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be in [0, 1]")
        self.threshold = threshold
        self._stance_client = stance_client
        self._stance_timeout = stance_timeout
        self._max_pairs = max(1, max_cached_pairs)
        self._max_stances = max(1, max_cached_stances)
        self._cache: "OrderedDict[CacheKey, List[CorrelationEdge]]" = OrderedDict()
        self._chunks_by_key: Dict[CacheKey, List[str]] = {}
        self._keys_by_chunk: Dict[str, Set[CacheKey]] = {}
        self._stances: "OrderedDict[str, Dict[str, Stance]]" = OrderedDict()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    # ------------------------------------------------------------------
    # Stance
    # ------------------------------------------------------------------

    async def stance_of(self, chunk: Chunk, text: Optional[str] = None) -> Stance:
        body = text if text is not None else chunk.text
        # Keyed by visible text so a redacted view never reuses a full-text judgement
        known = self._stances.get(chunk.id)
        if known is None:
            known = self._stances[chunk.id] = {}
            while len(self._stances) > self._max_stances:
                self._stances.popitem(last=False)
        else:
            self._stances.move_to_end(chunk.id)
        if body in known:
            return known[body]

        stance = None
        if self._stance_client is not None and self._stance_client.is_available:
            try:
                raw = await self._stance_client.generate(
                    STANCE_PROMPT.format(text=body[:1500]),
                    max_tokens=20,
                    timeout=self._stance_timeout,
                )
                label = extract_label(raw, [s.value for s in Stance], key="stance")
                stance = Stance(label) if label else None
            except ProviderError as e:
                logger.info("LLM stance unavailable for %s (%s); using lexical stance", chunk.id, e)
        if stance is None:
            stance = detect_stance(body)

        known[body] = stance
        return stance

    # ------------------------------------------------------------------
    # Correlation
    # ------------------------------------------------------------------

    async def correlate(
        self,
        set_a: Sequence[Correlatable],
        set_b: Sequence[Correlatable],
    ) -> List[CorrelationEdge]:
        """
        Edges between chunks of set_a (source) and set_b (target).

        Returns:
            Edges sorted by (source, target)
        """
        items_a = [_unpack(i) for i in set_a]
        items_b = [_unpack(i) for i in set_b]
        ids_a = frozenset(_view_id(c, text) for c, _, text in items_a)
        ids_b = frozenset(_view_id(c, text) for c, _, text in items_b)
        key: CacheKey = frozenset({ids_a, ids_b})

        # Canonical orientation: the set with the smaller sorted id tuple is the source
        swapped = tuple(sorted(ids_b)) < tuple(sorted(ids_a))

        if key in self._cache:
            self._cache.move_to_end(key)
            canonical = self._cache[key]
        else:
            if swapped:
                canonical = await self._compute(items_b, items_a)
            else:
                canonical = await self._compute(items_a, items_b)
            self._remember(key, [c.id for c, _, _ in items_a + items_b], canonical)

        edges = [e.swapped() for e in canonical] if swapped else list(canonical)
        edges.sort(key=lambda e: (e.source_chunk_id, e.target_chunk_id))
        return edges

    async def _compute(
        self,
        sources: List[Tuple[Chunk, str, str]],
        targets: List[Tuple[Chunk, str, str]],
    ) -> List[CorrelationEdge]:
        sources = [item for item in sources if item[0].embedding]
        targets = [item for item in targets if item[0].embedding]
        if not sources or not targets:
            return []

        left = np.asarray([c.embedding for c, _, _ in sources], dtype=np.float32)
        right = np.asarray([c.embedding for c, _, _ in targets], dtype=np.float32)
        if left.shape[1] != right.shape[1]:
            raise ValueError(f"Embedding dimension mismatch: {left.shape[1]} vs {right.shape[1]}")
        left /= np.maximum(np.linalg.norm(left, axis=1, keepdims=True), 1e-12)
        right /= np.maximum(np.linalg.norm(right, axis=1, keepdims=True), 1e-12)
        similarity = np.clip(left @ right.T, 0.0, 1.0)

        edges: List[CorrelationEdge] = []
        for i, j in zip(*np.nonzero(similarity >= self.threshold)):
            src, src_session, src_text = sources[i]
            dst, dst_session, dst_text = targets[j]
            if src.id == dst.id:
                continue
            relation = relation_for(await self.stance_of(src, src_text), await self.stance_of(dst, dst_text))
            edges.append(CorrelationEdge(
                source_chunk_id=src.id,
                target_chunk_id=dst.id,
                relation_type=relation,
                confidence=round(float(similarity[i, j]), 4),
                session_pair=(src_session, dst_session),
            ))

        logger.debug("Correlated %d x %d chunks -> %d edges", len(sources), len(targets), len(edges))
        return edges

    def _remember(self, key: CacheKey, chunk_ids: Iterable[str], edges: List[CorrelationEdge]) -> None:
        chunk_ids = sorted(set(chunk_ids))
        self._cache[key] = edges
        self._chunks_by_key[key] = chunk_ids
        for chunk_id in chunk_ids:
            self._keys_by_chunk.setdefault(chunk_id, set()).add(key)
        while len(self._cache) > self._max_pairs:
            oldest, _ = self._cache.popitem(last=False)
            self._forget(oldest)

    def _forget(self, key: CacheKey) -> None:
        for chunk_id in self._chunks_by_key.pop(key, []):
            keys = self._keys_by_chunk.get(chunk_id)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._keys_by_chunk[chunk_id]

    def invalidate_chunks(self, chunk_ids: Iterable[str]) -> int:
        """Drop cached correlations referencing any of the chunks (deleted or re-embedded)."""
        dropped = 0
        for chunk_id in chunk_ids:
            self._stances.pop(chunk_id, None)
            for key in list(self._keys_by_chunk.get(chunk_id, ())):
                if self._cache.pop(key, None) is not None:
                    dropped += 1
                self._forget(key)
        if dropped:
            logger.debug("Invalidated %d cached correlations", dropped)
        return dropped

    def clear(self) -> None:
        self._cache.clear()
        self._chunks_by_key.clear()
        self._keys_by_chunk.clear()
        self._stances.clear()

    async def correlate_sessions(
        self,
        results: Union[RetrievalReport, Sequence[RetrievalResult]],
    ) -> List[CorrelationEdge]:
        """Correlate results across every pair of origin sessions."""
        items = results.results if isinstance(results, RetrievalReport) else list(results)
        by_session: Dict[str, List[RetrievalResult]] = {}
        for result in items:
            by_session.setdefault(result.origin_session or result.chunk.session_id, []).append(result)

        edges: List[CorrelationEdge] = []
        for first, second in combinations(sorted(by_session), 2):
            edges.extend(await self.correlate(by_session[first], by_session[second]))
        return edges
