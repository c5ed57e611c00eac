"""
Synthesis Engine

Composes an answer from privacy-filtered retrieval results using an ordered
list of generation providers.

Key principles:
- Only accessible text reaches the prompt (redacted results contribute their
  sanitized summary, never the original)
- The context is bounded by a token budget; lowest-ranked results go first
- Transient provider failures are retried with backoff, then the next
  provider is tried; if every provider fails the caller gets
  SynthesisUnavailable and no text at all
- Insights and recommendations follow the answer; they come from a provider
  when one gives a usable reply and from stance/theme grouping otherwise
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..common.config import GenerationConfig
from ..common.errors import PrivacyDenied, ProviderError, SynthesisUnavailable
from ..common.llm_client import LLMClient, build_llm_clients
from ..common.llm_utils import parse_llm_json
from ..common.schemas import SynthesisMode
from ..common.text import count_tokens, summarize_to_length, truncate_tokens
from .correlator import detect_stance
from .searcher import RetrievalResult

logger = logging.getLogger("archivist.retriever.synthesizer")

SUMMARY_CITATION_LIMIT = 3
SNIPPET_LENGTH = 200
# Tokens reserved for instructions and the question
PROMPT_OVERHEAD_TOKENS = 200
FOLLOW_UP_LIMIT = 5
THIN_EVIDENCE_SOURCES = 3
STANCE_LABELS = {"support": "supporting", "oppose": "opposing", "neutral": "neutral"}


@dataclass
class Citation:
    """A source backing the answer"""
    chunk_id: str
    snippet: str
    score: float
    origin_session: str = ""
    redacted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "snippet": self.snippet,
            "score": round(self.score, 4),
            "origin_session": self.origin_session,
            "redacted": self.redacted,
        }


@dataclass
class SynthesizedAnswer:
    """Synthesized answer from a generation provider"""
    text: str
    citations: List[Citation]
    confidence: float  # 0.0 to 1.0
    mode: SynthesisMode = SynthesisMode.SUMMARY
    provider: str = ""
    dropped_count: int = 0
    warnings: List[str] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


SYSTEM_PROMPT = """You are a research assistant for governance working groups.
Answer ONLY from the numbered sources provided. Do NOT add outside facts.
Cite sources by number in brackets, like [1] or [2][3].
Some sources are redacted summaries; do not speculate about what was removed.
If the sources do not answer the question, say so plainly."""

MODE_INSTRUCTIONS = {
    SynthesisMode.SUMMARY: (
        "Write a concise answer (at most one short paragraph). "
        "Cite no more than three sources, choosing the strongest."
    ),
    SynthesisMode.DETAILED: (
        "Write an exhaustive answer covering every source. "
        "Every source listed below must be cited at least once."
    ),
    SynthesisMode.ANALYTICAL: (
        "The sources are grouped by stance and theme. Compare the groups: "
        "where they agree, where they conflict, and what remains open. "
        "Cite every source you rely on."
    ),
}

SYNTHESIS_PROMPT = """{mode_instruction}

Question: {query}

Sources:
{sources}

Answer:"""

FOLLOW_UP_PROMPT = """Question: {query}

Answer already given to the researcher:
{answer}

Sources:
{sources}

Using only the answer and the sources, list up to {limit} insights (patterns,
tensions or implications for governance) and up to {limit} recommendations
(concrete next steps for the working group).

Respond with JSON only: {{"insights": ["..."], "recommendations": ["..."]}}"""


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [" ".join(str(v).split()) for v in value]
    return [item for item in items if item][:FOLLOW_UP_LIMIT]


class SynthesisEngine:
    """
    Multi-provider answer synthesis.

    Args:
        clients: Generation clients in priority order
        context_token_budget: Maximum tokens of source text in the prompt
        retry_attempts: Extra attempts per provider for transient failures
        backoff_base: First retry delay in seconds (doubles per retry)
        redaction_penalty: Confidence multiplier when any source is redacted
        follow_ups: Derive insights and recommendations after the answer
    """

    def __init__(
        self,
        clients: List[LLMClient],
        context_token_budget: int = 4000,
        max_tokens: int = 1024,
        timeout: float = 30.0,
        retry_attempts: int = 2,
        backoff_base: float = 0.5,
        redaction_penalty: float = 0.8,
        follow_ups: bool = True,
    ):
        self._clients = list(clients)
        self.context_token_budget = context_token_budget
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.retry_attempts = max(0, retry_attempts)
        self.backoff_base = backoff_base
        self.redaction_penalty = redaction_penalty
        self.follow_ups = follow_ups

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "SynthesisEngine":
        return cls(
            clients=build_llm_clients(config.providers),
            context_token_budget=config.context_token_budget,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            retry_attempts=config.retry_attempts,
            backoff_base=config.backoff_base,
            redaction_penalty=config.redaction_penalty,
            follow_ups=config.follow_ups,
        )

    @property
    def clients(self) -> List[LLMClient]:
        return list(self._clients)

    @property
    def providers(self) -> List[str]:
        return [c.name for c in self._clients]

    @property
    def has_provider(self) -> bool:
        return any(c.is_available for c in self._clients)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def build_context(self, results: List[RetrievalResult]) -> Tuple[List[RetrievalResult], int]:
        """
        Fit results into the token budget in rank order.

        Returns:
            (included results, number dropped)
        """
        ranked = sorted(results, key=lambda r: r.rank_score, reverse=True)
        budget = max(0, self.context_token_budget - PROMPT_OVERHEAD_TOKENS)
        included: List[RetrievalResult] = []
        used = 0
        for result in ranked:
            tokens = count_tokens(result.text)
            if used + tokens <= budget:
                included.append(result)
                used += tokens
            elif not included and budget > 0:
                # The best source alone overflows: keep its head
                trimmed = RetrievalResult(
                    chunk=result.chunk,
                    similarity_score=result.similarity_score,
                    privacy_decision=result.privacy_decision,
                    redacted_text=truncate_tokens(result.text, budget) if result.is_redacted else None,
                    rank_score=result.rank_score,
                    origin_session=result.origin_session,
                )
                if not result.is_redacted:
                    trimmed.chunk = result.chunk.model_copy(update={"text": truncate_tokens(result.chunk.text, budget)})
                included.append(trimmed)
                used = budget
            else:
                break
        return included, len(ranked) - len(included)

    def group_for_analysis(self, results: List[RetrievalResult]) -> Dict[Tuple[str, str], List[RetrievalResult]]:
        """Group results by (stance, theme); theme is the chunk's track."""
        groups: Dict[Tuple[str, str], List[RetrievalResult]] = {}
        for result in results:
            stance = detect_stance(result.text).value
            theme = result.chunk.metadata.get("track") or "general"
            groups.setdefault((stance, theme), []).append(result)
        return groups

    def _format_source(self, number: int, result: RetrievalResult) -> str:
        label = " (redacted summary)" if result.is_redacted else ""
        title = result.chunk.metadata.get("title") or ""
        header = f"[{number}]{label} {title}".rstrip()
        return f"{header}\nSession: {result.origin_session or result.chunk.session_id}\n{result.text}\n"

    def build_prompt(self, query: str, included: List[RetrievalResult], mode: SynthesisMode) -> Tuple[str, List[RetrievalResult]]:
        """Prompt text plus the results in the order they are numbered."""
        if mode == SynthesisMode.ANALYTICAL:
            ordered: List[RetrievalResult] = []
            blocks: List[str] = []
            for (stance, theme), members in self.group_for_analysis(included).items():
                blocks.append(f"## Stance: {stance} | Theme: {theme}")
                for result in members:
                    ordered.append(result)
                    blocks.append(self._format_source(len(ordered), result))
            sources = "\n".join(blocks)
        else:
            ordered = list(included)
            sources = "\n".join(self._format_source(i, r) for i, r in enumerate(ordered, 1))

        prompt = SYNTHESIS_PROMPT.format(
            mode_instruction=MODE_INSTRUCTIONS[mode],
            query=query,
            sources=sources,
        )
        return prompt, ordered

    def select_citations(self, ordered: List[RetrievalResult], mode: SynthesisMode) -> List[Citation]:
        if mode == SynthesisMode.SUMMARY:
            chosen = sorted(ordered, key=lambda r: r.rank_score, reverse=True)[:SUMMARY_CITATION_LIMIT]
        else:
            chosen = ordered
        return [
            Citation(
                chunk_id=r.chunk.id,
                snippet=summarize_to_length(r.text, SNIPPET_LENGTH),
                score=r.similarity_score,
                origin_session=r.origin_session,
                redacted=r.is_redacted,
            )
            for r in chosen
        ]

    def confidence(self, included: List[RetrievalResult]) -> float:
        """
        Confidence from corroboration, similarity and redaction.

        0.4 * min(1, sources / 3) + 0.6 * mean similarity, multiplied by the
        redaction penalty when any source is redacted.
        """
        if not included:
            return 0.0
        corroboration = min(1.0, len(included) / 3.0)
        mean_similarity = sum(r.similarity_score for r in included) / len(included)
        score = 0.4 * corroboration + 0.6 * mean_similarity
        if any(r.is_redacted for r in included):
            score *= self.redaction_penalty
        return round(max(0.0, min(1.0, score)), 3)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _generate_with_fallback(self, prompt: str) -> Tuple[str, str]:
        attempts: List[str] = []
        for client in self._clients:
            if not client.is_available:
                attempts.append(f"{client.name}: unavailable")
                continue

            delay = self.backoff_base
            for attempt in range(self.retry_attempts + 1):
                try:
                    text = await client.generate(
                        prompt,
                        system=SYSTEM_PROMPT,
                        max_tokens=self.max_tokens,
                        timeout=self.timeout,
                    )
                    return text, client.name
                except ProviderError as e:
                    attempts.append(f"{client.name}: {type(e).__name__}")
                    if not e.transient or attempt >= self.retry_attempts:
                        logger.warning("Provider %s failed (%s); falling back", client.name, e)
                        break
                    logger.info(
                        "Provider %s transient failure %d/%d: %s",
                        client.name, attempt + 1, self.retry_attempts + 1, e,
                    )
                    await asyncio.sleep(delay)
                    delay *= 2

        raise SynthesisUnavailable("All generation providers failed", attempts=attempts)

    async def generate_follow_ups(
        self,
        query: str,
        answer: str,
        ordered: List[RetrievalResult],
    ) -> Tuple[List[str], List[str]]:
        """
        Insights and recommendations for an answer.

        Each available provider gets one attempt; provider failures are not
        retried and never fail the answer.

        Returns:
            (insights, recommendations)
        """
        sources = "\n".join(self._format_source(i, r) for i, r in enumerate(ordered, 1))
        prompt = FOLLOW_UP_PROMPT.format(query=query, answer=answer, sources=sources, limit=FOLLOW_UP_LIMIT)
        for client in self._clients:
            if not client.is_available:
                continue
            try:
                raw = await client.generate(
                    prompt,
                    system=SYSTEM_PROMPT,
                    max_tokens=self.max_tokens,
                    timeout=self.timeout,
                )
            except ProviderError as e:
                logger.info("Follow-ups via %s failed: %s", client.name, e)
                continue
            data = parse_llm_json(raw)
            insights = _string_list(data.get("insights"))
            recommendations = _string_list(data.get("recommendations"))
            if insights or recommendations:
                return insights, recommendations
        return self.lexical_follow_ups(ordered)

    def lexical_follow_ups(self, ordered: List[RetrievalResult]) -> Tuple[List[str], List[str]]:
        """Insights from stance/theme groups; recommendations from conflicts and gaps."""
        insights: List[str] = []
        stances_by_theme: Dict[str, set] = {}
        for (stance, theme), members in self.group_for_analysis(ordered).items():
            sessions = sorted({r.origin_session or r.chunk.session_id for r in members})
            line = f"{theme}: {len(members)} {STANCE_LABELS.get(stance, stance)} source(s)"
            if len(sessions) > 1:
                line += f" across sessions {', '.join(sessions)}"
            insights.append(line)
            stances_by_theme.setdefault(theme, set()).add(stance)

        recommendations: List[str] = []
        for theme, stances in sorted(stances_by_theme.items()):
            if {"support", "oppose"} <= stances:
                recommendations.append(f"Reconcile the conflicting positions on {theme} before deciding")
        if any(r.is_redacted for r in ordered):
            recommendations.append("Ask a reviewer with higher clearance to check the redacted sources")
        if len(ordered) < THIN_EVIDENCE_SOURCES:
            recommendations.append(f"Gather more material: only {len(ordered)} source(s) support this answer")
        return insights[:FOLLOW_UP_LIMIT], recommendations[:FOLLOW_UP_LIMIT]

    async def synthesize(
        self,
        query: str,
        results: List[RetrievalResult],
        mode: SynthesisMode = SynthesisMode.SUMMARY,
    ) -> SynthesizedAnswer:
        """
        Compose an answer from filtered results.

        Raises:
            PrivacyDenied: no results to synthesize from
            SynthesisUnavailable: every provider failed
        """
        mode = SynthesisMode(mode)
        if not results:
            raise PrivacyDenied("No accessible results to synthesize from")

        included, dropped = self.build_context(results)
        prompt, ordered = self.build_prompt(query, included, mode)
        text, provider = await self._generate_with_fallback(prompt)

        insights: List[str] = []
        recommendations: List[str] = []
        if self.follow_ups:
            insights, recommendations = await self.generate_follow_ups(query, text, ordered)

        warnings: List[str] = []
        if dropped:
            warnings.append(f"{dropped} lower-ranked source(s) omitted to fit the context budget")
        if any(r.is_redacted for r in ordered):
            warnings.append("Some sources were redacted for your privacy tier")

        logger.info("Synthesized %s answer via %s from %d sources", mode.value, provider, len(ordered))
        return SynthesizedAnswer(
            text=text,
            citations=self.select_citations(ordered, mode),
            confidence=self.confidence(ordered),
            mode=mode,
            provider=provider,
            dropped_count=dropped,
            warnings=warnings,
            insights=insights,
            recommendations=recommendations,
        )
