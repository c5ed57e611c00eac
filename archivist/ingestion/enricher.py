"""
Document Enricher

Derives a short summary and keywords for every accepted document. Generation
providers are asked in priority order; when none gives a usable reply the
summary falls back to the leading sentences and the keywords to the most
frequent content words.

Summaries pass through PII redaction before they are stored.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ..common.config import GenerationConfig
from ..common.errors import ProviderError
from ..common.llm_client import LLMClient, build_llm_clients
from ..common.llm_utils import parse_llm_json
from ..common.schemas import Document
from ..common.text import summarize_to_length
from .validator import redact_pii

logger = logging.getLogger("archivist.ingestion.enricher")

SUMMARY_LENGTH = 400
# Characters of document text sent to the provider
PROMPT_TEXT_LIMIT = 4000
MIN_KEYWORD_LENGTH = 3

_WORD_RE = re.compile(r"[^\W\d_]+(?:['-][^\W\d_]+)*", re.UNICODE)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

STOPWORDS = frozenset("""
a about above after again against all also am an and any are as at be because been before being
below between both but by can could did do does doing down during each either every few for from
further had has have having he her here hers him his how however i if in into is it its itself
just may me might more most must my no nor not now of off on once only or other our ours out over
own per same shall she should so some such than that the their theirs them then there these they
this those through to too under until up upon very was we were what when where which while who
whom why will with within without would yet you your
""".split())

ENRICH_PROMPT = """Summarize the following governance research document in at most three sentences.
Then list up to {count} key terms: governance, policy or technical concepts it discusses.

Document:
{text}

Respond with JSON only: {{"summary": "...", "keywords": ["...", "..."]}}"""


@dataclass
class Enrichment:
    """Summary and keywords for one document"""
    summary: str
    keywords: List[str] = field(default_factory=list)
    source: str = "lexical"  # provider name, or "lexical"

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary, "keywords": list(self.keywords), "source": self.source}


def extract_keywords(text: str, count: int = 10) -> List[str]:
    """Most frequent content words, ties broken by first appearance."""
    words = [
        w for w in (m.lower() for m in _WORD_RE.findall(text or ""))
        if len(w) >= MIN_KEYWORD_LENGTH and w not in STOPWORDS
    ]
    counts = Counter(words)
    first_seen: Dict[str, int] = {}
    for i, word in enumerate(words):
        first_seen.setdefault(word, i)
    ranked = sorted(counts, key=lambda w: (-counts[w], first_seen[w]))
    return ranked[:max(0, count)]


def lexical_summary(text: str, sentences: int = 2) -> str:
    """Leading sentences, capped at SUMMARY_LENGTH characters."""
    parts = [s for s in _SENTENCE_SPLIT_RE.split((text or "").strip()) if s.strip()]
    return summarize_to_length(" ".join(parts[:sentences]), SUMMARY_LENGTH)


def _clean_keywords(values: Any, count: int) -> List[str]:
    if not isinstance(values, list):
        return []
    keywords: List[str] = []
    for value in values:
        keyword = " ".join(str(value).split()).strip(" .,;:-").lower()
        if keyword and keyword not in keywords:
            keywords.append(keyword)
    return keywords[:count]


class DocumentEnricher:
    """
    Summary and keyword extraction with a lexical fallback.

    Args:
        clients: Generation clients in priority order (may be empty)
        keyword_count: Maximum keywords per document
    """

    def __init__(
        self,
        clients: Sequence[LLMClient] = (),
        keyword_count: int = 10,
        max_tokens: int = 300,
        timeout: float = 30.0,
    ):
        self._clients = list(clients)
        self.keyword_count = max(0, keyword_count)
        self.max_tokens = max_tokens
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: GenerationConfig, keyword_count: int = 10) -> "DocumentEnricher":
        return cls(build_llm_clients(config.providers), keyword_count=keyword_count, timeout=config.timeout)

    def lexical(self, text: str) -> Enrichment:
        return Enrichment(
            summary=redact_pii(lexical_summary(text)),
            keywords=extract_keywords(text, self.keyword_count),
        )

    async def enrich(self, document: Document) -> Enrichment:
        """Summarize a document; never raises for provider failures."""
        text = document.raw_text
        prompt = ENRICH_PROMPT.format(count=self.keyword_count, text=text[:PROMPT_TEXT_LIMIT])
        for client in self._clients:
            if not client.is_available:
                continue
            try:
                raw = await client.generate(prompt, max_tokens=self.max_tokens, timeout=self.timeout)
            except ProviderError as e:
                logger.info("Enrichment via %s failed for %s: %s", client.name, document.id, e)
                continue

            data = parse_llm_json(raw)
            summary = data.get("summary")
            if not isinstance(summary, str) or not summary.strip():
                logger.info("Unusable enrichment reply from %s for %s", client.name, document.id)
                continue
            return Enrichment(
                summary=redact_pii(summarize_to_length(summary, SUMMARY_LENGTH)),
                keywords=_clean_keywords(data.get("keywords"), self.keyword_count)
                or extract_keywords(text, self.keyword_count),
                source=client.name,
            )

        logger.debug("Using lexical enrichment for %s", document.id)
        return self.lexical(text)
