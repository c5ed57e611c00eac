"""
Data Validator

Deterministic quality scoring and PII detection for incoming documents.

The quality score gates ingestion (documents below the configured threshold
are rejected before anything is chunked). The PII patterns are shared with
the privacy filter, which uses them to sanitize redacted results.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from ..common.schemas import Document

logger = logging.getLogger("archivist.ingestion.validator")


# Ordered: earlier patterns win when matches overlap (an SSN is not a phone number)
PII_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("api_key", re.compile(
        r"\b(?:sk|pk|rk|ghp|gho|ghs|xox[abpr])[-_][A-Za-z0-9_\-]{16,}\b"
        r"|\b(?:api[_-]?key|token|secret)\s*[:=]\s*['\"]?[A-Za-z0-9_\-\.]{12,}['\"]?",
        re.IGNORECASE,
    )),
    ("email", re.compile(r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b")),
    ("eth_address", re.compile(r"\b0x[a-fA-F0-9]{40}\b")),
    ("btc_address", re.compile(r"\b(?:bc1[a-z0-9]{25,39}|[13][a-km-zA-HJ-NP-Z1-9]{25,34})\b")),
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("ipv4", re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b")),
    ("phone", re.compile(r"(?<![\w.])(?:\+?\d{1,3}[\s.\-]?)?(?:\(\d{3}\)|\d{3})[\s.\-]?\d{3}[\s.\-]?\d{4}(?![\w.])")),
]

_WORD_RE = re.compile(r"[^\W\d_]+(?:'[^\W\d_]+)?", re.UNICODE)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

MIN_TOKENS_FOR_FULL_SCORE = 20
DIVERSITY_WINDOW = 100
SENTENCE_MIN_WORDS = 3
SENTENCE_MAX_WORDS = 60


@dataclass
class PIIMatch:
    """One PII occurrence in a text"""
    kind: str
    start: int
    end: int
    value: str


@dataclass
class ValidationReport:
    """Outcome of validating a document"""
    quality_score: float
    components: Dict[str, float] = field(default_factory=dict)
    pii_kinds: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)

    @property
    def has_pii(self) -> bool:
        return bool(self.pii_kinds)


def find_pii(text: str) -> List[PIIMatch]:
    """All non-overlapping PII matches, in text order."""
    if not text:
        return []
    taken: List[Tuple[int, int]] = []
    matches: List[PIIMatch] = []
    for kind, pattern in PII_PATTERNS:
        for m in pattern.finditer(text):
            if any(m.start() < end and start < m.end() for start, end in taken):
                continue
            taken.append((m.start(), m.end()))
            matches.append(PIIMatch(kind=kind, start=m.start(), end=m.end(), value=m.group(0)))
    matches.sort(key=lambda m: m.start)
    return matches


def redact_pii(text: str) -> str:
    """Replace every PII match with a [kind] placeholder."""
    matches = find_pii(text)
    if not matches:
        return text
    parts: List[str] = []
    cursor = 0
    for m in matches:
        parts.append(text[cursor:m.start])
        parts.append(f"[{m.kind}]")
        cursor = m.end
    parts.append(text[cursor:])
    return "".join(parts)


def score_text(text: str) -> Tuple[float, Dict[str, float]]:
    """
    Quality score in [0, 1] from four signals:

    - length: ramps to 1.0 at MIN_TOKENS_FOR_FULL_SCORE tokens (multiplier)
    - alphabetic: share of non-space characters that are letters
    - diversity: distinct words per DIVERSITY_WINDOW-word window, pooled over
      the whole text so a repetitive tail pulls it down
    - structure: share of sentences between 3 and 60 words

    Returns:
        (score, components)
    """
    tokens = (text or "").split()
    if not tokens:
        return 0.0, {"length": 0.0, "alphabetic": 0.0, "diversity": 0.0, "structure": 0.0}

    length = min(1.0, len(tokens) / MIN_TOKENS_FOR_FULL_SCORE)

    visible = [c for c in text if not c.isspace()]
    alphabetic = sum(1 for c in visible if c.isalpha()) / len(visible)

    words = [w.lower() for w in _WORD_RE.findall(text)]
    if words:
        windows = [words[i:i + DIVERSITY_WINDOW] for i in range(0, len(words), DIVERSITY_WINDOW)]
        diversity = sum(len(set(w)) for w in windows) / len(words)
    else:
        diversity = 0.0

    sentences = [s for s in _SENTENCE_SPLIT_RE.split(text.strip()) if s.strip()]
    well_formed = 0
    for sentence in sentences:
        n_words = len(_WORD_RE.findall(sentence))
        if SENTENCE_MIN_WORDS <= n_words <= SENTENCE_MAX_WORDS:
            well_formed += 1
    structure = well_formed / len(sentences) if sentences else 0.0

    score = length * (0.3 * alphabetic + 0.4 * diversity + 0.3 * structure)
    components = {
        "length": round(length, 4),
        "alphabetic": round(alphabetic, 4),
        "diversity": round(diversity, 4),
        "structure": round(structure, 4),
    }
    return round(max(0.0, min(1.0, score)), 4), components


class DataValidator:
    """
    Scores documents and reports PII.

    Validation never mutates the input: it returns a copy of the document
    carrying its quality score.
    """

    def __init__(self, quality_threshold: float = 0.4):
        self.quality_threshold = quality_threshold

    def validate(self, document: Document) -> Tuple[Document, ValidationReport]:
        score, components = score_text(document.raw_text)
        pii = find_pii(document.raw_text)
        report = ValidationReport(
            quality_score=score,
            components=components,
            pii_kinds=sorted({m.kind for m in pii}),
        )

        if components["length"] < 1.0:
            report.issues.append("document is very short")
        if components["diversity"] < 0.2:
            report.issues.append("text is highly repetitive")
        if components["alphabetic"] < 0.5:
            report.issues.append("text is mostly non-alphabetic")
        if report.has_pii:
            report.issues.append(f"contains PII: {', '.join(report.pii_kinds)}")

        logger.debug("Validated %s: score=%.3f pii=%s", document.id, score, report.pii_kinds)
        return document.with_quality(score), report

    def passes(self, document: Document) -> bool:
        """True if the (validated) document meets the quality threshold."""
        return document.quality_score is not None and document.quality_score >= self.quality_threshold
