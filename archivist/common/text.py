"""
Text Helpers

Whitespace tokenization shared by the chunker and the synthesis context budget,
text normalization, and content-addressed identifiers.
"""

import hashlib
import re
import unicodedata
from dataclasses import dataclass
from typing import List

_TOKEN_RE = re.compile(r"\S+")
_WS_RE = re.compile(r"\s+")
# A blank line (possibly holding spaces/tabs) separates paragraphs
_PARAGRAPH_GAP_RE = re.compile(r"\n[ \t]*\n")


@dataclass(frozen=True)
class TokenSpan:
    """One whitespace-delimited token and its character offsets"""
    start: int
    end: int
    starts_paragraph: bool = False


def token_spans(text: str) -> List[TokenSpan]:
    """Tokenize text into spans, marking tokens that open a new paragraph."""
    spans: List[TokenSpan] = []
    prev_end = 0
    for match in _TOKEN_RE.finditer(text):
        gap = text[prev_end:match.start()]
        starts_paragraph = bool(spans) and bool(_PARAGRAPH_GAP_RE.search(gap))
        spans.append(TokenSpan(match.start(), match.end(), starts_paragraph))
        prev_end = match.end()
    return spans


def count_tokens(text: str) -> int:
    """Approximate token count (whitespace-delimited words)."""
    if not text:
        return 0
    return len(_TOKEN_RE.findall(text))


def truncate_tokens(text: str, max_tokens: int) -> str:
    """Keep at most max_tokens leading tokens, preserving original spacing."""
    if max_tokens <= 0:
        return ""
    spans = token_spans(text)
    if len(spans) <= max_tokens:
        return text
    return text[:spans[max_tokens - 1].end]


def normalize_text(text: str) -> str:
    """NFKC, case-folded, whitespace-collapsed form used for hashing."""
    normalized = unicodedata.normalize("NFKC", text or "")
    return _WS_RE.sub(" ", normalized).strip().casefold()


def content_hash(text: str) -> str:
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def generate_chunk_id(text: str) -> str:
    """Content-addressed chunk id, stable across sessions and re-ingestion."""
    return f"chk_{content_hash(text)[:32]}"


def generate_document_id(session_id: str, raw_text: str) -> str:
    digest = hashlib.sha256(f"{session_id}\x00{normalize_text(raw_text)}".encode("utf-8"))
    return f"doc_{digest.hexdigest()[:32]}"


def hash_author(author: str) -> str:
    """One-way author pseudonym stored in chunk metadata."""
    if not author:
        return ""
    return hashlib.sha256(author.strip().lower().encode("utf-8")).hexdigest()[:16]


def summarize_to_length(text: str, max_chars: int) -> str:
    """
    Cut text to at most max_chars on a word boundary.

    The result never exceeds max_chars, so output length carries no
    information about the original length beyond the cap.
    """
    collapsed = _WS_RE.sub(" ", text or "").strip()
    if len(collapsed) <= max_chars:
        return collapsed
    cut = collapsed[:max_chars]
    space = cut.rfind(" ")
    if space > max_chars // 2:
        cut = cut[:space]
    return cut.rstrip(" ,;:-")
