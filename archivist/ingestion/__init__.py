"""
Ingestion - Research Archive Intake

Turns raw documents into indexed, privacy-tagged chunks.

Key Components:
- DataValidator: Quality scoring and PII detection
- Chunker: Overlapping token windows with paragraph snapping
- DocumentEnricher: Per-document summary and keywords
- DocumentProcessor: Validate, chunk, embed and store atomically per document
- ReconciliationQueue: Operator queue for partially indexed documents
- ForumSync: Pulls Discourse posts into the processor

Pipeline:
1. Score document quality (reject below threshold)
2. Summarize and extract keywords
3. Split into overlapping windows
4. Embed in batches
5. Write vectors and metadata as one unit
"""

from .chunker import Chunker, TextWindow
from .enricher import DocumentEnricher, Enrichment
from .forum_client import DiscourseClient, ForumSync
from .processor import DocumentProcessor, ProcessingResult
from .reconciliation import ReconciliationQueue
from .validator import DataValidator, ValidationReport, find_pii, redact_pii

__all__ = [
    "Chunker",
    "TextWindow",
    "DocumentEnricher",
    "Enrichment",
    "DiscourseClient",
    "ForumSync",
    "DocumentProcessor",
    "ProcessingResult",
    "ReconciliationQueue",
    "DataValidator",
    "ValidationReport",
    "find_pii",
    "redact_pii",
]
