"""
Archivist Schemas

Domain models for documents, chunks, privacy tiers and correlations.
"""

from .research import (
    Document,
    Chunk,
    CorrelationEdge,
    PrivacyTier,
    PrivacyDecision,
    RelationType,
    SourceType,
    SynthesisMode,
    DocumentStatus,
)

__all__ = [
    "Document",
    "Chunk",
    "CorrelationEdge",
    "PrivacyTier",
    "PrivacyDecision",
    "RelationType",
    "SourceType",
    "SynthesisMode",
    "DocumentStatus",
]
