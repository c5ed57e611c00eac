"""
Retriever - Privacy-Aware Research Retrieval

Finds relevant archive passages, gates them by privacy tier and synthesizes
answers.

Key Components:
- RetrievalEngine: Over-fetching semantic search with weighted re-ranking
- PrivacyFilter: allow / redact / deny per chunk, audited
- SynthesisEngine: Multi-provider answer composition with fallback
- KnowledgeCorrelator: Cross-session relationships between passages
- ResearchPipeline: Per-request state machine tying the steps together

Pipeline:
1. Embed the query
2. Search session indexes and re-rank
3. Apply the privacy filter to every candidate
4. Synthesize an answer from accessible results
"""

from .correlator import KnowledgeCorrelator, Stance, detect_stance
from .pipeline import PipelineState, ResearchPipeline, ResearchRequest, ResearchResponse, ResponseStatus
from .privacy_filter import FilterOutcome, PrivacyFilter, configure_audit_logging, shutdown_audit_logging
from .searcher import RetrievalEngine, RetrievalReport, RetrievalResult
from .synthesizer import Citation, SynthesisEngine, SynthesizedAnswer

__all__ = [
    "KnowledgeCorrelator",
    "Stance",
    "detect_stance",
    "PipelineState",
    "ResearchPipeline",
    "ResearchRequest",
    "ResearchResponse",
    "ResponseStatus",
    "FilterOutcome",
    "PrivacyFilter",
    "configure_audit_logging",
    "shutdown_audit_logging",
    "RetrievalEngine",
    "RetrievalReport",
    "RetrievalResult",
    "Citation",
    "SynthesisEngine",
    "SynthesizedAnswer",
]
