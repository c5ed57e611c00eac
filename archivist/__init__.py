"""
Archivist

Privacy-aware retrieval-augmented research over governance archives.

Philosophy:
- Every chunk is reproducible from its document text (content-addressed ids)
- Privacy tiers gate what a requester may read, redacted where allowed
- Answers are synthesized only from accessible evidence, never fabricated
- Relationships between sessions are discovered, cached, and invalidated

Usage:
    from archivist.common import load_config, EmbeddingService, MetadataStore
    from archivist.common.schemas import Document, PrivacyTier
    from archivist.ingestion import DataValidator, DocumentProcessor
    from archivist.retriever import RetrievalEngine, SynthesisEngine, ResearchPipeline
"""

__version__ = "0.1.0"
