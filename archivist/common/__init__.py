"""
Archivist Common Module

Shared infrastructure for ingestion and retrieval.
"""

from .config import ArchivistConfig, load_config
from .embedding_service import EmbeddingService
from .llm_client import LLMClient
from .metadata_store import MetadataStore
from .vector_index import InMemoryVectorIndex, SessionIndexRouter

__all__ = [
    "ArchivistConfig",
    "load_config",
    "EmbeddingService",
    "LLMClient",
    "MetadataStore",
    "InMemoryVectorIndex",
    "SessionIndexRouter",
]
