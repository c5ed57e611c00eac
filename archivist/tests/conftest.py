"""Shared fakes and fixtures: deterministic embeddings, scripted LLMs, in-memory stores."""

import hashlib
import re
from typing import List, Optional

import numpy as np
import pytest

from archivist.common.embedding_service import EmbeddingProvider, EmbeddingService
from archivist.common.metadata_store import MetadataStore
from archivist.common.schemas import Document
from archivist.common.vector_index import SessionIndexRouter
from archivist.ingestion.processor import DocumentProcessor
from archivist.ingestion.reconciliation import ReconciliationQueue
from archivist.retriever.searcher import RetrievalEngine

_WORD = re.compile(r"[a-z0-9]+")


class HashingEmbeddingProvider(EmbeddingProvider):
    """Bag-of-words hashed into a fixed number of buckets; identical text gives identical vectors."""

    name = "hashing"

    def __init__(self, dim: int = 128):
        self.dim = dim
        self.calls: List[List[str]] = []

    def vector(self, text: str) -> List[float]:
        vec = np.zeros(self.dim, dtype=np.float32)
        for word in _WORD.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dim
            vec[bucket] += 1.0
        if not vec.any():
            vec[0] = 1.0
        return vec.tolist()

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


class FakeLLM:
    """Scripted generation client with the LLMClient surface."""

    def __init__(
        self,
        name: str = "fake:model",
        reply: str = "The sources agree on the proposal [1].",
        errors: Optional[List[Exception]] = None,
        always_raise: Optional[Exception] = None,
        available: bool = True,
    ):
        self.name = name
        self.reply = reply
        self.errors = list(errors or [])
        self.always_raise = always_raise
        self.available = available
        self.prompts: List[str] = []

    @property
    def is_available(self) -> bool:
        return self.available

    async def generate(self, prompt, *, system=None, max_tokens=512, timeout=30.0):
        self.prompts.append(prompt)
        if self.always_raise is not None:
            raise self.always_raise
        if self.errors:
            raise self.errors.pop(0)
        return self.reply


TREASURY_TEXT = (
    "The treasury committee reviewed the grant program for community developers. "
    "Members agreed that milestone based payouts reduce the risk of abandoned projects. "
    "A quarterly report will summarize every disbursement and its measurable outcome."
)
VOTING_TEXT = (
    "Delegates debated whether quadratic voting should replace token weighted ballots. "
    "Several participants argued that whales currently dominate every governance decision. "
    "The working group will pilot the new ballot design during the next election cycle."
)
SECURITY_TEXT = (
    "Auditors presented findings about the bridge contract and its upgrade keys. "
    "The multisig signers must rotate hardware wallets before the migration window. "
    "An incident response runbook is being drafted with the infrastructure team."
)
LOW_QUALITY_TEXT = "ok ok"


def make_document(text: str = TREASURY_TEXT, session_id: str = "s1", **kwargs) -> Document:
    return Document(raw_text=text, session_id=session_id, **kwargs)


@pytest.fixture
def hashing_provider():
    return HashingEmbeddingProvider()


@pytest.fixture
def embedding_service(hashing_provider):
    return EmbeddingService([hashing_provider], batch_size=8, backoff_base=0.0)


@pytest.fixture
def store():
    metadata_store = MetadataStore("sqlite://")
    yield metadata_store
    metadata_store.close()


@pytest.fixture
def router():
    return SessionIndexRouter()


@pytest.fixture
def reconciliation(tmp_path):
    return ReconciliationQueue(tmp_path / "reconciliation_queue.json")


@pytest.fixture
def processor(embedding_service, router, store, reconciliation):
    return DocumentProcessor(
        embedding_service=embedding_service,
        router=router,
        store=store,
        reconciliation=reconciliation,
        quality_threshold=0.4,
    )


@pytest.fixture
def retrieval(embedding_service, router):
    return RetrievalEngine(embedding_service, router, top_k=3, over_fetch_factor=3)
