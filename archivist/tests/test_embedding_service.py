"""Tests for the batching, retrying embedding service."""

import asyncio
from typing import List

import numpy as np
import pytest

from archivist.common.embedding_service import EmbeddingProvider, EmbeddingService, l2_normalize
from archivist.common.errors import EmbeddingFailed, InvalidInput, ProviderUnavailable, RateLimited
from archivist.tests.conftest import HashingEmbeddingProvider


class FlakyProvider(EmbeddingProvider):
    """Fails every multi-text batch and the first `item_failures` single-text calls."""

    name = "flaky"

    def __init__(self, item_failures: int = 0, error=RateLimited):
        self.item_failures = item_failures
        self.error = error
        self.calls: List[List[str]] = []
        self._sample_done = False

    async def embed(self, texts):
        self.calls.append(list(texts))
        if not self._sample_done:
            self._sample_done = True
            return [[1.0, 0.0, 0.0] for _ in texts]
        if len(texts) > 1:
            raise self.error("batch rejected", provider=self.name)
        if self.item_failures > 0:
            self.item_failures -= 1
            raise self.error("slow down", provider=self.name)
        return [[float(len(texts[0])), 1.0, 0.0]]


class SlowProvider(EmbeddingProvider):
    name = "slow"

    async def embed(self, texts):
        await asyncio.sleep(5)
        return [[1.0] for _ in texts]


class DownProvider(EmbeddingProvider):
    name = "down"

    async def embed(self, texts):
        raise ProviderUnavailable("offline", provider=self.name)


class TestEmbed:
    @pytest.mark.asyncio
    async def test_vectors_are_normalized_and_ordered(self):
        provider = HashingEmbeddingProvider(dim=32)
        service = EmbeddingService([provider], batch_size=2)
        texts = ["alpha beta", "gamma", "delta epsilon", "zeta"]

        vectors = await service.embed(texts)

        assert len(vectors) == 4
        for text, vec in zip(texts, vectors):
            assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)
            expected = l2_normalize(np.asarray(provider.vector(text)))[0]
            assert np.allclose(vec, expected, atol=1e-6)

    @pytest.mark.asyncio
    async def test_batches_respect_batch_size(self):
        provider = HashingEmbeddingProvider()
        service = EmbeddingService([provider], batch_size=2)
        await service.embed(["a", "b", "c", "d", "e"])
        # First call is the provider check, then batches of two
        assert [len(c) for c in provider.calls] == [1, 2, 2, 1]

    @pytest.mark.asyncio
    async def test_empty_input(self):
        service = EmbeddingService([HashingEmbeddingProvider()])
        assert await service.embed([]) == []

    @pytest.mark.asyncio
    async def test_embed_single_rejects_blank(self):
        service = EmbeddingService([HashingEmbeddingProvider()])
        with pytest.raises(ValueError):
            await service.embed_single("   ")


class TestRetry:
    @pytest.mark.asyncio
    async def test_batch_failure_retries_per_item(self):
        provider = FlakyProvider(item_failures=2)
        service = EmbeddingService([provider], batch_size=4, max_attempts=3, backoff_base=0.0)

        vectors = await service.embed(["one", "two", "three"])

        assert len(vectors) == 3
        single_calls = [c for c in provider.calls[1:] if len(c) == 1]
        # the first item needed two extra attempts, the others none
        assert len(single_calls) == 5

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_embedding_failed(self):
        provider = FlakyProvider(item_failures=10)
        service = EmbeddingService([provider], batch_size=4, max_attempts=3, backoff_base=0.0)

        with pytest.raises(EmbeddingFailed) as exc_info:
            await service.embed(["one", "two"])
        assert exc_info.value.details["batch"] == 0

    @pytest.mark.asyncio
    async def test_invalid_input_is_not_retried(self):
        provider = FlakyProvider(item_failures=10, error=InvalidInput)
        service = EmbeddingService([provider], batch_size=4, max_attempts=3, backoff_base=0.0)

        with pytest.raises(EmbeddingFailed):
            await service.embed(["one", "two"])
        single_calls = [c for c in provider.calls[1:] if len(c) == 1]
        assert len(single_calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        service = EmbeddingService([SlowProvider()], timeout=0.01, max_attempts=1)
        with pytest.raises(EmbeddingFailed, match="No embedding provider"):
            await service.embed(["text"])


class TestProviderSelection:
    @pytest.mark.asyncio
    async def test_falls_back_before_pinning(self):
        fallback = HashingEmbeddingProvider()
        service = EmbeddingService([DownProvider(), fallback])

        await service.embed(["governance"])

        assert service.active_provider == "hashing"
        assert service.dimension == fallback.dim

    @pytest.mark.asyncio
    async def test_all_providers_down(self):
        service = EmbeddingService([DownProvider()])
        with pytest.raises(EmbeddingFailed) as exc_info:
            await service.embed(["governance"])
        assert exc_info.value.details["errors"]

    def test_requires_a_provider(self):
        with pytest.raises(ValueError):
            EmbeddingService([])


class TestSimilarity:
    def test_cosine_similarity_clamped(self):
        service = EmbeddingService([HashingEmbeddingProvider()])
        assert service.cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert service.cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == 0.0

    def test_batch_cosine_similarity(self):
        service = EmbeddingService([HashingEmbeddingProvider()])
        scores = service.batch_cosine_similarity([1.0, 0.0], [[1.0, 0.0], [0.0, 1.0]])
        assert scores == pytest.approx([1.0, 0.0])
