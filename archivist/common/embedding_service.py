"""
Embedding Service

Turns text into L2-normalized vectors through an ordered chain of providers.
fastembed runs on-device by default; OpenAI embeddings are available as a
remote provider.

The first provider that produces vectors is pinned for the lifetime of the
service: mixing providers inside one index would make similarity scores
meaningless, so fallback happens only before anything has been embedded.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from .config import EmbeddingConfig, ProviderConfig
from .errors import (
    EmbeddingFailed,
    InvalidInput,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
)

logger = logging.getLogger("archivist.common.embedding_service")


def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    """Row-wise L2 normalization (zero rows are left as zeros)."""
    matrix = np.atleast_2d(np.asarray(vectors, dtype=np.float32))
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class EmbeddingProvider(ABC):
    """A backend that embeds batches of text."""

    name: str = "provider"

    @property
    def is_available(self) -> bool:
        return True

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch; raises RateLimited, InvalidInput or ProviderUnavailable."""


class FastEmbedProvider(EmbeddingProvider):
    """On-device embeddings via fastembed (no external API calls)."""

    def __init__(self, model: str = "sentence-transformers/all-MiniLM-L6-v2"):
        self.name = f"fastembed:{model}"
        self._model_name = model
        self._model = None
        try:
            from fastembed import TextEmbedding

            self._model = TextEmbedding(model_name=model)
            logger.info("Initialized fastembed model %s", model)
        except ImportError:
            logger.warning("fastembed package not installed")
        except Exception as e:
            logger.warning("Failed to initialize fastembed model %s: %s", model, e)

    @property
    def is_available(self) -> bool:
        return self._model is not None

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not self.is_available:
            raise ProviderUnavailable("fastembed model not loaded", provider=self.name)
        if any(not t or not t.strip() for t in texts):
            raise InvalidInput("cannot embed empty text", provider=self.name)

        def _run() -> List[List[float]]:
            return [vec.tolist() for vec in self._model.embed(texts)]

        return await asyncio.to_thread(_run)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Remote embeddings via the OpenAI API."""

    def __init__(self, model: str = "text-embedding-3-small", api_key: Optional[str] = None):
        self.name = f"openai:{model}"
        self._model_name = model
        self._client = None
        if not api_key:
            logger.info("openai API key not provided, embedding provider unavailable")
            return
        try:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=api_key)
        except ImportError:
            logger.warning("openai package not installed")
        except Exception as e:
            logger.warning("Failed to initialize OpenAI embeddings: %s", e)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not self.is_available:
            raise ProviderUnavailable("OpenAI embeddings unavailable", provider=self.name)
        try:
            response = await self._client.embeddings.create(model=self._model_name, input=texts)
        except Exception as e:
            name = type(e).__name__
            if name == "RateLimitError":
                raise RateLimited(str(e), provider=self.name) from e
            if name == "BadRequestError":
                raise InvalidInput(str(e), provider=self.name) from e
            if name == "APITimeoutError":
                raise ProviderTimeout(str(e), provider=self.name) from e
            raise ProviderUnavailable(str(e), provider=self.name) from e
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]


def build_embedding_providers(entries: List[ProviderConfig]) -> List[EmbeddingProvider]:
    """Instantiate embedding providers in priority order."""
    providers: List[EmbeddingProvider] = []
    for entry in entries:
        if entry.provider in ("fastembed", "femb"):
            providers.append(FastEmbedProvider(model=entry.model or "sentence-transformers/all-MiniLM-L6-v2"))
        elif entry.provider == "openai":
            providers.append(OpenAIEmbeddingProvider(
                model=entry.model or "text-embedding-3-small",
                api_key=entry.api_key or None,
            ))
        else:
            logger.warning("Unsupported embedding provider: %s", entry.provider)
    return providers


class EmbeddingService:
    """
    Batching, retrying embedding front-end over an ordered provider list.

    Features:
    - Bounded batches to respect provider rate limits
    - Batch failure degrades to per-item retry with exponential backoff
    - Per-call timeout (a timeout counts as a failure for retry purposes)
    - Provider pinning and dimension checks for embedding-space consistency
    """

    def __init__(
        self,
        providers: List[EmbeddingProvider],
        batch_size: int = 16,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_factor: float = 2.0,
        timeout: float = 30.0,
    ):
        if not providers:
            raise ValueError("EmbeddingService needs at least one provider")
        self._providers = list(providers)
        self._batch_size = max(1, batch_size)
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._backoff_factor = backoff_factor
        self._timeout = timeout
        self._active: Optional[EmbeddingProvider] = None
        self._dimension: Optional[int] = None
        self._pin_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> "EmbeddingService":
        return cls(
            providers=build_embedding_providers(config.providers),
            batch_size=config.batch_size,
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_factor=config.backoff_factor,
            timeout=config.timeout,
        )

    @property
    def is_available(self) -> bool:
        return any(p.is_available for p in self._providers)

    @property
    def active_provider(self) -> Optional[str]:
        return self._active.name if self._active else None

    @property
    def dimension(self) -> Optional[int]:
        """Output size of the pinned provider (None until first embedding)."""
        return self._dimension

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of L2-normalized embedding vectors, in input order

        Raises:
            EmbeddingFailed: a batch could not be embedded after retries
        """
        if not texts:
            return []

        provider = await self._resolve_provider(texts[0])
        vectors: List[List[float]] = []
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start:start + self._batch_size]
            vectors.extend(await self._embed_batch(provider, batch, start // self._batch_size))
        return vectors

    async def embed_single(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return (await self.embed([text]))[0]

    async def _resolve_provider(self, sample_text: str) -> EmbeddingProvider:
        """Pin the first provider in priority order that can embed."""
        if self._active is not None:
            return self._active

        async with self._pin_lock:
            if self._active is not None:
                return self._active
            errors = []
            for provider in self._providers:
                if not provider.is_available:
                    errors.append(f"{provider.name}: unavailable")
                    continue
                try:
                    sample = await self._call(provider, [sample_text])
                except ProviderError as e:
                    logger.warning("Embedding provider %s failed during selection: %s", provider.name, e)
                    errors.append(f"{provider.name}: {e}")
                    continue
                self._active = provider
                self._dimension = len(sample[0])
                logger.info("Pinned embedding provider %s (dim=%d)", provider.name, self._dimension)
                return provider
            raise EmbeddingFailed("No embedding provider available", errors=errors)

    async def _call(self, provider: EmbeddingProvider, texts: List[str]) -> List[List[float]]:
        try:
            raw = await asyncio.wait_for(provider.embed(texts), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(f"{provider.name} embedding timed out", provider=provider.name) from e
        if len(raw) != len(texts):
            raise ProviderUnavailable(
                f"{provider.name} returned {len(raw)} vectors for {len(texts)} texts",
                provider=provider.name,
            )
        return l2_normalize(np.asarray(raw)).tolist()

    async def _embed_batch(
        self,
        provider: EmbeddingProvider,
        batch: List[str],
        batch_index: int,
    ) -> List[List[float]]:
        try:
            vectors = await self._call(provider, batch)
        except ProviderError as e:
            logger.warning(
                "Embedding batch %d (%d texts) failed: %s; retrying per item",
                batch_index, len(batch), e,
            )
            vectors = [await self._embed_item_with_retry(provider, text, batch_index) for text in batch]

        for vec in vectors:
            self._check_dimension(vec, provider)
        return vectors

    async def _embed_item_with_retry(
        self,
        provider: EmbeddingProvider,
        text: str,
        batch_index: int,
    ) -> List[float]:
        delay = self._backoff_base
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return (await self._call(provider, [text]))[0]
            except InvalidInput as e:
                # Structural: retrying the same text cannot help
                raise EmbeddingFailed(str(e), batch=batch_index, provider=provider.name) from e
            except ProviderError as e:
                last_error = e
                logger.info(
                    "Embedding retry %d/%d on batch %d failed (%s)",
                    attempt, self._max_attempts, batch_index, e,
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(delay)
                    delay *= self._backoff_factor
        raise EmbeddingFailed(
            f"Batch {batch_index} failed after {self._max_attempts} attempts: {last_error}",
            batch=batch_index,
            provider=provider.name,
        )

    def _check_dimension(self, vector: List[float], provider: EmbeddingProvider) -> None:
        if self._dimension is None:
            self._dimension = len(vector)
        elif len(vector) != self._dimension:
            raise EmbeddingFailed(
                f"{provider.name} returned dimension {len(vector)}, expected {self._dimension}",
                provider=provider.name,
            )

    def cosine_similarity(self, vec1: List[float], vec2: List[float]) -> float:
        """
        Cosine similarity between two vectors, clamped to [0, 1].

        Vectors from this service are L2 normalized, so the dot product equals
        cosine similarity.
        """
        v1 = np.asarray(vec1, dtype=np.float32)
        v2 = np.asarray(vec2, dtype=np.float32)

        if v1.shape != v2.shape:
            raise ValueError(f"Vector dimension mismatch: {v1.shape} vs {v2.shape}")

        similarity = float(np.dot(l2_normalize(v1)[0], l2_normalize(v2)[0]))
        return max(0.0, min(1.0, similarity))

    def batch_cosine_similarity(
        self,
        query_vec: List[float],
        vectors: List[List[float]]
    ) -> List[float]:
        """Cosine similarity between a query and multiple vectors, clamped to [0, 1]."""
        if not vectors:
            return []

        query = l2_normalize(np.asarray(query_vec))[0]
        matrix = l2_normalize(np.asarray(vectors))
        similarities = np.clip(matrix @ query, 0.0, 1.0)
        return similarities.tolist()
