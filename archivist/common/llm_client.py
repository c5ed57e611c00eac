"""
Provider-agnostic LLM client for Archivist synthesis.

Supports Anthropic, OpenAI, and Google Gemini with a shared async
text-generation interface. SDK exceptions are translated into the provider
error taxonomy so callers can decide between retry and fallback.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .config import ProviderConfig
from .errors import (
    MalformedResponse,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    QuotaExceeded,
)

logger = logging.getLogger("archivist.common.llm_client")

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o-mini",
    "google": "gemini-2.0-flash",
}

_TIMEOUT_ERRORS = {"APITimeoutError", "Timeout", "TimeoutError", "ReadTimeout", "DeadlineExceeded"}
_QUOTA_ERRORS = {"RateLimitError", "ResourceExhausted", "TooManyRequests"}


def classify_provider_error(exc: BaseException, provider: str) -> ProviderError:
    """Map an SDK exception onto Timeout / QuotaExceeded / MalformedResponse / Unavailable."""
    if isinstance(exc, ProviderError):
        return exc
    name = type(exc).__name__
    if isinstance(exc, asyncio.TimeoutError) or name in _TIMEOUT_ERRORS:
        return ProviderTimeout(f"{provider} timed out", provider=provider)
    status = getattr(exc, "status_code", None) or getattr(exc, "code", None)
    if name in _QUOTA_ERRORS or status == 429:
        return QuotaExceeded(f"{provider} quota exceeded: {exc}", provider=provider)
    if isinstance(exc, (IndexError, KeyError, AttributeError, TypeError, ValueError)):
        return MalformedResponse(f"{provider} returned a malformed response: {exc}", provider=provider)
    return ProviderUnavailable(f"{provider} failed: {exc}", provider=provider)


class LLMClient:
    """Unified text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "anthropic",
        model: str = "",
        api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "anthropic").lower()
        self.model = model or DEFAULT_MODELS.get(self.provider, "")
        self._client = None

        if self.provider == "anthropic":
            if not api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.AsyncAnthropic(api_key=api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider == "openai":
            if not api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(api_key=api_key)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "google":
            if not api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import google.generativeai as genai

                genai.configure(api_key=api_key)
                self._client = genai  # Store the module, not a model instance
                self._google_models = {}  # Cache models by system prompt hash
            except ImportError:
                logger.warning("google-generativeai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @classmethod
    def from_config(cls, entry: ProviderConfig) -> "LLMClient":
        return cls(provider=entry.provider, model=entry.model, api_key=entry.api_key or None)

    @property
    def name(self) -> str:
        return f"{self.provider}:{self.model}"

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        timeout: float = 30.0,
    ) -> str:
        """Generate text; raises a ProviderError subclass on any failure."""
        if not self.is_available:
            raise ProviderUnavailable("LLM client is not available", provider=self.provider)

        try:
            text = await asyncio.wait_for(
                self._generate(prompt, system=system, max_tokens=max_tokens, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise classify_provider_error(e, self.provider) from e

        if not text or not text.strip():
            raise MalformedResponse(f"{self.provider} returned empty text", provider=self.provider)
        return text.strip()

    async def _generate(
        self,
        prompt: str,
        *,
        system: Optional[str],
        max_tokens: int,
        timeout: float,
    ) -> str:
        if self.provider == "anthropic":
            kwargs = {}
            if system:
                kwargs["system"] = system
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
                **kwargs,
            )
            return response.content[0].text

        if self.provider == "openai":
            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=messages,
                timeout=timeout,
            )
            return response.choices[0].message.content or ""

        if self.provider == "google":
            import hashlib

            cache_key = hashlib.md5((system or "").encode()).hexdigest()
            if cache_key not in self._google_models:
                kwargs = {"model_name": self.model}
                if system:
                    kwargs["system_instruction"] = system
                self._google_models[cache_key] = self._client.GenerativeModel(**kwargs)
            model = self._google_models[cache_key]
            response = await model.generate_content_async(
                prompt,
                generation_config={"max_output_tokens": max_tokens},
                request_options={"timeout": timeout},
            )
            return response.text

        raise ProviderUnavailable(f"Unsupported LLM provider: {self.provider}", provider=self.provider)


def build_llm_clients(entries: List[ProviderConfig]) -> List[LLMClient]:
    """Instantiate clients in priority order (unavailable ones are kept and skipped later)."""
    return [LLMClient.from_config(entry) for entry in entries]
