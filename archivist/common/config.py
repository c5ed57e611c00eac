"""
Configuration Management for Archivist

Loads configuration from ~/.archivist/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger("archivist.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".archivist"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
RECONCILIATION_QUEUE_PATH = CONFIG_DIR / "reconciliation_queue.json"
AUDIT_LOG_PATH = LOGS_DIR / "privacy_audit.jsonl"
DEFAULT_DATABASE_URL = f"sqlite:///{CONFIG_DIR / 'archive.db'}"


@dataclass
class ProviderConfig:
    """One entry in an ordered provider list"""
    provider: str
    model: str = ""
    api_key: str = ""


@dataclass
class EmbeddingConfig:
    """Embedding provider chain and batching policy"""
    providers: List[ProviderConfig] = field(default_factory=lambda: [
        ProviderConfig(provider="fastembed", model="sentence-transformers/all-MiniLM-L6-v2"),
    ])
    batch_size: int = 16
    max_attempts: int = 3
    backoff_base: float = 0.5  # seconds
    backoff_factor: float = 2.0
    timeout: float = 30.0


@dataclass
class GenerationConfig:
    """Ordered language-generation providers for synthesis"""
    providers: List[ProviderConfig] = field(default_factory=lambda: [
        ProviderConfig(provider="anthropic", model="claude-sonnet-4-20250514"),
        ProviderConfig(provider="openai", model="gpt-4o-mini"),
        ProviderConfig(provider="google", model="gemini-2.0-flash"),
    ])
    context_token_budget: int = 4000
    max_tokens: int = 1024
    timeout: float = 30.0
    retry_attempts: int = 2  # per provider, transient failures only
    backoff_base: float = 0.5
    redaction_penalty: float = 0.8
    follow_ups: bool = True  # insights and recommendations after the answer


@dataclass
class IngestionConfig:
    """Document Processor policy"""
    quality_threshold: float = 0.4
    window_tokens: int = 500
    overlap_tokens: int = 50
    min_chunk_tokens: int = 50
    concurrency: int = 4
    enrich: bool = True  # per-document summary and keywords
    keyword_count: int = 10


@dataclass
class RetrievalConfig:
    """Retrieval Engine policy (weights are tunable, not load-tested optima)"""
    topk: int = 10
    over_fetch_factor: int = 3
    similarity_weight: float = 0.7
    recency_weight: float = 0.2
    quality_weight: float = 0.1
    recency_half_life_days: float = 90.0


@dataclass
class PrivacyConfig:
    summary_length: int = 100
    audit_log_path: str = str(AUDIT_LOG_PATH)


@dataclass
class CorrelationConfig:
    threshold: float = 0.75
    use_llm_stance: bool = False
    max_cached_pairs: int = 1024


@dataclass
class StoreConfig:
    database_url: str = DEFAULT_DATABASE_URL
    vector_metric: str = "cosine"


@dataclass
class ForumConfig:
    """Discourse forum used as a pull-only document source"""
    base_url: str = ""
    api_key: str = ""
    api_username: str = "system"
    page_size: int = 30
    requests_per_minute: int = 60
    default_privacy_level: str = "minimal"


@dataclass
class ArchivistConfig:
    """Main Archivist configuration"""
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    forum: ForumConfig = field(default_factory=ForumConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_providers(items: list, fallback: List[ProviderConfig]) -> List[ProviderConfig]:
    """Parse an ordered provider list; entries may be strings or dicts"""
    if not items:
        return fallback
    providers = []
    for item in items:
        if isinstance(item, str):
            providers.append(ProviderConfig(provider=item))
        elif isinstance(item, dict) and item.get("provider"):
            providers.append(ProviderConfig(
                provider=item["provider"],
                model=item.get("model", ""),
                api_key=item.get("api_key", ""),
            ))
    return providers or fallback


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = data.get("embedding", {})
    defaults = EmbeddingConfig()
    return EmbeddingConfig(
        providers=_parse_providers(embedding_data.get("providers", []), defaults.providers),
        batch_size=embedding_data.get("batch_size", 16),
        max_attempts=embedding_data.get("max_attempts", 3),
        backoff_base=embedding_data.get("backoff_base", 0.5),
        backoff_factor=embedding_data.get("backoff_factor", 2.0),
        timeout=embedding_data.get("timeout", 30.0),
    )


def _parse_generation_config(data: dict) -> GenerationConfig:
    """Parse generation section from config dict"""
    generation_data = data.get("generation", {})
    defaults = GenerationConfig()
    return GenerationConfig(
        providers=_parse_providers(generation_data.get("providers", []), defaults.providers),
        context_token_budget=generation_data.get("context_token_budget", 4000),
        max_tokens=generation_data.get("max_tokens", 1024),
        timeout=generation_data.get("timeout", 30.0),
        retry_attempts=generation_data.get("retry_attempts", 2),
        backoff_base=generation_data.get("backoff_base", 0.5),
        redaction_penalty=generation_data.get("redaction_penalty", 0.8),
        follow_ups=generation_data.get("follow_ups", True),
    )


def _parse_ingestion_config(data: dict) -> IngestionConfig:
    ingestion_data = data.get("ingestion", {})
    return IngestionConfig(
        quality_threshold=ingestion_data.get("quality_threshold", 0.4),
        window_tokens=ingestion_data.get("window_tokens", 500),
        overlap_tokens=ingestion_data.get("overlap_tokens", 50),
        min_chunk_tokens=ingestion_data.get("min_chunk_tokens", 50),
        concurrency=ingestion_data.get("concurrency", 4),
        enrich=ingestion_data.get("enrich", True),
        keyword_count=ingestion_data.get("keyword_count", 10),
    )


def _parse_retrieval_config(data: dict) -> RetrievalConfig:
    retrieval_data = data.get("retrieval", {})
    return RetrievalConfig(
        topk=retrieval_data.get("topk", 10),
        over_fetch_factor=retrieval_data.get("over_fetch_factor", 3),
        similarity_weight=retrieval_data.get("similarity_weight", 0.7),
        recency_weight=retrieval_data.get("recency_weight", 0.2),
        quality_weight=retrieval_data.get("quality_weight", 0.1),
        recency_half_life_days=retrieval_data.get("recency_half_life_days", 90.0),
    )


def _parse_privacy_config(data: dict) -> PrivacyConfig:
    privacy_data = data.get("privacy", {})
    return PrivacyConfig(
        summary_length=privacy_data.get("summary_length", 100),
        audit_log_path=privacy_data.get("audit_log_path", str(AUDIT_LOG_PATH)),
    )


def _parse_correlation_config(data: dict) -> CorrelationConfig:
    correlation_data = data.get("correlation", {})
    return CorrelationConfig(
        threshold=correlation_data.get("threshold", 0.75),
        use_llm_stance=correlation_data.get("use_llm_stance", False),
        max_cached_pairs=correlation_data.get("max_cached_pairs", 1024),
    )


def _parse_store_config(data: dict) -> StoreConfig:
    store_data = data.get("store", {})
    return StoreConfig(
        database_url=store_data.get("database_url", DEFAULT_DATABASE_URL),
        vector_metric=store_data.get("vector_metric", "cosine"),
    )


def _parse_forum_config(data: dict) -> ForumConfig:
    forum_data = data.get("forum", {})
    return ForumConfig(
        base_url=forum_data.get("base_url", ""),
        api_key=forum_data.get("api_key", ""),
        api_username=forum_data.get("api_username", "system"),
        page_size=forum_data.get("page_size", 30),
        requests_per_minute=forum_data.get("requests_per_minute", 60),
        default_privacy_level=forum_data.get("default_privacy_level", "minimal"),
    )


def validate_config(config: ArchivistConfig) -> None:
    """Reject policy values that would break invariants downstream."""
    ingestion = config.ingestion
    if ingestion.overlap_tokens >= ingestion.window_tokens:
        raise ValueError("ingestion.overlap_tokens must be smaller than window_tokens")
    if not 0.0 <= ingestion.quality_threshold <= 1.0:
        raise ValueError("ingestion.quality_threshold must be within [0, 1]")

    retrieval = config.retrieval
    weights = (retrieval.similarity_weight, retrieval.recency_weight, retrieval.quality_weight)
    if any(w < 0 for w in weights) or sum(weights) <= 0:
        raise ValueError("retrieval weights must be non-negative and not all zero")
    if retrieval.over_fetch_factor < 1:
        raise ValueError("retrieval.over_fetch_factor must be >= 1")

    if not 0.0 <= config.correlation.threshold <= 1.0:
        raise ValueError("correlation.threshold must be within [0, 1]")
    if not config.generation.providers:
        raise ValueError("generation.providers must list at least one provider")


def load_config() -> ArchivistConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.archivist/config.json)
    3. Default values
    """
    config = ArchivistConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.embedding = _parse_embedding_config(data)
            config.generation = _parse_generation_config(data)
            config.ingestion = _parse_ingestion_config(data)
            config.retrieval = _parse_retrieval_config(data)
            config.privacy = _parse_privacy_config(data)
            config.correlation = _parse_correlation_config(data)
            config.store = _parse_store_config(data)
            config.forum = _parse_forum_config(data)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    # Provider order overrides: comma separated, e.g. "openai,anthropic"
    if os.getenv("ARCHIVIST_LLM_PROVIDERS"):
        names = [p.strip() for p in os.getenv("ARCHIVIST_LLM_PROVIDERS").split(",") if p.strip()]
        existing = {p.provider: p for p in config.generation.providers}
        config.generation.providers = [existing.get(n, ProviderConfig(provider=n)) for n in names]
    if os.getenv("ARCHIVIST_EMBEDDING_PROVIDERS"):
        names = [p.strip() for p in os.getenv("ARCHIVIST_EMBEDDING_PROVIDERS").split(",") if p.strip()]
        existing = {p.provider: p for p in config.embedding.providers}
        config.embedding.providers = [existing.get(n, ProviderConfig(provider=n)) for n in names]

    if os.getenv("ARCHIVIST_DATABASE_URL"):
        config.store.database_url = os.getenv("ARCHIVIST_DATABASE_URL")
    if os.getenv("ARCHIVIST_QUALITY_THRESHOLD"):
        config.ingestion.quality_threshold = float(os.getenv("ARCHIVIST_QUALITY_THRESHOLD"))
    if os.getenv("ARCHIVIST_CORRELATION_THRESHOLD"):
        config.correlation.threshold = float(os.getenv("ARCHIVIST_CORRELATION_THRESHOLD"))
    if os.getenv("DISCOURSE_URL"):
        config.forum.base_url = os.getenv("DISCOURSE_URL")
    if os.getenv("DISCOURSE_API_USERNAME"):
        config.forum.api_username = os.getenv("DISCOURSE_API_USERNAME")

    # API keys from the environment (tracked so save_config never persists them)
    _env_key_map = {
        "ANTHROPIC_API_KEY": "anthropic",
        "OPENAI_API_KEY": "openai",
        "GOOGLE_API_KEY": "google",
        "GEMINI_API_KEY": "google",
    }
    for env_var, provider in _env_key_map.items():
        val = os.getenv(env_var)
        if not val:
            continue
        for entry in config.generation.providers + config.embedding.providers:
            if entry.provider == provider:
                entry.api_key = val
                config._env_sourced_keys.add(provider)

    if os.getenv("DISCOURSE_API_KEY"):
        config.forum.api_key = os.getenv("DISCOURSE_API_KEY")
        config._env_sourced_keys.add("discourse")

    return config


def _provider_section(providers: List[ProviderConfig], env_sourced: set) -> list:
    return [
        {
            "provider": p.provider,
            "model": p.model,
            "api_key": "" if p.provider in env_sourced else p.api_key,
        }
        for p in providers
    ]


def save_config(config: ArchivistConfig) -> None:
    """Save configuration to file.

    API keys that were sourced from environment variables are written as empty
    strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    data = {
        "embedding": {
            "providers": _provider_section(config.embedding.providers, env_sourced),
            "batch_size": config.embedding.batch_size,
            "max_attempts": config.embedding.max_attempts,
            "backoff_base": config.embedding.backoff_base,
            "backoff_factor": config.embedding.backoff_factor,
            "timeout": config.embedding.timeout,
        },
        "generation": {
            "providers": _provider_section(config.generation.providers, env_sourced),
            "context_token_budget": config.generation.context_token_budget,
            "max_tokens": config.generation.max_tokens,
            "timeout": config.generation.timeout,
            "retry_attempts": config.generation.retry_attempts,
            "backoff_base": config.generation.backoff_base,
            "redaction_penalty": config.generation.redaction_penalty,
            "follow_ups": config.generation.follow_ups,
        },
        "ingestion": {
            "quality_threshold": config.ingestion.quality_threshold,
            "window_tokens": config.ingestion.window_tokens,
            "overlap_tokens": config.ingestion.overlap_tokens,
            "min_chunk_tokens": config.ingestion.min_chunk_tokens,
            "concurrency": config.ingestion.concurrency,
            "enrich": config.ingestion.enrich,
            "keyword_count": config.ingestion.keyword_count,
        },
        "retrieval": {
            "topk": config.retrieval.topk,
            "over_fetch_factor": config.retrieval.over_fetch_factor,
            "similarity_weight": config.retrieval.similarity_weight,
            "recency_weight": config.retrieval.recency_weight,
            "quality_weight": config.retrieval.quality_weight,
            "recency_half_life_days": config.retrieval.recency_half_life_days,
        },
        "privacy": {
            "summary_length": config.privacy.summary_length,
            "audit_log_path": config.privacy.audit_log_path,
        },
        "correlation": {
            "threshold": config.correlation.threshold,
            "use_llm_stance": config.correlation.use_llm_stance,
            "max_cached_pairs": config.correlation.max_cached_pairs,
        },
        "store": {
            "database_url": config.store.database_url,
            "vector_metric": config.store.vector_metric,
        },
        "forum": {
            "base_url": config.forum.base_url,
            "api_key": "" if "discourse" in env_sourced else config.forum.api_key,
            "api_username": config.forum.api_username,
            "page_size": config.forum.page_size,
            "requests_per_minute": config.forum.requests_per_minute,
            "default_privacy_level": config.forum.default_privacy_level,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
