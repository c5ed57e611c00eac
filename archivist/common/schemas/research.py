"""
Research Archive Schemas

Core principle: a Chunk is always reproducible from its Document's text, and
its id is derived from that text, so the same passage keeps one identity across
sessions and re-ingestion.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..text import generate_document_id


# ============================================================================
# Enums
# ============================================================================

class PrivacyTier(str, Enum):
    """Ordered clearance levels: minimal < selective < high < maximum"""
    MINIMAL = "minimal"
    SELECTIVE = "selective"
    HIGH = "high"
    MAXIMUM = "maximum"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def clears(self, other: "PrivacyTier") -> bool:
        """True if this clearance may read content at tier `other`."""
        return self.rank >= PrivacyTier(other).rank

    @classmethod
    def parse(cls, value: Any) -> "PrivacyTier":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown privacy tier {value!r}; expected one of "
                f"{', '.join(t.value for t in _TIER_ORDER)}"
            ) from None


_TIER_ORDER = [
    PrivacyTier.MINIMAL,
    PrivacyTier.SELECTIVE,
    PrivacyTier.HIGH,
    PrivacyTier.MAXIMUM,
]


class SourceType(str, Enum):
    """Where a document came from"""
    UPLOAD = "upload"
    FORUM_SYNC = "forum-sync"
    MANUAL = "manual"


class PrivacyDecision(str, Enum):
    ALLOW = "allow"
    REDACT = "redact"
    DENY = "deny"


class RelationType(str, Enum):
    THEMATIC = "thematic"
    CONTRADICTORY = "contradictory"
    SUPPORTIVE = "supportive"


class SynthesisMode(str, Enum):
    SUMMARY = "summary"
    DETAILED = "detailed"
    ANALYTICAL = "analytical"


class DocumentStatus(str, Enum):
    """Ingestion lifecycle of a document"""
    PENDING = "pending"
    INDEXED = "indexed"
    REJECTED = "rejected"
    FAILED = "failed"
    PARTIALLY_INDEXED = "partially_indexed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Models
# ============================================================================

class Document(BaseModel):
    """
    A raw research document.

    Immutable: validation produces a copy carrying the quality score, and a
    changed document is re-ingested rather than edited in place.
    """
    model_config = ConfigDict(frozen=True)

    id: str = ""
    source_type: SourceType = SourceType.MANUAL
    raw_text: str
    created_at: datetime = Field(default_factory=_utcnow)
    privacy_level: PrivacyTier = PrivacyTier.SELECTIVE
    quality_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    session_id: str

    title: str = ""
    author: str = ""
    track: str = ""
    tags: List[str] = Field(default_factory=list)
    partially_shareable: bool = False
    source_url: Optional[str] = None
    summary: str = ""
    keywords: List[str] = Field(default_factory=list)

    @field_validator("privacy_level", mode="before")
    @classmethod
    def _parse_tier(cls, value: Any) -> PrivacyTier:
        return PrivacyTier.parse(value)

    @field_validator("created_at")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id") and data.get("session_id"):
            data = dict(data)
            data["id"] = generate_document_id(data["session_id"], data.get("raw_text") or "")
        return data

    @property
    def is_validated(self) -> bool:
        return self.quality_score is not None

    def with_quality(self, score: float) -> "Document":
        return self.model_copy(update={"quality_score": round(float(score), 4)})


class Chunk(BaseModel):
    """A bounded span of a document plus its embedding"""
    id: str
    document_id: str
    text: str
    position: int = Field(ge=0)
    embedding: List[float] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    privacy_level: PrivacyTier = PrivacyTier.SELECTIVE
    session_id: str = ""
    partially_shareable: bool = False
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("privacy_level", mode="before")
    @classmethod
    def _parse_tier(cls, value: Any) -> PrivacyTier:
        return PrivacyTier.parse(value)

    def index_metadata(self) -> Dict[str, Any]:
        """Flat metadata stored beside the vector (filterable fields)."""
        data = dict(self.metadata)
        data.update({
            "chunk_id": self.id,
            "document_id": self.document_id,
            "position": self.position,
            "text": self.text,
            "privacy_level": self.privacy_level.value,
            "session_id": self.session_id,
            "partially_shareable": self.partially_shareable,
            "quality_score": self.quality_score,
            "created_at": self.created_at.isoformat(),
        })
        return data

    @classmethod
    def from_index(cls, chunk_id: str, vector: List[float], metadata: Dict[str, Any]) -> "Chunk":
        """Rebuild a chunk from a vector-index match."""
        reserved = {
            "chunk_id", "document_id", "position", "text", "privacy_level",
            "session_id", "partially_shareable", "quality_score", "created_at",
        }
        created = metadata.get("created_at")
        return cls(
            id=chunk_id,
            document_id=metadata.get("document_id", ""),
            text=metadata.get("text", ""),
            position=int(metadata.get("position", 0)),
            embedding=list(vector),
            metadata={k: v for k, v in metadata.items() if k not in reserved},
            privacy_level=metadata.get("privacy_level", PrivacyTier.MAXIMUM.value),
            session_id=metadata.get("session_id", ""),
            partially_shareable=bool(metadata.get("partially_shareable", False)),
            quality_score=float(metadata.get("quality_score", 0.0)),
            created_at=datetime.fromisoformat(created) if created else _utcnow(),
        )


class CorrelationEdge(BaseModel):
    """A discovered relationship between two chunks"""
    model_config = ConfigDict(frozen=True)

    source_chunk_id: str
    target_chunk_id: str
    relation_type: RelationType
    confidence: float = Field(ge=0.0, le=1.0)
    session_pair: Tuple[str, str] = ("", "")

    def swapped(self) -> "CorrelationEdge":
        return CorrelationEdge(
            source_chunk_id=self.target_chunk_id,
            target_chunk_id=self.source_chunk_id,
            relation_type=self.relation_type,
            confidence=self.confidence,
            session_pair=(self.session_pair[1], self.session_pair[0]),
        )
