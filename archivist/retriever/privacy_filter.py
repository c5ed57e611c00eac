"""
Privacy Filter

Gates every retrieval candidate by privacy tier.

Decision rule (requester clearance R, chunk tier C):
- allow:  R >= C
- redact: C is exactly one tier above R and the chunk is partially shareable
- deny:   otherwise

Redacted text has PII replaced and is cut to a fixed-length summary, so
neither the content nor its length can be recovered.

Every decision goes to the "archivist.audit" logger. configure_audit_logging()
puts that logger behind a QueueHandler so audit writes never block retrieval.
"""

import json
import logging
import queue
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..common.schemas import Chunk, PrivacyDecision, PrivacyTier
from ..common.text import summarize_to_length
from ..ingestion.validator import redact_pii

logger = logging.getLogger("archivist.retriever.privacy_filter")
audit_logger = logging.getLogger("archivist.audit")

_audit_listener: Optional[QueueListener] = None
_audit_handler: Optional[QueueHandler] = None


class JsonLineFormatter(logging.Formatter):
    """One JSON object per audit record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = dict(getattr(record, "audit", {}) or {})
        payload.setdefault("message", record.getMessage())
        payload["ts"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        return json.dumps(payload, sort_keys=True)


def configure_audit_logging(
    path: Optional[Union[str, Path]] = None,
    handlers: Optional[List[logging.Handler]] = None,
) -> QueueListener:
    """
    Route audit records through a queue to a background listener.

    Args:
        path: Optional JSON-lines file for audit records
        handlers: Extra handlers fed by the listener

    Returns:
        The running QueueListener (stop it with shutdown_audit_logging)
    """
    global _audit_listener, _audit_handler
    shutdown_audit_logging()

    sinks: List[logging.Handler] = list(handlers or [])
    if path:
        audit_path = Path(path).expanduser()
        audit_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(audit_path, encoding="utf-8")
        file_handler.setFormatter(JsonLineFormatter())
        sinks.append(file_handler)

    records: queue.SimpleQueue = queue.SimpleQueue()
    _audit_handler = QueueHandler(records)
    _audit_listener = QueueListener(records, *sinks, respect_handler_level=True)
    audit_logger.addHandler(_audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    _audit_listener.start()
    logger.info("Privacy audit logging enabled (file=%s)", path or "none")
    return _audit_listener


def shutdown_audit_logging() -> None:
    """Flush pending audit records and detach the queue."""
    global _audit_listener, _audit_handler
    if _audit_listener is not None:
        _audit_listener.stop()
        for handler in _audit_listener.handlers:
            handler.close()
        _audit_listener = None
    if _audit_handler is not None:
        audit_logger.removeHandler(_audit_handler)
        _audit_handler = None
        audit_logger.propagate = True


@dataclass
class FilterOutcome:
    """Privacy decision for one chunk"""
    decision: PrivacyDecision
    sanitized_text: Optional[str] = None

    @property
    def visible(self) -> bool:
        return self.decision != PrivacyDecision.DENY


def decide(requester_tier: PrivacyTier, chunk_tier: PrivacyTier, partially_shareable: bool) -> PrivacyDecision:
    requester = PrivacyTier.parse(requester_tier)
    chunk = PrivacyTier.parse(chunk_tier)
    if requester.clears(chunk):
        return PrivacyDecision.ALLOW
    if partially_shareable and chunk.rank - requester.rank == 1:
        return PrivacyDecision.REDACT
    return PrivacyDecision.DENY


class PrivacyFilter:
    """
    Applies the tier rule and produces sanitized text for redactions.

    Keeps running counts of decisions for reporting.
    """

    def __init__(self, summary_length: int = 100):
        self.summary_length = summary_length
        self._counts: Dict[str, int] = {d.value: 0 for d in PrivacyDecision}

    @property
    def counts(self) -> Dict[str, int]:
        return dict(self._counts)

    def sanitize(self, text: str) -> str:
        """PII-free summary no longer than summary_length characters."""
        summary = summarize_to_length(redact_pii(text), self.summary_length)
        return redact_pii(summary)[:self.summary_length]

    def filter(self, chunk: Chunk, requester_tier: PrivacyTier) -> FilterOutcome:
        if not isinstance(chunk, Chunk):
            chunk = chunk.chunk
        decision = decide(requester_tier, chunk.privacy_level, chunk.partially_shareable)
        outcome = FilterOutcome(decision=decision)
        if decision == PrivacyDecision.REDACT:
            outcome.sanitized_text = self.sanitize(chunk.text)

        self._counts[decision.value] += 1
        audit_logger.info(
            "privacy decision %s for %s",
            decision.value, chunk.id,
            extra={"audit": {
                "requester_tier": PrivacyTier.parse(requester_tier).value,
                "chunk_id": chunk.id,
                "chunk_tier": chunk.privacy_level.value,
                "decision": decision.value,
            }},
        )
        return outcome
