"""
Reconciliation Queue

Operator-visible record of documents whose vector and metadata writes
diverged and could not be rolled back (PartiallyIndexed).

The queue is persisted to ~/.archivist/reconciliation_queue.json.

Workflow:
1. The document processor adds an item when a rollback fails
2. An operator inspects pending items (MCP tool or CLI)
3. reconcile() removes orphaned vectors/metadata and resolves the item
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..common.config import RECONCILIATION_QUEUE_PATH
from ..common.metadata_store import MetadataStore
from ..common.schemas import DocumentStatus
from ..common.vector_index import SessionIndexRouter

logger = logging.getLogger("archivist.ingestion.reconciliation")

WRITTEN_VECTORS = "vectors"
WRITTEN_METADATA = "metadata"


@dataclass
class ReconciliationItem:
    """One partially indexed document"""
    document_id: str
    session_id: str
    chunk_ids: List[str]
    written_side: str  # which store still holds data: "vectors" or "metadata"
    error: str
    created_at: str
    status: str = "pending"  # pending, resolved
    resolved_at: Optional[str] = None
    notes: List[str] = field(default_factory=list)


class ReconciliationQueue:
    """
    Persistent queue of PartiallyIndexed documents.

    Items are never dropped silently; resolve() or reconcile() marks them
    resolved and clear_resolved() removes them.
    """

    def __init__(self, queue_path: Optional[Path] = None):
        """
        Initialize the queue.

        Args:
            queue_path: Path to queue file (default: ~/.archivist/reconciliation_queue.json)
        """
        self._queue_path = Path(queue_path) if queue_path else RECONCILIATION_QUEUE_PATH
        self._queue: List[ReconciliationItem] = []
        self._load_queue()

    def _load_queue(self) -> None:
        if not self._queue_path.exists():
            self._queue = []
            return

        try:
            with open(self._queue_path) as f:
                data = json.load(f)
            self._queue = [
                ReconciliationItem(
                    document_id=item["document_id"],
                    session_id=item["session_id"],
                    chunk_ids=list(item.get("chunk_ids", [])),
                    written_side=item["written_side"],
                    error=item.get("error", ""),
                    created_at=item["created_at"],
                    status=item.get("status", "pending"),
                    resolved_at=item.get("resolved_at"),
                    notes=list(item.get("notes", [])),
                )
                for item in data
            ]
        except (json.JSONDecodeError, IOError, KeyError) as e:
            logger.warning("Failed to load reconciliation queue %s: %s", self._queue_path, e)
            self._queue = []

    def _save_queue(self) -> None:
        self._queue_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._queue_path, "w") as f:
            json.dump([asdict(item) for item in self._queue], f, indent=2, default=str)

    def add(
        self,
        document_id: str,
        session_id: str,
        chunk_ids: List[str],
        written_side: str,
        error: str,
    ) -> ReconciliationItem:
        """Record a partially indexed document (logged at ERROR)."""
        item = ReconciliationItem(
            document_id=document_id,
            session_id=session_id,
            chunk_ids=list(chunk_ids),
            written_side=written_side,
            error=error,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self._queue.append(item)
        self._save_queue()
        logger.error(
            "Document %s partially indexed (%s written, %d chunks): %s",
            document_id, written_side, len(chunk_ids), error,
        )
        return item

    def pending(self) -> List[ReconciliationItem]:
        return [item for item in self._queue if item.status == "pending"]

    def get_item(self, document_id: str) -> Optional[ReconciliationItem]:
        for item in self._queue:
            if item.document_id == document_id and item.status == "pending":
                return item
        return None

    def resolve(self, document_id: str, note: Optional[str] = None) -> bool:
        item = self.get_item(document_id)
        if item is None:
            return False
        item.status = "resolved"
        item.resolved_at = datetime.now(timezone.utc).isoformat()
        if note:
            item.notes.append(note)
        self._save_queue()
        logger.info("Resolved reconciliation item for %s", document_id)
        return True

    def reconcile(self, router: SessionIndexRouter, store: MetadataStore) -> List[str]:
        """
        Remove orphaned data for every pending item and resolve it.

        Vectors without matching chunk rows are deleted from the index;
        metadata written without vectors is deleted from the store and the
        document is marked failed so it can be re-ingested.

        Returns:
            Ids of documents that were reconciled
        """
        reconciled: List[str] = []
        for item in list(self.pending()):
            try:
                if item.written_side == WRITTEN_VECTORS:
                    orphans = [
                        cid for cid in item.chunk_ids
                        if store.get_chunk(item.session_id, cid) is None
                    ]
                    removed = router.delete_many(item.session_id, orphans)
                    store.set_status(item.document_id, DocumentStatus.FAILED, item.error)
                    note = f"removed {removed} orphaned vectors"
                else:
                    removed_rows = store.delete_document(item.document_id)
                    router.delete_many(item.session_id, [
                        cid for _, cid in removed_rows
                        if store.get_chunk(item.session_id, cid) is None
                    ])
                    note = f"removed metadata for {len(removed_rows)} chunks"
            except Exception as e:
                logger.error("Reconciliation of %s failed: %s", item.document_id, e, exc_info=True)
                continue
            self.resolve(item.document_id, note)
            reconciled.append(item.document_id)
        return reconciled

    def clear_resolved(self) -> int:
        original_len = len(self._queue)
        self._queue = [item for item in self._queue if item.status == "pending"]
        self._save_queue()
        return original_len - len(self._queue)

    def get_stats(self) -> Dict[str, Any]:
        stats = {"total": len(self._queue), "pending": 0, "resolved": 0}
        for item in self._queue:
            if item.status in stats:
                stats[item.status] += 1
        return stats
