"""
Archivist MCP Server.

Transport: stdio (launched by an agent host).

Expected MCP Tool Return Format:
{
    "ok": bool,
    "results": Any,          # Present if ok is True
    "error": str            # Present if ok is False
}
"""

import argparse
import asyncio
import logging
import os
import signal
from typing import Annotated, Any, Dict, List, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field, ValidationError

from .common.config import ArchivistConfig, ForumConfig, ensure_directories, load_config, validate_config
from .common.embedding_service import EmbeddingService
from .common.errors import ArchivistError
from .common.llm_client import LLMClient
from .common.metadata_store import MetadataStore
from .common.schemas import Document, PrivacyTier, SourceType
from .common.vector_index import SessionIndexRouter
from .ingestion.enricher import DocumentEnricher
from .ingestion.forum_client import DiscourseClient, ForumError, ForumSync
from .ingestion.processor import DocumentProcessor
from .ingestion.reconciliation import ReconciliationQueue
from .retriever.correlator import KnowledgeCorrelator
from .retriever.pipeline import ResearchPipeline, ResearchRequest, ResponseStatus
from .retriever.privacy_filter import configure_audit_logging
from .retriever.searcher import RetrievalEngine
from .retriever.synthesizer import SynthesisEngine

logger = logging.getLogger("archivist.server")


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "request"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


class ArchivistServerApp:
    """
    Main application class for the MCP server.

    Privacy Model:
    - Every tool that returns archive text takes the requester's tier
    - Text above that tier is never returned, only redacted summaries where
      the chunk is partially shareable
    - Privacy decisions are written to the audit log
    """

    def __init__(
            self,
            pipeline: ResearchPipeline,
            processor: DocumentProcessor,
            retrieval: RetrievalEngine,
            correlator: KnowledgeCorrelator,
            store: MetadataStore,
            router: SessionIndexRouter,
            mcp_server_name: str = "archivist",
            forum_config: Optional[ForumConfig] = None,
        ) -> None:
        """
        Initializes the ArchivistServerApp with its engines.
        Args:
            pipeline (ResearchPipeline): Research entry point.
            processor (DocumentProcessor): Ingestion pipeline.
            retrieval (RetrievalEngine): Privacy-aware retrieval, used for correlation.
            correlator (KnowledgeCorrelator): Cross-session relationship discovery.
            store (MetadataStore): Relational document metadata.
            router (SessionIndexRouter): Per-session vector indexes.
            mcp_server_name (str): The name of the MCP server.
            forum_config (ForumConfig): Discourse settings for the sync_forum tool (optional).
        """
        self.pipeline = pipeline
        self.processor = processor
        self.retrieval = retrieval
        self.correlator = correlator
        self.store = store
        self.router = router
        self.forum_config = forum_config
        # mcp
        self.mcp = FastMCP(name=mcp_server_name)

        # ---------- MCP Tools: Research ---------- #
        @self.mcp.tool(
            name="research",
            description=(
                "Answer a research question from the governance archive. "
                "Only content the requester's privacy tier may read is used; "
                "partially shareable content one tier above is included as a redacted summary."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_research(
            query: Annotated[str, Field(description="The research question")],
            requester_tier: Annotated[str, Field(description="Requester clearance: minimal, selective, high or maximum")],
            session_id: Annotated[str, Field(description="Session to search (empty searches all known sessions)")] = "",
            mode: Annotated[str, Field(description="Synthesis mode: summary, detailed or analytical")] = "summary",
            filters: Annotated[Optional[Dict[str, Any]], Field(description="Optional filters: session_ids, tracks, tags, date_from, date_to, time_scope, document_id")] = None,
            top_k: Annotated[Optional[int], Field(description="Number of results to synthesize from (1-100)")] = None,
            cross_session: Annotated[bool, Field(description="Search every session and report cross-session correlations")] = False,
            include_correlations: Annotated[bool, Field(description="Attach correlations between result sessions")] = False,
        ) -> Dict[str, Any]:
            """
            MCP tool running one research request through the pipeline.

            Returns:
                Dict[str, Any]: {"ok": True, "results": response} for answered and
                no-accessible-results outcomes, {"ok": False, "error": ...} otherwise.
            """
            try:
                request = ResearchRequest(
                    query=query,
                    requester_tier=requester_tier,
                    session_id=session_id,
                    mode=mode,
                    filters=filters,
                    top_k=top_k,
                    cross_session=cross_session,
                    include_correlations=include_correlations,
                )
            except ValidationError as e:
                return {"ok": False, "error": _validation_message(e)}

            response = await self.pipeline.run(request)
            payload = response.model_dump(mode="json")
            if response.status == ResponseStatus.ERROR:
                return {"ok": False, "error": response.message, "error_code": response.error_code}
            return {"ok": True, "results": payload}

        # ---------- MCP Tools: Ingest Document ---------- #
        @self.mcp.tool(
            name="ingest_document",
            description=(
                "Validate, chunk, embed and index one document. "
                "Re-ingesting identical text in the same session is idempotent."
            ),
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False)
        )
        async def tool_ingest_document(
            text: Annotated[str, Field(description="Raw document text")],
            session_id: Annotated[str, Field(description="Research session the document belongs to")],
            privacy_level: Annotated[str, Field(description="Privacy tier of the content: minimal, selective, high or maximum")] = "selective",
            title: Annotated[str, Field(description="Document title")] = "",
            author: Annotated[str, Field(description="Author (stored hashed)")] = "",
            track: Annotated[str, Field(description="Research track or theme")] = "",
            tags: Annotated[Optional[List[str]], Field(description="Free-form tags")] = None,
            partially_shareable: Annotated[bool, Field(description="Allow redacted summaries for requesters one tier below")] = False,
            source_url: Annotated[Optional[str], Field(description="Where the document came from")] = None,
            document_id: Annotated[str, Field(description="Explicit document id (defaults to a content address)")] = "",
        ) -> Dict[str, Any]:
            """
            MCP tool ingesting one document.

            Returns:
                Dict[str, Any]: The processing result; ok is False for rejected,
                failed and partially indexed documents.
            """
            try:
                document = Document(
                    id=document_id,
                    raw_text=text,
                    session_id=session_id,
                    privacy_level=privacy_level,
                    title=title,
                    author=author,
                    track=track,
                    tags=tags or [],
                    partially_shareable=partially_shareable,
                    source_url=source_url,
                    source_type=SourceType.UPLOAD,
                )
            except ValidationError as e:
                return {"ok": False, "error": _validation_message(e)}

            result = await self.processor.process(document)
            payload = result.to_dict()
            if result.ok:
                return {"ok": True, "results": payload}
            error = payload.get("error", {})
            return {
                "ok": False,
                "error": error.get("message") or result.rejected_reason or result.status.value,
                "error_code": error.get("code"),
                "results": payload,
            }

        # ---------- MCP Tools: Delete Document ---------- #
        @self.mcp.tool(
            name="delete_document",
            description="Remove a document, its chunks and their vectors from the archive.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True)
        )
        async def tool_delete_document(
            document_id: Annotated[str, Field(description="Id of the document to delete")],
        ) -> Dict[str, Any]:
            if self.store.get_document(document_id) is None:
                return {"ok": False, "error": f"Document '{document_id}' not found"}
            removed = await self.processor.delete_document(document_id)
            return {"ok": True, "results": {"document_id": document_id, "chunks_removed": removed}}

        # ---------- MCP Tools: Correlate Sessions ---------- #
        @self.mcp.tool(
            name="correlate_sessions",
            description=(
                "Find thematic, supportive and contradictory relationships between "
                "passages of different research sessions relevant to a topic."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_correlate_sessions(
            topic: Annotated[str, Field(description="Topic used to select passages")],
            requester_tier: Annotated[str, Field(description="Requester clearance: minimal, selective, high or maximum")],
            session_ids: Annotated[Optional[List[str]], Field(description="Sessions to compare (default: all)")] = None,
            top_k: Annotated[Optional[int], Field(description="Passages retrieved across sessions")] = None,
        ) -> Dict[str, Any]:
            """
            MCP tool returning correlation edges among privacy-visible passages.

            Returns:
                Dict[str, Any]: {"ok": True, "results": {"edges": [...], "sessions": [...]}}
            """
            try:
                tier = PrivacyTier.parse(requester_tier)
                report = await self.retrieval.retrieve_with_stats(
                    topic,
                    tier,
                    filters={"session_ids": session_ids} if session_ids else None,
                    top_k=top_k,
                    cross_session=True,
                )
                edges = await self.correlator.correlate_sessions(report)
            except ArchivistError as e:
                return {"ok": False, "error": e.message, "error_code": e.code.value}
            except ValueError as e:
                return {"ok": False, "error": str(e)}

            return {
                "ok": True,
                "results": {
                    "edges": [edge.model_dump(mode="json") for edge in edges],
                    "sessions": sorted({r.origin_session for r in report.results}),
                    "denied_count": report.denied_count,
                },
            }

        # ---------- MCP Tools: Reconciliation Status ---------- #
        @self.mcp.tool(
            name="reconciliation_status",
            description=(
                "List partially indexed documents awaiting reconciliation; "
                "with reconcile=true, remove orphaned data and resolve them."
            ),
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True)
        )
        async def tool_reconciliation_status(
            reconcile: Annotated[bool, Field(description="Repair pending items instead of only listing them")] = False,
        ) -> Dict[str, Any]:
            queue = self.processor.reconciliation
            reconciled: List[str] = []
            if reconcile:
                reconciled = await asyncio.to_thread(queue.reconcile, self.router, self.store)
            return {
                "ok": True,
                "results": {
                    "stats": queue.get_stats(),
                    "pending": [
                        {
                            "document_id": item.document_id,
                            "session_id": item.session_id,
                            "written_side": item.written_side,
                            "chunk_count": len(item.chunk_ids),
                            "error": item.error,
                            "created_at": item.created_at,
                        }
                        for item in queue.pending()
                    ],
                    "reconciled": reconciled,
                    "documents_by_status": self.store.count_by_status(),
                },
            }

        # ---------- MCP Tools: Forum Sync ---------- #
        @self.mcp.tool(
            name="sync_forum",
            description="Pull recent posts from the configured Discourse forum into the archive.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False)
        )
        async def tool_sync_forum(
            category_id: Annotated[Optional[int], Field(description="Limit the sync to one forum category")] = None,
            max_pages: Annotated[int, Field(description="Topic list pages to read")] = 1,
            session_id: Annotated[str, Field(description="Session the forum documents are filed under")] = "forum",
        ) -> Dict[str, Any]:
            if self.forum_config is None or not self.forum_config.base_url:
                return {"ok": False, "error": "Forum sync is not configured (set forum.base_url or DISCOURSE_URL)"}
            try:
                async with DiscourseClient.from_config(self.forum_config) as client:
                    sync = ForumSync(
                        client,
                        self.processor,
                        session_id=session_id,
                        privacy_level=self.forum_config.default_privacy_level,
                    )
                    report = await sync.sync(category_id=category_id, max_pages=max_pages)
            except ForumError as e:
                return {"ok": False, "error": str(e)}
            return {"ok": True, "results": report.to_dict()}

    def run(self) -> None:
        """Runs the MCP server using stdio transport."""
        self.mcp.run(transport="stdio")


def build_application(
    config: ArchivistConfig,
    embedding_service: Optional[EmbeddingService] = None,
    synthesis: Optional[SynthesisEngine] = None,
    store: Optional[MetadataStore] = None,
    reconciliation: Optional[ReconciliationQueue] = None,
    mcp_server_name: str = "archivist",
    audit: bool = True,
) -> ArchivistServerApp:
    """
    Wire the engines from configuration.

    Components may be injected (tests pass fakes for providers and an
    in-memory store); everything else is built from `config`.
    """
    validate_config(config)

    embedding_service = embedding_service or EmbeddingService.from_config(config.embedding)
    synthesis = synthesis or SynthesisEngine.from_config(config.generation)
    store = store or MetadataStore(config.store.database_url)
    router = SessionIndexRouter(metric=config.store.vector_metric)

    stance_client = None
    if config.correlation.use_llm_stance:
        for entry in config.generation.providers:
            client = LLMClient.from_config(entry)
            if client.is_available:
                stance_client = client
                break
    correlator = KnowledgeCorrelator(
        threshold=config.correlation.threshold,
        stance_client=stance_client,
        stance_timeout=config.generation.timeout,
        max_cached_pairs=config.correlation.max_cached_pairs,
    )

    processor = DocumentProcessor.from_config(
        config.ingestion,
        embedding_service=embedding_service,
        router=router,
        store=store,
        reconciliation=reconciliation,
        on_chunks_changed=correlator.invalidate_chunks,
        enricher=DocumentEnricher(
            synthesis.clients,
            keyword_count=config.ingestion.keyword_count,
            timeout=config.generation.timeout,
        ),
    )
    retrieval = RetrievalEngine.from_config(config.retrieval, embedding_service, router, config.privacy)
    pipeline = ResearchPipeline(retrieval, synthesis, correlator=correlator, store=store)

    if audit:
        configure_audit_logging(config.privacy.audit_log_path or None)

    return ArchivistServerApp(
        pipeline=pipeline,
        processor=processor,
        retrieval=retrieval,
        correlator=correlator,
        store=store,
        router=router,
        mcp_server_name=mcp_server_name,
        forum_config=config.forum,
    )


def main() -> None:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Run the Archivist MCP server (stdio).")
    parser.add_argument(
        "--server-name",
        default=os.getenv("MCP_SERVER_NAME", "archivist"),
        help="Advertised MCP server name.",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL of the metadata store (overrides config).",
    )
    parser.add_argument(
        "--no-restore",
        action="store_true",
        help="Start with an empty vector index instead of re-embedding stored chunks.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("ARCHIVIST_LOG_LEVEL", "INFO"),
        help="Root log level.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    ensure_directories()
    config = load_config()
    if args.database_url:
        config.store.database_url = args.database_url

    app = build_application(config, mcp_server_name=args.server_name)

    if not args.no_restore:
        restored = asyncio.run(app.processor.restore_index())
        logger.info("Vector index restored with %d chunks", restored)

    def _handle_shutdown(signum, frame):
        raise SystemExit(0)
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is not None:
            signal.signal(sig, _handle_shutdown)

    app.run()


if __name__ == "__main__":
    main()
