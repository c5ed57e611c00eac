"""
Research Pipeline

Entry point for a research query. Each request walks an explicit state
machine:

    EMBEDDING -> SEARCHING -> FILTERING -> SYNTHESIZING -> DONE
                                                \\-> FAILED (from any state)

Exit conditions:
- EMBEDDING:    query vector ready (session lookup runs alongside)
- SEARCHING:    over-fetched candidate pool ranked
- FILTERING:    privacy applied; zero eligible results ends in DONE with
                status "no_accessible_results" instead of synthesizing
- SYNTHESIZING: answer composed, or SynthesisUnavailable -> FAILED
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator

from ..common.errors import ArchivistError, ErrorCode
from ..common.filters import parse_filters
from ..common.metadata_store import MetadataStore
from ..common.schemas import CorrelationEdge, PrivacyTier, SynthesisMode
from .correlator import KnowledgeCorrelator
from .searcher import RetrievalEngine, RetrievalResult
from .synthesizer import SynthesisEngine

logger = logging.getLogger("archivist.retriever.pipeline")


class PipelineState(str, Enum):
    EMBEDDING = "embedding"
    SEARCHING = "searching"
    FILTERING = "filtering"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    FAILED = "failed"


class ResponseStatus(str, Enum):
    OK = "ok"
    NO_ACCESSIBLE_RESULTS = "no_accessible_results"
    ERROR = "error"


class ResearchRequest(BaseModel):
    """Input of the research entry point"""
    query: str = Field(min_length=1)
    requester_tier: PrivacyTier
    session_id: str = ""
    filters: Optional[Dict[str, Any]] = None
    mode: SynthesisMode = SynthesisMode.SUMMARY
    top_k: Optional[int] = Field(default=None, ge=1, le=100)
    cross_session: bool = False
    include_correlations: bool = False

    @field_validator("requester_tier", mode="before")
    @classmethod
    def _parse_tier(cls, value: Any) -> PrivacyTier:
        return PrivacyTier.parse(value)

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value.strip()


class CitationModel(BaseModel):
    chunk_id: str
    snippet: str
    score: float
    origin_session: str = ""
    redacted: bool = False


class ResearchResponse(BaseModel):
    """Output of the research entry point"""
    status: ResponseStatus
    answer: str = ""
    citations: List[CitationModel] = Field(default_factory=list)
    confidence: float = 0.0
    mode: SynthesisMode = SynthesisMode.SUMMARY
    error_code: Optional[str] = None
    message: str = ""
    state_trace: List[PipelineState] = Field(default_factory=list)
    sessions_searched: List[str] = Field(default_factory=list)
    correlations: List[CorrelationEdge] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    provider: str = ""


class ResearchPipeline:
    """
    Runs research requests through retrieval, privacy filtering and synthesis.

    Requests are independent; nothing here is shared between concurrent runs
    except the engines themselves.
    """

    def __init__(
        self,
        retrieval: RetrievalEngine,
        synthesis: SynthesisEngine,
        correlator: Optional[KnowledgeCorrelator] = None,
        store: Optional[MetadataStore] = None,
    ):
        self._retrieval = retrieval
        self._synthesis = synthesis
        self._correlator = correlator
        self._store = store

    async def _known_sessions(self) -> Set[str]:
        sessions: Set[str] = set()
        if self._store is not None:
            sessions.update(await asyncio.to_thread(self._store.session_ids))
        return sessions

    async def run(self, request: ResearchRequest) -> ResearchResponse:
        """
        Execute one research request.

        Taxonomy errors become status "error" responses carrying the code;
        cancellation propagates to the caller.
        """
        trace: List[PipelineState] = []
        results: List[RetrievalResult] = []

        def enter(state: PipelineState) -> None:
            trace.append(state)
            logger.debug("research %r -> %s", request.query[:40], state.value)

        try:
            filters = parse_filters(request.filters)
            top_k = request.top_k or self._retrieval.top_k

            enter(PipelineState.EMBEDDING)
            embed_task = asyncio.ensure_future(self._retrieval.embed_query(request.query))
            sessions_task = asyncio.ensure_future(self._known_sessions())
            try:
                query_vector, known_sessions = await asyncio.gather(embed_task, sessions_task)
            except BaseException:
                embed_task.cancel()
                sessions_task.cancel()
                raise

            warnings: List[str] = []
            missing = [s for s in filters.session_ids if known_sessions and s not in known_sessions]
            if missing:
                warnings.append(f"Unknown session(s) ignored: {', '.join(missing)}")

            enter(PipelineState.SEARCHING)
            sessions = self._retrieval.target_sessions(request.session_id or None, filters, request.cross_session)
            candidates = self._retrieval.search_candidates(query_vector, filters, sessions, top_k)

            enter(PipelineState.FILTERING)
            results, denied = self._retrieval.apply_privacy(candidates, request.requester_tier, top_k)

            if not results:
                enter(PipelineState.DONE)
                code = ErrorCode.PRIVACY_DENIED.value if denied else None
                message = (
                    f"No accessible results: {denied} matching item(s) exceed your privacy tier"
                    if denied else "No relevant results found"
                )
                logger.info("Research finished without accessible results (denied=%d)", denied)
                return ResearchResponse(
                    status=ResponseStatus.NO_ACCESSIBLE_RESULTS,
                    mode=request.mode,
                    error_code=code,
                    message=message,
                    state_trace=trace,
                    sessions_searched=sessions,
                    warnings=warnings,
                )

            enter(PipelineState.SYNTHESIZING)
            answer = await self._synthesis.synthesize(request.query, results, request.mode)

            correlations: List[CorrelationEdge] = []
            if self._correlator is not None and (request.include_correlations or request.cross_session):
                correlations = await self._correlator.correlate_sessions(results)

            enter(PipelineState.DONE)
            return ResearchResponse(
                status=ResponseStatus.OK,
                answer=answer.text,
                citations=[CitationModel(**c.to_dict()) for c in answer.citations],
                confidence=answer.confidence,
                mode=answer.mode,
                state_trace=trace,
                sessions_searched=sessions,
                correlations=correlations,
                warnings=warnings + answer.warnings,
                insights=answer.insights,
                recommendations=answer.recommendations,
                provider=answer.provider,
            )

        except asyncio.CancelledError:
            trace.append(PipelineState.FAILED)
            logger.info("Research request cancelled during %s", trace[-2].value if len(trace) > 1 else "start")
            raise
        except ArchivistError as e:
            enter(PipelineState.FAILED)
            logger.warning("Research request failed: %s (%s)", e.code.value, e.message)
            return ResearchResponse(
                status=ResponseStatus.ERROR,
                mode=request.mode,
                error_code=e.code.value,
                message=e.message,
                state_trace=trace,
            )
        finally:
            results.clear()
