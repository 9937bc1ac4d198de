"""ResearchSession: the primary interface for running an ASR-GoT analysis."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any

from asrgot.abstraction import AbstractionConfig, HierarchicalStructure, build_hierarchical_abstraction
from asrgot.analysis.competition import CompetitionResult, HypothesisCompetitionFramework
from asrgot.analysis.falsifiability import FalsifiabilityReport, FalsifiabilityValidator
from asrgot.analysis.gaps import KnowledgeGapDetector, KnowledgeGapReport
from asrgot.config import AsrGotSettings, Credentials
from asrgot.engine.graph import GraphStore
from asrgot.engine.persistence import load_session, persist_session
from asrgot.llm_client import ExternalCall, ModelClient
from asrgot.models import CostDashboard, GraphState, GraphStats, ResearchContext, StageModelAssignment
from asrgot.orchestrator import CostAwareOrchestrator
from asrgot.pipeline.engine import StagePipeline
from asrgot.pipeline.result import StageResult

logger = logging.getLogger(__name__)


class ResearchSession:
    """One research session: a graph, a pipeline and a cost ledger.

    Every session builds its own orchestrator, graph store and analyzers, so
    sessions can run side by side without sharing mutable state.

    Example:
        ```python
        session = ResearchSession()
        await session.execute_stage(0, topic="Effects of microplastics on coral reef biodiversity")
        await session.execute_stage(1)
        session.get_cost_dashboard().total_cost
        ```

    Args:
        call: External text-generation capability. Defaults to an httpx
            ``ModelClient`` bound to ``credentials``.
        settings: Session settings; read from the environment when omitted
        credentials: API keys; taken from ``settings`` when omitted
        session_id: Identifier used when saving; generated when omitted
        include_report: Run stage 9 (report integration) as the terminal stage
    """

    def __init__(
        self,
        call: ExternalCall | None = None,
        *,
        settings: AsrGotSettings | None = None,
        credentials: Credentials | None = None,
        session_id: str | None = None,
        include_report: bool = False,
    ) -> None:
        self.settings = settings or AsrGotSettings()
        self.credentials = credentials or Credentials.from_settings(self.settings)
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._client: ModelClient | None = None
        if call is None:
            self._client = ModelClient(self.credentials, timeout=self.settings.request_timeout)
            call = self._client
        self.orchestrator = CostAwareOrchestrator(
            call,
            credentials=self.credentials,
            timeout=self.settings.request_timeout,
            cache_ttl_minutes=self.settings.cache_ttl_minutes,
            cache_threshold_chars=self.settings.cache_threshold_chars,
        )
        self.pipeline = StagePipeline(
            GraphStore(),
            ResearchContext(),
            self.orchestrator,
            self.settings,
            self.credentials,
            include_report=include_report,
        )

    def __repr__(self) -> str:
        return (
            f"ResearchSession(session_id={self.session_id!r}, "
            f"stage={self.pipeline.current_stage}, nodes={len(self.store)})"
        )

    # ========== Pipeline ==========

    @property
    def store(self) -> GraphStore:
        """The committed session graph."""
        return self.pipeline.store

    @property
    def research(self) -> ResearchContext:
        return self.pipeline.research

    @property
    def stage_results(self) -> list[str | None]:
        return list(self.pipeline.stage_results)

    @property
    def current_stage(self) -> int:
        return self.pipeline.current_stage

    async def execute_stage(
        self, stage_index: int, topic: str | None = None, **options: Any
    ) -> StageResult:
        """Run one stage. See ``StagePipeline.execute_stage``.

        Raises:
            ValidationError: If the stage's preconditions are not met
        """
        return await self.pipeline.execute_stage(stage_index, topic=topic, **options)

    async def run(self, topic: str, *, auto: bool = True) -> list[StageResult]:
        """Run from stage 0 until the terminal stage or the first failure."""
        return await self.pipeline.run(topic, auto=auto)

    def cancel(self) -> None:
        self.pipeline.cancel()

    # ========== Graph ==========

    def graph(self) -> GraphState:
        """Snapshot of the committed graph."""
        return self.store.to_state()

    def stats(self) -> GraphStats:
        return GraphStats(**self.store.stats())

    # ========== Cost ==========

    def get_cost_dashboard(self) -> CostDashboard:
        return self.orchestrator.get_cost_dashboard()

    def get_stage_model_assignment(self, stage_id: str) -> StageModelAssignment:
        return self.orchestrator.get_stage_model_assignment(stage_id)

    # ========== Analysis ==========

    def build_hierarchical_abstraction(
        self, config: AbstractionConfig | None = None
    ) -> HierarchicalStructure:
        return build_hierarchical_abstraction(self.store, config)

    def rank_hypotheses(self) -> CompetitionResult:
        return HypothesisCompetitionFramework().analyze(self.store)

    def detect_knowledge_gaps(self, materialize: bool = False) -> KnowledgeGapReport:
        """Detect gaps; ``materialize=True`` adds gap nodes to the committed graph."""
        return KnowledgeGapDetector().analyze(self.store, materialize=materialize)

    def validate_falsifiability(self) -> FalsifiabilityReport:
        return FalsifiabilityValidator().validate(self.store)

    # ========== Persistence ==========

    def save(self, directory: str | Path | None = None) -> Path:
        """Write the session to ``directory`` (default: ``settings.sessions_dir``)."""
        return persist_session(
            self.session_id,
            self.graph(),
            self.pipeline.stage_results,
            directory or self.settings.sessions_dir,
            research=self.research,
            failed_stages=sorted(self.pipeline.failed),
        )

    @classmethod
    def load(
        cls,
        session_id: str,
        directory: str | Path | None = None,
        call: ExternalCall | None = None,
        *,
        settings: AsrGotSettings | None = None,
        credentials: Credentials | None = None,
        include_report: bool = False,
    ) -> ResearchSession:
        """Restore a saved session. The cost ledger starts empty."""
        settings = settings or AsrGotSettings()
        record = load_session(session_id, directory or settings.sessions_dir)
        session = cls(
            call,
            settings=settings,
            credentials=credentials,
            session_id=session_id,
            include_report=include_report,
        )
        pipeline = session.pipeline
        pipeline.store = GraphStore.from_state(record.graph)
        pipeline.research = record.research or ResearchContext()
        results = list(record.stage_results)[: len(pipeline.stage_results)]
        pipeline.stage_results[: len(results)] = results
        pipeline.failed = set(record.failed_stages)
        completed = [i for i, r in enumerate(pipeline.stage_results) if r and i not in pipeline.failed]
        pipeline.current_stage = min(
            (completed[-1] + 1) if completed else 0, pipeline.terminal_stage
        )
        if pipeline.failed:
            pipeline.current_stage = min(pipeline.current_stage, min(pipeline.failed))
        logger.info("Loaded session %s at stage %d", session_id, pipeline.current_stage)
        return session

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> ResearchSession:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
