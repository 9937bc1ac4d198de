"""Per-stage execution context."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from asrgot.config import AsrGotSettings, Credentials
from asrgot.engine.graph import GraphStore
from asrgot.models import ResearchContext
from asrgot.orchestrator import CostAwareOrchestrator
from asrgot.pipeline.substages import SubstageTask, run_substages
from asrgot.pipeline.result import SubstageOutcome


@dataclass
class StageContext:
    """Everything a stage function may read or mutate.

    ``store`` and ``research`` are private working copies; the pipeline
    commits them only if the stage succeeds.

    Attributes:
        index: Stage index being executed
        store: Working copy of the session graph
        research: Working copy of the research context
        prior_results: Narrative results of stages ``0..index-1``
        orchestrator: Session orchestrator (external calls)
        settings: Session settings
        credentials: Credentials passed to every routed call
        cancel_event: Set when the caller cancels the stage
        topic: Topic argument (stage 0 only)
        options: Extra stage input (e.g. a caller-supplied root confidence)
    """

    index: int
    store: GraphStore
    research: ResearchContext
    prior_results: tuple[str, ...]
    orchestrator: CostAwareOrchestrator
    settings: AsrGotSettings
    credentials: Credentials
    cancel_event: asyncio.Event
    topic: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    async def route(self, stage_id: str, prompt: str, **params: Any) -> str:
        """Routed external call with the session credentials."""
        return await self.orchestrator.route_api_call(
            stage_id, prompt, credentials=self.credentials, params=params or None
        )

    async def fan_out(self, tasks: dict[str, SubstageTask]) -> dict[str, SubstageOutcome]:
        return await run_substages(tasks, self.cancel_event)
