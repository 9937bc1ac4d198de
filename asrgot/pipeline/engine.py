"""Sequential stage driver with copy-on-write commits."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from asrgot.config import AsrGotSettings, Credentials
from asrgot.engine.graph import GraphStore
from asrgot.errors import (
    AsrGotError,
    ExecutionError,
    RoutingError,
    StageCancelled,
    ValidationError,
)
from asrgot.models import ResearchContext
from asrgot.orchestrator import CostAwareOrchestrator
from asrgot.pipeline.context import StageContext
from asrgot.pipeline.result import StageResult, is_error_text
from asrgot.pipeline.stages import STAGES, stage_label

logger = logging.getLogger(__name__)

FINAL_ANALYSIS_STAGE = 8
REPORT_STAGE = 9


class StagePipeline:
    """Drives the stages of one research session.

    Stage ``i`` may run once stage ``i-1`` has a successful recorded result.
    A stage runs against deep copies of the graph and research context, and
    the copies replace the session state only when the stage succeeds. A
    failed stage therefore leaves the committed graph untouched and can be
    retried. A stage that has committed is never run again.

    Args:
        store: Session graph
        research: Session research context
        orchestrator: Session orchestrator
        settings: Session settings
        credentials: Credentials passed to every routed call
        include_report: Enable stage 9 (report integration)
    """

    def __init__(
        self,
        store: GraphStore,
        research: ResearchContext,
        orchestrator: CostAwareOrchestrator,
        settings: AsrGotSettings,
        credentials: Credentials,
        include_report: bool = False,
    ) -> None:
        self.store = store
        self.research = research
        self.orchestrator = orchestrator
        self.settings = settings
        self.credentials = credentials
        self.include_report = include_report
        self.stage_results: list[str | None] = [None] * len(STAGES)
        self.failed: set[int] = set()
        self.current_stage = 0
        self._cancel = asyncio.Event()

    @property
    def terminal_stage(self) -> int:
        return REPORT_STAGE if self.include_report else FINAL_ANALYSIS_STAGE

    @property
    def completed(self) -> bool:
        result = self.stage_results[self.terminal_stage]
        return result is not None and self.terminal_stage not in self.failed

    def cancel(self) -> None:
        """Request cooperative cancellation of the in-flight stage."""
        logger.info("Cancellation requested at stage %d", self.current_stage)
        self._cancel.set()

    # ========== Preconditions ==========

    def check_preconditions(self, index: int, topic: str | None = None) -> None:
        """Raise ValidationError if stage ``index`` may not run now."""
        if not 0 <= index <= self.terminal_stage:
            raise ValidationError(
                f"Stage index must be between 0 and {self.terminal_stage}, got: {index}"
            )
        # Committed stages are final; only failed or unattempted stages run
        recorded = self.stage_results[index]
        if recorded is not None and index not in self.failed and not is_error_text(recorded):
            raise ValidationError(
                f"{stage_label(index)} has already completed; start a new session to run it again"
            )
        if index == 0:
            if not isinstance(topic, str) or not topic.strip():
                raise ValidationError(
                    f"{stage_label(0)} requires a research topic as a non-empty string"
                )
        else:
            prior = self.stage_results[index - 1]
            if not prior or (index - 1) in self.failed or is_error_text(prior):
                raise ValidationError(
                    f"{stage_label(index)} requires a successful result from "
                    f"{stage_label(index - 1)}"
                )
        check = STAGES[index].check
        if check is not None:
            check(self.store)

    # ========== Execution ==========

    async def execute_stage(self, index: int, topic: str | None = None, **options: Any) -> StageResult:
        """Run one stage.

        Args:
            index: 0-based stage index
            topic: Research topic, required for stage 0
            **options: Extra stage input (``root_confidence`` for stage 0)

        Returns:
            StageResult; failures are recorded as error text at ``index``
            (except cancellation, which records nothing)

        Raises:
            ValidationError: If a precondition fails; the stage is not attempted
        """
        self.check_preconditions(index, topic)
        definition = STAGES[index]
        self._cancel.clear()

        store = self.store.copy()
        store.begin_stage(index)
        research = self.research.model_copy(deep=True)
        ctx = StageContext(
            index=index,
            store=store,
            research=research,
            prior_results=tuple(r or "" for r in self.stage_results[:index]),
            orchestrator=self.orchestrator,
            settings=self.settings,
            credentials=self.credentials,
            cancel_event=self._cancel,
            topic=topic,
            options=options,
        )
        logger.info("Starting %s", stage_label(index))

        try:
            text = await definition.run(ctx)
            if self._cancel.is_set():
                raise StageCancelled(f"{stage_label(index)} was cancelled")
        except StageCancelled as exc:
            logger.info("%s cancelled; nothing committed", stage_label(index))
            return StageResult.failure(index, exc)
        except AsrGotError as exc:
            logger.error("%s failed: %s: %s", stage_label(index), type(exc).__name__, exc)
            if isinstance(exc, RoutingError):
                exc = ExecutionError(f"RoutingError: {exc}")
            return self._record_failure(index, exc)
        except Exception as exc:
            logger.exception("%s failed unexpectedly", stage_label(index))
            return self._record_failure(index, ExecutionError(f"{type(exc).__name__}: {exc}"))

        self.store = ctx.store
        self.research = ctx.research
        self.stage_results[index] = text
        self.failed.discard(index)
        self.current_stage = min(index + 1, self.terminal_stage)
        logger.info(
            "%s complete (%d nodes, total cost $%.4f)",
            stage_label(index),
            len(self.store),
            self.orchestrator.get_cost_dashboard().total_cost,
        )
        return StageResult.success(index, text, definition.substages)

    def _record_failure(self, index: int, error: AsrGotError) -> StageResult:
        result = StageResult.failure(index, error)
        self.stage_results[index] = result.text
        self.failed.add(index)
        self.current_stage = index
        return result

    async def run(self, topic: str, start: int = 0, auto: bool = True) -> list[StageResult]:
        """Execute stages from ``start`` in order.

        In auto mode each next stage is scheduled ``auto_advance_delay``
        seconds after the previous one succeeds. Execution stops at the
        first failure, on cancellation or at the terminal stage.
        """
        results: list[StageResult] = []
        index = start
        while index <= self.terminal_stage:
            result = await self.execute_stage(index, topic=topic if index == 0 else None)
            results.append(result)
            if not result.ok or not auto or index == self.terminal_stage:
                break
            index += 1
            await asyncio.sleep(self.settings.auto_advance_delay)
            if self._cancel.is_set():
                logger.info("Auto-advance stopped before %s", stage_label(index))
                break
        return results
