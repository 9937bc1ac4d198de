"""Fan-out and join of lettered sub-stages.

Sub-stages of one stage run as concurrent asyncio tasks. The stage waits for
every dispatched task, successful or not, and then merges the outputs in
sub-stage id order rather than completion order. Cancellation is checked
before each dispatch and again after the join. An in-flight call is never
interrupted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping

from asrgot.errors import StageCancelled
from asrgot.pipeline.result import SubstageOutcome

logger = logging.getLogger(__name__)

SubstageTask = Callable[[], Awaitable[str]]


async def run_substages(
    tasks: Mapping[str, SubstageTask],
    cancel_event: asyncio.Event | None = None,
) -> dict[str, SubstageOutcome]:
    """Run ``tasks`` concurrently and join them.

    Args:
        tasks: Sub-stage id -> zero-argument coroutine factory
        cancel_event: When set, no further tasks are dispatched and
            StageCancelled is raised once the dispatched ones finish

    Returns:
        Outcomes keyed by sub-stage id, in sorted id order

    Raises:
        StageCancelled: If cancellation was requested
    """
    dispatched: dict[str, asyncio.Future[str]] = {}
    cancelled = False
    for substage_id in sorted(tasks):
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            break
        logger.debug("Dispatching sub-stage %s", substage_id)
        dispatched[substage_id] = asyncio.ensure_future(tasks[substage_id]())

    results = await asyncio.gather(*dispatched.values(), return_exceptions=True)

    outcomes: dict[str, SubstageOutcome] = {}
    for substage_id, result in zip(dispatched, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            logger.warning("Sub-stage %s failed: %s", substage_id, result)
            outcomes[substage_id] = SubstageOutcome(substage_id, error=result)
        else:
            outcomes[substage_id] = SubstageOutcome(substage_id, text=result)

    if cancelled or (cancel_event is not None and cancel_event.is_set()):
        raise StageCancelled(f"Cancelled after sub-stages {sorted(dispatched)}")
    return outcomes


def first_error(outcomes: Mapping[str, SubstageOutcome]) -> BaseException | None:
    """The error of the lowest-id failed sub-stage, if any."""
    for substage_id in sorted(outcomes):
        if outcomes[substage_id].error is not None:
            return outcomes[substage_id].error
    return None


def merge_outputs(
    outcomes: Mapping[str, SubstageOutcome],
    titles: Mapping[str, str] | None = None,
) -> str:
    """Concatenate successful outputs in sub-stage id order."""
    titles = titles or {}
    sections = []
    for substage_id in sorted(outcomes):
        outcome = outcomes[substage_id]
        if not outcome.ok:
            continue
        title = titles.get(substage_id, substage_id)
        sections.append(f"### {title}\n\n{outcome.text.strip()}")
    return "\n\n".join(sections)
