"""ASR-GoT MCP server: exposes research sessions as tools for AI agents."""

from __future__ import annotations

import functools
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from asrgot.abstraction import AbstractionConfig
from asrgot.config import AsrGotSettings
from asrgot.engine.persistence import list_sessions as _list_saved, session_path
from asrgot.orchestrator import STAGE_MODEL_ASSIGNMENTS
from asrgot.pipeline.stages import STAGE_NAMES
from asrgot.session import ResearchSession

# All logging goes to stderr; stdout is reserved for JSON-RPC
logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger("asrgot.mcp")

# ---------------------------------------------------------------------------
# Session registry, safe for single-process stdio MCP
# ---------------------------------------------------------------------------

_SETTINGS: AsrGotSettings | None = None
_SESSIONS: dict[str, ResearchSession] = {}


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[dict]:
    global _SETTINGS
    _SETTINGS = AsrGotSettings()
    logging.getLogger("asrgot").setLevel(_SETTINGS.log_level.upper())
    logger.info("Sessions directory: %s", _SETTINGS.sessions_dir)
    try:
        yield {}
    finally:
        for session in list(_SESSIONS.values()):
            await session.aclose()
        _SESSIONS.clear()
        _SETTINGS = None


mcp = FastMCP(
    "ASR-GoT",
    instructions=(
        "ASR-GoT runs a staged scientific reasoning pipeline over a graph of thoughts. "
        "Start a session, then execute stages in order from 0 (Initialization, which needs "
        "a topic) to 8 (Final Analysis), or 9 when the report is enabled. "
        "A stage only runs after the previous one succeeded; a failed stage records its "
        "error and can be retried. Stages that harvest evidence need a Perplexity key."
    ),
    lifespan=app_lifespan,
)


def _get_settings() -> AsrGotSettings:
    if _SETTINGS is None:
        raise RuntimeError("ASR-GoT server is not initialized")
    return _SETTINGS


def _get_session(session_id: str) -> ResearchSession:
    session = _SESSIONS.get(session_id)
    if session is None:
        raise KeyError(f"Unknown session: {session_id!r}")
    return session


def _safe_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> dict:
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            logger.exception("Tool %s failed", fn.__name__)
            return {"error": True, "message": f"{type(exc).__name__}: {exc}"}
    return wrapper


def _safe_async_tool(fn: Callable[..., Awaitable[dict]]) -> Callable[..., Awaitable[dict]]:
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> dict:
        try:
            return await fn(*args, **kwargs)
        except Exception as exc:
            logger.exception("Tool %s failed", fn.__name__)
            return {"error": True, "message": f"{type(exc).__name__}: {exc}"}
    return wrapper


def _session_dict(session: ResearchSession) -> dict:
    return {
        "session_id": session.session_id,
        "current_stage": session.current_stage,
        "terminal_stage": session.pipeline.terminal_stage,
        "completed": session.pipeline.completed,
        "node_count": len(session.store),
        "failed_stages": sorted(session.pipeline.failed),
    }


# ===================================================================
# Session tools
# ===================================================================


@mcp.tool()
@_safe_tool
def start_session(session_id: str | None = None, include_report: bool = False) -> dict:
    """Create a new research session.

    Args:
        session_id: Optional identifier (letters, digits, '.', '_' or '-').
        include_report: Enable stage 9, the multi-section scientific report.
    """
    settings = _get_settings()
    if session_id is not None:
        session_path(session_id, settings.sessions_dir)
        if session_id in _SESSIONS:
            raise ValueError(f"Session already exists: {session_id!r}")
    session = ResearchSession(
        settings=settings, session_id=session_id, include_report=include_report
    )
    _SESSIONS[session.session_id] = session
    return _session_dict(session)


@mcp.tool()
@_safe_async_tool
async def execute_stage(
    session_id: str,
    stage_index: int,
    topic: str | None = None,
) -> dict:
    """Execute one stage of a session.

    Args:
        session_id: The session to advance.
        stage_index: 0-based stage index (0 = Initialization).
        topic: Research topic; required for stage 0.
    """
    session = _get_session(session_id)
    result = await session.execute_stage(stage_index, topic=topic)
    return {
        "stage": result.stage,
        "stage_name": STAGE_NAMES[result.stage],
        "ok": result.ok,
        "error_kind": result.error_kind,
        "text": result.text,
        "session": _session_dict(session),
    }


@mcp.tool()
@_safe_tool
def get_session(session_id: str) -> dict:
    """Get the status and stage results of a session.

    Args:
        session_id: The session to describe.
    """
    session = _get_session(session_id)
    return {**_session_dict(session), "stage_results": session.stage_results}


@mcp.tool()
@_safe_tool
def get_graph(session_id: str) -> dict:
    """Get the full graph (nodes, edges, hyperedges, metadata) of a session.

    Args:
        session_id: The session whose graph to return.
    """
    return _get_session(session_id).graph().model_dump(mode="json")


@mcp.tool()
@_safe_tool
def save_session(session_id: str) -> dict:
    """Save a session to the sessions directory.

    Args:
        session_id: The session to save.
    """
    path = _get_session(session_id).save()
    return {"session_id": session_id, "path": str(path)}


@mcp.tool()
@_safe_tool
def load_session(session_id: str, include_report: bool = False) -> dict:
    """Load a saved session into the server.

    Args:
        session_id: The saved session to load.
        include_report: Enable stage 9 for the loaded session.
    """
    session = ResearchSession.load(
        session_id, settings=_get_settings(), include_report=include_report
    )
    _SESSIONS[session_id] = session
    return _session_dict(session)


@mcp.tool()
@_safe_tool
def list_sessions() -> dict:
    """List active and saved sessions."""
    return {
        "active": sorted(_SESSIONS),
        "saved": _list_saved(_get_settings().sessions_dir),
    }


# ===================================================================
# Cost tools
# ===================================================================


@mcp.tool()
@_safe_tool
def get_cost_dashboard(session_id: str) -> dict:
    """Get the cumulative spend of a session, per stage.

    Args:
        session_id: The session whose costs to report.
    """
    return _get_session(session_id).get_cost_dashboard().model_dump(mode="json")


@mcp.tool()
@_safe_tool
def get_stage_model_assignment(stage_id: str) -> dict:
    """Get the model, capability and estimated price routed for a stage.

    Args:
        stage_id: Routing key, e.g. "4_1_evidence_harvest_web".
    """
    assignment = STAGE_MODEL_ASSIGNMENTS.get(stage_id)
    if assignment is None:
        raise KeyError(f"No model assignment for stage {stage_id!r}")
    return assignment.model_dump(mode="json")


# ===================================================================
# Analysis tools
# ===================================================================


@mcp.tool()
@_safe_tool
def build_hierarchical_abstraction(
    session_id: str,
    max_levels: int = 5,
    quality_threshold: float = 0.5,
) -> dict:
    """Build a multi-level abstraction of a session's graph.

    Args:
        session_id: The session whose graph to abstract.
        max_levels: Maximum number of levels, level 0 included.
        quality_threshold: Minimum cluster cohesion (0-1).
    """
    structure = _get_session(session_id).build_hierarchical_abstraction(
        AbstractionConfig(max_levels=max_levels, quality_threshold=quality_threshold)
    )
    return structure.model_dump(mode="json")


@mcp.tool()
@_safe_tool
def analyze_session(session_id: str) -> dict:
    """Run hypothesis competition, knowledge-gap and falsifiability analysis.

    Read-only: gap nodes are not added to the graph.

    Args:
        session_id: The session to analyze.
    """
    session = _get_session(session_id)
    return {
        "competition": session.rank_hypotheses().model_dump(mode="json"),
        "knowledge_gaps": session.detect_knowledge_gaps().model_dump(mode="json"),
        "falsifiability": session.validate_falsifiability().model_dump(mode="json"),
    }


# ===================================================================
# Resources
# ===================================================================


@mcp.resource("asrgot://stages")
def stages_resource() -> str:
    """The pipeline stages in execution order."""
    lines = ["# ASR-GoT Stages\n"]
    for index, name in enumerate(STAGE_NAMES):
        suffix = " (optional report stage)" if index == 9 else ""
        lines.append(f"{index}. {name}{suffix}")
    return "\n".join(lines)


# ===================================================================
# Entry point
# ===================================================================


def run_server() -> None:
    """Run the ASR-GoT MCP server over stdio."""
    mcp.run(transport="stdio")
