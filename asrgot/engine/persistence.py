"""Session save/load.

A session is stored as one JSON document per session id:

    sessions_dir/
    |-- <session_id>.json   # {version, session_id, saved_at, graph,
                            #  stage_results, failed_stages, research}

The graph is the ``GraphState`` dump, so a save/load round trip preserves
node order, timestamps and the stage counter.

Security:
    Session ids are restricted to a safe character set, and every path is
    resolved and checked against the sessions directory.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from asrgot.models import GraphState, ResearchContext

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"

_SESSION_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class SessionRecord(BaseModel):
    version: str = MANIFEST_VERSION
    session_id: str
    saved_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    graph: GraphState
    stage_results: list[str | None] = Field(default_factory=list)
    failed_stages: list[int] = Field(default_factory=list)
    research: ResearchContext | None = None


def _validate_path(path: str | Path, base_dir: Path | None = None) -> Path:
    """Resolve ``path``, rejecting null bytes and escapes from ``base_dir``.

    Raises:
        ValueError: If the path is invalid or leaves ``base_dir``
    """
    if "\x00" in str(path):
        raise ValueError(f"Invalid path (contains null bytes): {str(path)!r}")

    resolved = Path(path).resolve()
    if base_dir is not None:
        try:
            resolved.relative_to(base_dir.resolve())
        except ValueError:
            raise ValueError(
                f"Path traversal detected: {path} is outside base directory {base_dir}"
            ) from None
    return resolved


def session_path(session_id: str, directory: str | Path) -> Path:
    """Validated file path for ``session_id`` inside ``directory``.

    Raises:
        ValueError: If the session id is unsafe or the path escapes the directory
    """
    if "\x00" in session_id or not _SESSION_ID.match(session_id):
        raise ValueError(f"Invalid session id: {session_id!r}")
    base = _validate_path(directory)
    return _validate_path(base / f"{session_id}.json", base)


def persist_session(
    session_id: str,
    state: GraphState,
    stage_results: list[str | None],
    directory: str | Path,
    research: ResearchContext | None = None,
    failed_stages: list[int] | None = None,
) -> Path:
    """Write the session to ``directory``.

    Returns:
        Path of the written file
    """
    path = session_path(session_id, directory)
    record = SessionRecord(
        session_id=session_id,
        graph=state,
        stage_results=list(stage_results),
        failed_stages=sorted(failed_stages or []),
        research=research,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(record.model_dump(mode="json"), f, indent=2, ensure_ascii=False)
    logger.info("Saved session %s to %s", session_id, path)
    return path


def load_session(session_id: str, directory: str | Path) -> SessionRecord:
    """Read a session written by ``persist_session``.

    Raises:
        ValueError: If the session id is unsafe or the file has an unknown version
        FileNotFoundError: If no such session exists
    """
    path = session_path(session_id, directory)
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    version = data.get("version")
    if version != MANIFEST_VERSION:
        raise ValueError(f"Unsupported session format version: {version!r}")
    return SessionRecord.model_validate(data)


def list_sessions(directory: str | Path) -> list[str]:
    """Ids of the sessions saved in ``directory``, sorted."""
    base = _validate_path(directory)
    if not base.is_dir():
        return []
    return sorted(p.stem for p in base.glob("*.json") if _SESSION_ID.match(p.stem))
