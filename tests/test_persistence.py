"""Tests for session save/load and path safety."""

from __future__ import annotations

import json

import pytest

from asrgot.config import Credentials
from asrgot.engine.graph import GraphStore
from asrgot.engine.persistence import (
    MANIFEST_VERSION,
    list_sessions,
    load_session,
    persist_session,
    session_path,
)
from asrgot.models import ResearchContext
from asrgot.session import ResearchSession

from conftest import TOPIC, FakeCall


class TestPersistence:
    def test_round_trip(self, small_graph, tmp_path):
        state = small_graph.to_state()
        research = ResearchContext(topic=TOPIC, field="Marine Ecology")
        path = persist_session(
            "reef-1", state, ["done", None], tmp_path, research=research, failed_stages=[1]
        )
        assert path == (tmp_path / "reef-1.json").resolve()

        record = load_session("reef-1", tmp_path)
        assert record.version == MANIFEST_VERSION
        assert record.graph == state
        assert record.stage_results == ["done", None]
        assert record.failed_stages == [1]
        assert record.research.field == "Marine Ecology"
        assert GraphStore.from_state(record.graph).to_state() == state

    def test_creates_directory(self, small_graph, tmp_path):
        target = tmp_path / "nested" / "sessions"
        persist_session("s", small_graph.to_state(), [], target)
        assert list_sessions(target) == ["s"]

    def test_missing_session(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_session("nope", tmp_path)

    def test_unknown_version(self, small_graph, tmp_path):
        path = persist_session("old", small_graph.to_state(), [], tmp_path)
        data = json.loads(path.read_text())
        data["version"] = "0.1"
        path.write_text(json.dumps(data))
        with pytest.raises(ValueError, match="Unsupported session format version"):
            load_session("old", tmp_path)

    @pytest.mark.parametrize("session_id", ["../escape", "a/b", "", ".hidden", "bad\x00id", "x" * 200])
    def test_unsafe_session_ids(self, session_id, tmp_path):
        with pytest.raises(ValueError, match="Invalid session id"):
            session_path(session_id, tmp_path)

    def test_null_byte_directory(self):
        with pytest.raises(ValueError, match="null bytes"):
            session_path("ok", "/tmp/bad\x00dir")

    def test_list_sessions(self, small_graph, tmp_path):
        for session_id in ("b", "a"):
            persist_session(session_id, small_graph.to_state(), [], tmp_path)
        (tmp_path / "notes.txt").write_text("ignored")
        assert list_sessions(tmp_path) == ["a", "b"]
        assert list_sessions(tmp_path / "missing") == []


class TestSessionPersistence:
    @pytest.mark.asyncio
    async def test_save_and_resume(self, session, settings, credentials):
        for index in range(3):
            await session.execute_stage(index, topic=TOPIC if index == 0 else None)
        path = session.save()
        assert path.parent == settings.sessions_dir.resolve()

        call = FakeCall()
        restored = ResearchSession.load("s1", call=call, settings=settings, credentials=credentials)
        assert restored.graph() == session.graph()
        assert restored.research == session.research
        assert restored.current_stage == 3
        assert restored.get_cost_dashboard().total_cost == 0.0

        result = await restored.execute_stage(3)
        assert result.ok
        assert call.stage_ids[0].startswith("4_")

    @pytest.mark.asyncio
    async def test_resume_after_failure(self, settings, credentials):
        session = ResearchSession(
            FakeCall(), settings=settings, credentials=Credentials(gemini="g"), session_id="partial"
        )
        for index in range(4):
            await session.execute_stage(index, topic=TOPIC if index == 0 else None)
        session.save()

        restored = ResearchSession.load("partial", call=FakeCall(), settings=settings, credentials=credentials)
        assert restored.pipeline.failed == {3}
        assert restored.current_stage == 3
        assert restored.stage_results[3].startswith("Error: CredentialError")
        assert (await restored.execute_stage(3)).ok
