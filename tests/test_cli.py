"""Tests for the asrgot CLI."""

from __future__ import annotations

import asyncio
import json

import pytest
from click.testing import CliRunner

from asrgot.cli import main as cli_main
from asrgot.cli.main import cli
from asrgot.config import Credentials
from asrgot.session import ResearchSession

from conftest import TOPIC, FakeCall


@pytest.fixture()
def runner():
    return CliRunner()


@pytest.fixture()
def sessions_dir(tmp_path):
    return tmp_path / "sessions"


@pytest.fixture()
def saved_session(sessions_dir, settings, credentials):
    """A session run through Evidence Integration and saved as 'reef'."""
    settings = settings.model_copy(update={"sessions_dir": sessions_dir})
    session = ResearchSession(FakeCall(), settings=settings, credentials=credentials, session_id="reef")

    async def advance():
        for index in range(4):
            result = await session.execute_stage(index, topic=TOPIC if index == 0 else None)
            assert result.ok

    asyncio.run(advance())
    session.save()
    return session


class TestInfoCommands:
    def test_assignments(self, runner):
        result = runner.invoke(cli, ["assignments"])
        assert result.exit_code == 0
        assert "4_1_evidence_harvest_web" in result.output
        assert "sonar-deep-research" in result.output
        assert "Estimated total: $" in result.output

    def test_sessions_empty(self, runner, sessions_dir):
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "sessions"])
        assert result.exit_code == 0
        assert "No saved sessions." in result.output

    def test_sessions_lists_saved(self, runner, sessions_dir, saved_session):
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "sessions"])
        assert result.exit_code == 0
        assert result.output.strip() == "reef"


class TestSessionCommands:
    def test_show(self, runner, sessions_dir, saved_session):
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "show", "reef"])
        assert result.exit_code == 0
        assert "Session reef: stage 3" in result.output
        assert "Nodes: 11" in result.output
        assert "hypothesis: 4" in result.output
        assert "Stage 4 (Evidence Integration): ok" in result.output

    def test_show_missing(self, runner, sessions_dir):
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "show", "nope"])
        assert result.exit_code == 1
        assert "No saved session 'nope'" in result.output

    def test_show_invalid_id(self, runner, sessions_dir):
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "show", "../etc"])
        assert result.exit_code == 1
        assert "Invalid session id" in result.output

    def test_audit(self, runner, sessions_dir, saved_session):
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "audit", "reef"])
        assert result.exit_code == 0
        assert "ERROR: Hypothesis '3.2.2' has no falsification criteria" in result.output
        assert "Competing in 2.1:" in result.output
        assert "Knowledge gaps:" in result.output

    def test_abstraction(self, runner, sessions_dir, saved_session):
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "abstraction", "reef"])
        assert result.exit_code == 0
        assert "Level 0 (microscopic): 11 nodes" in result.output
        assert "depth=" in result.output

    def test_abstraction_json(self, runner, sessions_dir, saved_session):
        result = runner.invoke(
            cli, ["--sessions-dir", str(sessions_dir), "abstraction", "reef", "--json", "--max-levels", "1"]
        )
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert len(data["levels"]) == 1
        assert data["metrics"]["depth"] == 1

    def test_stage_one_requires_topic(self, runner, sessions_dir):
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "stage", "fresh", "1"])
        assert result.exit_code == 1
        assert "ValidationError" in result.output


class TestRunCommand:
    def test_run_saves_session(self, runner, sessions_dir, monkeypatch):
        def fake_session(settings, include_report=False):
            return ResearchSession(
                FakeCall(),
                settings=settings,
                credentials=Credentials(gemini="g", perplexity="p"),
                session_id="cli-run",
                include_report=include_report,
            )

        monkeypatch.setattr(cli_main, "_new_session", fake_session)
        monkeypatch.setenv("ASRGOT_AUTO_ADVANCE_DELAY", "0")
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "run", TOPIC])
        assert result.exit_code == 0, result.output
        assert "Stage 1 (Initialization): ok" in result.output
        assert "Stage 9 (Final Analysis): ok" in result.output
        assert "Session cli-run saved to" in result.output
        assert (sessions_dir / "cli-run.json").exists()

    def test_run_reports_failure(self, runner, sessions_dir, monkeypatch):
        def fake_session(settings, include_report=False):
            return ResearchSession(
                FakeCall(),
                settings=settings,
                credentials=Credentials(gemini="g"),
                session_id="no-search",
            )

        monkeypatch.setattr(cli_main, "_new_session", fake_session)
        monkeypatch.setenv("ASRGOT_AUTO_ADVANCE_DELAY", "0")
        result = runner.invoke(cli, ["--sessions-dir", str(sessions_dir), "run", TOPIC, "--no-save"])
        assert result.exit_code == 0
        assert "Stage 4 (Evidence Integration): FAILED (CredentialError)" in result.output
        assert "PERPLEXITY_KEY_REQUIRED" in result.output
        assert not (sessions_dir / "no-search.json").exists()
