"""asrgot CLI: run and inspect ASR-GoT research sessions."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from asrgot.abstraction import AbstractionConfig
from asrgot.config import AsrGotSettings
from asrgot.engine.persistence import list_sessions
from asrgot.errors import AsrGotError
from asrgot.orchestrator import STAGE_MODEL_ASSIGNMENTS, estimated_total_cost
from asrgot.pipeline.result import StageResult
from asrgot.pipeline.stages import stage_label
from asrgot.session import ResearchSession


def _settings(ctx: click.Context) -> AsrGotSettings:
    overrides: dict[str, Any] = {}
    if ctx.obj.get("sessions_dir"):
        overrides["sessions_dir"] = Path(ctx.obj["sessions_dir"])
    return AsrGotSettings(**overrides)


def _new_session(settings: AsrGotSettings, include_report: bool = False) -> ResearchSession:
    return ResearchSession(settings=settings, include_report=include_report)


def _load_session(settings: AsrGotSettings, session_id: str) -> ResearchSession:
    try:
        return ResearchSession.load(session_id, settings=settings)
    except FileNotFoundError:
        raise click.ClickException(f"No saved session '{session_id}' in {settings.sessions_dir}")
    except ValueError as exc:
        raise click.ClickException(str(exc))


def _echo_result(result: StageResult) -> None:
    status = "ok" if result.ok else f"FAILED ({result.error_kind})"
    click.echo(f"{stage_label(result.stage)}: {status}")
    if not result.ok:
        click.echo(f"  {result.text}")


@click.group()
@click.option("--sessions-dir", default=None, help="Directory for saved sessions.")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity (logs go to stderr).",
)
@click.pass_context
def cli(ctx: click.Context, sessions_dir: str | None, log_level: str) -> None:
    """ASR-GoT: staged scientific reasoning over a graph of thoughts."""
    logging.basicConfig(level=log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["sessions_dir"] = sessions_dir


@cli.command()
@click.argument("topic")
@click.option("--report", is_flag=True, help="Also run stage 10 (report integration).")
@click.option("--no-save", is_flag=True, help="Do not save the session.")
@click.pass_context
def run(ctx: click.Context, topic: str, report: bool, no_save: bool) -> None:
    """Run the full pipeline on TOPIC."""
    settings = _settings(ctx)
    session = _new_session(settings, include_report=report)

    async def main() -> list[StageResult]:
        try:
            return await session.run(topic)
        finally:
            await session.aclose()

    try:
        results = asyncio.run(main())
    except AsrGotError as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}")
    for result in results:
        _echo_result(result)
    if not no_save:
        path = session.save()
        click.echo(f"Session {session.session_id} saved to {path}")
    click.echo(f"Total cost: ${session.get_cost_dashboard().total_cost:.4f}")
    if results and results[-1].ok and results[-1].stage == session.pipeline.terminal_stage:
        click.echo("")
        click.echo(results[-1].text)


@cli.command()
@click.argument("session_id")
@click.argument("index", type=int)
@click.option("--topic", default=None, help="Research topic (stage 1 only).")
@click.pass_context
def stage(ctx: click.Context, session_id: str, index: int, topic: str | None) -> None:
    """Run stage INDEX (1-based) of a saved session, or start one with index 1."""
    settings = _settings(ctx)
    if index == 1:
        session = ResearchSession(settings=settings, session_id=session_id)
    else:
        session = _load_session(settings, session_id)

    async def main() -> StageResult:
        try:
            return await session.execute_stage(index - 1, topic=topic)
        finally:
            await session.aclose()

    try:
        result = asyncio.run(main())
    except AsrGotError as exc:
        raise click.ClickException(f"{type(exc).__name__}: {exc}")
    session.save()
    _echo_result(result)
    if result.ok:
        click.echo(result.text)


@cli.command()
@click.argument("session_id")
@click.pass_context
def show(ctx: click.Context, session_id: str) -> None:
    """Show graph statistics and stage status of a saved session."""
    session = _load_session(_settings(ctx), session_id)
    s = session.stats()
    click.echo(f"Session {session_id}: stage {s.stage}")
    click.echo(f"Nodes: {s.node_count}  Edges: {s.edge_count}  Hyperedges: {s.hyperedge_count}")
    if s.nodes_by_type:
        click.echo("Nodes by type:")
        for t, c in s.nodes_by_type.items():
            click.echo(f"  {t}: {c}")
    for i, text in enumerate(session.stage_results):
        if text is None:
            continue
        status = "FAILED" if i in session.pipeline.failed else "ok"
        click.echo(f"{stage_label(i)}: {status}")


@cli.command()
@click.pass_context
def sessions(ctx: click.Context) -> None:
    """List saved sessions."""
    settings = _settings(ctx)
    ids = list_sessions(settings.sessions_dir)
    if not ids:
        click.echo("No saved sessions.")
        return
    for session_id in ids:
        click.echo(session_id)


@cli.command()
def assignments() -> None:
    """Show the stage-to-model routing table."""
    for stage_id, a in STAGE_MODEL_ASSIGNMENTS.items():
        click.echo(f"  {stage_id:<34} {a.model:<22} {a.capability:<20} ${a.estimated_price:.3f}")
    click.echo(f"Estimated total: ${estimated_total_cost():.3f}")


@cli.command()
@click.argument("session_id")
@click.option("--max-levels", default=5, type=int, help="Maximum number of levels.")
@click.option("--threshold", default=0.5, type=float, help="Minimum cluster cohesion.")
@click.option("--json", "as_json", is_flag=True, help="Print the full structure as JSON.")
@click.pass_context
def abstraction(
    ctx: click.Context, session_id: str, max_levels: int, threshold: float, as_json: bool
) -> None:
    """Build the hierarchical abstraction of a saved session's graph."""
    session = _load_session(_settings(ctx), session_id)
    structure = session.build_hierarchical_abstraction(
        AbstractionConfig(max_levels=max_levels, quality_threshold=threshold)
    )
    if as_json:
        click.echo(json.dumps(structure.model_dump(mode="json"), indent=2))
        return
    for level in structure.levels:
        click.echo(f"Level {level.level} ({level.granularity}): {len(level.nodes)} nodes")
    m = structure.metrics
    click.echo(
        f"depth={m.depth} breadth={m.breadth} balance={m.balance:.2f} "
        f"coherence={m.coherence:.2f} coverage={m.coverage:.2f}"
    )


@cli.command()
@click.argument("session_id")
@click.pass_context
def audit(ctx: click.Context, session_id: str) -> None:
    """Run the falsifiability, competition and knowledge-gap analyzers."""
    session = _load_session(_settings(ctx), session_id)
    falsifiability = session.validate_falsifiability()
    if falsifiability.valid:
        click.echo(f"Falsifiability: all {falsifiability.checked} hypotheses have criteria.")
    else:
        click.echo("Falsifiability issues:")
        for issue in falsifiability.issues:
            click.echo(f"  ERROR: {issue}")
    for warning in falsifiability.warnings:
        click.echo(f"  WARNING: {warning}")

    competition = session.rank_hypotheses()
    for group in competition.groups:
        click.echo(f"Competing in {group.dimension}:")
        for score in group.ranking:
            click.echo(f"  {score.hypothesis_id}  score={score.score:.3f}  {score.label}")

    gaps = session.detect_knowledge_gaps()
    click.echo(f"Knowledge gaps: {len(gaps.gaps)}")
    for gap in gaps.gaps:
        click.echo(f"  {gap.node_id}  priority={gap.priority:.2f}  {', '.join(gap.kinds)}")


@cli.command()
@click.option("--sessions-dir", default=None, help="Overrides ASRGOT_SESSIONS_DIR.")
def mcp(sessions_dir: str | None) -> None:
    """Start the MCP server for AI agent integration."""
    import os

    if sessions_dir:
        os.environ["ASRGOT_SESSIONS_DIR"] = sessions_dir
    from asrgot.mcp.server import run_server

    run_server()


if __name__ == "__main__":
    cli()
