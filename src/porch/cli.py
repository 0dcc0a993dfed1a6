from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import click

from porch.checks import CheckResult
from porch.config import LogLevelName, load_config
from porch.context import PorchContext
from porch.errors import PorchError
from porch.orchestrator import Orchestrator, status_payload
from porch.state import ProjectState

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class Runtime:
    workspace_root: Path
    config_path: Path
    context: PorchContext
    orchestrator: Orchestrator


def _resolve_config_path(workspace_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace_root / config_path
    return config_path.resolve()


def _configure_logging(level: LogLevelName) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_runtime(ctx: click.Context) -> Runtime:
    options = ctx.find_root().obj or {}
    workspace_root = Path(options.get("workspace") or Path.cwd()).resolve()
    config_path = _resolve_config_path(workspace_root, options.get("config") or "porch.toml")
    config = load_config(config_path)
    _configure_logging(options.get("log_level") or config.logging.level)
    context = PorchContext(workspace_root=workspace_root, config=config)
    return Runtime(
        workspace_root=workspace_root,
        config_path=config_path,
        context=context,
        orchestrator=Orchestrator(context),
    )


@contextmanager
def _porch_errors() -> Iterator[None]:
    try:
        yield
    except PorchError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _echo_checks(results: list[CheckResult]) -> None:
    for result in results:
        mark = "PASS" if result.passed else "FAIL"
        click.echo(f"  [{mark}] {result.name}: {result.command} ({result.duration_ms}ms)")
        if not result.passed:
            if result.error:
                click.echo(f"         {result.error}")
            if result.output:
                click.echo(result.output)


def _echo_state(state: ProjectState) -> None:
    click.echo(f"Project:   {state.id}-{state.title}")
    click.echo(f"Protocol:  {state.protocol}")
    click.echo(f"Phase:     {state.phase}")
    click.echo(f"Iteration: {state.iteration}")
    click.echo(f"Build:     {'complete' if state.build_complete else 'pending'}")
    if state.gates:
        click.echo("Gates:")
        for name, gate in state.gates.items():
            if gate.status == "approved":
                label = "approved"
            elif gate.is_waiting:
                label = "waiting for approval"
            else:
                label = "pending"
            click.echo(f"  {name}: {label}")
    if state.plan_phases:
        click.echo("Plan phases:")
        for phase in state.plan_phases:
            marker = ">" if phase.id == state.current_plan_phase else " "
            click.echo(f" {marker} {phase.id} {phase.title} [{phase.status}]")
    if state.awaiting_input:
        question = state.context.get("pending_question") or state.blocked_reason or ""
        click.echo(f"Awaiting input: {question}")


@click.group()
@click.option("--config", "config_value", default="porch.toml", show_default=True)
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default=None)
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Workspace root (defaults to the current directory).",
)
@click.pass_context
def cli(ctx: click.Context, config_value: str, log_level: str | None, workspace: Path | None) -> None:
    """Porch protocol orchestrator."""
    ctx.obj = {"config": config_value, "log_level": log_level, "workspace": workspace}


@cli.command("init")
@click.argument("protocol")
@click.argument("project_id")
@click.argument("title")
@click.pass_context
def init_command(ctx: click.Context, protocol: str, project_id: str, title: str) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        state, created = runtime.orchestrator.init(protocol, project_id, title)
    if created:
        click.echo(f"Project initialized: {state.id}-{state.title}")
    else:
        click.echo(f"Project {state.id}-{state.title} already exists.")
    click.echo(f"Protocol: {state.protocol}")
    click.echo(f"Phase: {state.phase}")
    click.echo(f"Run: porch next {state.id}")


@cli.command("status")
@click.argument("project_id", required=False)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_context
def status_command(ctx: click.Context, project_id: str | None, as_json: bool) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        if project_id is None:
            states = runtime.orchestrator.list_status()
            if as_json:
                _echo_json([status_payload(state) for state in states])
                return
            if not states:
                click.echo("No projects found.")
                return
            for state in states:
                click.echo(f"{state.id:<8} {state.phase:<12} iter {state.iteration}  {state.title}")
            return
        state = runtime.orchestrator.status(project_id)
    if as_json:
        _echo_json(status_payload(state))
        return
    _echo_state(state)


@cli.command("next")
@click.argument("project_id")
@click.pass_context
def next_command(ctx: click.Context, project_id: str) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        result = runtime.orchestrator.next(project_id)
    _echo_json(result.to_dict())
    if result.status == "error":
        ctx.exit(1)


@cli.command("check")
@click.argument("project_id")
@click.pass_context
def check_command(ctx: click.Context, project_id: str) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        results = runtime.orchestrator.check(project_id)
    if not results:
        click.echo("No checks defined for this phase.")
        return
    _echo_checks(results)
    if not all(result.passed for result in results):
        raise click.ClickException("Some checks failed.")
    click.echo("All checks passed.")


@cli.command("done")
@click.argument("project_id")
@click.pass_context
def done_command(ctx: click.Context, project_id: str) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        result = runtime.orchestrator.done(project_id)
    _echo_checks(result.checks)
    click.echo(result.message)


@cli.command("gate")
@click.argument("project_id")
@click.pass_context
def gate_command(ctx: click.Context, project_id: str) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        view = runtime.orchestrator.gate(project_id)
    if view.status == "approved":
        click.echo(f"Gate {view.gate} is already approved.")
        return
    click.echo(f"GATE: {view.gate}")
    if view.artifact is not None:
        click.echo(f"Artifact: {view.artifact}")
    if view.summary:
        click.echo(f"Reviewer verdicts: {view.summary}")
    click.echo("")
    click.echo("Human approval required. To approve:")
    click.echo(f"  porch approve {project_id} {view.gate} --a-human-explicitly-approved-this")


@cli.command("approve")
@click.argument("project_id")
@click.argument("gate")
@click.option(
    "--a-human-explicitly-approved-this",
    "human_approved",
    is_flag=True,
    default=False,
    help="Confirm that a human reviewed and approved this gate.",
)
@click.pass_context
def approve_command(ctx: click.Context, project_id: str, gate: str, human_approved: bool) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        changed = runtime.orchestrator.approve(project_id, gate, human_approved=human_approved)
    if changed:
        click.echo(f"Gate {gate} approved.")
        click.echo(f"Run: porch next {project_id}")
    else:
        click.echo(f"Gate {gate} is already approved.")


@cli.command("rollback")
@click.argument("project_id")
@click.argument("phase")
@click.pass_context
def rollback_command(ctx: click.Context, project_id: str, phase: str) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        state = runtime.orchestrator.rollback(project_id, phase)
    click.echo(f"Rolled back {state.id} to {state.phase}.")


@cli.command("run")
@click.argument("project_id")
@click.option("--max-steps", type=click.IntRange(min=1), default=None)
@click.pass_context
def run_command(ctx: click.Context, project_id: str, max_steps: int | None) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        loop = runtime.orchestrator.runner(project_id)
        try:
            summary = asyncio.run(loop.run(max_steps=max_steps))
        except KeyboardInterrupt:
            click.echo("Interrupted. State reflects the last completed step.", err=True)
            ctx.exit(130)
    _echo_json(summary.to_dict())


@cli.command("answer")
@click.argument("project_id")
@click.argument("text")
@click.pass_context
def answer_command(ctx: click.Context, project_id: str, text: str) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        state = runtime.orchestrator.answer(project_id, text)
    click.echo(f"Answer recorded for {state.id}. Run: porch next {state.id}")


@cli.command("pending")
@click.pass_context
def pending_command(ctx: click.Context) -> None:
    runtime = _load_runtime(ctx)
    with _porch_errors():
        gates = runtime.orchestrator.pending()
    if not gates:
        click.echo("No pending gates.")
        return
    for gate in gates:
        click.echo(f"{gate.project_id}-{gate.title}: {gate.gate} (requested {gate.requested_at})")
