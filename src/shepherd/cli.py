from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from shepherd.artifacts import FileArtifactStore
from shepherd.backends import (
    AgentBackend,
    ClaudeBackend,
    CodexBackend,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
)
from shepherd.config import BACKEND_NAMES, BackendName, ShepherdConfig, load_config, save_config
from shepherd.dispatcher import AgentDispatcher
from shepherd.driver import PipelineDriver, summarize
from shepherd.errors import ShepherdError
from shepherd.models import Command, PipelineRun, PipelineState, TriggerCondition, WorkRequest
from shepherd.state import GitCommitter, StateStore
from shepherd.workers import build_workers

DEFAULT_CONFIG = "shepherd.toml"

_BACKEND_COUNTERS = {
    "backend_retry": "backend_retry_count",
    "backend_fallback_success": "backend_fallback_count",
}


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ShepherdConfig
    state: StateStore
    artifacts: FileArtifactStore
    committer: GitCommitter
    driver: PipelineDriver


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _record_backend_event(state: StateStore, event: dict[str, Any]) -> None:
    state.record_event("backend_events", event)
    counter = _BACKEND_COUNTERS.get(str(event.get("event")))
    if counter is None:
        return

    def _increment(payload: Any) -> dict[str, Any]:
        metrics = payload if isinstance(payload, dict) else {}
        metrics[counter] = int(metrics.get(counter, 0)) + 1
        return metrics

    state.update_json("metrics", _increment, default={})


def _build_single_backend(
    backend_name: BackendName,
    repo_root: Path,
    *,
    model: str | None,
    event_hook: Callable[[dict[str, Any]], None],
) -> AgentBackend:
    if backend_name == "openai":
        return OpenAIBackend(model=model) if model else OpenAIBackend()
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root, model=model, event_hook=event_hook)
    return ClaudeBackend(working_directory=repo_root, model=model, event_hook=event_hook)


def _build_backend(config: ShepherdConfig, repo_root: Path, state: StateStore) -> ResilientBackend:
    def hook(event: dict[str, Any]) -> None:
        _record_backend_event(state, event)

    # The configured model name belongs to the primary backend's vendor.
    primary = _build_single_backend(
        config.backend.primary, repo_root, model=config.agents.model or None, event_hook=hook
    )
    fallback = _build_single_backend(config.backend.fallback, repo_root, model=None, event_hook=hook)
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=primary,
        fallback_name=config.backend.fallback,
        fallback_backend=fallback,
        retry_policy=policy,
        event_hook=hook,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except ShepherdError as exc:
        raise click.ClickException(str(exc)) from exc
    state = StateStore(_resolve_path(repo_root, config.state.state_dir))
    artifacts = FileArtifactStore(_resolve_path(repo_root, config.project.docs_dir))
    backend = _build_backend(config, repo_root, state)
    dispatcher = AgentDispatcher(
        build_workers(backend),
        artifacts,
        event_hook=lambda event: state.record_event("dispatch_events", event),
    )
    committer = GitCommitter(repo_root, state_store=state)
    driver = PipelineDriver(dispatcher, artifacts, committer, config=config, state=state)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        artifacts=artifacts,
        committer=committer,
        driver=driver,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_path(repo_root, config_value))


def _load_run(runtime: Runtime, run_id: str | None) -> PipelineRun:
    try:
        data = runtime.state.load_run(run_id)
    except ShepherdError as exc:
        raise click.ClickException(str(exc)) from exc
    if data is None:
        raise click.ClickException(
            f"Run not found: {run_id}" if run_id else "No active run. Start one with 'shepherd run'."
        )
    return PipelineRun.from_dict(data)


def _drive(action: Callable[[], Coroutine[Any, Any, PipelineRun]]) -> PipelineRun:
    try:
        return asyncio.run(action())
    except ShepherdError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_run(run: PipelineRun) -> None:
    click.echo(f"Run ID: {run.run_id}")
    click.echo(f"State: {run.state}")
    if run.state is PipelineState.AWAITING_APPROVAL and run.pending_stop is not None:
        stop = run.pending_stop
        click.echo(f"Stop point: {stop.id}")
        click.echo(f"  {stop.summary}")
        for detail in stop.details:
            click.echo(f"  - {detail}")
        click.echo("Continue with 'shepherd approve' or 'shepherd request-changes'.")
    elif run.state is PipelineState.ESCALATED and run.escalation is not None:
        escalation = run.escalation
        click.echo(f"Escalation: {escalation.kind} ({escalation.severity})")
        click.echo(f"  {escalation.context}")
        for option in escalation.suggested_options:
            click.echo(f"  - {option}")
        click.echo("Continue with 'shepherd resolve DECISION'.")
    elif run.state is PipelineState.BLOCKED and run.blocked is not None:
        click.echo(f"Blocked: {run.blocked.reason}")
        click.echo(f"  {run.blocked.question}")
        for option in run.blocked.suggested_options:
            click.echo(f"  - {option}")
        click.echo("Continue with 'shepherd resolve DECISION'.")
    elif run.state is PipelineState.COMPLETED:
        committed = sum(1 for unit in run.units if unit.commit_id)
        click.echo(f"Tasks: {committed}/{len(run.units)} committed")
        for commit in run.commits:
            click.echo(f"Commit: {commit['commit_id']} {commit['subject']}")


def _request_from_options(
    description: str,
    *,
    task_type: str,
    files: tuple[str, ...],
    triggers: tuple[str, ...],
    questions: tuple[str, ...],
    shared: tuple[str, ...],
) -> WorkRequest:
    return WorkRequest(
        description=description,
        task_type=task_type,
        affected_files=files or None,
        triggers=frozenset(TriggerCondition(item) for item in triggers),
        open_questions=questions,
        shared_decisions=shared,
    )


def _start(runtime: Runtime, command: Command, request: WorkRequest) -> None:
    async def action() -> PipelineRun:
        run = runtime.driver.start(command, request)
        return await runtime.driver.advance(run)

    _echo_run(_drive(action))


def _config_option(function: Callable[..., Any]) -> Callable[..., Any]:
    return click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)(
        function
    )


def _run_option(function: Callable[..., Any]) -> Callable[..., Any]:
    return click.option("--run", "run_id", default=None, help="Run id; defaults to the active run.")(
        function
    )


def _file_option(function: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--file", "-f", "files", multiple=True, help="Affected file (repeatable)."
    )(function)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log progress to stderr.")
def cli(verbose: bool) -> None:
    """Shepherd workflow CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_NAMES), default=None)
@_config_option
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ShepherdError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    state_dir = _resolve_path(repo_root, config.state.state_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    _resolve_path(repo_root, config.project.docs_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Shepherd in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"State: {state_dir}")


@cli.command("run")
@click.argument("description")
@_file_option
@click.option("--type", "task_type", default="feature", show_default=True)
@click.option(
    "--trigger",
    "triggers",
    multiple=True,
    type=click.Choice([item.value for item in TriggerCondition]),
)
@click.option("--question", "questions", multiple=True, help="Open scope question.")
@click.option("--shared", "shared", multiple=True, help="Shared decision topic (common ADR).")
@_config_option
def run_command(
    description: str,
    files: tuple[str, ...],
    task_type: str,
    triggers: tuple[str, ...],
    questions: tuple[str, ...],
    shared: tuple[str, ...],
    config_value: str,
) -> None:
    """Run the full pipeline for a work request."""
    runtime = _runtime(config_value)
    request = _request_from_options(
        description,
        task_type=task_type,
        files=files,
        triggers=triggers,
        questions=questions,
        shared=shared,
    )
    _start(runtime, Command.RUN, request)


@cli.command("task")
@click.argument("description")
@_file_option
@_config_option
def task_command(description: str, files: tuple[str, ...], config_value: str) -> None:
    """Implement one small task without producing documents."""
    runtime = _runtime(config_value)
    _start(runtime, Command.TASK, WorkRequest(description=description, affected_files=files or None))


@cli.command("diagnose")
@click.argument("description")
@_file_option
@_config_option
def diagnose_command(description: str, files: tuple[str, ...], config_value: str) -> None:
    """Investigate a problem, then implement the approved fix."""
    runtime = _runtime(config_value)
    request = WorkRequest(description=description, task_type="fix", affected_files=files or None)
    _start(runtime, Command.DIAGNOSE, request)


@cli.command("resync")
@_config_option
def resync_command(config_value: str) -> None:
    """Check every stored design document against the others."""
    runtime = _runtime(config_value)
    _start(runtime, Command.RESYNC, WorkRequest(description="Resynchronize design documents"))
    run = _load_run(runtime, None)
    for source, report in run.consistency.items():
        conflicts = report.get("conflicts", [])
        click.echo(f"{source}: {len(conflicts)} conflict(s)")
        for conflict in conflicts:
            click.echo(f"  - [{conflict['severity']}] {conflict['target']}: {conflict['description']}")


@cli.command("approve")
@click.option("--stop", "stop_id", default=None, help="Stop point id to approve.")
@_run_option
@_config_option
def approve_command(stop_id: str | None, run_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    run = _load_run(runtime, run_id)

    async def action() -> PipelineRun:
        return await runtime.driver.advance(runtime.driver.approve(run, stop_id))

    _echo_run(_drive(action))


@cli.command("request-changes")
@click.argument("feedback")
@click.option("--stop", "stop_id", default=None, help="Stop point id the feedback is for.")
@_run_option
@_config_option
def request_changes_command(
    feedback: str, stop_id: str | None, run_id: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    run = _load_run(runtime, run_id)

    async def action() -> PipelineRun:
        return await runtime.driver.advance(runtime.driver.request_changes(run, feedback, stop_id))

    _echo_run(_drive(action))


@cli.command("resolve")
@click.argument("decision")
@_run_option
@_config_option
def resolve_command(decision: str, run_id: str | None, config_value: str) -> None:
    """Answer an escalation or a blocked report and resume."""
    runtime = _runtime(config_value)
    run = _load_run(runtime, run_id)

    async def action() -> PipelineRun:
        return await runtime.driver.advance(runtime.driver.resolve(run, decision))

    _echo_run(_drive(action))


@cli.command("scope")
@click.argument("files", nargs=-1, required=True)
@_run_option
@_config_option
def scope_command(files: tuple[str, ...], run_id: str | None, config_value: str) -> None:
    """Answer a provisional classification with the affected files."""
    runtime = _runtime(config_value)
    run = _load_run(runtime, run_id)

    async def action() -> PipelineRun:
        return await runtime.driver.advance(runtime.driver.resolve_scope(run, files))

    _echo_run(_drive(action))


@cli.command("status")
@click.option("--all", "include_all", is_flag=True, default=False, help="List every run.")
@click.option("--metrics", "include_metrics", is_flag=True, default=False)
@_run_option
@_config_option
def status_command(
    include_all: bool, include_metrics: bool, run_id: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    try:
        if include_all:
            payload: dict[str, Any] = {
                "runs": [summarize(PipelineRun.from_dict(item)) for item in runtime.state.list_runs()]
            }
        else:
            data = runtime.state.load_run(run_id)
            payload = {"run": None if data is None else summarize(PipelineRun.from_dict(data))}
        if include_metrics:
            payload["metrics"] = runtime.state.get_metrics()
    except ShepherdError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(BACKEND_NAMES))
@_config_option
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ShepherdError as exc:
        raise click.ClickException(str(exc)) from exc
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
