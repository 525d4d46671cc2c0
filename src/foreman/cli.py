from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from foreman.adapters import CommandQualityGate, GitWorktreeAdapter, WorktreeError
from foreman.artifacts import ArtifactPaths, ensure_repo_setup, resolve_artifact_paths
from foreman.cleanup import run_cleanup
from foreman.config import (
    CONFIG_FILE_NAME,
    RUNNER_NAMES,
    ConfigError,
    ForemanConfig,
    dumps_toml,
    find_config_path,
    load_config,
    save_config,
)
from foreman.exec import AsyncExec
from foreman.locks import ProcessKillRefusedError, RunLockError
from foreman.process_registry import ProcessRegistry, install_signal_handlers
from foreman.prompts import PromptUnavailableError, build_prompt_adapter
from foreman.runners import RunnerExecutionError, build_role_runners
from foreman.runs import (
    RunError,
    RunOutcome,
    RunServices,
    delete_run,
    list_runs,
    resolve_state_path,
    resume_run,
    start_run,
)
from foreman.state import StateError, load_state
from foreman.tickets import TicketError, TicketService, list_ticket_ids
from foreman.workflow.decision_cards import DecisionCardsError
from foreman.workflow.runtime import WorkflowError

logger = logging.getLogger("foreman")

T = TypeVar("T")

HANDLED_ERRORS = (
    ConfigError,
    DecisionCardsError,
    ProcessKillRefusedError,
    RunError,
    RunLockError,
    RunnerExecutionError,
    StateError,
    TicketError,
    WorkflowError,
    WorktreeError,
)


@dataclass(slots=True)
class CliRuntime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    paths: ArtifactPaths
    registry: ProcessRegistry
    services: RunServices


def _configure_logging(level: str, verbose: bool) -> None:
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=resolved, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("foreman").setLevel(resolved)


def _log_runner_event(event: dict[str, Any]) -> None:
    name = event.get("event", "runner_event")
    details = {key: value for key, value in event.items() if key != "event"}
    level = logging.INFO if name == "runner_retry_success" else logging.WARNING
    logger.log(level, "%s %s", name, json.dumps(details, ensure_ascii=False, default=str))


def _run_async(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except PromptUnavailableError as exc:
        raise click.ClickException(f"non-interactive, cannot proceed: {exc}") from exc
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc


def _resolve_repo_root(exec_port: AsyncExec) -> Path:
    cwd = Path.cwd().resolve()
    try:
        return asyncio.run(GitWorktreeAdapter(exec_port).get_main_repo_path(cwd))
    except WorktreeError:
        return cwd


def _resolve_config_path(repo_root: Path, config_value: str | None) -> Path:
    if config_value:
        config_path = Path(config_value)
        if not config_path.is_absolute():
            config_path = repo_root / config_path
        return config_path.resolve()
    return find_config_path(Path.cwd()) or repo_root / CONFIG_FILE_NAME


def _load_runtime(config_value: str | None, verbose: bool) -> CliRuntime:
    registry = ProcessRegistry()
    exec_port = AsyncExec(registry)
    repo_root = _resolve_repo_root(exec_port)
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    _configure_logging(config.logging.level, verbose)

    services = RunServices(
        config=config,
        exec=exec_port,
        prompt=build_prompt_adapter(config.prompt.mode),
        runners=build_role_runners(config.runners, exec_port, event_hook=_log_runner_event),
        worktree=GitWorktreeAdapter(exec_port),
        quality_gate=CommandQualityGate(exec_port),
        config_path=config_path if config_path.exists() else None,
    )
    return CliRuntime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        paths=resolve_artifact_paths(repo_root, config.paths.artifact_root),
        registry=registry,
        services=services,
    )


def _ticket_service(runtime: CliRuntime) -> TicketService:
    ensure_repo_setup(runtime.repo_root, runtime.config)
    return TicketService(
        runtime.services.runners.lead,
        runtime.paths.tickets_dir,
        runtime.paths.sessions_dir,
        runtime.repo_root,
    )


def _drive_run(runtime: CliRuntime, coro: Coroutine[Any, Any, RunOutcome]) -> None:
    restore = install_signal_handlers(runtime.registry)
    try:
        outcome = _run_async(coro)
    finally:
        restore()
    click.echo(f"Run: {outcome.run_id}")
    click.echo(f"State: {outcome.state_file_path}")
    click.echo(f"Stopped at phase: {outcome.stopped_at}")
    if outcome.stopped_at == "integration":
        click.echo("Integration needs manual attention; fix the worktree and resume the run.")


config_option = click.option("--config", "config_value", default=None, help="Path to foreman.toml.")


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Foreman: drive a ticket through plan, tasks, review and merge in a git worktree."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command("init")
@click.option("--runner", type=click.Choice(RUNNER_NAMES), default=None)
@config_option
@click.pass_context
def init_command(ctx: click.Context, runner: str | None, config_value: str | None) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    config = runtime.config
    if runner:
        config.runners.default = runner  # type: ignore[assignment]
    save_config(runtime.config_path, config)
    paths, worktrees_dir = ensure_repo_setup(runtime.repo_root, config)

    click.echo(f"Initialized foreman in {runtime.repo_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"Artifacts: {paths.root_dir}")
    click.echo(f"Worktrees: {worktrees_dir}")
    click.echo(f"Runner: {config.runners.default}")


@cli.group("ticket")
def ticket_group() -> None:
    """Create, ingest, amend and list tickets."""


@ticket_group.command("create")
@click.argument("text")
@config_option
@click.pass_context
def ticket_create_command(ctx: click.Context, text: str, config_value: str | None) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    ticket = _run_async(_ticket_service(runtime).create(text))
    click.echo(f"Created ticket {ticket.ticket_id}")
    click.echo(f"File: {ticket.file_path}")


@ticket_group.command("ingest")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@config_option
@click.pass_context
def ticket_ingest_command(ctx: click.Context, source: Path, config_value: str | None) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    ticket = _run_async(_ticket_service(runtime).ingest(source.resolve()))
    click.echo(f"Ingested ticket {ticket.ticket_id}")
    click.echo(f"File: {ticket.file_path}")


@ticket_group.command("amend")
@click.argument("ticket_id")
@click.argument("instructions")
@config_option
@click.pass_context
def ticket_amend_command(
    ctx: click.Context, ticket_id: str, instructions: str, config_value: str | None
) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    ticket = _run_async(_ticket_service(runtime).amend(ticket_id, instructions))
    click.echo(f"Amended ticket {ticket.ticket_id}")


@ticket_group.command("list")
@config_option
@click.pass_context
def ticket_list_command(ctx: click.Context, config_value: str | None) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    ids = list_ticket_ids(runtime.paths.tickets_dir)
    if not ids:
        click.echo("No tickets found.")
        return
    for ticket_id in ids:
        click.echo(ticket_id)


@cli.command("start")
@click.argument("ticket_id")
@config_option
@click.pass_context
def start_command(ctx: click.Context, ticket_id: str, config_value: str | None) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    _drive_run(runtime, start_run(runtime.services, runtime.repo_root, ticket_id))


@cli.command("resume")
@click.argument("run_ref")
@config_option
@click.pass_context
def resume_command(ctx: click.Context, run_ref: str, config_value: str | None) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    _drive_run(runtime, resume_run(runtime.services, runtime.paths.root_dir, run_ref))


@cli.command("runs")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
@click.pass_context
def runs_command(ctx: click.Context, as_json: bool, config_value: str | None) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    runs = list_runs(runtime.paths.root_dir)
    if as_json:
        payload = [
            {
                "run_id": run.state.run_id,
                "status": run.status,
                "phase": run.state.workflow.phase,
                "created_at": run.state.created_at,
                "pid": run.lock.pid if run.lock else None,
                "state_file": str(run.state_file_path),
            }
            for run in runs
        ]
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    if not runs:
        click.echo("No runs found.")
        return
    for run in runs:
        owner = f" pid={run.lock.pid}" if run.lock and run.status == "active" else ""
        click.echo(
            f"{run.state.run_id} {run.status:<8} {run.state.workflow.phase:<16}"
            f" {run.state.created_at}{owner}"
        )


@cli.command("delete")
@click.argument("run_ref")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@config_option
@click.pass_context
def delete_command(ctx: click.Context, run_ref: str, yes: bool, config_value: str | None) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    if not yes:
        click.confirm(
            f"Delete run {run_ref} (worktree, branch and run artifacts)?", abort=True
        )
    state = _run_async(delete_run(runtime.services, runtime.paths.root_dir, run_ref))
    click.echo(f"Deleted run {state.run_id}; ticket kept at {state.ticket.file_path}")


@cli.command("cleanup")
@click.argument("run_ref")
@click.option("--force", is_flag=True, default=False)
@click.option("--delete-branch", is_flag=True, default=False)
@click.option("--delete-artifacts", is_flag=True, default=False)
@config_option
@click.pass_context
def cleanup_command(
    ctx: click.Context,
    run_ref: str,
    force: bool,
    delete_branch: bool,
    delete_artifacts: bool,
    config_value: str | None,
) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    try:
        state = load_state(resolve_state_path(runtime.paths.root_dir, run_ref))
    except (RunError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc
    removed = _run_async(
        run_cleanup(
            state,
            runtime.config,
            runtime.services.prompt,
            runtime.services.worktree,
            runtime.services.exec,
            force=force,
            delete_branch=delete_branch,
            delete_artifacts=delete_artifacts,
        )
    )
    click.echo("Cleanup complete." if removed else "Cleanup cancelled.")


@cli.group("config")
def config_group() -> None:
    """Inspect configuration."""


@config_group.command("show")
@config_option
@click.pass_context
def config_show_command(ctx: click.Context, config_value: str | None) -> None:
    runtime = _load_runtime(config_value, ctx.obj["verbose"])
    click.echo(f"# {runtime.config_path}")
    click.echo(dumps_toml(runtime.config), nl=False)
