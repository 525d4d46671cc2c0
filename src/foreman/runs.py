from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from foreman.adapters.quality import QualityGate
from foreman.adapters.worktree import WorktreeAdapter, run_hook_commands
from foreman.artifacts import ensure_repo_setup
from foreman.cleanup import run_cleanup
from foreman.config import ForemanConfig
from foreman.exec import AsyncExec
from foreman.locks import (
    RunLock,
    RunLockError,
    acquire_run_lock,
    is_process_alive,
    kill_process,
    read_run_lock,
    release_run_lock,
)
from foreman.prompts import PromptAdapter
from foreman.runners import RoleRunners
from foreman.state import (
    RunState,
    StateError,
    StateStore,
    TicketInfo,
    WorkflowState,
    WorktreeInfo,
    load_state,
)
from foreman.tickets import extract_slug_from_ticket_id, ticket_file_path
from foreman.workflow.orchestrator import run_workflow
from foreman.workflow.runtime import WorkflowRuntime

logger = logging.getLogger(__name__)

TICKET_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})-")

RunStatus = Literal["inactive", "active", "stale"]


class RunError(RuntimeError):
    """Raised when a run cannot be started, resumed or deleted."""


def is_run_id_safe(run_id: str) -> bool:
    if not run_id or "/" in run_id or "\\" in run_id:
        return False
    if ".." in run_id:
        return False
    return not run_id.endswith(".json")


def _require_safe(run_id: str) -> None:
    if not is_run_id_safe(run_id):
        raise RunError(f"Invalid run id: {run_id}")


def state_file_path_for(artifact_root_dir: Path, run_id: str) -> Path:
    _require_safe(run_id)
    return artifact_root_dir / "states" / f"run-{run_id}.json"


def lock_file_path_for(artifact_root_dir: Path, run_id: str) -> Path:
    _require_safe(run_id)
    return artifact_root_dir / "locks" / f"run-{run_id}.json"


def run_dir_for(artifact_root_dir: Path, run_id: str) -> Path:
    _require_safe(run_id)
    return artifact_root_dir / "runs" / run_id


def extract_date_from_ticket_id(ticket_id: str) -> str:
    match = TICKET_DATE_PREFIX.match(ticket_id)
    if match is None:
        raise RunError(f"Ticket id must start with YYYY-MM-DD-: {ticket_id}")
    return match.group(1)


def branch_name_for(prefix: str, ticket_id: str) -> str:
    date = extract_date_from_ticket_id(ticket_id)
    slug = extract_slug_from_ticket_id(ticket_id) or ticket_id
    return f"{prefix}-{date}-{slug}"


def build_initial_run_state(
    *,
    main_repo_path: Path,
    artifact_root_dir: Path,
    ticket_id: str,
    ticket_file_path: Path,
    worktree_path: Path,
    branch_name: str,
    base_branch: str,
    config_path: Path | None = None,
    created_at: datetime | None = None,
    env: dict[str, str] | None = None,
    test_env: dict[str, str] | None = None,
) -> RunState:
    run_id = ticket_id
    artifact_root_dir = artifact_root_dir.resolve()
    created = (created_at or datetime.now(UTC)).replace(microsecond=0)
    return RunState(
        run_id=run_id,
        created_at=created.isoformat(),
        main_repo_path=str(main_repo_path.resolve()),
        artifact_root_dir=str(artifact_root_dir),
        state_file_path=str(state_file_path_for(artifact_root_dir, run_id)),
        run_dir=str(run_dir_for(artifact_root_dir, run_id)),
        lock_file_path=str(lock_file_path_for(artifact_root_dir, run_id)),
        ticket=TicketInfo(
            date=extract_date_from_ticket_id(ticket_id),
            slug=extract_slug_from_ticket_id(ticket_id) or ticket_id,
            file_path=str(ticket_file_path.resolve()),
        ),
        worktree=WorktreeInfo(
            path=str(worktree_path.resolve()),
            branch_name=branch_name,
            base_branch=base_branch,
        ),
        workflow=WorkflowState(),
        config_path=str(config_path.resolve()) if config_path else None,
        env=dict(env or {}),
        test_env=dict(test_env or {}),
    )


@dataclass(slots=True)
class DiscoveredRun:
    state: RunState
    state_file_path: Path
    status: RunStatus
    lock: RunLock | None = None


def list_runs(
    artifact_root_dir: Path,
    *,
    is_alive: Callable[[int], bool] | None = None,
    clear_stale_locks: bool = True,
) -> list[DiscoveredRun]:
    """Every readable run state with its lock status, newest first."""
    alive = is_alive or is_process_alive
    states_dir = artifact_root_dir / "states"
    if not states_dir.is_dir():
        return []

    runs: list[DiscoveredRun] = []
    for path in sorted(states_dir.glob("*.json")):
        try:
            state = load_state(path)
        except StateError as exc:
            logger.debug("Skipping unreadable state %s: %s", path, exc)
            continue

        lock_path = Path(state.lock_file_path)
        lock = read_run_lock(lock_path)
        if lock is None:
            runs.append(DiscoveredRun(state=state, state_file_path=path, status="inactive"))
            continue
        if not alive(lock.pid):
            if clear_stale_locks:
                lock_path.unlink(missing_ok=True)
            runs.append(DiscoveredRun(state=state, state_file_path=path, status="stale", lock=lock))
            continue
        runs.append(DiscoveredRun(state=state, state_file_path=path, status="active", lock=lock))

    runs.sort(key=lambda item: item.state.created_at, reverse=True)
    return runs


def resolve_state_path(artifact_root_dir: Path, ref: str) -> Path:
    """Accept either a run id or a path to a state file."""
    candidate = Path(ref)
    if ref.endswith(".json") and candidate.is_file():
        return candidate.resolve()
    return state_file_path_for(artifact_root_dir, ref)


@dataclass(slots=True)
class RunServices:
    config: ForemanConfig
    exec: AsyncExec
    prompt: PromptAdapter
    runners: RoleRunners
    worktree: WorktreeAdapter
    quality_gate: QualityGate | None = None
    config_path: Path | None = None


@dataclass(slots=True)
class RunOutcome:
    run_id: str
    state_file_path: Path
    stopped_at: str


def build_runtime(services: RunServices, store: StateStore) -> WorkflowRuntime:
    return WorkflowRuntime(
        config=services.config,
        store=store,
        runners=services.runners,
        prompt=services.prompt,
        exec=services.exec,
        quality_gate=services.quality_gate,
    )


async def _drive(
    services: RunServices,
    store: StateStore,
    *,
    pid: int | None,
    is_alive: Callable[[int], bool],
) -> RunOutcome:
    state = store.state
    lock_path = Path(state.lock_file_path)
    acquire_run_lock(
        lock_path, state.run_id, str(store.path), pid=pid, is_alive=is_alive
    )
    try:
        stopped_at = await run_workflow(build_runtime(services, store))
    finally:
        release_run_lock(lock_path)
    logger.info("Run %s stopped at phase %s", state.run_id, stopped_at)
    return RunOutcome(run_id=state.run_id, state_file_path=store.path, stopped_at=stopped_at)


async def start_run(
    services: RunServices,
    main_repo_path: Path,
    ticket_id: str,
    *,
    pid: int | None = None,
    is_alive: Callable[[int], bool] = is_process_alive,
) -> RunOutcome:
    """Create the worktree and state for a ticket, then run the workflow from the top."""
    config = services.config
    _require_safe(ticket_id)
    paths, worktrees_dir = ensure_repo_setup(main_repo_path, config)

    ticket_path = ticket_file_path(paths.tickets_dir, ticket_id)
    if not ticket_path.is_file():
        raise RunError(f"Ticket not found: {ticket_path}")
    state_path = state_file_path_for(paths.root_dir, ticket_id)
    if state_path.exists():
        raise RunError(f"Run already exists for {ticket_id}; use resume instead.")

    branch_name = branch_name_for(config.worktree.branch_prefix, ticket_id)
    worktree_path = await services.worktree.create_worktree(
        main_repo_path, config.worktree.base_branch, branch_name, worktrees_dir
    )
    await run_hook_commands(
        services.exec, config.worktree.after_create, worktree_path, hook="after_create"
    )

    state = build_initial_run_state(
        main_repo_path=main_repo_path,
        artifact_root_dir=paths.root_dir,
        ticket_id=ticket_id,
        ticket_file_path=ticket_path,
        worktree_path=worktree_path,
        branch_name=branch_name,
        base_branch=config.worktree.base_branch,
        config_path=services.config_path,
    )
    store = StateStore.create(state_path, state)
    logger.info("Started run %s in %s", ticket_id, worktree_path)
    return await _drive(services, store, pid=pid, is_alive=is_alive)


async def resume_run(
    services: RunServices,
    artifact_root_dir: Path,
    ref: str,
    *,
    pid: int | None = None,
    is_alive: Callable[[int], bool] = is_process_alive,
) -> RunOutcome:
    """Continue a run from its persisted phase; a stale lock is cleared on the way."""
    state_path = resolve_state_path(artifact_root_dir, ref)
    store = StateStore.load(state_path)
    logger.info("Resuming run %s at phase %s", store.state.run_id, store.state.workflow.phase)
    return await _drive(services, store, pid=pid, is_alive=is_alive)


async def delete_run(
    services: RunServices,
    artifact_root_dir: Path,
    ref: str,
    *,
    is_alive: Callable[[int], bool] = is_process_alive,
    kill: Callable[[int], bool] = kill_process,
) -> RunState:
    """Stop the owner if any, then remove worktree, branch, run dir and state.

    The ticket file is left in place so the run can be started again.
    """
    state_path = resolve_state_path(artifact_root_dir, ref)
    state = load_state(state_path)
    lock_path = Path(state.lock_file_path)

    lock = read_run_lock(lock_path)
    if lock is not None and lock.pid != os.getpid() and is_alive(lock.pid):
        logger.info("Stopping run owner pid %s", lock.pid)
        if not kill(lock.pid):
            raise RunLockError(f"Run is active (pid {lock.pid}).", pid=lock.pid)
    release_run_lock(lock_path)

    await run_cleanup(
        state,
        services.config,
        services.prompt,
        services.worktree,
        services.exec,
        force=True,
        delete_branch=True,
        delete_artifacts=True,
    )
    state_path.unlink(missing_ok=True)
    logger.info("Deleted run %s", state.run_id)
    return state
