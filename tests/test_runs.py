import asyncio
import json
import re
import subprocess
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import pytest

from foreman.adapters import GitWorktreeAdapter
from foreman.config import ForemanConfig
from foreman.exec import AsyncExec
from foreman.locks import RunLockError, acquire_run_lock, read_run_lock
from foreman.prompts import PromptAdapter
from foreman.runners import (
    AgentRunner,
    RoleRunners,
    RunnerExecutionError,
    RunnerRequest,
    RunnerResult,
)
from foreman.runs import (
    RunError,
    RunServices,
    branch_name_for,
    build_initial_run_state,
    delete_run,
    list_runs,
    resume_run,
    start_run,
)
from foreman.state import StateStore, load_state

TICKET_ID = "2026-02-01-add-caching"
PLAN_PATTERN = re.compile(r"Create the plan file at: (\S+)")
SPLIT_PATTERN = re.compile(r"Create detailed tasks in (\S+) following")
OUTPUT_PATTERN = re.compile(r"<OUTPUT>\n(.+?)\n</OUTPUT>")
OUTCOME_PATTERN = re.compile(r"Write a brief outcome summary to `([^`]+)`")
WRITES_OUTPUT = ("task-report", "code-review", "summarize-report", "summarize-review", "finalize")
CARDS = {
    "schemaVersion": 1,
    "openQuestions": [],
    "decisions": [
        {
            "id": "D1",
            "proposedChange": "Cache fetch results in memory",
            "why": "Repeated lookups are slow",
            "alternatives": "No cache",
            "assumptions": "Single process",
            "futureState": "Fetches are memoized",
        }
    ],
}


def _run(cmd: list[str], cwd: Path) -> str:
    result = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return result.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init", "-b", "main"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class FakePrompt(PromptAdapter):
    async def confirm(self, message: str, default: bool = True) -> bool:
        return True

    async def text(self, message: str, default: str = "") -> str:
        return ""

    async def select(self, message: str, choices: Sequence[str]) -> str:
        return choices[0]


class ScriptedRunner(AgentRunner):
    kind = "fake"

    def __init__(self) -> None:
        self.phases: list[str] = []

    async def execute(self, request: RunnerRequest) -> RunnerResult:
        self.phases.append(request.phase_name)
        phase = request.phase_name
        session_id = request.session_id or f"{request.role}-session"

        def _ok(text: str = "<OK>") -> RunnerResult:
            return RunnerResult(success=True, session_id=session_id, output_text=text)

        if phase == "ticket-ingestion":
            plan = Path(PLAN_PATTERN.search(request.prompt).group(1))
            plan.write_text("# Plan\n\nAdd an in-memory cache.\n", encoding="utf-8")
            return _ok()
        if phase == "decision-cards":
            return _ok(json.dumps(CARDS))
        if phase == "task-splitting":
            directory = Path(SPLIT_PATTERN.search(request.prompt).group(1))
            (directory / "task-1-add-cache.md").write_text("# Add cache\n", encoding="utf-8")
            return _ok()
        if phase == "task-execution":
            (request.cwd / "cache.py").write_text("CACHE = {}\n", encoding="utf-8")
            return _ok("Implemented.\n<OK>")
        if phase in WRITES_OUTPUT:
            path = Path(OUTPUT_PATTERN.search(request.prompt).group(1))
            body = f"# {phase}\n\nCache added in {request.cwd}/cache.py\n"
            path.write_text(body, encoding="utf-8")
            return _ok()
        if phase == "tech-lead-decision":
            outcome = Path(OUTCOME_PATTERN.search(request.prompt).group(1))
            outcome.write_text("Accepted.\n", encoding="utf-8")
            return _ok("<DECISION>acceptance</DECISION>")
        raise RunnerExecutionError(f"Unexpected phase: {phase}", retriable=False)


def _services(runner: AgentRunner) -> RunServices:
    exec_port = AsyncExec()
    return RunServices(
        config=ForemanConfig.default(),
        exec=exec_port,
        prompt=FakePrompt(),
        runners=RoleRunners.single(runner),
        worktree=GitWorktreeAdapter(exec_port),
    )


def _repo_with_ticket(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    tickets = repo / ".foreman" / "tickets"
    tickets.mkdir(parents=True)
    (tickets / f"{TICKET_ID}.md").write_text(
        "# Add caching\n\nMemoize fetches.\n", encoding="utf-8"
    )
    return repo


def _stored_state(root: Path, ticket_id: str, created_at: datetime):
    state = build_initial_run_state(
        main_repo_path=root.parent,
        artifact_root_dir=root,
        ticket_id=ticket_id,
        ticket_file_path=root / "tickets" / f"{ticket_id}.md",
        worktree_path=root.parent / ".worktrees" / ticket_id,
        branch_name=f"foreman-{ticket_id}",
        base_branch="main",
        created_at=created_at,
    )
    StateStore.create(Path(state.state_file_path), state)
    return state


def test_branch_name_for_ticket() -> None:
    assert branch_name_for("foreman", TICKET_ID) == "foreman-2026-02-01-add-caching"
    with pytest.raises(RunError, match="YYYY-MM-DD"):
        branch_name_for("foreman", "add-caching")


def test_start_run_drives_ticket_to_cleanup(tmp_path: Path) -> None:
    repo = _repo_with_ticket(tmp_path)
    runner = ScriptedRunner()

    outcome = asyncio.run(start_run(_services(runner), repo, TICKET_ID))

    assert outcome.run_id == TICKET_ID
    assert outcome.stopped_at == "cleanup"
    state = load_state(outcome.state_file_path)
    assert state.workflow.phase == "cleanup"
    assert read_run_lock(Path(state.lock_file_path)) is None

    run_directory = Path(state.run_dir)
    assert (run_directory / "plan.md").is_file()
    assert (run_directory / "decision-cards.json").is_file()
    assert (run_directory / "outcome-task-1-add-cache.md").is_file()
    final_report = (run_directory / "final-report.md").read_text(encoding="utf-8")
    assert state.worktree.path not in final_report
    assert "cache.py" in final_report

    worktree = Path(state.worktree.path)
    assert worktree == (repo / ".worktrees" / f"foreman-{TICKET_ID}").resolve()
    log = _run(["git", "log", "--format=%s"], cwd=worktree).splitlines()
    assert "Accept task task-1-add-cache.md" in log
    assert ".foreman/" in (repo / ".gitignore").read_text(encoding="utf-8")

    assert runner.phases[:3] == ["ticket-ingestion", "decision-cards", "task-splitting"]
    assert runner.phases[-1] == "finalize"


def test_start_run_requires_existing_ticket(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)

    with pytest.raises(RunError, match="Ticket not found"):
        asyncio.run(start_run(_services(ScriptedRunner()), repo, TICKET_ID))


def test_resume_refuses_active_lock(tmp_path: Path) -> None:
    root = tmp_path / ".foreman"
    state = _stored_state(root, TICKET_ID, datetime(2026, 2, 1, tzinfo=UTC))
    acquire_run_lock(Path(state.lock_file_path), state.run_id, state.state_file_path, pid=4242)

    with pytest.raises(RunLockError, match="Run is active"):
        asyncio.run(
            resume_run(_services(ScriptedRunner()), root, TICKET_ID, is_alive=lambda pid: True)
        )


def test_resume_clears_stale_lock_and_stops_at_cleanup(tmp_path: Path) -> None:
    root = tmp_path / ".foreman"
    state = _stored_state(root, TICKET_ID, datetime(2026, 2, 1, tzinfo=UTC))
    store = StateStore.load(Path(state.state_file_path))
    store.workflow.phase = "cleanup"
    store.save()
    acquire_run_lock(Path(state.lock_file_path), state.run_id, state.state_file_path, pid=4242)

    outcome = asyncio.run(
        resume_run(_services(ScriptedRunner()), root, TICKET_ID, is_alive=lambda pid: False)
    )

    assert outcome.stopped_at == "cleanup"
    assert read_run_lock(Path(state.lock_file_path)) is None


def test_list_runs_reports_lock_status(tmp_path: Path) -> None:
    root = tmp_path / ".foreman"
    inactive = _stored_state(root, "2026-01-01-first-run-here", datetime(2026, 1, 1, tzinfo=UTC))
    active = _stored_state(root, "2026-01-02-second-run-here", datetime(2026, 1, 2, tzinfo=UTC))
    stale = _stored_state(root, "2026-01-03-third-run-here", datetime(2026, 1, 3, tzinfo=UTC))
    acquire_run_lock(Path(active.lock_file_path), active.run_id, active.state_file_path, pid=111)
    acquire_run_lock(Path(stale.lock_file_path), stale.run_id, stale.state_file_path, pid=222)
    (root / "states" / "run-broken.json").write_text("{", encoding="utf-8")

    runs = list_runs(root, is_alive=lambda pid: pid == 111)

    assert [(run.state.run_id, run.status) for run in runs] == [
        (stale.run_id, "stale"),
        (active.run_id, "active"),
        (inactive.run_id, "inactive"),
    ]
    assert read_run_lock(Path(stale.lock_file_path)) is None
    assert read_run_lock(Path(active.lock_file_path)).pid == 111


def test_delete_run_removes_worktree_and_keeps_ticket(tmp_path: Path) -> None:
    repo = _repo_with_ticket(tmp_path)
    services = _services(ScriptedRunner())
    outcome = asyncio.run(start_run(services, repo, TICKET_ID))
    state = load_state(outcome.state_file_path)

    deleted = asyncio.run(
        delete_run(services, Path(state.artifact_root_dir), TICKET_ID, is_alive=lambda pid: False)
    )

    assert deleted.run_id == TICKET_ID
    assert not Path(state.worktree.path).exists()
    assert not Path(state.run_dir).exists()
    assert not outcome.state_file_path.exists()
    assert Path(state.ticket.file_path).is_file()
    assert _run(["git", "branch", "--list", state.worktree.branch_name], cwd=repo) == ""


def test_delete_run_refuses_when_owner_survives(tmp_path: Path) -> None:
    root = tmp_path / ".foreman"
    state = _stored_state(root, TICKET_ID, datetime(2026, 2, 1, tzinfo=UTC))
    acquire_run_lock(Path(state.lock_file_path), state.run_id, state.state_file_path, pid=4242)

    with pytest.raises(RunLockError, match="pid 4242"):
        asyncio.run(
            delete_run(
                _services(ScriptedRunner()),
                root,
                TICKET_ID,
                is_alive=lambda pid: True,
                kill=lambda pid: False,
            )
        )
    assert Path(state.state_file_path).exists()
