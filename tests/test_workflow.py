import asyncio
import re
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from foreman.adapters.quality import CheckResult, QualityGate, QualityResult
from foreman.config import ForemanConfig, QualityCheck, QualityConfig
from foreman.exec import AsyncExec
from foreman.prompts import PromptAdapter
from foreman.runners import (
    AgentRunner,
    RoleRunners,
    RunnerExecutionError,
    RunnerRequest,
    RunnerResult,
)
from foreman.runs import build_initial_run_state
from foreman.state import StateStore
from foreman.workflow import WorkflowError, WorkflowRuntime, run_workflow
from foreman.workflow.integration import run_integration
from foreman.workflow.paths import plan_file_path, review_file_path, run_dir, to_worktree_path
from foreman.workflow.phases import run_ticket_ingestion
from foreman.workflow.sessions import maybe_retry
from foreman.workflow.steps import execute_task, review_task
from foreman.workflow.task_loop import run_task_loop
from foreman.workflow.task_metadata import get_base_task_info

TICKET_ID = "2026-02-01-add-caching"
BRANCH = f"foreman-{TICKET_ID}"
OUTPUT_PATTERN = re.compile(r"<OUTPUT>\n(.+?)\n</OUTPUT>")
OUTCOME_PATTERN = re.compile(r"Write a brief outcome summary to `([^`]+)`")
REMEDIATION_PATTERN = re.compile(r"Create a remediation task and save it to `([^`]+)`")
INPUT_TASK_PATTERN = re.compile(r"<INPUT_TASK>\n(.+)\n")


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
    def __init__(self, texts: list[str] | None = None) -> None:
        self.texts = list(texts or [])
        self.confirms: list[str] = []

    async def confirm(self, message: str, default: bool = True) -> bool:
        self.confirms.append(message)
        return True

    async def text(self, message: str, default: str = "") -> str:
        return self.texts.pop(0) if self.texts else ""

    async def select(self, message: str, choices: Sequence[str]) -> str:
        return choices[0]


class ScriptedRunner(AgentRunner):
    """Plays every agent role by writing the artifact each prompt asks for."""

    kind = "fake"

    def __init__(self, decisions: list[str] | None = None) -> None:
        self.decisions = list(decisions or [])
        self.requests: list[RunnerRequest] = []

    def _write_output(self, request: RunnerRequest, body: str) -> None:
        match = OUTPUT_PATTERN.search(request.prompt)
        assert match is not None, request.phase_name
        Path(match.group(1)).write_text(body, encoding="utf-8")

    async def execute(self, request: RunnerRequest) -> RunnerResult:
        self.requests.append(request)
        phase = request.phase_name
        session_id = request.session_id or f"{request.role}-session"

        if phase == "task-execution":
            (request.cwd / "cache.py").write_text("CACHE: dict[str, str] = {}\n", encoding="utf-8")
            return RunnerResult(success=True, session_id=session_id, output_text="Done.\n<OK>")
        if phase in (
            "task-report",
            "code-review",
            "summarize-report",
            "summarize-review",
            "integration-remediation-task",
            "user-feedback",
        ):
            self._write_output(request, f"# {phase}\n\n- Added cache module.\n")
            return RunnerResult(success=True, session_id=session_id, output_text="<OK>")
        if phase == "tech-lead-decision":
            decision = self.decisions.pop(0) if self.decisions else "acceptance"
            if decision == "remediation":
                target = REMEDIATION_PATTERN.search(request.prompt)
                Path(target.group(1)).write_text("# Fix cache eviction\n", encoding="utf-8")
            elif decision == "acceptance":
                target = OUTCOME_PATTERN.search(request.prompt)
                Path(target.group(1)).write_text("Accepted.\n", encoding="utf-8")
            return RunnerResult(
                success=True,
                session_id=session_id,
                output_text=f"<DECISION>{decision}</DECISION>",
            )
        raise RunnerExecutionError(f"Unexpected phase: {phase}", retriable=False)


class OverflowingTaskRunner(ScriptedRunner):
    """Reports a context overflow whenever the stale task session is resumed."""

    async def execute(self, request: RunnerRequest) -> RunnerResult:
        if request.phase_name == "task-execution" and request.session_id == "stale-session":
            self.requests.append(request)
            return RunnerResult(
                success=False,
                session_id="stale-session",
                context_overflow=True,
                error="Prompt is too long",
            )
        return await super().execute(request)


class MisplacedArtifactRunner(AgentRunner):
    """Writes its artifact under the worktree first, then at the real path when nudged."""

    kind = "fake"

    def __init__(self, phase: str, retry_phase: str) -> None:
        self.phase = phase
        self.retry_phase = retry_phase
        self.target: Path | None = None
        self.misplaced: Path | None = None
        self.requests: list[RunnerRequest] = []

    async def execute(self, request: RunnerRequest) -> RunnerResult:
        self.requests.append(request)
        if request.phase_name == self.phase:
            self.misplaced.parent.mkdir(parents=True, exist_ok=True)
            self.misplaced.write_text("# Misplaced\n", encoding="utf-8")
            return RunnerResult(
                success=True, session_id=f"{request.role}-session", output_text="<OK>"
            )
        if request.phase_name == self.retry_phase:
            self.target.write_text("# Recreated\n", encoding="utf-8")
            return RunnerResult(success=True, session_id=request.session_id, output_text="<OK>")
        raise RunnerExecutionError(f"Unexpected phase: {request.phase_name}", retriable=False)


class FakeQualityGate(QualityGate):
    def __init__(self, ok: bool) -> None:
        self.ok = ok
        self.calls = 0

    async def run_checks(self, worktree_path: Path, checks: list[QualityCheck]) -> QualityResult:
        self.calls += 1
        stderr = "" if self.ok else "E501 line too long"
        results = [CheckResult(name=check.name, ok=self.ok, stderr=stderr) for check in checks]
        return QualityResult(ok=self.ok, results=results)


def _setup(
    tmp_path: Path,
    runner: AgentRunner,
    prompt: PromptAdapter | None = None,
    config: ForemanConfig | None = None,
    quality_gate: QualityGate | None = None,
) -> WorkflowRuntime:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    worktree = tmp_path / "worktree"
    _run(["git", "worktree", "add", "-b", BRANCH, str(worktree), "main"], cwd=repo)

    tickets = repo / ".foreman" / "tickets"
    tickets.mkdir(parents=True)
    ticket = tickets / f"{TICKET_ID}.md"
    ticket.write_text("# Add caching\n", encoding="utf-8")

    state = build_initial_run_state(
        main_repo_path=repo,
        artifact_root_dir=repo / ".foreman",
        ticket_id=TICKET_ID,
        ticket_file_path=ticket,
        worktree_path=worktree,
        branch_name=BRANCH,
        base_branch="main",
    )
    store = StateStore.create(Path(state.state_file_path), state)
    Path(state.run_dir).mkdir(parents=True)
    return WorkflowRuntime(
        config=config or ForemanConfig.default(),
        store=store,
        runners=RoleRunners.single(runner),
        prompt=prompt or FakePrompt(),
        exec=AsyncExec(),
        quality_gate=quality_gate,
    )


def test_task_loop_accepts_and_commits(tmp_path: Path) -> None:
    runner = ScriptedRunner()
    runtime = _setup(tmp_path, runner)
    directory = run_dir(runtime.state)
    (directory / "task-1-add-cache.md").write_text("# Add cache module\n", encoding="utf-8")

    asyncio.run(run_task_loop(runtime, directory))

    assert (directory / "outcome-task-1-add-cache.md").is_file()
    assert (directory / "report-task-1-add-cache.md").is_file()
    assert (directory / "summary-review-task-1-add-cache.md").is_file()
    worktree = runtime.worktree_path
    assert _run(["git", "log", "-1", "--format=%s"], cwd=worktree) == (
        "Accept task task-1-add-cache.md"
    )
    assert _run(["git", "status", "--porcelain"], cwd=worktree) == ""
    assert runtime.workflow.task_queue == []
    assert runtime.workflow.task_agent_sessions == {}
    assert [request.phase_name for request in runner.requests] == [
        "task-execution",
        "task-report",
        "code-review",
        "summarize-report",
        "summarize-review",
        "tech-lead-decision",
    ]


def test_remediation_reuses_task_session(tmp_path: Path) -> None:
    runner = ScriptedRunner(decisions=["remediation", "acceptance"])
    runtime = _setup(tmp_path, runner)
    directory = run_dir(runtime.state)
    (directory / "task-1-add-cache.md").write_text("# Add cache module\n", encoding="utf-8")

    asyncio.run(run_task_loop(runtime, directory))

    assert (directory / "task-1-add-cache-remediation-1.md").is_file()
    assert (directory / "outcome-task-1-add-cache-remediation-1.md").is_file()
    assert not (directory / "outcome-task-1-add-cache.md").exists()
    executions = [r for r in runner.requests if r.phase_name == "task-execution"]
    assert executions[0].session_id is None
    assert executions[1].session_id == "task-session"
    assert "task-1-add-cache-remediation-1.md" in executions[1].prompt
    assert _run(["git", "log", "-1", "--format=%s"], cwd=runtime.worktree_path) == (
        "Accept task task-1-add-cache-remediation-1.md"
    )


def test_merge_conflict_queues_remediation_and_returns_to_execution(tmp_path: Path) -> None:
    runner = ScriptedRunner()
    runtime = _setup(tmp_path, runner)
    repo = runtime.main_repo_path
    worktree = runtime.worktree_path
    directory = run_dir(runtime.state)
    (directory / "task-1-add-cache.md").write_text("# Add cache\n", encoding="utf-8")
    (directory / "outcome-task-1-add-cache.md").write_text("Accepted.\n", encoding="utf-8")

    (worktree / "seed.txt").write_text("worktree change\n", encoding="utf-8")
    _run(["git", "commit", "-am", "worktree edit"], cwd=worktree)
    (repo / "seed.txt").write_text("main change\n", encoding="utf-8")
    _run(["git", "commit", "-am", "main edit"], cwd=repo)

    runtime.workflow.phase = "integration"
    runtime.save()

    with pytest.raises(WorkflowError, match="exceeded max orchestrator steps"):
        asyncio.run(run_workflow(runtime, max_steps=1))

    task_path = directory / "task-2-integration-merge-conflicts.md"
    assert task_path.is_file()
    assert runtime.workflow.phase == "execution"
    assert runtime.workflow.task_queue[0] == str(task_path)
    remediation_prompt = runner.requests[-1].prompt
    assert "Type: merge-conflict" in remediation_prompt
    assert "Merge failed:" in remediation_prompt
    assert runtime.prompt.confirms == ["Integration: merge main into worktree?"]


def test_clean_integration_moves_to_finalize(tmp_path: Path) -> None:
    runtime = _setup(tmp_path, ScriptedRunner())
    repo = runtime.main_repo_path
    (repo / "other.txt").write_text("other\n", encoding="utf-8")
    _run(["git", "add", "other.txt"], cwd=repo)
    _run(["git", "commit", "-m", "main moves on"], cwd=repo)

    result = asyncio.run(run_integration(runtime))

    assert not result.tasks_created
    assert not result.aborted
    assert (runtime.worktree_path / "other.txt").is_file()


def test_failing_quality_gate_creates_remediation_task(tmp_path: Path) -> None:
    config = ForemanConfig.default()
    config.quality = QualityConfig(checks=[QualityCheck(name="lint", cmd=["ruff", "check"])])
    gate = FakeQualityGate(ok=False)
    runner = ScriptedRunner()
    runtime = _setup(tmp_path, runner, config=config, quality_gate=gate)

    result = asyncio.run(run_integration(runtime))

    assert result.tasks_created
    task_path = run_dir(runtime.state) / "task-1-quality-check-remediation.md"
    assert task_path.is_file()
    assert runtime.workflow.task_queue == [str(task_path)]
    assert "- lint" in runner.requests[-1].prompt
    assert "E501 line too long" in runner.requests[-1].prompt


def test_integration_checks_abort_without_quality_adapter(tmp_path: Path) -> None:
    config = ForemanConfig.from_dict(
        {
            "integration": {
                "checks": [{"name": "e2e", "cmd": ["pytest", "-m", "e2e"]}],
                "use_quality_adapter": False,
            }
        }
    )
    runtime = _setup(tmp_path, ScriptedRunner(), config=config, quality_gate=FakeQualityGate(True))

    result = asyncio.run(run_integration(runtime))

    assert result.aborted
    assert "no adapter" in (result.message or "")


def test_maybe_retry_counts_then_asks(tmp_path: Path) -> None:
    prompt = FakePrompt()
    runtime = _setup(tmp_path, ScriptedRunner(), prompt=prompt)

    answers = [asyncio.run(maybe_retry(runtime, "Plan feedback")) for _ in range(3)]

    assert answers == [True, True, True]
    assert runtime.workflow.auto_retry_counts == {"Plan feedback": 2}
    assert prompt.confirms == ["Plan feedback failed. Retry?"]


def test_terminal_phase_returns_immediately(tmp_path: Path) -> None:
    runner = ScriptedRunner()
    runtime = _setup(tmp_path, runner)
    runtime.workflow.phase = "cleanup"

    assert asyncio.run(run_workflow(runtime)) == "cleanup"
    assert runner.requests == []


def test_failed_decision_restarts_base_task_from_clean_slate(tmp_path: Path) -> None:
    decisions = ["remediation"] * 3 + ["failed", "remediation", "acceptance"]
    runner = ScriptedRunner(decisions=decisions)
    runtime = _setup(tmp_path, runner)
    directory = run_dir(runtime.state)
    (directory / "task-1-add-cache.md").write_text("# Add cache module\n", encoding="utf-8")

    asyncio.run(run_task_loop(runtime, directory))

    executions = [r for r in runner.requests if r.phase_name == "task-execution"]
    executed = [Path(INPUT_TASK_PATTERN.search(r.prompt).group(1)).name for r in executions]
    assert executed == [
        "task-1-add-cache.md",
        "task-1-add-cache-remediation-1.md",
        "task-1-add-cache-remediation-2.md",
        "task-1-add-cache-remediation-3.md",
        "task-1-add-cache.md",
        "task-1-add-cache-remediation-1.md",
    ]
    assert executions[3].session_id == "task-session"
    assert executions[4].session_id is None
    assert len([r for r in runner.requests if r.phase_name == "code-review"]) == 6
    assert not (directory / "task-1-add-cache-remediation-2.md").exists()
    assert not (directory / "task-1-add-cache-remediation-3.md").exists()
    assert not (directory / "report-task-1-add-cache-remediation-3.md").exists()
    assert (directory / "outcome-task-1-add-cache-remediation-1.md").is_file()

    worktree = runtime.worktree_path
    assert "discard-uncommitted" in _run(["git", "stash", "list"], cwd=worktree)
    assert _run(["git", "log", "-1", "--format=%s"], cwd=worktree) == (
        "Accept task task-1-add-cache-remediation-1.md"
    )
    assert runtime.workflow.task_queue == []


def test_context_overflow_drops_stale_task_session(tmp_path: Path) -> None:
    runner = OverflowingTaskRunner()
    runtime = _setup(tmp_path, runner)
    task_file = run_dir(runtime.state) / "task-1-add-cache.md"
    task_file.write_text("# Add cache module\n", encoding="utf-8")
    key = str(get_base_task_info(task_file).base_task_path)
    runtime.workflow.task_agent_sessions[key] = "stale-session"
    runtime.save()

    result = asyncio.run(execute_task(runtime, task_file))

    assert result is not None
    assert result.session_id == "task-session"
    executions = [r for r in runner.requests if r.phase_name == "task-execution"]
    assert [r.session_id for r in executions] == ["stale-session", None]
    assert runtime.workflow.task_agent_sessions[key] == "task-session"


def test_plan_written_under_worktree_triggers_lead_reminder(tmp_path: Path) -> None:
    runner = MisplacedArtifactRunner("ticket-ingestion", "lead-micro-retry")
    runtime = _setup(tmp_path, runner)
    runner.target = plan_file_path(runtime.state)
    runner.misplaced = to_worktree_path(runtime.state, runner.target)

    asyncio.run(run_ticket_ingestion(runtime))

    assert runner.target.read_text(encoding="utf-8") == "# Recreated\n"
    retry = runner.requests[-1]
    assert retry.phase_name == "lead-micro-retry"
    assert retry.session_id == "lead-session"
    assert "You wrote workflow artifacts under the worktree" in retry.prompt
    assert runtime.reminders.tech_lead == []


def test_review_written_under_worktree_reminds_reviewer(tmp_path: Path) -> None:
    runner = MisplacedArtifactRunner("code-review", "reviewer-micro-retry")
    runtime = _setup(tmp_path, runner)
    task_file = run_dir(runtime.state) / "task-1-add-cache.md"
    task_file.write_text("# Add cache module\n", encoding="utf-8")
    runner.target = review_file_path(runtime.state, task_file)
    runner.misplaced = to_worktree_path(runtime.state, runner.target)

    review_path = asyncio.run(
        review_task(runtime, task_file, run_dir(runtime.state) / "report-task-1-add-cache.md")
    )

    assert review_path == runner.target
    retry = runner.requests[-1]
    assert retry.role == "reviewer"
    assert f"Write the code review to {runner.target}" in retry.prompt
    assert runtime.reminders.reviewer == []
    assert runtime.reminders.tech_lead == []


def test_user_feedback_task_sends_run_back_to_execution(tmp_path: Path) -> None:
    runner = ScriptedRunner()
    runtime = _setup(tmp_path, runner, prompt=FakePrompt(texts=["add a README section"]))
    runtime.workflow.phase = "user-feedback"
    runtime.save()

    with pytest.raises(WorkflowError, match="exceeded max orchestrator steps"):
        asyncio.run(run_workflow(runtime, max_steps=1))

    task_path = run_dir(runtime.state) / "task-1-additional-user-feedback.md"
    assert task_path.is_file()
    assert runtime.workflow.phase == "execution"
    assert runtime.workflow.task_queue == [str(task_path)]
    assert "add a README section" in runner.requests[-1].prompt
