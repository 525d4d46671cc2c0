from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from foreman.workflow.paths import file_has_content, report_file_path, to_worktree_path
from foreman.workflow.reminders import task_reminder
from foreman.workflow.runtime import WorkflowRuntime
from foreman.workflow.sentinels import has_ok_sentinel
from foreman.workflow.sessions import run_role, run_with_overflow_reset, session_micro_retry
from foreman.workflow.task_metadata import get_base_task_info

logger = logging.getLogger(__name__)

EXECUTION_TIMEOUT_SECONDS = 25 * 60
REPORT_TIMEOUT_SECONDS = 5 * 60


@dataclass(slots=True)
class TaskExecutionResult:
    report_path: Path
    session_id: str | None


def build_execution_prompt(runtime: WorkflowRuntime, task_file: Path) -> str:
    return "\n".join(
        [
            task_reminder(runtime),
            "<INSTRUCTIONS>",
            "You are responsible for implementing the task in <INPUT_TASK>.",
            "ALWAYS read AGENTS.md before planning or work.",
            "Once you are satisfied with your implementation, reply with <OK> ONLY.",
            "</INSTRUCTIONS>",
            "<INPUT_TASK>",
            str(task_file),
            "</INPUT_TASK>",
        ]
    )


def build_report_prompt(runtime: WorkflowRuntime, task_file: Path, report_path: Path) -> str:
    return "\n".join(
        [
            task_reminder(runtime),
            "<INSTRUCTIONS>",
            "Write a task report for the tech lead.",
            f"Create `{report_path}` using these headings:",
            "1. ## Problems & Risks",
            "2. ## Work Completed",
            "3. ## Next Steps / Requests",
            "Keep it concise and bias toward risks.",
            "Reply with <OK> when done.",
            "</INSTRUCTIONS>",
            "<INPUT_TASK>",
            str(task_file),
            "</INPUT_TASK>",
            "<OUTPUT>",
            str(report_path),
            "</OUTPUT>",
            "<system-reminder>Use the exact paths given to you to read and write the input "
            "and output files.</system-reminder>",
        ]
    )


async def _ensure_ok(runtime: WorkflowRuntime, session_id: str | None, output: str | None) -> bool:
    if has_ok_sentinel(output):
        return True
    return await session_micro_retry(
        runtime, "If you are done, reply with <OK>.", session_id, "task"
    )


async def _run_execution(
    runtime: WorkflowRuntime, task_file: Path, session_key: str
) -> tuple[bool, str | None]:
    sessions = runtime.workflow.task_agent_sessions
    stored = sessions.get(session_key)
    result, used = await run_with_overflow_reset(
        runtime,
        "task",
        "task-execution",
        build_execution_prompt(runtime, task_file),
        session_id=stored,
        timeout_seconds=EXECUTION_TIMEOUT_SECONDS,
    )
    if stored and used is None:
        sessions[session_key] = None
        runtime.save()
    if not result.success:
        logger.warning("Task execution failed for %s: %s", task_file.name, result.error)
        return False, used

    session_id = result.session_id or used
    if not await _ensure_ok(runtime, session_id, result.output_text):
        return False, session_id
    sessions[session_key] = session_id
    runtime.save()
    return True, session_id


async def ensure_report_exists(
    runtime: WorkflowRuntime, report_path: Path, session_id: str | None
) -> bool:
    if file_has_content(report_path):
        return True
    worktree_copy = to_worktree_path(runtime.state, report_path)
    if file_has_content(worktree_copy):
        runtime.reminders.task.append(
            f"Write the task report to {report_path}. Avoid writing artifacts under the "
            "worktree .foreman directory."
        )
        await session_micro_retry(
            runtime,
            f"Your report must be written to {report_path}. Recreate it there and reply with <OK>.",
            session_id,
            "task",
        )
    if not file_has_content(report_path):
        await session_micro_retry(
            runtime, f"Create the report file: {report_path}", session_id, "task"
        )
    return file_has_content(report_path)


async def _run_report(
    runtime: WorkflowRuntime, task_file: Path, report_path: Path, session_id: str | None
) -> bool:
    result = await run_role(
        runtime,
        "task",
        "task-report",
        build_report_prompt(runtime, task_file, report_path),
        session_id=session_id,
        timeout_seconds=REPORT_TIMEOUT_SECONDS,
    )
    if not result.success:
        return False
    active_session = result.session_id or session_id
    if not await _ensure_ok(runtime, active_session, result.output_text):
        return False
    if not await ensure_report_exists(runtime, report_path, active_session):
        return False
    return bool(report_path.read_text(encoding="utf-8").strip())


async def execute_task(runtime: WorkflowRuntime, task_file: Path) -> TaskExecutionResult | None:
    """Implement a task and have the agent write its report; None on failure."""
    task_file = Path(task_file)
    report_path = report_file_path(runtime.state, task_file)
    session_key = str(get_base_task_info(task_file).base_task_path)
    if file_has_content(report_path):
        logger.info("Report already exists for %s; skipping execution", task_file.name)
        return TaskExecutionResult(
            report_path=report_path,
            session_id=runtime.workflow.task_agent_sessions.get(session_key),
        )

    logger.info("Executing task %s", task_file.name)
    ok, session_id = await _run_execution(runtime, task_file, session_key)
    if not ok:
        return None
    if not await _run_report(runtime, task_file, report_path, session_id):
        return None
    return TaskExecutionResult(report_path=report_path, session_id=session_id)
