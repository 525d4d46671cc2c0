from __future__ import annotations

import logging
import re
from pathlib import Path

from foreman.workflow.paths import run_dir, to_worktree_path
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.sessions import run_lead, session_micro_retry

logger = logging.getLogger(__name__)

TASK_SPLITTING_TIMEOUT_SECONDS = 10 * 60
SPLIT_TASK_PATTERN = re.compile(r"^task-\d+-.+\.md$", re.IGNORECASE)


def has_task_files(directory: Path | None) -> bool:
    if directory is None or not directory.is_dir():
        return False
    return any(SPLIT_TASK_PATTERN.match(entry.name) for entry in directory.iterdir())


def build_task_splitting_prompt(runtime: WorkflowRuntime, directory: Path) -> str:
    return "\n".join(
        [
            tech_lead_reminder(runtime),
            "<INSTRUCTIONS>",
            f"Create detailed tasks in {directory} following `task-<N>-<desc>.md`.",
            "Each task should be appropriate for one agent session, be atomic, and include "
            "acceptance criteria.",
            "Do NOT create tasks whose sole purpose is to run lint/typecheck/test/format/coverage. "
            "Those are handled by the workflow.",
            "Database state is ephemeral between tasks; persistent changes require "
            "migrations/seed changes.",
            "Consider whether an integration test task is needed.",
            "Reply <OK> when done.",
            "</INSTRUCTIONS>",
            "<system-reminder>Use the exact paths given to you to read and write the input "
            "and output files.</system-reminder>",
        ]
    )


async def run_task_splitting(runtime: WorkflowRuntime) -> None:
    directory = run_dir(runtime.state)
    prompt = build_task_splitting_prompt(runtime, directory)

    while True:
        result = await run_lead(
            runtime, "task-splitting", prompt, timeout_seconds=TASK_SPLITTING_TIMEOUT_SECONDS
        )
        if not result.success:
            if not await runtime.prompt.confirm("Task splitting failed. Retry?", default=True):
                raise WorkflowError(result.error or "Task splitting failed.")
            continue

        if has_task_files(directory):
            logger.info("Task files written to %s", directory)
            return

        if has_task_files(to_worktree_path(runtime.state, directory)):
            runtime.reminders.tech_lead.append(
                f"Task files must be written to {directory}. You wrote them under the worktree. "
                "Move or recreate them at the main repo path."
            )
            ok = await session_micro_retry(
                runtime,
                f"Move or recreate your task files at {directory} (absolute path) and reply "
                "with <OK>.",
                runtime.workflow.tech_lead_session_id,
                "lead",
            )
            if ok and has_task_files(directory):
                return

        if not await runtime.prompt.confirm(
            "Task files missing from main repo run dir. Retry task splitting?", default=True
        ):
            raise WorkflowError(f"Task files missing from {directory}")
