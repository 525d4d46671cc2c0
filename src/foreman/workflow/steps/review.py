from __future__ import annotations

import logging
from pathlib import Path

from foreman.workflow.paths import file_has_content, review_file_path, to_worktree_path
from foreman.workflow.reminders import reviewer_reminder
from foreman.workflow.runtime import WorkflowRuntime
from foreman.workflow.sessions import run_with_overflow_reset, session_micro_retry
from foreman.workflow.task_metadata import get_base_task_info

logger = logging.getLogger(__name__)

REVIEW_TIMEOUT_SECONDS = 15 * 60


def build_review_prompt(
    runtime: WorkflowRuntime, task_file: Path, report_path: Path, review_path: Path
) -> str:
    return "\n".join(
        [
            reviewer_reminder(runtime),
            "<INSTRUCTIONS>",
            "You are reviewing uncommitted changes in the worktree.",
            "Write a concise review for the tech lead.",
            f"Save it to: {review_path}",
            "</INSTRUCTIONS>",
            "<INPUT_TASK>",
            str(task_file),
            "</INPUT_TASK>",
            "<INPUT_REPORT>",
            str(report_path),
            "</INPUT_REPORT>",
            "<OUTPUT>",
            str(review_path),
            "</OUTPUT>",
            "<system-reminder>Use the exact paths given to you to read and write the input "
            "and output files.</system-reminder>",
        ]
    )


async def review_task(runtime: WorkflowRuntime, task_file: Path, report_path: Path) -> Path | None:
    """Have the reviewer write a review of the uncommitted changes; None on failure."""
    task_file = Path(task_file)
    review_path = review_file_path(runtime.state, task_file)
    if file_has_content(review_path):
        return review_path

    session_key = str(get_base_task_info(task_file).base_task_path)
    sessions = runtime.workflow.reviewer_sessions
    stored = sessions.get(session_key)
    result, used = await run_with_overflow_reset(
        runtime,
        "reviewer",
        "code-review",
        build_review_prompt(runtime, task_file, report_path, review_path),
        session_id=stored,
        timeout_seconds=REVIEW_TIMEOUT_SECONDS,
    )
    if stored and used is None:
        sessions[session_key] = None
        runtime.save()
    if not result.success:
        logger.warning("Review failed for %s: %s", task_file.name, result.error)
        return None

    session_id = result.session_id or used
    sessions[session_key] = session_id
    runtime.save()

    worktree_copy = to_worktree_path(runtime.state, review_path)
    if not file_has_content(review_path) and file_has_content(worktree_copy):
        runtime.reminders.reviewer.append(
            f"Write the code review to {review_path} (main repo artifact root), not the "
            "worktree .foreman directory."
        )
        await session_micro_retry(
            runtime,
            f"Your review must be written to {review_path}. Recreate it there and reply with <OK>.",
            session_id,
            "reviewer",
        )

    if not file_has_content(review_path):
        return None
    return review_path
