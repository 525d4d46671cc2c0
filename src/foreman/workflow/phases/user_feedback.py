from __future__ import annotations

import logging

from foreman.workflow.paths import file_has_content, run_dir
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.sessions import maybe_retry, run_lead
from foreman.workflow.task_queue import TaskQueue, next_task_number

logger = logging.getLogger(__name__)

USER_FEEDBACK_TIMEOUT_SECONDS = 10 * 60
RETRY_LABEL = "User feedback task"


async def run_user_feedback(runtime: WorkflowRuntime) -> bool:
    """Offer the operator one more task; True when one was queued."""
    feedback = await runtime.prompt.text(
        "Any additional feedback or tasks? (empty to continue)", default=""
    )
    if not feedback.strip():
        return False

    directory = run_dir(runtime.state)
    task_path = directory / f"task-{next_task_number(directory)}-additional-user-feedback.md"
    prompt = "\n".join(
        [
            tech_lead_reminder(runtime),
            "<INSTRUCTIONS>",
            f"Create task `{task_path}` based on user feedback in <INPUT>. Follow the existing "
            "task format and include acceptance criteria.",
            "Reply <OK> when done.",
            "</INSTRUCTIONS>",
            "<INPUT>",
            feedback.strip(),
            "</INPUT>",
            "<OUTPUT>",
            str(task_path),
            "</OUTPUT>",
            "<system-reminder>Use the exact paths given to you to read and write the input "
            "and output files.</system-reminder>",
        ]
    )

    while True:
        result = await run_lead(
            runtime, "user-feedback", prompt, timeout_seconds=USER_FEEDBACK_TIMEOUT_SECONDS
        )
        if not result.success:
            if not await maybe_retry(runtime, RETRY_LABEL):
                raise WorkflowError(result.error or "User feedback task creation failed.")
            continue
        if not file_has_content(task_path):
            task_path.unlink(missing_ok=True)
            if not await maybe_retry(runtime, RETRY_LABEL):
                raise WorkflowError(f"User feedback task file missing or empty: {task_path}")
            continue
        break

    TaskQueue(runtime).push_front(task_path)
    logger.info("Queued user feedback task %s", task_path.name)
    return True
