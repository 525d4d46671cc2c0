from __future__ import annotations

import logging
import os

from foreman.workflow.paths import plan_file_path, run_dir
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.sessions import ensure_lead_ok, maybe_retry, run_lead
from foreman.workflow.task_queue import TaskQueue

logger = logging.getLogger(__name__)

TASK_FEEDBACK_TIMEOUT_SECONDS = 15 * 60
RETRY_LABEL = "Task feedback"


async def apply_task_feedback(runtime: WorkflowRuntime, prompt: str) -> None:
    while True:
        result = await run_lead(
            runtime, "task-feedback", prompt, timeout_seconds=TASK_FEEDBACK_TIMEOUT_SECONDS
        )
        if not result.success:
            if not await maybe_retry(runtime, RETRY_LABEL):
                raise WorkflowError(result.error or "Task feedback failed.")
            continue
        if not await ensure_lead_ok(
            runtime, result, "Reply with <OK> only when the task feedback updates are complete."
        ):
            if not await maybe_retry(runtime, RETRY_LABEL):
                raise WorkflowError("Task feedback missing <OK> sentinel.")
            continue
        # task files may have been renamed or added; rediscover on the next load
        runtime.workflow.task_queue = []
        runtime.save()
        return


async def run_task_feedback(runtime: WorkflowRuntime) -> None:
    directory = run_dir(runtime.state)
    plan_path = plan_file_path(runtime.state)
    queue = TaskQueue(runtime)
    first = True

    while True:
        tasks = queue.load(directory)
        relative = [os.path.relpath(task, runtime.state.main_repo_path) for task in tasks]
        context = [f"Plan: {plan_path}"]
        if relative:
            context.append("Tasks:")
            context.extend(f"- {task}" for task in relative)
        else:
            context.append("Tasks: (none)")

        question = "Task splitting feedback?" if first else "More task splitting feedback?"
        first = False
        feedback = await runtime.prompt.text(
            f"{question} (empty to continue)\n" + "\n".join(context), default=""
        )
        if not feedback.strip():
            return

        prompt = "\n".join(
            [
                tech_lead_reminder(runtime),
                "<INSTRUCTIONS>",
                f"Update {plan_path} and task files in {directory} based on feedback in <INPUT>. "
                "Reply <OK> when done.",
                "</INSTRUCTIONS>",
                "<INPUT>",
                feedback,
                "</INPUT>",
            ]
        )
        await apply_task_feedback(runtime, prompt)
        logger.info("Tasks updated from feedback")
