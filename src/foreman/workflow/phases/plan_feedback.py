from __future__ import annotations

import logging

from foreman.workflow.paths import plan_file_path
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.sessions import maybe_retry, run_lead

logger = logging.getLogger(__name__)

PLAN_FEEDBACK_TIMEOUT_SECONDS = 10 * 60


async def run_plan_feedback(runtime: WorkflowRuntime) -> None:
    """Loop on free-form plan feedback until the operator submits an empty answer."""
    plan_path = plan_file_path(runtime.state)

    while True:
        feedback = await runtime.prompt.text(
            f"Plan feedback? (empty to continue)\nPlan: {plan_path}", default=""
        )
        if not feedback.strip():
            return

        prompt = "\n".join(
            [
                tech_lead_reminder(runtime),
                "<INSTRUCTIONS>",
                f"Update {plan_path} based on user feedback in <INPUT>.",
                "Reply <OK> when done.",
                "</INSTRUCTIONS>",
                "<INPUT>",
                feedback,
                "</INPUT>",
            ]
        )
        while True:
            result = await run_lead(
                runtime, "plan-feedback", prompt, timeout_seconds=PLAN_FEEDBACK_TIMEOUT_SECONDS
            )
            if result.success:
                logger.info("Plan updated from feedback")
                break
            if not await maybe_retry(runtime, "Plan feedback"):
                raise WorkflowError(result.error or "Plan feedback failed.")
