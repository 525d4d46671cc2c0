from __future__ import annotations

import logging
from pathlib import Path

from foreman.workflow.decision_cards import (
    DecisionCardsDocument,
    ensure_decision_cards,
    generate_decision_cards,
)
from foreman.workflow.decision_review import build_decision_feedback, review_decision_cards
from foreman.workflow.paths import decision_cards_path, plan_file_path
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.sessions import ensure_lead_ok, maybe_retry, run_lead

logger = logging.getLogger(__name__)

MAX_GATE_PASSES = 5
FEEDBACK_TIMEOUT_SECONDS = 10 * 60
RETRY_LABEL = "Decision card feedback"


async def apply_plan_update(
    runtime: WorkflowRuntime,
    plan_path: Path,
    cards_path: Path,
    feedback: str,
    existing: DecisionCardsDocument,
) -> None:
    """Have the lead fold decision feedback into the plan, then regenerate the cards."""
    prompt = "\n".join(
        [
            tech_lead_reminder(runtime),
            "<INSTRUCTIONS>",
            f"Update {plan_path} based on decision card feedback in <INPUT>.",
            "Reply <OK> when done.",
            "</INSTRUCTIONS>",
            "<INPUT>",
            feedback,
            "</INPUT>",
        ]
    )
    while True:
        result = await run_lead(
            runtime, "decision-cards-feedback", prompt, timeout_seconds=FEEDBACK_TIMEOUT_SECONDS
        )
        if not result.success:
            if not await maybe_retry(runtime, RETRY_LABEL):
                raise WorkflowError(result.error or "Decision card feedback failed.")
            continue
        if not await ensure_lead_ok(
            runtime, result, "Reply with <OK> only when the plan update is complete."
        ):
            if not await maybe_retry(runtime, RETRY_LABEL):
                raise WorkflowError("Decision card feedback missing <OK> sentinel.")
            continue
        break

    await generate_decision_cards(runtime, plan_path, cards_path, existing=existing)


async def run_decision_gate(runtime: WorkflowRuntime) -> None:
    plan_path = plan_file_path(runtime.state)
    cards_path = decision_cards_path(runtime.state)

    for attempt in range(1, MAX_GATE_PASSES + 1):
        cards = await ensure_decision_cards(runtime, plan_path, cards_path)
        summary = await review_decision_cards(runtime, cards, cards_path)
        if not summary.needs_plan_update:
            logger.info("Decision cards approved after %d pass(es)", attempt)
            return
        await apply_plan_update(
            runtime, plan_path, cards_path, build_decision_feedback(summary), summary.cards
        )

    raise WorkflowError("Decision cards gate exceeded max iterations.")
