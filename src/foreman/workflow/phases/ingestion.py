from __future__ import annotations

import logging
from pathlib import Path

from foreman.workflow.decision_cards import ensure_decision_cards
from foreman.workflow.paths import (
    decision_cards_path,
    file_has_content,
    plan_file_path,
    run_dir,
    to_worktree_path,
)
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.sessions import ensure_lead_ok, run_lead, tech_lead_micro_retry

logger = logging.getLogger(__name__)

INGESTION_TIMEOUT_SECONDS = 15 * 60


def build_ingestion_prompt(
    runtime: WorkflowRuntime, ticket_text: str, directory: Path, plan_path: Path
) -> str:
    return "\n".join(
        [
            tech_lead_reminder(runtime),
            "",
            "<INSTRUCTIONS>",
            "1. Read `AGENTS.md` (if present) before planning or work.",
            "2. Read the user ticket in <INPUT>.",
            "3. Analyze the existing repo in the worktree.",
            f"4. Create the run folder at: {directory}",
            f"5. Create the plan file at: {plan_path}",
            "   - It should include context, assumptions, and acceptance criteria.",
            "   - It should be specific enough to drive task splitting.",
            "",
            "Reply with <OK> only when you have completed the above.",
            "</INSTRUCTIONS>",
            "",
            "<system-reminder>Use the exact paths given to you to read and write the input "
            "and output files.</system-reminder>",
            "",
            "<INPUT>",
            ticket_text.rstrip(),
            "</INPUT>",
            "",
        ]
    )


async def run_ticket_ingestion(runtime: WorkflowRuntime) -> None:
    """Have the lead turn the ticket into ``plan.md`` inside the run directory."""
    state = runtime.state
    directory = run_dir(state)
    plan_path = plan_file_path(state)

    workflow = runtime.workflow
    workflow.run_dir = str(directory)
    workflow.plan_file_path = str(plan_path)
    workflow.decision_cards_path = str(decision_cards_path(state))
    runtime.save()
    directory.mkdir(parents=True, exist_ok=True)

    ticket_text = Path(state.ticket.file_path).read_text(encoding="utf-8")
    result = await run_lead(
        runtime,
        "ticket-ingestion",
        build_ingestion_prompt(runtime, ticket_text, directory, plan_path),
        timeout_seconds=INGESTION_TIMEOUT_SECONDS,
    )
    if not result.success:
        raise WorkflowError(result.error or "Ticket ingestion failed.")
    if not await ensure_lead_ok(
        runtime, result, "Reply with <OK> only when ticket ingestion is complete."
    ):
        raise WorkflowError("Ticket ingestion missing <OK> sentinel.")

    if not file_has_content(plan_path) and file_has_content(to_worktree_path(state, plan_path)):
        runtime.reminders.tech_lead.append(
            "You wrote workflow artifacts under the worktree. All artifacts must be written "
            f"under the main repo artifact root. Move or recreate the plan at: {plan_path}"
        )
        await tech_lead_micro_retry(
            runtime, f"Move or recreate the plan file at the correct path: {plan_path}"
        )

    if not file_has_content(plan_path):
        raise WorkflowError(f"Plan file missing or empty: {plan_path}")
    logger.info("Plan written to %s", plan_path)


async def run_decision_cards_generation(runtime: WorkflowRuntime) -> None:
    state = runtime.state
    document = await ensure_decision_cards(
        runtime, plan_file_path(state), decision_cards_path(state)
    )
    logger.info(
        "Decision cards ready: %d decision(s), %d open question(s)",
        len(document.decisions),
        len(document.open_questions),
    )
