from __future__ import annotations

import logging

from foreman.state import Phase
from foreman.workflow.integration import run_integration
from foreman.workflow.paths import run_dir
from foreman.workflow.phases import (
    run_decision_cards_generation,
    run_decision_gate,
    run_finalize,
    run_plan_feedback,
    run_task_feedback,
    run_task_splitting,
    run_ticket_ingestion,
    run_user_feedback,
)
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.task_loop import run_task_loop

logger = logging.getLogger(__name__)

MAX_STEPS = 50
TERMINAL_PHASE: Phase = "cleanup"


def set_phase(runtime: WorkflowRuntime, phase: Phase) -> None:
    previous = runtime.workflow.phase
    runtime.workflow.phase = phase
    runtime.save()
    logger.info("Phase %s -> %s", previous, phase)


async def _run_execution(runtime: WorkflowRuntime) -> None:
    await run_task_loop(runtime, run_dir(runtime.state))


_LINEAR_PHASES = {
    "ticket-created": (run_ticket_ingestion, "ticket-ingested"),
    "ticket-ingested": (run_decision_cards_generation, "decision-cards"),
    "decision-cards": (run_decision_gate, "plan-created"),
    "plan-created": (run_plan_feedback, "task-splitting"),
    "task-splitting": (run_task_splitting, "task-feedback"),
    "task-feedback": (run_task_feedback, "execution"),
    "execution": (_run_execution, "user-feedback"),
    "finalize": (run_finalize, TERMINAL_PHASE),
}


async def run_workflow(runtime: WorkflowRuntime, *, max_steps: int = MAX_STEPS) -> Phase:
    """Drive the run from its persisted phase; returns the phase it stopped at.

    The persisted phase names the handler that runs next, so a resumed run picks
    up exactly where the previous process left off.
    """
    for _ in range(max_steps):
        phase = runtime.workflow.phase

        if phase == TERMINAL_PHASE:
            return phase

        if phase in _LINEAR_PHASES:
            handler, next_phase = _LINEAR_PHASES[phase]
            await handler(runtime)
            set_phase(runtime, next_phase)
            continue

        if phase == "user-feedback":
            added = await run_user_feedback(runtime)
            set_phase(runtime, "execution" if added else "integration")
            continue

        if phase == "integration":
            result = await run_integration(runtime)
            if result.aborted:
                logger.info("Integration aborted: %s", result.message or "no details")
                return phase
            set_phase(runtime, "execution" if result.tasks_created else "finalize")
            continue

        raise WorkflowError(f"Unknown workflow phase: {phase}")

    raise WorkflowError("Workflow exceeded max orchestrator steps.")
