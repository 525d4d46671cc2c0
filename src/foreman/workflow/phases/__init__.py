from foreman.workflow.phases.decision_gate import run_decision_gate
from foreman.workflow.phases.finalize import run_finalize, sanitize_markdown_paths
from foreman.workflow.phases.ingestion import run_decision_cards_generation, run_ticket_ingestion
from foreman.workflow.phases.plan_feedback import run_plan_feedback
from foreman.workflow.phases.task_feedback import run_task_feedback
from foreman.workflow.phases.task_splitting import run_task_splitting
from foreman.workflow.phases.user_feedback import run_user_feedback

__all__ = [
    "run_decision_cards_generation",
    "run_decision_gate",
    "run_finalize",
    "run_plan_feedback",
    "run_task_feedback",
    "run_task_splitting",
    "run_ticket_ingestion",
    "run_user_feedback",
    "sanitize_markdown_paths",
]
