from foreman.workflow.steps.decision import DecisionResult, TaskOutcomeInputs, decide_task
from foreman.workflow.steps.execution import TaskExecutionResult, execute_task
from foreman.workflow.steps.quality import run_quality_check
from foreman.workflow.steps.review import review_task
from foreman.workflow.steps.summarize import summarize_report, summarize_review

__all__ = [
    "DecisionResult",
    "TaskExecutionResult",
    "TaskOutcomeInputs",
    "decide_task",
    "execute_task",
    "review_task",
    "run_quality_check",
    "summarize_report",
    "summarize_review",
]
