from foreman.workflow.orchestrator import MAX_STEPS, run_workflow
from foreman.workflow.runtime import PendingReminders, WorkflowError, WorkflowRuntime

__all__ = [
    "MAX_STEPS",
    "PendingReminders",
    "WorkflowError",
    "WorkflowRuntime",
    "run_workflow",
]
