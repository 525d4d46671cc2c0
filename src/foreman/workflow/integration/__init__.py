from __future__ import annotations

import logging

from foreman.workflow.integration.checks import run_integration_tests_step, run_quality_step
from foreman.workflow.integration.merge import run_merge_step
from foreman.workflow.integration.remediation import RemediationTask, create_remediation_task
from foreman.workflow.integration.types import IntegrationResult, StepResult
from foreman.workflow.runtime import WorkflowRuntime

logger = logging.getLogger(__name__)

INTEGRATION_STEPS = (
    ("merge", run_merge_step),
    ("quality", run_quality_step),
    ("integration-tests", run_integration_tests_step),
)


async def run_integration(runtime: WorkflowRuntime) -> IntegrationResult:
    """Run merge, quality and integration-test steps, stopping at the first that needs work."""
    for name, step in INTEGRATION_STEPS:
        result = await step(runtime)
        logger.info("Integration step %s: %s", name, result.outcome)
        if result.outcome == "tasks-created":
            return IntegrationResult(tasks_created=True, message=result.message)
        if result.outcome == "aborted":
            return IntegrationResult(aborted=True, message=result.message)
    return IntegrationResult()


__all__ = [
    "INTEGRATION_STEPS",
    "IntegrationResult",
    "RemediationTask",
    "StepResult",
    "create_remediation_task",
    "run_integration",
    "run_integration_tests_step",
    "run_merge_step",
    "run_quality_step",
]
