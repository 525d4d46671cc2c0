from __future__ import annotations

import logging

from foreman.adapters.quality import QualityGate
from foreman.config import QualityCheck
from foreman.workflow.integration.remediation import create_remediation_task, format_check_failures
from foreman.workflow.integration.types import StepResult
from foreman.workflow.runtime import WorkflowRuntime

logger = logging.getLogger(__name__)


async def _run_gate(
    runtime: WorkflowRuntime,
    gate: QualityGate,
    checks: list[QualityCheck],
    kind: str,
    label: str,
) -> StepResult:
    result = await gate.run_checks(runtime.worktree_path, checks)
    if result.ok:
        logger.info("Integration %s passed (%d checks)", label, len(result.results))
        return StepResult("success")
    logger.info(
        "Integration %s failed: %s", label, ", ".join(item.name for item in result.failures)
    )
    task = await create_remediation_task(
        runtime, kind, format_check_failures(result.results, label)
    )
    if task.created:
        return StepResult("tasks-created")
    return StepResult("aborted", "Failed to create remediation task")


async def run_quality_step(runtime: WorkflowRuntime) -> StepResult:
    quality = runtime.config.quality
    if quality is None or not quality.checks:
        return StepResult("skipped", "No quality checks configured")
    if runtime.quality_gate is None:
        return StepResult("aborted", "Quality checks configured but no quality gate available")
    if not await runtime.prompt.confirm("Integration: run quality gate checks?", default=True):
        return StepResult("skipped", "User skipped quality gate")
    return await _run_gate(runtime, runtime.quality_gate, quality.checks, "quality-check", "quality")


async def run_integration_tests_step(runtime: WorkflowRuntime) -> StepResult:
    integration = runtime.config.integration
    if integration is None or not integration.checks:
        return StepResult("skipped", "No integration checks configured")
    gate = runtime.quality_gate if integration.use_quality_adapter else None
    if gate is None:
        return StepResult("aborted", "Integration checks configured but no adapter available")
    if not await runtime.prompt.confirm("Integration: run integration checks?", default=True):
        return StepResult("skipped", "User skipped integration checks")
    return await _run_gate(runtime, gate, integration.checks, "integration-tests", "integration")
