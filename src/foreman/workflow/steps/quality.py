from __future__ import annotations

import logging
from pathlib import Path

from foreman.adapters.quality import QualityResult
from foreman.workflow.reminders import task_reminder
from foreman.workflow.runtime import WorkflowRuntime
from foreman.workflow.sessions import run_role

logger = logging.getLogger(__name__)

MAX_FIX_ATTEMPTS = 2
FIX_TIMEOUT_SECONDS = 20 * 60


def _failure_lines(result: QualityResult) -> str:
    return "\n".join(f"- {item.name}" for item in result.failures)


async def run_quality_check(
    runtime: WorkflowRuntime,
    task_file: Path,
    report_path: Path,
    session_id: str | None = None,
) -> bool:
    """Run configured checks with bounded fix attempts; failures are only recorded."""
    quality = runtime.config.quality
    if quality is None or not quality.checks or runtime.quality_gate is None:
        return True

    gate = runtime.quality_gate
    result = await gate.run_checks(runtime.worktree_path, quality.checks)
    attempt = 0
    while not result.ok and attempt < MAX_FIX_ATTEMPTS:
        attempt += 1
        logger.info("Quality checks failed for %s; fix attempt %d", task_file.name, attempt)
        prompt = "\n".join(
            [
                task_reminder(runtime),
                "The following quality checks failed after task execution. Fix all issues:",
                _failure_lines(result) or "(unknown failures)",
                "",
                f"Task: {task_file}",
                f"Report: {report_path}",
                "",
                f"Append a section to {report_path} describing the fixes you made.",
                "Reply <OK> when done.",
                "",
            ]
        )
        fix = await run_role(
            runtime,
            "task",
            "quality-fix",
            prompt,
            session_id=session_id,
            timeout_seconds=FIX_TIMEOUT_SECONDS,
        )
        if not fix.success:
            break
        result = await gate.run_checks(runtime.worktree_path, quality.checks)

    unresolved = _failure_lines(result)
    if not result.ok and unresolved:
        with report_path.open("a", encoding="utf-8") as handle:
            handle.write(f"\n\n---\n\n## Quality Gate Failures (Unresolved)\n\n{unresolved}\n")
        logger.warning("Unresolved quality failures for %s", task_file.name)
    return result.ok
