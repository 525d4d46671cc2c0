from __future__ import annotations

import logging
import re
from pathlib import Path

from foreman.workflow.git_ops import commit_all, discard_uncommitted
from foreman.workflow.paths import (
    outcome_file_path,
    report_file_path,
    review_file_path,
    summary_file_path,
)
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.steps import (
    TaskOutcomeInputs,
    decide_task,
    execute_task,
    review_task,
    run_quality_check,
    summarize_report,
    summarize_review,
)
from foreman.workflow.task_metadata import get_base_task_info
from foreman.workflow.task_queue import TaskQueue

logger = logging.getLogger(__name__)


def _read_optional(path: Path | None) -> str | None:
    if path is None:
        return None
    return path.read_text(encoding="utf-8")


def _clear_task_artifacts(runtime: WorkflowRuntime, task_file: Path) -> None:
    for artifact in (
        report_file_path(runtime.state, task_file),
        review_file_path(runtime.state, task_file),
    ):
        summary_file_path(artifact).unlink(missing_ok=True)
        artifact.unlink(missing_ok=True)
    outcome_file_path(runtime.state, task_file).unlink(missing_ok=True)


def _reset_failed_cycle(runtime: WorkflowRuntime, directory: Path, task_file: Path) -> Path:
    """Remove the base task's remediation files and every artifact of the failed cycle.

    Returns the base task path, which restarts with a fresh remediation budget.
    """
    info = get_base_task_info(task_file)
    remediation = re.compile(rf"^{re.escape(info.base_task_name)}-remediation-\d+\.md$")
    for entry in sorted(directory.iterdir()):
        if remediation.match(entry.name):
            _clear_task_artifacts(runtime, entry)
            entry.unlink()
    base_task = directory / info.base_task_path.name
    _clear_task_artifacts(runtime, base_task)
    _clear_task_sessions(runtime, base_task)
    return base_task


def _clear_task_sessions(runtime: WorkflowRuntime, task_file: Path) -> None:
    key = str(get_base_task_info(task_file).base_task_path)
    workflow = runtime.workflow
    workflow.task_agent_sessions.pop(key, None)
    workflow.reviewer_sessions.pop(key, None)
    runtime.save()


async def run_task_loop(runtime: WorkflowRuntime, run_dir: Path) -> None:
    """Execute, check, review, summarize and decide each queued task until none remain."""
    queue = TaskQueue(runtime)
    queue.load(run_dir)

    while queue.has_more():
        current = queue.current()
        if current is None:
            break
        task_file = Path(current)

        execution = await execute_task(runtime, task_file)
        if execution is None:
            raise WorkflowError(f"Task execution failed: {task_file}")

        quality_passed = await run_quality_check(
            runtime, task_file, execution.report_path, execution.session_id
        )

        review_path = await review_task(runtime, task_file, execution.report_path)
        if review_path is None:
            raise WorkflowError(f"Task review failed: {task_file}")

        report_summary = await summarize_report(runtime, execution.report_path)
        review_summary = await summarize_review(runtime, review_path)

        decision = await decide_task(
            runtime,
            task_file,
            TaskOutcomeInputs(
                report_path=execution.report_path,
                review_path=review_path,
                report_summary=_read_optional(report_summary),
                review_summary=_read_optional(review_summary),
                quality_passed=quality_passed,
            ),
        )
        if decision is None:
            if not await runtime.prompt.confirm("Tech lead decision failed. Retry?", default=True):
                raise WorkflowError("Tech lead decision failed.")
            continue

        if decision.decision == "remediation":
            queue.pop_current()
            queue.push_front(decision.output_path)
            continue

        if decision.decision == "failed":
            logger.info(
                "Discarding work for %s and restarting %s",
                task_file.name,
                decision.output_path.name,
            )
            await discard_uncommitted(runtime)
            base_task = _reset_failed_cycle(runtime, run_dir, task_file)
            queue.pop_current()
            queue.push_front(base_task)
            continue

        await commit_all(runtime, f"Accept task {task_file.name}")
        queue.pop_current()
        _clear_task_sessions(runtime, task_file)
