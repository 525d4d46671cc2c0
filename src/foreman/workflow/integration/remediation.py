from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from foreman.adapters.quality import CheckResult
from foreman.workflow.paths import file_has_content, run_dir
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowRuntime
from foreman.workflow.sessions import maybe_retry, run_lead
from foreman.workflow.task_queue import TaskQueue, next_task_number

logger = logging.getLogger(__name__)

RemediationType = Literal["merge-conflict", "quality-check", "integration-tests"]

REMEDIATION_TIMEOUT_SECONDS = 10 * 60
RETRY_LABEL = "Integration remediation task"

TYPE_TO_SLUG: dict[str, str] = {
    "merge-conflict": "integration-merge-conflicts",
    "quality-check": "quality-check-remediation",
    "integration-tests": "integration-tests-remediation",
}

_GUIDANCE: dict[str, list[str]] = {
    "merge-conflict": [
        "- Resolve merge conflicts.",
        "- Stage resolved files: git add -A",
        "- Do NOT abort or commit; leave the merge in progress.",
        "- Rerun the integration phase after conflicts are staged.",
    ],
    "quality-check": [
        "- Fix the failing quality gate checks.",
        "- Rerun the configured quality checks (or repo equivalents) if available.",
    ],
    "integration-tests": ["- Fix the issue and rerun integration safeguards."],
}


@dataclass(slots=True)
class RemediationTask:
    created: bool
    task_path: Path | None = None


def build_remediation_prompt(
    runtime: WorkflowRuntime,
    task_path: Path,
    kind: str,
    failure_summary: str,
) -> str:
    return "\n".join(
        [
            tech_lead_reminder(runtime),
            "<INSTRUCTIONS>",
            f"Create the task file `{task_path}` describing the remediation work required to "
            "unblock integration.",
            "Follow the existing task format and include acceptance criteria.",
            "Reply <OK> when done.",
            "</INSTRUCTIONS>",
            "<INPUT>",
            f"Type: {kind}",
            "",
            "Failure summary:",
            failure_summary.strip(),
            "",
            "Guidance:",
            "\n".join(_GUIDANCE.get(kind, _GUIDANCE["integration-tests"])),
            "</INPUT>",
            "<OUTPUT>",
            str(task_path),
            "</OUTPUT>",
            "<system-reminder>Use the exact paths given to you to read and write the input "
            "and output files.</system-reminder>",
        ]
    )


async def create_remediation_task(
    runtime: WorkflowRuntime,
    kind: str,
    failure_summary: str,
) -> RemediationTask:
    """Have the lead write ``task-<n>-<slug>.md`` and queue it ahead of everything else."""
    directory = run_dir(runtime.state)
    task_path = directory / f"task-{next_task_number(directory)}-{TYPE_TO_SLUG[kind]}.md"
    prompt = build_remediation_prompt(runtime, task_path, kind, failure_summary)

    while True:
        result = await run_lead(
            runtime,
            "integration-remediation-task",
            prompt,
            timeout_seconds=REMEDIATION_TIMEOUT_SECONDS,
        )
        if not result.success:
            if not await maybe_retry(runtime, RETRY_LABEL):
                return RemediationTask(created=False)
            continue
        if not file_has_content(task_path):
            task_path.unlink(missing_ok=True)
            if not await maybe_retry(runtime, RETRY_LABEL):
                return RemediationTask(created=False)
            continue
        break

    TaskQueue(runtime).push_front(task_path)
    logger.info("Queued integration remediation task %s", task_path.name)
    return RemediationTask(created=True, task_path=task_path)


def format_check_failures(results: list[CheckResult], label: str) -> str:
    failures = [item for item in results if not item.ok]
    if not failures:
        return f"(unknown {label} failures)"
    lines: list[str] = []
    for item in failures:
        lines.append(f"- {item.name}")
        tail = (item.stderr or item.stdout or "").strip()
        if tail:
            lines.append(f"  {tail.splitlines()[0]}")
    return "\n".join(lines)
