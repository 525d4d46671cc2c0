from __future__ import annotations

import logging
from pathlib import Path

from foreman.workflow.paths import file_has_content, summary_file_path
from foreman.workflow.reminders import task_reminder
from foreman.workflow.runtime import WorkflowRuntime
from foreman.workflow.sessions import run_role, session_micro_retry

logger = logging.getLogger(__name__)

REPORT_SUMMARY_MAX_CHARS = 6000
REVIEW_SUMMARY_MAX_CHARS = 3000
MAX_ATTEMPTS = 2
SUMMARY_TIMEOUT_SECONDS = 2 * 60

REPORT_SUMMARY_INSTRUCTIONS = [
    "Write a focused executive summary for the tech lead.",
    f"Keep it <= {REPORT_SUMMARY_MAX_CHARS} characters.",
    "Use headings: ## Problems & Risks, ## Work Completed / Evidence, ## Next Steps / Decisions.",
]
REVIEW_SUMMARY_INSTRUCTIONS = [
    "Produce a very short bullet summary for the tech lead.",
    f"Keep it <= {REVIEW_SUMMARY_MAX_CHARS} characters.",
]


def _discard(path: Path) -> None:
    path.unlink(missing_ok=True)


async def summarize_artifact(
    runtime: WorkflowRuntime,
    source_path: Path,
    *,
    phase_name: str,
    instructions: list[str],
    max_chars: int,
) -> Path | None:
    """Condense an artifact into ``summary-<name>``; None when no usable summary exists."""
    summary_path = summary_file_path(source_path)
    if file_has_content(summary_path):
        return summary_path
    if not file_has_content(source_path):
        return None

    session_id: str | None = None
    for _ in range(MAX_ATTEMPTS):
        prompt = "\n".join(
            [
                task_reminder(runtime),
                "<INSTRUCTIONS>",
                *instructions,
                f"Save it to: {summary_path}",
                "Reply <OK> when done.",
                "</INSTRUCTIONS>",
                "<INPUT>",
                str(source_path),
                "</INPUT>",
                "<OUTPUT>",
                str(summary_path),
                "</OUTPUT>",
                "<system-reminder>Use the exact paths given to you to read and write the "
                "input and output files.</system-reminder>",
            ]
        )
        result = await run_role(
            runtime,
            "summarize",
            phase_name,
            prompt,
            session_id=session_id,
            timeout_seconds=SUMMARY_TIMEOUT_SECONDS,
        )
        session_id = result.session_id or session_id
        if not result.success:
            logger.info("%s failed: %s", phase_name, result.error)
            _discard(summary_path)
            return None
        if not file_has_content(summary_path):
            _discard(summary_path)
            continue

        if len(summary_path.read_text(encoding="utf-8")) <= max_chars:
            return summary_path

        rewritten = await session_micro_retry(
            runtime,
            f"Rewrite {summary_path} to be <= {max_chars} characters.",
            session_id,
            "summarize",
        )
        if (
            rewritten
            and file_has_content(summary_path)
            and len(summary_path.read_text(encoding="utf-8")) <= max_chars
        ):
            return summary_path
        break

    _discard(summary_path)
    return None


async def summarize_report(runtime: WorkflowRuntime, report_path: Path) -> Path | None:
    return await summarize_artifact(
        runtime,
        report_path,
        phase_name="summarize-report",
        instructions=REPORT_SUMMARY_INSTRUCTIONS,
        max_chars=REPORT_SUMMARY_MAX_CHARS,
    )


async def summarize_review(runtime: WorkflowRuntime, review_path: Path) -> Path | None:
    return await summarize_artifact(
        runtime,
        review_path,
        phase_name="summarize-review",
        instructions=REVIEW_SUMMARY_INSTRUCTIONS,
        max_chars=REVIEW_SUMMARY_MAX_CHARS,
    )
