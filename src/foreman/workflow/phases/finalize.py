from __future__ import annotations

import logging
from pathlib import Path

from foreman.workflow.git_ops import commit_all, git
from foreman.workflow.paths import (
    file_has_content,
    final_report_path,
    plan_file_path,
    run_dir,
    to_worktree_path,
)
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.sessions import ensure_lead_ok, run_lead, session_micro_retry

logger = logging.getLogger(__name__)

FINALIZE_TIMEOUT_SECONDS = 15 * 60


def sanitize_markdown_paths(path: Path, prefixes: list[str]) -> bool:
    """Strip absolute path prefixes from a markdown file; True when it changed."""
    raw = path.read_text(encoding="utf-8")
    cleaned = raw
    for prefix in prefixes:
        if not prefix:
            continue
        normalized = prefix if prefix.endswith("/") else f"{prefix}/"
        cleaned = cleaned.replace(normalized, "")
    if cleaned == raw:
        return False
    path.write_text(cleaned, encoding="utf-8")
    return True


def outcome_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        entry
        for entry in directory.iterdir()
        if entry.name.startswith("outcome-task-") and entry.name.endswith(".md")
    )


def build_finalize_prompt(runtime: WorkflowRuntime, report_path: Path) -> str:
    state = runtime.state
    outcomes = outcome_files(run_dir(state))
    lines = [
        tech_lead_reminder(runtime),
        "<INSTRUCTIONS>",
        "All tasks have been executed and verified.",
        "Write a final report summarizing what was done, what changed, and any follow-ups.",
        "Read the plan and the task outcomes before writing the report.",
        f"Create the final report file at: {report_path}",
        "Use headings: ## Summary, ## Changes, ## Verification, ## Follow-ups.",
        "Reply <OK> when done.",
        "</INSTRUCTIONS>",
        "<INPUT_PLAN>",
        str(plan_file_path(state)),
        "</INPUT_PLAN>",
    ]
    if outcomes:
        lines.extend(["<INPUT_OUTCOMES>", *(str(path) for path in outcomes), "</INPUT_OUTCOMES>"])
    lines.extend(
        [
            "<OUTPUT>",
            str(report_path),
            "</OUTPUT>",
            "<system-reminder>Use the exact paths given to you to read and write the input "
            "and output files.</system-reminder>",
        ]
    )
    return "\n".join(lines)


async def _changed_markdown(runtime: WorkflowRuntime) -> list[Path]:
    names: set[str] = set()
    for args in (
        ["diff", "--name-only"],
        ["diff", "--cached", "--name-only"],
        ["ls-files", "--others", "--exclude-standard"],
    ):
        result = await git(runtime, args, timeout_seconds=30)
        if result.ok:
            names.update(line.strip() for line in result.stdout.splitlines() if line.strip())
    return [runtime.worktree_path / name for name in sorted(names) if name.endswith(".md")]


async def run_finalize(runtime: WorkflowRuntime) -> None:
    """Write final-report.md, scrub absolute paths, and commit what is left."""
    state = runtime.state
    report_path = final_report_path(state)

    result = await run_lead(
        runtime,
        "finalize",
        build_finalize_prompt(runtime, report_path),
        timeout_seconds=FINALIZE_TIMEOUT_SECONDS,
    )
    if not result.success:
        raise WorkflowError(result.error or "Finalize failed.")
    if not await ensure_lead_ok(
        runtime, result, "Reply with <OK> only when finalization is complete."
    ):
        raise WorkflowError("Finalize missing <OK> sentinel.")

    if not file_has_content(report_path) and file_has_content(to_worktree_path(state, report_path)):
        runtime.reminders.tech_lead.append(
            f"You wrote workflow artifacts under the worktree. Create the final report at: "
            f"{report_path}"
        )
        await session_micro_retry(
            runtime,
            f"Move or recreate the final report at {report_path} and reply with <OK>.",
            runtime.workflow.tech_lead_session_id,
            "lead",
        )
    if not file_has_content(report_path):
        raise WorkflowError(f"Final report missing or empty: {report_path}")

    prefixes = [state.worktree.path, state.main_repo_path]
    sanitize_markdown_paths(report_path, prefixes)
    for path in await _changed_markdown(runtime):
        if path.is_file():
            sanitize_markdown_paths(path, prefixes)

    await commit_all(runtime, f"Finalize: {state.ticket.slug} ({state.run_id})")
    logger.info("Final report written to %s", report_path)
