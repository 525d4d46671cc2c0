from __future__ import annotations

from foreman.workflow.paths import run_dir
from foreman.workflow.runtime import WorkflowRuntime


def _render(reminders: list[str]) -> str:
    body = "\n".join(f"- {item}" for item in reminders)
    return f"<system-reminder>\n{body}\n</system-reminder>"


def _drain(pending: list[str]) -> list[str]:
    drained = list(pending)
    pending.clear()
    return drained


def tech_lead_reminder(runtime: WorkflowRuntime) -> str:
    state = runtime.state
    artifact_root = state.artifact_root_dir
    worktree = state.worktree.path
    reminders = [
        f"All workflow artifacts MUST be written under the main repo artifact root: {artifact_root}",
        f"Plan/task markdown artifacts MUST be written under: {run_dir(state)}",
        f"Code changes MUST be made in the worktree: {worktree}",
        "Use absolute paths for any file read/write directives you provide.",
        f"When writing artifacts under {artifact_root}, reference repo files using absolute "
        f"paths into the worktree ({worktree}).",
        "When writing documentation text or code comments, use repo-root-relative paths "
        "(never absolute filesystem paths).",
        "Do NOT commit to git unless the phase explicitly instructs you to commit.",
    ]
    reminders.extend(_drain(runtime.reminders.tech_lead))
    return _render(reminders)


def task_reminder(runtime: WorkflowRuntime) -> str:
    state = runtime.state
    reminders = [
        f"Make all code changes in the worktree: {state.worktree.path}",
        f"Write reports and other workflow artifacts only to the exact paths given to you "
        f"(under {state.artifact_root_dir}).",
        "When writing documentation text or code comments, use repo-root-relative paths "
        "(never absolute filesystem paths).",
        "Do NOT commit to git.",
    ]
    reminders.extend(_drain(runtime.reminders.task))
    return _render(reminders)


def reviewer_reminder(runtime: WorkflowRuntime) -> str:
    state = runtime.state
    reminders = [
        f"Review the uncommitted changes in the worktree: {state.worktree.path}",
        "Do NOT modify code; your only output is the review file.",
        f"Write the review only to the exact path given to you (under {state.artifact_root_dir}).",
        "Do NOT commit to git.",
    ]
    reminders.extend(_drain(runtime.reminders.reviewer))
    return _render(reminders)


def reminder_for_role(runtime: WorkflowRuntime, role: str) -> str:
    if role == "lead":
        return tech_lead_reminder(runtime)
    if role == "reviewer":
        return reviewer_reminder(runtime)
    return task_reminder(runtime)
