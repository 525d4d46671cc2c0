from __future__ import annotations

import logging
import time
from pathlib import Path

from foreman.workflow.git_ops import git
from foreman.workflow.integration.remediation import create_remediation_task
from foreman.workflow.integration.types import StepResult
from foreman.workflow.runtime import WorkflowRuntime

logger = logging.getLogger(__name__)

MERGE_TIMEOUT_SECONDS = 5 * 60
FETCH_TIMEOUT_SECONDS = 2 * 60


async def _git_path(runtime: WorkflowRuntime, name: str) -> Path | None:
    result = await git(runtime, ["rev-parse", "--git-path", name], timeout_seconds=15)
    if not result.ok or not result.stdout.strip():
        return None
    path = Path(result.stdout.strip())
    return path if path.is_absolute() else runtime.worktree_path / path


async def merge_in_progress(runtime: WorkflowRuntime) -> bool:
    merge_head = await _git_path(runtime, "MERGE_HEAD")
    return merge_head is not None and merge_head.exists()


async def has_conflicts(runtime: WorkflowRuntime) -> bool:
    result = await git(runtime, ["diff", "--name-only", "--diff-filter=U"], timeout_seconds=30)
    return result.ok and bool(result.stdout.strip())


async def autostash_if_dirty(runtime: WorkflowRuntime) -> str | None:
    """Stash local changes under a unique marker; returns the ``stash@{n}`` ref."""
    status = await git(runtime, ["status", "--porcelain=v1"], timeout_seconds=30)
    if not status.ok or not status.stdout.strip():
        return None
    marker = f"foreman-integration-autostash-{int(time.time() * 1000)}"
    stash = await git(runtime, ["stash", "push", "-u", "-m", marker], timeout_seconds=60)
    if not stash.ok:
        return None
    listing = await git(runtime, ["stash", "list", "--format=%gd:%s"], timeout_seconds=30)
    if not listing.ok:
        return None
    for line in listing.stdout.splitlines():
        if marker in line:
            ref = line.split(":", 1)[0].strip()
            return ref or None
    return None


async def restore_stash(runtime: WorkflowRuntime, ref: str) -> bool:
    applied = await git(runtime, ["stash", "apply", ref], timeout_seconds=60)
    if not applied.ok:
        return False
    dropped = await git(runtime, ["stash", "drop", ref], timeout_seconds=30)
    return dropped.ok


async def _conflict_task(runtime: WorkflowRuntime, summary: str) -> StepResult:
    task = await create_remediation_task(runtime, "merge-conflict", summary)
    if task.created:
        return StepResult("tasks-created")
    return StepResult("aborted", "Failed to create remediation task")


async def _handle_merge_in_progress(runtime: WorkflowRuntime) -> StepResult | None:
    if not await merge_in_progress(runtime):
        return None
    if await has_conflicts(runtime):
        return await _conflict_task(
            runtime,
            "A merge is already in progress and there are unresolved conflicts (diff-filter=U).",
        )
    cont = await git(
        runtime,
        ["-c", "core.editor=true", "merge", "--continue"],
        timeout_seconds=MERGE_TIMEOUT_SECONDS,
    )
    if not cont.ok:
        return await _conflict_task(
            runtime, f"Merge continuation failed:\n{cont.stderr or cont.stdout}"
        )
    logger.info("Concluded in-progress merge")
    return StepResult("success")


async def resolve_merge_target(runtime: WorkflowRuntime) -> str:
    base = runtime.state.worktree.base_branch
    await git(runtime, ["fetch", "--prune", "origin", base], timeout_seconds=FETCH_TIMEOUT_SECONDS)
    origin_ref = f"origin/{base}"
    exists = await git(runtime, ["rev-parse", "--verify", "--quiet", origin_ref], timeout_seconds=30)
    return origin_ref if exists.ok else base


async def run_merge_step(runtime: WorkflowRuntime) -> StepResult:
    base = runtime.state.worktree.base_branch
    if not await runtime.prompt.confirm(f"Integration: merge {base} into worktree?", default=True):
        return StepResult("aborted", "User aborted merge step")

    in_progress = await _handle_merge_in_progress(runtime)
    if in_progress is not None:
        return in_progress

    target = await resolve_merge_target(runtime)
    stash_ref = await autostash_if_dirty(runtime)
    merge = await git(
        runtime, ["merge", "--no-ff", "--no-edit", target], timeout_seconds=MERGE_TIMEOUT_SECONDS
    )
    if not merge.ok and target != base and not await merge_in_progress(runtime):
        merge = await git(
            runtime, ["merge", "--no-ff", "--no-edit", base], timeout_seconds=MERGE_TIMEOUT_SECONDS
        )
    if not merge.ok:
        detail = merge.stderr.strip() or merge.stdout.strip()
        summary = f"Merge failed:\n{detail}"
        if stash_ref:
            summary += f"\n\nAutostash: {stash_ref}"
        logger.info("Merge of %s failed; creating remediation task", target)
        return await _conflict_task(runtime, summary)

    if stash_ref and not await restore_stash(runtime, stash_ref):
        return await _conflict_task(
            runtime,
            f"Merge succeeded but failed to restore stash {stash_ref}. Resolve manually.",
        )
    logger.info("Merged %s into worktree", target)
    return StepResult("success")
