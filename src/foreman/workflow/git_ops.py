from __future__ import annotations

import logging
import time
from pathlib import Path

from foreman.exec import ExecResult
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 2 * 60


def _detail(result: ExecResult) -> str:
    return (result.stderr or result.stdout).strip()


async def git(
    runtime: WorkflowRuntime,
    args: list[str],
    *,
    cwd: Path | None = None,
    timeout_seconds: float = GIT_TIMEOUT_SECONDS,
) -> ExecResult:
    return await runtime.exec.run(
        ["git", *args],
        cwd or runtime.worktree_path,
        timeout_seconds=timeout_seconds,
        label=f"git-{args[0]}",
    )


async def git_checked(runtime: WorkflowRuntime, args: list[str], **kwargs) -> ExecResult:
    result = await git(runtime, args, **kwargs)
    if not result.ok:
        raise WorkflowError(f"git {' '.join(args)} failed: {_detail(result)}")
    return result


async def is_dirty(runtime: WorkflowRuntime) -> bool:
    status = await git(runtime, ["status", "--porcelain=v1"])
    return status.ok and bool(status.stdout.strip())


async def stash_if_dirty(runtime: WorkflowRuntime, reason: str) -> str | None:
    """Best-effort stash of uncommitted work; returns the stash message used."""
    if not await is_dirty(runtime):
        return None
    marker = f"foreman:auto-stash:{runtime.state.run_id}:{int(time.time() * 1000)}:{reason}"
    stash = await git(runtime, ["stash", "push", "-u", "-m", marker])
    if not stash.ok:
        logger.warning("git stash failed: %s", _detail(stash))
        return None
    logger.info("Stashed uncommitted work as %s", marker)
    return marker


async def discard_uncommitted(runtime: WorkflowRuntime) -> None:
    await stash_if_dirty(runtime, "discard-uncommitted")
    await git_checked(runtime, ["reset", "--hard"])
    await git_checked(runtime, ["clean", "-fd"])


async def commit_all(runtime: WorkflowRuntime, message: str) -> bool:
    """Stage everything and commit when the index differs; True if a commit was made."""
    await git_checked(runtime, ["add", "-A"])
    diff = await git(runtime, ["diff", "--cached", "--quiet"])
    if diff.timed_out:
        raise WorkflowError("git diff --cached timed out")
    if diff.exit_code == 0:
        return False
    if diff.exit_code != 1:
        raise WorkflowError(f"git diff --cached failed: {_detail(diff)}")
    await git_checked(runtime, ["commit", "-m", message])
    logger.info("Committed: %s", message)
    return True
