from __future__ import annotations

import logging
import shutil
from pathlib import Path

from foreman.adapters.worktree import WorktreeAdapter, run_hook_commands
from foreman.config import ForemanConfig
from foreman.exec import AsyncExec
from foreman.prompts import PromptAdapter
from foreman.state import RunState

logger = logging.getLogger(__name__)


async def run_cleanup(
    state: RunState,
    config: ForemanConfig,
    prompt: PromptAdapter,
    worktree_adapter: WorktreeAdapter,
    exec_port: AsyncExec,
    *,
    force: bool = False,
    delete_branch: bool = False,
    delete_artifacts: bool = False,
) -> bool:
    """Remove a run's worktree (and optionally branch and run dir); False if declined."""
    worktree_path = Path(state.worktree.path)
    if not force and not await prompt.confirm(
        f"Remove worktree at {worktree_path}?", default=False
    ):
        logger.info("Cleanup cancelled.")
        return False

    if config.worktree.before_cleanup and worktree_path.exists():
        await run_hook_commands(
            exec_port,
            config.worktree.before_cleanup,
            worktree_path,
            hook="before_cleanup",
            env={**state.env, **state.test_env} or None,
        )

    await worktree_adapter.remove_worktree(
        Path(state.main_repo_path),
        worktree_path,
        branch_name=state.worktree.branch_name,
        delete_branch=delete_branch,
    )

    if delete_artifacts:
        run_dir = Path(state.artifact_root_dir) / "runs" / state.run_id
        shutil.rmtree(run_dir, ignore_errors=True)
        logger.info("Deleted run artifacts %s", run_dir)
    return True
