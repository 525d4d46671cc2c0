from __future__ import annotations

import logging
import shlex
from abc import ABC, abstractmethod
from pathlib import Path

from foreman.exec import AsyncExec

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 120


class WorktreeError(RuntimeError):
    """Raised when git worktree provisioning fails."""


class WorktreeAdapter(ABC):
    @abstractmethod
    async def get_main_repo_path(self, cwd: Path) -> Path:
        """Resolve the top level of the repository containing ``cwd``."""

    @abstractmethod
    async def create_worktree(
        self,
        main_repo_path: Path,
        base_branch: str,
        branch_name: str,
        worktrees_dir: Path,
    ) -> Path:
        """Create a worktree on a new branch and return its path."""

    @abstractmethod
    async def remove_worktree(
        self,
        main_repo_path: Path,
        worktree_path: Path,
        branch_name: str | None = None,
        delete_branch: bool = False,
    ) -> None:
        """Remove a worktree and optionally its branch."""


class GitWorktreeAdapter(WorktreeAdapter):
    def __init__(self, exec_port: AsyncExec) -> None:
        self.exec_port = exec_port

    async def _git(self, args: list[str], cwd: Path, *, check: bool = True) -> str:
        result = await self.exec_port.run(
            ["git", "--no-pager", *args],
            cwd,
            timeout_seconds=GIT_TIMEOUT_SECONDS,
            label=f"git {args[0]}",
        )
        if check and not result.ok:
            raise WorktreeError(
                f"git {' '.join(args)} failed: {result.stderr.strip() or result.stdout.strip()}"
            )
        return result.stdout.strip()

    async def get_main_repo_path(self, cwd: Path) -> Path:
        common_dir = await self._git(
            ["rev-parse", "--path-format=absolute", "--git-common-dir"], cwd
        )
        if common_dir.endswith("/.git") or common_dir.endswith("\\.git"):
            return Path(common_dir).parent.resolve()
        return Path(await self._git(["rev-parse", "--show-toplevel"], cwd)).resolve()

    async def create_worktree(
        self,
        main_repo_path: Path,
        base_branch: str,
        branch_name: str,
        worktrees_dir: Path,
    ) -> Path:
        worktree_path = worktrees_dir / branch_name
        if worktree_path.exists():
            raise WorktreeError(f"Worktree path already exists: {worktree_path}")
        worktrees_dir.mkdir(parents=True, exist_ok=True)
        await self._git(
            ["worktree", "add", "-b", branch_name, str(worktree_path), base_branch],
            main_repo_path,
        )
        logger.info("Created worktree %s on branch %s", worktree_path, branch_name)
        return worktree_path.resolve()

    async def remove_worktree(
        self,
        main_repo_path: Path,
        worktree_path: Path,
        branch_name: str | None = None,
        delete_branch: bool = False,
    ) -> None:
        if worktree_path.exists():
            await self._git(["worktree", "remove", "--force", str(worktree_path)], main_repo_path)
        await self._git(["worktree", "prune"], main_repo_path, check=False)
        if delete_branch and branch_name:
            await self._git(["branch", "-D", branch_name], main_repo_path, check=False)
        logger.info("Removed worktree %s", worktree_path)


async def run_hook_commands(
    exec_port: AsyncExec,
    commands: list[str],
    cwd: Path,
    *,
    hook: str,
    env: dict[str, str] | None = None,
    timeout_seconds: float = 10 * 60,
) -> None:
    """Run configured ``after_create``/``before_cleanup`` commands in order; fail fast."""
    for command in commands:
        argv = shlex.split(command)
        if not argv:
            continue
        logger.info("Running %s hook: %s", hook, command)
        result = await exec_port.run(
            argv, cwd, env=env, timeout_seconds=timeout_seconds, label=f"{hook}:{argv[0]}"
        )
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip()
            raise WorktreeError(f"{hook} command failed ({command}): {detail}")
