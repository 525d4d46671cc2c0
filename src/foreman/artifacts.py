from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from foreman.config import ForemanConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ArtifactPaths:
    root_dir: Path
    tickets_dir: Path
    runs_dir: Path
    logs_dir: Path
    states_dir: Path
    locks_dir: Path
    sessions_dir: Path

    def all_dirs(self) -> list[Path]:
        return [
            self.tickets_dir,
            self.runs_dir,
            self.logs_dir,
            self.states_dir,
            self.locks_dir,
            self.sessions_dir,
        ]


def resolve_artifact_paths(main_repo_path: Path, artifact_root: str = ".foreman") -> ArtifactPaths:
    root_dir = (main_repo_path / artifact_root).resolve()
    return ArtifactPaths(
        root_dir=root_dir,
        tickets_dir=root_dir / "tickets",
        runs_dir=root_dir / "runs",
        logs_dir=root_dir / "logs",
        states_dir=root_dir / "states",
        locks_dir=root_dir / "locks",
        sessions_dir=root_dir / "sessions",
    )


def ensure_artifact_dirs(paths: ArtifactPaths) -> None:
    for directory in paths.all_dirs():
        directory.mkdir(parents=True, exist_ok=True)


def ensure_gitignore_has_dir(main_repo_path: Path, dir_path: Path) -> bool:
    """Append ``dir_path`` to .gitignore unless an equivalent entry exists."""
    try:
        rel = os.path.relpath(dir_path.resolve(), main_repo_path.resolve())
    except ValueError:
        return False
    if not rel or rel == "." or rel.startswith(".."):
        return False
    rel_norm = rel.replace("\\", "/")
    ignore_line = f"{rel_norm}/"
    gitignore_path = main_repo_path / ".gitignore"
    existing = gitignore_path.read_text(encoding="utf-8") if gitignore_path.exists() else ""

    equivalents = {
        ignore_line,
        rel_norm,
        f"{rel_norm}/**",
        f"/{rel_norm}/",
        f"/{rel_norm}",
        f"/{rel_norm}/**",
    }
    if any(line.strip() in equivalents for line in existing.splitlines()):
        return False

    updated = existing
    if updated and not updated.endswith("\n"):
        updated += "\n"
    if updated and not updated.endswith("\n\n"):
        updated += "\n"
    updated += ignore_line + "\n"
    gitignore_path.write_text(updated, encoding="utf-8")
    logger.info("Added %s to %s", ignore_line, gitignore_path)
    return True


def ensure_repo_setup(main_repo_path: Path, config: ForemanConfig) -> tuple[ArtifactPaths, Path]:
    paths = resolve_artifact_paths(main_repo_path, config.paths.artifact_root)
    ensure_artifact_dirs(paths)
    ensure_gitignore_has_dir(main_repo_path, paths.root_dir)

    worktrees_dir = (main_repo_path / config.worktree.worktrees_dir).resolve()
    worktrees_dir.mkdir(parents=True, exist_ok=True)
    ensure_gitignore_has_dir(main_repo_path, worktrees_dir)
    return paths, worktrees_dir
