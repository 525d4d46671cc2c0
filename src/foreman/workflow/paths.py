from __future__ import annotations

import os
from pathlib import Path

from foreman.state import RunState


def run_dir(state: RunState) -> Path:
    return Path(state.artifact_root_dir) / "runs" / state.run_id


def plan_file_path(state: RunState) -> Path:
    return run_dir(state) / "plan.md"


def decision_cards_path(state: RunState) -> Path:
    return run_dir(state) / "decision-cards.json"


def final_report_path(state: RunState) -> Path:
    return run_dir(state) / "final-report.md"


def to_worktree_path(state: RunState, main_repo_file: Path) -> Path | None:
    """Map a main-repo path to the same relative location inside the worktree."""
    rel = os.path.relpath(Path(main_repo_file), Path(state.main_repo_path))
    if not rel or rel == "." or rel.startswith("..") or os.path.isabs(rel):
        return None
    return Path(state.worktree.path) / rel


def report_file_path(state: RunState, task_file: Path) -> Path:
    return run_dir(state) / f"report-{Path(task_file).name}"


def review_file_path(state: RunState, task_file: Path) -> Path:
    return run_dir(state) / f"review-{Path(task_file).name}"


def outcome_file_path(state: RunState, task_file: Path) -> Path:
    return run_dir(state) / f"outcome-{Path(task_file).name}"


def summary_file_path(artifact_path: Path) -> Path:
    artifact_path = Path(artifact_path)
    return artifact_path.with_name(f"summary-{artifact_path.name}")


def remediation_task_file_path(state: RunState, base_task_name: str, attempt: int) -> Path:
    return run_dir(state) / f"{base_task_name}-remediation-{attempt}.md"


def file_has_content(path: Path | None) -> bool:
    if path is None:
        return False
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False
