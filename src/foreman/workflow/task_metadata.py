from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MAX_REMEDIATION_ATTEMPTS = 3

_ATTEMPT_PATTERN = re.compile(r"remediation-(\d+)\.md$")
_REMEDIATION_SUFFIX = re.compile(r"-remediation-\d+$")


@dataclass(slots=True, frozen=True)
class TaskBaseInfo:
    base_task_path: Path
    base_task_name: str
    attempt: int


def get_base_task_info(task_file: Path | str) -> TaskBaseInfo:
    """Strip any ``-remediation-<k>`` suffix to find the task a file descends from."""
    task_path = Path(task_file).resolve()
    match = _ATTEMPT_PATTERN.search(task_path.name)
    attempt = int(match.group(1)) if match else 0
    stem = task_path.name[:-3] if task_path.name.endswith(".md") else task_path.stem
    base_name = _REMEDIATION_SUFFIX.sub("", stem)
    return TaskBaseInfo(
        base_task_path=task_path.parent / f"{base_name}.md",
        base_task_name=base_name,
        attempt=attempt,
    )


def attempts_remaining(attempt: int, max_attempts: int = DEFAULT_MAX_REMEDIATION_ATTEMPTS) -> int:
    if max_attempts < 0:
        max_attempts = DEFAULT_MAX_REMEDIATION_ATTEMPTS
    return max(int(max_attempts) - attempt, 0)
