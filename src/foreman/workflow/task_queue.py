from __future__ import annotations

import logging
import re
from pathlib import Path

from foreman.workflow.runtime import WorkflowRuntime

logger = logging.getLogger(__name__)

TASK_FILE_PATTERN = re.compile(r"^task-(\d+)-.*\.md$")
_TASK_PARTS_PATTERN = re.compile(r"^task-(\d+)-(.+?)(?:-remediation-(\d+))?\.md$")


def _task_key(name: str) -> tuple[int, str, int] | None:
    match = _TASK_PARTS_PATTERN.match(name)
    if match is None:
        return None
    return int(match.group(1)), match.group(2), int(match.group(3) or 0)


def discover_tasks(run_dir: Path) -> list[Path]:
    """Runnable task files in ``run_dir``, latest remediation only, closed tasks dropped."""
    try:
        names = sorted(entry.name for entry in run_dir.iterdir() if entry.is_file())
    except FileNotFoundError:
        return []
    name_set = set(names)

    latest: dict[tuple[int, str], tuple[int, str]] = {}
    closed: set[tuple[int, str]] = set()
    for name in names:
        if not TASK_FILE_PATTERN.match(name):
            continue
        key = _task_key(name)
        if key is None:
            continue
        number, desc, remediation = key
        base = (number, desc)
        if f"outcome-{name}" in name_set:
            closed.add(base)
        current = latest.get(base)
        if current is None or remediation > current[0]:
            latest[base] = (remediation, name)

    runnable = [
        (base[0], remediation, name)
        for base, (remediation, name) in latest.items()
        if base not in closed
    ]
    runnable.sort(key=lambda item: (item[0], item[1]))
    return [run_dir / name for _, _, name in runnable]


def next_task_number(run_dir: Path) -> int:
    try:
        names = [entry.name for entry in run_dir.iterdir()]
    except (FileNotFoundError, NotADirectoryError):
        return 1
    numbers = [int(match.group(1)) for name in names if (match := TASK_FILE_PATTERN.match(name))]
    return max(numbers) + 1 if numbers else 1


class TaskQueue:
    """Ordered task paths persisted in the workflow state; every change is saved."""

    def __init__(self, runtime: WorkflowRuntime) -> None:
        self.runtime = runtime

    @property
    def items(self) -> list[str]:
        return list(self.runtime.workflow.task_queue)

    def _set(self, queue: list[str]) -> None:
        self.runtime.workflow.task_queue = list(queue)
        self.runtime.save()

    def load(self, run_dir: Path) -> list[str]:
        existing = self.items
        if existing:
            return existing
        discovered = [str(path) for path in discover_tasks(run_dir)]
        self._set(discovered)
        logger.info("Loaded %d task(s) from %s", len(discovered), run_dir)
        return discovered

    def push_front(self, task_file: Path | str) -> None:
        self._set([str(task_file), *self.items])

    def pop_current(self) -> str | None:
        queue = self.items
        if not queue:
            return None
        self._set(queue[1:])
        return queue[0]

    def has_more(self) -> bool:
        return bool(self.runtime.workflow.task_queue)

    def current(self) -> str | None:
        queue = self.runtime.workflow.task_queue
        return queue[0] if queue else None
