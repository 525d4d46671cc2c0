from __future__ import annotations

import json
import logging
import os
import re
import signal
import subprocess
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from foreman.state.models import utcnow_iso
from foreman.state.store import write_json_atomic

logger = logging.getLogger(__name__)

PROCESS_NAME_PATTERN = re.compile(r"\bforeman\b", re.IGNORECASE)
KILL_POLL_INTERVAL_SECONDS = 0.1
KILL_WAIT_SECONDS = 2.0


class RunLockError(RuntimeError):
    """Raised when a run lock is held by a live process."""

    def __init__(self, message: str, *, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class ProcessKillRefusedError(RuntimeError):
    """Raised when a pid does not look like one of our own processes."""


@dataclass(slots=True)
class RunLock:
    pid: int
    started_at: str
    run_id: str
    state_file_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "started_at": self.started_at,
            "run_id": self.run_id,
            "state_file_path": self.state_file_path,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> RunLock | None:
        if not isinstance(payload, dict):
            return None
        pid = payload.get("pid")
        if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
            return None
        fields = ("started_at", "run_id", "state_file_path")
        if not all(isinstance(payload.get(name), str) for name in fields):
            return None
        return cls(
            pid=pid,
            started_at=payload["started_at"],
            run_id=payload["run_id"],
            state_file_path=payload["state_file_path"],
        )


def is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def read_run_lock(path: Path) -> RunLock | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return RunLock.from_dict(json.loads(raw))
    except json.JSONDecodeError:
        return None


def acquire_run_lock(
    path: Path,
    run_id: str,
    state_file_path: str,
    *,
    pid: int | None = None,
    is_alive: Callable[[int], bool] = is_process_alive,
) -> RunLock:
    existing = read_run_lock(path)
    if existing is not None:
        if is_alive(existing.pid):
            raise RunLockError(f"Run is active (pid {existing.pid}).", pid=existing.pid)
        logger.info("Removing stale run lock %s (pid %s)", path, existing.pid)
        path.unlink(missing_ok=True)
    elif path.exists():
        logger.info("Removing unreadable run lock %s", path)
        path.unlink(missing_ok=True)

    lock = RunLock(
        pid=pid if pid is not None else os.getpid(),
        started_at=utcnow_iso(),
        run_id=run_id,
        state_file_path=state_file_path,
    )
    write_json_atomic(path, lock.to_dict())
    logger.info("Acquired run lock for %s (pid %s)", run_id, lock.pid)
    return lock


def release_run_lock(path: Path) -> None:
    path.unlink(missing_ok=True)
    logger.info("Released run lock %s", path)


def looks_like_process_name(name: str) -> bool:
    return bool(PROCESS_NAME_PATTERN.search(name or ""))


def get_process_name(pid: int) -> str:
    if sys.platform == "win32":
        return ""
    try:
        proc = subprocess.run(
            ["ps", "-p", str(pid), "-o", "comm="],
            text=True,
            capture_output=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return ""
    if proc.returncode != 0:
        return ""
    return proc.stdout.strip()


def _send_signal(pid: int, sig: int) -> None:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        pass


def kill_process(
    pid: int,
    *,
    is_alive: Callable[[int], bool] = is_process_alive,
    get_name: Callable[[int], str] = get_process_name,
    send_signal: Callable[[int, int], None] = _send_signal,
    wait_seconds: float = KILL_WAIT_SECONDS,
    poll_interval: float = KILL_POLL_INTERVAL_SECONDS,
) -> bool:
    """Terminate a foreign run owner; returns True once the pid is gone."""
    if not is_alive(pid):
        return True
    name = get_name(pid)
    if not looks_like_process_name(name):
        raise ProcessKillRefusedError(
            f"Refusing to kill pid {pid}: process name {name!r} does not look like foreman."
        )
    send_signal(pid, signal.SIGTERM)
    deadline = time.monotonic() + wait_seconds
    while time.monotonic() < deadline:
        if not is_alive(pid):
            return True
        time.sleep(poll_interval)
    kill_signal = getattr(signal, "SIGKILL", signal.SIGTERM)
    send_signal(pid, kill_signal)
    time.sleep(poll_interval)
    return not is_alive(pid)
