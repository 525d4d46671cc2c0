from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

KILL_SWEEP_DELAY_SECONDS = 0.25


@dataclass(slots=True)
class ProcessEntry:
    pid: int
    label: str
    cmd: list[str] = field(default_factory=list)
    cwd: str | None = None
    detached: bool = False


def _signal_pid(pid: int, sig: int, *, group: bool) -> None:
    try:
        if group and hasattr(os, "killpg"):
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.debug("No permission to signal pid %s", pid)


class ProcessRegistry:
    """Tracks subprocesses spawned by a run for bulk termination."""

    def __init__(self) -> None:
        self._entries: dict[int, ProcessEntry] = {}
        self._lock = threading.Lock()

    def register(self, entry: ProcessEntry) -> Callable[[], None]:
        with self._lock:
            self._entries[entry.pid] = entry
        logger.debug("Registered pid %s (%s)", entry.pid, entry.label)

        def _unregister() -> None:
            with self._lock:
                current = self._entries.get(entry.pid)
                if current is entry:
                    del self._entries[entry.pid]

        return _unregister

    def entries(self) -> list[ProcessEntry]:
        with self._lock:
            return list(self._entries.values())

    def kill_all(self, reason: str, *, sweep_delay: float = KILL_SWEEP_DELAY_SECONDS) -> int:
        entries = self.entries()
        if not entries:
            return 0
        logger.info("Terminating %d subprocess(es): %s", len(entries), reason)
        use_groups = sys.platform != "win32"
        for entry in entries:
            _signal_pid(entry.pid, signal.SIGTERM, group=use_groups and entry.detached)

        def _sweep() -> None:
            for entry in self.entries():
                _signal_pid(entry.pid, signal.SIGKILL, group=use_groups and entry.detached)

        if sweep_delay <= 0:
            _sweep()
        else:
            timer = threading.Timer(sweep_delay, _sweep)
            timer.daemon = True
            timer.start()
        return len(entries)


def install_signal_handlers(
    registry: ProcessRegistry,
    *,
    exit_fn: Callable[[int], None] = sys.exit,
) -> Callable[[], None]:
    """Kill registered children on SIGINT/SIGTERM, exiting with 130/143."""
    exit_codes = {signal.SIGINT: 130, signal.SIGTERM: 143}
    previous: dict[int, object] = {}

    def _handler(signum: int, _frame: object) -> None:
        if registry.kill_all(f"received signal {signal.Signals(signum).name}"):
            time.sleep(KILL_SWEEP_DELAY_SECONDS + 0.05)
        exit_fn(exit_codes.get(signum, 1))

    for sig in exit_codes:
        previous[sig] = signal.signal(sig, _handler)

    def _restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return _restore
