from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any

from foreman.state.models import RunState, StateError

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON next to the target and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp-{os.getpid()}-{int(time.time() * 1000)}")
    serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    try:
        tmp_path.write_text(serialized, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise


def read_json(path: Path) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise StateError(f"State file not found: {path}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateError(f"Invalid JSON in {path}: {exc}") from exc


def load_state(path: Path) -> RunState:
    return RunState.from_dict(read_json(path))


class StateStore:
    """Owns one run's state document: load it, mutate ``state`` in place, then ``save()``."""

    def __init__(self, path: Path, state: RunState) -> None:
        self.path = path
        self.state = state

    @classmethod
    def load(cls, path: Path) -> StateStore:
        return cls(path, load_state(path))

    @classmethod
    def create(cls, path: Path, state: RunState) -> StateStore:
        store = cls(path, state)
        store.save()
        return store

    @property
    def workflow(self):
        return self.state.workflow

    def save(self) -> None:
        write_json_atomic(self.path, self.state.to_dict())
        logger.debug("Saved state %s (phase=%s)", self.path, self.state.workflow.phase)
