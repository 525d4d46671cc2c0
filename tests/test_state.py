import json
import signal
import subprocess
from datetime import UTC, datetime
from pathlib import Path

import pytest

from foreman.locks import (
    ProcessKillRefusedError,
    RunLockError,
    acquire_run_lock,
    kill_process,
    read_run_lock,
    release_run_lock,
)
from foreman.process_registry import ProcessEntry, ProcessRegistry
from foreman.runs import build_initial_run_state
from foreman.state import StateError, StateStore, load_state


def _state(tmp_path: Path):
    return build_initial_run_state(
        main_repo_path=tmp_path,
        artifact_root_dir=tmp_path / ".foreman",
        ticket_id="2026-02-01-add-caching-layer",
        ticket_file_path=tmp_path / ".foreman" / "tickets" / "2026-02-01-add-caching-layer.md",
        worktree_path=tmp_path / ".worktrees" / "foreman-2026-02-01-add-caching-layer",
        branch_name="foreman-2026-02-01-add-caching-layer",
        base_branch="main",
        created_at=datetime(2026, 2, 1, 9, 30, tzinfo=UTC),
    )


def test_state_store_roundtrip(tmp_path: Path) -> None:
    state = _state(tmp_path)
    store = StateStore.create(Path(state.state_file_path), state)
    store.workflow.phase = "execution"
    store.workflow.task_queue = ["/tmp/task-1-add-cache.md"]
    store.workflow.task_agent_sessions["/tmp/task-1-add-cache.md"] = "sess-1"
    store.workflow.auto_retry_counts["Plan feedback"] = 1
    store.save()

    loaded = load_state(Path(state.state_file_path))

    assert loaded.run_id == "2026-02-01-add-caching-layer"
    assert loaded.created_at == "2026-02-01T09:30:00+00:00"
    assert loaded.ticket.slug == "add-caching-layer"
    assert loaded.ticket.date == "2026-02-01"
    assert loaded.workflow.phase == "execution"
    assert loaded.workflow.task_queue == ["/tmp/task-1-add-cache.md"]
    assert loaded.workflow.task_agent_sessions == {"/tmp/task-1-add-cache.md": "sess-1"}
    assert loaded.workflow.auto_retry_counts == {"Plan feedback": 1}
    assert Path(loaded.run_dir) == (tmp_path / ".foreman" / "runs" / loaded.run_id).resolve()


def test_state_rejects_unsupported_version(tmp_path: Path) -> None:
    state = _state(tmp_path)
    payload = state.to_dict()
    payload["version"] = 99
    path = tmp_path / "state.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(StateError, match="Unsupported state version"):
        load_state(path)


def test_state_rejects_unknown_phase(tmp_path: Path) -> None:
    payload = _state(tmp_path).to_dict()
    payload["workflow"]["phase"] = "deploy"
    path = tmp_path / "state.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(StateError, match="unknown workflow phase 'deploy'"):
        load_state(path)


def test_missing_state_file_raises(tmp_path: Path) -> None:
    with pytest.raises(StateError, match="State file not found"):
        load_state(tmp_path / "missing.json")


def test_run_lock_blocks_live_owner(tmp_path: Path) -> None:
    lock_path = tmp_path / "locks" / "run-r1.json"
    acquire_run_lock(lock_path, "r1", "state.json", pid=4242, is_alive=lambda pid: True)

    with pytest.raises(RunLockError, match="Run is active \\(pid 4242\\)") as exc_info:
        acquire_run_lock(lock_path, "r1", "state.json", pid=5555, is_alive=lambda pid: True)

    assert exc_info.value.pid == 4242


def test_run_lock_replaces_stale_owner(tmp_path: Path) -> None:
    lock_path = tmp_path / "locks" / "run-r1.json"
    acquire_run_lock(lock_path, "r1", "state.json", pid=4242, is_alive=lambda pid: True)

    lock = acquire_run_lock(lock_path, "r1", "state.json", pid=5555, is_alive=lambda pid: False)

    assert lock.pid == 5555
    assert read_run_lock(lock_path).pid == 5555
    release_run_lock(lock_path)
    assert read_run_lock(lock_path) is None


def test_unreadable_lock_is_ignored(tmp_path: Path) -> None:
    lock_path = tmp_path / "run-r1.json"
    lock_path.write_text("{not json", encoding="utf-8")

    assert read_run_lock(lock_path) is None
    lock = acquire_run_lock(lock_path, "r1", "state.json", pid=7, is_alive=lambda pid: True)
    assert lock.pid == 7


def test_kill_process_refuses_foreign_process() -> None:
    sent: list[tuple[int, int]] = []

    with pytest.raises(ProcessKillRefusedError, match="does not look like foreman"):
        kill_process(
            4242,
            is_alive=lambda pid: True,
            get_name=lambda pid: "postgres",
            send_signal=lambda pid, sig: sent.append((pid, sig)),
        )

    assert sent == []


def test_kill_process_terminates_own_process() -> None:
    alive = {"value": True}
    sent: list[int] = []

    def _send(pid: int, sig: int) -> None:
        sent.append(sig)
        alive["value"] = False

    assert kill_process(
        4242,
        is_alive=lambda pid: alive["value"],
        get_name=lambda pid: "foreman",
        send_signal=_send,
        wait_seconds=0.5,
        poll_interval=0.01,
    )
    assert len(sent) == 1


def test_process_registry_unregister_is_scoped_to_entry() -> None:
    registry = ProcessRegistry()
    first = ProcessEntry(pid=100, label="git")
    unregister_first = registry.register(first)
    registry.register(ProcessEntry(pid=100, label="claude"))

    unregister_first()

    assert [entry.label for entry in registry.entries()] == ["claude"]


def test_kill_all_escalates_to_sigkill_for_detached_groups() -> None:
    proc = subprocess.Popen(
        ["sh", "-c", "trap '' TERM; echo ready; sleep 30"],
        stdout=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )
    try:
        assert proc.stdout is not None
        assert proc.stdout.readline().strip() == "ready"
        registry = ProcessRegistry()
        registry.register(ProcessEntry(pid=proc.pid, label="agent", detached=True))

        assert registry.kill_all("shutdown", sweep_delay=0.05) == 1
        assert proc.wait(timeout=5) == -signal.SIGKILL
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()
