from foreman.state.models import (
    PHASES,
    Phase,
    RunState,
    StateError,
    TicketInfo,
    WorkflowState,
    WorktreeInfo,
)
from foreman.state.store import StateStore, load_state, read_json, write_json_atomic

__all__ = [
    "PHASES",
    "Phase",
    "RunState",
    "StateError",
    "StateStore",
    "TicketInfo",
    "WorkflowState",
    "WorktreeInfo",
    "load_state",
    "read_json",
    "write_json_atomic",
]
