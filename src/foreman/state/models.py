from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

Phase = Literal[
    "ticket-created",
    "ticket-ingested",
    "decision-cards",
    "plan-created",
    "task-splitting",
    "task-feedback",
    "execution",
    "user-feedback",
    "integration",
    "finalize",
    "cleanup",
]

PHASES: tuple[str, ...] = (
    "ticket-created",
    "ticket-ingested",
    "decision-cards",
    "plan-created",
    "task-splitting",
    "task-feedback",
    "execution",
    "user-feedback",
    "integration",
    "finalize",
    "cleanup",
)

STATE_VERSION = 1


class StateError(RuntimeError):
    """Raised when a run state document is missing, malformed or unsupported."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _require_str(payload: dict[str, Any], key: str, label: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise StateError(f"Invalid state: expected {label} to be a non-empty string")
    return value


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _session_map(raw: Any) -> dict[str, str | None]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): (v if isinstance(v, str) and v else None) for k, v in raw.items()}


@dataclass(slots=True)
class TicketInfo:
    date: str
    slug: str
    file_path: str

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, "slug": self.slug, "file_path": self.file_path}

    @classmethod
    def from_dict(cls, payload: Any) -> TicketInfo:
        if not isinstance(payload, dict):
            raise StateError("Invalid state: expected ticket object")
        return cls(
            date=_require_str(payload, "date", "ticket.date"),
            slug=_require_str(payload, "slug", "ticket.slug"),
            file_path=_require_str(payload, "file_path", "ticket.file_path"),
        )


@dataclass(slots=True)
class WorktreeInfo:
    path: str
    branch_name: str
    base_branch: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "branch_name": self.branch_name,
            "base_branch": self.base_branch,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> WorktreeInfo:
        if not isinstance(payload, dict):
            raise StateError("Invalid state: expected worktree object")
        return cls(
            path=_require_str(payload, "path", "worktree.path"),
            branch_name=_require_str(payload, "branch_name", "worktree.branch_name"),
            base_branch=_require_str(payload, "base_branch", "worktree.base_branch"),
        )


@dataclass(slots=True)
class WorkflowState:
    phase: str = "ticket-created"
    needs_user_input: bool = False
    run_dir: str | None = None
    plan_file_path: str | None = None
    decision_cards_path: str | None = None
    tech_lead_session_id: str | None = None
    task_queue: list[str] = field(default_factory=list)
    task_agent_sessions: dict[str, str | None] = field(default_factory=dict)
    reviewer_sessions: dict[str, str | None] = field(default_factory=dict)
    auto_retry_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "phase": self.phase,
            "needs_user_input": self.needs_user_input,
            "task_queue": list(self.task_queue),
            "task_agent_sessions": dict(self.task_agent_sessions),
            "reviewer_sessions": dict(self.reviewer_sessions),
            "auto_retry_counts": dict(self.auto_retry_counts),
        }
        for key in ("run_dir", "plan_file_path", "decision_cards_path", "tech_lead_session_id"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> WorkflowState:
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise StateError("Invalid state: expected workflow object")
        phase = payload.get("phase") or "ticket-created"
        if phase not in PHASES:
            raise StateError(f"Invalid state: unknown workflow phase '{phase}'")
        queue = payload.get("task_queue")
        counts = payload.get("auto_retry_counts")
        return cls(
            phase=phase,
            needs_user_input=bool(payload.get("needs_user_input", False)),
            run_dir=_optional_str(payload.get("run_dir")),
            plan_file_path=_optional_str(payload.get("plan_file_path")),
            decision_cards_path=_optional_str(payload.get("decision_cards_path")),
            tech_lead_session_id=_optional_str(payload.get("tech_lead_session_id")),
            task_queue=[item for item in queue if isinstance(item, str)]
            if isinstance(queue, list)
            else [],
            task_agent_sessions=_session_map(payload.get("task_agent_sessions")),
            reviewer_sessions=_session_map(payload.get("reviewer_sessions")),
            auto_retry_counts={
                str(k): int(v) for k, v in counts.items() if isinstance(v, int)
            }
            if isinstance(counts, dict)
            else {},
        )


@dataclass(slots=True)
class RunState:
    run_id: str
    created_at: str
    main_repo_path: str
    artifact_root_dir: str
    state_file_path: str
    run_dir: str
    lock_file_path: str
    ticket: TicketInfo
    worktree: WorktreeInfo
    workflow: WorkflowState = field(default_factory=WorkflowState)
    config_path: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    test_env: dict[str, str] = field(default_factory=dict)
    version: int = STATE_VERSION

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": self.version,
            "run_id": self.run_id,
            "created_at": self.created_at,
            "main_repo_path": self.main_repo_path,
            "artifact_root_dir": self.artifact_root_dir,
            "state_file_path": self.state_file_path,
            "run_dir": self.run_dir,
            "lock_file_path": self.lock_file_path,
            "ticket": self.ticket.to_dict(),
            "worktree": self.worktree.to_dict(),
            "workflow": self.workflow.to_dict(),
            "env": dict(self.env),
            "test_env": dict(self.test_env),
        }
        if self.config_path:
            payload["config_path"] = self.config_path
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> RunState:
        if not isinstance(payload, dict):
            raise StateError("Invalid state: expected object")
        version = payload.get("version")
        if version != STATE_VERSION:
            raise StateError(
                f"Unsupported state version: {version} (expected {STATE_VERSION})"
            )
        env = payload.get("env")
        test_env = payload.get("test_env")
        return cls(
            run_id=_require_str(payload, "run_id", "run_id"),
            created_at=_require_str(payload, "created_at", "created_at"),
            main_repo_path=_require_str(payload, "main_repo_path", "main_repo_path"),
            artifact_root_dir=_require_str(payload, "artifact_root_dir", "artifact_root_dir"),
            state_file_path=_require_str(payload, "state_file_path", "state_file_path"),
            run_dir=_require_str(payload, "run_dir", "run_dir"),
            lock_file_path=_require_str(payload, "lock_file_path", "lock_file_path"),
            ticket=TicketInfo.from_dict(payload.get("ticket")),
            worktree=WorktreeInfo.from_dict(payload.get("worktree")),
            workflow=WorkflowState.from_dict(payload.get("workflow")),
            config_path=_optional_str(payload.get("config_path")),
            env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else {},
            test_env={str(k): str(v) for k, v in test_env.items()}
            if isinstance(test_env, dict)
            else {},
        )
