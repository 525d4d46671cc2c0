from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from foreman.adapters.quality import QualityGate
from foreman.config import ForemanConfig
from foreman.exec import AsyncExec
from foreman.prompts import PromptAdapter
from foreman.runners import AgentRunner, RoleRunners
from foreman.state import RunState, StateStore, WorkflowState


class WorkflowError(RuntimeError):
    """Raised when a workflow phase cannot make progress."""


@dataclass(slots=True)
class PendingReminders:
    tech_lead: list[str] = field(default_factory=list)
    task: list[str] = field(default_factory=list)
    reviewer: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowRuntime:
    """Everything a phase needs, passed explicitly to each step."""

    config: ForemanConfig
    store: StateStore
    runners: RoleRunners
    prompt: PromptAdapter
    exec: AsyncExec
    quality_gate: QualityGate | None = None
    reminders: PendingReminders = field(default_factory=PendingReminders)

    @property
    def state(self) -> RunState:
        return self.store.state

    @property
    def workflow(self) -> WorkflowState:
        return self.store.state.workflow

    @property
    def main_repo_path(self) -> Path:
        return Path(self.store.state.main_repo_path)

    @property
    def worktree_path(self) -> Path:
        return Path(self.store.state.worktree.path)

    def runner_for(self, role: str) -> AgentRunner:
        return self.runners.for_role(role)

    def save(self) -> None:
        self.store.save()
