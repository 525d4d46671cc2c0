from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

Role = Literal["lead", "task", "reviewer", "summarize"]


class RunnerExecutionError(RuntimeError):
    """Raised when a runner process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        runner: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.runner = runner
        self.exit_code = exit_code
        self.retriable = retriable


class RunnerTimeoutError(RunnerExecutionError):
    """Raised when a runner exceeds its timeout."""


class RunnerProcessError(RunnerExecutionError):
    """Raised when the runner process cannot be started or read."""


@dataclass(slots=True)
class RunnerRequest:
    role: str
    phase_name: str
    prompt: str
    cwd: Path
    session_id: str | None = None
    timeout_seconds: float | None = None
    json_schema: dict[str, Any] | None = None


@dataclass(slots=True)
class RunnerResult:
    success: bool
    session_id: str | None = None
    output_text: str | None = None
    context_overflow: bool = False
    timed_out: bool = False
    error: str | None = None


class AgentRunner(ABC):
    kind: str = "agent"

    @abstractmethod
    async def execute(self, request: RunnerRequest) -> RunnerResult:
        """Run one agent exchange; may raise RunnerExecutionError."""

    async def run(self, request: RunnerRequest) -> RunnerResult:
        try:
            return await self.execute(request)
        except RunnerTimeoutError as exc:
            return RunnerResult(success=False, timed_out=True, error=str(exc))
        except RunnerExecutionError as exc:
            return RunnerResult(success=False, error=str(exc))
