from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from foreman.runners.base import AgentRunner, RunnerExecutionError, RunnerRequest, RunnerResult

RunnerEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5


class ResilientRunner(AgentRunner):
    """Wraps a runner with bounded retry and exponential backoff."""

    def __init__(
        self,
        name: str,
        runner: AgentRunner,
        retry_policy: RetryPolicy,
        event_hook: RunnerEventHook | None = None,
    ) -> None:
        self.name = name
        self.runner = runner
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.kind = runner.kind

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def execute(self, request: RunnerRequest) -> RunnerResult:
        errors: list[str] = []
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "runner_retry",
                        "runner": self.name,
                        "role": request.role,
                        "phase": request.phase_name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                result = await self.runner.execute(request)
                if attempt > 0:
                    self._emit(
                        {
                            "event": "runner_retry_success",
                            "runner": self.name,
                            "role": request.role,
                            "phase": request.phase_name,
                            "attempt": attempt,
                        }
                    )
                return result
            except RunnerExecutionError as exc:
                errors.append(f"{self.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "runner_attempt_failed",
                        "runner": self.name,
                        "role": request.role,
                        "phase": request.phase_name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    raise

        summary = "; ".join(errors[-6:])
        raise RunnerExecutionError(
            f"All runner attempts failed for {request.phase_name}. {summary}",
            runner=self.name,
            retriable=False,
        )
