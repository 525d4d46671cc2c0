from __future__ import annotations

from dataclasses import dataclass

from foreman.config import RunnersConfig
from foreman.exec import AsyncExec
from foreman.runners.base import (
    AgentRunner,
    Role,
    RunnerExecutionError,
    RunnerProcessError,
    RunnerRequest,
    RunnerResult,
    RunnerTimeoutError,
)
from foreman.runners.claude import ClaudeCodeRunner
from foreman.runners.echo import EchoRunner
from foreman.runners.resilient import ResilientRunner, RetryPolicy, RunnerEventHook


@dataclass(slots=True)
class RoleRunners:
    lead: AgentRunner
    task: AgentRunner
    reviewer: AgentRunner
    summarize: AgentRunner

    def for_role(self, role: str) -> AgentRunner:
        if role not in ("lead", "task", "reviewer", "summarize"):
            raise ValueError(f"Unknown runner role: {role}")
        return getattr(self, role)

    @classmethod
    def single(cls, runner: AgentRunner) -> RoleRunners:
        return cls(lead=runner, task=runner, reviewer=runner, summarize=runner)


def build_runner(
    name: str,
    config: RunnersConfig,
    exec_port: AsyncExec,
    event_hook: RunnerEventHook | None = None,
) -> AgentRunner:
    if name == "echo":
        return EchoRunner()
    if name == "claude":
        return ResilientRunner(
            name,
            ClaudeCodeRunner(exec_port, binary=config.claude_binary, extra_args=config.extra_args),
            RetryPolicy(
                max_retries=config.max_retries,
                backoff_seconds=config.retry_backoff_seconds,
            ),
            event_hook=event_hook,
        )
    raise ValueError(f"Unknown runner: {name}")


def build_role_runners(
    config: RunnersConfig,
    exec_port: AsyncExec,
    event_hook: RunnerEventHook | None = None,
) -> RoleRunners:
    cache: dict[str, AgentRunner] = {}

    def _resolve(role: str) -> AgentRunner:
        name = config.for_role(role)
        if name not in cache:
            cache[name] = build_runner(name, config, exec_port, event_hook)
        return cache[name]

    return RoleRunners(
        lead=_resolve("lead"),
        task=_resolve("task"),
        reviewer=_resolve("reviewer"),
        summarize=_resolve("summarize"),
    )


__all__ = [
    "AgentRunner",
    "ClaudeCodeRunner",
    "EchoRunner",
    "ResilientRunner",
    "RetryPolicy",
    "Role",
    "RoleRunners",
    "RunnerEventHook",
    "RunnerExecutionError",
    "RunnerProcessError",
    "RunnerRequest",
    "RunnerResult",
    "RunnerTimeoutError",
    "build_role_runners",
    "build_runner",
]
