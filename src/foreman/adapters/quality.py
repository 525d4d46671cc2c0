from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from foreman.config import QualityCheck
from foreman.exec import AsyncExec

logger = logging.getLogger(__name__)

DEFAULT_CHECK_TIMEOUT_SECONDS = 15 * 60


@dataclass(slots=True)
class CheckResult:
    name: str
    ok: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False


@dataclass(slots=True)
class QualityResult:
    ok: bool
    results: list[CheckResult] = field(default_factory=list)

    @property
    def failures(self) -> list[CheckResult]:
        return [item for item in self.results if not item.ok]


class QualityGate(ABC):
    @abstractmethod
    async def run_checks(self, worktree_path: Path, checks: list[QualityCheck]) -> QualityResult:
        """Run every check in the worktree and report per-check outcomes."""


class CommandQualityGate(QualityGate):
    def __init__(self, exec_port: AsyncExec) -> None:
        self.exec_port = exec_port

    async def run_checks(self, worktree_path: Path, checks: list[QualityCheck]) -> QualityResult:
        results: list[CheckResult] = []
        for check in checks:
            logger.info("Running quality check %s", check.name)
            timeout = check.timeout_seconds or DEFAULT_CHECK_TIMEOUT_SECONDS
            outcome = await self.exec_port.run(
                check.cmd,
                worktree_path,
                env=check.env or None,
                timeout_seconds=timeout,
                label=f"quality:{check.name}",
            )
            stderr = outcome.stderr
            if outcome.timed_out:
                stderr = f"Timed out after {timeout:g}s\n{stderr}".strip()
            results.append(
                CheckResult(
                    name=check.name,
                    ok=outcome.ok,
                    stdout=outcome.stdout,
                    stderr=stderr,
                    exit_code=outcome.exit_code,
                    timed_out=outcome.timed_out,
                )
            )
        return QualityResult(ok=all(item.ok for item in results), results=results)
