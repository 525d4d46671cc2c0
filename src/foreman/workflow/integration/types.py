from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

StepOutcome = Literal["success", "skipped", "tasks-created", "aborted"]


@dataclass(slots=True)
class StepResult:
    outcome: StepOutcome
    message: str | None = None


@dataclass(slots=True)
class IntegrationResult:
    tasks_created: bool = False
    aborted: bool = False
    message: str | None = None
