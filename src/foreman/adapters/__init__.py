from foreman.adapters.quality import CheckResult, CommandQualityGate, QualityGate, QualityResult
from foreman.adapters.worktree import (
    GitWorktreeAdapter,
    WorktreeAdapter,
    WorktreeError,
    run_hook_commands,
)

__all__ = [
    "CheckResult",
    "CommandQualityGate",
    "GitWorktreeAdapter",
    "QualityGate",
    "QualityResult",
    "WorktreeAdapter",
    "WorktreeError",
    "run_hook_commands",
]
