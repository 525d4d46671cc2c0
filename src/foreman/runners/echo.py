from __future__ import annotations

import uuid

from foreman.runners.base import AgentRunner, RunnerRequest, RunnerResult


class EchoRunner(AgentRunner):
    """Echoes the prompt back and signs off with the completion sentinel."""

    kind = "echo"

    async def execute(self, request: RunnerRequest) -> RunnerResult:
        session_id = request.session_id or f"echo-{uuid.uuid4().hex[:12]}"
        return RunnerResult(
            success=True,
            session_id=session_id,
            output_text=f"{request.prompt}\n<OK>\n",
        )
