from __future__ import annotations

import json
import logging
import re
from typing import Any

from foreman.exec import AsyncExec
from foreman.runners.base import (
    AgentRunner,
    RunnerExecutionError,
    RunnerProcessError,
    RunnerRequest,
    RunnerResult,
    RunnerTimeoutError,
)

logger = logging.getLogger(__name__)

CONTEXT_OVERFLOW_PATTERN = re.compile(r"prompt is too long|context (window|length)", re.IGNORECASE)


class ClaudeCodeRunner(AgentRunner):
    kind = "claude"

    def __init__(
        self,
        exec_port: AsyncExec,
        binary: str = "claude",
        extra_args: list[str] | None = None,
    ) -> None:
        self.exec_port = exec_port
        self.binary = binary
        self.extra_args = list(extra_args or [])

    def build_command(self, prompt: str, session_id: str | None) -> list[str]:
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if session_id:
            command.extend(["--resume", session_id])
        command.extend(self.extra_args)
        return command

    @staticmethod
    def build_prompt(request: RunnerRequest) -> str:
        if not request.json_schema:
            return request.prompt
        return (
            f"{request.prompt}\n\nRespond with a single JSON document (no prose, no code fences) "
            f"matching this JSON schema:\n"
            f"{json.dumps(request.json_schema, ensure_ascii=False, indent=2)}"
        )

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and item.get("type", "text") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        return ""

    @classmethod
    def parse_stream(cls, raw: str) -> tuple[str | None, str, dict[str, Any] | None]:
        """Return (session_id, assistant_text, result_event) from stream-json output."""
        session_id: str | None = None
        chunks: list[str] = []
        result_event: dict[str, Any] | None = None
        for raw_line in raw.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                chunks.append(line)
                continue
            if not isinstance(event, dict):
                continue
            if isinstance(event.get("session_id"), str):
                session_id = event["session_id"]
            kind = event.get("type")
            if kind == "result":
                result_event = event
            elif kind == "assistant":
                content = cls._extract_content(event)
                if content:
                    chunks.append(content)
        return session_id, "\n".join(chunks), result_event

    async def execute(self, request: RunnerRequest) -> RunnerResult:
        command = self.build_command(self.build_prompt(request), request.session_id)
        result = await self.exec_port.run(
            command,
            request.cwd,
            timeout_seconds=request.timeout_seconds,
            label=f"claude:{request.role}:{request.phase_name}",
        )
        if result.exit_code == 127:
            raise RunnerProcessError(
                f"Claude binary not found: {self.binary}",
                runner=self.kind,
                exit_code=127,
                retriable=False,
            )
        session_id, assistant_text, result_event = self.parse_stream(result.stdout)
        logger.debug(
            "claude %s/%s exited %s (session=%s)",
            request.role,
            request.phase_name,
            result.exit_code,
            session_id,
        )
        if result.timed_out:
            raise RunnerTimeoutError(
                f"Claude runner timed out after {request.timeout_seconds}s",
                runner=self.kind,
                retriable=False,
            )

        output_text = assistant_text
        is_error = False
        if result_event is not None:
            if isinstance(result_event.get("result"), str):
                output_text = result_event["result"]
            is_error = bool(result_event.get("is_error"))

        diagnostics = "\n".join(part for part in (output_text, result.stderr) if part)
        if CONTEXT_OVERFLOW_PATTERN.search(diagnostics) and (is_error or result.exit_code != 0):
            return RunnerResult(
                success=False,
                session_id=session_id,
                output_text=output_text,
                context_overflow=True,
                error="Context overflow",
            )
        if result.exit_code != 0 or is_error:
            raise RunnerExecutionError(
                f"Claude runner failed with exit code {result.exit_code}: "
                f"{result.stderr.strip() or output_text.strip()}",
                runner=self.kind,
                exit_code=result.exit_code,
                retriable=True,
            )
        return RunnerResult(success=True, session_id=session_id, output_text=output_text)
