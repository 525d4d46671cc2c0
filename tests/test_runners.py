import asyncio
import json
from pathlib import Path

import pytest

from foreman.adapters import CommandQualityGate, WorktreeError, run_hook_commands
from foreman.config import QualityCheck
from foreman.exec import AsyncExec, ExecResult
from foreman.process_registry import ProcessRegistry
from foreman.runners import (
    AgentRunner,
    ClaudeCodeRunner,
    EchoRunner,
    ResilientRunner,
    RetryPolicy,
    RunnerExecutionError,
    RunnerProcessError,
    RunnerRequest,
    RunnerResult,
)


class FakeExec(AsyncExec):
    def __init__(self, results: list[ExecResult]) -> None:
        super().__init__()
        self.results = list(results)
        self.commands: list[list[str]] = []

    async def run(self, cmd, cwd, *, env=None, timeout_seconds=None, stdin=None, label=None):
        self.commands.append(list(cmd))
        return self.results.pop(0)


class FlakyRunner(AgentRunner):
    def __init__(self, failures: int, retriable: bool = True) -> None:
        self.failures = failures
        self.retriable = retriable
        self.calls = 0

    async def execute(self, request: RunnerRequest) -> RunnerResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise RunnerExecutionError("boom", retriable=self.retriable)
        return RunnerResult(success=True, session_id="s-1", output_text="<OK>")


def _request(tmp_path: Path, **kwargs) -> RunnerRequest:
    return RunnerRequest(
        role="task", phase_name="task-execution", prompt="do it", cwd=tmp_path, **kwargs
    )


def _stream(*events: dict) -> str:
    return "\n".join(json.dumps(event) for event in events) + "\n"


def test_claude_command_resumes_session() -> None:
    runner = ClaudeCodeRunner(AsyncExec(), binary="claude", extra_args=["--model", "opus"])

    command = runner.build_command("hello", "sess-9")

    assert command[:3] == ["claude", "-p", "hello"]
    assert command[command.index("--resume") + 1] == "sess-9"
    assert command[-2:] == ["--model", "opus"]
    assert "--resume" not in runner.build_command("hello", None)


def test_claude_parses_stream_json(tmp_path: Path) -> None:
    stdout = _stream(
        {"type": "system", "session_id": "sess-1"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Working"}]}},
        {"type": "result", "session_id": "sess-1", "result": "Done.\n<OK>", "is_error": False},
    )
    exec_port = FakeExec([ExecResult(exit_code=0, stdout=stdout)])

    result = asyncio.run(ClaudeCodeRunner(exec_port).run(_request(tmp_path)))

    assert result.success
    assert result.session_id == "sess-1"
    assert result.output_text == "Done.\n<OK>"


def test_claude_schema_is_appended_to_prompt(tmp_path: Path) -> None:
    stdout = _stream({"type": "result", "result": "{}"})
    exec_port = FakeExec([ExecResult(exit_code=0, stdout=stdout)])
    request = _request(tmp_path, json_schema={"type": "object"})

    asyncio.run(ClaudeCodeRunner(exec_port).run(request))

    prompt = exec_port.commands[0][2]
    assert prompt.startswith("do it")
    assert '"type": "object"' in prompt


def test_claude_reports_context_overflow(tmp_path: Path) -> None:
    stdout = _stream(
        {"type": "result", "session_id": "sess-1", "result": "Prompt is too long", "is_error": True}
    )
    exec_port = FakeExec([ExecResult(exit_code=1, stdout=stdout)])

    result = asyncio.run(ClaudeCodeRunner(exec_port).run(_request(tmp_path, session_id="sess-1")))

    assert not result.success
    assert result.context_overflow


def test_claude_failure_becomes_failed_result(tmp_path: Path) -> None:
    exec_port = FakeExec([ExecResult(exit_code=2, stderr="auth error")])

    result = asyncio.run(ClaudeCodeRunner(exec_port).run(_request(tmp_path)))

    assert not result.success
    assert "auth error" in (result.error or "")


def test_missing_binary_is_not_retried(tmp_path: Path) -> None:
    exec_port = FakeExec([ExecResult(exit_code=127, stderr="Command not found: claude")])
    runner = ResilientRunner(
        "claude", ClaudeCodeRunner(exec_port), RetryPolicy(max_retries=3, backoff_seconds=0)
    )

    with pytest.raises(RunnerProcessError, match="not found"):
        asyncio.run(runner.execute(_request(tmp_path)))
    assert len(exec_port.commands) == 1


def test_resilient_runner_retries_then_succeeds(tmp_path: Path) -> None:
    events: list[dict] = []
    inner = FlakyRunner(failures=1)
    runner = ResilientRunner(
        "claude", inner, RetryPolicy(max_retries=2, backoff_seconds=0), event_hook=events.append
    )

    result = asyncio.run(runner.run(_request(tmp_path)))

    assert result.success
    assert inner.calls == 2
    assert [event["event"] for event in events] == [
        "runner_attempt_failed",
        "runner_retry",
        "runner_retry_success",
    ]


def test_resilient_runner_gives_up(tmp_path: Path) -> None:
    runner = ResilientRunner(
        "claude", FlakyRunner(failures=5), RetryPolicy(max_retries=1, backoff_seconds=0)
    )

    result = asyncio.run(runner.run(_request(tmp_path)))

    assert not result.success
    assert "All runner attempts failed for task-execution" in (result.error or "")


def test_echo_runner_signs_off_with_ok(tmp_path: Path) -> None:
    result = asyncio.run(EchoRunner().run(_request(tmp_path)))

    assert result.success
    assert result.output_text.endswith("<OK>\n")
    assert result.session_id.startswith("echo-")


def test_exec_times_out_and_unregisters(tmp_path: Path) -> None:
    registry = ProcessRegistry()
    exec_port = AsyncExec(registry)

    result = asyncio.run(exec_port.run(["sleep", "5"], tmp_path, timeout_seconds=0.2))

    assert result.timed_out
    assert not result.ok
    assert registry.entries() == []


def test_exec_reports_missing_command(tmp_path: Path) -> None:
    result = asyncio.run(AsyncExec().run(["definitely-not-a-command-xyz"], tmp_path))

    assert result.exit_code == 127


def test_command_quality_gate_reports_failures(tmp_path: Path) -> None:
    checks = [QualityCheck(name="ok", cmd=["true"]), QualityCheck(name="bad", cmd=["false"])]

    result = asyncio.run(CommandQualityGate(AsyncExec()).run_checks(tmp_path, checks))

    assert not result.ok
    assert [item.name for item in result.failures] == ["bad"]


def test_quality_timeout_message_uses_default_timeout(tmp_path: Path) -> None:
    exec_port = FakeExec([ExecResult(exit_code=-1, stderr="partial", timed_out=True)])
    checks = [QualityCheck(name="slow", cmd=["sleep", "9999"])]

    result = asyncio.run(CommandQualityGate(exec_port).run_checks(tmp_path, checks))

    failure = result.failures[0]
    assert failure.timed_out
    assert "None" not in failure.stderr
    assert failure.stderr == "Timed out after 900s\npartial"


def test_hook_commands_fail_fast(tmp_path: Path) -> None:
    with pytest.raises(WorktreeError, match="after_create command failed \\(false\\)"):
        asyncio.run(
            run_hook_commands(
                AsyncExec(), ["true", "false", "touch never"], tmp_path, hook="after_create"
            )
        )
    assert not (tmp_path / "never").exists()
