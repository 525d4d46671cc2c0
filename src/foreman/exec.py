from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path

from foreman.process_registry import ProcessEntry, ProcessRegistry

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 2.0


@dataclass(slots=True)
class ExecResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def _signal_process(process: asyncio.subprocess.Process, sig: int, *, group: bool) -> None:
    try:
        if group:
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
    except ProcessLookupError:
        pass


class AsyncExec:
    """Runs subprocesses in their own session and registers them for teardown."""

    def __init__(self, registry: ProcessRegistry | None = None) -> None:
        self.registry = registry or ProcessRegistry()

    async def run(
        self,
        cmd: list[str],
        cwd: Path | str,
        *,
        env: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
        stdin: str | None = None,
        label: str | None = None,
    ) -> ExecResult:
        detached = sys.platform != "win32"
        merged_env = os.environ.copy()
        if env:
            merged_env.update(env)
        logger.debug("exec %s (cwd=%s)", cmd, cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                env=merged_env,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=detached,
            )
        except FileNotFoundError as exc:
            return ExecResult(exit_code=127, stderr=f"Command not found: {cmd[0]} ({exc})")
        except PermissionError as exc:
            return ExecResult(exit_code=126, stderr=f"Command not executable: {cmd[0]} ({exc})")

        unregister = self.registry.register(
            ProcessEntry(
                pid=process.pid,
                label=label or cmd[0],
                cmd=list(cmd),
                cwd=str(cwd),
                detached=detached,
            )
        )
        input_bytes = stdin.encode("utf-8") if stdin is not None else None
        timed_out = False
        try:
            communicate = asyncio.ensure_future(process.communicate(input_bytes))
            try:
                stdout_raw, stderr_raw = await asyncio.wait_for(
                    asyncio.shield(communicate), timeout=timeout_seconds
                )
            except TimeoutError:
                timed_out = True
                logger.info("Command timed out after %ss: %s", timeout_seconds, cmd[0])
                _signal_process(process, signal.SIGTERM, group=detached)
                try:
                    stdout_raw, stderr_raw = await asyncio.wait_for(
                        asyncio.shield(communicate), timeout=KILL_GRACE_SECONDS
                    )
                except TimeoutError:
                    _signal_process(process, signal.SIGKILL, group=detached)
                    stdout_raw, stderr_raw = await communicate
        finally:
            unregister()

        exit_code = process.returncode if process.returncode is not None else -1
        return ExecResult(
            exit_code=exit_code,
            stdout=(stdout_raw or b"").decode("utf-8", errors="replace"),
            stderr=(stderr_raw or b"").decode("utf-8", errors="replace"),
            timed_out=timed_out,
        )
