from __future__ import annotations

import logging
import re
from typing import Any

from foreman.runners import RunnerRequest, RunnerResult
from foreman.workflow.reminders import reminder_for_role
from foreman.workflow.runtime import WorkflowError, WorkflowRuntime
from foreman.workflow.sentinels import OK_SENTINEL_PATTERN

logger = logging.getLogger(__name__)

MICRO_RETRY_TIMEOUT_SECONDS = 2 * 60
MAX_AUTO_RETRIES = 2


async def run_role(
    runtime: WorkflowRuntime,
    role: str,
    phase_name: str,
    prompt: str,
    *,
    session_id: str | None = None,
    timeout_seconds: float | None = None,
    json_schema: dict[str, Any] | None = None,
) -> RunnerResult:
    request = RunnerRequest(
        role=role,
        phase_name=phase_name,
        prompt=prompt,
        cwd=runtime.worktree_path,
        session_id=session_id,
        timeout_seconds=timeout_seconds,
        json_schema=json_schema,
    )
    logger.debug("Running %s for %s (session=%s)", role, phase_name, session_id)
    return await runtime.runner_for(role).run(request)


async def run_with_overflow_reset(
    runtime: WorkflowRuntime,
    role: str,
    phase_name: str,
    prompt: str,
    *,
    session_id: str | None,
    timeout_seconds: float | None = None,
    json_schema: dict[str, Any] | None = None,
) -> tuple[RunnerResult, str | None]:
    """Run once with the stored session; on context overflow retry once without it.

    Returns the result and the session id that was actually used, so callers can
    clear their stored session when it was reset.
    """
    result = await run_role(
        runtime,
        role,
        phase_name,
        prompt,
        session_id=session_id,
        timeout_seconds=timeout_seconds,
        json_schema=json_schema,
    )
    if session_id and result.context_overflow:
        logger.info("Context overflow in %s (%s); retrying with a fresh session", phase_name, role)
        session_id = None
        result = await run_role(
            runtime,
            role,
            phase_name,
            prompt,
            session_id=None,
            timeout_seconds=timeout_seconds,
            json_schema=json_schema,
        )
    return result, session_id


async def run_lead(
    runtime: WorkflowRuntime,
    phase_name: str,
    prompt: str,
    *,
    timeout_seconds: float,
    json_schema: dict[str, Any] | None = None,
) -> RunnerResult:
    """Lead call on the shared lead session; the stored session follows the result."""
    workflow = runtime.workflow
    result, used = await run_with_overflow_reset(
        runtime,
        "lead",
        phase_name,
        prompt,
        session_id=workflow.tech_lead_session_id,
        timeout_seconds=timeout_seconds,
        json_schema=json_schema,
    )
    if used is None and workflow.tech_lead_session_id is not None:
        workflow.tech_lead_session_id = None
        runtime.save()
    if result.success and result.session_id:
        workflow.tech_lead_session_id = result.session_id
        runtime.save()
    return result


async def micro_retry_reply(
    runtime: WorkflowRuntime,
    message: str,
    session_id: str | None,
    role: str,
    *,
    timeout_seconds: float = MICRO_RETRY_TIMEOUT_SECONDS,
    reply_with: str = "<OK>",
    required_pattern: re.Pattern[str] = OK_SENTINEL_PATTERN,
) -> RunnerResult | None:
    """Nudge an existing session with a short instruction; the reply when it complies."""
    if not session_id:
        return None

    prompt = "\n".join(
        [
            reminder_for_role(runtime, role),
            "",
            "<INSTRUCTIONS>",
            message.strip(),
            "",
            f"Reply with {reply_with} only when you have completed the above.",
            "</INSTRUCTIONS>",
            "",
        ]
    )
    result = await run_role(
        runtime,
        role,
        f"{role}-micro-retry",
        prompt,
        session_id=session_id,
        timeout_seconds=timeout_seconds,
    )
    if not result.success:
        logger.info("Micro-retry for %s failed: %s", role, result.error)
        return None
    if not required_pattern.search(result.output_text or ""):
        return None
    if role == "lead" and result.session_id:
        runtime.workflow.tech_lead_session_id = result.session_id
        runtime.save()
    return result


async def session_micro_retry(
    runtime: WorkflowRuntime,
    message: str,
    session_id: str | None,
    role: str,
    **kwargs: Any,
) -> bool:
    """True when the nudged session replied as asked."""
    return await micro_retry_reply(runtime, message, session_id, role, **kwargs) is not None


async def tech_lead_micro_retry(
    runtime: WorkflowRuntime,
    message: str,
    *,
    timeout_seconds: float = MICRO_RETRY_TIMEOUT_SECONDS,
) -> None:
    ok = await session_micro_retry(
        runtime,
        message,
        runtime.workflow.tech_lead_session_id,
        "lead",
        timeout_seconds=timeout_seconds,
    )
    if not ok:
        raise WorkflowError("Tech lead micro-retry failed.")


async def maybe_retry(runtime: WorkflowRuntime, label: str) -> bool:
    """Retry automatically a couple of times, then ask the operator."""
    workflow = runtime.workflow
    tries = workflow.auto_retry_counts.get(label, 0)
    if tries < MAX_AUTO_RETRIES:
        workflow.auto_retry_counts[label] = tries + 1
        runtime.save()
        logger.info("%s failed; automatic retry %d/%d", label, tries + 1, MAX_AUTO_RETRIES)
        return True
    return await runtime.prompt.confirm(f"{label} failed. Retry?", default=True)


async def ensure_lead_ok(runtime: WorkflowRuntime, result: RunnerResult, message: str) -> bool:
    """True when the lead reply carries ``<OK>``, nudging the session once if it does not."""
    if OK_SENTINEL_PATTERN.search(result.output_text or ""):
        return True
    session_id = result.session_id or runtime.workflow.tech_lead_session_id
    return await session_micro_retry(runtime, message, session_id, "lead")
