from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from foreman.workflow.paths import file_has_content, outcome_file_path, remediation_task_file_path
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowRuntime
from foreman.workflow.sentinels import decision_pattern, extract_decision
from foreman.workflow.sessions import micro_retry_reply, run_lead, session_micro_retry
from foreman.workflow.task_metadata import attempts_remaining, get_base_task_info

logger = logging.getLogger(__name__)

DECISION_TIMEOUT_SECONDS = 10 * 60

Decision = Literal["acceptance", "remediation", "failed"]


@dataclass(slots=True)
class TaskOutcomeInputs:
    report_path: Path
    review_path: Path
    report_summary: str | None = None
    review_summary: str | None = None
    quality_passed: bool = True


@dataclass(slots=True)
class DecisionContext:
    base_task_path: Path
    base_task_name: str
    remaining_remediations: int
    remediation_path: Path
    outcome_path: Path

    @property
    def can_remediate(self) -> bool:
        return self.remaining_remediations > 0

    @property
    def allowed(self) -> list[str]:
        return ["remediation", "acceptance"] if self.can_remediate else ["failed", "acceptance"]


@dataclass(slots=True)
class DecisionResult:
    decision: Decision
    output_path: Path


def build_decision_context(runtime: WorkflowRuntime, task_file: Path) -> DecisionContext:
    info = get_base_task_info(task_file)
    return DecisionContext(
        base_task_path=info.base_task_path,
        base_task_name=info.base_task_name,
        remaining_remediations=attempts_remaining(info.attempt),
        remediation_path=remediation_task_file_path(
            runtime.state, info.base_task_name, info.attempt + 1
        ),
        outcome_path=outcome_file_path(runtime.state, task_file),
    )


def _summary_block(tag: str, content: str | None) -> str:
    text = (content or "").strip()
    return f"<{tag}>\n{text}\n</{tag}>" if text else ""


def build_decision_prompt(
    runtime: WorkflowRuntime,
    task_file: Path,
    inputs: TaskOutcomeInputs,
    ctx: DecisionContext,
) -> str:
    budget_line = (
        f"You have {ctx.remaining_remediations} remediation attempt(s) remaining."
        if ctx.can_remediate
        else "Remediation limit reached."
    )
    if ctx.can_remediate:
        reject_line = (
            f"Create remediation → `{ctx.remediation_path}` → reply "
            '"<DECISION>remediation</DECISION>"'
        )
        reject_guidance = [
            "- If you do not accept the changes:",
            f"  - Create a remediation task and save it to `{ctx.remediation_path}`.",
            '  - Reply with "<DECISION>remediation</DECISION>" ONLY.',
        ]
    else:
        reject_line = (
            'Reply "<DECISION>failed</DECISION>" to discard pending work and restart from '
            "the original task"
        )
        reject_guidance = [
            "- If you do not accept the changes:",
            '  - Reply with "<DECISION>failed</DECISION>" ONLY.',
        ]
    accept_guidance = [
        "- If you accept the changes:",
        f"  - Write a brief outcome summary to `{ctx.outcome_path}`.",
        '  - Reply with "<DECISION>acceptance</DECISION>" ONLY.',
    ]
    lines = [
        f"{tech_lead_reminder(runtime)}\n\n{budget_line}",
        "<INSTRUCTIONS>",
        "Review the task against your acceptance criteria.",
        "Inputs: task, report, review.",
        "Reference at least one bullet from BOTH summaries when justifying your decision.",
        f"Reject: {reject_line}",
        f'Accept: write outcome → `{ctx.outcome_path}` → reply "<DECISION>acceptance</DECISION>"',
        "</INSTRUCTIONS>",
    ]
    if not inputs.quality_passed:
        lines.append(
            "Quality checks are still failing; see the unresolved failures section of the report."
        )
    lines.extend(
        [
            _summary_block("REPORT_SUMMARY", inputs.report_summary),
            _summary_block("REVIEW_SUMMARY", inputs.review_summary),
            "<INPUT_TASK>",
            str(task_file),
            "</INPUT_TASK>",
            "<INPUT_REPORT>",
            str(inputs.report_path),
            "</INPUT_REPORT>",
            "<INPUT_REVIEW>",
            str(inputs.review_path),
            "</INPUT_REVIEW>",
            "<OUTPUT>",
            "\n".join([*reject_guidance, *accept_guidance]),
            "</OUTPUT>",
        ]
    )
    return "\n".join(line for line in lines if line)


async def _ensure_decision_file(
    runtime: WorkflowRuntime, decision: str, ctx: DecisionContext
) -> bool:
    if decision == "failed":
        return True
    label, path = (
        ("outcome", ctx.outcome_path)
        if decision == "acceptance"
        else ("remediation", ctx.remediation_path)
    )
    if file_has_content(path):
        return True
    await session_micro_retry(
        runtime,
        f"Create the {label} file: {path}",
        runtime.workflow.tech_lead_session_id,
        "lead",
    )
    return file_has_content(path)


async def decide_task(
    runtime: WorkflowRuntime, task_file: Path, inputs: TaskOutcomeInputs
) -> DecisionResult | None:
    """Ask the lead to accept, remediate or fail a task; None when no usable decision."""
    task_file = Path(task_file)
    ctx = build_decision_context(runtime, task_file)
    result = await run_lead(
        runtime,
        "tech-lead-decision",
        build_decision_prompt(runtime, task_file, inputs, ctx),
        timeout_seconds=DECISION_TIMEOUT_SECONDS,
    )
    if not result.success:
        logger.warning("Lead decision failed for %s: %s", task_file.name, result.error)
        return None

    decision = extract_decision(result.output_text, ctx.allowed)
    if decision is None:
        reply_with = " OR ".join(f"<DECISION>{item}</DECISION>" for item in ctx.allowed)
        reply = await micro_retry_reply(
            runtime,
            "Provide your decision tag.",
            runtime.workflow.tech_lead_session_id,
            "lead",
            reply_with=reply_with,
            required_pattern=decision_pattern(ctx.allowed),
        )
        decision = extract_decision(reply.output_text, ctx.allowed) if reply else None
        if decision is None:
            return None

    if not await _ensure_decision_file(runtime, decision, ctx):
        return None

    logger.info("Lead decision for %s: %s", task_file.name, decision)
    if decision == "remediation":
        return DecisionResult(decision="remediation", output_path=ctx.remediation_path)
    if decision == "acceptance":
        return DecisionResult(decision="acceptance", output_path=ctx.outcome_path)
    return DecisionResult(decision="failed", output_path=ctx.base_task_path)
