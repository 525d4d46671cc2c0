from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from foreman.state import write_json_atomic
from foreman.workflow.paths import file_has_content
from foreman.workflow.reminders import tech_lead_reminder
from foreman.workflow.runtime import WorkflowRuntime
from foreman.workflow.sessions import run_lead

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
GENERATE_TIMEOUT_SECONDS = 5 * 60

CONTENT_FIELDS = ("proposedChange", "why", "alternatives", "assumptions", "futureState")

DECISION_CARDS_JSON_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "required": ["schemaVersion", "openQuestions", "decisions"],
    "properties": {
        "schemaVersion": {"const": 1},
        "openQuestions": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["id", "question"],
                "properties": {"id": {"type": "string"}, "question": {"type": "string"}},
            },
        },
        "decisions": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["id", *CONTENT_FIELDS],
                "properties": {name: {"type": "string"} for name in ("id", *CONTENT_FIELDS)},
            },
        },
    },
}


class DecisionCardsError(RuntimeError):
    """Raised when decision cards are malformed or cannot be produced."""


def _require_str(payload: dict[str, Any], key: str, label: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise DecisionCardsError(f"Decision cards: expected {label} to be a non-empty string")
    return value


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


@dataclass(slots=True)
class OpenQuestion:
    id: str
    question: str
    user_answer: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "question": self.question}
        if self.user_answer:
            payload["userAnswer"] = self.user_answer
        return payload


@dataclass(slots=True)
class DecisionCard:
    id: str
    proposed_change: str
    why: str
    alternatives: str
    assumptions: str
    future_state: str
    user_feedback: str | None = None
    approved_hash: str | None = None

    def content_hash(self) -> str:
        return decision_card_hash(self)

    @property
    def approved(self) -> bool:
        return self.approved_hash is not None and self.approved_hash == self.content_hash()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "proposedChange": self.proposed_change,
            "why": self.why,
            "alternatives": self.alternatives,
            "assumptions": self.assumptions,
            "futureState": self.future_state,
        }
        if self.user_feedback:
            payload["userFeedback"] = self.user_feedback
        if self.approved_hash:
            payload["approvedHash"] = self.approved_hash
        return payload


@dataclass(slots=True)
class DecisionCardsDocument:
    open_questions: list[OpenQuestion] = field(default_factory=list)
    decisions: list[DecisionCard] = field(default_factory=list)
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "openQuestions": [item.to_dict() for item in self.open_questions],
            "decisions": [item.to_dict() for item in self.decisions],
        }

    @classmethod
    def from_dict(cls, payload: Any) -> DecisionCardsDocument:
        if not isinstance(payload, dict):
            raise DecisionCardsError("Decision cards: expected object")
        if payload.get("schemaVersion") != SCHEMA_VERSION:
            raise DecisionCardsError("Decision cards: schemaVersion must be 1")
        raw_questions = payload.get("openQuestions")
        raw_decisions = payload.get("decisions")
        if not isinstance(raw_questions, list) or not isinstance(raw_decisions, list):
            raise DecisionCardsError("Decision cards: expected openQuestions[] and decisions[]")
        if not raw_decisions:
            raise DecisionCardsError("Decision cards: must include at least 1 decision")

        questions: list[OpenQuestion] = []
        for item in raw_questions:
            if not isinstance(item, dict):
                raise DecisionCardsError("Decision cards: openQuestions item must be object")
            questions.append(
                OpenQuestion(
                    id=_require_str(item, "id", "openQuestions[].id"),
                    question=_require_str(item, "question", "openQuestions[].question"),
                    user_answer=_optional_str(item.get("userAnswer")),
                )
            )

        decisions: list[DecisionCard] = []
        for item in raw_decisions:
            if not isinstance(item, dict):
                raise DecisionCardsError("Decision cards: decisions item must be object")
            decisions.append(
                DecisionCard(
                    id=_require_str(item, "id", "decisions[].id"),
                    proposed_change=_require_str(
                        item, "proposedChange", "decisions[].proposedChange"
                    ),
                    why=_require_str(item, "why", "decisions[].why"),
                    alternatives=_require_str(item, "alternatives", "decisions[].alternatives"),
                    assumptions=_require_str(item, "assumptions", "decisions[].assumptions"),
                    future_state=_require_str(item, "futureState", "decisions[].futureState"),
                    user_feedback=_optional_str(item.get("userFeedback")),
                    approved_hash=_optional_str(item.get("approvedHash")),
                )
            )
        return cls(open_questions=questions, decisions=decisions)


def decision_card_hash(card: DecisionCard) -> str:
    """sha256 over the card's content fields; feedback and approval are excluded."""
    content = json.dumps(
        {
            "id": card.id.strip(),
            "proposedChange": card.proposed_change.strip(),
            "why": card.why.strip(),
            "alternatives": card.alternatives.strip(),
            "assumptions": card.assumptions.strip(),
            "futureState": card.future_state.strip(),
        },
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def merge_user_fields(
    next_doc: DecisionCardsDocument,
    previous: DecisionCardsDocument | None,
) -> DecisionCardsDocument:
    """Carry answers, feedback and still-valid approvals across regeneration by id."""
    if previous is None:
        return next_doc
    prev_questions = {item.id: item for item in previous.open_questions}
    prev_decisions = {item.id: item for item in previous.decisions}

    questions: list[OpenQuestion] = []
    for item in next_doc.open_questions:
        prev_question = prev_questions.get(item.id)
        answer = prev_question.user_answer if prev_question and prev_question.user_answer else None
        questions.append(replace(item, user_answer=answer or item.user_answer))

    decisions: list[DecisionCard] = []
    for item in next_doc.decisions:
        prev_card = prev_decisions.get(item.id)
        merged = replace(item, user_feedback=None, approved_hash=None)
        if prev_card is not None:
            if prev_card.user_feedback:
                merged.user_feedback = prev_card.user_feedback
            if prev_card.approved_hash and prev_card.content_hash() == item.content_hash():
                merged.approved_hash = prev_card.approved_hash
        decisions.append(merged)

    return DecisionCardsDocument(open_questions=questions, decisions=decisions)


def parse_decision_cards(raw: str) -> DecisionCardsDocument:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DecisionCardsError("Decision cards: runner did not return valid JSON.") from exc
    return DecisionCardsDocument.from_dict(payload)


def read_decision_cards(path: Path) -> DecisionCardsDocument | None:
    """Existing valid document, or None when missing or malformed."""
    try:
        return parse_decision_cards(path.read_text(encoding="utf-8"))
    except (OSError, DecisionCardsError):
        return None


def write_decision_cards(path: Path, document: DecisionCardsDocument) -> None:
    write_json_atomic(path, document.to_dict())


def build_generate_prompt(
    runtime: WorkflowRuntime,
    plan: str,
    existing: DecisionCardsDocument | None,
) -> str:
    lines = [
        tech_lead_reminder(runtime),
        "",
        "You are the foreman tech lead.",
        "",
        "Generate decision cards as strict JSON.",
        "- Output ONLY JSON. No markdown, no commentary.",
        "- Do NOT write any files; your JSON will be persisted for you.",
        "- Include at least 1 decision.",
        "- Keep each field concise (1-3 sentences).",
        "",
        "You may keep stable IDs from the existing cards when appropriate."
        if existing
        else "Use stable IDs like D1, D2... and Q1, Q2...",
        "",
        "<PLAN>",
        plan.rstrip(),
        "</PLAN>",
        "",
    ]
    if existing is not None:
        lines.extend(
            [
                "<EXISTING_CARDS>",
                json.dumps(existing.to_dict(), ensure_ascii=False, indent=2),
                "</EXISTING_CARDS>",
                "",
            ]
        )
    return "\n".join(lines)


async def generate_decision_cards(
    runtime: WorkflowRuntime,
    plan_path: Path,
    cards_path: Path,
    existing: DecisionCardsDocument | None = None,
) -> DecisionCardsDocument:
    plan = plan_path.read_text(encoding="utf-8")
    if existing is None:
        existing = read_decision_cards(cards_path)

    result = await run_lead(
        runtime,
        "decision-cards",
        build_generate_prompt(runtime, plan, existing),
        timeout_seconds=GENERATE_TIMEOUT_SECONDS,
        json_schema=DECISION_CARDS_JSON_SCHEMA,
    )
    if not result.success or not result.output_text:
        raise DecisionCardsError(result.error or "Failed to generate decision cards.")

    merged = merge_user_fields(parse_decision_cards(result.output_text.strip()), existing)
    write_decision_cards(cards_path, merged)
    if not file_has_content(cards_path):
        raise DecisionCardsError("Decision cards: failed to write decision-cards.json")
    logger.info(
        "Wrote %d decision(s) and %d open question(s) to %s",
        len(merged.decisions),
        len(merged.open_questions),
        cards_path,
    )
    return merged


async def ensure_decision_cards(
    runtime: WorkflowRuntime,
    plan_path: Path,
    cards_path: Path,
) -> DecisionCardsDocument:
    existing = read_decision_cards(cards_path)
    if existing is not None:
        return existing
    await generate_decision_cards(runtime, plan_path, cards_path)
    regenerated = read_decision_cards(cards_path)
    if regenerated is None:
        raise DecisionCardsError("Decision cards missing or invalid after regeneration.")
    return regenerated
