from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from foreman.workflow.decision_cards import (
    DecisionCard,
    DecisionCardsDocument,
    write_decision_cards,
)
from foreman.workflow.runtime import WorkflowRuntime


@dataclass(slots=True)
class AnsweredQuestion:
    id: str
    question: str
    answer: str


@dataclass(slots=True)
class DecisionFeedback:
    id: str
    proposed_change: str
    feedback: str


@dataclass(slots=True)
class DecisionReviewSummary:
    cards: DecisionCardsDocument
    needs_plan_update: bool = False
    open_questions: list[AnsweredQuestion] = field(default_factory=list)
    decision_feedback: list[DecisionFeedback] = field(default_factory=list)


def format_decision_card(card: DecisionCard) -> str:
    return "\n".join(
        [
            f"{card.id}: {card.proposed_change}",
            f"Why: {card.why}",
            f"Alternatives: {card.alternatives}",
            f"Assumptions: {card.assumptions}",
            f"Future state: {card.future_state}",
        ]
    )


def build_decision_feedback(summary: DecisionReviewSummary) -> str:
    blocks: list[str] = []
    if summary.open_questions:
        blocks.append("Open questions:")
        for item in summary.open_questions:
            blocks.append(f"- {item.id}: {item.question}")
            blocks.append(f"  Answer: {item.answer}")
    if summary.decision_feedback:
        blocks.append("Decision feedback:")
        for item in summary.decision_feedback:
            blocks.append(f"- {item.id}: {item.proposed_change}")
            blocks.append(f"  Feedback: {item.feedback}")
    return "\n".join(blocks)


async def review_decision_cards(
    runtime: WorkflowRuntime,
    cards: DecisionCardsDocument,
    cards_path: Path,
) -> DecisionReviewSummary:
    """Walk unanswered questions and unapproved decisions, persisting every answer."""
    summary = DecisionReviewSummary(cards=cards)

    for question in cards.open_questions:
        if (question.user_answer or "").strip():
            continue
        answer = ""
        while not answer.strip():
            answer = await runtime.prompt.text(f"{question.id}: {question.question}")
        question.user_answer = answer.strip()
        summary.open_questions.append(
            AnsweredQuestion(id=question.id, question=question.question, answer=question.user_answer)
        )
        summary.needs_plan_update = True
        write_decision_cards(cards_path, cards)

    for card in cards.decisions:
        current_hash = card.content_hash()
        existing_feedback = (card.user_feedback or "").strip()
        if not existing_feedback and card.approved_hash == current_hash:
            continue

        message = format_decision_card(card)
        if existing_feedback:
            message += f"\nPrevious feedback: {existing_feedback}"
        feedback = await runtime.prompt.text(
            f"{message}\n\nFeedback on {card.id}? (empty to accept)", default=""
        )
        if feedback.strip():
            card.user_feedback = feedback.strip()
            card.approved_hash = None
            summary.decision_feedback.append(
                DecisionFeedback(
                    id=card.id,
                    proposed_change=card.proposed_change,
                    feedback=card.user_feedback,
                )
            )
            summary.needs_plan_update = True
        else:
            card.user_feedback = None
            card.approved_hash = current_hash
        write_decision_cards(cards_path, cards)

    return summary
