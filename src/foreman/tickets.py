from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path

from foreman.runners import AgentRunner, RunnerRequest, RunnerResult
from foreman.state import write_json_atomic
from foreman.workflow.sentinels import extract_tag

logger = logging.getLogger(__name__)

PROJECT_LEAD_TIMEOUT_SECONDS = 10 * 60
PROJECT_LEAD_SESSION_FILE = "project-lead.json"
SLUG_WORD_PATTERN = re.compile(r"[^\W_]+")
TICKET_DATE_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})-(.+)$")


class TicketError(RuntimeError):
    """Raised when a ticket cannot be created, ingested or amended."""


class TicketExistsError(TicketError):
    """Raised when the target ticket file is already present."""


def count_slug_words(slug: str) -> int:
    return len(SLUG_WORD_PATTERN.findall(slug.strip()))


def is_slug_word_count_valid(slug: str) -> bool:
    return 3 <= count_slug_words(slug) <= 5


def normalize_slug(slug: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", slug.strip().lower()).strip("-")


def is_ticket_id_safe(ticket_id: str) -> bool:
    if not ticket_id or "/" in ticket_id or "\\" in ticket_id:
        return False
    if ".." in ticket_id:
        return False
    return not ticket_id.endswith(".md")


def format_ticket_id(day: date, normalized_slug: str) -> str:
    return f"{day.isoformat()}-{normalized_slug}"


def extract_slug_from_ticket_id(ticket_id: str) -> str | None:
    match = TICKET_DATE_PATTERN.match(ticket_id)
    return match.group(2) if match else None


def ticket_file_path(tickets_dir: Path, ticket_id: str) -> Path:
    if not is_ticket_id_safe(ticket_id):
        raise TicketError(f"Invalid ticket id: {ticket_id}")
    return tickets_dir / f"{ticket_id}.md"


def list_ticket_ids(tickets_dir: Path) -> list[str]:
    if not tickets_dir.is_dir():
        return []
    return sorted(
        entry.stem for entry in tickets_dir.iterdir() if entry.suffix == ".md" and entry.stem.strip()
    )


def _today() -> date:
    return datetime.now(UTC).date()


def build_create_prompt(ticket_text: str) -> str:
    return "\n".join(
        [
            "You are the project lead for this repository.",
            "",
            "<INSTRUCTIONS>",
            "Generate a new ticket from the user input.",
            "Return:",
            "- <SLUG>...</SLUG> as a 3-5 word human-readable phrase.",
            "- <CONTENT>...</CONTENT> as full markdown ticket content.",
            "Return only the tags, no extra text and no <OK>.",
            "</INSTRUCTIONS>",
            "",
            "<INPUT>",
            ticket_text.strip(),
            "</INPUT>",
            "",
        ]
    )


def build_ingest_prompt(source_content: str) -> str:
    return "\n".join(
        [
            "You are the project lead for this repository.",
            "",
            "<INSTRUCTIONS>",
            "Generate a 3-5 word human-readable slug for the ticket content.",
            "Return only <SLUG>...</SLUG>. Do not return <CONTENT> or <OK>.",
            "</INSTRUCTIONS>",
            "",
            "<INPUT>",
            source_content.strip(),
            "</INPUT>",
            "",
        ]
    )


def build_amend_prompt(ticket_id: str, existing_content: str, instructions: str) -> str:
    return "\n".join(
        [
            "You are the project lead for this repository.",
            "",
            "<INSTRUCTIONS>",
            "Amend the existing ticket content based on the user instructions.",
            "Return only:",
            "- <CONTENT>...</CONTENT> as full markdown ticket content.",
            "Do not change the ticket id or slug.",
            "Return only the tag, no extra text and no <OK>.",
            "</INSTRUCTIONS>",
            "",
            f"<TICKET_ID>{ticket_id}</TICKET_ID>",
            "",
            "<EXISTING>",
            existing_content.strip(),
            "</EXISTING>",
            "",
            "<AMEND_INSTRUCTIONS>",
            instructions.strip(),
            "</AMEND_INSTRUCTIONS>",
            "",
        ]
    )


def build_retry_prompt(base_prompt: str, error_message: str) -> str:
    return "\n".join(
        [
            base_prompt.strip(),
            "",
            "<RETRY>",
            f"Previous response was invalid: {error_message}",
            "Return the tags exactly as requested.",
            "</RETRY>",
            "",
        ]
    )


class ProjectLeadSessionStore:
    """The project lead keeps one conversation across ticket commands."""

    def __init__(self, sessions_dir: Path) -> None:
        self.path = sessions_dir / PROJECT_LEAD_SESSION_FILE

    def load(self) -> str | None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable project lead session %s", self.path)
            return None
        if not isinstance(payload, dict):
            return None
        session_id = payload.get("session_id")
        if not isinstance(session_id, str) or not session_id.strip():
            return None
        return session_id

    def save(self, session_id: str) -> None:
        write_json_atomic(self.path, {"session_id": session_id})

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


@dataclass(slots=True)
class TicketWriteResult:
    ticket_id: str
    file_path: Path
    slug: str
    content: str


def _finalize_content(content: str) -> str:
    return f"{content.strip()}\n"


def _validated_slug(raw_slug: str | None, action: str) -> str:
    if not raw_slug:
        raise TicketError(f"Ticket {action} missing <SLUG> tag.")
    if not is_slug_word_count_valid(raw_slug):
        raise TicketError("Ticket slug must be 3-5 words.")
    slug = normalize_slug(raw_slug)
    if not slug:
        raise TicketError("Ticket slug could not be normalized.")
    return slug


def _new_ticket_path(tickets_dir: Path, ticket_id: str) -> Path:
    path = ticket_file_path(tickets_dir, ticket_id)
    tickets_dir.mkdir(parents=True, exist_ok=True)
    if path.exists():
        raise TicketExistsError(f"Ticket already exists at {path}")
    return path


def create_ticket_from_output(
    tickets_dir: Path, output_text: str, *, today: date | None = None
) -> TicketWriteResult:
    slug = _validated_slug(extract_tag(output_text, "SLUG"), "creation")
    content = extract_tag(output_text, "CONTENT")
    if not content:
        raise TicketError("Ticket creation missing <CONTENT> tag.")
    ticket_id = format_ticket_id(today or _today(), slug)
    path = _new_ticket_path(tickets_dir, ticket_id)
    path.write_text(_finalize_content(content), encoding="utf-8")
    return TicketWriteResult(ticket_id=ticket_id, file_path=path, slug=slug, content=content.strip())


def ingest_ticket_from_output(
    tickets_dir: Path, source_path: Path, output_text: str, *, today: date | None = None
) -> TicketWriteResult:
    slug = _validated_slug(extract_tag(output_text, "SLUG"), "ingest")
    ticket_id = format_ticket_id(today or _today(), slug)
    path = _new_ticket_path(tickets_dir, ticket_id)
    data = source_path.read_bytes()
    path.write_bytes(data)
    return TicketWriteResult(
        ticket_id=ticket_id,
        file_path=path,
        slug=slug,
        content=data.decode("utf-8", errors="replace"),
    )


def amend_ticket_from_output(
    tickets_dir: Path, ticket_id: str, output_text: str
) -> TicketWriteResult:
    content = extract_tag(output_text, "CONTENT")
    if not content:
        raise TicketError("Ticket amend missing <CONTENT> tag.")
    path = ticket_file_path(tickets_dir, ticket_id)
    if not path.exists():
        raise TicketError(f"Ticket not found at {path}")
    path.write_text(_finalize_content(content), encoding="utf-8")
    return TicketWriteResult(
        ticket_id=ticket_id,
        file_path=path,
        slug=extract_slug_from_ticket_id(ticket_id) or ticket_id,
        content=content.strip(),
    )


class TicketService:
    """Ticket create/ingest/amend driven by the project lead agent."""

    def __init__(
        self,
        runner: AgentRunner,
        tickets_dir: Path,
        sessions_dir: Path,
        cwd: Path,
        *,
        timeout_seconds: float = PROJECT_LEAD_TIMEOUT_SECONDS,
    ) -> None:
        self.runner = runner
        self.tickets_dir = tickets_dir
        self.sessions = ProjectLeadSessionStore(sessions_dir)
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    async def _run_once(self, prompt: str, phase_name: str, session_id: str | None) -> RunnerResult:
        return await self.runner.run(
            RunnerRequest(
                role="project-lead",
                phase_name=phase_name,
                prompt=prompt,
                cwd=self.cwd,
                session_id=session_id,
                timeout_seconds=self.timeout_seconds,
            )
        )

    async def run_project_lead(self, prompt: str, phase_name: str) -> RunnerResult:
        session_id = self.sessions.load()
        result = await self._run_once(prompt, phase_name, session_id)
        if session_id and not result.success:
            logger.info("Project lead session %s failed; starting a fresh one", session_id)
            self.sessions.clear()
            session_id = None
            result = await self._run_once(prompt, phase_name, None)
        if result.success:
            next_session = result.session_id or session_id
            if next_session:
                self.sessions.save(next_session)
        return result

    async def _with_retry(
        self,
        prompt: str,
        phase_name: str,
        parse: Callable[[str], TicketWriteResult],
    ) -> TicketWriteResult:
        result = await self.run_project_lead(prompt, phase_name)
        if not result.success:
            raise TicketError(result.error or f"Project lead {phase_name} failed.")
        try:
            return parse(result.output_text or "")
        except TicketExistsError:
            raise
        except TicketError as exc:
            logger.info("Invalid project lead output (%s); retrying once", exc)
            retry = await self.run_project_lead(build_retry_prompt(prompt, str(exc)), phase_name)
        if not retry.success:
            raise TicketError(retry.error or f"Project lead {phase_name} failed.")
        return parse(retry.output_text or "")

    async def create(self, ticket_text: str, *, today: date | None = None) -> TicketWriteResult:
        if not ticket_text.strip():
            raise TicketError("Ticket text is empty.")
        ticket = await self._with_retry(
            build_create_prompt(ticket_text),
            "ticket-create",
            lambda output: create_ticket_from_output(self.tickets_dir, output, today=today),
        )
        logger.info("Created ticket %s", ticket.ticket_id)
        return ticket

    async def ingest(self, source_path: Path, *, today: date | None = None) -> TicketWriteResult:
        try:
            source_content = source_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise TicketError(f"Ticket source not found: {source_path}") from exc
        ticket = await self._with_retry(
            build_ingest_prompt(source_content),
            "ticket-ingest",
            lambda output: ingest_ticket_from_output(
                self.tickets_dir, source_path, output, today=today
            ),
        )
        logger.info("Ingested %s as ticket %s", source_path, ticket.ticket_id)
        return ticket

    async def amend(self, ticket_id: str, instructions: str) -> TicketWriteResult:
        path = ticket_file_path(self.tickets_dir, ticket_id)
        if not path.exists():
            raise TicketError(f"Ticket not found at {path}")
        ticket = await self._with_retry(
            build_amend_prompt(ticket_id, path.read_text(encoding="utf-8"), instructions),
            "ticket-amend",
            lambda output: amend_ticket_from_output(self.tickets_dir, ticket_id, output),
        )
        logger.info("Amended ticket %s", ticket_id)
        return ticket
