from __future__ import annotations

import asyncio
import sys
from abc import ABC, abstractmethod
from collections.abc import Sequence

import click


class PromptUnavailableError(RuntimeError):
    """Raised when a human answer is required but the session is non-interactive."""


class PromptAdapter(ABC):
    @abstractmethod
    async def confirm(self, message: str, default: bool = True) -> bool:
        """Ask a yes/no question."""

    @abstractmethod
    async def text(self, message: str, default: str = "") -> str:
        """Ask for free text; an empty answer is allowed."""

    @abstractmethod
    async def select(self, message: str, choices: Sequence[str]) -> str:
        """Ask the user to pick one of ``choices``."""


class ClickPromptAdapter(PromptAdapter):
    """Terminal prompts through click, run off the event loop."""

    async def confirm(self, message: str, default: bool = True) -> bool:
        return await asyncio.to_thread(click.confirm, message, default=default)

    async def text(self, message: str, default: str = "") -> str:
        answer = await asyncio.to_thread(
            click.prompt,
            message,
            default=default,
            show_default=False,
        )
        return str(answer)

    async def select(self, message: str, choices: Sequence[str]) -> str:
        if not choices:
            raise ValueError("select() requires at least one choice")
        lines = [message]
        lines.extend(f"  {index}. {choice}" for index, choice in enumerate(choices, start=1))
        click.echo("\n".join(lines))
        index = await asyncio.to_thread(
            click.prompt,
            "Choice",
            type=click.IntRange(1, len(choices)),
            default=1,
        )
        return choices[index - 1]


class HeadlessPromptAdapter(PromptAdapter):
    """Refuses every prompt; used when no terminal is attached."""

    @staticmethod
    def _fail(message: str) -> PromptUnavailableError:
        first_line = message.strip().splitlines()[0] if message.strip() else "prompt"
        return PromptUnavailableError(
            f"Environment is non-interactive, cannot proceed (prompt: {first_line})"
        )

    async def confirm(self, message: str, default: bool = True) -> bool:
        raise self._fail(message)

    async def text(self, message: str, default: str = "") -> str:
        raise self._fail(message)

    async def select(self, message: str, choices: Sequence[str]) -> str:
        raise self._fail(message)


def build_prompt_adapter(mode: str) -> PromptAdapter:
    if mode == "interactive":
        return ClickPromptAdapter()
    if mode == "headless":
        return HeadlessPromptAdapter()
    return ClickPromptAdapter() if sys.stdin.isatty() else HeadlessPromptAdapter()
