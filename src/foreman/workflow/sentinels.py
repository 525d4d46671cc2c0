from __future__ import annotations

import re

OK_SENTINEL_PATTERN = re.compile(r"(^|\n)<OK>\s*$", re.MULTILINE)


def has_ok_sentinel(text: str | None) -> bool:
    if not text:
        return False
    return OK_SENTINEL_PATTERN.search(text) is not None


def tag_pattern(tag: str) -> re.Pattern[str]:
    escaped = re.escape(tag)
    return re.compile(rf"<{escaped}>\s*([\s\S]*?)\s*</{escaped}>")


def extract_tag(text: str | None, tag: str) -> str | None:
    """Return the trimmed body of the first ``<TAG>...</TAG>`` block, if any."""
    if not text:
        return None
    match = tag_pattern(tag).search(text)
    if match is None:
        return None
    return match.group(1).strip()


def decision_pattern(allowed: list[str]) -> re.Pattern[str]:
    choices = "|".join(re.escape(item) for item in allowed)
    return re.compile(rf"<DECISION>\s*({choices})\s*</DECISION>", re.IGNORECASE)


def extract_decision(text: str | None, allowed: list[str]) -> str | None:
    if not text:
        return None
    match = decision_pattern(allowed).search(text)
    if match is None:
        return None
    return match.group(1).lower()
