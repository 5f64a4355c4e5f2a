"""
Instruction text handed to each delivery increment.

Long campaigns accumulate recovery instructions and quality hints on top of the
operator's goal. These helpers keep the goal anchored at the front, place
additions ahead of the base text, drop repeated sentences, and cap the total length.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Sequence

MAX_INSTRUCTION_CHARS: Final[int] = 900
MAX_GOAL_CHARS: Final[int] = 220
TRUNCATION_MARKER: Final[str] = "...[truncated]"
GOAL_ANCHOR_PREFIX: Final[str] = "Primary product objective (do not drift): "

_WHITESPACE_RE: Final[re.Pattern[str]] = re.compile(r"\s+")
_SENTENCE_END_RE: Final[re.Pattern[str]] = re.compile(r"[.!?]")
_ANCHOR_RE: Final[re.Pattern[str]] = re.compile(
    r"primary product objective \(do not drift\):", re.IGNORECASE
)
_BOILERPLATE_PREFIXES: Final[tuple[str, ...]] = (
    "build target:",
    "preferred stack:",
    "finish complete delivery",
)


def _squash(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def _is_boilerplate(segment: str) -> bool:
    return segment.lower().startswith(_BOILERPLATE_PREFIXES)


def normalize_instructions(
    base: str,
    additions: Sequence[str] = (),
    *,
    max_chars: int = MAX_INSTRUCTION_CHARS,
) -> str:
    """Merge ``base`` and ``additions`` into de-duplicated sentences, capped at ``max_chars``."""

    chunks = [_squash(value) for value in (base, *additions)]
    merged = ". ".join(chunk for chunk in chunks if chunk)
    seen: set[str] = set()
    segments: list[str] = []
    for part in merged.split("."):
        segment = part.strip()
        if not segment:
            continue
        key = segment.lower()
        if key in seen:
            continue
        seen.add(key)
        if not _is_boilerplate(segment):
            segments.append(segment)
    normalized = ". ".join(segments)
    if len(normalized) > max_chars:
        return normalized[:max_chars] + TRUNCATION_MARKER
    return normalized


def derive_goal(text: str) -> str:
    """First two meaningful sentences of ``text``, capped at ``MAX_GOAL_CHARS``."""

    compact = _squash(text)
    if not compact:
        return ""
    segments = [
        part.strip()
        for part in _SENTENCE_END_RE.split(compact)
        if part.strip()
        and not _is_boilerplate(part.strip())
        and "continue from the current project state" not in part.lower()
    ]
    return ". ".join(segments[:2]).strip()[:MAX_GOAL_CHARS]


def compose_instructions(goal: str, base: str, additions: Sequence[str] = ()) -> str:
    """
    Goal anchor first, then ``additions``, then the operator's ``base`` text.

    Truncation only ever eats into the tail, so recovery instructions survive a
    long ``base``.
    """

    anchor = f"{GOAL_ANCHOR_PREFIX}{goal}" if goal else ""
    cleaned = _squash(_ANCHOR_RE.sub("", base))
    return normalize_instructions(anchor, [*additions, cleaned])


__all__ = [
    "GOAL_ANCHOR_PREFIX",
    "MAX_GOAL_CHARS",
    "MAX_INSTRUCTION_CHARS",
    "TRUNCATION_MARKER",
    "compose_instructions",
    "derive_goal",
    "normalize_instructions",
]
