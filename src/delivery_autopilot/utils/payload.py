"""Extract JSON objects from noisy collaborator text.

Collaborator output is untrusted free text. ``extract_json_object`` tries an
ordered list of strategies and returns either ``Parsed`` (with the strategy that
succeeded) or ``Unparseable`` (with the strategies that were attempted). No
value is coerced: only a JSON object at the top level counts as a success.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final, TypeAlias

_FENCED_BLOCK: Final[re.Pattern[str]] = re.compile(
    r"```(?:json|JSON)?[ \t]*\r?\n(.*?)```",
    re.DOTALL,
)


class ParseStrategy(StrEnum):
    STRICT = "strict"
    FENCED_BLOCK = "fenced_block"
    BALANCED_SCAN = "balanced_scan"


@dataclass(frozen=True, slots=True)
class Parsed:
    value: dict[str, Any]
    strategy: ParseStrategy


@dataclass(frozen=True, slots=True)
class Unparseable:
    reason: str
    attempted: tuple[ParseStrategy, ...]


ParseOutcome: TypeAlias = Parsed | Unparseable


def extract_json_object(text: str) -> ParseOutcome:
    """Return the first JSON object found by strict, fenced-block, then balanced scan."""

    attempted: list[ParseStrategy] = []
    stripped = text.strip()
    if not stripped:
        return Unparseable(reason="empty text", attempted=())

    attempted.append(ParseStrategy.STRICT)
    strict = _loads_object(stripped)
    if strict is not None:
        return Parsed(value=strict, strategy=ParseStrategy.STRICT)

    attempted.append(ParseStrategy.FENCED_BLOCK)
    for match in _FENCED_BLOCK.finditer(text):
        fenced = _loads_object(match.group(1).strip())
        if fenced is not None:
            return Parsed(value=fenced, strategy=ParseStrategy.FENCED_BLOCK)

    attempted.append(ParseStrategy.BALANCED_SCAN)
    for candidate in _balanced_candidates(text):
        scanned = _loads_object(candidate)
        if scanned is not None:
            return Parsed(value=scanned, strategy=ParseStrategy.BALANCED_SCAN)

    return Unparseable(reason="no JSON object found", attempted=tuple(attempted))


def _loads_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, RecursionError):
        return None
    if isinstance(parsed, dict):
        return parsed
    return None


def _balanced_candidates(text: str) -> list[str]:
    """Return every top-level ``{...}`` span, honoring JSON string escapes."""

    candidates: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            if depth > 0:
                in_string = True
            continue
        if char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                candidates.append(text[start : index + 1])
                start = -1
    return candidates


__all__ = [
    "ParseOutcome",
    "ParseStrategy",
    "Parsed",
    "Unparseable",
    "extract_json_object",
]
