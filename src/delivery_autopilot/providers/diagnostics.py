"""
delivery-autopilot — provider issue classifier

Purpose
- Classify the collaborator's recent failure mode from the per-project call
  outcome log (``debug/provider-calls.jsonl``).

Functional requirements
- Only the last ``CALL_OUTCOME_SCAN_LIMIT`` lines are read; records are scanned newest first.
- Records older than the window are skipped. Records whose ``at`` cannot be
  parsed are treated as inside the window.
- Per record, noise lines are dropped and the remaining text is checked for
  command-too-long, then quota/capacity, then unusable-response patterns. The
  first record with any match decides the classification.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from delivery_autopilot.constants import (
    CALL_OUTCOME_LOG_PATH,
    CALL_OUTCOME_SCAN_LIMIT,
    DEFAULT_SIGNAL_WINDOW_MINUTES,
    MAX_SIGNAL_WINDOW_MINUTES,
)
from delivery_autopilot.utils.fs import read_json_lines

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

    from delivery_autopilot.utils.fs import PathLike

NOISE_RE: Final[re.Pattern[str]] = re.compile(
    r"\bdep0040\b|punycode|loaded cached credentials|hook registry initialized",
    re.IGNORECASE,
)
QUOTA_RE: Final[re.Pattern[str]] = re.compile(
    r"quota|capacity|terminalquotaerror|429", re.IGNORECASE
)
COMMAND_TOO_LONG_RE: Final[re.Pattern[str]] = re.compile(
    r"the command line is too long"
    r"|linea de comandos es demasiado larga"
    r"|la línea de comandos es demasiado larga",
    re.IGNORECASE,
)
UNUSABLE_RE: Final[re.Pattern[str]] = re.compile(
    r"provider response unusable"
    r"|provider did not return valid files"
    r"|no template fallback was applied"
    r"|ready for your command"
    r"|empty output",
    re.IGNORECASE,
)
QUOTA_RESET_HINT_RE: Final[re.Pattern[str]] = re.compile(
    r"quota will reset after\s+([^.,\n]+)", re.IGNORECASE
)


class ProviderIssueType(StrEnum):
    NONE = "none"
    UNUSABLE = "unusable"
    QUOTA = "quota"
    COMMAND_TOO_LONG = "command_too_long"


@dataclass(frozen=True, slots=True)
class CallOutcome:
    """One collaborator call as logged by the delivery increment."""

    at: datetime | None
    provider: str = ""
    model: str = ""
    error: str = ""
    output_preview: str = ""
    prompt_preview: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CallOutcome:
        return cls(
            at=parse_timestamp(payload.get("at")),
            provider=_text(payload.get("provider")),
            model=_text(payload.get("model")),
            error=_text(payload.get("error")),
            output_preview=_text(payload.get("output_preview")),
            prompt_preview=_text(payload.get("prompt_preview")),
        )

    def signal_text(self, *, include_prompt: bool = True) -> str:
        parts = [self.error, self.output_preview]
        if include_prompt:
            parts.append(self.prompt_preview)
        return clean_text(" ".join(part for part in parts if part))


def _text(value: object) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def clean_text(text: str) -> str:
    """Drop blank and noise lines, joining the rest with single spaces."""

    kept = []
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and NOISE_RE.search(stripped) is None:
            kept.append(stripped)
    return " ".join(kept)


def classify_text(text: str) -> ProviderIssueType:
    if COMMAND_TOO_LONG_RE.search(text):
        return ProviderIssueType.COMMAND_TOO_LONG
    if QUOTA_RE.search(text):
        return ProviderIssueType.QUOTA
    if UNUSABLE_RE.search(text):
        return ProviderIssueType.UNUSABLE
    return ProviderIssueType.NONE


def clamp_window_minutes(value: int) -> int:
    if value <= 0:
        return DEFAULT_SIGNAL_WINDOW_MINUTES
    return min(MAX_SIGNAL_WINDOW_MINUTES, value)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ProviderIssueClassifier:
    def __init__(
        self,
        *,
        window_minutes: int = DEFAULT_SIGNAL_WINDOW_MINUTES,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._window = timedelta(minutes=clamp_window_minutes(window_minutes))
        self._clock = clock

    @property
    def window(self) -> timedelta:
        return self._window

    @staticmethod
    def log_path(project_root: PathLike) -> Path:
        return Path(project_root) / CALL_OUTCOME_LOG_PATH

    def recent_outcomes(self, project_root: PathLike) -> Iterator[CallOutcome]:
        """Yield in-window call outcomes, newest first."""

        now = self._clock()
        records = read_json_lines(self.log_path(project_root), limit=CALL_OUTCOME_SCAN_LIMIT)
        for payload in reversed(records):
            outcome = CallOutcome.from_dict(payload)
            if outcome.at is not None and now - outcome.at > self._window:
                continue
            yield outcome

    def classify(self, project_root: PathLike) -> ProviderIssueType:
        for outcome in self.recent_outcomes(project_root):
            text = outcome.signal_text()
            if not text:
                continue
            issue = classify_text(text)
            if issue is not ProviderIssueType.NONE:
                return issue
        return ProviderIssueType.NONE

    def quota_reset_hint(self, project_root: PathLike) -> str:
        """Return the newest in-window "quota will reset after ..." duration text, or ``""``."""

        for outcome in self.recent_outcomes(project_root):
            match = QUOTA_RESET_HINT_RE.search(outcome.signal_text(include_prompt=False))
            if match is not None:
                return match.group(1).strip()
        return ""


__all__ = [
    "CallOutcome",
    "ProviderIssueClassifier",
    "ProviderIssueType",
    "clamp_window_minutes",
    "classify_text",
    "clean_text",
    "parse_timestamp",
]
