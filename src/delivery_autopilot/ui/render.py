"""Output rendering for the autopilot CLI.

Plain-text rendering only; respects the ``NO_COLOR`` environment variable and
the ``--no-color`` flag when highlighting status words.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Sequence

_STATUS_COLORS: Final[dict[str, str]] = {
    "succeeded": "\033[32m",
    "passed": "\033[32m",
    "stopped": "\033[33m",
    "pending": "\033[33m",
    "failed": "\033[31m",
    "crashed": "\033[31m",
}
_RESET: Final[str] = "\033[0m"


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer producing deterministic plain text."""

    def __init__(self, *, no_color: bool = False) -> None:
        self._color = _color_allowed(no_color)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        print(f"\n{title}")

    def items(self, lines: Sequence[str]) -> None:
        for line in lines:
            print(f"  - {line}")

    def status(self, key: str, word: str) -> None:
        """Print a key/status pair, colored when the terminal allows it."""

        color = _STATUS_COLORS.get(word) if self._color else None
        rendered = f"{color}{word}{_RESET}" if color else word
        print(f"{key}: {rendered}")


def create_renderer(*, no_color: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color)


__all__ = ["CLIRenderer", "create_renderer"]
