"""Utility exports for filesystem helpers and collaborator payload parsing."""

from delivery_autopilot.utils.fs import (
    FileRecord,
    ProjectTree,
    append_json_line,
    atomic_write,
    read_json_lines,
    read_json_object,
    write_json_atomic,
)
from delivery_autopilot.utils.payload import (
    ParseOutcome,
    ParseStrategy,
    Parsed,
    Unparseable,
    extract_json_object,
)

__all__ = [
    "FileRecord",
    "ParseOutcome",
    "ParseStrategy",
    "Parsed",
    "ProjectTree",
    "Unparseable",
    "append_json_line",
    "atomic_write",
    "extract_json_object",
    "read_json_lines",
    "read_json_object",
    "write_json_atomic",
]
