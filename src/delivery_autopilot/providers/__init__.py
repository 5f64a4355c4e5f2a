"""Provider availability cache and call-outcome diagnostics."""

from delivery_autopilot.providers.availability import (
    ModelAvailabilityCache,
    ModelAvailabilityEntry,
    parse_reset_hint_ms,
)
from delivery_autopilot.providers.diagnostics import (
    CallOutcome,
    ProviderIssueClassifier,
    ProviderIssueType,
    classify_text,
)

__all__ = [
    "CallOutcome",
    "ModelAvailabilityCache",
    "ModelAvailabilityEntry",
    "ProviderIssueClassifier",
    "ProviderIssueType",
    "classify_text",
    "parse_reset_hint_ms",
]
