"""Unit tests for JSON object extraction from noisy collaborator output."""

from __future__ import annotations

import pytest

from delivery_autopilot.utils.payload import (
    Parsed,
    ParseStrategy,
    Unparseable,
    extract_json_object,
)

pytestmark = pytest.mark.unit


def test_strict_object() -> None:
    outcome = extract_json_object('  {"ok": true}\n')

    assert outcome == Parsed(value={"ok": True}, strategy=ParseStrategy.STRICT)


def test_fenced_block_is_preferred_over_scanning() -> None:
    text = 'Summary {draft}\n```json\n{"stage": "planning"}\n```\nthanks'

    outcome = extract_json_object(text)

    assert outcome == Parsed(value={"stage": "planning"}, strategy=ParseStrategy.FENCED_BLOCK)


def test_balanced_scan_skips_invalid_spans_and_honors_strings() -> None:
    text = 'log {not json} then {"msg": "a } b \\" c", "n": 2} trailing'

    outcome = extract_json_object(text)

    assert isinstance(outcome, Parsed)
    assert outcome.strategy is ParseStrategy.BALANCED_SCAN
    assert outcome.value == {"msg": 'a } b " c', "n": 2}


def test_nested_objects_are_returned_whole() -> None:
    outcome = extract_json_object('result: {"a": {"b": [1, {"c": 2}]}}')

    assert isinstance(outcome, Parsed)
    assert outcome.value == {"a": {"b": [1, {"c": 2}]}}


@pytest.mark.parametrize("text", ["[1, 2]", "no braces here", '"just a string"', "{ unclosed"])
def test_non_objects_are_unparseable(text: str) -> None:
    outcome = extract_json_object(text)

    assert isinstance(outcome, Unparseable)
    assert outcome.attempted == (
        ParseStrategy.STRICT,
        ParseStrategy.FENCED_BLOCK,
        ParseStrategy.BALANCED_SCAN,
    )


def test_empty_text() -> None:
    assert extract_json_object(" \n ") == Unparseable(reason="empty text", attempted=())
