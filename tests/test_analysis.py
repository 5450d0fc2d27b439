"""
Tests for analysis.py — JSON extraction and the response interpreter.

Covers:
  - extract_json_block: prose around the object, fences, nesting, braces in strings
  - parse_analysis: required fields, price coercion, defaults
  - interpret: Success / Failure, raw text always retained
  - outcome_from_dict: rebuilds what to_dict() stored
"""
from __future__ import annotations

import json

import pytest

from analysis import (
    UNPARSEABLE,
    AnalysisFailure,
    AnalysisSuccess,
    Timing,
    Usage,
    extract_json_block,
    interpret,
    outcome_from_dict,
    parse_analysis,
)
from errors import ResponseParseError

GOOD = {
    "title": "Vintage Brass Lamp",
    "description": "Working desk lamp, minor scratches",
    "category": "Home",
    "estimated_price": 15,
    "condition": "Good",
    "tags": ["lamp", "brass"],
}


def run(raw: str):
    return interpret(raw, usage=Usage(10, 5), timing=Timing(20, 15), provider="openai", model="gpt-4o")


# ── extract_json_block ────────────────────────────────────────────────────────

class TestExtractJsonBlock:
    def test_plain_object(self):
        assert extract_json_block('{"a": 1}') == '{"a": 1}'

    def test_prose_before_and_after(self):
        text = 'Sure! Here is the analysis:\n{"a": 1}\nLet me know if you need more.'
        assert extract_json_block(text) == '{"a": 1}'

    def test_markdown_fence(self):
        text = '```json\n{"a": {"b": 2}}\n```'
        assert json.loads(extract_json_block(text)) == {"a": {"b": 2}}

    def test_nested_object_returned_whole(self):
        text = 'x {"outer": {"inner": 1}, "k": 2} y'
        assert json.loads(extract_json_block(text)) == {"outer": {"inner": 1}, "k": 2}

    def test_largest_span_wins(self):
        text = 'note {"a":1} then {"title": "x", "estimated_price": 3}'
        assert json.loads(extract_json_block(text))["title"] == "x"

    def test_braces_inside_strings_ignored(self):
        text = 'reply: {"title": "Set of {3} mugs }", "estimated_price": 4}'
        assert json.loads(extract_json_block(text))["title"] == "Set of {3} mugs }"

    def test_no_object(self):
        assert extract_json_block("I cannot identify this item.") is None

    def test_unbalanced(self):
        assert extract_json_block('{"title": "x"') is None


# ── parse_analysis ────────────────────────────────────────────────────────────

class TestParseAnalysis:
    def test_all_fields(self):
        fields = parse_analysis(json.dumps(GOOD))
        assert fields["title"] == "Vintage Brass Lamp"
        assert fields["estimated_price"] == 15.0
        assert fields["tags"] == ["lamp", "brass"]

    def test_missing_title_rejected(self):
        with pytest.raises(ResponseParseError, match="title"):
            parse_analysis('{"estimated_price": 5}')

    def test_blank_title_rejected(self):
        with pytest.raises(ResponseParseError):
            parse_analysis('{"title": "  ", "estimated_price": 5}')

    def test_missing_price_rejected(self):
        with pytest.raises(ResponseParseError, match="estimated_price"):
            parse_analysis('{"title": "Chair"}')

    def test_non_numeric_price_rejected(self):
        with pytest.raises(ResponseParseError, match="numeric"):
            parse_analysis('{"title": "Chair", "estimated_price": "cheap"}')

    def test_boolean_price_rejected(self):
        with pytest.raises(ResponseParseError):
            parse_analysis('{"title": "Chair", "estimated_price": true}')

    def test_negative_price_rejected(self):
        with pytest.raises(ResponseParseError):
            parse_analysis('{"title": "Chair", "estimated_price": -3}')

    def test_price_string_with_currency(self):
        fields = parse_analysis('{"title": "Sofa", "estimated_price": "$1,200"}')
        assert fields["estimated_price"] == 1200.0

    def test_defaults_for_optional_fields(self):
        fields = parse_analysis('{"title": "Chair", "estimated_price": 5}')
        assert fields["description"] == ""
        assert fields["category"] == "Miscellaneous"
        assert fields["condition"] == "Unknown"
        assert fields["tags"] == []

    def test_comma_separated_tags(self):
        fields = parse_analysis('{"title": "Chair", "estimated_price": 5, "tags": "wood, oak"}')
        assert fields["tags"] == ["wood", "oak"]

    def test_error_carries_raw_text(self):
        with pytest.raises(ResponseParseError) as info:
            parse_analysis("no json here")
        assert info.value.raw_text == "no json here"


# ── interpret ─────────────────────────────────────────────────────────────────

class TestInterpret:
    def test_success(self):
        outcome = run("Here you go: " + json.dumps(GOOD) + " Hope that helps!")
        assert isinstance(outcome, AnalysisSuccess)
        assert outcome.success is True
        assert outcome.title == "Vintage Brass Lamp"
        assert outcome.usage.total_tokens == 15
        assert outcome.timing.provider_call_ms == 15
        assert outcome.provider == "openai"

    def test_failure_retains_raw_text(self):
        raw = "I'm sorry, I can't tell what this is."
        outcome = run(raw)
        assert isinstance(outcome, AnalysisFailure)
        assert outcome.success is False
        assert outcome.reason == UNPARSEABLE
        assert outcome.raw_text == raw
        assert outcome.error_type == "ResponseParseError"

    def test_failure_keeps_usage(self):
        outcome = run("garbage")
        assert outcome.usage.prompt_tokens == 10

    def test_invalid_json_inside_braces(self):
        outcome = run("{title: lamp, price: 3}")
        assert outcome.reason == UNPARSEABLE

    def test_empty_reply(self):
        outcome = run("")
        assert isinstance(outcome, AnalysisFailure)
        assert outcome.raw_text == ""

    def test_failure_dict_shape(self):
        data = run("nope").to_dict()
        assert data["success"] is False
        assert data["error"] == UNPARSEABLE
        assert data["raw_text"] == "nope"


# ── outcome_from_dict ─────────────────────────────────────────────────────────

class TestOutcomeFromDict:
    def test_success_restored(self):
        original = run(json.dumps(GOOD))
        restored = outcome_from_dict(original.to_dict())
        assert isinstance(restored, AnalysisSuccess)
        assert restored.title == original.title
        assert restored.usage.prompt_tokens == 10

    def test_failure_restored(self):
        restored = outcome_from_dict(run("nope").to_dict())
        assert isinstance(restored, AnalysisFailure)
        assert restored.raw_text == "nope"
