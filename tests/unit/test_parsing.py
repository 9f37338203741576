"""Tests for parsing generation text."""

import pytest

from storyloop.errors import MalformedResponseError
from storyloop.models import Priority, Severity
from storyloop.parsing import (
    extract_json,
    parse_failure_list,
    parse_object,
    parse_task_drafts,
)


class TestExtractJson:

    def test_fenced_block(self):
        text = 'Sure.\n```json\n[{"title": "A"}]\n```\nDone.'
        assert extract_json(text, list) == [{"title": "A"}]

    def test_trailing_commas_are_tolerated(self):
        text = '```json\n{"a": [1, 2,], "b": 3,}\n```'
        assert extract_json(text, dict) == {"a": [1, 2], "b": 3}

    def test_bare_value_without_fence(self):
        assert extract_json('result: {"score": 80} thanks', dict) == {"score": 80}

    def test_skips_blocks_of_the_wrong_type(self):
        text = '```json\n{"not": "a list"}\n```\n```json\n["x"]\n```'
        assert extract_json(text, list) == ["x"]

    def test_no_json_raises_with_raw_text(self):
        with pytest.raises(MalformedResponseError) as exc_info:
            extract_json("I could not do that.", list)
        assert exc_info.value.raw == "I could not do that."


class TestParseTaskDrafts:

    def test_parses_titles_descriptions_and_priorities(self):
        drafts = parse_task_drafts("""```json
[
  {"title": " Signup form ", "description": "Render the form", "priority": "HIGH"},
  {"title": "Persist users"}
]
```""")
        assert [d.title for d in drafts] == ["Signup form", "Persist users"]
        assert drafts[0].priority == Priority.HIGH
        assert drafts[1].priority == Priority.MEDIUM
        assert drafts[1].description == ""

    @pytest.mark.parametrize("text, message", [
        ("```json\n[]\n```", "empty"),
        ('```json\n[{"description": "no title"}]\n```', "no title"),
        ('```json\n[{"title": "A", "priority": "urgent"}]\n```', "priority"),
    ])
    def test_rejects_bad_lists(self, text, message):
        with pytest.raises(MalformedResponseError, match=message):
            parse_task_drafts(text)


class TestParseFailures:

    def test_accepts_camel_and_snake_case(self):
        failures = parse_failure_list("""```json
[
  {"severity": "High", "category": "ui", "scenario": "Submit",
   "expectedBehavior": "saves", "actualBehavior": "nothing", "steps": "click submit"},
  {"severity": "low", "category": "edge-case", "scenario": "Empty title",
   "expected_behavior": "error shown", "steps": ["open", "save"]}
]
```""")
        assert failures[0].severity == Severity.HIGH
        assert failures[0].expected_behavior == "saves"
        assert failures[0].steps == ["click submit"]
        assert failures[1].expected_behavior == "error shown"
        assert failures[1].steps == ["open", "save"]

    def test_invalid_entry_is_malformed(self):
        with pytest.raises(MalformedResponseError, match="Failure 1"):
            parse_failure_list('[{"severity": "catastrophic", "category": "ui", "scenario": "x"}]')


class TestParseObject:

    def test_required_keys(self):
        assert parse_object('{"score": 90, "failures": []}', ("score",))["score"] == 90
        with pytest.raises(MalformedResponseError, match="score"):
            parse_object('{"failures": []}', ("score", "failures"))
