"""Tests for roundtable.recovery — the JSON repair ladder and retry loop."""

import pytest

from roundtable.llm import LLMError
from roundtable.recovery import (
    Failed,
    Ok,
    extract_first_object,
    has_text,
    parse_object,
    recover,
    repair_json,
    strip_fence,
)


class Producer:
    """Returns canned texts in order and counts calls."""

    def __init__(self, *texts):
        self.texts = list(texts)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        item = self.texts.pop(0) if self.texts else ""
        if isinstance(item, Exception):
            raise item
        return item


# ---------------------------------------------------------------------------
# Parsing ladder
# ---------------------------------------------------------------------------

class TestParseObject:
    def test_plain_object(self) -> None:
        assert parse_object('{"a": 1}') == ({"a": 1}, None)

    def test_fenced_object(self) -> None:
        obj, err = parse_object('```json\n{"response": "hi"}\n```')
        assert obj == {"response": "hi"}
        assert err is None

    def test_fence_inside_prose(self) -> None:
        text = 'Here you go:\n```json\n{"guidance": "wait"}\n```\nEnjoy!'
        assert parse_object(text)[0] == {"guidance": "wait"}

    def test_object_surrounded_by_prose(self) -> None:
        obj, _ = parse_object('Sure! {"a": 1} hope this helps')
        assert obj == {"a": 1}

    def test_array_reduced_to_first_object(self) -> None:
        obj, _ = parse_object('[{"a": 1}, {"b": 2}]')
        assert obj == {"a": 1}

    def test_scalar_is_not_an_object(self) -> None:
        assert parse_object("42") == (None, "not_an_object")

    def test_array_of_strings_is_not_an_object(self) -> None:
        assert parse_object('["a", "b"]') == (None, "not_an_object")

    def test_empty_output(self) -> None:
        assert parse_object("   ") == (None, "empty_output")
        assert parse_object(None) == (None, "empty_output")

    def test_prose_only_fails_to_parse(self) -> None:
        assert parse_object("I would rather not.") == (None, "parse_failed")

    def test_truncated_object_is_closed(self) -> None:
        text = '{"response": "Hello there", "characterState": {"mood": "calm"'
        obj, _ = parse_object(text)
        assert obj == {"response": "Hello there", "characterState": {"mood": "calm"}}

    def test_truncated_inside_string(self) -> None:
        obj, _ = parse_object('{"response": "Hello th')
        assert obj == {"response": "Hello th"}

    def test_python_literals_and_unquoted_keys(self) -> None:
        obj, _ = parse_object("{a: True, b: None,}")
        assert obj == {"a": True, "b": None}

    def test_raw_newline_inside_string(self) -> None:
        obj, _ = parse_object('{"response": "line one\nline two"}')
        assert obj == {"response": "line one\nline two"}


class TestHelpers:
    def test_strip_fence_without_fence(self) -> None:
        assert strip_fence('{"a": 1}') is None

    def test_strip_fence_plain_backticks(self) -> None:
        assert strip_fence('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_extract_first_object_ignores_braces_in_strings(self) -> None:
        text = 'x {"a": "}{", "b": {"c": 1}} y {"d": 2}'
        assert extract_first_object(text) == '{"a": "}{", "b": {"c": 1}}'

    def test_extract_first_object_unbalanced(self) -> None:
        assert extract_first_object('{"a": 1') is None

    def test_repair_missing_comma_between_lines(self) -> None:
        assert repair_json('{\n"a": 1\n"b": 2\n}') == '{\n"a": 1,\n"b": 2\n}'

    def test_has_text(self) -> None:
        check = has_text("response")
        assert check({"response": "hi"})
        assert not check({"response": "   "})
        assert not check({"response": 3})
        assert not check({})


# ---------------------------------------------------------------------------
# Retry loop
# ---------------------------------------------------------------------------

class TestRecover:
    async def test_first_text_parses_without_regenerating(self) -> None:
        produce = Producer()
        result = await recover('{"a": 1}', produce)
        assert isinstance(result, Ok)
        assert result.value == {"a": 1}
        assert result.ok
        assert produce.calls == 0
        assert len(result.attempts) == 1

    async def test_none_raw_text_calls_producer_first(self) -> None:
        produce = Producer('{"a": 1}')
        result = await recover(None, produce)
        assert result.value == {"a": 1}
        assert produce.calls == 1

    async def test_regenerates_after_parse_failure(self) -> None:
        produce = Producer('{"summary": "ok"}')
        result = await recover("not json at all", produce)
        assert isinstance(result, Ok)
        assert result.raw_text == '{"summary": "ok"}'
        assert [a.error for a in result.attempts] == ["parse_failed", None]

    async def test_validation_failure_triggers_regeneration(self) -> None:
        produce = Producer('{"response": "hi"}')
        result = await recover('{"foo": 1}', produce, validate=has_text("response"))
        assert isinstance(result, Ok)
        assert result.value == {"response": "hi"}
        assert result.attempts[0].error == "validation_failed"
        assert result.attempts[0].parsed == {"foo": 1}

    async def test_scalar_fails_after_all_attempts(self) -> None:
        produce = Producer("42", "42", "42")
        result = await recover(None, produce, max_attempts=3)
        assert isinstance(result, Failed)
        assert result.kind == "not_an_object"
        assert result.last_raw == "42"
        assert not result.ok
        assert len(result.attempts) == 3
        assert produce.calls == 3

    async def test_failed_keeps_last_raw_text(self) -> None:
        produce = Producer("second", "third")
        result = await recover("first", produce, max_attempts=3)
        assert isinstance(result, Failed)
        assert result.kind == "parse_failed"
        assert result.last_raw == "third"

    async def test_empty_outputs(self) -> None:
        result = await recover("", Producer("", ""), max_attempts=3)
        assert isinstance(result, Failed)
        assert result.kind == "empty_output"

    async def test_at_least_one_attempt(self) -> None:
        produce = Producer('{"a": 1}')
        result = await recover(None, produce, max_attempts=0)
        assert result.value == {"a": 1}

    async def test_producer_errors_propagate(self) -> None:
        produce = Producer(LLMError("down"))
        with pytest.raises(LLMError):
            await recover("nope", produce, max_attempts=2)
