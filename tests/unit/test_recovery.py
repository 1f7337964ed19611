"""Unit tests for the JSON recovery cascade and the shape validators."""

from __future__ import annotations

import json

import pytest

from suppfacts.modules.extraction.recovery import (
    ParseFailure,
    RecoveryError,
    Strategy,
    cleanup,
    close_unterminated_strings,
    detect_anomalies,
    direct_parse,
    escape_newlines_in_strings,
    find_balanced_json,
    preview,
    recover,
    strip_boilerplate,
    truncate_long_strings,
)
from suppfacts.modules.extraction.shapes import (
    ANY_OBJECT,
    FULL_EXTRACTION,
    METADATA_ONLY,
    SUPPLEMENT_FACTS,
    TEXT_STRUCTURING,
)

# ---------------------------------------------------------------------------
# Shape validators
# ---------------------------------------------------------------------------


def test_full_extraction_accepts_any_anchor_field() -> None:
    assert FULL_EXTRACTION({"productName": "Yummies"})
    assert FULL_EXTRACTION({"supplementFacts": {}})
    assert FULL_EXTRACTION({"ingredients": []})
    assert not FULL_EXTRACTION({"foo": 1})
    assert not FULL_EXTRACTION({"productName": 42})


def test_supplement_facts_requires_nested_block() -> None:
    assert SUPPLEMENT_FACTS({"supplementFacts": {"servings": "2 gummies"}})
    assert SUPPLEMENT_FACTS({"supplementFacts": {"nutrients": []}})
    assert not SUPPLEMENT_FACTS({"supplementFacts": {"calories": "10"}})
    assert not SUPPLEMENT_FACTS({"servings": "2 gummies"})
    assert not SUPPLEMENT_FACTS({"supplementFacts": []})


def test_text_structuring_and_metadata_shapes() -> None:
    assert TEXT_STRUCTURING({"directions": "Take two daily."})
    assert not TEXT_STRUCTURING({"directions": None, "caution": None})
    assert METADATA_ONLY({"productName": "Yummies", "subbrand": None})
    assert not METADATA_ONLY({"productSlogan": "Tasty"})


def test_validators_reject_non_objects() -> None:
    for validator in (ANY_OBJECT, FULL_EXTRACTION, SUPPLEMENT_FACTS):
        assert not validator([1, 2])
        assert not validator("text")
        assert not validator(None)
    assert ANY_OBJECT({})


# ---------------------------------------------------------------------------
# Cascade: which strategy wins
# ---------------------------------------------------------------------------


def test_clean_json_uses_direct_parse() -> None:
    result = recover('{"productName": "Yummies"}', FULL_EXTRACTION)
    assert result.strategy is Strategy.DIRECT_PARSE
    assert result.value == {"productName": "Yummies"}


def test_json_wrapped_in_prose_uses_balanced_braces() -> None:
    raw = 'Sure! Here you go: {"productName": "Yummies", "note": "a {brace} inside"} Anything else?'
    result = recover(raw, FULL_EXTRACTION)
    assert result.strategy is Strategy.BALANCED_BRACES
    assert result.value["note"] == "a {brace} inside"


def test_fenced_block_used_when_first_braces_are_not_json() -> None:
    raw = 'Template {not json} follows.\n```json\n{"productName": "Yummies"}\n```'
    result = recover(raw, FULL_EXTRACTION)
    assert result.strategy is Strategy.CODE_BLOCK
    assert result.value == {"productName": "Yummies"}


def test_literal_newline_in_string_is_repaired() -> None:
    raw = '{"productName": "Yummies", "directions": "Take two.\nChew well."}'
    result = recover(raw, FULL_EXTRACTION)
    assert result.strategy is Strategy.REPAIR
    assert result.value["directions"] == "Take two.\nChew well."


def test_runaway_string_is_closed_by_repair() -> None:
    raw = '{"productName": "Yummies, "servings": "1"}'
    result = recover(raw, ANY_OBJECT)
    assert result.strategy is Strategy.REPAIR
    assert result.value == {"productName": "Yummies", "servings": "1"}


def test_trailing_comma_falls_through_to_lenient() -> None:
    raw = '{"productName": "Yummies", "ingredients": [],}'
    result = recover(raw, FULL_EXTRACTION)
    assert result.strategy is Strategy.LENIENT
    assert result.value["productName"] == "Yummies"


def test_shape_mismatch_is_reported_for_every_strategy() -> None:
    with pytest.raises(RecoveryError) as exc_info:
        recover('{"foo": 1}', FULL_EXTRACTION)

    attempts = exc_info.value.attempts
    assert [s for s, _ in attempts] == list(Strategy)
    assert "rejected by full_extraction" in attempts[0][1]


def test_plain_prose_fails_with_preview() -> None:
    raw = "I am unable to read this document."
    with pytest.raises(RecoveryError) as exc_info:
        recover(raw)
    assert exc_info.value.preview == raw
    assert len(exc_info.value.attempts) == len(Strategy)


def test_long_string_with_newline_is_truncated_by_repair() -> None:
    raw = (
        '{"productName": "Yummies", "references": "'
        + "r" * 5000
        + '\nend", "directions": "Take two daily."}'
    )
    result = recover(raw, FULL_EXTRACTION)
    assert result.strategy is Strategy.REPAIR
    references = result.value["references"]
    assert len(references) <= 2000
    assert references.endswith("...")
    assert result.value["productName"] == "Yummies"
    assert result.value["directions"] == "Take two daily."


def test_oversized_integer_falls_through_instead_of_raising() -> None:
    raw = '{"productName": "Yummies", "upc": ' + "1" * 5000 + "}"
    with pytest.raises(ParseFailure):
        direct_parse(raw)

    with pytest.raises(RecoveryError) as exc_info:
        recover(raw, SUPPLEMENT_FACTS)
    assert [s for s, _ in exc_info.value.attempts] == list(Strategy)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_find_balanced_json_ignores_braces_in_strings() -> None:
    text = 'prefix {"a": "}{", "b": {"c": 1}} suffix {"d": 2}'
    assert find_balanced_json(text) == '{"a": "}{", "b": {"c": 1}}'
    assert find_balanced_json('{"a": 1') is None
    assert find_balanced_json("no braces") is None


def test_close_unterminated_string_at_end_of_text() -> None:
    assert close_unterminated_strings('{"a": "abc') == '{"a": "abc"'


def test_escape_newlines_only_inside_strings() -> None:
    text = '{\n  "a": "line1\nline2"\n}'
    assert escape_newlines_in_strings(text) == '{\n  "a": "line1\\nline2"\n}'


def test_truncate_long_strings_appends_marker() -> None:
    text = json.dumps({"references": "a" * 3000, "short": "ok"})
    value = json.loads(truncate_long_strings(text))
    assert len(value["references"]) == 2000
    assert value["references"].endswith("...")
    assert value["short"] == "ok"


def test_truncation_never_splits_an_escape_sequence() -> None:
    content = "a" * 1996 + "\\n" + "b" * 100
    value = json.loads(truncate_long_strings('{"k": "' + content + '"}'))
    assert value["k"] == "a" * 1996 + "..."


def test_strip_boilerplate_and_cleanup() -> None:
    raw = 'Here is the extracted data: {"productName": "Yummies"} I hope this helps!'
    assert strip_boilerplate(raw) == '{"productName": "Yummies"}'
    assert cleanup(raw) == {"productName": "Yummies"}

    with pytest.raises(ParseFailure):
        cleanup('{"productName": "Yummies"')


def test_preview_keeps_head_and_tail() -> None:
    text = "h" * 600 + "m" * 100 + "t" * 600
    shown = preview(text, 500)
    assert shown.startswith("h" * 500)
    assert shown.endswith("t" * 500)
    assert "\n...\n" in shown
    assert preview("short", 500) == "short"


def test_detect_anomalies() -> None:
    text = '{"a": "x\ny", "b": "' + "z" * 2100 + '"}'
    kinds = {a.kind for a in detect_anomalies(text)}
    assert kinds == {"unescaped_newline", "oversized_string"}

    newline = next(a for a in detect_anomalies(text) if a.kind == "unescaped_newline")
    assert newline.position == text.index("\n")
