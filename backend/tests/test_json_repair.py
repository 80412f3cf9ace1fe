import pytest

from backend.app.core.json_repair import (
    extract_json,
    extract_json_array,
    extract_json_object,
    strip_think_tags,
)


def test_plain_json():
    assert extract_json('{"warmth": 0.5}') == {"warmth": 0.5}


def test_fenced_json_with_trailing_comma():
    text = 'Here you go:\n```json\n{"warmth": 0.5, "humor": null,}\n```'
    assert extract_json(text) == {"warmth": 0.5, "humor": None}


def test_object_inside_prose():
    text = 'SCORES: {"warmth": 0.75, "note": "a } brace"} done'
    assert extract_json(text) == {"warmth": 0.75, "note": "a } brace"}


def test_array_fallback():
    assert extract_json('result: [{"warmth": {"target": 0.7}}]') == [{"warmth": {"target": 0.7}}]


def test_balanced_spans():
    assert extract_json_object('x {"a": {"b": 1}} y') == '{"a": {"b": 1}}'
    assert extract_json_object('{"a": 1') is None
    assert extract_json_array("[1, [2]] tail") == "[1, [2]]"
    assert extract_json_object("   ") is None


@pytest.mark.parametrize("raw", [None, 5, "", "no json here"])
def test_unusable_input(raw):
    assert extract_json(raw) is None


def test_parsed_values_pass_through():
    assert extract_json({"a": 1}) == {"a": 1}


def test_strip_think_tags():
    assert strip_think_tags("<THINK>\nplan\n</think>\n{}") == "{}"
    assert strip_think_tags("") == ""
