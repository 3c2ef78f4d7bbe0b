import pytest

from app.agents.router.repair import (
    fix_trailing_commas,
    parse_json_object,
    quote_bare_keys,
)


def test_code_fences_and_prose_are_stripped():
    raw = 'Sure! Here it is:\n```json\n{"intent": "title"}\n```\nanything else?'
    assert parse_json_object(raw) == {"intent": "title"}
    assert parse_json_object("Result: {\"a\": 1} -- done") == {"a": 1}


def test_trailing_commas_outside_strings_only():
    assert fix_trailing_commas('{"a": [1, 2,], "b": ",}",}') == '{"a": [1, 2], "b": ",}"}'


def test_bare_keys_are_quoted():
    assert quote_bare_keys('{intent: "casual", nested: {requiresFiles: false}}') == (
        '{"intent": "casual", "nested": {"requiresFiles": false}}'
    )
    # Colons inside string values are untouched.
    assert quote_bare_keys('{"url": "https://x.test/a"}') == '{"url": "https://x.test/a"}'


def test_line_comments_are_removed():
    raw = '{\n  // the intent\n  "intent": "design"\n}'
    assert parse_json_object(raw) == {"intent": "design"}


@pytest.mark.parametrize("raw", ["", "no braces at all", "[1, 2, 3]", "{not: valid: json}"])
def test_unrepairable_input_raises(raw):
    with pytest.raises(ValueError):
        parse_json_object(raw)


def test_fenced_object_with_trailing_prose_and_bare_keys():
    raw = '```json\n{intent: "enlarge", "parameters": {"note": "a, b",},}\n```\nLet me know!'
    assert parse_json_object(raw) == {"intent": "enlarge", "parameters": {"note": "a, b"}}
