"""Lenient cleanup for JSON written by the delegate model.

Markdown fences are handled by langchain's `parse_json_markdown`; the text it
extracts goes through `REPAIR_STEPS` (plain `str -> str` functions) before
`json.loads`. Only the outermost object is kept.
"""
from __future__ import annotations

import json
import re
from typing import Any, Callable

from langchain_core.utils.json import parse_json_markdown

_LINE_COMMENT = re.compile(r"^\s*//.*$", re.MULTILINE)
_KEY_START = re.compile(r"[A-Za-z_$]")
_KEY_CHAR = re.compile(r"[\w$-]")


def trim_to_braces(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        return text[start : end + 1]
    return text


def strip_line_comments(text: str) -> str:
    return _LINE_COMMENT.sub("", text)


def fix_trailing_commas(text: str) -> str:
    """Drop commas directly before `}` or `]`, ignoring string contents."""
    out: list[str] = []
    in_str = False
    escape = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_str:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            i += 1
            continue
        if ch == '"':
            in_str = True
        elif ch == ",":
            j = i + 1
            while j < len(text) and text[j] in " \t\r\n":
                j += 1
            if j < len(text) and text[j] in "}]":
                i += 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def quote_bare_keys(text: str) -> str:
    """Quote identifiers used as object keys: `{intent: "x"}` -> `{"intent": "x"}`."""
    out: list[str] = []
    in_str = False
    escape = False
    expecting_key = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_str:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            i += 1
            continue
        if ch == '"':
            in_str = True
            expecting_key = False
            out.append(ch)
            i += 1
            continue
        if ch in "{,":
            expecting_key = True
            out.append(ch)
            i += 1
            continue
        if expecting_key and _KEY_START.match(ch):
            j = i
            while j < len(text) and _KEY_CHAR.match(text[j]):
                j += 1
            k = j
            while k < len(text) and text[k] in " \t\r\n":
                k += 1
            if k < len(text) and text[k] == ":":
                out.append(f'"{text[i:j]}"')
                i = j
                expecting_key = False
                continue
        if not ch.isspace():
            expecting_key = False
        out.append(ch)
        i += 1
    return "".join(out)


REPAIR_STEPS: tuple[Callable[[str], str], ...] = (
    trim_to_braces,
    strip_line_comments,
    fix_trailing_commas,
    quote_bare_keys,
)


def repair_json(text: str) -> str:
    for step in REPAIR_STEPS:
        text = step(text)
    return text.strip()


def _loads_repaired(text: str) -> Any:
    return json.loads(repair_json(text))


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse delegate output into a dict, raising ValueError when it cannot be repaired."""
    data = parse_json_markdown(text or "", parser=_loads_repaired)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data
