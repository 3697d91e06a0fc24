"""Fallback parsers for free-text model replies.

Structured (JSON) replies are always preferred. When a model ignores the
requested format these helpers recover what they can with a fixed grammar:

* the first ``{...}`` object in the reply,
* ``## Heading`` / ``Heading:`` delimited sections,
* numbered (``1.`` / ``1)``) or bulleted (``-`` / ``*`` / ``•``) lists,
* ``key: value`` lines.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_LIST_ITEM_PATTERN = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(?P<item>.+?)\s*$")
_KEY_VALUE_PATTERN = re.compile(r"^\s*(?P<key>[A-Za-z][\w \-]{0,60}?)\s*:\s*(?P<value>.*?)\s*$")
_HEADING_PATTERN = re.compile(
    r"^\s*(?:#{1,6}\s*(?P<md>[^#].*?)\s*:?"
    r"|\*\*(?P<bold>[^*]+?)\s*:?\s*\*\*\s*:?"
    r"|(?P<colon>[A-Za-z][\w \-]{0,60}?)\s*:)\s*$"
)


class JSONExtractionError(ValueError):
    """Raised when a reply contains no decodable JSON object."""


def strip_code_fences(text: str) -> str:
    return _FENCE_PATTERN.sub("", text.strip()).strip()


def parse_json_object(text: str) -> dict[str, Any]:
    """Decode the reply as JSON, falling back to the first balanced object in it."""
    cleaned = strip_code_fences(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        snippet = _first_balanced_object(cleaned)
        if snippet is None:
            raise JSONExtractionError("Response did not contain a JSON object") from None
        try:
            payload = json.loads(snippet)
        except json.JSONDecodeError as exc:
            raise JSONExtractionError(f"Response JSON could not be decoded: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise JSONExtractionError("Response JSON was not an object")
    return payload


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def extract_section(text: str, name: str) -> str | None:
    """Return the body under a heading called ``name`` (case-insensitive).

    ``Name: value`` on a single line yields ``value``; otherwise the body runs
    until the next heading.
    """
    target = name.strip().lower()
    collected: list[str] = []
    capturing = False
    for line in text.splitlines():
        heading = _heading_name(line)
        if capturing:
            if heading is not None:
                break
            collected.append(line)
            continue
        if heading is not None and heading.lower() == target:
            capturing = True
            continue
        inline = _KEY_VALUE_PATTERN.match(line)
        if inline and inline.group("key").strip().lower() == target and inline.group("value"):
            return inline.group("value").strip()
    body = "\n".join(collected).strip()
    return body or None


def _heading_name(line: str) -> str | None:
    if _LIST_ITEM_PATTERN.match(line):
        return None
    match = _HEADING_PATTERN.match(line)
    if match is None:
        return None
    return (match.group("md") or match.group("bold") or match.group("colon")).strip()


def extract_list(text: str, name: str | None = None) -> list[str]:
    """Collect numbered or bulleted items, optionally only within a named section."""
    source = text
    if name is not None:
        section = extract_section(text, name)
        if section is None:
            return []
        source = section
    items: list[str] = []
    for line in source.splitlines():
        match = _LIST_ITEM_PATTERN.match(line)
        if match:
            items.append(match.group("item"))
    return items


def parse_key_values(text: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for line in text.splitlines():
        if _LIST_ITEM_PATTERN.match(line):
            continue
        match = _KEY_VALUE_PATTERN.match(line)
        if match and match.group("value"):
            key = match.group("key").strip().lower().replace(" ", "_").replace("-", "_")
            pairs.setdefault(key, match.group("value"))
    return pairs


def coerce_unit_float(raw_value: Any, default: float) -> float:
    """Clamp a loosely typed number into [0, 1]; non-numbers yield ``default``."""
    if isinstance(raw_value, bool):
        return default
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value):
        return default
    return max(0.0, min(1.0, value))
