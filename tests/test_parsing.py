from __future__ import annotations

import pytest

from reasonchain.utils.parsing import (
    JSONExtractionError,
    coerce_unit_float,
    extract_list,
    extract_section,
    parse_json_object,
    parse_key_values,
)

FREE_TEXT_REPLY = """## Analysis
The query compares three facilities.

## Steps
1. Fetch inventory for each facility
2) Compare stock levels
- Summarize the differences

Confidence: 0.8
"""


def test_parse_json_object_accepts_fenced_json():
    assert parse_json_object('```json\n{"score": 0.4}\n```') == {"score": 0.4}


def test_parse_json_object_finds_object_inside_prose():
    reply = 'Sure! Here is the result: {"reason": "uses {braces}", "passes": 2} Hope that helps.'

    assert parse_json_object(reply) == {"reason": "uses {braces}", "passes": 2}


@pytest.mark.parametrize("reply", ["no json here", "[1, 2, 3]", '{"unterminated": '])
def test_parse_json_object_rejects_non_objects(reply):
    with pytest.raises(JSONExtractionError):
        parse_json_object(reply)


def test_extract_section_reads_heading_body():
    assert extract_section(FREE_TEXT_REPLY, "analysis") == "The query compares three facilities."


def test_extract_section_reads_inline_value():
    assert extract_section(FREE_TEXT_REPLY, "Confidence") == "0.8"
    assert extract_section(FREE_TEXT_REPLY, "Risks") is None


def test_extract_list_within_section():
    assert extract_list(FREE_TEXT_REPLY, "Steps") == [
        "Fetch inventory for each facility",
        "Compare stock levels",
        "Summarize the differences",
    ]
    assert extract_list(FREE_TEXT_REPLY, "Risks") == []


def test_parse_key_values_normalizes_keys():
    pairs = parse_key_values("Reasoning Passes: 3\nComplexity-Score: 0.9\n- bullet: ignored\n")

    assert pairs == {"reasoning_passes": "3", "complexity_score": "0.9"}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(0.4, 0.4), ("0.75", 0.75), (1.7, 1.0), (-2, 0.0), ("high", 0.5), (None, 0.5), (True, 0.5), (float("nan"), 0.5)],
)
def test_coerce_unit_float(raw, expected):
    assert coerce_unit_float(raw, 0.5) == expected
