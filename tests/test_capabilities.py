# -*- coding: utf-8 -*-

import datetime as dt

import pytest

from rlm.capabilities import (
    date_after,
    date_before,
    date_format,
    date_minus_days,
    date_plus_days,
    days_between,
    depth_exceeded_message,
    output_schema_block,
    parse_date,
    render_capability_docs,
    today_str,
    valid_binding_name,
)
from rlm.parse import field, spec


def test_date_helpers():
    assert parse_date("2024-03-01") == "2024-03-01"
    assert parse_date("March 1st") is None
    assert date_before("2024-03-01", "2024-04-01") is True
    assert date_after("2024-03-01", "bad") is None
    assert days_between("2024-03-01", "2024-03-31") == 30
    assert days_between("2024-03-31", "2024-03-01") == -30
    assert date_plus_days("2024-02-28", 2) == "2024-03-01"
    assert date_minus_days("2024-03-01", "1") == "2024-02-29"
    assert date_format("2024-03-01", "dd/MM/yyyy") == "01/03/2024"
    assert date_format("2024-03-01", "%Y") == "2024"
    assert today_str() == dt.date.today().isoformat()


def test_render_docs_lists_sections_and_registrations():
    text = render_capability_docs({"double": {"kind": "function", "doc": "Double it"}, "RATE": {"kind": "constant", "doc": "A rate"}})
    assert "<document_tools>" in text and "</sub_query_tools>" in text
    assert "double(...) - Double it" in text
    assert "RATE (constant) - A rate" in text
    assert "<history_tools>" not in render_capability_docs(include_history=False)


def test_output_schema_block():
    assert output_schema_block(None) is None
    block = output_schema_block(spec(field("total", "int")))
    assert block.startswith("<expected_output_schema>")
    assert "- total: int" in block


@pytest.mark.parametrize("name,ok", [("net_amount", True), ("VAT", True), ("_x", False), ("a-b", False), ("9lives", False), (3, False)])
def test_valid_binding_name(name, ok):
    assert valid_binding_name(name) is ok


def test_depth_exceeded_message():
    assert depth_exceeded_message(3) == "Max recursion depth (3) exceeded"
