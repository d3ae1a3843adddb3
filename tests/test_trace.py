# -*- coding: utf-8 -*-

import json

from rlm.trace import TraceRecorder, format_trace, make_entry, print_trace


def test_empty_trace():
    assert format_trace([]) == "No trace entries."


def test_make_entry_uses_last_user_turn():
    messages = [{"role": "system", "content": "sys"}, {"role": "user", "content": "first"}, {"role": "assistant", "content": "a"}, {"role": "user", "content": "second"}]
    e = make_entry("s1", 2, "iterate", messages, "ok")
    assert e.prompt == "second"
    assert e.scope == "query"


def test_format_trace_blocks():
    entries = [
        make_entry("s1", 1, "iterate", "p", "Let me look", code="docs = list_documents()\nlen(docs)", outcome={"value": 3, "stdout": "listing\n", "execution_time_ms": 1.2}),
        make_entry("s1", 2, "iterate", "p", "bad", code="1/0", outcome={"error": "ZeroDivisionError: division by zero"}),
        make_entry("s1", 3, "iterate", "p", "done", code="FINAL('x')", outcome={"final": True, "answer": "x"}, final=True),
        make_entry("s1", 1, "refine", "p", '{"claims": []}'),
    ]
    text = format_trace(entries)
    assert text.startswith("RLM EXECUTION TRACE (4 entries)")
    assert "║ ITERATE 1  (" in text
    assert "║ CODE: docs = list_documents() len(docs)" in text
    assert "║     => 3 (1ms)" in text
    assert "║     STDOUT: listing" in text
    assert "║     ERROR: ZeroDivisionError" in text
    assert "ITERATE 3 [FINAL]" in text
    assert '║     FINAL => "x"' in text
    assert "REFINE 1" in text
    assert text.count("╔") == 4 and text.count("╚") == 4


def test_format_trace_truncates_and_accepts_dicts():
    entry = make_entry("s1", 1, "iterate", "p", "r" * 50).to_dict()
    text = format_trace([entry], max_response_length=10)
    assert "║ " + "r" * 10 + "..." in text


def test_recorder_writes_jsonl(tmp_path):
    path = tmp_path / "logs" / "trace.jsonl"
    rec = TraceRecorder(path)
    rec.append(make_entry("s1", 1, "iterate", "p", "r"))
    rec.event({"type": "session", "event": "end", "session_id": "s1"})
    rec.append(make_entry("s2", 1, "iterate", "p", "r"))
    lines = [json.loads(ln) for ln in path.read_text(encoding="utf-8").splitlines()]
    assert [ln["type"] for ln in lines] == ["trace", "session", "trace"]
    assert "ts" in lines[1]
    assert len(rec) == 2
    assert [e.session_id for e in rec.for_session("s2")] == ["s2"]


def test_recorder_without_path_keeps_entries_in_memory():
    rec = TraceRecorder()
    rec.event({"type": "session"})
    rec.append(make_entry("s1", 1, "plan", "p", "r"))
    assert len(rec.entries()) == 1


def test_print_trace(capsys):
    print_trace([])
    assert capsys.readouterr().out == "No trace entries.\n"
