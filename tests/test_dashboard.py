# -*- coding: utf-8 -*-

import json

from dashboard.server import TraceState, compute_metrics, read_last_lines, render_prometheus

EVENTS = [
    {"type": "session", "event": "start", "session_id": "s1", "ts": 1.0},
    {"type": "trace", "session_id": "s1", "phase": "iterate", "iteration": 1, "tokens": 100, "duration_ms": 500, "outcome": {"error": "NameError: x", "timed_out": False}, "ts": 2.0},
    {"type": "trace", "session_id": "s1", "phase": "iterate", "iteration": 2, "tokens": 50, "duration_ms": 250, "final": True, "outcome": {"final": True}, "ts": 3.0},
    {"type": "trace", "session_id": "s1", "phase": "refine", "iteration": 1, "tokens": 10, "duration_ms": 100, "ts": 4.0},
    {"type": "session", "event": "end", "session_id": "s1", "state": "finalized", "ts": 5.0},
    {"type": "qa", "phase": "selection", "ts": 6.0},
]


def _write(path, events, tail=""):
    path.write_text("".join(json.dumps(e) + "\n" for e in events) + tail, encoding="utf-8")


def test_compute_metrics(tmp_path):
    path = tmp_path / "trace.jsonl"
    _write(path, EVENTS, tail="not json\n")
    m = compute_metrics(path)
    assert m["events_total"] == 6
    assert m["iterations_total"] == 3
    assert m["iterations_by_phase"] == {"iterate": 2, "refine": 1}
    assert m["final_total"] == 1
    assert m["code_errors_total"] == 1
    assert m["tokens_total"] == 160
    assert m["sessions_started_total"] == 1
    assert m["sessions_by_state"] == {"finalized": 1}
    assert m["qa_phases_total"] == {"selection": 1}
    assert m["max_iteration"] == 2
    assert m["last_ts"] == 6.0


def test_render_prometheus(tmp_path):
    path = tmp_path / "trace.jsonl"
    _write(path, EVENTS)
    text = render_prometheus(compute_metrics(path))
    assert "rlm_iterations_total 3\n" in text
    assert 'rlm_iterations_total{phase="iterate"} 2\n' in text
    assert 'rlm_model_tokens_total{phase="refine"} 10\n' in text
    assert 'rlm_iteration_duration_seconds_sum{phase="iterate"} 0.75\n' in text
    assert 'rlm_sessions_ended_total{state="finalized"} 1\n' in text
    assert text.endswith("\n")


def test_trace_state_tails_incrementally(tmp_path):
    path = tmp_path / "trace.jsonl"
    state = TraceState(path)
    state.update()
    assert state.snapshot()["trace_exists"] is False

    _write(path, EVENTS[:2], tail='{"type": "trace", "phase": "iter')
    state.update()
    assert state.snapshot()["iterations_total"] == 1

    with path.open("a", encoding="utf-8") as f:
        f.write('ate", "iteration": 3}\n')
    state.update()
    snap = state.snapshot()
    assert snap["iterations_total"] == 2
    assert snap["max_iteration"] == 3
    # a second update with no new data changes nothing
    state.update()
    assert state.snapshot()["events_total"] == 3


def test_read_last_lines(tmp_path):
    path = tmp_path / "t.jsonl"
    path.write_text("".join(f"{i}\n" for i in range(1000)), encoding="utf-8")
    assert read_last_lines(path, n=3) == ["997", "998", "999"]
    assert read_last_lines(tmp_path / "missing", n=3) == []
