# -*- coding: utf-8 -*-

from __future__ import annotations

import argparse
import json
import os
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlparse


INDEX_HTML = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <title>rlm trace</title>
    <style>
      body { font-family: ui-monospace, Menlo, monospace; margin: 16px; background: #111; color: #ddd; }
      h1 { font-size: 16px; }
      table { border-collapse: collapse; width: 100%; font-size: 12px; }
      td, th { border-bottom: 1px solid #333; padding: 4px 6px; text-align: left; vertical-align: top; }
      .err { color: #f66; } .final { color: #6f6; }
      pre { white-space: pre-wrap; margin: 0; }
      #metrics { margin-bottom: 16px; }
    </style>
  </head>
  <body>
    <h1>rlm trace</h1>
    <div id="metrics"></div>
    <table>
      <thead><tr><th>ts</th><th>session</th><th>phase</th><th>iter</th><th>ms</th><th>outcome</th></tr></thead>
      <tbody id="rows"></tbody>
    </table>
    <script>
      function esc(s) { return String(s ?? "").replace(/[&<>]/g, c => ({"&": "&amp;", "<": "&lt;", ">": "&gt;"}[c])); }
      async function refresh() {
        const m = await (await fetch("/metrics_json")).json();
        document.getElementById("metrics").textContent =
          `iterations=${m.iterations_total} finals=${m.final_total} code_errors=${m.code_errors_total} ` +
          `sessions=${m.sessions_started_total} tokens=${m.tokens_total}`;
        const t = await (await fetch("/trace?n=100")).json();
        const rows = t.events.filter(e => e.type === "trace").reverse().map(e => {
          const o = e.outcome || {};
          const cls = e.final ? "final" : (o.error ? "err" : "");
          const text = o.error ? o.error : (e.final ? "FINAL" : JSON.stringify(o.value ?? null));
          return `<tr class="${cls}"><td>${new Date(e.ts * 1000).toLocaleTimeString()}</td>` +
            `<td>${esc((e.session_id || "").slice(0, 8))}</td><td>${esc(e.phase)}</td><td>${e.iteration}</td>` +
            `<td>${Math.round(e.duration_ms || 0)}</td><td><pre>${esc(String(text).slice(0, 300))}</pre></td></tr>`;
        });
        document.getElementById("rows").innerHTML = rows.join("");
      }
      refresh(); setInterval(refresh, 2000);
    </script>
  </body>
</html>
"""


def read_last_lines(path: Path, n: int = 200) -> list[str]:
    if not path.exists():
        return []
    try:
        with path.open("rb") as f:
            f.seek(0, os.SEEK_END)
            pos = f.tell()
            data = b""
            while pos > 0 and data.count(b"\n") <= n:
                read_size = min(8192, pos)
                pos -= read_size
                f.seek(pos, os.SEEK_SET)
                data = f.read(read_size) + data
            return [ln.decode("utf-8", errors="replace") for ln in data.splitlines()[-n:]]
    except Exception:
        return []


def empty_metrics() -> dict:
    return {
        "events_total": 0,
        "events_by_type": {},
        "iterations_total": 0,
        "iterations_by_phase": {},
        "final_total": 0,
        "code_errors_total": 0,
        "timeouts_total": 0,
        "fuel_exhausted_total": 0,
        "tokens_total": 0,
        "tokens_by_phase": {},
        "duration_ms_sum_by_phase": {},
        "sessions_started_total": 0,
        "sessions_by_state": {},
        "qa_phases_total": {},
        "max_iteration": 0,
        "last_ts": 0.0,
    }


def ingest_event(m: dict, ev: dict) -> None:
    m["events_total"] += 1
    t = ev.get("type", "unknown")
    m["events_by_type"][t] = m["events_by_type"].get(t, 0) + 1
    m["last_ts"] = max(m["last_ts"], float(ev.get("ts") or 0.0))

    if t == "trace":
        phase = ev.get("phase") or "unknown"
        m["iterations_total"] += 1
        m["iterations_by_phase"][phase] = m["iterations_by_phase"].get(phase, 0) + 1
        m["max_iteration"] = max(m["max_iteration"], int(ev.get("iteration") or 0))
        tokens = int(ev.get("tokens") or 0)
        m["tokens_total"] += tokens
        m["tokens_by_phase"][phase] = m["tokens_by_phase"].get(phase, 0) + tokens
        m["duration_ms_sum_by_phase"][phase] = m["duration_ms_sum_by_phase"].get(phase, 0.0) + float(ev.get("duration_ms") or 0.0)
        if ev.get("final"):
            m["final_total"] += 1
        outcome = ev.get("outcome") or {}
        if isinstance(outcome, dict):
            if outcome.get("error"):
                m["code_errors_total"] += 1
            if outcome.get("timed_out"):
                m["timeouts_total"] += 1
            if outcome.get("fuel_exhausted"):
                m["fuel_exhausted_total"] += 1

    if t == "session":
        if ev.get("event") == "start":
            m["sessions_started_total"] += 1
        elif ev.get("event") == "end":
            state = ev.get("state") or "unknown"
            m["sessions_by_state"][state] = m["sessions_by_state"].get(state, 0) + 1

    if t == "qa":
        phase = ev.get("phase") or "unknown"
        m["qa_phases_total"][phase] = m["qa_phases_total"].get(phase, 0) + 1


def compute_metrics(trace_path: Path, max_lines: int = 5000) -> dict:
    metrics = empty_metrics()
    for raw in read_last_lines(trace_path, n=max_lines):
        try:
            ev = json.loads(raw)
        except Exception:
            continue
        if isinstance(ev, dict):
            ingest_event(metrics, ev)
    return metrics


def render_prometheus(metrics: dict) -> str:
    lines: list[str] = []

    def emit(name: str, value: float, labels: dict | None = None):
        if labels:
            lab = ",".join(f'{k}="{str(v).replace(chr(34), chr(92) + chr(34))}"' for k, v in labels.items())
            lines.append(f"{name}{{{lab}}} {value}")
        else:
            lines.append(f"{name} {value}")

    emit("rlm_events_total", metrics.get("events_total", 0))
    for t, c in sorted((metrics.get("events_by_type") or {}).items()):
        emit("rlm_events_total", c, {"type": t})
    emit("rlm_iterations_total", metrics.get("iterations_total", 0))
    for phase, c in sorted((metrics.get("iterations_by_phase") or {}).items()):
        emit("rlm_iterations_total", c, {"phase": phase})
    emit("rlm_final_total", metrics.get("final_total", 0))
    emit("rlm_code_errors_total", metrics.get("code_errors_total", 0))
    emit("rlm_sandbox_timeouts_total", metrics.get("timeouts_total", 0))
    emit("rlm_sandbox_fuel_exhausted_total", metrics.get("fuel_exhausted_total", 0))
    emit("rlm_model_tokens_total", metrics.get("tokens_total", 0))
    for phase, c in sorted((metrics.get("tokens_by_phase") or {}).items()):
        emit("rlm_model_tokens_total", c, {"phase": phase})
    for phase, s in sorted((metrics.get("duration_ms_sum_by_phase") or {}).items()):
        emit("rlm_iteration_duration_seconds_sum", float(s) / 1000.0, {"phase": phase})
    emit("rlm_sessions_started_total", metrics.get("sessions_started_total", 0))
    for state, c in sorted((metrics.get("sessions_by_state") or {}).items()):
        emit("rlm_sessions_ended_total", c, {"state": state})
    for phase, c in sorted((metrics.get("qa_phases_total") or {}).items()):
        emit("rlm_qa_phases_total", c, {"phase": phase})
    emit("rlm_max_iteration", metrics.get("max_iteration", 0))
    emit("rlm_last_event_ts", metrics.get("last_ts", 0.0))
    return "\n".join(lines) + "\n"


class TraceState:
    """
    Monotonic metric aggregation by tailing the trace JSONL with a byte cursor,
    so counters never go backwards when the file grows past max_lines.
    """

    def __init__(self, trace_path: Path):
        self.trace_path = trace_path
        self.offset = 0
        self.lock = threading.Lock()
        self.metrics = empty_metrics()

    def update(self) -> None:
        with self.lock:
            try:
                with self.trace_path.open("r", encoding="utf-8", errors="replace") as f:
                    f.seek(self.offset, os.SEEK_SET)
                    while True:
                        line = f.readline()
                        if not line:
                            break
                        if not line.endswith("\n"):
                            # partial write; re-read next time
                            break
                        self.offset = f.tell()
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            ev = json.loads(line)
                        except Exception:
                            continue
                        if isinstance(ev, dict):
                            ingest_event(self.metrics, ev)
            except FileNotFoundError:
                return

    def snapshot(self) -> dict:
        with self.lock:
            snap = json.loads(json.dumps(self.metrics))
            snap["trace_exists"] = self.trace_path.exists()
            snap["trace_size_bytes"] = self.trace_path.stat().st_size if snap["trace_exists"] else 0
            return snap


class Handler(BaseHTTPRequestHandler):
    server_version = "rlm-dashboard/0.1"

    def _send(self, status: int, content_type: str, body: bytes):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _json(self, obj, status: int = 200):
        self._send(status, "application/json; charset=utf-8", json.dumps(obj, ensure_ascii=False).encode("utf-8"))

    def do_GET(self):  # noqa: N802
        parsed = urlparse(self.path)
        qs = parse_qs(parsed.query)
        state: TraceState = self.server.trace_state  # type: ignore[attr-defined]

        if parsed.path == "/":
            self._send(200, "text/html; charset=utf-8", INDEX_HTML.encode("utf-8"))
            return

        if parsed.path == "/metrics":
            state.update()
            self._send(200, "text/plain; version=0.0.4; charset=utf-8", render_prometheus(state.snapshot()).encode("utf-8"))
            return

        if parsed.path == "/metrics_json":
            state.update()
            self._json(state.snapshot())
            return

        if parsed.path == "/trace":
            try:
                n = max(1, min(5000, int((qs.get("n") or ["200"])[0])))
            except ValueError:
                n = 200
            session = (qs.get("session") or [""])[0]
            events = []
            for raw in read_last_lines(state.trace_path, n=n):
                try:
                    ev = json.loads(raw)
                except Exception:
                    continue
                if session and ev.get("session_id") != session:
                    continue
                events.append(ev)
            self._json({"events": events})
            return

        self._send(404, "text/plain; charset=utf-8", b"not found")

    def log_message(self, format, *args):  # noqa: A002
        return


def make_server(trace_path: Path, host: str = "127.0.0.1", port: int = 8844) -> ThreadingHTTPServer:
    srv = ThreadingHTTPServer((host, port), Handler)
    srv.trace_state = TraceState(trace_path)  # type: ignore[attr-defined]
    return srv


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--trace-path", required=True, help="JSONL trace file written by the engine (trace_path)")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8844)
    args = ap.parse_args()

    trace_path = Path(args.trace_path).resolve()
    srv = make_server(trace_path, args.host, args.port)
    print(f"Dashboard running on http://{args.host}:{args.port} (trace={trace_path})")
    srv.serve_forever()


if __name__ == "__main__":
    main()
