# -*- coding: utf-8 -*-

from __future__ import annotations

import json
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple


PHASES = ("plan", "iterate", "refine", "verify", "subquery")

MAX_TRACE_TEXT = 20000
RULE = "═" * 78
THIN_RULE = "─" * 78


def _clip_text(text: Optional[str], max_chars: int) -> Optional[str]:
    if text is None or len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n... [truncated]"


@dataclass(frozen=True)
class TraceEntry:
    session_id: str
    iteration: int
    phase: str
    prompt: str
    response: str
    code: Optional[str] = None
    outcome: Optional[dict] = None
    duration_ms: float = 0.0
    final: bool = False
    tokens: int = 0
    scope: str = "query"
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


class TraceRecorder:
    """
    Append-only trace shared by an Environment.
    When trace_path is set every entry is also written as one JSON line, the same file
    the dashboard tails.
    """

    def __init__(self, trace_path: Optional[str | Path] = None):
        self.trace_path = Path(trace_path) if trace_path else None
        if self.trace_path:
            self.trace_path.parent.mkdir(parents=True, exist_ok=True)
        self._entries: List[TraceEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: TraceEntry) -> TraceEntry:
        with self._lock:
            self._entries.append(entry)
            if self.trace_path:
                self._write({"type": "trace", **entry.to_dict()})
        return entry

    def event(self, event: dict) -> None:
        """Side-channel JSONL event (session start/end, errors); not part of the entry list."""
        if not self.trace_path:
            return
        event = dict(event)
        event.setdefault("ts", time.time())
        with self._lock:
            self._write(event)

    def _write(self, payload: dict) -> None:
        try:
            with self.trace_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        except Exception:
            # Best-effort file logging only.
            return

    def entries(self) -> Tuple[TraceEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def for_session(self, session_id: str) -> Tuple[TraceEntry, ...]:
        return tuple(e for e in self.entries() if e.session_id == session_id)

    def __len__(self) -> int:
        return len(self._entries)


def make_entry(
    session_id: str,
    iteration: int,
    phase: str,
    messages: Any,
    response: str,
    **kwargs,
) -> TraceEntry:
    """Build an entry from the message list sent to the model; the prompt is the last user turn."""
    if isinstance(messages, str):
        prompt = messages
    else:
        prompt = ""
        for m in reversed(list(messages or [])):
            if isinstance(m, dict) and m.get("role") == "user":
                prompt = str(m.get("content") or "")
                break
    return TraceEntry(
        session_id=session_id,
        iteration=iteration,
        phase=phase,
        prompt=_clip_text(prompt, MAX_TRACE_TEXT) or "",
        response=_clip_text(response, MAX_TRACE_TEXT) or "",
        **kwargs,
    )


def format_trace(
    trace: Iterable[TraceEntry | dict],
    max_response_length: int = 500,
    max_code_length: int = 300,
    max_result_length: int = 200,
    show_stdout: bool = True,
) -> str:
    entries = [e.to_dict() if isinstance(e, TraceEntry) else dict(e) for e in trace]
    if not entries:
        return "No trace entries."

    def truncate(s: Any, n: int) -> str:
        s = "" if s is None else str(s)
        return s[:n] + "..." if len(s) > n else s

    blocks = [f"RLM EXECUTION TRACE ({len(entries)} entries)"]
    for e in entries:
        tag = f"{e.get('phase', 'iterate').upper()} {e.get('iteration', 0)}"
        if e.get("final"):
            tag += " [FINAL]"
        lines = [
            "",
            "╔" + RULE,
            f"║ {tag}  ({float(e.get('duration_ms') or 0.0):.0f}ms)",
            "╠" + RULE,
            "║ RESPONSE:",
            "║ " + truncate(e.get("response"), max_response_length).replace("\n", "\n║ "),
        ]
        code = e.get("code")
        outcome = e.get("outcome") or {}
        if code:
            lines.append("╠" + THIN_RULE)
            lines.append("║ CODE: " + truncate(code.replace("\n", " "), max_code_length))
            if outcome.get("error"):
                lines.append("║     ERROR: " + truncate(outcome["error"], max_result_length))
            elif outcome.get("final"):
                lines.append("║     FINAL => " + truncate(json.dumps(outcome.get("answer"), ensure_ascii=False, default=str), max_result_length))
            else:
                lines.append("║     => " + truncate(json.dumps(outcome.get("value"), ensure_ascii=False, default=str), max_result_length))
            if outcome.get("execution_time_ms") is not None:
                lines[-1] += f" ({outcome['execution_time_ms']:.0f}ms)"
            stdout = outcome.get("stdout")
            if show_stdout and stdout and stdout.strip():
                lines.append("║     STDOUT: " + truncate(stdout, max_result_length).replace("\n", "\n║     "))
        lines.append("╚" + RULE)
        blocks.append("\n".join(lines))
    return "\n".join(blocks)


def print_trace(trace: Iterable[TraceEntry | dict], **opts) -> None:
    print(format_trace(trace, **opts))
