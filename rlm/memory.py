# -*- coding: utf-8 -*-

from __future__ import annotations

import json
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import (
    CHARS_PER_TOKEN,
    GOOD_EXAMPLE_SCORE,
    LEARNING_DECAY_MIN_VOTES,
    LEARNING_DECAY_RATIO,
    MAX_BAD_EXAMPLES,
    MAX_GOOD_EXAMPLES,
)


VOTE_KINDS = ("useful", "not-useful")


def estimate_tokens(text: str) -> int:
    return max(1, len(text or "") // CHARS_PER_TOKEN) if text else 0


@dataclass(frozen=True)
class HistoryMessage:
    id: str
    role: str
    content: str
    tokens: int
    timestamp: float
    iteration: int = 0
    session_id: Optional[str] = None


@dataclass(frozen=True)
class Learning:
    id: str
    insight: str
    context: Optional[str]
    created_at: float


@dataclass(frozen=True)
class Example:
    query: str
    answer: str
    score: int
    context_summary: str = ""
    feedback: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def good(self) -> bool:
        return self.score >= GOOD_EXAMPLE_SCORE


def _words(text: str) -> List[str]:
    return [w for w in "".join(c.lower() if c.isalnum() else " " for c in text or "").split() if len(w) > 2]


class MemoryStore:
    """
    Append-only logs shared by every session of one Environment.

    history, learnings, votes, applications, examples and claims each have their own lock;
    a write is one append under that lock, and records are never edited or removed.
    Vote and application counts are derived from their logs at read time.
    """

    def __init__(self):
        self._history: List[HistoryMessage] = []
        self._learnings: List[Learning] = []
        self._votes: List[tuple] = []  # (learning_id, kind, ts)
        self._applications: List[tuple] = []  # (learning_id, ts)
        self._examples: List[Example] = []
        self._claims: List[dict] = []
        self._history_lock = threading.Lock()
        self._learnings_lock = threading.Lock()
        self._votes_lock = threading.Lock()
        self._applications_lock = threading.Lock()
        self._examples_lock = threading.Lock()
        self._claims_lock = threading.Lock()

    # history

    def append_message(self, role: str, content: str, iteration: int = 0, session_id: Optional[str] = None, tokens: Optional[int] = None) -> HistoryMessage:
        msg = HistoryMessage(
            id=str(uuid.uuid4()),
            role=role,
            content=content or "",
            tokens=int(tokens) if tokens is not None else estimate_tokens(content),
            timestamp=time.time(),
            iteration=iteration,
            session_id=session_id,
        )
        with self._history_lock:
            self._history.append(msg)
        return msg

    def get_history(self, n: int = 10, session_id: Optional[str] = None) -> List[dict]:
        msgs = [m for m in list(self._history) if session_id is None or m.session_id == session_id]
        return [asdict(m) for m in msgs[-max(0, int(n)):]] if n else []

    def search_history(self, query: Optional[str] = None, n: int = 5, session_id: Optional[str] = None) -> List[dict]:
        msgs = [m for m in list(self._history) if session_id is None or m.session_id == session_id]
        if query:
            q = str(query).lower()
            msgs = [m for m in msgs if q in m.content.lower()]
        return [{"role": m.role, "content": m.content, "tokens": m.tokens, "iteration": m.iteration} for m in msgs[-max(0, int(n)):]] if n else []

    def history_stats(self, session_id: Optional[str] = None) -> dict:
        by_role: Dict[str, int] = {}
        total_tokens = 0
        total = 0
        for m in list(self._history):
            if session_id is not None and m.session_id != session_id:
                continue
            total += 1
            total_tokens += m.tokens
            by_role[m.role] = by_role.get(m.role, 0) + 1
        return {"total_messages": total, "total_tokens": total_tokens, "by_role": by_role}

    def history_tokens(self) -> int:
        return sum(m.tokens for m in list(self._history))

    # learnings

    def store_learning(self, insight: str, context: Optional[str] = None) -> dict:
        if not isinstance(insight, str) or not insight.strip():
            raise ValueError("insight must be a non-empty string")
        learning = Learning(id=str(uuid.uuid4()), insight=insight.strip(), context=context, created_at=time.time())
        with self._learnings_lock:
            self._learnings.append(learning)
        return self._learning_view(learning, self._vote_counts(), self._application_counts())

    def _vote_counts(self) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = {}
        for lid, kind, _ts in list(self._votes):
            c = counts.setdefault(lid, {"useful": 0, "not-useful": 0})
            c[kind] += 1
        return counts

    def _application_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for lid, _ts in list(self._applications):
            counts[lid] = counts.get(lid, 0) + 1
        return counts

    @staticmethod
    def is_decayed(useful: int, not_useful: int) -> bool:
        total = useful + not_useful
        return total >= LEARNING_DECAY_MIN_VOTES and (not_useful / total) > LEARNING_DECAY_RATIO

    def _learning_view(self, learning: Learning, votes: dict, applied: dict) -> dict:
        c = votes.get(learning.id, {"useful": 0, "not-useful": 0})
        return {
            "id": learning.id,
            "insight": learning.insight,
            "context": learning.context,
            "created_at": learning.created_at,
            "useful_count": c["useful"],
            "not_useful_count": c["not-useful"],
            "applied_count": applied.get(learning.id, 0),
            "decayed": self.is_decayed(c["useful"], c["not-useful"]),
        }

    def search_learnings(self, query: Optional[str] = None, top_k: int = 5, track: bool = True) -> List[dict]:
        votes = self._vote_counts()
        applied = self._application_counts()
        candidates = []
        q_words = set(_words(query or ""))
        for learning in reversed(list(self._learnings)):
            view = self._learning_view(learning, votes, applied)
            if view["decayed"]:
                continue
            if q_words:
                overlap = q_words.intersection(_words(learning.insight + " " + (learning.context or "")))
                if not overlap and str(query).lower() not in learning.insight.lower():
                    continue
            candidates.append(view)
        out = candidates[: max(0, int(top_k))]
        if track and out:
            now = time.time()
            with self._applications_lock:
                self._applications.extend((v["id"], now) for v in out)
        return out

    def vote_learning(self, learning_id: str, vote: str) -> dict:
        kind = str(vote).strip().lower().lstrip(":").replace("_", "-")
        if kind not in VOTE_KINDS:
            raise ValueError(f"vote must be one of {VOTE_KINDS}, got {vote!r}")
        learning = next((l for l in list(self._learnings) if l.id == learning_id), None)
        if learning is None:
            raise KeyError(f"unknown learning id {learning_id!r}")
        with self._votes_lock:
            self._votes.append((learning_id, kind, time.time()))
        return self._learning_view(learning, self._vote_counts(), self._application_counts())

    def learning_stats(self) -> dict:
        votes = self._vote_counts()
        learnings = list(self._learnings)
        decayed = sum(1 for l in learnings if self._learning_view(l, votes, {})["decayed"])
        return {
            "total_learnings": len(learnings),
            "active_learnings": len(learnings) - decayed,
            "decayed_learnings": decayed,
            "total_votes": len(self._votes),
            "total_applications": len(self._applications),
        }

    def all_learnings(self) -> List[dict]:
        votes = self._vote_counts()
        applied = self._application_counts()
        return [self._learning_view(l, votes, applied) for l in list(self._learnings)]

    # examples

    def store_example(self, query: str, answer: str, score: int, context_summary: str = "", feedback: Optional[str] = None) -> Example:
        ex = Example(query=query, answer=answer, score=int(score), context_summary=context_summary, feedback=feedback)
        with self._examples_lock:
            self._examples.append(ex)
        return ex

    def get_examples(self, max_good: int = MAX_GOOD_EXAMPLES, max_bad: int = MAX_BAD_EXAMPLES) -> Dict[str, List[Example]]:
        recent = list(reversed(self._examples))
        return {
            "good": [e for e in recent if e.good][:max_good],
            "bad": [e for e in recent if not e.good][:max_bad],
        }

    def search_examples(self, query: Optional[str] = None, top_k: int = 5) -> List[dict]:
        q_words = set(_words(query or ""))
        out = []
        for e in reversed(list(self._examples)):
            if q_words and not q_words.intersection(_words(e.query)):
                continue
            out.append({"query": e.query, "answer": e.answer, "score": e.score, "good": e.good})
        return out[: max(0, int(top_k))]

    # claims

    def record_claims(self, claims: List[dict]) -> None:
        with self._claims_lock:
            self._claims.extend(dict(c) for c in claims)

    def list_claims(self, query_id: Optional[str] = None) -> List[dict]:
        return [dict(c) for c in list(self._claims) if query_id is None or c.get("query_id") == query_id]

    # persistence

    def save(self, path: str | Path) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "history": [asdict(m) for m in list(self._history)],
            "learnings": [asdict(l) for l in list(self._learnings)],
            "votes": [list(v) for v in list(self._votes)],
            "applications": [list(a) for a in list(self._applications)],
            "examples": [asdict(e) for e in list(self._examples)],
            "claims": list(self._claims),
        }
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        tmp.replace(p)

    @classmethod
    def load(cls, path: str | Path) -> "MemoryStore":
        store = cls()
        p = Path(path)
        if not p.exists():
            return store
        data = json.loads(p.read_text(encoding="utf-8"))
        store._history = [HistoryMessage(**m) for m in data.get("history", [])]
        store._learnings = [Learning(**l) for l in data.get("learnings", [])]
        store._votes = [tuple(v) for v in data.get("votes", [])]
        store._applications = [tuple(a) for a in data.get("applications", [])]
        store._examples = [Example(**e) for e in data.get("examples", [])]
        store._claims = list(data.get("claims", []))
        return store
