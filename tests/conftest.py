# -*- coding: utf-8 -*-

import threading

import pytest

from rlm.env import create_environment, dispose, ingest


def code(src: str) -> str:
    return f"Let me run this.\n```python\n{src}\n```"


GOOD_EVAL = '{"correctness": 9, "completeness": 9, "clarity": 9, "confidence": 9, "explanation": "fine"}'

# Refinement collaborator answers: no claims and a 36/40 evaluation, so refinement converges in one pass.
PASSING_REFINEMENT = [
    ("<decomposition_task>", '{"claims": []}'),
    ("<evaluation_task>", GOOD_EVAL),
]


class FakeClient:
    """
    Completion collaborator for tests.
    rules: (marker, response) pairs checked in order against the joined message text;
    response may be a callable(messages) -> str. Anything else pops the next scripted response.
    """

    def __init__(self, script=None, rules=None, default="I am done.\n```python\nFINAL('default')\n```"):
        self.script = list(script or [])
        self.rules = list(rules or [])
        self.default = default
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, messages, model=None, **options):
        joined = "\n".join(str(m.get("content") or "") for m in messages)
        with self._lock:
            self.calls.append({"messages": [dict(m) for m in messages], "model": model, "options": dict(options)})
            for marker, response in self.rules:
                if marker in joined:
                    text = response(messages) if callable(response) else response
                    break
            else:
                text = self.script.pop(0) if self.script else self.default
        return {"text": text, "tokens": len(joined) // 4, "cost": 0.0, "finish_reason": "stop"}

    def calls_matching(self, marker):
        return [c for c in self.calls if any(marker in str(m.get("content") or "") for m in c["messages"])]


CONTRACTS = [
    {
        "id": "contract-x",
        "name": "contract-x.pdf",
        "title": "Supply Agreement X",
        "abstract": "Supply agreement between Acme Corp and Beta LLC.",
        "extension": "pdf",
        "pages": [
            {
                "index": 0,
                "nodes": [
                    {"type": "heading", "level": "h1", "content": "Supply Agreement X"},
                    {"type": "paragraph", "content": "This agreement is signed by Acme Corp and Beta LLC on 2024-03-01."},
                ],
            },
            {
                "index": 1,
                "nodes": [
                    {"type": "heading", "level": "h2", "content": "Payment Terms"},
                    {"type": "paragraph", "content": "Invoices are payable within 30 days of receipt."},
                ],
            },
        ],
        "toc": [
            {"title": "Supply Agreement X", "level": "l1", "target_page": 0},
            {"title": "Payment Terms", "level": "l2", "target_page": 1},
        ],
        "entities": [
            {"name": "Acme Corp", "type": "party", "description": "Supplier", "page": 0},
            {"name": "Beta LLC", "type": "party", "description": "Buyer", "page": 0},
        ],
    },
    {
        "id": "contract-y",
        "name": "contract-y.pdf",
        "title": "Service Agreement Y",
        "abstract": "Service agreement between Gamma Inc and Delta GmbH.",
        "pages": [
            {"index": 0, "nodes": ["This agreement is signed by Gamma Inc and Delta GmbH.", "The term is 24 months."]},
        ],
        "toc": [{"title": "Service Agreement Y", "level": "l1", "target_page": 0}],
        "entities": [{"name": "Gamma Inc", "type": "party"}],
    },
    {
        "id": "contract-z",
        "name": "contract-z.pdf",
        "title": "License Agreement Z",
        "pages": [{"index": 0, "nodes": ["Licensor grants a non-exclusive license for 5 years."]}],
    },
]


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def make_env(tmp_path):
    created = []

    def _make(client, **config):
        config.setdefault("trace_path", str(tmp_path / "trace.jsonl"))
        env = create_environment(dict(config, client=client))
        ingest(env, CONTRACTS)
        created.append(env)
        return env

    yield _make
    for env in created:
        dispose(env)
