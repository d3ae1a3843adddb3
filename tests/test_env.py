# -*- coding: utf-8 -*-

import json

import pytest

from conftest import CONTRACTS, FakeClient, code
from rlm.env import create_environment, dispose, ingest, register_constant, register_function
from rlm.errors import ConfigurationError
from rlm.loop import query
from rlm.model_client import OpenAICompatClient


@pytest.mark.parametrize(
    "config",
    [
        None,
        {},
        {"base_url": "http://x", "colour": "blue"},
        {"base_url": "http://x", "eval_fuel": 0},
        {"base_url": "http://x", "eval_timeout_s": 0},
        {"base_url": "http://x", "eval_max_range": 0},
        {"base_url": "http://x", "max_recursion_depth": -1},
        {"client": object()},
    ],
)
def test_invalid_config_is_rejected(config):
    with pytest.raises(ConfigurationError):
        create_environment(config)


def test_base_url_builds_http_client():
    env = create_environment({"base_url": "http://localhost:1234", "model": "m1", "retries": 0})
    assert isinstance(env.client, OpenAICompatClient)
    assert env.client.model == "m1"


def test_ingest_returns_counts():
    env = create_environment({"client": FakeClient()})
    counts = ingest(env, CONTRACTS[:1])
    assert counts == [
        {
            "document_id": "contract-x",
            "pages_stored": 2,
            "nodes_stored": 4,
            "toc_entries_stored": 2,
            "entities_stored": 2,
            "relationships_stored": 0,
        }
    ]


def test_registration_rules():
    env = create_environment({"client": FakeClient()})
    assert register_function(env, "net_amount", lambda x: x * 0.8, "Amount after tax") is env
    register_constant(env, "VAT_RATE", 0.2, "VAT rate")
    assert set(env.registered()) == {"net_amount", "VAT_RATE"}
    with pytest.raises(ConfigurationError):
        register_function(env, "net_amount", len, "again")
    for name in ("FINAL", "search_page_nodes", "open", "_hidden", "bad-name"):
        with pytest.raises(ConfigurationError):
            register_constant(env, name, 1, "doc")
    with pytest.raises(ConfigurationError):
        register_function(env, "not_callable", 3, "doc")
    with pytest.raises(ConfigurationError):
        register_constant(env, "EMPTY_DOC", 1, "  ")


def test_registration_after_query_is_visible_to_next_query(make_env):
    client = FakeClient(script=[code("FINAL(1)"), code("FINAL(LIMIT)")])
    env = make_env(client)
    query(env, "first", refine=False)
    register_constant(env, "LIMIT", 5, "Upper bound")
    assert query(env, "second", refine=False).answer == 5


def test_dispose_is_idempotent_and_closes_env():
    env = create_environment({"client": FakeClient()})
    ingest(env, CONTRACTS)
    snapshot = env.corpus.list_documents()
    dispose(env)
    dispose(env)
    assert env.disposed
    assert env.corpus.stats() == {"documents": 0, "page_nodes": 0, "toc_entries": 0, "entities": 0, "relationships": 0}
    assert len(snapshot) == 3
    with pytest.raises(ConfigurationError):
        ingest(env, CONTRACTS)
    with pytest.raises(ConfigurationError):
        register_constant(env, "X", 1, "doc")


def test_memory_persists_across_environments(tmp_path):
    memory_path = tmp_path / "memory.json"
    client = FakeClient(script=[code("store_learning('Check the TOC first')\nFINAL('ok')")])
    env = create_environment({"client": client, "memory_path": str(memory_path)})
    ingest(env, CONTRACTS)
    query(env, "anything", refine=False)
    dispose(env)
    assert json.loads(memory_path.read_text(encoding="utf-8"))["learnings"][0]["insight"] == "Check the TOC first"

    env2 = create_environment({"client": FakeClient(), "memory_path": str(memory_path)})
    assert env2.memory.search_learnings("toc", track=False)[0]["insight"] == "Check the TOC first"
    assert env2.memory.history_stats()["total_messages"] > 0


def test_trace_file_receives_session_events(make_env, tmp_path):
    client = FakeClient(script=[code("FINAL(2)")])
    env = make_env(client)
    query(env, "two?", refine=False)
    lines = [json.loads(ln) for ln in (tmp_path / "trace.jsonl").read_text(encoding="utf-8").splitlines()]
    kinds = [(ln["type"], ln.get("event")) for ln in lines]
    assert kinds[:2] == [("environment", "created"), ("ingest", None)]
    assert ("session", "start") in kinds and ("session", "end") in kinds
    assert ("trace", None) in kinds
