# -*- coding: utf-8 -*-

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .capabilities import valid_binding_name
from .config import (
    DEFAULT_TIMEOUT,
    EVAL_FUEL,
    EVAL_MAX_RANGE,
    EVAL_TIMEOUT_S,
    MAX_OUTPUT_CHARS,
    MAX_RECURSION_DEPTH,
    MODEL_BACKOFF_S,
    MODEL_MAX_TOKENS,
    MODEL_RETRIES,
)
from .corpus import Corpus
from .errors import ConfigurationError
from .memory import MemoryStore
from .model_client import OpenAICompatClient
from .sandbox import BLOCKED_BUILTINS, RESERVED_NAMES
from .trace import TraceRecorder, make_entry


# Names the capability surface already uses; registrations may not shadow them.
BUILTIN_CAPABILITIES = frozenset(
    {
        "context",
        "list_documents", "get_document", "search_page_nodes", "get_page_node", "list_page_nodes",
        "list_toc_entries", "search_toc_entries", "get_toc_entry", "search_entities", "get_entity",
        "list_entities", "list_relationships", "entity_stats",
        "search_history", "get_history", "history_stats", "store_learning", "search_learnings",
        "vote_learning", "learning_stats", "search_examples",
        "CITE", "CITE_UNVERIFIED", "list_claims", "llm_query", "rlm_query",
        "parse_date", "date_before", "date_after", "days_between", "date_plus_days",
        "date_minus_days", "date_format", "today_str",
        "re", "json", "math", "Counter", "defaultdict",
    }
)


@dataclass
class EngineConfig:
    base_url: Optional[str] = None
    model: Optional[str] = None
    api_key: Optional[str] = None
    temperature: float = 0.2
    max_tokens: int = MODEL_MAX_TOKENS
    timeout: int = DEFAULT_TIMEOUT
    retries: int = MODEL_RETRIES
    backoff_s: float = MODEL_BACKOFF_S
    eval_fuel: int = EVAL_FUEL
    eval_timeout_s: float = EVAL_TIMEOUT_S
    max_output_chars: int = MAX_OUTPUT_CHARS
    eval_max_range: int = EVAL_MAX_RANGE
    max_recursion_depth: int = MAX_RECURSION_DEPTH
    trace_path: Optional[str] = None
    memory_path: Optional[str] = None
    prompt_profile: Optional[str] = None
    system_role: str = "system"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(k for k in data if k not in known and k != "client")
        if unknown:
            raise ConfigurationError(f"unknown config keys: {unknown}")
        cfg = cls(**{k: v for k, v in data.items() if k in known})
        for name in ("eval_fuel", "eval_max_range", "max_output_chars", "max_tokens"):
            if int(getattr(cfg, name)) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if float(cfg.eval_timeout_s) <= 0:
            raise ConfigurationError("eval_timeout_s must be positive")
        if int(cfg.max_recursion_depth) < 0:
            raise ConfigurationError("max_recursion_depth must be >= 0")
        return cfg


class Environment:
    """
    One corpus session: corpus, memory store, registered capabilities, completion client, trace.
    Shared by any number of concurrent queries; use dispose() when done.
    """

    def __init__(self, config: EngineConfig, client: Any):
        self.config = config
        self.client = client
        self.corpus = Corpus()
        self.memory = MemoryStore.load(config.memory_path) if config.memory_path else MemoryStore()
        self.trace = TraceRecorder(config.trace_path)
        self._registry: Dict[str, dict] = {}
        self._registry_lock = threading.Lock()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def check_open(self) -> None:
        if self._disposed:
            raise ConfigurationError("environment has been disposed")

    def registered(self) -> Dict[str, dict]:
        with self._registry_lock:
            return dict(self._registry)

    def _register(self, kind: str, name: str, value: Any, doc: str) -> "Environment":
        self.check_open()
        if not valid_binding_name(name):
            raise ConfigurationError(f"invalid name {name!r}: use a Python identifier without a leading underscore")
        if name in RESERVED_NAMES or name in BUILTIN_CAPABILITIES or name in BLOCKED_BUILTINS:
            raise ConfigurationError(f"{name!r} is a reserved capability name")
        if not isinstance(doc, str) or not doc.strip():
            raise ConfigurationError(f"{name!r}: doc must be a non-empty string")
        if kind == "function" and not callable(value):
            raise ConfigurationError(f"{name!r}: fn must be callable")
        with self._registry_lock:
            if name in self._registry:
                raise ConfigurationError(f"{name!r} is already registered")
            self._registry[name] = {"kind": kind, "value": value, "doc": doc.strip()}
        return self

    def complete(self, messages: List[dict], model: Optional[str] = None, **options) -> dict:
        self.check_open()
        opts = {"temperature": self.config.temperature, "max_tokens": self.config.max_tokens}
        opts.update(options)
        return self.client.complete(messages, model=model or self.config.model, **opts)

    def traced_complete(
        self,
        session_id: str,
        iteration: int,
        phase: str,
        messages: List[dict],
        model: Optional[str] = None,
        **options,
    ) -> dict:
        """complete() plus one trace entry for calls that are not loop iterations (plan/refine/verify/subquery)."""
        t0 = time.perf_counter()
        resp = self.complete(messages, model=model, **options)
        self.trace.append(
            make_entry(
                session_id,
                iteration,
                phase,
                messages,
                resp.get("text") or "",
                duration_ms=(time.perf_counter() - t0) * 1000.0,
                tokens=int(resp.get("tokens") or 0),
            )
        )
        return resp


def create_environment(config: Optional[Dict[str, Any]] = None, client: Any = None) -> Environment:
    """
    config keys: base_url or client (required), model, api_key, temperature, max_tokens, timeout,
    retries, backoff_s, eval_fuel, eval_timeout_s, eval_max_range, max_output_chars, max_recursion_depth,
    trace_path, memory_path, prompt_profile, system_role.
    """
    if config is None and client is None:
        raise ConfigurationError("config is required (base_url or client)")
    data = dict(config or {})
    client = client or data.pop("client", None)
    cfg = EngineConfig.from_dict(data)
    if client is None:
        if not cfg.base_url:
            raise ConfigurationError("config needs base_url (or a client with complete())")
        client = OpenAICompatClient(
            base_url=cfg.base_url,
            model=cfg.model,
            api_key=cfg.api_key,
            retries=cfg.retries,
            backoff_s=cfg.backoff_s,
            timeout=cfg.timeout,
        )
    elif not callable(getattr(client, "complete", None)):
        raise ConfigurationError("client must provide complete(messages, model=None, **options)")
    env = Environment(cfg, client)
    env.trace.event({"type": "environment", "event": "created", "model": cfg.model})
    return env


def ingest(env: Environment, documents) -> List[dict]:
    env.check_open()
    counts = env.corpus.ingest(documents)
    env.trace.event({"type": "ingest", "documents": counts})
    return counts


def register_function(env: Environment, name: str, fn: Callable, doc: str) -> Environment:
    return env._register("function", name, fn, doc)


def register_constant(env: Environment, name: str, value: Any, doc: str) -> Environment:
    return env._register("constant", name, value, doc)


def dispose(env: Environment) -> None:
    if env._disposed:
        return
    env._disposed = True
    if env.config.memory_path:
        env.memory.save(Path(env.config.memory_path))
    env.corpus.close()
    env.trace.event({"type": "environment", "event": "disposed"})
