# -*- coding: utf-8 -*-

from __future__ import annotations

import datetime as _dt
import re
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from .parse import Spec, describe_spec, parse_value
from .sandbox import to_value
from .verifier import Claim


# name -> (signature, doc); grouped into prompt sections in this order
CAPABILITY_DOCS: Dict[str, List[Tuple[str, str]]] = {
    "document_tools": [
        ("list_documents(limit=None, include_toc=True)", "List documents with abstract and TOC [{id, name, title, abstract, extension, page_count, toc:[{title, level, page}]}]. START HERE."),
        ("get_document(doc_id)", "One document with its full TOC, or None."),
    ],
    "page_node_tools": [
        ("search_page_nodes(query, limit=10, filter=None)", "Case-insensitive substring search over page content. filter: {'document_id', 'type', 'page'}. Returns [{id, type, level, content, description, page, page_id, document_id}]."),
        ("get_page_node(node_id)", "Full page node by id, or None."),
        ("list_page_nodes(filter=None)", "List nodes; filter keys: document_id, page_id, page, type, limit."),
    ],
    "toc_entry_tools": [
        ("list_toc_entries(doc_id=None, parent_id=None, limit=None)", "TOC entries [{id, title, description, level, target_page, parent_id, document_id}]. Pages are 0-based; level l1=chapter, l2=section."),
        ("search_toc_entries(query, limit=10)", "Search TOC titles and descriptions."),
        ("get_toc_entry(entry_id)", "One TOC entry, or None."),
    ],
    "entity_tools": [
        ("search_entities(query, limit=10, filter=None)", "Search extracted entities by name/description. filter: {'type', 'document_id'}."),
        ("get_entity(entity_id)", "One entity, or None."),
        ("list_entities(filter=None)", "List entities; filter keys: type, document_id, limit."),
        ("list_relationships(doc_id=None, entity_id=None, type=None)", "Relationships where the entity is source or target."),
        ("entity_stats()", "{total_entities, types, total_relationships}."),
    ],
    "history_tools": [
        ("search_history(query=None, n=5)", "Recent conversation messages, optionally containing query. [{role, content, tokens, iteration}]."),
        ("get_history(n=10)", "Last n messages of this session, oldest first."),
        ("history_stats()", "{total_messages, total_tokens, by_role}."),
    ],
    "learnings_tools": [
        ("store_learning(insight, context=None)", "Store a meta-insight about HOW to approach a kind of problem."),
        ("search_learnings(query=None, top_k=5)", "Relevant non-decayed learnings [{id, insight, context, useful_count, not_useful_count}]. Usage is tracked."),
        ("vote_learning(learning_id, vote)", "vote is 'useful' or 'not-useful'. Vote on every learning you used before calling FINAL."),
        ("learning_stats()", "{total_learnings, active_learnings, decayed_learnings, total_votes, total_applications}."),
        ("search_examples(query=None, top_k=5)", "Past questions with answers and scores [{query, answer, score, good}]. good means score >= 32/40."),
    ],
    "citation_tools": [
        ("CITE(claim, document_id, page, section, quote, confidence=1.0)", "Record a claim with its source. quote must be copied verbatim from the page."),
        ("CITE_UNVERIFIED(claim)", "Record a claim you could not tie to a source."),
        ("list_claims()", "Claims cited so far in this session."),
    ],
    "sub_query_tools": [
        ("llm_query(prompt, spec=None)", "Plain completion, no code execution. Returns text (or a dict when spec is given)."),
        ("rlm_query(context, question, max_iterations=10, spec=None)", "Nested query with code execution over the same corpus and memory. Returns {answer, status, iterations}."),
    ],
    "date_tools": [
        ("parse_date(s)", "Validate an ISO-8601 date (YYYY-MM-DD). Returns the string or None."),
        ("date_before(d1, d2) / date_after(d1, d2)", "Date comparisons; None on invalid input."),
        ("days_between(d1, d2)", "Days from d1 to d2 (negative when d1 > d2)."),
        ("date_plus_days(d, n) / date_minus_days(d, n)", "Shifted ISO date."),
        ("date_format(d, pattern)", "Format with a strftime pattern or dd/MM/yyyy style tokens."),
        ("today_str()", "Today as an ISO date."),
    ],
    "core": [
        ("PLAN(text)", "Pin a short strategy for this session (advisory)."),
        ("FINAL(value)", "Finish with value as the answer. Stops the current execution."),
        ("FINAL_VAR(name)", "Finish with the value of a variable you defined earlier."),
        ("list_locals()", "Variables you defined (functions show as <fn>, large collections summarized)."),
        ("get_local(name)", "Full value of a variable you defined."),
        ("context", "The caller-supplied context (may be None)."),
    ],
}


def render_capability_docs(registered: Optional[Dict[str, dict]] = None, include_history: bool = True) -> str:
    parts = []
    for section, items in CAPABILITY_DOCS.items():
        if section == "history_tools" and not include_history:
            continue
        lines = [f"<{section}>"]
        for sig, doc in items:
            lines.append(f"  {sig} - {doc}")
        lines.append(f"</{section}>")
        parts.append("\n".join(lines))
    if registered:
        lines = ["<registered>"]
        for name, entry in registered.items():
            if entry["kind"] == "function":
                lines.append(f"  {name}(...) - {entry['doc']}")
            else:
                lines.append(f"  {name} (constant) - {entry['doc']}")
        lines.append("</registered>")
        parts.append("\n".join(lines))
    return "\n\n".join(parts)


# date helpers

_JAVA_TOKENS = (("yyyy", "%Y"), ("yy", "%y"), ("MMMM", "%B"), ("MMM", "%b"), ("MM", "%m"), ("dd", "%d"), ("EEEE", "%A"), ("EEE", "%a"))


def _as_date(s: Any) -> Optional[_dt.date]:
    if isinstance(s, _dt.date):
        return s
    if not isinstance(s, str):
        return None
    try:
        return _dt.date.fromisoformat(s.strip()[:10])
    except ValueError:
        return None


def parse_date(s: Any) -> Optional[str]:
    d = _as_date(s)
    return d.isoformat() if d else None


def date_before(d1: Any, d2: Any) -> Optional[bool]:
    a, b = _as_date(d1), _as_date(d2)
    if a is None or b is None:
        return None
    return a < b


def date_after(d1: Any, d2: Any) -> Optional[bool]:
    a, b = _as_date(d1), _as_date(d2)
    if a is None or b is None:
        return None
    return a > b


def days_between(d1: Any, d2: Any) -> Optional[int]:
    a, b = _as_date(d1), _as_date(d2)
    if a is None or b is None:
        return None
    return (b - a).days


def date_plus_days(d: Any, n: Any) -> Optional[str]:
    a = _as_date(d)
    if a is None:
        return None
    try:
        return (a + _dt.timedelta(days=int(n))).isoformat()
    except (TypeError, ValueError, OverflowError):
        return None


def date_minus_days(d: Any, n: Any) -> Optional[str]:
    try:
        return date_plus_days(d, -int(n))
    except (TypeError, ValueError):
        return None


def date_format(d: Any, pattern: str) -> Optional[str]:
    a = _as_date(d)
    if a is None or not isinstance(pattern, str):
        return None
    fmt = pattern
    if "%" not in fmt:
        for token, directive in _JAVA_TOKENS:
            fmt = fmt.replace(token, directive)
    try:
        return a.strftime(fmt)
    except ValueError:
        return None


def today_str() -> str:
    return _dt.date.today().isoformat()


DATE_HELPERS = {
    "parse_date": parse_date,
    "date_before": date_before,
    "date_after": date_after,
    "days_between": days_between,
    "date_plus_days": date_plus_days,
    "date_minus_days": date_minus_days,
    "date_format": date_format,
    "today_str": today_str,
}


def depth_exceeded_message(max_depth: int) -> str:
    return f"Max recursion depth ({max_depth}) exceeded"


def build_bindings(
    env,
    session,
    run_sub_query: Callable[..., dict],
) -> Dict[str, Any]:
    """
    Capability surface for one session's sandbox.

    Every corpus function is a read; memory writes and CITE only append.
    run_sub_query(context, question, max_iterations, spec, depth) runs a nested query and is
    supplied by the loop so this module stays independent of it.
    """
    corpus = env.corpus
    memory = env.memory
    sid = session.session_id

    def CITE(claim, document_id, page, section, quote, confidence=1.0):
        c = Claim(
            id=str(uuid.uuid4()),
            text=str(claim),
            document_id=None if document_id is None else str(document_id),
            page=int(page) if page is not None and str(page).strip().lstrip("-").isdigit() else None,
            section=None if section is None else str(section),
            quote=None if quote is None else str(quote),
            confidence=float(confidence),
            query_id=sid,
        )
        session.claims.append(c)
        return {"cited": True, "claim_id": c.id, "claim_text": c.text}

    def CITE_UNVERIFIED(claim):
        c = Claim(
            id=str(uuid.uuid4()),
            text=str(claim),
            document_id=None,
            page=None,
            section=None,
            quote=None,
            confidence=0.5,
            query_id=sid,
        )
        session.claims.append(c)
        return {"cited": True, "verified": None, "claim_id": c.id, "claim_text": c.text}

    def list_claims():
        return [c.to_dict() for c in session.claims]

    def llm_query(prompt, spec=None):
        if session.depth >= session.max_depth:
            return depth_exceeded_message(session.max_depth)
        if spec is not None and not isinstance(spec, Spec):
            raise TypeError("spec must be built with rlm.parse.spec()")
        content = str(prompt)
        if spec is not None:
            content += "\n\nRespond with JSON only, matching:\n" + describe_spec(spec)
        session.depth += 1
        try:
            resp = env.traced_complete(sid, session.iteration, "subquery", [{"role": "user", "content": content}], model=session.model)
        finally:
            session.depth -= 1
        if spec is not None:
            return parse_value(spec, resp["text"])
        return resp["text"]

    def rlm_query(context, question, max_iterations=None, spec=None):
        if session.depth >= session.max_depth:
            return {"error": depth_exceeded_message(session.max_depth)}
        session.depth += 1
        try:
            return run_sub_query(
                context=to_value(context),
                question=str(question),
                max_iterations=max_iterations,
                spec=spec,
                depth=session.depth,
            )
        finally:
            session.depth -= 1

    def _vote(learning_id, vote):
        return memory.vote_learning(str(learning_id), str(vote))

    bindings: Dict[str, Any] = {
        "context": session.context,
        # corpus
        "list_documents": corpus.list_documents,
        "get_document": corpus.get_document,
        "search_page_nodes": corpus.search_page_nodes,
        "get_page_node": corpus.get_page_node,
        "list_page_nodes": corpus.list_page_nodes,
        "list_toc_entries": corpus.list_toc_entries,
        "search_toc_entries": corpus.search_toc_entries,
        "get_toc_entry": corpus.get_toc_entry,
        "search_entities": corpus.search_entities,
        "get_entity": corpus.get_entity,
        "list_entities": corpus.list_entities,
        "list_relationships": corpus.list_relationships,
        "entity_stats": corpus.entity_stats,
        # memory
        "search_history": lambda query=None, n=5: memory.search_history(query, n=n, session_id=sid),
        "get_history": lambda n=10: memory.get_history(n=n, session_id=sid),
        "history_stats": lambda: memory.history_stats(session_id=sid),
        "store_learning": memory.store_learning,
        "search_learnings": memory.search_learnings,
        "vote_learning": _vote,
        "learning_stats": memory.learning_stats,
        "search_examples": memory.search_examples,
        # citations
        "CITE": CITE,
        "CITE_UNVERIFIED": CITE_UNVERIFIED,
        "list_claims": list_claims,
        # sub-queries
        "llm_query": llm_query,
        "rlm_query": rlm_query,
    }
    bindings.update(DATE_HELPERS)
    for name, entry in env.registered().items():
        bindings[name] = entry["value"]
    return bindings


def output_schema_block(spec: Any) -> Optional[str]:
    """Prompt block describing the expected FINAL structure."""
    if spec is None:
        return None
    return (
        "<expected_output_schema>\n"
        "Your FINAL answer should be a dict matching this structure:\n"
        + describe_spec(spec)
        + "\n</expected_output_schema>"
    )


_SNAKE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def valid_binding_name(name: Any) -> bool:
    return isinstance(name, str) and bool(_SNAKE_RE.match(name)) and name.isidentifier()
