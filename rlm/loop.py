# -*- coding: utf-8 -*-

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .capabilities import build_bindings, output_schema_block, render_capability_docs
from .config import (
    CONTEXT_PREVIEW_CHARS,
    EVAL_SCORE_MAX,
    KEEP_RECENT_MESSAGES,
    MAX_FEEDBACK_VALUE_CHARS,
    MAX_ITERATIONS,
    MAX_REFINEMENTS,
    MIN_SCORE,
    SUB_QUERY_MAX_ITERATIONS,
)
from .errors import ConfigurationError, SchemaError
from .memory import estimate_tokens
from .parse import Spec, extract_first_code_block, extract_json, parse_value
from .postprocess import humanize as humanize_text
from .refine import refine
from .sandbox import ExecutionResult, Sandbox, to_value
from .trace import make_entry
from .verifier import verify_claims as cove_verify


# Session states
INIT = "init"
PLANNING = "planning"
ITERATING = "iterating"
FINALIZED = "finalized"
EXHAUSTED = "exhausted"
PARSE_ERROR = "parse-error"
CANCELLED = "cancelled"

QUERY_OPTIONS = frozenset(
    {
        "spec", "context", "model", "max_iterations", "max_refinements", "min_score", "refine",
        "learn", "plan", "verify_claims", "max_context_tokens", "debug", "deadline", "timeout_s",
        "max_recursion_depth", "humanize",
    }
)

NO_CODE_MESSAGE = "No code was executed. You MUST include exactly one ```python code block in your response."

PLANNING_PROMPT = (
    "Before writing any code, outline your strategy for answering the query.\n"
    "Return 3-6 short numbered steps naming which functions you will call and what you expect to learn.\n"
    "Do NOT write code and do NOT answer the query yet."
)


def load_system_prompt(profile: str | None = None) -> str:
    base = Path(__file__).resolve().parent / "assets"
    if profile:
        candidate = base / f"system_prompt.{profile}.txt"
        if candidate.exists():
            return candidate.read_text(encoding="utf-8")
    return (base / "system_prompt.en.txt").read_text(encoding="utf-8")


def format_examples(examples: Dict[str, list]) -> str:
    good = examples.get("good") or []
    bad = examples.get("bad") or []
    if not good and not bad:
        return ""
    lines = ["<past_examples>"]
    for ex in good:
        lines.append(f"  <good score=\"{ex.score}/{EVAL_SCORE_MAX}\"><query>{ex.query}</query><answer>{ex.answer[:500]}</answer></good>")
    for ex in bad:
        fb = f"<feedback>{ex.feedback}</feedback>" if ex.feedback else ""
        lines.append(f"  <bad score=\"{ex.score}/{EVAL_SCORE_MAX}\"><query>{ex.query}</query><answer>{ex.answer[:500]}</answer>{fb}</bad>")
    lines.append("</past_examples>")
    return "\n".join(lines)


def build_system_prompt(env, spec: Optional[Spec], max_iterations: int, examples: Optional[Dict[str, list]] = None) -> str:
    text = load_system_prompt(env.config.prompt_profile)
    text = text.replace("{{CAPABILITIES}}", render_capability_docs(env.registered()))
    text = text.replace("{{MAX_ITERATIONS}}", str(max_iterations))
    text = text.replace("{{EVAL_TIMEOUT_S}}", f"{env.config.eval_timeout_s:g}")
    text = text.replace("{{EVAL_MAX_RANGE}}", str(env.config.eval_max_range))
    extra = [b for b in (output_schema_block(spec), format_examples(examples or {})) if b]
    if extra:
        text = text.rstrip() + "\n\n" + "\n\n".join(extra)
    return text


def context_preview(context: Any, max_chars: int = CONTEXT_PREVIEW_CHARS) -> str:
    if context is None:
        return "None"
    s = context if isinstance(context, str) else json.dumps(to_value(context), ensure_ascii=False, default=str)
    if len(s) > max_chars:
        return s[:max_chars] + "\n... [truncated, use code to explore]"
    return s


def build_seed(question: str, context: Any, learnings: List[dict]) -> str:
    seed = f"<context>\n{context_preview(context)}\n</context>\n\n<query>\n{question}\n</query>"
    if learnings:
        items = "\n".join(f"- [{l['id']}] {l['insight']}" for l in learnings)
        seed += f"\n\n<relevant_learnings>\n{items}\n</relevant_learnings>"
    return seed


def _render_value(value: Any) -> str:
    s = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    if len(s) > MAX_FEEDBACK_VALUE_CHARS:
        s = s[:MAX_FEEDBACK_VALUE_CHARS] + f"...[truncated {len(s) - MAX_FEEDBACK_VALUE_CHARS} chars]"
    return s


def format_execution(result: ExecutionResult, idx: int = 0) -> str:
    body: List[str] = []
    if result.error:
        body.append(f"  <error>{result.error}</error>")
    elif result.is_function:
        expr = result.code.strip().splitlines()[-1].strip()
        body.append(f"  <value>{expr} evaluated to a function object. Did you mean to call it? Use `{expr}()` instead.</value>")
    else:
        body.append(f"  <value>{_render_value(result.value)}</value>")
    if result.stdout and result.stdout.strip():
        body.append(f"  <stdout>{result.stdout}</stdout>")
    return f"<result_{idx}>\n" + "\n".join(body) + f"\n</result_{idx}>"


def format_feedback(iteration: int, max_iterations: int, result: Optional[ExecutionResult]) -> str:
    header = f"[Iteration {iteration}/{max_iterations}]"
    if result is None:
        return f"{header}\n{NO_CODE_MESSAGE}"
    return f"{header}\n{format_execution(result)}"


def _messages_tokens(messages: List[dict]) -> int:
    return sum(estimate_tokens(str(m.get("content") or "")) for m in messages)


def build_context(pinned: List[dict], turns: List[dict], max_context_tokens: Optional[int] = None) -> List[dict]:
    """
    pinned (system prompt, seed, plan) is never dropped. When over budget the oldest turns go
    first, but the KEEP_RECENT_MESSAGES most recent turns always stay.
    """
    if not max_context_tokens:
        return pinned + turns
    action_layer = list(turns)
    dropped = 0
    while _messages_tokens(pinned + action_layer) > max_context_tokens and len(action_layer) > KEEP_RECENT_MESSAGES:
        action_layer.pop(0)
        dropped += 1
    if dropped:
        return pinned + [{"role": "user", "content": f"[omitted {dropped} earlier messages]"}] + action_layer
    return pinned + action_layer


@dataclass
class QuerySession:
    question: str
    context: Any = None
    model: Optional[str] = None
    max_iterations: int = MAX_ITERATIONS
    max_depth: int = 5
    depth: int = 0
    phase: str = "iterate"
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: str = INIT
    iteration: int = 0
    plan: Optional[str] = None
    observations: List[ExecutionResult] = field(default_factory=list)
    claims: list = field(default_factory=list)
    answer: Any = None
    error: Optional[str] = None


@dataclass
class QueryResult:
    answer: Any
    raw_answer: Any
    status: str
    converged: bool
    exhausted: bool
    iterations: int
    trace: tuple
    duration_ms: float
    history_tokens: int
    session_id: str
    score: Optional[float] = None
    eval_scores: Optional[dict] = None
    refinement_count: int = 0
    refinement: Optional[dict] = None
    plan: Optional[str] = None
    verified_claims: Optional[list] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {k: v for k, v in self.__dict__.items() if k != "trace"}
        out["trace"] = [e.to_dict() for e in self.trace]
        if self.verified_claims is not None:
            out["verified_claims"] = [c.to_dict() for c in self.verified_claims]
        return out


def _last_useful(session: QuerySession, sandbox: Sandbox) -> Any:
    for obs in reversed(session.observations):
        if obs.error is None and not obs.is_function and obs.value is not None:
            return obs.value
    for name in reversed(sandbox.user_names()):
        v = sandbox.namespace.get(name)
        if v is not None and not callable(v):
            return to_value(v)
    return None


def _deadline(options: Dict[str, Any]) -> Optional[float]:
    deadline = options.get("deadline")
    timeout_s = options.get("timeout_s")
    if timeout_s is not None:
        by_timeout = time.monotonic() + float(timeout_s)
        deadline = by_timeout if deadline is None else min(float(deadline), by_timeout)
    return deadline


def _validate(env, question: Any, options: Dict[str, Any]) -> None:
    env.check_open()
    unknown = sorted(set(options) - QUERY_OPTIONS)
    if unknown:
        raise ConfigurationError(f"unknown query options: {unknown}")
    if not isinstance(question, str) or not question.strip():
        raise ConfigurationError("question must be a non-empty string")
    spec = options.get("spec")
    if spec is not None and not isinstance(spec, Spec):
        raise ConfigurationError("spec must be an rlm.parse.Spec")
    for name in ("max_iterations", "max_refinements"):
        v = options.get(name)
        if v is not None and (not isinstance(v, int) or isinstance(v, bool) or v <= 0):
            raise ConfigurationError(f"{name} must be a positive integer")
    if "min_score" in options:
        min_score = options["min_score"]
        if not isinstance(min_score, (int, float)) or isinstance(min_score, bool) or not (0 <= min_score <= EVAL_SCORE_MAX):
            raise ConfigurationError(f"min_score must be a number between 0 and {EVAL_SCORE_MAX}")
    if "max_recursion_depth" in options:
        depth = options["max_recursion_depth"]
        if not isinstance(depth, int) or isinstance(depth, bool) or depth < 0:
            raise ConfigurationError("max_recursion_depth must be an integer >= 0")
    mct = options.get("max_context_tokens")
    if mct is not None and (not isinstance(mct, int) or mct <= 0):
        raise ConfigurationError("max_context_tokens must be a positive integer")


def run_session(
    env,
    session: QuerySession,
    spec: Optional[Spec] = None,
    plan: bool = False,
    max_context_tokens: Optional[int] = None,
    deadline: Optional[float] = None,
    debug: bool = False,
    use_memory: bool = True,
) -> Sandbox:
    """
    Drive one session to FINALIZED / EXHAUSTED / PARSE_ERROR / CANCELLED.
    Sets session.state, session.answer and session.error; returns the sandbox for inspection.
    """
    memory = env.memory
    sid = session.session_id

    def run_sub_query(context, question, max_iterations=None, spec=None, depth=0):
        return sub_query(env, session, context, question, max_iterations=max_iterations, spec=spec, depth=depth, debug=debug)

    sandbox = Sandbox(
        build_bindings(env, session, run_sub_query),
        fuel=env.config.eval_fuel,
        timeout_s=env.config.eval_timeout_s,
        max_output_chars=env.config.max_output_chars,
        untimed=("llm_query", "rlm_query"),
        max_range=env.config.eval_max_range,
    )

    examples = memory.get_examples() if use_memory else {}
    learnings = memory.search_learnings(session.question, top_k=3) if use_memory else []
    system_prompt = build_system_prompt(env, spec, session.max_iterations, examples)
    seed = build_seed(session.question, session.context, learnings)
    system_role = "user" if (env.config.system_role or "").strip().lower() == "user" else "system"
    pinned: List[dict] = [{"role": system_role, "content": system_prompt}, {"role": "user", "content": seed}]
    turns: List[dict] = []
    memory.append_message("system", system_prompt, iteration=0, session_id=sid)
    memory.append_message("user", seed, iteration=0, session_id=sid)
    env.trace.event({"type": "session", "event": "start", "session_id": sid, "question": session.question, "depth": session.depth})

    def cancelled() -> bool:
        return deadline is not None and time.monotonic() >= deadline

    def pin_plan(text: str) -> None:
        session.plan = text
        msg = {"role": "user", "content": f"<plan>\n{text}\n</plan>"}
        if len(pinned) > 2:
            pinned[2] = msg
        else:
            pinned.append(msg)

    if plan and not cancelled():
        session.state = PLANNING
        resp = env.traced_complete(sid, 0, "plan", pinned + [{"role": "user", "content": PLANNING_PROMPT}], model=session.model)
        pin_plan(resp["text"].strip())
        memory.append_message("assistant", resp["text"], iteration=0, session_id=sid)

    session.state = ITERATING
    schema_retried = False
    while session.iteration < session.max_iterations:
        if cancelled():
            session.state = CANCELLED
            session.error = "deadline passed"
            session.answer = _last_useful(session, sandbox)
            break
        session.iteration += 1
        i = session.iteration
        messages = build_context(pinned, turns, max_context_tokens)
        t0 = time.perf_counter()
        resp = env.complete(messages, model=session.model)
        text = resp.get("text") or ""
        code = extract_first_code_block(text)
        result = sandbox.execute(code) if code is not None else None
        if result is not None:
            session.observations.append(result)
        if sandbox.plans and sandbox.plans[-1] != session.plan:
            pin_plan(sandbox.plans[-1])
        final = bool(result and result.final)
        outcome = None
        if result is not None:
            outcome = result.to_dict()
            outcome.pop("code", None)
        env.trace.append(
            make_entry(
                sid,
                i,
                session.phase,
                messages,
                text,
                code=code,
                outcome=outcome,
                duration_ms=(time.perf_counter() - t0) * 1000.0,
                final=final,
                tokens=int(resp.get("tokens") or 0),
            )
        )
        memory.append_message("assistant", text, iteration=i, session_id=sid)
        if debug:
            status = "FINAL" if final else ("no code" if result is None else ("error" if result.error else "ok"))
            print(f"[rlm {sid[:8]}] iteration {i}/{session.max_iterations}: {status}")

        if final:
            answer = result.answer
            if spec is None:
                session.state = FINALIZED
                session.answer = answer
                break
            try:
                session.answer = parse_value(spec, answer)
                session.state = FINALIZED
                break
            except SchemaError as e:
                if schema_retried or session.iteration >= session.max_iterations:
                    session.state = PARSE_ERROR
                    session.answer = answer
                    session.error = str(e)
                    break
                schema_retried = True
                sandbox.reset_final()
                feedback = (
                    f"[Iteration {i}/{session.max_iterations}]\n"
                    f"<schema_error>{e}</schema_error>\n"
                    "Your FINAL value does not match <expected_output_schema>. Fix it and call FINAL again."
                )
        else:
            feedback = format_feedback(i, session.max_iterations, result)
        turns.append({"role": "assistant", "content": text})
        turns.append({"role": "user", "content": feedback})
        memory.append_message("user", feedback, iteration=i, session_id=sid)
    else:
        session.state = EXHAUSTED
        session.answer = _last_useful(session, sandbox)

    env.trace.event({"type": "session", "event": "end", "session_id": sid, "state": session.state, "iterations": session.iteration})
    return sandbox


def sub_query(env, parent: QuerySession, context, question, max_iterations=None, spec=None, depth: int = 0, debug: bool = False) -> dict:
    """Nested query from rlm_query(): same Environment, no refinement, no learning."""
    child = QuerySession(
        question=question,
        context=context,
        model=parent.model,
        max_iterations=int(max_iterations or SUB_QUERY_MAX_ITERATIONS),
        max_depth=parent.max_depth,
        depth=depth,
        phase="subquery",
    )
    run_session(env, child, spec=spec, debug=debug, use_memory=False)
    out = {"answer": child.answer, "status": child.state, "iterations": child.iteration}
    if child.error:
        out["error"] = child.error
    return out


def _refined_parser(original: Any, spec: Optional[Spec]) -> Callable[[str], Any]:
    """Regenerated answers come back as text; bring them back to the original answer's shape."""

    def parse(text: str) -> Any:
        if isinstance(original, str):
            return text
        if spec is not None:
            return parse_value(spec, text)
        data = extract_json(text)
        return data if data is not None else text

    return parse


def query(env, question: str, **options) -> QueryResult:
    """
    Answer one question over the Environment's corpus.
    Options: spec, context, model, max_iterations (50), max_refinements (1), min_score (32),
    refine (True), learn (True), plan (False), verify_claims (False), max_context_tokens,
    debug, deadline, timeout_s, max_recursion_depth, humanize (False).
    """
    _validate(env, question, options)
    t_start = time.perf_counter()
    spec = options.get("spec")
    debug = bool(options.get("debug", False))
    min_score = options.get("min_score", MIN_SCORE)
    session = QuerySession(
        question=question,
        context=options.get("context"),
        model=options.get("model"),
        max_iterations=options.get("max_iterations") or MAX_ITERATIONS,
        max_depth=options.get("max_recursion_depth", env.config.max_recursion_depth),
    )
    sid = session.session_id
    run_session(
        env,
        session,
        spec=spec,
        plan=bool(options.get("plan", False)),
        max_context_tokens=options.get("max_context_tokens"),
        deadline=_deadline(options),
        debug=debug,
    )

    raw_answer = session.answer
    answer = raw_answer
    score = None
    eval_scores = None
    refinement = None
    refinement_count = 0
    converged = session.state == FINALIZED
    verified = None

    if session.state == FINALIZED:
        if options.get("refine", True):
            ref = refine(
                env,
                question,
                answer,
                context=context_preview(session.context),
                max_iterations=options.get("max_refinements") or MAX_REFINEMENTS,
                min_score=min_score,
                model=session.model,
                session_id=sid,
                parse=_refined_parser(raw_answer, spec),
            )
            answer = ref.answer
            score = ref.score
            eval_scores = ref.eval_scores
            refinement_count = len(ref.iterations)
            refinement = ref.to_dict()
            converged = ref.converged
        if options.get("verify_claims", False):
            verified = cove_verify(env, list(session.claims), session_id=sid, model=session.model)
        if options.get("learn", True) and eval_scores:
            env.memory.store_example(
                question,
                answer if isinstance(answer, str) else json.dumps(answer, ensure_ascii=False, default=str),
                int(eval_scores.get("total", 0)),
                context_summary=context_preview(session.context, 200),
            )
        if options.get("humanize", False) and isinstance(answer, str):
            answer = humanize_text(answer)
    elif options.get("verify_claims", False):
        verified = []

    if debug:
        print(f"[rlm {sid[:8]}] {session.state} after {session.iteration} iterations")

    return QueryResult(
        answer=answer,
        raw_answer=raw_answer,
        status=session.state,
        converged=converged,
        exhausted=session.state == EXHAUSTED,
        iterations=session.iteration,
        trace=env.trace.for_session(sid),
        duration_ms=(time.perf_counter() - t_start) * 1000.0,
        history_tokens=env.memory.history_stats(session_id=sid)["total_tokens"],
        session_id=sid,
        score=score,
        eval_scores=eval_scores,
        refinement_count=refinement_count,
        refinement=refinement,
        plan=session.plan,
        verified_claims=verified,
        error=session.error,
    )
