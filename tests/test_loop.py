# -*- coding: utf-8 -*-

import threading
import time

import pytest

from conftest import GOOD_EVAL, PASSING_REFINEMENT, FakeClient, code
from rlm.env import dispose, register_constant, register_function
from rlm.errors import ConfigurationError
from rlm.loop import (
    CANCELLED,
    EXHAUSTED,
    FINALIZED,
    PARSE_ERROR,
    build_context,
    format_feedback,
    query,
)
from rlm.parse import field, spec
from rlm.sandbox import Sandbox


def _iteration_calls(client):
    return client.calls_matching("<rlm_environment>")


def _last_user(call):
    return [m for m in call["messages"] if m["role"] == "user"][-1]["content"]


def test_parties_question_finalizes_on_third_iteration(make_env):
    client = FakeClient(
        script=[
            code("docs = list_documents()\n[d['id'] for d in docs]"),
            code("hits = search_page_nodes('signed by', filter={'document_id': 'contract-x'})\n[h['content'] for h in hits]"),
            code("FINAL(['Acme Corp', 'Beta LLC'])"),
        ],
        rules=PASSING_REFINEMENT,
    )
    env = make_env(client)
    result = query(env, "Which parties sign contract X?", max_iterations=3)

    assert result.status == FINALIZED
    assert result.answer == ["Acme Corp", "Beta LLC"]
    assert result.iterations == 3
    assert result.converged is True
    assert result.exhausted is False
    assert result.score == pytest.approx(36 / 40)
    assert result.eval_scores["total"] == 36
    iterate = [e for e in result.trace if e.phase == "iterate"]
    assert [e.iteration for e in iterate] == [1, 2, 3]
    assert iterate[-1].final is True
    # second turn saw the document ids from the first
    assert "contract-x" in _last_user(_iteration_calls(client)[1])


def test_syntax_errors_are_fed_back_until_final(make_env):
    client = FakeClient(
        script=[
            code("docs = list_documents(\n[d['id'] for d in docs]"),
            code("for hit in search_page_nodes('signed by')\n    print(hit)"),
            code("FINAL(['Acme Corp', 'Beta LLC'])"),
        ],
        rules=PASSING_REFINEMENT,
    )
    env = make_env(client)
    result = query(env, "List all parties", max_iterations=3)

    assert result.answer == ["Acme Corp", "Beta LLC"]
    assert result.iterations == 3
    assert result.converged is True
    calls = _iteration_calls(client)
    assert "<error>SyntaxError" in _last_user(calls[1])
    assert "<error>SyntaxError" in _last_user(calls[2])


def test_trace_counts_iterations_plus_refinement_calls(make_env):
    client = FakeClient(script=[code("x = 1"), code("FINAL(x)")], rules=PASSING_REFINEMENT)
    env = make_env(client)
    result = query(env, "What is x?")
    phases = [e.phase for e in result.trace]
    # two iterations, then decompose + evaluate (no claims, so no verification call)
    assert phases == ["iterate", "iterate", "refine", "refine"]
    assert len(result.trace) == len(client.calls)


def test_exhausts_after_exactly_max_iterations(make_env):
    client = FakeClient(
        script=[code("total = 7\ntotal"), code("undefined_name")],
    )
    env = make_env(client)
    result = query(env, "Count the invoices", max_iterations=2)

    assert result.status == EXHAUSTED
    assert result.exhausted is True
    assert result.converged is False
    assert result.iterations == 2
    assert result.answer == 7
    assert len(client.calls) == 2
    assert result.score is None


def test_exhausted_answer_falls_back_to_last_variable(make_env):
    client = FakeClient(script=[code("found = ['Payment Terms']"), "thinking..."])
    env = make_env(client)
    result = query(env, "Which sections exist?", max_iterations=2, refine=False)
    assert result.exhausted
    assert result.answer == ["Payment Terms"]


def test_feedback_for_function_value_and_missing_code(make_env):
    client = FakeClient(script=[code("list_documents"), "No code this time.", code("FINAL('ok')")])
    env = make_env(client)
    query(env, "List documents", refine=False)
    calls = _iteration_calls(client)
    assert "Did you mean to call it?" in _last_user(calls[1])
    assert _last_user(calls[1]).startswith("[Iteration 1/")
    assert "No code was executed" in _last_user(calls[2])


def test_format_feedback_error_and_stdout():
    sb = Sandbox()
    r = sb.execute("print('hello')\n1/0")
    text = format_feedback(2, 5, r)
    assert text.startswith("[Iteration 2/5]\n<result_0>")
    assert "<error>ZeroDivisionError" in text
    assert "<stdout>hello\n</stdout>" in text
    ok = format_feedback(1, 5, sb.execute("[1, 2]"))
    assert "<value>[1, 2]</value>" in ok


def test_schema_failure_gets_one_corrective_retry(make_env):
    out_spec = spec(field("total", "int", "Number of parties"))
    client = FakeClient(script=[code("FINAL({'total': 'four'})"), code("FINAL({'total': 4})")])
    env = make_env(client)
    result = query(env, "How many parties?", spec=out_spec, refine=False)
    assert result.status == FINALIZED
    assert result.answer == {"total": 4}
    assert result.iterations == 2
    assert "<schema_error>" in _last_user(_iteration_calls(client)[1])


def test_second_schema_failure_is_parse_error(make_env):
    out_spec = spec(field("total", "int"))
    client = FakeClient(script=[code("FINAL({'total': 'four'})"), code("FINAL({'total': 'five'})")])
    env = make_env(client)
    result = query(env, "How many parties?", spec=out_spec)
    assert result.status == PARSE_ERROR
    assert "total" in result.error
    assert result.converged is False


def test_llm_query_beyond_depth_returns_message_without_model_call(make_env):
    client = FakeClient(script=[code("FINAL(llm_query('summarize'))")])
    env = make_env(client)
    result = query(env, "Summarize", max_recursion_depth=0, refine=False)
    assert result.answer == "Max recursion depth (0) exceeded"
    assert len(client.calls) == 1


def test_llm_query_is_traced_as_subquery(make_env):
    client = FakeClient(
        script=[code("s = llm_query('Say hi')\nFINAL(s)"), "hi there"],
    )
    env = make_env(client)
    result = query(env, "Greet", refine=False)
    assert result.answer == "hi there"
    assert [e.phase for e in result.trace] == ["subquery", "iterate"]


def test_rlm_query_runs_nested_session(make_env):
    client = FakeClient(
        script=[
            code("r = rlm_query(context, 'What is the payment term?')\nFINAL(r['answer'])"),
            code("FINAL('30 days')"),
        ]
    )
    env = make_env(client)
    result = query(env, "Payment term?", context={"doc": "contract-x"}, refine=False)
    assert result.answer == "30 days"
    nested = [e for e in env.trace.entries() if e.session_id != result.session_id]
    assert [e.phase for e in nested] == ["subquery"]


def test_rlm_query_beyond_depth_returns_error_dict(make_env):
    client = FakeClient(script=[code("FINAL(rlm_query(None, 'inner'))")])
    env = make_env(client)
    result = query(env, "Outer", max_recursion_depth=0, refine=False)
    assert result.answer == {"error": "Max recursion depth (0) exceeded"}


def test_build_context_keeps_pinned_and_recent_turns():
    pinned = [{"role": "system", "content": "s" * 400}, {"role": "user", "content": "q" * 40}]
    turns = [{"role": "assistant" if i % 2 == 0 else "user", "content": str(i) * 400} for i in range(10)]
    out = build_context(pinned, turns, max_context_tokens=200)
    assert out[:2] == pinned
    assert out[-4:] == turns[-4:]
    assert out[2]["content"] == "[omitted 6 earlier messages]"
    assert build_context(pinned, turns) == pinned + turns


def test_deadline_cancels_between_iterations(make_env):
    client = FakeClient(script=[code("a = 1")])
    env = make_env(client)
    result = query(env, "Anything", deadline=time.monotonic() - 1)
    assert result.status == CANCELLED
    assert result.iterations == 0
    assert client.calls == []


def test_history_records_every_message(make_env):
    client = FakeClient(script=[code("y = 2"), code("FINAL(y)")])
    env = make_env(client)
    result = query(env, "What is y?", refine=False)
    roles = [m["role"] for m in env.memory.get_history(n=100, session_id=result.session_id)]
    assert roles == ["system", "user", "assistant", "user", "assistant"]
    assert result.history_tokens > 0


def test_plan_is_pinned_and_returned(make_env):
    client = FakeClient(
        script=["1. list documents\n2. search parties", code("FINAL('done')")],
    )
    env = make_env(client)
    result = query(env, "Who signs?", plan=True, refine=False)
    assert result.plan.startswith("1. list documents")
    assert result.trace[0].phase == "plan"
    assert "<plan>" in str(_iteration_calls(client)[-1]["messages"])


def test_learning_stores_example_with_evaluation_total(make_env):
    client = FakeClient(script=[code("FINAL('Acme Corp')")], rules=PASSING_REFINEMENT)
    env = make_env(client)
    query(env, "Who supplies?")
    examples = env.memory.get_examples()
    assert examples["good"][0].answer == "Acme Corp"
    assert examples["good"][0].score == 36


def test_no_learning_without_refinement(make_env):
    client = FakeClient(script=[code("FINAL('Acme Corp')")])
    env = make_env(client)
    query(env, "Who supplies?", refine=False)
    assert env.memory.get_examples() == {"good": [], "bad": []}


def test_refinement_below_threshold_is_not_converged(make_env):
    low_eval = '{"correctness": 2, "completeness": 2, "clarity": 2, "confidence": 2, "explanation": "weak"}'
    client = FakeClient(
        script=[code("FINAL('maybe Acme')")],
        rules=[("<decomposition_task>", '{"claims": []}'), ("<evaluation_task>", low_eval)],
    )
    env = make_env(client)
    result = query(env, "Who supplies?", max_refinements=1)
    assert result.status == FINALIZED
    assert result.converged is False
    assert result.answer == "maybe Acme"
    assert result.refinement_count == 1


def test_unparseable_regeneration_never_replaces_schema_answer(make_env):
    from test_refine import CLAIM, _verdict

    client = FakeClient(
        script=[code("FINAL(['Acme Corp'])")],
        rules=[
            ("<refinement_task>", "The parties are Acme Corp and Beta LLC."),
            ("<decomposition_task>", CLAIM),
            ("<verification_task>", _verdict("Beta LLC", "incorrect")),
            ("<evaluation_task>", GOOD_EVAL),
        ],
    )
    env = make_env(client)
    result = query(env, "Who signs contract X?", spec=spec(field("parties", "list", items="string")), max_refinements=2)

    assert result.answer == {"parties": ["Acme Corp"]}
    assert result.score == 0.0
    assert result.converged is False
    assert [it["score"] for it in result.refinement["iterations"]] == [0.0, 1.0]
    assert [it["usable"] for it in result.refinement["iterations"]] == [True, False]


def test_parseable_regeneration_replaces_schema_answer(make_env):
    from test_refine import CLAIM, _verdict

    client = FakeClient(
        script=[code("FINAL(['Acme Corp'])")],
        rules=[
            ("<refinement_task>", '{"parties": ["Acme Corp", "Beta LLC"]}'),
            ("<decomposition_task>", CLAIM),
            ("<verification_task>", _verdict("Beta LLC", "incorrect")),
            ("<evaluation_task>", GOOD_EVAL),
        ],
    )
    env = make_env(client)
    result = query(env, "Who signs contract X?", spec=spec(field("parties", "list", items="string")), max_refinements=2)

    assert result.answer == {"parties": ["Acme Corp", "Beta LLC"]}
    assert result.score == 1.0
    assert result.converged is True


def test_verify_claims_marks_cited_claims(make_env):
    client = FakeClient(
        script=[
            code(
                "CITE('Acme Corp signs contract X', 'contract-x', 0, 'Supply Agreement X', 'signed by Acme Corp and Beta LLC')\n"
                "CITE_UNVERIFIED('Contract X is governed by Swiss law')\n"
                "FINAL('Acme Corp and Beta LLC')"
            )
        ],
        rules=[('SOURCE MATERIAL', '{"supported": true, "verdict": "supported", "reasoning": "quoted"}')],
    )
    env = make_env(client)
    result = query(env, "Who signs?", refine=False, verify_claims=True)
    by_text = {c.text: c for c in result.verified_claims}
    assert by_text["Acme Corp signs contract X"].verified is True
    assert by_text["Contract X is governed by Swiss law"].verified is False
    assert by_text["Contract X is governed by Swiss law"].verdict == "no-source"
    assert len(env.memory.list_claims(result.session_id)) == 2


def test_verified_claims_absent_unless_requested(make_env):
    client = FakeClient(script=[code("CITE_UNVERIFIED('x')\nFINAL(1)")])
    env = make_env(client)
    assert query(env, "q", refine=False).verified_claims is None


def test_humanize_applies_to_string_answers(make_env):
    client = FakeClient(script=[code("FINAL('As an AI, I found that Acme Corp signs.')")])
    env = make_env(client)
    result = query(env, "Who signs?", refine=False, humanize=True)
    assert result.answer == "I found that Acme Corp signs."
    assert result.raw_answer == "As an AI, I found that Acme Corp signs."


def test_registered_function_and_constant_are_callable(make_env):
    client = FakeClient(script=[code("FINAL(double(BASE))")])
    env = make_env(client)
    register_function(env, "double", lambda x: x * 2, "Double a number")
    register_constant(env, "BASE", 21, "Base value")
    result = query(env, "double it", refine=False)
    assert result.answer == 42
    system = _iteration_calls(client)[0]["messages"][0]["content"]
    assert "double(...) - Double a number" in system


def test_concurrent_queries_share_environment_without_interference(make_env):
    def route(messages):
        seed = messages[1]["content"]
        if "Question one" in seed:
            return code("FINAL('one')")
        return code("FINAL('two')")

    client = FakeClient(rules=[("<rlm_environment>", route)])
    env = make_env(client)
    results = {}

    def run(q):
        results[q] = query(env, q, refine=False)

    threads = [threading.Thread(target=run, args=(q,)) for q in ("Question one", "Question two")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results["Question one"].answer == "one"
    assert results["Question two"].answer == "two"
    for r in results.values():
        assert {e.session_id for e in r.trace} == {r.session_id}
    assert len(env.trace.entries()) == 2


def test_concurrent_learnings_are_both_kept(make_env):
    def route(messages):
        seed = messages[1]["content"]
        tag = "alpha" if "Question one" in seed else "beta"
        return code(f"store_learning('Insight {tag}')\nFINAL('{tag}')")

    client = FakeClient(rules=[("<rlm_environment>", route)])
    env = make_env(client)
    threads = [threading.Thread(target=query, args=(env, q), kwargs={"refine": False}) for q in ("Question one", "Question two")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    insights = {l["insight"] for l in env.memory.all_learnings()}
    assert insights == {"Insight alpha", "Insight beta"}


@pytest.mark.parametrize(
    "question,options",
    [
        ("", {}),
        ("ok", {"spec": {"total": "int"}}),
        ("ok", {"max_iterations": 0}),
        ("ok", {"min_score": 41}),
        ("ok", {"min_score": "high"}),
        ("ok", {"max_recursion_depth": None}),
        ("ok", {"max_recursion_depth": True}),
        ("ok", {"unknown_option": True}),
    ],
)
def test_invalid_options_fail_fast(make_env, question, options):
    client = FakeClient()
    env = make_env(client)
    with pytest.raises(ConfigurationError):
        query(env, question, **options)
    assert client.calls == []


def test_query_after_dispose_fails(make_env):
    env = make_env(FakeClient())
    dispose(env)
    with pytest.raises(ConfigurationError):
        query(env, "anything")


def test_result_to_dict_is_json_ready(make_env):
    import json

    client = FakeClient(script=[code("FINAL({'a': [1, 2]})")], rules=[("<decomposition_task>", '{"claims": []}'), ("<evaluation_task>", GOOD_EVAL)])
    env = make_env(client)
    data = query(env, "q").to_dict()
    json.dumps(data)
    assert data["answer"] == {"a": [1, 2]}
    assert data["trace"][0]["phase"] == "iterate"
