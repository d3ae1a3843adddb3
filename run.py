#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import json
import os
import sys

from rlm.corpus import load_documents
from rlm.env import create_environment, dispose, ingest
from rlm.errors import InputRejected, RLMError
from rlm.postprocess import screen_input
from rlm.trace import print_trace


def _env_from_args(args):
    config = {
        "base_url": args.model_base_url,
        "model": args.model_name or None,
        "api_key": args.api_key or None,
        "temperature": args.temperature,
        "trace_path": args.trace_path or None,
        "memory_path": args.memory_path or None,
        "prompt_profile": args.prompt_profile or None,
        "system_role": args.system_role,
    }
    env = create_environment(config)
    counts = ingest(env, load_documents(args.docs))
    print(f"[rlm] ingested {len(counts)} documents")
    return env


def _add_model_args(p):
    p.add_argument("--docs", nargs="+", required=True, help="JSON / Markdown files or directories")
    p.add_argument("--model-base-url", default=os.getenv("MODEL_BASE_URL", "http://127.0.0.1:1234"))  # e.g. http://127.0.0.1:1234[/v1]
    p.add_argument("--model-name", default=os.getenv("MODEL_NAME", ""))
    p.add_argument("--api-key", default=os.getenv("OPENAI_API_KEY", ""))
    p.add_argument("--temperature", type=float, default=0.2)
    p.add_argument("--trace-path", default=os.getenv("RLM_TRACE_PATH", ""))
    p.add_argument("--memory-path", default=os.getenv("RLM_MEMORY_PATH", ""))
    p.add_argument("--prompt-profile", default=os.getenv("PROMPT_PROFILE", ""))
    p.add_argument("--system-role", default=os.getenv("SYSTEM_ROLE", "system"))  # "system" or "user"
    p.add_argument("--max-iterations", type=int, default=None)
    p.add_argument("--debug", action="store_true")


def main():
    ap = argparse.ArgumentParser()
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_q = sub.add_parser("query", help="Answer a question over a document corpus")
    ap_q.add_argument("--question", required=True)
    _add_model_args(ap_q)
    ap_q.add_argument("--no-refine", action="store_true")
    ap_q.add_argument("--plan", action="store_true")
    ap_q.add_argument("--verify-claims", action="store_true")
    ap_q.add_argument("--humanize", action="store_true")
    ap_q.add_argument("--show-trace", action="store_true")

    ap_qa = sub.add_parser("qa", help="Generate a Q&A dataset from a document corpus")
    _add_model_args(ap_qa)
    ap_qa.add_argument("--count", type=int, default=10)
    ap_qa.add_argument("--out", required=True, help="Output path without extension")
    ap_qa.add_argument("--persona", default=None)
    ap_qa.add_argument("--multi-hop", action="store_true")
    ap_qa.add_argument("--no-verify", action="store_true")

    ap_dash = sub.add_parser("dashboard", help="Serve trace metrics from a JSONL trace file")
    ap_dash.add_argument("--trace-path", required=True)
    ap_dash.add_argument("--host", default="127.0.0.1")
    ap_dash.add_argument("--port", type=int, default=8844)

    args = ap.parse_args()

    if args.cmd == "dashboard":
        from dashboard.server import main as dashboard_main
        sys.argv = ["dashboard", "--trace-path", args.trace_path, "--host", args.host, "--port", str(args.port)]
        dashboard_main()
        return

    if args.cmd == "query":
        try:
            screen_input(args.question)
        except InputRejected as e:
            print(f"[rlm] rejected: {e}", file=sys.stderr)
            sys.exit(2)
        from rlm.loop import query

        env = _env_from_args(args)
        try:
            opts = {
                "refine": not args.no_refine,
                "plan": args.plan,
                "verify_claims": args.verify_claims,
                "humanize": args.humanize,
                "debug": args.debug,
            }
            if args.max_iterations:
                opts["max_iterations"] = args.max_iterations
            result = query(env, args.question, **opts)
        except RLMError as e:
            print(f"[rlm] error: {e}", file=sys.stderr)
            sys.exit(1)
        finally:
            dispose(env)
        if args.show_trace:
            print_trace(result.trace)
        print("\n" + "=" * 80 + f"\nANSWER ({result.status}, {result.iterations} iterations)\n" + "=" * 80 + "\n")
        ans = result.answer
        print(ans if isinstance(ans, str) else json.dumps(ans, ensure_ascii=False, indent=2))
        if result.verified_claims:
            print("\nClaims:")
            for c in result.verified_claims:
                print(f"  [{c.verdict or ('ok' if c.verified else 'unverified')}] {c.text}")
        return

    if args.cmd == "qa":
        from rlm.qa import generate_qa, save_qa

        env = _env_from_args(args)
        try:
            opts = {"count": args.count, "persona": args.persona, "multi_hop": args.multi_hop, "verify_answers": not args.no_verify, "debug": args.debug}
            if args.max_iterations:
                opts["max_iterations"] = args.max_iterations
            result = generate_qa(env, **opts)
        except RLMError as e:
            print(f"[rlm] error: {e}", file=sys.stderr)
            sys.exit(1)
        finally:
            dispose(env)
        saved = save_qa(result, args.out)
        print(json.dumps(result.stats, indent=2))
        for err in result.errors:
            print(f"[rlm] {err['phase']} batch {err['batch']} failed: {err['error']}", file=sys.stderr)
        for f in saved["files"]:
            print(f"wrote {f}")
        return


if __name__ == "__main__":
    main()
