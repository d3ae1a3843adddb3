# -*- coding: utf-8 -*-

from __future__ import annotations

import json
import math
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field as dc_field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import (
    QA_BATCH_SIZE,
    QA_CATEGORIES,
    QA_DIFFICULTIES,
    QA_MAX_ITERATIONS,
    QA_MAX_WORKERS,
    QA_OVERSAMPLE,
)
from .errors import ConfigurationError, PhaseError
from .loop import FINALIZED, query
from .parse import field, spec

VERDICTS = ("pass", "fail", "needs-revision")


def compute_distribution(count: int, items: Iterable[str]) -> Dict[str, int]:
    """Split count evenly over items; the remainder goes to the first items in sorted order."""
    keys = sorted(set(items))
    if not keys:
        return {}
    base, rem = divmod(max(0, int(count)), len(keys))
    return {k: base + (1 if i < rem else 0) for i, k in enumerate(keys)}


def _passage_spec():
    passage = spec(
        field("document_id", "string", "Document id the passage comes from"),
        field("page", "int", "Page index", required=False),
        field("section_title", "string", "Section or TOC title", required=False),
        field("content_summary", "string", "One sentence on what the passage says"),
        field("suggested_difficulty", "enum", "Target difficulty", values=QA_DIFFICULTIES),
        field("suggested_category", "enum", "Target category", values=QA_CATEGORIES),
        name="passage",
    )
    return spec(field("passages", "list", "Selected passages", items=passage), name="selection")


def _question_spec():
    record = spec(
        field("question", "string", "Self-contained question"),
        field("answer", "string", "Answer supported by the evidence"),
        field("evidence_span", "string", "VERBATIM text copied from the source page"),
        field("source_document", "string", "Document id"),
        field("source_page", "int", "Page index", required=False),
        field("source_section", "string", "Section title", required=False),
        field("difficulty", "enum", "Difficulty level", values=QA_DIFFICULTIES),
        field("category", "enum", "Question category", values=QA_CATEGORIES),
        name="question_record",
    )
    return spec(field("questions", "list", "Generated records", items=record), name="generation")


def _verification_spec():
    verdict = spec(
        field("question_index", "int", "Index of the record being judged"),
        field("verdict", "enum", "Outcome of the three checks", values=VERDICTS),
        field("revision_note", "string", "What to fix or why it failed", required=False),
        name="verdict",
    )
    return spec(field("verifications", "list", "One verdict per record", items=verdict), name="verification")


def _dedup_spec():
    return spec(field("keep_indices", "list", "Indices of the records to keep", items="int"), name="dedup")


PASSAGE_SPEC = _passage_spec()
QUESTION_SPEC = _question_spec()
VERIFICATION_SPEC = _verification_spec()
DEDUP_SPEC = _dedup_spec()


def build_selection_prompt(count: int, difficulty_dist: Dict[str, int], category_dist: Dict[str, int]) -> str:
    diff = ", ".join(f"{k}: {v}" for k, v in difficulty_dist.items())
    cat = ", ".join(f"{k}: {v}" for k, v in category_dist.items())
    return (
        f"Select {count} passages from the corpus that would make good question/answer material.\n\n"
        "How to work:\n"
        "1. Call list_documents() to see every document with its abstract and TOC.\n"
        "2. Browse list_toc_entries(doc_id) and list_page_nodes(...) to find substantive content.\n"
        "3. Spread the passages across ALL documents and across different sections; never take two passages from the same page.\n"
        "4. Skip headings, tables of contents, boilerplate and empty pages.\n\n"
        f"Target difficulty mix: {diff}\n"
        f"Target category mix: {cat}\n\n"
        f"Call FINAL with a dict {{\"passages\": [...]}} holding exactly {count} passages."
    )


def build_generation_prompt(
    passages: List[dict],
    batch_index: int,
    persona: Optional[str] = None,
    k_candidates: int = 1,
    multi_hop: bool = False,
) -> str:
    lines = []
    for i, p in enumerate(passages):
        lines.append(
            f"<passage id=\"{i}\" document=\"{p.get('document_id')}\" page=\"{p.get('page')}\" "
            f"section=\"{p.get('section_title') or ''}\" difficulty=\"{p.get('suggested_difficulty')}\" "
            f"category=\"{p.get('suggested_category')}\">{p.get('content_summary') or ''}</passage>"
        )
    parts = [
        f"Batch {batch_index}: write question/answer pairs for the passages below.\n",
        "<passages>\n" + "\n".join(lines) + "\n</passages>\n",
        "Rules:",
        "- Read each passage's page content with search_page_nodes / list_page_nodes before writing.",
        "- Write 1-2 records per passage, matching its difficulty and category.",
        "- evidence_span must be a VERBATIM quote copied from the page content that supports the answer.",
        "- Questions must be self-contained: never write \"the document\", \"this section\", \"the passage\" or \"above\".",
        "- Questions must not be answerable from a heading alone.",
    ]
    if persona:
        parts.append(f"- PERSONA: write every question the way a {persona} would ask it.")
    if k_candidates and k_candidates > 1:
        parts.append(f"- For each passage draft {k_candidates} candidate questions, then keep only the best 1-2.")
    if multi_hop:
        parts.append("- MULTI-HOP: where possible, ask questions that need two passages or two sections to answer.")
    parts.append("\nCall FINAL with a dict {\"questions\": [...]}.")
    return "\n".join(parts)


def build_verification_prompt(records: List[dict]) -> str:
    items = []
    for i, r in enumerate(records):
        items.append(
            f"<record index=\"{i}\">\n"
            f"  <question>{r.get('question')}</question>\n"
            f"  <answer>{r.get('answer')}</answer>\n"
            f"  <evidence_span>{r.get('evidence_span')}</evidence_span>\n"
            f"  <source document=\"{r.get('source_document')}\" page=\"{r.get('source_page')}\"/>\n"
            "</record>"
        )
    return (
        "Verify each generated question/answer record against the corpus.\n\n"
        "<records>\n" + "\n".join(items) + "\n</records>\n\n"
        "Checks for every record:\n"
        "1. GROUNDED: the evidence_span can be found in the source page (use search_page_nodes) and supports the answer.\n"
        "2. NON-TRIVIAL: the question cannot be answered from a heading or title alone.\n"
        "3. SELF-CONTAINED: the question makes sense without seeing the document.\n"
        "4. ANSWERABLE: the corpus actually contains the answer.\n"
        "5. ANSWER-CONSISTENT: the answer agrees with the evidence.\n\n"
        "verdict: pass (all checks hold), needs-revision (fixable; say how in revision_note), fail (drop it).\n"
        "Call FINAL with a dict {\"verifications\": [...]} with one entry per record index."
    )


def build_dedup_prompt(records: List[dict]) -> str:
    numbered = "\n".join(f"{i}. {r.get('question')}" for i, r in enumerate(records))
    return (
        "Below is a numbered list of questions. Some may be near-duplicates (same fact, reworded).\n\n"
        f"{numbered}\n\n"
        "For every group of near-duplicates keep only the best-written one. Keep all distinct questions.\n"
        "Call FINAL with a dict {\"keep_indices\": [...]}."
    )


def _phase_query(env, phase: str, prompt: str, phase_spec, context=None, model=None, max_iterations=QA_MAX_ITERATIONS, debug=False):
    result = query(
        env,
        prompt,
        spec=phase_spec,
        context=context,
        model=model,
        max_iterations=max_iterations,
        refine=False,
        learn=False,
        debug=debug,
    )
    if result.status != FINALIZED:
        raise PhaseError(phase, f"session ended with status {result.status}: {result.error or 'no answer'}")
    return result


def select_passages(env, count: int, difficulty_mix, category_mix, model=None, max_iterations=QA_MAX_ITERATIONS, debug=False):
    difficulty_dist = compute_distribution(count, difficulty_mix)
    category_dist = compute_distribution(count, category_mix)
    result = _phase_query(
        env,
        "selection",
        build_selection_prompt(count, difficulty_dist, category_dist),
        PASSAGE_SPEC,
        model=model,
        max_iterations=max_iterations,
        debug=debug,
    )
    return result.answer["passages"][:count], result


def _normalize_record(r: dict) -> dict:
    return {
        "question": (r.get("question") or "").strip(),
        "answer": (r.get("answer") or "").strip(),
        "evidence_span": r.get("evidence_span") or "",
        "source_document": r.get("source_document"),
        "source_page": r.get("source_page"),
        "source_section": r.get("source_section"),
        "difficulty": r.get("difficulty"),
        "category": r.get("category"),
    }


def filter_verified_questions(records: List[dict], verifications: List[dict]) -> Dict[str, List[dict]]:
    """Split into passed / needs-revision / dropped. Records with no verdict count as passed."""
    by_index = {}
    for v in verifications or []:
        idx = v.get("question_index")
        if isinstance(idx, int) and not isinstance(idx, bool):
            by_index[idx] = v
    out: Dict[str, List[dict]] = {"passed": [], "needs_revision": [], "dropped": []}
    for i, r in enumerate(records):
        v = by_index.get(i) or {}
        verdict = str(v.get("verdict") or "pass").strip().lower().lstrip(":")
        rec = dict(r, verdict=verdict)
        if v.get("revision_note"):
            rec["revision_note"] = v["revision_note"]
        if verdict == "pass":
            out["passed"].append(rec)
        elif verdict == "needs-revision":
            out["needs_revision"].append(rec)
        else:
            out["dropped"].append(rec)
    return out


def deduplicate_questions(env, records: List[dict], model=None, max_iterations=QA_MAX_ITERATIONS, debug=False):
    """Returns (kept records, QueryResult or None). An empty keep-set keeps everything."""
    if len(records) <= 1:
        return list(records), None
    result = query(
        env,
        build_dedup_prompt(records),
        spec=DEDUP_SPEC,
        model=model,
        max_iterations=max_iterations,
        refine=False,
        learn=False,
        debug=debug,
    )
    if result.status != FINALIZED:
        return list(records), result
    keep = sorted({i for i in result.answer.get("keep_indices") or [] if isinstance(i, int) and 0 <= i < len(records)})
    if not keep:
        return list(records), result
    return [records[i] for i in keep], result


@dataclass
class QAResult:
    questions: List[dict]
    dropped_questions: List[dict]
    stats: Dict[str, Any]
    trace: tuple = ()
    iterations: int = 0
    duration_ms: float = 0.0
    errors: List[dict] = dc_field(default_factory=list)
    passages: List[dict] = dc_field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questions": self.questions,
            "dropped_questions": self.dropped_questions,
            "stats": self.stats,
            "iterations": self.iterations,
            "duration_ms": self.duration_ms,
            "errors": self.errors,
            "passages": self.passages,
        }


def generate_qa(
    env,
    count: int = 10,
    difficulty_mix: Optional[Iterable[str]] = None,
    category_mix: Optional[Iterable[str]] = None,
    model: Optional[str] = None,
    verify_answers: bool = True,
    debug: bool = False,
    batch_size: int = QA_BATCH_SIZE,
    oversample: float = QA_OVERSAMPLE,
    max_workers: int = QA_MAX_WORKERS,
    persona: Optional[str] = None,
    k_candidates: int = 1,
    multi_hop: bool = False,
    max_iterations: int = QA_MAX_ITERATIONS,
    post_verification: Optional[Callable[[Dict[str, List[dict]]], List[dict]]] = None,
) -> QAResult:
    env.check_open()
    if not isinstance(count, int) or count <= 0:
        raise ConfigurationError("count must be a positive integer")
    if batch_size <= 0 or max_workers <= 0:
        raise ConfigurationError("batch_size and max_workers must be positive")
    if not env.corpus.list_documents():
        raise ConfigurationError("corpus is empty; ingest documents first")
    difficulty_mix = list(difficulty_mix or QA_DIFFICULTIES)
    category_mix = list(category_mix or QA_CATEGORIES)
    for name, values, allowed in (("difficulty", difficulty_mix, QA_DIFFICULTIES), ("category", category_mix, QA_CATEGORIES)):
        bad = [v for v in values if v not in allowed]
        if bad:
            raise ConfigurationError(f"unknown {name} values: {bad}")

    t0 = time.perf_counter()
    trace: List[Any] = []
    iterations = 0
    errors: List[dict] = []

    def absorb(result):
        nonlocal iterations
        if result is not None:
            trace.extend(result.trace)
            iterations += result.iterations

    # Phase 1: selection
    target = int(math.ceil(count * float(oversample)))
    passages, sel = select_passages(env, target, difficulty_mix, category_mix, model=model, max_iterations=max_iterations, debug=debug)
    absorb(sel)
    env.trace.event({"type": "qa", "phase": "selection", "passages": len(passages), "target": target})

    # Phase 2: generation, one session per batch
    batches = [passages[i : i + batch_size] for i in range(0, len(passages), batch_size)]
    generated: List[dict] = []
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {
            pool.submit(
                _phase_query,
                env,
                "generation",
                build_generation_prompt(batch, idx, persona=persona, k_candidates=k_candidates, multi_hop=multi_hop),
                QUESTION_SPEC,
                batch,
                model,
                max_iterations,
                debug,
            ): idx
            for idx, batch in enumerate(batches)
        }
        by_batch: Dict[int, List[dict]] = {}
        for fut in as_completed(futures):
            idx = futures[fut]
            try:
                res = fut.result()
            except Exception as e:
                errors.append({"phase": "generation", "batch": idx, "error": str(e)})
                continue
            absorb(res)
            by_batch[idx] = [_normalize_record(r) for r in res.answer["questions"]]
    for idx in sorted(by_batch):
        generated.extend(r for r in by_batch[idx] if r["question"])
    env.trace.event({"type": "qa", "phase": "generation", "records": len(generated), "errors": len(errors)})

    # Phase 3: verification
    dropped: List[dict] = []
    if verify_answers and generated:
        ver = _phase_query(
            env, "verification", build_verification_prompt(generated), VERIFICATION_SPEC,
            model=model, max_iterations=max_iterations, debug=debug,
        )
        absorb(ver)
        filtered = filter_verified_questions(generated, ver.answer["verifications"])
        survivors = filtered["passed"]
        if post_verification is not None:
            survivors = list(post_verification(filtered))
        else:
            dropped.extend(filtered["needs_revision"])
        dropped.extend(filtered["dropped"])
    else:
        survivors = list(generated)
    passed = len(survivors)

    # Phase 4: dedup
    final, dd = deduplicate_questions(env, survivors, model=model, max_iterations=max_iterations, debug=debug)
    absorb(dd)
    duplicates_removed = len(survivors) - len(final)
    final = final[:count]

    stats = {
        "total_generated": len(generated),
        "passed_verification": passed,
        "duplicates_removed": duplicates_removed,
        "final_count": len(final),
        "by_difficulty": dict(Counter(r.get("difficulty") for r in final)),
        "by_category": dict(Counter(r.get("category") for r in final)),
    }
    env.trace.event({"type": "qa", "phase": "done", **{k: v for k, v in stats.items() if isinstance(v, int)}})
    return QAResult(
        questions=final,
        dropped_questions=dropped,
        stats=stats,
        trace=tuple(trace),
        iterations=iterations,
        duration_ms=(time.perf_counter() - t0) * 1000.0,
        errors=errors,
        passages=list(passages),
    )


def _as_dict(result) -> Dict[str, Any]:
    return result.to_dict() if hasattr(result, "to_dict") else dict(result)


def _markdown(data: Dict[str, Any]) -> str:
    stats = data.get("stats") or {}
    lines = ["# Generated Q&A Pairs", ""]
    lines.append(
        f"Total generated: {stats.get('total_generated', 0)} | Passed verification: {stats.get('passed_verification', 0)} | "
        f"Duplicates removed: {stats.get('duplicates_removed', 0)} | Final: {stats.get('final_count', 0)}"
    )
    lines.append("")
    for i, q in enumerate(data.get("questions") or [], 1):
        lines.append(f"## {i}. {q.get('question')}")
        lines.append("")
        lines.append(f"**Answer:** {q.get('answer')}")
        lines.append("")
        lines.append(f"**Difficulty:** {q.get('difficulty')} | **Category:** {q.get('category')}")
        src = f"{q.get('source_document')}, page {q.get('source_page')}"
        if q.get("source_section"):
            src += f", {q['source_section']}"
        lines.append(f"**Source:** {src}")
        if q.get("evidence_span"):
            lines.append("")
            lines.append(f"> **Evidence:** {q['evidence_span']}")
        lines.append("")
    return "\n".join(lines)


def save_qa(result, path, formats: Iterable[str] = ("json", "markdown")) -> Dict[str, List[str]]:
    """Write path.json and/or path.md. Returns {"files": [...]}."""
    data = _as_dict(result)
    base = Path(path)
    base.parent.mkdir(parents=True, exist_ok=True)
    files = []
    formats = set(formats)
    unknown = formats - {"json", "markdown"}
    if unknown:
        raise ConfigurationError(f"unknown formats: {sorted(unknown)}")
    if "json" in formats:
        out = base.with_name(base.name + ".json")
        payload = {"questions": data.get("questions") or [], "dropped_questions": data.get("dropped_questions") or [], "stats": data.get("stats") or {}}
        out.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        files.append(str(out))
    if "markdown" in formats:
        out = base.with_name(base.name + ".md")
        out.write_text(_markdown(data), encoding="utf-8")
        files.append(str(out))
    return {"files": files}
