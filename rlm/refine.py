# -*- coding: utf-8 -*-

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import EVAL_SCORE_MAX, MAX_REFINEMENTS, MIN_SCORE
from .errors import SchemaError
from .parse import extract_json

VERDICT_WEIGHTS = {"correct": 1.0, "partially-correct": 0.5, "uncertain": 0.25, "incorrect": 0.0}
EVAL_CRITERIA = ("correctness", "completeness", "clarity", "confidence")
TREND_EPSILON = 0.01


DECOMPOSE_PROMPT = (
    "<decomposition_task>\n"
    "<role>You extract verifiable claims from an answer.</role>\n"
    "<instructions>\n"
    "- Split the ANSWER into distinct, atomic claims (3-10 depending on length).\n"
    "- category: factual (concrete facts, numbers, dates, names), inference (derived conclusions) or subjective (opinions).\n"
    "- confidence: 0.0-1.0 that the claim is accurate.\n"
    "- verifiable: whether the claim can be checked against the source material.\n"
    "- Order claims by importance to the question.\n"
    "</instructions>\n"
    "Respond with JSON only:\n"
    '{"claims": [{"claim": "...", "category": "factual", "confidence": 0.9, "verifiable": true}]}\n'
    "</decomposition_task>"
)

VERIFY_PROMPT = (
    "<verification_task>\n"
    "<role>You are a rigorous fact-checker.</role>\n"
    "<instructions>\n"
    "- For each claim, write one verification question and answer it independently from the context.\n"
    "- Then compare your answer with the claim and give a verdict:\n"
    "  correct | partially-correct | uncertain | incorrect\n"
    "- Give a correction for incorrect or partially-correct claims.\n"
    "- Be skeptical: mark uncertain when the context does not settle it.\n"
    "</instructions>\n"
    "Respond with JSON only:\n"
    '{"verifications": [{"claim": "...", "question": "...", "answer": "...", "verdict": "correct", "reasoning": "...", "correction": null}]}\n'
    "</verification_task>"
)

EVAL_PROMPT = (
    "<evaluation_task>\n"
    "<role>You are a strict evaluator of answers to questions about documents.</role>\n"
    "<instructions>\n"
    "Score the ANSWER from 0 to 10 on each criterion:\n"
    "- correctness: is it factually right given the question and context?\n"
    "- completeness: does it address every part of the question?\n"
    "- clarity: is it direct and unambiguous?\n"
    "- confidence: how sure are you of your scores?\n"
    "Do not assume correctness without evidence.\n"
    "</instructions>\n"
    "Respond with JSON only:\n"
    '{"correctness": 0, "completeness": 0, "clarity": 0, "confidence": 0, "explanation": "..."}\n'
    "</evaluation_task>"
)

REFINE_PROMPT = (
    "<refinement_task>\n"
    "<role>You are an expert editor who improves answers from verification feedback.</role>\n"
    "<instructions>\n"
    "- Fix every claim marked incorrect or partially-correct, applying the corrections.\n"
    "- Keep everything that was verified correct.\n"
    "- Be conservative: only change what needs to be changed.\n"
    "- Keep the same format as the current output (JSON stays JSON).\n"
    "- Output ONLY the refined answer.\n"
    "</instructions>\n"
    "</refinement_task>"
)


def _render(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)


def _task_block(question: str, answer: Any, context: Optional[str]) -> str:
    s = f"<question>\n{question}\n</question>\n\n<answer>\n{_render(answer)}\n</answer>"
    if context:
        s += f"\n\n<context>\n{context}\n</context>"
    return s


def _clamp(x: Any, lo: float, hi: float) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return lo
    return max(lo, min(hi, v))


def normalize_claims(data: Any) -> List[dict]:
    raw = data.get("claims") if isinstance(data, dict) else data
    out = []
    for c in raw if isinstance(raw, list) else []:
        if isinstance(c, str):
            c = {"claim": c}
        if not isinstance(c, dict) or not str(c.get("claim") or "").strip():
            continue
        category = str(c.get("category") or "factual").lower()
        out.append(
            {
                "claim": str(c["claim"]).strip(),
                "category": category if category in ("factual", "inference", "subjective") else "factual",
                "confidence": _clamp(c.get("confidence", 0.5), 0.0, 1.0),
                "verifiable": c.get("verifiable") is not False,
            }
        )
    return out


def verifiable(claim: dict) -> bool:
    return claim.get("verifiable", True) and claim.get("category") != "subjective"


def normalize_eval(data: Any) -> Dict[str, Any]:
    data = data if isinstance(data, dict) else {}
    scores: Dict[str, Any] = {k: int(round(_clamp(data.get(k, 0), 0, 10))) for k in EVAL_CRITERIA}
    scores["total"] = sum(scores[k] for k in EVAL_CRITERIA)
    scores["explanation"] = str(data.get("explanation") or "")
    return scores


def score_verifications(verifications: List[dict], eval_scores: Optional[dict]) -> float:
    if not verifications:
        return (eval_scores or {}).get("total", 0) / float(EVAL_SCORE_MAX)
    weights = [VERDICT_WEIGHTS.get(v.get("verdict"), VERDICT_WEIGHTS["uncertain"]) for v in verifications]
    return sum(weights) / len(weights)


def compute_gradient(scores: List[float]) -> Dict[str, Any]:
    deltas = [b - a for a, b in zip(scores, scores[1:])]
    if not deltas:
        trend = "stable"
    elif all(d > TREND_EPSILON for d in deltas):
        trend = "improving"
    elif all(d < -TREND_EPSILON for d in deltas):
        trend = "declining"
    else:
        trend = "stable"
    total = (scores[-1] - scores[0]) if scores else 0.0
    return {"deltas": deltas, "trend": trend, "total": total}


def format_feedback(verifications: List[dict], eval_scores: Optional[dict]) -> str:
    lines = []
    for i, v in enumerate(verifications, 1):
        lines.append(f'<verification id="{i}">')
        lines.append(f"  <claim>{v.get('claim')}</claim>")
        lines.append(f"  <verdict>{v.get('verdict')}</verdict>")
        if v.get("reasoning"):
            lines.append(f"  <reasoning>{v.get('reasoning')}</reasoning>")
        if v.get("correction"):
            lines.append(f"  <correction>{v.get('correction')}</correction>")
        lines.append("</verification>")
    if eval_scores and eval_scores.get("explanation"):
        lines.append(f"<evaluation total=\"{eval_scores['total']}/{EVAL_SCORE_MAX}\">{eval_scores['explanation']}</evaluation>")
    return "\n".join(lines) or "None"


@dataclass
class RefinementIteration:
    iteration: int
    output: Any
    claims: List[dict]
    verifications: List[dict]
    eval_scores: Dict[str, Any]
    score: float
    duration_ms: float
    usable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class RefinementResult:
    answer: Any
    score: float
    converged: bool
    eval_scores: Optional[Dict[str, Any]]
    best_iteration: int
    regenerated: bool
    iterations: List[RefinementIteration] = field(default_factory=list)
    gradient: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "converged": self.converged,
            "eval_scores": self.eval_scores,
            "best_iteration": self.best_iteration,
            "regenerated": self.regenerated,
            "gradient": self.gradient,
            "iterations": [it.to_dict() for it in self.iterations],
        }


class Refiner:
    """decompose -> verify -> evaluate -> (regenerate) per iteration; every call is traced under the session."""

    def __init__(self, env, question: str, context: Optional[str], model: Optional[str], session_id: str):
        self.env = env
        self.question = question
        self.context = context
        self.model = model
        self.session_id = session_id

    def _ask(self, iteration: int, system: str, user: str, temperature: float = 0.0) -> str:
        resp = self.env.traced_complete(
            self.session_id,
            iteration,
            "refine",
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            model=self.model,
            temperature=temperature,
        )
        return resp.get("text") or ""

    def decompose(self, iteration: int, answer: Any) -> List[dict]:
        return normalize_claims(extract_json(self._ask(iteration, DECOMPOSE_PROMPT, _task_block(self.question, answer, None))))

    def verify(self, iteration: int, answer: Any, claims: List[dict]) -> List[dict]:
        checkable = [c for c in claims if verifiable(c)]
        skipped = [
            {"claim": c["claim"], "question": "N/A", "answer": "N/A", "verdict": "uncertain",
             "reasoning": "Claim is subjective or not independently verifiable", "correction": None}
            for c in claims
            if not verifiable(c)
        ]
        if not checkable:
            return skipped
        listing = "\n".join(f'<claim id="{i}">{c["claim"]}</claim>' for i, c in enumerate(checkable, 1))
        text = self._ask(iteration, VERIFY_PROMPT, _task_block(self.question, answer, self.context) + f"\n\n<claims>\n{listing}\n</claims>")
        data = extract_json(text)
        raw = data.get("verifications") if isinstance(data, dict) else data
        out = []
        for i, c in enumerate(checkable):
            v = raw[i] if isinstance(raw, list) and i < len(raw) and isinstance(raw[i], dict) else {}
            verdict = str(v.get("verdict") or "uncertain").lower()
            out.append(
                {
                    "claim": c["claim"],
                    "question": v.get("question"),
                    "answer": v.get("answer"),
                    "verdict": verdict if verdict in VERDICT_WEIGHTS else "uncertain",
                    "reasoning": v.get("reasoning"),
                    "correction": v.get("correction"),
                }
            )
        return out + skipped

    def evaluate(self, iteration: int, answer: Any) -> Dict[str, Any]:
        return normalize_eval(extract_json(self._ask(iteration, EVAL_PROMPT, _task_block(self.question, answer, self.context))))

    def regenerate(self, iteration: int, answer: Any, verifications: List[dict], eval_scores: dict) -> str:
        task = (
            f"<original_task>\n{self.question}\n</original_task>\n\n"
            f"<current_output>\n{_render(answer)}\n</current_output>\n\n"
            f"<verification_feedback>\n{format_feedback(verifications, eval_scores)}\n</verification_feedback>"
        )
        if self.context:
            task += f"\n\n<context>\n{self.context}\n</context>"
        return self._ask(iteration, REFINE_PROMPT, task, temperature=0.2).strip()


def refine(
    env,
    question: str,
    answer: Any,
    context: Optional[str] = None,
    max_iterations: int = MAX_REFINEMENTS,
    min_score: float = MIN_SCORE,
    model: Optional[str] = None,
    session_id: str = "",
    parse: Optional[Callable[[str], Any]] = None,
) -> RefinementResult:
    """
    Iterate up to max_iterations times. Stops as soon as the verdict score reaches
    min_score / EVAL_SCORE_MAX. The returned answer is the best-scoring one seen;
    ties keep the earlier answer.

    parse turns regenerated text back into an answer value. A regeneration it rejects
    with SchemaError is still scored but never becomes the returned answer.
    """
    threshold = float(min_score) / float(EVAL_SCORE_MAX)
    refiner = Refiner(env, question, context, model, session_id)
    current = answer
    usable = True
    history: List[RefinementIteration] = []
    best: Optional[RefinementIteration] = None

    for i in range(1, max(1, int(max_iterations)) + 1):
        t0 = time.perf_counter()
        claims = refiner.decompose(i, current)
        verifications = refiner.verify(i, current, claims)
        eval_scores = refiner.evaluate(i, current)
        score = score_verifications(verifications, eval_scores)
        it = RefinementIteration(
            iteration=i,
            output=current,
            claims=claims,
            verifications=verifications,
            eval_scores=eval_scores,
            score=score,
            duration_ms=(time.perf_counter() - t0) * 1000.0,
            usable=usable,
        )
        history.append(it)
        if usable and (best is None or it.score > best.score):
            best = it
        if (usable and score >= threshold) or i >= max_iterations:
            break
        text = refiner.regenerate(i, current, verifications, eval_scores)
        if not text:
            continue
        current, usable = text, True
        if parse is not None:
            try:
                current = parse(text)
            except SchemaError:
                usable = False

    return RefinementResult(
        answer=best.output,
        score=best.score,
        converged=best.score >= threshold,
        eval_scores=best.eval_scores,
        best_iteration=best.iteration,
        regenerated=best.iteration > 1,
        iterations=history,
        gradient=compute_gradient([it.score for it in history]),
    )
