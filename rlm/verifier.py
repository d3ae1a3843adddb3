# -*- coding: utf-8 -*-

from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional

from .parse import extract_json


MAX_MATERIAL_NODES = 5
MAX_MATERIAL_CHARS = 6000

COVE_SYSTEM_PROMPT = (
    "You are a rigorous fact-checker. You receive ONE claim and source material copied from a document corpus.\n"
    "Decide only from the material whether it supports the claim. Do not use outside knowledge.\n"
    "Be skeptical: partial support, different numbers, or different entities mean NOT supported.\n"
    "Return EXACTLY ONE LINE of JSON: {\"supported\": true|false, \"verdict\": \"supported|contradicted|insufficient\", \"reasoning\": \"...\"}"
)


@dataclass(frozen=True)
class Claim:
    id: str
    text: str
    document_id: Optional[str]
    page: Optional[int]
    section: Optional[str]
    quote: Optional[str]
    confidence: float
    query_id: Optional[str]
    verified: Optional[bool] = None
    verdict: Optional[str] = None
    reasoning: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _claim_filter(claim: Claim) -> dict:
    filt: Dict[str, Any] = {}
    if claim.document_id:
        filt["document_id"] = claim.document_id
    if claim.page is not None:
        filt["page"] = claim.page
    return filt


def _quote_fragments(quote: str) -> List[str]:
    """Whole quote first, then its longest sentences, so reflowed text still matches."""
    quote = re.sub(r"\s+", " ", quote or "").strip()
    if not quote:
        return []
    frags = [quote]
    parts = sorted((p.strip() for p in re.split(r"(?<=[.;:!?])\s+", quote) if len(p.strip()) > 20), key=len, reverse=True)
    for p in parts[:3]:
        if p not in frags:
            frags.append(p)
    return frags


def find_material(corpus, claim: Claim) -> List[dict]:
    """Corpus nodes backing a claim: search by quote, then by claim text, within the cited document/page."""
    filt = _claim_filter(claim)
    for frag in _quote_fragments(claim.quote or ""):
        nodes = corpus.search_page_nodes(frag, limit=MAX_MATERIAL_NODES, filter=filt)
        if nodes:
            return nodes
    text = (claim.text or "").strip()
    if text:
        nodes = corpus.search_page_nodes(text, limit=MAX_MATERIAL_NODES, filter=filt)
        if nodes:
            return nodes
    return []


def _render_material(nodes: List[dict]) -> str:
    out = []
    used = 0
    for n in nodes:
        body = n.get("content") or n.get("description") or ""
        block = f"[document {n.get('document_id')} page {n.get('page')}]\n{body}"
        if used + len(block) > MAX_MATERIAL_CHARS:
            block = block[: max(0, MAX_MATERIAL_CHARS - used)]
        out.append(block)
        used += len(block)
        if used >= MAX_MATERIAL_CHARS:
            break
    return "\n\n".join(out)


def build_cove_messages(claim: Claim, material: str) -> List[Dict[str, str]]:
    payload = f"CLAIM:\n{claim.text}\n\n"
    if claim.quote:
        payload += f"CITED QUOTE:\n{claim.quote}\n\n"
    payload += f"SOURCE MATERIAL:\n{material}"
    return [{"role": "system", "content": COVE_SYSTEM_PROMPT}, {"role": "user", "content": payload}]


def _parse_cove_answer(text: str) -> tuple[bool, str, str]:
    data = extract_json(text)
    if isinstance(data, dict):
        supported = data.get("supported")
        verdict = str(data.get("verdict") or "").strip().lower()
        if isinstance(supported, str):
            supported = supported.strip().lower() == "true"
        if not isinstance(supported, bool):
            supported = verdict == "supported"
        return supported, verdict or ("supported" if supported else "insufficient"), str(data.get("reasoning") or "").strip()
    t = (text or "").strip().lower()
    supported = bool(re.match(r"^(yes|supported|true)\b", t))
    return supported, "supported" if supported else "insufficient", (text or "").strip()[:500]


def verify_claim(env, claim: Claim, session_id: Optional[str] = None, model: Optional[str] = None, iteration: int = 0) -> Claim:
    """Returns a new Claim with verified/verdict set. Never writes to the corpus."""
    nodes = find_material(env.corpus, claim)
    if not nodes:
        return replace(claim, verified=False, verdict="no-source", reasoning="no supporting material found in the corpus")
    messages = build_cove_messages(claim, _render_material(nodes))
    resp = env.traced_complete(session_id or claim.query_id or "", iteration, "verify", messages, model=model, temperature=0.0)
    supported, verdict, reasoning = _parse_cove_answer(resp["text"])
    return replace(claim, verified=supported, verdict=verdict, reasoning=reasoning)


def verify_claims(env, claims: List[Claim], session_id: Optional[str] = None, model: Optional[str] = None) -> List[Claim]:
    """
    Chain-of-verification over cited claims, in citation order.
    Claims without corpus material are marked no-source without a model call.
    Results are appended to the memory store claim log.
    """
    out = [verify_claim(env, c, session_id=session_id, model=model, iteration=i) for i, c in enumerate(claims)]
    if out:
        env.memory.record_claims([c.to_dict() for c in out])
    return out


def summarize_claims(claims: List[Claim]) -> Dict[str, int]:
    return {
        "total": len(claims),
        "verified": sum(1 for c in claims if c.verified),
        "unverified": sum(1 for c in claims if c.verified is False),
        "no_source": sum(1 for c in claims if c.verdict == "no-source"),
    }
