# -*- coding: utf-8 -*-

from __future__ import annotations

import re
from typing import Dict, List, Optional

from .errors import InputRejected


# phrase -> (type, message)
INJECTION_PATTERNS: Dict[str, tuple] = {
    "ignore previous instructions": ("instruction-override", "Attempt to override system instructions"),
    "ignore your instructions": ("instruction-override", "Attempt to override system instructions"),
    "ignore all previous": ("instruction-override", "Attempt to override previous instructions"),
    "disregard all previous": ("instruction-override", "Attempt to override previous instructions"),
    "override previous": ("instruction-override", "Attempt to override previous instructions"),
    "new instructions": ("instruction-injection", "Attempt to inject new instructions"),
    "forget everything above": ("context-manipulation", "Attempt to clear conversation context"),
    "forget everything": ("context-manipulation", "Attempt to clear conversation context"),
    "you are now a": ("identity-manipulation", "Attempt to change AI identity/role"),
    "act as if": ("identity-manipulation", "Attempt to change AI behavior"),
    "pretend you are": ("identity-manipulation", "Attempt to change AI identity"),
    "roleplay as": ("identity-manipulation", "Attempt to change AI role"),
    "simulate being": ("identity-manipulation", "Attempt to change AI identity"),
    "developer mode": ("privilege-escalation", "Attempt to enable developer/debug mode"),
    "admin override": ("privilege-escalation", "Attempt to gain admin privileges"),
    "root access": ("privilege-escalation", "Attempt to gain root privileges"),
    "disregard guidelines": ("safety-bypass", "Attempt to bypass safety guidelines"),
    "override safety": ("safety-bypass", "Attempt to bypass safety measures"),
    "bypass restrictions": ("safety-bypass", "Attempt to bypass restrictions"),
    "ignore safeguards": ("safety-bypass", "Attempt to bypass safeguards"),
    "system prompt": ("system-access", "Attempt to access or manipulate system prompt"),
    "jailbreak": ("jailbreak", "Explicit jailbreak attempt"),
}


def find_injections(text: str, patterns: Optional[Dict[str, tuple]] = None) -> List[dict]:
    if not isinstance(text, str) or not text:
        return []
    low = re.sub(r"\s+", " ", text.lower())
    out = []
    for pat, (kind, message) in (patterns or INJECTION_PATTERNS).items():
        if pat in low:
            out.append({"pattern": pat, "type": kind, "message": message})
    return out


def screen_input(text: str, patterns: Optional[Dict[str, tuple]] = None) -> str:
    """Return text unchanged, or raise InputRejected listing every matched pattern."""
    matches = find_injections(text, patterns)
    if matches:
        raise InputRejected(matches)
    return text


# Humanizer. SAFE_PATTERNS only touch phrases that are unambiguous AI artifacts;
# AGGRESSIVE_PATTERNS may also match ordinary English and are opt-in.

AI_IDENTITY_PATTERNS = {
    "As an AI, I": "I",
    "As an AI assistant, I": "I",
    "As a language model, I": "I",
    "As an artificial intelligence, I": "I",
    "As an AI, ": "",
    "As an AI assistant, ": "",
    "As a language model, ": "",
    "As an artificial intelligence, ": "",
    "As a helpful assistant": "",
    "I'm an AI,": "I'm",
    "I am an AI,": "I am",
    "I'm a language model,": "I'm",
    "I am a language model,": "I am",
    "I'm a large language model,": "I'm",
    "I am a large language model,": "I am",
}

REFUSAL_PATTERNS = {
    "I cannot and will not": "I won't",
    "I'm not able to": "I can't",
    "I am not able to": "I can't",
    "I don't have the ability to": "I can't",
    "I do not have the ability to": "I can't",
    "I'm unable to": "I can't",
    "I am unable to": "I can't",
    "I cannot assist with": "I can't help with",
}

KNOWLEDGE_PATTERNS = {
    "As of my last update": "",
    "As of my last training": "",
    "Based on my training data": "",
    "Based on my training": "",
    "my training data": "available information",
    "my knowledge cutoff": "current information",
    "my knowledge base": "available information",
}

PUNCTUATION_PATTERNS = {
    " — ": ", ",
    "— ": ", ",
    " —": ",",
    " -- ": ", ",
}

HEDGING_PATTERNS = {
    "It's important to note that": "",
    "It is important to note that": "",
    "It's worth mentioning that": "",
    "It is worth mentioning that": "",
    "It's worth noting that": "",
    "It is worth noting that": "",
    "It should be noted that": "",
    "Please note that": "",
    "I should mention that": "",
    "I should note that": "",
    "As you may know": "",
    "Generally speaking": "",
}

OVERUSED_VERB_PATTERNS = {
    "delve into": "explore",
    "delves into": "explores",
    "delving into": "exploring",
    "delve": "explore",
    "leverage": "use",
    "leveraging": "using",
    "leveraged": "used",
    "utilize": "use",
    "utilizing": "using",
    "utilized": "used",
    "facilitate": "help",
    "facilitates": "helps",
}

CLICHE_PATTERNS = {
    "Great question! ": "",
    "Certainly! ": "",
    "Absolutely! ": "",
    "Of course! ": "",
    "I hope this helps!": "",
    "I hope this helps.": "",
    "Let me know if you have any other questions.": "",
    "Feel free to ask if you have any other questions.": "",
    "In conclusion, ": "",
    "That said, ": "",
}

SAFE_PATTERNS = {**AI_IDENTITY_PATTERNS, **REFUSAL_PATTERNS, **KNOWLEDGE_PATTERNS, **PUNCTUATION_PATTERNS}
AGGRESSIVE_PATTERNS = {**HEDGING_PATTERNS, **OVERUSED_VERB_PATTERNS, **CLICHE_PATTERNS}

# Code, inline code, URLs and emails are never rewritten.
_EXCLUSION_RE = re.compile(r"```.*?```|`[^`]+`|https?://\S+|[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}", re.S)


def _is_word_char(c: str) -> bool:
    return c.isalnum() or c == "_"


def _pattern_regex(phrase: str) -> re.Pattern:
    prefix = r"(?<![\w])" if _is_word_char(phrase[0]) else ""
    suffix = r"(?![\w])" if _is_word_char(phrase[-1]) else ""
    return re.compile(prefix + re.escape(phrase) + suffix, re.IGNORECASE)


def _match_case(replacement: str, matched: str) -> str:
    letters = [c for c in matched if c.isalpha()]
    if letters and all(c.isupper() for c in letters):
        return replacement.upper()
    if matched[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


def _replace_phrase(text: str, phrase: str, replacement: str) -> str:
    rx = _pattern_regex(phrase)
    if replacement and " " not in phrase and " " not in replacement:
        return rx.sub(lambda m: _match_case(replacement, m.group(0)), text)
    return rx.sub(lambda m: replacement, text)


def _cleanup(s: str) -> str:
    s = re.sub(r",\s*,", ",", s)
    s = re.sub(r"\.\s*\.", ".", s)
    s = re.sub(r";\s*;", ";", s)
    s = re.sub(r"[ \t]+([,.;:!?])", r"\1", s)
    s = re.sub(r"[ \t]+", " ", s)
    s = re.sub(r" *\n *", "\n", s)
    s = s.strip()
    return re.sub(r"^[\s,;:]+", "", s)


def humanize(text, aggressive: bool = False, patterns: Optional[Dict[str, str]] = None):
    """
    Strip AI tells from a string. Longest phrases are applied first.
    Non-strings are returned unchanged.
    """
    if not isinstance(text, str) or not text:
        return text
    table = patterns if patterns is not None else ({**SAFE_PATTERNS, **AGGRESSIVE_PATTERNS} if aggressive else SAFE_PATTERNS)
    ordered = sorted(table.items(), key=lambda kv: len(kv[0]), reverse=True)

    zones: List[str] = []

    def protect(m):
        zones.append(m.group(0))
        return f"\x00EXCL{len(zones) - 1}\x00"

    work = _EXCLUSION_RE.sub(protect, text)
    for phrase, replacement in ordered:
        work = _replace_phrase(work, phrase, replacement)
    work = _cleanup(work)
    # sentence start after a removed lead-in
    if text[:1].isupper() and work[:1].islower():
        work = work[:1].upper() + work[1:]
    for i, orig in enumerate(zones):
        work = work.replace(f"\x00EXCL{i}\x00", orig)
    return work
