# -*- coding: utf-8 -*-

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field as dc_field
from typing import Any, Dict, List, Optional, Sequence

from .errors import ConfigurationError, SchemaError


CODE_BLOCK_RE = re.compile(r"```([A-Za-z0-9_+-]*)[ \t]*\n(.*?)```", flags=re.S)
CODE_LANGS = ("", "python", "py", "python3")

FIELD_TYPES = ("string", "int", "float", "bool", "enum", "list", "object", "any")


def extract_code_blocks(text: str) -> List[str]:
    """Fenced code blocks in order of appearance. Non-Python fences (json, text...) are skipped."""
    if not isinstance(text, str):
        return []
    blocks = []
    for m in CODE_BLOCK_RE.finditer(text):
        lang = m.group(1).strip().lower()
        if lang not in CODE_LANGS:
            continue
        code = m.group(2).strip("\n")
        if code.strip():
            blocks.append(code)
    return blocks


def extract_first_code_block(text: str) -> Optional[str]:
    blocks = extract_code_blocks(text)
    return blocks[0] if blocks else None


def _json_loads_lenient(blob: str) -> Optional[Any]:
    try:
        return json.loads(blob)
    except Exception:
        pass
    # Escape raw newlines inside quoted strings
    out = []
    in_str = False
    esc = False
    for ch in blob:
        if in_str:
            if esc:
                esc = False
                out.append(ch)
                continue
            if ch == "\\":
                esc = True
                out.append(ch)
                continue
            if ch == "\"":
                in_str = False
                out.append(ch)
                continue
            if ch == "\n":
                out.append("\\n")
                continue
            if ch == "\r":
                out.append("\\r")
                continue
            out.append(ch)
        else:
            if ch == "\"":
                in_str = True
            out.append(ch)
    cleaned = "".join(out)
    # Trailing commas before a closing bracket
    cleaned = re.sub(r",\s*([\]}])", r"\1", cleaned)
    try:
        return json.loads(cleaned)
    except Exception:
        return None


def extract_json(text: str) -> Optional[Any]:
    """Best-effort extraction of one JSON object/array from model output."""
    if not isinstance(text, str):
        return None
    # Fenced blocks first
    for m in re.finditer(r"```(?:json)?\s*(\{.*?\}|\[.*?\])\s*```", text, flags=re.S):
        val = _json_loads_lenient(m.group(1).strip())
        if val is not None:
            return val
    # Line-based
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if (line.startswith("{") and line.endswith("}")) or (line.startswith("[") and line.endswith("]")):
            val = _json_loads_lenient(line)
            if val is not None:
                return val
    # Fallback: first JSON-ish block
    m = re.search(r"(\{.*\}|\[.*\])", text, flags=re.S)
    if not m:
        return None
    return _json_loads_lenient(m.group(1).strip())


@dataclass(frozen=True)
class Field:
    name: str
    type: str = "string"
    description: str = ""
    required: bool = True
    values: Sequence[str] = ()
    items: Any = None  # item type name, or a nested Spec for lists of records
    spec: Optional["Spec"] = None  # nested record for type "object"

    def __post_init__(self):
        if self.type not in FIELD_TYPES:
            raise ConfigurationError(f"field {self.name!r}: unknown type {self.type!r}")
        if self.type == "enum" and not self.values:
            raise ConfigurationError(f"field {self.name!r}: enum needs values")


@dataclass(frozen=True)
class Spec:
    """Output schema: a named record of typed fields."""

    fields: Sequence[Field] = dc_field(default_factory=tuple)
    name: str = "result"
    description: str = ""

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


def spec(*fields: Field, name: str = "result", description: str = "") -> Spec:
    return Spec(fields=tuple(fields), name=name, description=description)


def field(name: str, type: str = "string", description: str = "", **kwargs) -> Field:
    return Field(name=name, type=type, description=description, **kwargs)


def _type_label(f: Field) -> str:
    if f.type == "enum":
        return "one of " + "|".join(f.values)
    if f.type == "list":
        if isinstance(f.items, Spec):
            return "list of {" + ", ".join(f.items.field_names()) + "}"
        return f"list of {f.items or 'any'}"
    if f.type == "object" and f.spec is not None:
        return "object {" + ", ".join(f.spec.field_names()) + "}"
    return f.type


def describe_spec(s: Spec, indent: str = "") -> str:
    lines = []
    if s.description and not indent:
        lines.append(s.description)
    for f in s.fields:
        opt = "" if f.required else " (optional)"
        desc = f" - {f.description}" if f.description else ""
        lines.append(f"{indent}- {f.name}: {_type_label(f)}{opt}{desc}")
        nested = f.items if isinstance(f.items, Spec) else f.spec
        if nested is not None:
            lines.append(describe_spec(nested, indent + "  "))
    return "\n".join(lines)


def _coerce(f: Field, value: Any, path: str, problems: List[str]) -> Any:
    t = f.type
    if value is None:
        if f.required:
            problems.append(f"{path}: required")
        return None
    if t == "any":
        return value
    if t == "string":
        if isinstance(value, (dict, list)):
            problems.append(f"{path}: expected string, got {type(value).__name__}")
            return value
        return str(value)
    if t == "int":
        if isinstance(value, bool):
            problems.append(f"{path}: expected int, got bool")
            return value
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
            return int(value)
        problems.append(f"{path}: expected int, got {value!r}")
        return value
    if t == "float":
        if isinstance(value, bool):
            problems.append(f"{path}: expected number, got bool")
            return value
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                pass
        problems.append(f"{path}: expected number, got {value!r}")
        return value
    if t == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        problems.append(f"{path}: expected bool, got {value!r}")
        return value
    if t == "enum":
        norm = str(value).strip().lower().lstrip(":")
        for v in f.values:
            if norm == v.lower():
                return v
        problems.append(f"{path}: {value!r} not in {list(f.values)}")
        return value
    if t == "list":
        if not isinstance(value, (list, tuple)):
            problems.append(f"{path}: expected list, got {type(value).__name__}")
            return value
        out = []
        for i, item in enumerate(value):
            if isinstance(f.items, Spec):
                out.append(_validate_record(f.items, item, f"{path}[{i}]", problems))
            elif isinstance(f.items, str):
                out.append(_coerce(Field(name=f.name, type=f.items), item, f"{path}[{i}]", problems))
            else:
                out.append(item)
        return out
    if t == "object":
        if f.spec is None:
            if not isinstance(value, dict):
                problems.append(f"{path}: expected object, got {type(value).__name__}")
            return value
        return _validate_record(f.spec, value, path, problems)
    return value


def _validate_record(s: Spec, value: Any, path: str, problems: List[str]) -> Any:
    if not isinstance(value, dict):
        problems.append(f"{path or s.name}: expected object, got {type(value).__name__}")
        return value
    out: Dict[str, Any] = {}
    for f in s.fields:
        key = f.name
        raw = value.get(key)
        if raw is None and "_" in key:
            raw = value.get(key.replace("_", "-"))
        sub_path = f"{path}.{key}" if path else key
        if raw is None and not f.required:
            out[key] = None
            continue
        out[key] = _coerce(f, raw, sub_path, problems)
    return out


def parse_value(s: Spec, raw: Any) -> Dict[str, Any]:
    """
    Validate a finalized value against a Spec.
    Accepts a dict, or text containing JSON. Raises SchemaError listing every problem.
    """
    if not isinstance(s, Spec):
        raise ConfigurationError("spec must be an rlm.parse.Spec")
    value = raw
    if isinstance(raw, str):
        value = extract_json(raw)
        if value is None:
            raise SchemaError([f"{s.name}: no JSON object found in answer"])
    if isinstance(value, list) and len(s.fields) == 1 and s.fields[0].type == "list":
        value = {s.fields[0].name: value}
    problems: List[str] = []
    out = _validate_record(s, value, "", problems)
    if problems:
        raise SchemaError(problems)
    return out
