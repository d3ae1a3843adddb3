# -*- coding: utf-8 -*-

from __future__ import annotations

import ast
import dataclasses
import functools
import json
import math
import operator
import re
import sys
import time
import types
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from RestrictedPython import compile_restricted, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

from .config import EVAL_FUEL, EVAL_MAX_RANGE, EVAL_TIMEOUT_S, MAX_OUTPUT_CHARS
from .errors import ConfigurationError


SANDBOX_FILENAME = "<rlm-sandbox>"

BLOCKED_BUILTINS = frozenset(
    {
        "open",
        "exec",
        "eval",
        "compile",
        "__import__",
        "input",
        "breakpoint",
        "globals",
        "locals",
        "vars",
        "dir",
        "memoryview",
    }
)

# Terminal and introspection forms every sandbox carries.
RESERVED_NAMES = frozenset({"PLAN", "FINAL", "FINAL_VAR", "list_locals", "get_local"})

_INPLACE_OPS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}

_MISSING = object()
MAX_VALUE_DEPTH = 32
LOCAL_SUMMARY_ITEMS = 20

# re and json are exposed as function-only views; the modules themselves reach os and codecs.
SAFE_RE = types.SimpleNamespace(
    search=re.search,
    match=re.match,
    fullmatch=re.fullmatch,
    findall=re.findall,
    finditer=re.finditer,
    sub=re.sub,
    subn=re.subn,
    split=re.split,
    compile=re.compile,
    escape=re.escape,
    IGNORECASE=re.IGNORECASE,
    I=re.I,
    MULTILINE=re.MULTILINE,
    M=re.M,
    DOTALL=re.DOTALL,
    S=re.S,
)
SAFE_JSON = types.SimpleNamespace(loads=json.loads, dumps=json.dumps, JSONDecodeError=json.JSONDecodeError)


class FuelExhausted(BaseException):
    """Raised from the line tracer when an evaluation runs out of steps."""


class EvaluationTimeout(BaseException):
    """Raised from the line tracer when an evaluation passes its deadline."""


class _FinalSignal(BaseException):
    pass


@dataclass
class ExecutionResult:
    code: str
    value: Any = None
    stdout: str = ""
    error: Optional[str] = None
    execution_time_ms: float = 0.0
    timed_out: bool = False
    fuel_exhausted: bool = False
    truncated: bool = False
    final: bool = False
    answer: Any = None
    is_function: bool = False
    new_locals: List[str] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "value": self.value,
            "stdout": self.stdout,
            "error": self.error,
            "execution_time_ms": round(self.execution_time_ms, 3),
            "timed_out": self.timed_out,
            "fuel_exhausted": self.fuel_exhausted,
            "truncated": self.truncated,
            "final": self.final,
            "answer": self.answer,
            "is_function": self.is_function,
        }


def to_value(obj: Any, _depth: int = 0) -> Any:
    """Normalize a host value into str/int/float/bool/None/list/dict."""
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return str(obj)
        return obj
    if _depth >= MAX_VALUE_DEPTH:
        return repr(obj)
    if isinstance(obj, dict):
        return {str(k) if not isinstance(k, str) else k: to_value(v, _depth + 1) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_value(v, _depth + 1) for v in obj]
    if isinstance(obj, (set, frozenset)):
        items = [to_value(v, _depth + 1) for v in obj]
        try:
            return sorted(items)
        except TypeError:
            return sorted(items, key=repr)
    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj).decode("utf-8", errors="replace")
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return to_value(dataclasses.asdict(obj), _depth + 1)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        try:
            return to_value(to_dict(), _depth + 1)
        except Exception:
            return repr(obj)
    if hasattr(obj, "__iter__") and not callable(obj):
        try:
            return [to_value(v, _depth + 1) for v in list(obj)[:10000]]
        except Exception:
            return repr(obj)
    return repr(obj)


class _PrintCollector:
    """Stands in for print() inside restricted code, honouring the output cap."""

    def __init__(self, limit: int):
        self.limit = limit
        self.parts: List[str] = []
        self.size = 0
        self.truncated = False

    def _call_print(self, *objects, **kwargs) -> None:
        sep = kwargs.get("sep", " ")
        end = kwargs.get("end", "\n")
        self.write((sep if isinstance(sep, str) else " ").join(str(o) for o in objects) + (end if isinstance(end, str) else "\n"))

    def write(self, text: str) -> None:
        if self.truncated:
            return
        room = self.limit - self.size
        if len(text) > room:
            self.parts.append(text[: max(0, room)])
            self.parts.append(f"\n... [output truncated at {self.limit} chars]")
            self.size = self.limit
            self.truncated = True
            return
        self.parts.append(text)
        self.size += len(text)

    def getvalue(self) -> str:
        return "".join(self.parts)


def _guarded_write(obj: Any) -> Any:
    if isinstance(obj, (dict, list, set, bytearray)):
        return obj
    raise TypeError(f"Write access not allowed on {type(obj).__name__}")


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    fn = _INPLACE_OPS.get(op)
    if fn is None:
        raise TypeError(f"Operator {op} not allowed")
    return fn(x, y)


def _apply(fn: Callable, *args, **kwargs) -> Any:
    return fn(*args, **kwargs)


def _guarded_getattr(obj: Any, name: str, default: Any = None, getattr: Callable = getattr) -> Any:
    value = safer_getattr(obj, name, default, getattr)
    if isinstance(value, types.ModuleType):
        raise AttributeError(f"module attribute {name!r} is not accessible")
    return value


def _limited_range(max_items: int) -> Callable:
    def limited(*args):
        r = range(*args)
        if len(r) > max_items:
            raise ValueError(f"range() of {len(r)} items exceeds the limit of {max_items}")
        return r

    return limited


def _safe_hasattr(obj: Any, name: str) -> bool:
    if not isinstance(name, str) or name.startswith("_"):
        return False
    try:
        value = _guarded_getattr(obj, name, _MISSING)
    except (AttributeError, NotImplementedError):
        return False
    return value is not _MISSING


def _build_safe_builtins(collector_ref: Callable[[], _PrintCollector], max_range: int = EVAL_MAX_RANGE) -> Dict[str, Any]:
    builtins = dict(safe_builtins)
    builtins.update(
        {
            "list": list,
            "dict": dict,
            "set": set,
            "frozenset": frozenset,
            "enumerate": enumerate,
            "reversed": reversed,
            "map": map,
            "filter": filter,
            "any": any,
            "all": all,
            "sum": sum,
            "min": min,
            "max": max,
            "iter": iter,
            "next": next,
            "format": format,
            "range": _limited_range(max_range),
            "getattr": _guarded_getattr,
            "hasattr": _safe_hasattr,
            "print": lambda *a, **kw: collector_ref()._call_print(*a, **kw),
        }
    )
    for name in BLOCKED_BUILTINS:
        builtins.pop(name, None)
    return builtins


class _CodeChecker(ast.NodeVisitor):
    """Rejects code that would rebind capability names or swallow the sandbox stop signals."""

    def __init__(self, protected: frozenset):
        self.protected = protected
        self.problems: List[str] = []

    def _bind(self, name: str, node: ast.AST) -> None:
        if name in self.protected:
            self.problems.append(f"line {getattr(node, 'lineno', '?')}: cannot rebind built-in name {name!r}")

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            self._bind(node.id, node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._bind(node.name, node)
        self.generic_visit(node)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._bind(node.name, node)
        self.generic_visit(node)

    def visit_Global(self, node: ast.Global) -> None:
        for n in node.names:
            self._bind(n, node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            self.problems.append(f"line {node.lineno}: bare 'except:' is not allowed, catch Exception instead")
        elif any(isinstance(n, ast.Name) and n.id == "BaseException" for n in ast.walk(node.type)):
            self.problems.append(f"line {node.lineno}: catching BaseException is not allowed, catch Exception instead")
        if node.name:
            self._bind(node.name, node)
        self.generic_visit(node)


class Sandbox:
    """
    RestrictedPython evaluator holding one session's variables.

    bindings are the capability surface (name -> callable or constant). Every evaluation
    runs under a line-step fuel budget, a wall-clock deadline and a stdout cap; running
    out of any of them ends that evaluation with an error result. range() is capped at
    max_range items. Work inside a single builtin call (sorted, sum, str * n) is neither
    charged fuel nor interrupted by the deadline.
    Time spent inside the bindings named in untimed (model-backed sub-queries) does not
    count against the deadline.
    """

    def __init__(
        self,
        bindings: Optional[Dict[str, Any]] = None,
        fuel: int = EVAL_FUEL,
        timeout_s: float = EVAL_TIMEOUT_S,
        max_output_chars: int = MAX_OUTPUT_CHARS,
        untimed: Iterable[str] = (),
        max_range: int = EVAL_MAX_RANGE,
    ):
        if fuel <= 0 or timeout_s <= 0 or max_output_chars <= 0 or max_range <= 0:
            raise ConfigurationError("sandbox limits must be positive")
        self.fuel = int(fuel)
        self.timeout_s = float(timeout_s)
        self.max_output_chars = int(max_output_chars)
        self.max_range = int(max_range)
        self.plans: List[str] = []
        self.finalized = False
        self.final_answer: Any = None
        self.history: List[ExecutionResult] = []
        self._collector = _PrintCollector(self.max_output_chars)
        self._deadline = [0.0]

        bindings = dict(bindings or {})
        for name in untimed:
            if callable(bindings.get(name)):
                bindings[name] = self._untimed(bindings[name])
        clash = RESERVED_NAMES.intersection(bindings)
        if clash:
            raise ConfigurationError(f"reserved sandbox names: {sorted(clash)}")

        self.namespace: Dict[str, Any] = {
            "__name__": "rlm_sandbox",
            "__doc__": None,
            "__metaclass__": type,
            "__builtins__": _build_safe_builtins(lambda: self._collector, self.max_range),
            "_getiter_": default_guarded_getiter,
            "_getitem_": default_guarded_getitem,
            "_getattr_": _guarded_getattr,
            "_write_": _guarded_write,
            "_inplacevar_": _inplacevar,
            "_apply_": _apply,
            "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
            "_unpack_sequence_": guarded_unpack_sequence,
            "_print_": lambda _getattr=None: self._collector,
            "re": SAFE_RE,
            "json": SAFE_JSON,
            "math": math,
            "Counter": Counter,
            "defaultdict": defaultdict,
            "PLAN": self._plan,
            "FINAL": self._final,
            "FINAL_VAR": self._final_var,
            "list_locals": self.list_locals,
            "get_local": self.get_local,
        }
        self.namespace.update(bindings)
        self._base_names = frozenset(self.namespace)
        self._protected = frozenset(n for n in self._base_names if not n.startswith("_"))

    # reserved forms

    def _plan(self, text: Any) -> None:
        self.plans.append(text if isinstance(text, str) else json.dumps(to_value(text), ensure_ascii=False))
        return None

    def _final(self, value: Any = None) -> None:
        if not self.finalized:
            self.finalized = True
            self.final_answer = to_value(value)
        raise _FinalSignal()

    def _final_var(self, name: Any) -> None:
        name = str(name).strip().lstrip("'")
        if name not in self.user_names():
            raise NameError(f"FINAL_VAR: no variable named {name!r}")
        self._final(self.namespace[name])

    def user_names(self) -> List[str]:
        return [n for n in self.namespace if n not in self._base_names and not n.startswith("_")]

    def list_locals(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name in self.user_names():
            v = self.namespace[name]
            if callable(v):
                out[name] = "<fn>"
            elif isinstance(v, (list, tuple, set, dict)) and len(v) > LOCAL_SUMMARY_ITEMS:
                out[name] = f"<{type(v).__name__} of {len(v)} items>"
            else:
                out[name] = to_value(v)
        return out

    def get_local(self, name: str) -> Any:
        if name not in self.user_names():
            raise NameError(f"no variable named {name!r}")
        return self.namespace[name]

    def locals(self) -> Dict[str, Any]:
        return {n: self.namespace[n] for n in self.user_names()}

    def reset_final(self) -> None:
        self.finalized = False
        self.final_answer = None

    # evaluation

    def _compile(self, code: str):
        tree = ast.parse(code, filename=SANDBOX_FILENAME, mode="exec")
        checker = _CodeChecker(self._protected)
        checker.visit(tree)
        if checker.problems:
            raise SyntaxError("; ".join(checker.problems))
        tail = None
        last = tree.body[-1] if tree.body else None
        # print() needs the module-level collector binding, so it stays a statement
        if isinstance(last, ast.Expr) and not any(
            isinstance(n, ast.Name) and n.id == "print" for n in ast.walk(last)
        ):
            tail = ast.unparse(last.value)
            tree.body = tree.body[:-1]
        body = compile_restricted(tree, filename=SANDBOX_FILENAME, mode="exec") if tree.body else None
        expr = compile_restricted(tail, filename=SANDBOX_FILENAME, mode="eval") if tail is not None else None
        return body, expr

    def _untimed(self, fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            t0 = time.monotonic()
            try:
                return fn(*args, **kwargs)
            finally:
                self._deadline[0] += time.monotonic() - t0

        return wrapper

    def _tracer(self):
        deadline = self._deadline
        steps = [0]
        fuel = self.fuel

        def local(frame, event, arg):
            if event == "line":
                steps[0] += 1
                if steps[0] > fuel:
                    raise FuelExhausted(f"evaluation exceeded {fuel} steps")
                if time.monotonic() > deadline[0]:
                    raise EvaluationTimeout(f"evaluation exceeded {self.timeout_s:g}s")
            return local

        def global_(frame, event, arg):
            if frame.f_code.co_filename == SANDBOX_FILENAME:
                return local
            return None

        return global_

    def execute(self, code: str) -> ExecutionResult:
        result = ExecutionResult(code=code)
        self._collector = _PrintCollector(self.max_output_chars)
        before = set(self.user_names())
        was_final = self.finalized
        t0 = time.perf_counter()
        try:
            body, expr = self._compile(code)
        except SyntaxError as e:
            msg = e.msg or str(e)
            if isinstance(msg, (tuple, list)):
                msg = "; ".join(str(m) for m in msg)
            if e.lineno and isinstance(e.msg, str):
                msg = f"{msg} (line {e.lineno})"
            result.error = f"SyntaxError: {msg}"
            result.execution_time_ms = (time.perf_counter() - t0) * 1000.0
            self.history.append(result)
            return result

        value = None
        previous = sys.gettrace()
        self._deadline[0] = time.monotonic() + self.timeout_s
        sys.settrace(self._tracer())
        try:
            if body is not None:
                exec(body, self.namespace)
            if expr is not None:
                value = eval(expr, self.namespace)
        except _FinalSignal:
            pass
        except FuelExhausted as e:
            result.fuel_exhausted = True
            result.error = f"FuelExhausted: {e}"
        except EvaluationTimeout as e:
            result.timed_out = True
            result.error = f"Timeout: {e}"
        except Exception as e:
            result.error = f"{type(e).__name__}: {e}"
        finally:
            sys.settrace(previous)

        result.execution_time_ms = (time.perf_counter() - t0) * 1000.0
        result.stdout = self._collector.getvalue()
        result.truncated = self._collector.truncated
        result.new_locals = [n for n in self.user_names() if n not in before]
        if self.finalized and not was_final:
            result.final = True
            result.answer = self.final_answer
            result.error = None
        if result.error is None and not result.final:
            if callable(value):
                result.is_function = True
                result.value = repr(value)
            else:
                result.value = to_value(value)
        self.history.append(result)
        return result
