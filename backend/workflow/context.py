"""Execution context, template interpolation and expression evaluation.

The context is the mutable bag carried through one execution:

    {"variables": {...}, "input": {...}, "output": {...}}

Keys starting with ``_`` in ``variables`` are engine bookkeeping (loop
counters, wait deadlines, button maps) and are hidden from templates and
expressions. Loop bookkeeping is exposed as a LoopFrame and flattened back
into ``_loop*`` variables for storage.
"""

import ast
import copy
import json
import logging
import operator
import re
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

RESERVED_PREFIX = "_"

LOOP_NODE_ID = "_loopNodeId"
LOOP_DATA = "_loopData"
LOOP_CURRENT_INDEX = "_loopCurrentIndex"
LOOP_ITEM_VARIABLE = "_loopItemVariable"
LOOP_INDEX_VARIABLE = "_loopIndexVariable"
LOOP_ITERATIONS = "_loopIterationsExecuted"
LOOP_KEYS = (
    LOOP_NODE_ID,
    LOOP_DATA,
    LOOP_CURRENT_INDEX,
    LOOP_ITEM_VARIABLE,
    LOOP_INDEX_VARIABLE,
    LOOP_ITERATIONS,
)

WAIT_RESUME_AT = "_waitResumeAt"
REPLY_TIMEOUT_AT = "_replyTimeoutAt"
ON_TIMEOUT = "_onTimeout"
TIMEOUT_TARGET_NODE_ID = "_timeoutTargetNodeId"
BUTTON_MAP = "_buttonMap"
REPLY_WAIT_KEYS = (REPLY_TIMEOUT_AT, ON_TIMEOUT, TIMEOUT_TARGET_NODE_ID, BUTTON_MAP)


# ─── Execution Context ────────────────────────────────────────

@dataclass
class LoopFrame:
    """For-each iteration state for the loop currently in progress."""

    node_id: str
    items: list
    index: Optional[int] = None
    item_variable: str = "item"
    index_variable: str = "index"
    iterations_executed: int = 0

    @property
    def started(self) -> bool:
        return self.index is not None


@dataclass
class ExecutionContext:
    """Variables, last input and last output of one execution."""

    variables: dict[str, Any] = field(default_factory=dict)
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] = field(default_factory=dict)

    def set_variable(self, key: str, value: Any) -> None:
        self.variables[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def pop_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.pop(key, default)

    def public_variables(self) -> dict[str, Any]:
        """Variables visible to node authors (no engine bookkeeping)."""
        return {
            k: v for k, v in self.variables.items()
            if not k.startswith(RESERVED_PREFIX)
        }

    @property
    def loop_frame(self) -> Optional[LoopFrame]:
        node_id = self.variables.get(LOOP_NODE_ID)
        if not node_id:
            return None
        return LoopFrame(
            node_id=node_id,
            items=list(self.variables.get(LOOP_DATA) or []),
            index=self.variables.get(LOOP_CURRENT_INDEX),
            item_variable=self.variables.get(LOOP_ITEM_VARIABLE) or "item",
            index_variable=self.variables.get(LOOP_INDEX_VARIABLE) or "index",
            iterations_executed=int(self.variables.get(LOOP_ITERATIONS) or 0),
        )

    @loop_frame.setter
    def loop_frame(self, frame: Optional[LoopFrame]) -> None:
        if frame is None:
            for key in LOOP_KEYS:
                self.variables.pop(key, None)
            return
        self.variables[LOOP_NODE_ID] = frame.node_id
        self.variables[LOOP_DATA] = list(frame.items)
        self.variables[LOOP_ITEM_VARIABLE] = frame.item_variable
        self.variables[LOOP_INDEX_VARIABLE] = frame.index_variable
        self.variables[LOOP_ITERATIONS] = frame.iterations_executed
        if frame.index is None:
            self.variables.pop(LOOP_CURRENT_INDEX, None)
        else:
            self.variables[LOOP_CURRENT_INDEX] = frame.index

    def clear_reply_wait(self) -> None:
        for key in REPLY_WAIT_KEYS:
            self.variables.pop(key, None)

    def to_dict(self) -> dict:
        """Serialize for persistence. Always returns fresh containers."""
        return copy.deepcopy({
            "variables": self.variables,
            "input": self.input,
            "output": self.output,
        })

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ExecutionContext":
        data = copy.deepcopy(data or {})
        return cls(
            variables=data.get("variables") or {},
            input=data.get("input") or {},
            output=data.get("output") or {},
        )


# ─── Expression Evaluator ─────────────────────────────────────

class _JSStr(str):
    """String exposing the JavaScript helpers editor expressions use."""

    @property
    def length(self) -> int:
        return len(self)

    def includes(self, sub) -> bool:
        return str(sub) in self

    def startsWith(self, prefix) -> bool:
        return self.startswith(str(prefix))

    def endsWith(self, suffix) -> bool:
        return self.endswith(str(suffix))

    def toLowerCase(self) -> str:
        return _JSStr(self.lower())

    def toUpperCase(self) -> str:
        return _JSStr(self.upper())

    def trim(self) -> str:
        return _JSStr(self.strip())


class _JSList(list):
    @property
    def length(self) -> int:
        return len(self)

    def includes(self, item) -> bool:
        return item in self


class _DotDict(dict):
    """Dict with attribute access; missing keys read as None."""

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)
        if name in self:
            return self[name]
        alt = name.replace("_", "-")
        if alt in self:
            return self[alt]
        return None

    def __setattr__(self, name, value):
        self[name] = value

    @property
    def length(self) -> int:
        return len(self)


_SAFE_BUILTINS = {
    "True": True, "False": False, "None": None,
    "len": len, "int": int, "float": float, "str": str,
    "bool": bool, "abs": abs, "min": min, "max": max,
    "round": round, "any": any, "all": all,
}


class _Namespace(_DotDict):
    """Top-level eval namespace: unknown bare names resolve to None."""

    def __missing__(self, key):
        if key in _SAFE_BUILTINS:
            raise KeyError(key)
        return None


def _wrap(obj, _depth=0, _max_depth=50):
    """Recursively convert values for eval-friendly access."""
    if _depth >= _max_depth:
        return obj
    if isinstance(obj, dict) and not isinstance(obj, _DotDict):
        return _DotDict({k: _wrap(v, _depth + 1) for k, v in obj.items()})
    if isinstance(obj, list) and not isinstance(obj, _JSList):
        return _JSList(_wrap(v, _depth + 1) for v in obj)
    if isinstance(obj, str) and not isinstance(obj, _JSStr):
        return _JSStr(obj)
    return obj


def _unwrap(obj):
    if isinstance(obj, dict):
        return {k: _unwrap(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_unwrap(v) for v in obj]
    if isinstance(obj, str):
        return str(obj)
    return obj


_STRING_LITERAL = re.compile(r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")""")
_JS_REPLACEMENTS = (
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(null|undefined)\b"), "None"),
)
_JS_LITERALS = ("true", "false", "null", "undefined")
_TEMPLATE = re.compile(r"\{\{\s*((?:(?!\}\}).)*?)\s*\}\}", re.DOTALL)


def _translate_js(expr: str) -> str:
    """Rewrite JavaScript operators outside of string literals."""
    parts = _STRING_LITERAL.split(expr)
    for i in range(0, len(parts), 2):
        segment = parts[i]
        for pattern, replacement in _JS_REPLACEMENTS:
            segment = pattern.sub(replacement, segment)
        parts[i] = segment
    return "".join(parts)


_FORBIDDEN_ATTR_PREFIXES = ("_", "gi_", "cr_", "ag_", "f_", "co_", "tb_")
_FORBIDDEN_ATTRS = frozenset({"format", "format_map", "mro"})


def _compile_guarded(code: str):
    """Compile an expression, rejecting access to interpreter internals.

    Dunder and frame/generator attributes, underscore keys and dunder names
    raise ValueError before anything is evaluated.
    """
    tree = ast.parse(code, mode="eval")
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            if node.attr.startswith(_FORBIDDEN_ATTR_PREFIXES) or node.attr in _FORBIDDEN_ATTRS:
                raise ValueError(f"Forbidden attribute: {node.attr}")
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ValueError(f"Forbidden name: {node.id}")
        elif isinstance(node, ast.Subscript):
            key = node.slice
            if isinstance(key, ast.Constant) and isinstance(key.value, str) and key.value.startswith("_"):
                raise ValueError(f"Forbidden key: {key.value}")
    return compile(tree, "<expression>", "eval")


class ExpressionEvaluator:
    """Evaluates expressions like ``variables.name`` against a context.

    Supports:
    - Variable references: {{ variables.name }} or bare {{ name }}
    - Input and output: {{ input.text }}, {{ output.conditionResult }}
    - Dotted paths and list indices: {{ variables.order.items.0.sku }}
    - Comparisons and boolean logic, in Python or JavaScript spelling
    - String helpers: .includes(), .startsWith(), .endsWith(), .length
    """

    @staticmethod
    def namespace(context: ExecutionContext) -> _Namespace:
        public = context.public_variables()
        ns = _Namespace({k: _wrap(v) for k, v in public.items()})
        ns["variables"] = _wrap(public)
        ns["input"] = _wrap(context.input or {})
        ns["output"] = _wrap(context.output or {})
        return ns

    @staticmethod
    def evaluate(expression: Any, context: ExecutionContext) -> Any:
        """Evaluate an expression; raises on malformed input."""
        if not isinstance(expression, str):
            return expression

        expr = expression.strip()
        full = _TEMPLATE.fullmatch(expr)
        if full:
            expr = full.group(1)
        elif "{{" in expr:
            expr = _TEMPLATE.sub(lambda m: f"({m.group(1)})", expr)
        if not expr:
            return None

        namespace = ExpressionEvaluator.namespace(context)

        # Try simple dot-notation path first (fast path)
        try:
            return _unwrap(ExpressionEvaluator._resolve_path(expr, namespace))
        except (KeyError, ValueError, IndexError):
            pass

        code = _compile_guarded(_translate_js(expr))
        return _unwrap(eval(code, {"__builtins__": _SAFE_BUILTINS}, namespace))

    @staticmethod
    def _resolve_path(path: str, namespace: dict) -> Any:
        """Resolve a dot-notation path like 'variables.order.total'."""
        if not re.fullmatch(r"[A-Za-z_$][\w$-]*(\.[\w$-]+)*", path):
            raise ValueError("Not a simple dot path")
        if path in _SAFE_BUILTINS or path in _JS_LITERALS:
            raise ValueError("Literal or builtin name")

        parts = path.split(".")
        current = namespace
        for part in parts:
            if current is None:
                return None
            if isinstance(current, dict):
                current = dict.get(current, part, dict.get(current, part.replace("_", "-")))
            elif isinstance(current, list):
                if part == "length":
                    current = len(current)
                else:
                    current = current[int(part)]
            elif isinstance(current, str) and part == "length":
                current = len(current)
            else:
                return None
        return current


# ─── Interpolation & Conditions ───────────────────────────────

def render_value(value: Any) -> str:
    """Render a value the way it appears inside an outbound message."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def interpolate(template: Optional[str], context: ExecutionContext) -> str:
    """Replace every ``{{ expr }}`` in a template with its value.

    Expressions that fail to evaluate render as an empty string.
    """
    if not template:
        return ""

    def _sub(match: re.Match) -> str:
        expr = match.group(1)
        try:
            return render_value(ExpressionEvaluator.evaluate(expr, context))
        except Exception as e:
            logger.warning(f"Template expression failed: {expr!r} -> {e}")
            return ""

    return _TEMPLATE.sub(_sub, str(template))


def resolve_value(value: Any, context: ExecutionContext) -> Any:
    """Resolve a config value that may be a template, a pure expression
    wrapped in ``{{ }}``, or a literal."""
    if isinstance(value, str):
        stripped = value.strip()
        full = _TEMPLATE.fullmatch(stripped)
        if full:
            try:
                return ExpressionEvaluator.evaluate(stripped, context)
            except Exception as e:
                logger.warning(f"Expression failed: {stripped!r} -> {e}")
                return None
        if "{{" in stripped:
            return interpolate(value, context)
        return value
    if isinstance(value, dict):
        return {k: resolve_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, context) for v in value]
    return value


def evaluate_condition(expression: Optional[str], context: ExecutionContext) -> bool:
    """Evaluate a boolean expression. Failures evaluate to False."""
    if expression is None or not str(expression).strip():
        return False
    try:
        return bool(ExpressionEvaluator.evaluate(str(expression), context))
    except Exception as e:
        logger.warning(f"Condition eval failed: {expression!r} -> {e}")
        return False


# ─── Switch Operators ─────────────────────────────────────────

def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Compare numerically when both sides are numeric, else as text."""
    ln, rn = _as_number(left), _as_number(right)
    if ln is not None and rn is not None:
        return ln, rn
    return render_value(left), render_value(right)


def _ordered(op):
    def compare(left, right):
        a, b = _coerce_pair(left, right)
        return op(a, b)
    return compare


def _is_empty(value) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


SWITCH_OPERATORS = {
    "==": _ordered(operator.eq),
    "!=": _ordered(operator.ne),
    ">": _ordered(operator.gt),
    ">=": _ordered(operator.ge),
    "<": _ordered(operator.lt),
    "<=": _ordered(operator.le),
    "includes": lambda a, b: render_value(b) in render_value(a),
    "startsWith": lambda a, b: render_value(a).startswith(render_value(b)),
    "endsWith": lambda a, b: render_value(a).endswith(render_value(b)),
    "isEmpty": lambda a, b: _is_empty(a),
    "isNotEmpty": lambda a, b: not _is_empty(a),
}

_OPERATOR_ALIASES = {
    "===": "==",
    "!==": "!=",
    "equals": "==",
    "notequals": "!=",
    "contains": "includes",
    "startswith": "startsWith",
    "endswith": "endsWith",
    "isempty": "isEmpty",
    "isnotempty": "isNotEmpty",
}


def normalize_operator(op: str) -> str:
    """Map editor spellings (``.includes(``, ``===``) to operator keys."""
    key = (op or "").strip()
    key = key.strip(".(")
    if key in SWITCH_OPERATORS:
        return key
    return _OPERATOR_ALIASES.get(key, _OPERATOR_ALIASES.get(key.lower(), key))


def apply_operator(left: Any, op: str, right: Any) -> bool:
    """Apply one SWITCH comparison.

    Raises:
        ValueError: If the operator is unknown
    """
    key = normalize_operator(op)
    func = SWITCH_OPERATORS.get(key)
    if func is None:
        raise ValueError(f"Unknown operator: {op}")
    return bool(func(left, right))
