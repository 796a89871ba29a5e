"""
Restricted expression evaluation for transform, condition and mapping nodes.

Expressions use Python expression syntax and are evaluated by walking the
AST against a whitelist. Nothing outside the whitelist can run: no imports,
no dunder access, no lambdas or comprehensions, no calls except the pure
helpers in SAFE_FUNCTIONS.

Dict values are reachable with attribute syntax so designer expressions read
naturally:

    safe_eval("input.amount > 1000 && input.currency == 'EUR'", {"input": payload})
"""

import ast
import io
import operator
import re
import tokenize
from collections.abc import Callable
from typing import Any

from flowdesigner.graph.errors import ExpressionError

MAX_EXPRESSION_LENGTH = 4000
MAX_POWER_EXPONENT = 64
MAX_INT_BITS = 4096
MAX_SEQUENCE_LENGTH = 100_000


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

_PATH_TOKEN = re.compile(r"[^.\[\]]+|\[(\d+)\]")

# JavaScript-flavoured operators accepted as aliases outside string literals
_JS_ALIASES = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
]

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_CONSTANTS = {
    "true": True,
    "false": False,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}


def _get(data: Any, path: str, default: Any = None) -> Any:
    value = resolve_path(data, path)
    return default if value is MISSING else value


SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "round": round,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "sorted": sorted,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "get": _get,
}


# ---------------------------------------------------------------------------
# Field paths
# ---------------------------------------------------------------------------


def _split_path(path: str) -> list[str | int]:
    path = path.strip()
    if path.startswith("$"):
        path = path[1:].lstrip(".")
    parts: list[str | int] = []
    for match in _PATH_TOKEN.finditer(path):
        index = match.group(1)
        parts.append(int(index) if index is not None else match.group(0))
    return parts


def resolve_path(data: Any, path: str) -> Any:
    """
    Resolve a dotted path such as ``order.items[0].sku`` against data.

    An empty path (or ``$``) resolves to data itself. Returns MISSING when
    any segment does not exist.
    """
    current = data
    for part in _split_path(path):
        if isinstance(part, int):
            if isinstance(current, list) and -len(current) <= part < len(current):
                current = current[part]
            else:
                return MISSING
        elif isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return MISSING
    return current


def assign_path(target: dict[str, Any], path: str, value: Any) -> None:
    """Assign value at a dotted path, creating intermediate dicts."""
    parts = _split_path(path)
    if not parts or any(isinstance(p, int) for p in parts):
        raise ExpressionError(f"Invalid target field path: '{path}'")

    current = target
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


def _guard_size(op: ast.operator, left: Any, right: Any) -> None:
    """Refuse arithmetic whose result would be huge before computing it."""
    if isinstance(op, ast.Pow) and isinstance(right, int | float):
        if abs(right) > MAX_POWER_EXPONENT:
            raise ExpressionError("Exponent too large")
        if isinstance(left, int) and isinstance(right, int) and right > 0:
            if left.bit_length() * right > MAX_INT_BITS:
                raise ExpressionError("Power result too large")
    elif isinstance(op, ast.Mult):
        for seq, count in ((left, right), (right, left)):
            if isinstance(seq, str | list | tuple) and isinstance(count, int):
                if len(seq) * count > MAX_SEQUENCE_LENGTH:
                    raise ExpressionError("Repetition result too large")


class _Evaluator:
    def __init__(self, context: dict[str, Any]):
        self.context = context

    def eval(self, node: ast.AST) -> Any:
        method = getattr(self, f"_eval_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.eval(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id.startswith("_"):
            raise ExpressionError(f"Access to '{node.id}' is not allowed")
        if node.id in self.context:
            return self.context[node.id]
        if node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        raise ExpressionError(f"Unknown name '{node.id}'")

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise ExpressionError(f"Access to '{node.attr}' is not allowed")
        value = self.eval(node.value)
        if isinstance(value, dict):
            if node.attr in value:
                return value[node.attr]
            raise ExpressionError(f"Field '{node.attr}' not found")
        raise ExpressionError(
            f"Cannot read field '{node.attr}' of {type(value).__name__}"
        )

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        value = self.eval(node.value)
        if isinstance(node.slice, ast.Slice):
            lower = self.eval(node.slice.lower) if node.slice.lower else None
            upper = self.eval(node.slice.upper) if node.slice.upper else None
            if node.slice.step is not None:
                raise ExpressionError("Slice steps are not supported")
            return value[lower:upper]
        key = self.eval(node.slice)
        try:
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Cannot index with {key!r}: {e}") from e

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left = self.eval(node.left)
        right = self.eval(node.right)
        _guard_size(node.op, left, right)
        return op(left, right)

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.eval(node.operand))

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.eval(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.eval(value)
            if result:
                return result
        return result

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            op = _COMPARE_OPS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.eval(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)

    def _eval_List(self, node: ast.List) -> list[Any]:
        return [self.eval(e) for e in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.eval(e) for e in node.elts)

    def _eval_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        result: dict[Any, Any] = {}
        for key, value in zip(node.keys, node.values, strict=True):
            if key is None:
                unpacked = self.eval(value)
                if not isinstance(unpacked, dict):
                    raise ExpressionError("Only objects can be unpacked with **")
                result.update(unpacked)
            else:
                result[self.eval(key)] = self.eval(value)
        return result

    def _eval_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            raise ExpressionError("Only built-in helper functions may be called")
        args = [self.eval(a) for a in node.args]
        kwargs = {}
        for kw in node.keywords:
            if kw.arg is None:
                raise ExpressionError("Keyword unpacking is not supported")
            kwargs[kw.arg] = self.eval(kw.value)
        return SAFE_FUNCTIONS[node.func.id](*args, **kwargs)


def _replace_aliases(source: str) -> str:
    for pattern, replacement in _JS_ALIASES:
        source = pattern.sub(replacement, source)
    return source


def _string_spans(expr: str) -> list[tuple[int, int]]:
    """Character offsets of every string literal token in expr."""
    line_starts = [0]
    for line in io.StringIO(expr).readlines():
        line_starts.append(line_starts[-1] + len(line))

    spans = []
    for tok in tokenize.generate_tokens(io.StringIO(expr).readline):
        if tok.type == tokenize.STRING:
            (start_row, start_col), (end_row, end_col) = tok.start, tok.end
            spans.append(
                (line_starts[start_row - 1] + start_col, line_starts[end_row - 1] + end_col)
            )
    return spans


def _normalise(expr: str) -> str:
    expr = expr.strip()
    try:
        spans = _string_spans(expr)
    except (tokenize.TokenError, SyntaxError):
        # Unbalanced quotes or brackets; ast.parse reports the error
        return expr

    parts = []
    cursor = 0
    for start, end in spans:
        parts.append(_replace_aliases(expr[cursor:start]))
        parts.append(expr[start:end])
        cursor = end
    parts.append(_replace_aliases(expr[cursor:]))
    return "".join(parts)


def safe_eval(expr: str, context: dict[str, Any] | None = None) -> Any:
    """
    Evaluate an expression against a context.

    Raises:
        ExpressionError: On syntax errors, disallowed constructs or any
            failure while evaluating.
    """
    if not isinstance(expr, str) or not expr.strip():
        raise ExpressionError("Expression is empty")
    if len(expr) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression is too long")

    try:
        tree = ast.parse(_normalise(expr), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}") from e

    try:
        return _Evaluator(context or {}).eval(tree)
    except ExpressionError:
        raise
    except Exception as e:
        raise ExpressionError(f"{type(e).__name__}: {e}") from e


_TEMPLATE_SLOT = re.compile(r"\{\{\s*(.+?)\s*\}\}")


def render_template(template: str, context: dict[str, Any]) -> str:
    """Render ``{{ expression }}`` placeholders in a template string."""

    def _replace(match: re.Match[str]) -> str:
        value = safe_eval(match.group(1), context)
        return "" if value is None else str(value)

    return _TEMPLATE_SLOT.sub(_replace, template)
