"""
Restricted arithmetic expressions for calculated fields.

Expressions are parsed with ``ast`` and evaluated by walking the tree; only
numbers, field names, arithmetic, comparisons, boolean operators and a few
whitelisted functions are accepted. Nothing is ever passed to ``eval``.
"""
import ast
import operator
from typing import Any, Callable, Dict, Mapping

from analytics_engine.core.exceptions import ConfigurationError, ExpressionError

MAX_EXPONENT = 64

_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

_COMPARE_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
}

_ALLOWED_NODES = (
    ast.Expression, ast.BinOp, ast.UnaryOp, ast.Compare, ast.BoolOp, ast.Call,
    ast.Name, ast.Load, ast.Constant, ast.IfExp,
    ast.And, ast.Or,
    *_BINARY_OPS, *_UNARY_OPS, *_COMPARE_OPS,
)


class CompiledExpression:
    """A validated expression ready to be evaluated against records."""

    def __init__(self, source: str, tree: ast.Expression):
        self.source = source
        self._tree = tree
        self.fields = frozenset(
            node.id for node in ast.walk(tree)
            if isinstance(node, ast.Name) and node.id not in _FUNCTIONS
        )

    def evaluate(self, record: Mapping[str, Any]) -> Any:
        try:
            return _evaluate(self._tree.body, record)
        except ExpressionError:
            raise
        except (TypeError, ValueError, ArithmeticError) as e:
            raise ExpressionError(f"Cannot evaluate '{self.source}': {e}", cause=e) from e

    def __repr__(self) -> str:
        return f"CompiledExpression({self.source!r})"


def compile_expression(source: str) -> CompiledExpression:
    """
    Parse and validate an expression.

    Raises:
        ConfigurationError: if the expression is not valid Python syntax or
            uses anything outside the allowed subset.
    """
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise ConfigurationError(f"Invalid expression '{source}': {e.msg}") from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ConfigurationError(
                f"Unsupported syntax in expression '{source}': {type(node).__name__}"
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                raise ConfigurationError(f"Unsupported function call in expression '{source}'")
            if node.keywords:
                raise ConfigurationError(f"Keyword arguments are not supported in expression '{source}'")
        if isinstance(node, ast.Constant) and not isinstance(node.value, (int, float, str, bool, type(None))):
            raise ConfigurationError(f"Unsupported literal in expression '{source}'")

    return CompiledExpression(source, tree)


def _evaluate(node: ast.AST, record: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id not in record:
            raise ExpressionError(f"Unknown field '{node.id}'", details={"field": node.id})
        return record[node.id]

    if isinstance(node, ast.BinOp):
        left = _evaluate(node.left, record)
        right = _evaluate(node.right, record)
        if left is None or right is None:
            raise ExpressionError("Arithmetic on null value")
        if isinstance(node.op, ast.Pow) and isinstance(right, (int, float)) and abs(right) > MAX_EXPONENT:
            raise ExpressionError(f"Exponent {right} exceeds limit of {MAX_EXPONENT}")
        return _BINARY_OPS[type(node.op)](left, right)

    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand, record))

    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, record)
        for op, comparator in zip(node.ops, node.comparators):
            right = _evaluate(comparator, record)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = _evaluate(value, record)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _evaluate(value, record)
            if result:
                return result
        return result

    if isinstance(node, ast.IfExp):
        if _evaluate(node.test, record):
            return _evaluate(node.body, record)
        return _evaluate(node.orelse, record)

    if isinstance(node, ast.Call):
        args = [_evaluate(arg, record) for arg in node.args]
        return _FUNCTIONS[node.func.id](*args)

    raise ExpressionError(f"Unsupported expression node: {type(node).__name__}")
