"""
Calculated-field expression tests.
"""
import pytest

from analytics_engine.core.exceptions import ConfigurationError, ExpressionError
from analytics_engine.pipelines.expressions import compile_expression


class TestCompileExpression:
    """Only the arithmetic subset compiles."""

    @pytest.mark.parametrize("source", [
        "price * quantity",
        "round(total / count, 2)",
        "a if a > b else b",
        "not flag and (x >= 1 or y < 2)",
        "-amount + abs(delta)",
    ])
    def test_accepts_arithmetic(self, source):
        assert compile_expression(source).source == source

    @pytest.mark.parametrize("source", [
        "__import__('os').system('ls')",
        "record.price",
        "items[0]",
        "[x for x in y]",
        "lambda: 1",
        "open('f')",
        "round(x, ndigits=2)",
    ])
    def test_rejects_everything_else(self, source):
        with pytest.raises(ConfigurationError):
            compile_expression(source)

    def test_syntax_error_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            compile_expression("price *")

    def test_collects_referenced_fields(self):
        expr = compile_expression("round(price * quantity, 2) + tax")
        assert expr.fields == {"price", "quantity", "tax"}


class TestEvaluate:
    def test_arithmetic_and_functions(self):
        expr = compile_expression("round(price * quantity, 2)")
        assert expr.evaluate({"price": 2.555, "quantity": 2}) == 5.11

    def test_conditional(self):
        expr = compile_expression("total / orders if orders > 0 else 0")
        assert expr.evaluate({"total": 100, "orders": 4}) == 25
        assert expr.evaluate({"total": 100, "orders": 0}) == 0

    def test_chained_comparison(self):
        expr = compile_expression("0 < x <= 10")
        assert expr.evaluate({"x": 5}) is True
        assert expr.evaluate({"x": 11}) is False

    def test_unknown_field(self):
        with pytest.raises(ExpressionError, match="Unknown field 'missing'"):
            compile_expression("missing + 1").evaluate({})

    def test_null_arithmetic(self):
        with pytest.raises(ExpressionError):
            compile_expression("a + 1").evaluate({"a": None})

    def test_division_by_zero(self):
        with pytest.raises(ExpressionError):
            compile_expression("a / b").evaluate({"a": 1, "b": 0})

    def test_exponent_limit(self):
        with pytest.raises(ExpressionError, match="Exponent"):
            compile_expression("a ** 1000").evaluate({"a": 2})

    def test_type_error_becomes_expression_error(self):
        with pytest.raises(ExpressionError):
            compile_expression("a * b").evaluate({"a": "x", "b": "y"})
