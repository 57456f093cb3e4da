"""
Transformation engine tests.
"""
import random
from decimal import Decimal

import pytest

from analytics_engine.core.exceptions import ConfigurationError, ExtractError
from analytics_engine.pipelines.transformations import LookupSource, TransformationEngine, parse_steps


class DictLookupSource(LookupSource):
    def __init__(self, tables, fail=False):
        self.tables = tables
        self.fail = fail
        self.calls = []

    async def lookup(self, tenant_id, table, key_column, keys, fields):
        self.calls.append((tenant_id, table, key_column, sorted(keys, key=str)))
        if self.fail:
            raise OSError("connection refused")
        rows = self.tables[table]
        wanted = {str(key) for key in keys}
        return {row[key_column]: row for row in rows if str(row[key_column]) in wanted}


def aggregate_step(group_by, measures, order=1):
    return {"type": "aggregate", "id": "agg", "order": order, "group_by": group_by, "measures": measures}


@pytest.fixture
def engine():
    return TransformationEngine()


class TestParseSteps:
    def test_orders_by_order_then_id(self):
        steps = parse_steps([
            {"type": "map", "id": "b", "order": 2, "calculations": [{"field": "x", "expression": "1"}]},
            {"type": "filter", "id": "a", "order": 1, "conditions": [{"field": "x", "op": "not_null"}]},
        ])
        assert [step.id for step in steps] == ["a", "b"]

    def test_duplicate_order_rejected(self):
        with pytest.raises(ConfigurationError, match="unique"):
            parse_steps([
                {"type": "filter", "id": "a", "order": 1, "conditions": [{"field": "x", "op": "not_null"}]},
                {"type": "filter", "id": "b", "order": 1, "conditions": [{"field": "y", "op": "not_null"}]},
            ])

    def test_unknown_step_type_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_steps([{"type": "pivot", "id": "a", "order": 1}])

    def test_unknown_step_field_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_steps([{"type": "filter", "id": "a", "order": 1, "conditions": [], "extra": True}])

    def test_bad_expression_rejected_at_parse_time(self):
        with pytest.raises(ConfigurationError):
            parse_steps([{"type": "map", "id": "m", "order": 1,
                          "calculations": [{"field": "x", "expression": "os.system('x')"}]}])


class TestAggregate:
    @pytest.mark.asyncio
    async def test_group_by_date_sums_amount(self, engine):
        records = [
            {"date": "2024-01-01", "amt": 10},
            {"date": "2024-01-01", "amt": 5},
            {"date": "2024-01-02", "amt": 7},
        ]
        result = await engine.apply(records, [aggregate_step(["date"], [{"field": "amt", "operation": "sum"}])])

        assert result.records == [{"date": "2024-01-01", "amt": 15}, {"date": "2024-01-02", "amt": 7}]
        assert result.records_failed == 0

    @pytest.mark.asyncio
    async def test_sum_is_conserved_across_groups(self, engine):
        rng = random.Random(42)
        records = [
            {"region": rng.choice(["n", "s", "e", "w", None]), "amt": rng.randint(-50, 500)}
            for _ in range(500)
        ]
        grouped = await engine.apply(records, [aggregate_step(["region"], [{"field": "amt", "operation": "sum"}])])
        total = await engine.apply(records, [aggregate_step([], [{"field": "amt", "operation": "sum"}])])

        assert sum(row["amt"] for row in grouped.records) == total.records[0]["amt"] == sum(r["amt"] for r in records)

    @pytest.mark.asyncio
    async def test_all_measure_operations(self, engine):
        records = [
            {"sku": "a", "qty": 2, "price": 5.0},
            {"sku": "a", "qty": 4, "price": 3.0},
            {"sku": "a", "qty": None, "price": 4.0},
        ]
        measures = [
            {"field": "qty", "operation": "sum", "alias": "qty_sum"},
            {"field": "qty", "operation": "avg", "alias": "qty_avg"},
            {"field": "qty", "operation": "count", "alias": "qty_count"},
            {"field": "price", "operation": "min", "alias": "price_min"},
            {"field": "price", "operation": "max", "alias": "price_max"},
            {"field": "price", "operation": "last", "alias": "price_last"},
        ]
        result = await engine.apply(records, [aggregate_step(["sku"], measures)])

        assert result.records == [{
            "sku": "a",
            "qty_sum": 6,
            "qty_avg": 3,
            "qty_count": 2,
            "price_min": 3.0,
            "price_max": 5.0,
            "price_last": 4.0,
        }]

    @pytest.mark.asyncio
    async def test_avg_of_no_values_is_none(self, engine):
        result = await engine.apply([{"k": 1, "v": None}], [aggregate_step(["k"], [{"field": "v", "operation": "avg"}])])
        assert result.records == [{"k": 1, "v": None}]

    @pytest.mark.asyncio
    async def test_missing_group_field_becomes_empty_string(self, engine):
        result = await engine.apply(
            [{"amt": 1}, {"region": None, "amt": 2}],
            [aggregate_step(["region"], [{"field": "amt", "operation": "sum"}])],
        )
        assert result.records == [{"region": "", "amt": 3}]

    @pytest.mark.asyncio
    async def test_non_numeric_sum_fails_the_record_only(self, engine):
        result = await engine.apply(
            [{"k": 1, "v": 2}, {"k": 1, "v": "oops"}, {"k": 1, "v": 3}],
            [aggregate_step(["k"], [{"field": "v", "operation": "sum"}, {"field": "v", "operation": "count", "alias": "n"}])],
        )
        assert result.records == [{"k": 1, "v": 5, "n": 2}]
        assert result.records_failed == 1
        assert result.errors == ["[agg] record 1: Non-numeric value 'oops' for sum"]


class TestValidate:
    STEP = {"type": "validate", "id": "v", "order": 1, "rules": [{"field": "amt", "type": "number", "min": 0}]}

    @pytest.mark.asyncio
    async def test_drops_invalid_records(self, engine):
        result = await engine.apply([{"amt": 5}, {"amt": -1}, {"amt": "x"}], [self.STEP])

        assert result.records == [{"amt": 5}]
        assert result.records_failed == 2
        assert len(result.errors) == 2

    @pytest.mark.asyncio
    async def test_idempotent(self, engine):
        records = [{"amt": v} for v in (5, -1, "x", 0, None, 3.5, True)]
        once = await engine.apply(records, [self.STEP])
        twice = await engine.apply(once.records, [self.STEP])

        assert twice.records == once.records
        assert twice.records_failed == 0

    @pytest.mark.asyncio
    async def test_required_and_types(self, engine):
        step = {"type": "validate", "id": "v", "order": 1, "rules": [
            {"field": "id", "required": True, "type": "uuid"},
            {"field": "day", "type": "date"},
            {"field": "qty", "type": "integer", "max": 10},
        ]}
        records = [
            {"id": "6f1c2b2a-5d0e-4a53-9b1e-2f4c1a7d9e01", "day": "2024-02-01", "qty": 3},
            {"id": "", "day": "2024-02-01", "qty": 3},
            {"id": "not-a-uuid", "qty": 3},
            {"id": "6f1c2b2a-5d0e-4a53-9b1e-2f4c1a7d9e01", "day": "yesterday"},
            {"id": "6f1c2b2a-5d0e-4a53-9b1e-2f4c1a7d9e01", "qty": 11},
            {"id": "6f1c2b2a-5d0e-4a53-9b1e-2f4c1a7d9e01", "qty": True},
        ]
        result = await engine.apply(records, [step])

        assert result.records == [records[0]]
        assert result.records_failed == 5


class TestFilterAndMap:
    @pytest.mark.asyncio
    async def test_filter_any(self, engine):
        step = {"type": "filter", "id": "f", "order": 1, "match": "any", "conditions": [
            {"field": "status", "op": "in", "value": ["paid", "refunded"]},
            {"field": "amount", "op": "gt", "value": 100},
        ]}
        records = [
            {"status": "paid", "amount": 1},
            {"status": "open", "amount": 150},
            {"status": "open", "amount": 5},
            {"status": "open", "amount": None},
        ]
        result = await engine.apply(records, [step])
        assert result.records == records[:2]

    @pytest.mark.asyncio
    async def test_incomparable_filter_value_fails_record(self, engine):
        step = {"type": "filter", "id": "f", "order": 1, "conditions": [{"field": "amount", "op": "gte", "value": 10}]}
        result = await engine.apply([{"amount": "lots"}, {"amount": 12}], [step])

        assert result.records == [{"amount": 12}]
        assert result.records_failed == 1

    @pytest.mark.asyncio
    async def test_map_sees_earlier_calculations_and_keeps_input(self, engine):
        step = {"type": "map", "id": "m", "order": 1, "calculations": [
            {"field": "subtotal", "expression": "price * qty"},
            {"field": "total", "expression": "subtotal + tax"},
        ]}
        records = [{"price": 2, "qty": 3, "tax": 1}]
        result = await engine.apply(records, [step])

        assert result.records == [{"price": 2, "qty": 3, "tax": 1, "subtotal": 6, "total": 7}]
        assert records == [{"price": 2, "qty": 3, "tax": 1}]

    @pytest.mark.asyncio
    async def test_map_failure_drops_record(self, engine):
        step = {"type": "map", "id": "m", "order": 1, "calculations": [{"field": "ratio", "expression": "a / b"}]}
        result = await engine.apply([{"a": 1, "b": 0}, {"a": 4, "b": 2}], [step])

        assert result.records == [{"a": 4, "b": 2, "ratio": 2}]
        assert result.records_failed == 1
        assert result.errors[0].startswith("[m] record 0:")

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, engine):
        steps = [
            aggregate_step(["k"], [{"field": "v", "operation": "sum"}], order=2),
            {"type": "filter", "id": "f", "order": 1, "conditions": [{"field": "v", "op": "gt", "value": 1}]},
        ]
        result = await engine.apply([{"k": 1, "v": 1}, {"k": 1, "v": 2}, {"k": 1, "v": 3}], steps)
        assert result.records == [{"k": 1, "v": 5}]

    @pytest.mark.asyncio
    async def test_error_messages_are_capped(self):
        engine = TransformationEngine(max_errors=3)
        step = {"type": "validate", "id": "v", "order": 1, "rules": [{"field": "x", "required": True}]}
        result = await engine.apply([{}] * 10, [step])

        assert result.records_failed == 10
        assert len(result.errors) == 3


class TestDecimalValues:
    """Numeric columns arrive from the driver as Decimal."""

    @pytest.mark.asyncio
    async def test_invalid_decimal_operation_fails_record_only(self, engine):
        step = {"type": "map", "id": "m", "order": 1, "calculations": [{"field": "r", "expression": "a % b"}]}
        result = await engine.apply([{"a": Decimal(5), "b": Decimal(0)}, {"a": 4, "b": 3}], [step])

        assert result.records == [{"a": 4, "b": 3, "r": 1}]
        assert result.records_failed == 1

    @pytest.mark.asyncio
    async def test_nan_filter_comparison_fails_record_only(self, engine):
        step = {"type": "filter", "id": "f", "order": 1, "conditions": [{"field": "a", "op": "gt", "value": 1}]}
        result = await engine.apply([{"a": Decimal("NaN")}, {"a": Decimal(4)}], [step])

        assert result.records == [{"a": Decimal(4)}]
        assert result.records_failed == 1

    @pytest.mark.asyncio
    async def test_nan_in_min_measure_fails_record_only(self, engine):
        step = aggregate_step(["g"], [{"field": "v", "operation": "min"}])
        records = [{"g": "x", "v": Decimal(2)}, {"g": "x", "v": Decimal("NaN")}, {"g": "x", "v": Decimal(1)}]

        result = await engine.apply(records, [step])

        assert result.records == [{"g": "x", "v": Decimal(1)}]
        assert result.records_failed == 1

    @pytest.mark.asyncio
    async def test_nan_range_check_fails_record_only(self, engine):
        step = {"type": "validate", "id": "v", "order": 1, "rules": [{"field": "amt", "min": 0}]}
        result = await engine.apply([{"amt": Decimal("NaN")}, {"amt": Decimal("2.5")}], [step])

        assert result.records == [{"amt": Decimal("2.5")}]
        assert result.records_failed == 1


class TestEnrich:
    STEP = {"type": "enrich", "id": "e", "order": 1, "joins": [
        {"table": "products", "on": "product_id", "foreign_key": "id", "fields": ["unit_cost", "category"]},
    ]}

    @pytest.mark.asyncio
    async def test_copies_fields_from_matching_rows(self):
        source = DictLookupSource({"products": [
            {"id": 1, "unit_cost": 2.5, "category": "tools"},
            {"id": 2, "unit_cost": 4.0, "category": "toys"},
        ]})
        engine = TransformationEngine(lookup_source=source)
        records = [{"product_id": 1}, {"product_id": "2"}, {"product_id": 3}, {"product_id": None}]

        result = await engine.apply(records, [self.STEP], tenant_id="acme")

        assert result.records == [
            {"product_id": 1, "unit_cost": 2.5, "category": "tools"},
            {"product_id": "2", "unit_cost": 4.0, "category": "toys"},
            {"product_id": 3},
            {"product_id": None},
        ]
        assert source.calls == [("acme", "products", "id", [1, "2", 3])]

    @pytest.mark.asyncio
    async def test_requires_lookup_source(self, engine):
        with pytest.raises(ConfigurationError):
            await engine.apply([{"product_id": 1}], [self.STEP])

    @pytest.mark.asyncio
    async def test_lookup_failure_aborts(self):
        engine = TransformationEngine(lookup_source=DictLookupSource({}, fail=True))
        with pytest.raises(ExtractError):
            await engine.apply([{"product_id": 1}], [self.STEP], tenant_id="acme")
