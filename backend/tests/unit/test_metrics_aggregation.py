"""
Metric aggregation tests.
"""
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from analytics_engine.core.exceptions import ConfigurationError
from analytics_engine.models.schemas.analytics import AggregationJobPayload, AnalyticsConfiguration
from analytics_engine.services.metrics_aggregation import (
    REALTIME_METRICS_SQL,
    MetricsAggregator,
    rollup_window,
)
from analytics_engine.warehouse.query_executor import QueryExecutor

from fakes import FakeWarehouse

NOW = datetime(2026, 3, 15, 10, 30, tzinfo=timezone.utc)


def realtime_responder(sql, params):
    if "DISTINCT customer_id" in sql:
        raise OperationalError(sql, params, Exception("relation does not exist"))
    return [{"value": 5}]


class TestRollupWindow:
    def test_hourly_is_naive_utc(self):
        assert rollup_window("hourly", NOW) == (datetime(2026, 3, 15, 9), datetime(2026, 3, 15, 11))

    @pytest.mark.parametrize("interval, start", [
        ("daily", date(2026, 3, 9)),
        ("weekly", date(2026, 2, 9)),
        ("monthly", date(2025, 3, 1)),
    ])
    def test_date_windows_include_today(self, interval, start):
        assert rollup_window(interval, NOW) == (start, date(2026, 3, 16))

    def test_unknown_interval(self):
        with pytest.raises(ConfigurationError):
            rollup_window("yearly", NOW)


class TestRealtimeMetrics:
    @pytest.mark.asyncio
    async def test_failing_metric_reports_zero(self, fake_cache):
        warehouse = FakeWarehouse(responder=realtime_responder)
        aggregator = MetricsAggregator(QueryExecutor(warehouse, cache=fake_cache), cache=fake_cache)

        snapshot = await aggregator.compute_realtime_metrics("acme", now=NOW)

        assert set(snapshot["metrics"]) == set(REALTIME_METRICS_SQL)
        assert snapshot["metrics"]["daily_revenue"] == 5
        assert snapshot["metrics"]["active_customers_today"] == 0
        assert list(snapshot["errors"]) == ["active_customers_today"]
        assert await fake_cache.get("realtime-metrics:acme:snapshot") == snapshot
        assert fake_cache.ttls["realtime-metrics:acme:snapshot"] == 300

    @pytest.mark.asyncio
    async def test_only_needed_params_are_bound(self):
        warehouse = FakeWarehouse(rows=[{"value": 1}])
        aggregator = MetricsAggregator(QueryExecutor(warehouse))

        await aggregator.compute_realtime_metrics("acme", ["daily_revenue", "low_stock_items"], now=NOW)

        assert [call[2] for call in warehouse.calls] == [{"today": date(2026, 3, 15)}, {"threshold": 10}]
        assert all(call[0] == "analytics_acme" for call in warehouse.calls)


class TestRollup:
    @pytest.mark.asyncio
    async def test_series_are_published(self, fake_cache):
        warehouse = FakeWarehouse(rows=[
            {"period": date(2026, 3, 14), "revenue": Decimal("10.50"), "transaction_count": 2, "customer_count": 1},
            {"period": date(2026, 3, 15), "revenue": Decimal("4.00"), "transaction_count": 1, "customer_count": 1},
        ])
        aggregator = MetricsAggregator(QueryExecutor(warehouse), cache=fake_cache)

        series = await aggregator.compute_rollup("acme", "daily", now=NOW)

        assert series["revenue"] == [
            {"period": "2026-03-14", "value": 10.5},
            {"period": "2026-03-15", "value": 4.0},
        ]
        assert [p["value"] for p in series["transaction_count"]] == [2, 1]
        published = await fake_cache.get("metric-aggregations:acme:customer_count.daily")
        assert published["interval"] == "daily"
        assert published["points"] == series["customer_count"]

        _, sql, params, _ = warehouse.calls[0]
        assert "GROUP BY 1" in sql
        assert params == {"start": date(2026, 3, 9), "end": date(2026, 3, 16)}

    @pytest.mark.asyncio
    async def test_hourly_buckets_on_timestamp(self):
        warehouse = FakeWarehouse()
        await MetricsAggregator(QueryExecutor(warehouse)).compute_rollup("acme", "hourly", now=NOW)

        sql = warehouse.calls[0][1]
        assert "date_trunc('hour'" in sql
        assert "COALESCE(transaction_time, TIME '00:00')" in sql

    @pytest.mark.asyncio
    async def test_unknown_interval(self):
        warehouse = FakeWarehouse()
        with pytest.raises(ConfigurationError):
            await MetricsAggregator(QueryExecutor(warehouse)).compute_rollup("acme", "realtime")
        assert warehouse.calls == []


class TestRun:
    @pytest.mark.asyncio
    async def test_realtime_uses_tenant_configuration(self):
        warehouse = FakeWarehouse(rows=[{"value": 3}])
        aggregator = MetricsAggregator(QueryExecutor(warehouse))
        aggregator.set_configuration(AnalyticsConfiguration(tenant_id="acme", enabled_metrics=["daily_transactions"]))

        snapshot = await aggregator.run(AggregationJobPayload(tenant_id="acme", interval="realtime"))

        assert snapshot["metrics"] == {"daily_transactions": 3}

        aggregator.remove_configuration("acme")
        snapshot = await aggregator.run(AggregationJobPayload(tenant_id="acme", interval="realtime"))
        assert set(snapshot["metrics"]) == set(REALTIME_METRICS_SQL)

    @pytest.mark.asyncio
    async def test_rollup_interval(self):
        warehouse = FakeWarehouse()
        series = await MetricsAggregator(QueryExecutor(warehouse)).run(
            AggregationJobPayload(tenant_id="acme", interval="monthly")
        )
        assert series == {"revenue": [], "transaction_count": [], "customer_count": []}
