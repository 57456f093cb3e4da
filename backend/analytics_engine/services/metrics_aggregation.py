"""
Metric aggregation jobs: real-time snapshots and periodic rollups.

All SQL runs through the query executor, so results share its cache,
timeout and performance log. Snapshots and rollups are published under the
``realtime-metrics`` and ``metric-aggregations`` cache namespaces read by
dashboards.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from analytics_engine.cache.keys import METRIC_AGGREGATIONS, REALTIME_METRICS, build_cache_key
from analytics_engine.cache.redis_client import RedisClient
from analytics_engine.core.exceptions import AnalyticsEngineError, CacheError, ConfigurationError
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.analytics import AggregationJobPayload, AnalyticsConfiguration
from analytics_engine.models.schemas.warehouse import QueryOptions
from analytics_engine.warehouse.partitions import add_months
from analytics_engine.warehouse.query_executor import QueryExecutor

logger = get_logger(__name__)

REALTIME_CACHE_TTL = 300
ROLLUP_CACHE_TTL = 1800
LOW_STOCK_THRESHOLD = 10

REALTIME_METRICS_SQL: Dict[str, str] = {
    "daily_revenue": (
        "SELECT COALESCE(SUM(total_amount), 0) AS value FROM fact_transactions WHERE transaction_date = :today"
    ),
    "daily_transactions": (
        "SELECT COUNT(*) AS value FROM fact_transactions WHERE transaction_date = :today"
    ),
    "average_order_value": (
        "SELECT COALESCE(AVG(total_amount), 0) AS value FROM fact_transactions WHERE transaction_date = :today"
    ),
    "active_customers_today": (
        "SELECT COUNT(DISTINCT customer_id) AS value FROM fact_transactions WHERE transaction_date = :today"
    ),
    "low_stock_items": (
        "SELECT COUNT(*) AS value FROM fact_inventory "
        "WHERE snapshot_date = (SELECT MAX(snapshot_date) FROM fact_inventory) "
        "AND ending_quantity <= :threshold"
    ),
}

ROLLUP_METRICS = ("revenue", "transaction_count", "customer_count")

_HOURLY_TIMESTAMP = "(transaction_date + COALESCE(transaction_time, TIME '00:00'))"

_ROLLUP_SQL = """
SELECT
    {bucket} AS period,
    COALESCE(SUM(total_amount), 0) AS revenue,
    COUNT(*) AS transaction_count,
    COUNT(DISTINCT customer_id) AS customer_count
FROM fact_transactions
WHERE {column} >= :start AND {column} < :end
GROUP BY 1
ORDER BY 1
"""

ROLLUP_BUCKETS: Dict[str, str] = {
    "hourly": f"date_trunc('hour', {_HOURLY_TIMESTAMP})",
    "daily": "transaction_date",
    "weekly": "date_trunc('week', transaction_date)::date",
    "monthly": "date_trunc('month', transaction_date)::date",
}


def rollup_window(interval: str, now: datetime):
    """
    ``(start, end)`` bind values for a rollup interval.

    Hourly windows are naive UTC timestamps covering the current and previous
    hour; the others are date ranges ending tomorrow so today is included.
    """
    if interval == "hourly":
        end = now.astimezone(timezone.utc).replace(tzinfo=None, minute=0, second=0, microsecond=0) + timedelta(hours=1)
        return end - timedelta(hours=2), end
    today = now.astimezone(timezone.utc).date()
    end = today + timedelta(days=1)
    if interval == "daily":
        return today - timedelta(days=6), end
    if interval == "weekly":
        monday = today - timedelta(days=today.weekday())
        return monday - timedelta(weeks=4), end
    if interval == "monthly":
        return add_months(today.replace(day=1), -12), end
    raise ConfigurationError(f"Unknown aggregation interval: {interval}")


class MetricsAggregator:
    """Computes tenant metrics for aggregation jobs."""

    def __init__(self, query_executor: QueryExecutor, cache: Optional[RedisClient] = None):
        self.query_executor = query_executor
        self.cache = cache
        self._configurations: Dict[str, AnalyticsConfiguration] = {}

    def set_configuration(self, config: AnalyticsConfiguration) -> None:
        self._configurations[config.tenant_id] = config

    def remove_configuration(self, tenant_id: str) -> None:
        self._configurations.pop(tenant_id, None)

    async def run(self, payload: AggregationJobPayload) -> Dict[str, Any]:
        """Entry point for the worker pool."""
        if payload.interval == "realtime":
            config = self._configurations.get(payload.tenant_id)
            enabled = config.enabled_metrics if config else None
            return await self.compute_realtime_metrics(payload.tenant_id, enabled)
        return await self.compute_rollup(payload.tenant_id, payload.interval)

    async def compute_realtime_metrics(
        self,
        tenant_id: str,
        enabled_metrics: Optional[List[str]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Compute the real-time metric snapshot for a tenant.

        A metric whose query fails reports 0 and its error; the others are
        unaffected.
        """
        now = now or datetime.now(timezone.utc)
        names = [name for name in REALTIME_METRICS_SQL if not enabled_metrics or name in enabled_metrics]
        params = {"today": now.date(), "threshold": LOW_STOCK_THRESHOLD}
        options = QueryOptions(cache_ttl=REALTIME_CACHE_TTL)

        values: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        for name in names:
            sql = REALTIME_METRICS_SQL[name]
            bound = {key: value for key, value in params.items() if f":{key}" in sql}
            try:
                execution = await self.query_executor.execute(tenant_id, sql, bound, options)
                values[name] = execution.rows[0]["value"] if execution.rows else 0
            except AnalyticsEngineError as e:
                logger.warning(f"Metric {name} failed for tenant {tenant_id}: {e.message}")
                values[name] = 0
                errors[name] = e.message

        snapshot = {
            "tenant_id": tenant_id,
            "computed_at": now.isoformat(),
            "metrics": values,
            "errors": errors,
        }
        await self._publish(build_cache_key(REALTIME_METRICS, tenant_id, "snapshot"), snapshot, REALTIME_CACHE_TTL)
        return snapshot

    async def compute_rollup(
        self,
        tenant_id: str,
        interval: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Compute per-period revenue, transaction and customer counts.

        Returns:
            ``{metric: [{"period": ..., "value": ...}, ...]}``
        """
        if interval not in ROLLUP_BUCKETS:
            raise ConfigurationError(f"Unknown aggregation interval: {interval}")

        now = now or datetime.now(timezone.utc)
        start, end = rollup_window(interval, now)
        column = _HOURLY_TIMESTAMP if interval == "hourly" else "transaction_date"
        sql = _ROLLUP_SQL.format(bucket=ROLLUP_BUCKETS[interval], column=column)
        execution = await self.query_executor.execute(
            tenant_id, sql, {"start": start, "end": end}, QueryOptions(cache_ttl=ROLLUP_CACHE_TTL)
        )

        series = {
            metric: [{"period": row["period"], "value": row[metric]} for row in execution.rows]
            for metric in ROLLUP_METRICS
        }
        for metric, points in series.items():
            key = build_cache_key(METRIC_AGGREGATIONS, tenant_id, f"{metric}.{interval}")
            await self._publish(key, {"interval": interval, "computed_at": now.isoformat(), "points": points},
                                ROLLUP_CACHE_TTL)

        logger.info(f"Computed {interval} rollup for tenant {tenant_id}: {len(execution.rows)} periods")
        return series

    async def _publish(self, key: str, value: Any, ttl: int) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(key, value, ttl=ttl)
        except CacheError as e:
            logger.warning(f"Could not publish {key}: {e.message}")
