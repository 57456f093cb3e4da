"""
Cached, time-bounded analytics query execution against tenant schemas.
"""
import asyncio
import hashlib
import json
import re
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import date, datetime, time as dt_time, timedelta, timezone
from decimal import Decimal
from typing import Any, Deque, Dict, List, Mapping, Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from analytics_engine.cache.keys import ANALYTICS_QUERY, build_cache_key
from analytics_engine.cache.redis_client import RedisClient
from analytics_engine.core import metrics
from analytics_engine.core.config import settings
from analytics_engine.core.exceptions import (
    CacheError,
    ConfigurationError,
    QueryExecutionError,
    QueryTimeout,
)
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.warehouse import (
    QueryExecution,
    QueryMetadata,
    QueryOptions,
    QueryPerformanceStats,
    QueryStatistics,
)
from analytics_engine.warehouse.partitions import quote_ident, tenant_schema_name

logger = get_logger(__name__)

Row = Dict[str, Any]

_WHITESPACE = re.compile(r"\s+")


def normalize_sql(sql: str) -> str:
    """Collapse whitespace and drop a trailing semicolon."""
    return _WHITESPACE.sub(" ", sql).strip().rstrip(";").strip()


def generate_query_id(sql: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Stable id for normalized SQL text plus bound parameters."""
    canonical_params = json.dumps(params or {}, sort_keys=True, default=str)
    digest = hashlib.md5(f"{normalize_sql(sql)}|{canonical_params}".encode()).hexdigest()
    return digest[:16]


def to_jsonable(value: Any) -> Any:
    """Convert driver values to the JSON shapes stored in the cache."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


class WarehouseConnection(ABC):
    """Executes SQL inside one tenant schema."""

    @abstractmethod
    async def fetch(self, schema_name: str, sql: str, params: Mapping[str, Any], timeout: float) -> List[Row]:
        """Run ``sql`` with ``params`` and return all rows as dicts."""


class SQLAlchemyWarehouse(WarehouseConnection):
    """Warehouse connection backed by an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def fetch(self, schema_name: str, sql: str, params: Mapping[str, Any], timeout: float) -> List[Row]:
        # statement_timeout backs up the client-side race so the server stops working too
        async with self.engine.connect() as conn:
            async with conn.begin():
                await conn.execute(text(f"SET LOCAL search_path TO {quote_ident(schema_name)}, public"))
                await conn.execute(text(f"SET LOCAL statement_timeout = {max(int(timeout * 1000), 1)}"))
                result = await conn.execute(text(sql), dict(params))
                return [dict(row) for row in result.mappings().all()]


class QueryPerformanceLog:
    """Bounded in-memory log of query executions."""

    def __init__(self, max_entries: Optional[int] = None):
        self._entries: Deque[QueryPerformanceStats] = deque(maxlen=max_entries or settings.QUERY_LOG_SIZE)

    def record(self, entry: QueryPerformanceStats) -> None:
        self._entries.append(entry)

    def entries(self, tenant_id: Optional[str] = None) -> List[QueryPerformanceStats]:
        return [entry for entry in self._entries if tenant_id is None or entry.tenant_id == tenant_id]

    def statistics(self, tenant_id: Optional[str] = None, now: Optional[datetime] = None) -> QueryStatistics:
        entries = self.entries(tenant_id)
        if not entries:
            return QueryStatistics(
                total_queries=0, average_execution_time_ms=0.0, cache_hit_rate=0.0, queries_last_hour=0
            )

        hour_ago = (now or datetime.now(timezone.utc)) - timedelta(hours=1)
        return QueryStatistics(
            total_queries=len(entries),
            average_execution_time_ms=sum(e.execution_time_ms for e in entries) / len(entries),
            cache_hit_rate=sum(1 for e in entries if e.cache_hit) / len(entries),
            queries_last_hour=sum(1 for e in entries if e.timestamp >= hour_ago),
        )


class QueryExecutor:
    """
    Runs parameterized SQL against a tenant schema.

    Lookup order is cache first, then the warehouse with a wall-clock
    timeout. Non-empty results are cached under
    ``analytics-query:{tenant_id}:{query_id}``. The cache is optional: when
    it fails, queries run uncached.
    """

    def __init__(
        self,
        warehouse: WarehouseConnection,
        cache: Optional[RedisClient] = None,
        default_timeout: Optional[float] = None,
        default_cache_ttl: Optional[int] = None,
        performance_log: Optional[QueryPerformanceLog] = None,
    ):
        self.warehouse = warehouse
        self.cache = cache
        self.default_timeout = default_timeout or settings.QUERY_TIMEOUT_SECONDS
        self.default_cache_ttl = default_cache_ttl or settings.QUERY_CACHE_TTL
        self.performance_log = performance_log or QueryPerformanceLog()

    async def execute(
        self,
        tenant_id: str,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        options: Optional[QueryOptions] = None,
    ) -> QueryExecution:
        """
        Execute a query for a tenant.

        Args:
            tenant_id: Tenant identifier
            sql: SQL text with ``:name`` bind parameters
            params: Bind parameter values
            options: Cache and timeout options

        Returns:
            QueryExecution with rows and metadata

        Raises:
            ConfigurationError: on empty SQL or non-mapping params
            QueryTimeout: if the query outlives its timeout
            QueryExecutionError: if the warehouse rejects the query
        """
        if not sql or not sql.strip():
            raise ConfigurationError("Query text must not be empty")
        if params is not None and not isinstance(params, Mapping):
            raise ConfigurationError("Query parameters must be a mapping of bind names to values")

        options = options or QueryOptions()
        params = dict(params or {})
        schema_name = tenant_schema_name(tenant_id)
        query_id = generate_query_id(sql, params)
        cache_key = build_cache_key(ANALYTICS_QUERY, tenant_id, query_id)
        use_cache = options.use_cache and self.cache is not None
        started = time.perf_counter()

        if use_cache:
            cached = await self._cache_get(cache_key)
            if isinstance(cached, list):
                return self._finish(tenant_id, query_id, cached, started, from_cache=True)

        timeout = options.timeout or self.default_timeout
        try:
            rows = await asyncio.wait_for(
                self.warehouse.fetch(schema_name, sql, params, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            self._log_performance(tenant_id, query_id, started)
            metrics.warehouse_query_timeouts_total.inc()
            logger.warning(f"Query {query_id} for tenant {tenant_id} timed out after {timeout}s")
            raise QueryTimeout(
                f"Query {query_id} exceeded timeout of {timeout}s", timeout=timeout, query_id=query_id
            ) from e
        except SQLAlchemyError as e:
            self._log_performance(tenant_id, query_id, started)
            if _is_statement_timeout(e):
                metrics.warehouse_query_timeouts_total.inc()
                raise QueryTimeout(
                    f"Query {query_id} was cancelled by statement_timeout", timeout=timeout, query_id=query_id
                ) from e
            logger.error(f"Query {query_id} for tenant {tenant_id} failed: {e}")
            raise QueryExecutionError(
                f"Query {query_id} failed: {e}", details={"query_id": query_id}, cause=e
            ) from e

        rows = to_jsonable(rows)
        if use_cache and rows:
            await self._cache_set(cache_key, rows, options.cache_ttl or self.default_cache_ttl)

        return self._finish(tenant_id, query_id, rows, started, from_cache=False)

    def get_statistics(self, tenant_id: Optional[str] = None) -> QueryStatistics:
        """Average execution time, cache hit rate and queries in the last hour."""
        return self.performance_log.statistics(tenant_id)

    async def _cache_get(self, key: str) -> Optional[List[Row]]:
        try:
            return await self.cache.get(key)
        except CacheError as e:
            metrics.cache_errors_total.labels(operation="get").inc()
            logger.warning(f"Cache read failed, executing without cache: {e.message}")
            return None

    async def _cache_set(self, key: str, rows: List[Row], ttl: int) -> None:
        try:
            await self.cache.set(key, rows, ttl=ttl)
        except CacheError as e:
            metrics.cache_errors_total.labels(operation="set").inc()
            logger.warning(f"Cache write failed, result not cached: {e.message}")

    def _finish(
        self,
        tenant_id: str,
        query_id: str,
        rows: List[Row],
        started: float,
        from_cache: bool,
    ) -> QueryExecution:
        execution_time_ms = self._log_performance(
            tenant_id,
            query_id,
            started,
            rows_returned=len(rows),
            bytes_processed=len(json.dumps(rows, default=str)),
            cache_hit=from_cache,
        )
        metrics.warehouse_queries_total.labels(cache_hit=str(from_cache).lower()).inc()
        metrics.warehouse_query_duration_seconds.observe(execution_time_ms / 1000)
        logger.debug(
            f"Query {query_id} for tenant {tenant_id}: {len(rows)} rows in {execution_time_ms:.1f}ms"
            f"{' (cached)' if from_cache else ''}"
        )
        return QueryExecution(
            rows=rows,
            metadata=QueryMetadata(
                query_id=query_id,
                execution_time_ms=execution_time_ms,
                row_count=len(rows),
                from_cache=from_cache,
            ),
        )

    def _log_performance(
        self,
        tenant_id: str,
        query_id: str,
        started: float,
        rows_returned: int = 0,
        bytes_processed: int = 0,
        cache_hit: bool = False,
    ) -> float:
        """Record one execution, failed ones included, and return its duration in ms."""
        execution_time_ms = (time.perf_counter() - started) * 1000
        self.performance_log.record(QueryPerformanceStats(
            query_id=query_id,
            tenant_id=tenant_id,
            execution_time_ms=execution_time_ms,
            rows_returned=rows_returned,
            bytes_processed=bytes_processed,
            cache_hit=cache_hit,
            timestamp=datetime.now(timezone.utc),
        ))
        return execution_time_ms


def _is_statement_timeout(error: SQLAlchemyError) -> bool:
    return "statement timeout" in str(error).lower()
