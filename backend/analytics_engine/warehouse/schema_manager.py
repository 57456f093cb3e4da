"""
Tenant warehouse schema management: creation, partitions and maintenance.
"""
from datetime import date, datetime, timezone
from typing import List, Optional, Union

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from analytics_engine.core.config import settings
from analytics_engine.core.exceptions import ConfigurationError
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.warehouse import (
    HashPartitionStrategy,
    OptimizationReport,
    QueryStatistics,
    RangePartitionStrategy,
    WarehouseStatistics,
)
from analytics_engine.warehouse.partitions import (
    hash_partition_ddl,
    plan_hash_partitions,
    plan_range_partitions,
    qualified_name,
    quote_ident,
    range_partition_ddl,
    retention_strategy,
    tenant_schema_name,
)
from analytics_engine.warehouse.tables import (
    DEFAULT_HASH_PARTITIONS,
    MATERIALIZED_VIEWS,
    PARTITIONED_TABLES,
    build_tenant_metadata,
    declared_indexes,
)

logger = get_logger(__name__)

_POPULATE_DIM_DATE = """
INSERT INTO {table} (
    date_key, year, quarter, month, week, day_of_year, day_of_month, day_of_week,
    day_name, month_name, is_weekend, is_holiday, fiscal_year, fiscal_quarter
)
SELECT
    d::date,
    EXTRACT(YEAR FROM d)::smallint,
    EXTRACT(QUARTER FROM d)::smallint,
    EXTRACT(MONTH FROM d)::smallint,
    EXTRACT(WEEK FROM d)::smallint,
    EXTRACT(DOY FROM d)::smallint,
    EXTRACT(DAY FROM d)::smallint,
    EXTRACT(ISODOW FROM d)::smallint,
    to_char(d, 'FMDay'),
    to_char(d, 'FMMonth'),
    EXTRACT(ISODOW FROM d) IN (6, 7),
    false,
    EXTRACT(YEAR FROM d)::smallint,
    EXTRACT(QUARTER FROM d)::smallint
FROM generate_series(CAST(:start AS date), CAST(:end AS date), interval '1 day') AS d
ON CONFLICT (date_key) DO NOTHING
"""

_TOP_LEVEL_TABLES = """
SELECT c.relname
FROM pg_class c JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = :schema AND c.relkind IN ('r', 'p') AND NOT c.relispartition
ORDER BY c.relname
"""

_LEAF_TABLE_SIZES = """
SELECT c.relname, pg_total_relation_size(c.oid) AS size_bytes
FROM pg_class c JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = :schema AND c.relkind = 'r'
ORDER BY c.relname
"""

_MATERIALIZED_VIEWS = """
SELECT matviewname FROM pg_matviews WHERE schemaname = :schema ORDER BY matviewname
"""

_EXISTING_INDEXES = """
SELECT indexname FROM pg_indexes WHERE schemaname = :schema
"""

_SCHEMA_EXISTS = """
SELECT 1 FROM information_schema.schemata WHERE schema_name = :schema
"""

_SCHEMA_STATISTICS = """
SELECT
    COALESCE(SUM(pg_total_relation_size(c.oid)) FILTER (WHERE c.relkind IN ('r', 'm')), 0) AS size_bytes,
    COUNT(*) FILTER (WHERE c.relkind IN ('r', 'p') AND NOT c.relispartition) AS table_count,
    COALESCE(SUM(GREATEST(c.reltuples, 0)) FILTER (
        WHERE c.relkind = 'r' AND c.relname LIKE 'fact\\_%'
    ), 0)::bigint AS fact_rows
FROM pg_class c JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = :schema
"""


class SchemaManager:
    """
    Creates and maintains per-tenant warehouse schemas.

    Every tenant owns one schema named by ``tenant_schema_name``; all DDL
    quotes identifiers through the PostgreSQL dialect.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        query_executor=None,
        large_table_threshold: Optional[int] = None,
        months_ahead: Optional[int] = None,
    ):
        self.engine = engine
        self.query_executor = query_executor
        self.large_table_threshold = large_table_threshold or settings.LARGE_TABLE_THRESHOLD_BYTES
        self.months_ahead = months_ahead if months_ahead is not None else settings.PARTITION_MONTHS_AHEAD

    async def ensure_tenant_schema(
        self,
        tenant_id: str,
        retention_days: int = 365,
        today: Optional[date] = None,
    ) -> str:
        """
        Create the tenant schema and everything in it if missing.

        Safe to call repeatedly: every statement is ``IF NOT EXISTS`` or
        ``ON CONFLICT DO NOTHING``, and concurrent callers for the same
        tenant are serialized by a transaction-scoped advisory lock.

        Args:
            tenant_id: Tenant identifier
            retention_days: Days of history the range partitions must cover
            today: Reference date for partition planning

        Returns:
            Schema name
        """
        schema_name = tenant_schema_name(tenant_id)
        metadata = build_tenant_metadata(schema_name)
        strategy_kwargs = {"retention_days": retention_days, "months_ahead": self.months_ahead, "today": today}

        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT pg_advisory_xact_lock(hashtext(:schema))"), {"schema": schema_name})
            await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema_name)}"))
            await conn.run_sync(metadata.create_all, checkfirst=True)

            for table, spec in PARTITIONED_TABLES.items():
                if spec.method == "range":
                    await self._create_range_window(conn, schema_name, table, spec.column, strategy_kwargs)
                else:
                    strategy = HashPartitionStrategy(column=spec.column, partition_count=DEFAULT_HASH_PARTITIONS)
                    for partition in plan_hash_partitions(table, strategy):
                        await conn.execute(text(hash_partition_ddl(schema_name, table, partition)))

            for view in MATERIALIZED_VIEWS:
                view_name = qualified_name(schema_name, view.name)
                query = view.query.format(schema=quote_ident(schema_name))
                await conn.execute(text(f"CREATE MATERIALIZED VIEW IF NOT EXISTS {view_name} AS {query}"))
                columns = ", ".join(quote_ident(column) for column in view.unique_columns)
                await conn.execute(text(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {quote_ident(f'idx_{view.name}_unique')} "
                    f"ON {view_name} ({columns})"
                ))

            await self._populate_dim_date(conn, schema_name, strategy_kwargs)

        logger.info(f"Ensured warehouse schema {schema_name} for tenant {tenant_id}")
        return schema_name

    async def extend_partitions(
        self,
        tenant_id: str,
        retention_days: int = 365,
        today: Optional[date] = None,
    ) -> List[str]:
        """
        Roll the range partition window forward to ``today``.

        Range-partitioned fact tables have no DEFAULT partition, so rows
        dated past the last planned month fail to load until this runs.
        Existing partitions are left untouched and dim_date is extended to
        the same horizon.

        Returns:
            Names of the range partitions covering the window
        """
        schema_name = tenant_schema_name(tenant_id)
        strategy_kwargs = {"retention_days": retention_days, "months_ahead": self.months_ahead, "today": today}
        names: List[str] = []

        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT pg_advisory_xact_lock(hashtext(:schema))"), {"schema": schema_name})
            for table, spec in PARTITIONED_TABLES.items():
                if spec.method == "range":
                    names.extend(await self._create_range_window(conn, schema_name, table, spec.column, strategy_kwargs))
            await self._populate_dim_date(conn, schema_name, strategy_kwargs)

        logger.info(f"Extended range partitions for {schema_name}: {len(names)} partitions in window")
        return names

    async def _create_range_window(self, conn, schema_name: str, table: str, column: str, strategy_kwargs) -> List[str]:
        partitions = plan_range_partitions(table, retention_strategy(column, **strategy_kwargs))
        for partition in partitions:
            await conn.execute(text(range_partition_ddl(schema_name, table, partition)))
        return [partition.name for partition in partitions]

    async def _populate_dim_date(self, conn, schema_name: str, strategy_kwargs) -> None:
        window = retention_strategy("date_key", **strategy_kwargs)
        window_end = plan_range_partitions("dim_date", window)[-1].upper
        await conn.execute(
            text(_POPULATE_DIM_DATE.format(table=qualified_name(schema_name, "dim_date"))),
            {"start": window.start, "end": window_end},
        )

    async def create_partitions(
        self,
        tenant_id: str,
        table: str,
        strategy: Union[RangePartitionStrategy, HashPartitionStrategy],
    ) -> List[str]:
        """
        Create partitions of a partitioned warehouse table.

        Args:
            tenant_id: Tenant identifier
            table: Partitioned table name
            strategy: Range or hash strategy matching the table's declaration

        Returns:
            Names of the partitions (existing ones are left untouched)

        Raises:
            ConfigurationError: if the table is not partitioned this way
        """
        spec = PARTITIONED_TABLES.get(table)
        if spec is None:
            raise ConfigurationError(f"Table {table} is not partitioned")
        if spec.method != strategy.strategy or spec.column != strategy.column:
            raise ConfigurationError(
                f"Table {table} is partitioned by {spec.method.upper()} ({spec.column}), "
                f"not {strategy.strategy.upper()} ({strategy.column})"
            )

        schema_name = tenant_schema_name(tenant_id)
        if isinstance(strategy, RangePartitionStrategy):
            partitions = plan_range_partitions(table, strategy)
            statements = [range_partition_ddl(schema_name, table, p) for p in partitions]
        else:
            partitions = plan_hash_partitions(table, strategy)
            statements = [hash_partition_ddl(schema_name, table, p) for p in partitions]

        async with self.engine.begin() as conn:
            for statement in statements:
                await conn.execute(text(statement))

        logger.info(f"Created {len(partitions)} {strategy.strategy} partitions for {schema_name}.{table}")
        return [partition.name for partition in partitions]

    async def optimize(self, tenant_id: str) -> OptimizationReport:
        """
        Run deterministic maintenance on a tenant schema.

        Every statement runs in AUTOCOMMIT and uses the non-blocking variant
        where PostgreSQL has one, so readers are never locked out.

        Returns:
            OptimizationReport listing each action applied
        """
        schema_name = tenant_schema_name(tenant_id)
        started_at = datetime.now(timezone.utc)
        applied: List[str] = []

        async with self.engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            params = {"schema": schema_name}

            tables = (await conn.execute(text(_TOP_LEVEL_TABLES), params)).scalars().all()
            for table in tables:
                await conn.execute(text(f"ANALYZE {qualified_name(schema_name, table)}"))
                applied.append(f"ANALYZE {table}")

            for table, size_bytes in (await conn.execute(text(_LEAF_TABLE_SIZES), params)).all():
                if size_bytes <= self.large_table_threshold:
                    continue
                name = qualified_name(schema_name, table)
                await conn.execute(text(f"VACUUM ANALYZE {name}"))
                applied.append(f"VACUUM ANALYZE {table}")
                await conn.execute(text(f"REINDEX TABLE CONCURRENTLY {name}"))
                applied.append(f"REINDEX {table}")

            views = (await conn.execute(text(_MATERIALIZED_VIEWS), params)).scalars().all()
            for view in views:
                await conn.execute(text(f"REFRESH MATERIALIZED VIEW CONCURRENTLY {qualified_name(schema_name, view)}"))
                applied.append(f"REFRESH {view}")

            existing = set((await conn.execute(text(_EXISTING_INDEXES), params)).scalars().all())
            for table, indexes in declared_indexes().items():
                if table not in tables:
                    continue
                # CONCURRENTLY is not supported on partitioned parents
                concurrently = "" if table in PARTITIONED_TABLES else "CONCURRENTLY "
                for index in indexes:
                    if index.name in existing:
                        continue
                    columns = ", ".join(quote_ident(column.name) for column in index.columns)
                    await conn.execute(text(
                        f"CREATE INDEX {concurrently}IF NOT EXISTS {quote_ident(index.name)} "
                        f"ON {qualified_name(schema_name, table)} ({columns})"
                    ))
                    applied.append(f"CREATE INDEX {index.name}")

        completed_at = datetime.now(timezone.utc)
        logger.info(
            f"Optimized {schema_name}: {len(applied)} actions in "
            f"{(completed_at - started_at).total_seconds():.2f}s"
        )
        return OptimizationReport(
            tenant_id=tenant_id,
            schema_name=schema_name,
            optimizations_applied=applied,
            started_at=started_at,
            completed_at=completed_at,
        )

    async def tenant_schema_exists(self, tenant_id: str) -> bool:
        """Whether the tenant's schema exists."""
        schema_name = tenant_schema_name(tenant_id)
        async with self.engine.connect() as conn:
            result = await conn.execute(text(_SCHEMA_EXISTS), {"schema": schema_name})
            return result.scalar() is not None

    async def get_warehouse_statistics(self, tenant_id: str) -> WarehouseStatistics:
        """Schema size, table count, estimated fact rows and query performance."""
        schema_name = tenant_schema_name(tenant_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(text(_SCHEMA_STATISTICS), {"schema": schema_name})).one()

        if self.query_executor is not None:
            query_performance = self.query_executor.get_statistics(tenant_id)
        else:
            query_performance = QueryStatistics(
                total_queries=0, average_execution_time_ms=0.0, cache_hit_rate=0.0, queries_last_hour=0
            )

        return WarehouseStatistics(
            schema_name=schema_name,
            schema_size_bytes=int(row.size_bytes),
            table_count=int(row.table_count),
            total_fact_rows=int(row.fact_rows),
            query_performance=query_performance,
        )
