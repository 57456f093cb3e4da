"""
Load tasks for ETL pipelines.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from sqlalchemy import Boolean, Date, DateTime, Integer, MetaData, Numeric, String, Table, Time
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from analytics_engine.cache.keys import ETL_OUTPUT, build_cache_key
from analytics_engine.cache.redis_client import RedisClient
from analytics_engine.core.config import settings
from analytics_engine.core.exceptions import CacheError, ConfigurationError, LoadError, RecordError
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.pipeline import CacheDestination, PipelineDefinition, WarehouseDestination
from analytics_engine.warehouse.partitions import tenant_schema_name
from analytics_engine.warehouse.tables import PARTITIONED_TABLES, build_tenant_metadata

logger = get_logger(__name__)

Record = Dict[str, Any]


def convert_to_json_serializable(obj: Any) -> Any:
    """
    Convert numpy/pandas types to native Python types for JSON serialization.

    Args:
        obj: Object that may contain numpy/pandas types

    Returns:
        Object with all numpy/pandas types converted to native Python types
    """
    # Handle None first
    if obj is None:
        return None

    # Handle numpy arrays before checking pd.isna (which can return arrays)
    if isinstance(obj, np.ndarray):
        return obj.tolist()

    # Handle numpy scalar types
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return None if np.isnan(obj) else float(obj)
    if isinstance(obj, np.bool_):
        return bool(obj)

    # Handle NaN/NaT values (check after numpy/pandas types to avoid array ambiguity)
    if not isinstance(obj, (dict, list, tuple, str)):
        try:
            if pd.isna(obj):
                return None
        except (ValueError, TypeError):
            # pd.isna can raise ValueError for arrays or TypeError for unsupported types
            pass

    # Handle datetime objects
    if isinstance(obj, (datetime, pd.Timestamp)):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)

    # Handle collections recursively
    if isinstance(obj, dict):
        return {key: convert_to_json_serializable(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [convert_to_json_serializable(item) for item in obj]

    # Return as-is for native Python types
    return obj


@dataclass
class LoadResult:
    """Outcome of writing one batch set to a destination."""
    records_loaded: int = 0
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)


class Loader:
    """Writes transformed records to a warehouse table or the cache."""

    def __init__(
        self,
        engine: Optional[AsyncEngine] = None,
        cache: Optional[RedisClient] = None,
        batch_size: Optional[int] = None,
        max_errors: int = 100,
    ):
        self.engine = engine
        self.cache = cache
        self.batch_size = batch_size or settings.ETL_BATCH_SIZE
        self.max_errors = max_errors
        self._metadata: Dict[str, MetaData] = {}

    async def load(
        self,
        pipeline: PipelineDefinition,
        records: List[Record],
        run_date: Optional[date] = None,
    ) -> LoadResult:
        """
        Load records into the pipeline's destination.

        Snapshot tables (range partitioned on ``snapshot_date``) take
        ``run_date``, default today in UTC, for records without one.

        Raises:
            ConfigurationError: if the destination is unusable
            LoadError: if a write fails
        """
        destination = pipeline.destination
        if not records:
            return LoadResult()
        if isinstance(destination, WarehouseDestination):
            return await self._load_warehouse(pipeline.tenant_id, destination, records, run_date)
        return await self._load_cache(pipeline.tenant_id, destination, records)

    def resolve_table(self, tenant_id: str, destination: WarehouseDestination) -> Table:
        """The tenant-scoped table object for a warehouse destination."""
        expected = tenant_schema_name(tenant_id)
        if destination.schema_name != expected:
            raise ConfigurationError(
                f"Destination schema {destination.schema_name} does not belong to tenant {tenant_id}"
            )
        if expected not in self._metadata:
            self._metadata[expected] = build_tenant_metadata(expected)
        target = self._metadata[expected].tables.get(f"{expected}.{destination.table}")
        if target is None:
            raise ConfigurationError(f"Unknown warehouse table: {destination.table}")
        return target

    async def _load_warehouse(
        self,
        tenant_id: str,
        destination: WarehouseDestination,
        records: List[Record],
        run_date: Optional[date] = None,
    ) -> LoadResult:
        if self.engine is None:
            raise LoadError("Warehouse destination configured but no warehouse engine is available")

        target = self.resolve_table(tenant_id, destination)
        defaults = snapshot_defaults(destination.table, run_date)
        result = LoadResult()
        rows = []
        for index, record in enumerate(records):
            try:
                rows.append(prepare_row(target, record, tenant_id, defaults))
            except RecordError as e:
                result.records_failed += 1
                if len(result.errors) < self.max_errors:
                    result.errors.append(f"[load] record {index}: {e.message}")

        for start in range(0, len(rows), self.batch_size):
            batch = rows[start:start + self.batch_size]
            try:
                async with self.engine.begin() as conn:
                    for statement in build_upsert_statements(target, batch):
                        await conn.execute(statement)
            except SQLAlchemyError as e:
                logger.error(f"Error upserting batch {start // self.batch_size + 1} into {target.fullname}: {e}")
                raise LoadError(f"Upsert into {target.fullname} failed: {e}", cause=e) from e

            result.records_loaded += len(batch)
            logger.info(f"Upserted batch {start // self.batch_size + 1}: {len(batch)} records into {target.fullname}")

        return result

    async def _load_cache(self, tenant_id: str, destination: CacheDestination, records: List[Record]) -> LoadResult:
        if self.cache is None:
            raise LoadError("Cache destination configured but no cache client is available")

        key = build_cache_key(ETL_OUTPUT, tenant_id, destination.cache_key)
        try:
            await self.cache.set(key, convert_to_json_serializable(records), ttl=destination.ttl)
        except CacheError as e:
            raise LoadError(f"Writing {key} to cache failed: {e.message}", cause=e) from e

        logger.info(f"Stored {len(records)} records under {key}")
        return LoadResult(records_loaded=len(records))


def snapshot_defaults(table: str, run_date: Optional[date] = None) -> Record:
    """Column defaults for a destination table: the snapshot date of snapshot tables."""
    spec = PARTITIONED_TABLES.get(table)
    if spec is None or spec.method != "range" or spec.column != "snapshot_date":
        return {}
    return {"snapshot_date": run_date or datetime.now(timezone.utc).date()}


def prepare_row(target: Table, record: Record, tenant_id: str, defaults: Optional[Record] = None) -> Record:
    """
    Project a record onto the table's columns and coerce values to column types.

    ``defaults`` fill columns the record leaves missing or null.

    Raises:
        RecordError: if a key column is missing or a value cannot be coerced
    """
    row = {}
    for col in target.columns:
        if col.name in record:
            try:
                row[col.name] = coerce_value(col.type, record[col.name])
            except (TypeError, ValueError, InvalidOperation) as e:
                raise RecordError(f"Column {col.name}: cannot convert {record[col.name]!r}", cause=e) from e

    if "tenant_id" in target.columns and row.get("tenant_id") is None:
        row["tenant_id"] = tenant_id
    for name, value in (defaults or {}).items():
        if name in target.columns and row.get(name) is None:
            row[name] = value

    for col in target.primary_key.columns:
        if row.get(col.name) is None:
            raise RecordError(f"Missing key column {col.name}")
    return row


def coerce_value(column_type: Any, value: Any) -> Any:
    """Convert a transformed value to what the driver expects for ``column_type``."""
    value = convert_to_json_serializable(value) if not isinstance(value, (datetime, date, time, Decimal)) else value
    if value is None:
        return None
    if isinstance(column_type, DateTime):
        parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        if column_type.timezone and parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    if isinstance(column_type, Date):
        if isinstance(value, datetime):
            return value.date()
        return value if isinstance(value, date) else date.fromisoformat(str(value)[:10])
    if isinstance(column_type, Time):
        return value if isinstance(value, time) else time.fromisoformat(str(value))
    if isinstance(column_type, Integer):
        if isinstance(value, float) and not value.is_integer():
            raise ValueError("fractional value for integer column")
        return int(value)
    if isinstance(column_type, Numeric):
        if isinstance(value, bool):
            raise TypeError("boolean value for numeric column")
        return value if isinstance(value, Decimal) else Decimal(str(value))
    if isinstance(column_type, Boolean):
        if isinstance(value, str):
            return value.strip().lower() in ("true", "t", "1", "yes")
        return bool(value)
    if isinstance(column_type, String):
        return value if isinstance(value, str) else str(value)
    return value


def build_upsert_statements(target: Table, rows: List[Record]) -> list:
    """
    ``INSERT ... ON CONFLICT (pk) DO UPDATE`` statements for a batch.

    Rows are grouped by their column set so each statement is a single
    multi-row VALUES list; a repeated key keeps its last row.
    """
    key_names = [col.name for col in target.primary_key.columns]
    latest: Dict[Tuple, Record] = {}
    for row in rows:
        latest[tuple(row[name] for name in key_names)] = row

    groups: Dict[Tuple[str, ...], List[Record]] = {}
    for row in latest.values():
        groups.setdefault(tuple(sorted(row)), []).append(row)

    statements = []
    for columns, group in groups.items():
        stmt = insert(target).values(group)
        updates = {name: stmt.excluded[name] for name in columns if name not in key_names}
        if updates:
            stmt = stmt.on_conflict_do_update(index_elements=key_names, set_=updates)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=key_names)
        statements.append(stmt)
    return statements
