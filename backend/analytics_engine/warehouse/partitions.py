"""
Tenant schema naming and partition planning.

Planning is pure: the functions here compute partition bounds and DDL text
without touching the database, so the coverage guarantees (no gaps, no
overlaps) can be checked directly.
"""
import re
from datetime import date, timedelta
from typing import List, Optional, Sequence

from sqlalchemy.dialects import postgresql

from analytics_engine.core.exceptions import ConfigurationError
from analytics_engine.models.schemas.warehouse import (
    HashPartition,
    HashPartitionStrategy,
    RangePartition,
    RangePartitionStrategy,
)

SCHEMA_PREFIX = "analytics_"
MAX_IDENTIFIER_LENGTH = 63  # PostgreSQL NAMEDATALEN - 1

_preparer = postgresql.dialect().identifier_preparer


def tenant_schema_name(tenant_id: str) -> str:
    """
    Deterministic warehouse schema name for a tenant.

    Lowercases the id and replaces every character outside ``[a-z0-9]`` with
    an underscore, so the result is always a plain identifier.

    Raises:
        ConfigurationError: if the id is empty or the name would exceed the
            PostgreSQL identifier limit.
    """
    if not tenant_id:
        raise ConfigurationError("Tenant id must not be empty")
    name = SCHEMA_PREFIX + re.sub(r"[^a-z0-9]", "_", tenant_id.lower())
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise ConfigurationError(
            f"Schema name for tenant '{tenant_id}' exceeds {MAX_IDENTIFIER_LENGTH} characters"
        )
    return name


def quote_ident(name: str) -> str:
    """Quote an identifier for PostgreSQL."""
    return _preparer.quote_identifier(name)


def qualified_name(schema_name: str, table: str) -> str:
    return f"{quote_ident(schema_name)}.{quote_ident(table)}"


# Range partitions

def period_start(value: date, interval: str) -> date:
    """First day of the interval containing ``value``."""
    if interval == "day":
        return value
    if interval == "week":
        return value - timedelta(days=value.weekday())
    if interval == "month":
        return value.replace(day=1)
    raise ConfigurationError(f"Unknown partition interval: {interval}")


def next_period(value: date, interval: str) -> date:
    """Start of the interval following the one starting at ``value``."""
    if interval == "day":
        return value + timedelta(days=1)
    if interval == "week":
        return value + timedelta(weeks=1)
    if interval == "month":
        return add_months(value, 1)
    raise ConfigurationError(f"Unknown partition interval: {interval}")


def add_months(value: date, months: int) -> date:
    """Shift a first-of-month date by ``months`` (may be negative)."""
    years, month_index = divmod(value.month - 1 + months, 12)
    return date(value.year + years, month_index + 1, 1)


def plan_range_partitions(
    table: str,
    strategy: RangePartitionStrategy,
    today: Optional[date] = None,
) -> List[RangePartition]:
    """
    Contiguous ``[lower, upper)`` partitions.

    The first partition starts at the interval containing ``strategy.start``
    (or ``today``); each following partition starts where the previous ended.
    """
    lower = period_start(strategy.start or today or date.today(), strategy.interval)
    partitions = []
    for _ in range(strategy.count):
        upper = next_period(lower, strategy.interval)
        partitions.append(
            RangePartition(name=f"{table}_p{lower:%Y%m%d}", lower=lower, upper=upper)
        )
        lower = upper
    return partitions


def retention_strategy(
    column: str,
    retention_days: int,
    months_ahead: int,
    today: Optional[date] = None,
) -> RangePartitionStrategy:
    """
    Monthly strategy covering the retention window plus ``months_ahead``.

    The window runs from the month containing ``today - retention_days``
    through the ``months_ahead``-th month after the current one.
    """
    today = today or date.today()
    first = period_start(today - timedelta(days=retention_days), "month")
    current = period_start(today, "month")
    months_back = (current.year - first.year) * 12 + current.month - first.month
    return RangePartitionStrategy(
        column=column,
        interval="month",
        start=first,
        count=months_back + months_ahead + 1,
    )


def range_partition_for(value: date, partitions: Sequence[RangePartition]) -> Optional[RangePartition]:
    """The partition whose range contains ``value``, if any."""
    for partition in partitions:
        if partition.contains(value):
            return partition
    return None


# Hash partitions

def plan_hash_partitions(table: str, strategy: HashPartitionStrategy) -> List[HashPartition]:
    """One partition per remainder ``0..N-1`` of ``key mod N``."""
    modulus = strategy.partition_count
    return [
        HashPartition(name=f"{table}_h{remainder}", modulus=modulus, remainder=remainder)
        for remainder in range(modulus)
    ]


def partition_for_key(key: int, partitions: Sequence[HashPartition]) -> HashPartition:
    """
    The single partition owning ``key``.

    Raises:
        ConfigurationError: if the partition set has a gap or an overlap.
    """
    owners = [partition for partition in partitions if partition.contains(key)]
    if len(owners) != 1:
        raise ConfigurationError(f"Key {key} maps to {len(owners)} partitions")
    return owners[0]


# DDL

def range_partition_ddl(schema_name: str, table: str, partition: RangePartition) -> str:
    return (
        f"CREATE TABLE IF NOT EXISTS {qualified_name(schema_name, partition.name)} "
        f"PARTITION OF {qualified_name(schema_name, table)} "
        f"FOR VALUES FROM ('{partition.lower.isoformat()}') TO ('{partition.upper.isoformat()}')"
    )


def hash_partition_ddl(schema_name: str, table: str, partition: HashPartition) -> str:
    return (
        f"CREATE TABLE IF NOT EXISTS {qualified_name(schema_name, partition.name)} "
        f"PARTITION OF {qualified_name(schema_name, table)} "
        f"FOR VALUES WITH (MODULUS {partition.modulus}, REMAINDER {partition.remainder})"
    )
