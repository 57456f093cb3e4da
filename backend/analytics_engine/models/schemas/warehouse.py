"""
Pydantic schemas for warehouse partitions, queries and maintenance.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from analytics_engine.models.schemas.pipeline import FilterCondition, Identifier


class RangePartitionStrategy(BaseModel):
    """Contiguous date-interval partitions."""
    strategy: Literal["range"] = "range"
    column: str
    interval: Literal["day", "week", "month"] = "month"
    start: Optional[date] = Field(None, description="Lower bound of the first partition; defaults to the current period")
    count: int = Field(12, ge=1, le=1000)


class HashPartitionStrategy(BaseModel):
    """Fixed number of hash partitions covering the whole key space."""
    strategy: Literal["hash"] = "hash"
    column: str
    partition_count: int = Field(..., ge=1, le=1024)


class RangePartition(BaseModel):
    """One range partition owning ``[lower, upper)``."""
    model_config = ConfigDict(frozen=True)

    name: str
    lower: date
    upper: date

    def contains(self, value: date) -> bool:
        return self.lower <= value < self.upper


class HashPartition(BaseModel):
    """One hash partition owning keys with ``key mod modulus == remainder``."""
    model_config = ConfigDict(frozen=True)

    name: str
    modulus: int
    remainder: int

    def contains(self, key: int) -> bool:
        return key % self.modulus == self.remainder


class QueryOptions(BaseModel):
    """Execution options for the query executor."""
    use_cache: bool = True
    cache_ttl: Optional[int] = Field(None, ge=1, description="Seconds; defaults to QUERY_CACHE_TTL")
    timeout: Optional[float] = Field(None, gt=0, description="Seconds; defaults to QUERY_TIMEOUT_SECONDS")


class QueryMetadata(BaseModel):
    """Execution metadata returned with every query result."""
    model_config = ConfigDict(frozen=True)

    query_id: str
    execution_time_ms: float
    row_count: int
    from_cache: bool


class QueryExecution(BaseModel):
    """Rows plus metadata for one query execution."""
    model_config = ConfigDict(frozen=True)

    rows: List[Dict[str, Any]]
    metadata: QueryMetadata


class QueryPerformanceStats(BaseModel):
    """Performance log entry for one execution."""
    model_config = ConfigDict(frozen=True)

    query_id: str
    tenant_id: str
    execution_time_ms: float
    rows_returned: int
    bytes_processed: int
    cache_hit: bool
    timestamp: datetime


class QueryStatistics(BaseModel):
    """Aggregated query performance for one tenant."""
    total_queries: int
    average_execution_time_ms: float
    cache_hit_rate: float
    queries_last_hour: int


class WarehouseStatistics(BaseModel):
    """Size and usage of one tenant schema."""
    schema_name: str
    schema_size_bytes: int
    table_count: int
    total_fact_rows: int
    query_performance: QueryStatistics


class OptimizationReport(BaseModel):
    """Maintenance actions performed by ``optimize``."""
    tenant_id: str
    schema_name: str
    optimizations_applied: List[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime


# Safe query builder

class SelectAggregate(BaseModel):
    """An aggregate column in a built query."""
    function: Literal["sum", "avg", "count", "min", "max"]
    column: str = Field(..., pattern=r"^(\*|[A-Za-z_][A-Za-z0-9_]{0,62})$")
    alias: Identifier


class OrderBy(BaseModel):
    column: Identifier
    descending: bool = False


class QuerySpec(BaseModel):
    """Structured SELECT over one tenant table; values are always bound."""
    table: Identifier
    columns: List[Identifier] = Field(default_factory=list)
    aggregates: List[SelectAggregate] = Field(default_factory=list)
    filters: List[FilterCondition] = Field(default_factory=list)
    group_by: List[Identifier] = Field(default_factory=list)
    order_by: List[OrderBy] = Field(default_factory=list)
    limit: Optional[int] = Field(None, ge=1, le=100000)
