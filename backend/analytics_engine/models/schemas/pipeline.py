"""
Pydantic schemas for pipeline definitions, transformation steps and job results.
"""
import enum
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from analytics_engine.pipelines.expressions import compile_expression
from analytics_engine.core.exceptions import ConfigurationError

IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]{0,62}$"

Identifier = Annotated[str, Field(pattern=IDENTIFIER_PATTERN)]


class PipelineStatus(str, enum.Enum):
    """Pipeline run state."""
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"
    COMPLETED = "completed"


# Transformation Steps

class FilterCondition(BaseModel):
    """One comparison of a record field against a literal."""
    field: str = Field(..., min_length=1)
    op: Literal["eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "is_null", "not_null"]
    value: Any = None

    @model_validator(mode="after")
    def check_value(self):
        if self.op in ("in", "not_in") and not isinstance(self.value, (list, tuple, set)):
            raise ValueError(f"Operator '{self.op}' requires a list value")
        if self.op not in ("is_null", "not_null", "eq", "ne") and self.value is None:
            raise ValueError(f"Operator '{self.op}' requires a value")
        return self


class _BaseStep(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, max_length=255)
    order: int


class FilterStep(_BaseStep):
    """Keep only records matching the predicate."""
    type: Literal["filter"] = "filter"
    conditions: List[FilterCondition] = Field(..., min_length=1)
    match: Literal["all", "any"] = "all"


class Calculation(BaseModel):
    """A named calculated field."""
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1)
    expression: str = Field(..., min_length=1)

    @field_validator("expression")
    @classmethod
    def expression_must_compile(cls, v):
        try:
            compile_expression(v)
        except ConfigurationError as e:
            raise ValueError(e.message) from e
        return v


class MapStep(_BaseStep):
    """Add or overwrite calculated fields."""
    type: Literal["map"] = "map"
    calculations: List[Calculation] = Field(..., min_length=1)


class Measure(BaseModel):
    """One aggregate computed per group."""
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1)
    operation: Literal["sum", "avg", "count", "min", "max", "last"]
    alias: Optional[str] = None

    @property
    def output_field(self) -> str:
        return self.alias or self.field


class AggregateStep(_BaseStep):
    """Group records and compute measures per group."""
    type: Literal["aggregate"] = "aggregate"
    group_by: List[str] = Field(default_factory=list)
    measures: List[Measure] = Field(..., min_length=1)

    @model_validator(mode="after")
    def unique_outputs(self):
        outputs = list(self.group_by) + [m.output_field for m in self.measures]
        if len(outputs) != len(set(outputs)):
            raise ValueError("Aggregate output fields must be unique")
        return self


class ValidationRule(BaseModel):
    """Constraints on one field."""
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1)
    required: bool = False
    type: Optional[Literal["number", "integer", "string", "boolean", "uuid", "date"]] = None
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"Rule for '{self.field}' has min greater than max")
        return self


class ValidateStep(_BaseStep):
    """Drop records violating any rule."""
    type: Literal["validate"] = "validate"
    rules: List[ValidationRule] = Field(..., min_length=1)


class EnrichJoin(BaseModel):
    """Lookup join against an auxiliary table."""
    model_config = ConfigDict(frozen=True)

    table: Identifier
    on: str = Field(..., min_length=1, description="Record field holding the lookup key")
    foreign_key: Optional[Identifier] = Field(None, description="Key column in the auxiliary table; defaults to `on`")
    fields: List[Identifier] = Field(..., min_length=1)

    @property
    def key_column(self) -> str:
        return self.foreign_key or self.on


class EnrichStep(_BaseStep):
    """Copy fields from auxiliary tables onto records."""
    type: Literal["enrich"] = "enrich"
    joins: List[EnrichJoin] = Field(..., min_length=1)


TransformationStep = Annotated[
    Union[FilterStep, MapStep, AggregateStep, ValidateStep, EnrichStep],
    Field(discriminator="type"),
]


# Sources and destinations

class _BaseSource(BaseModel):
    watermark_column: Optional[Identifier] = Field(
        None, description="Monotonic column bounding incremental extraction"
    )


class DatabaseSource(_BaseSource):
    """Tenant rows from operational database tables."""
    kind: Literal["database"] = "database"
    tables: List[Identifier] = Field(..., min_length=1)
    tenant_column: Identifier = "tenant_id"


class ApiSource(_BaseSource):
    """Records fetched from an HTTP API."""
    kind: Literal["api"] = "api"
    url: str = Field(..., min_length=1)
    method: Literal["GET", "POST"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    records_path: Optional[str] = Field(None, description="Dotted path to the record list in the response")
    watermark_param: Optional[str] = Field(None, description="Query parameter receiving the last run time")


class FileSource(_BaseSource):
    """Records read from a CSV or JSON file."""
    kind: Literal["file"] = "file"
    path: str = Field(..., min_length=1)
    format: Literal["csv", "json"] = "csv"
    encoding: str = "utf-8"


SourceDescriptor = Annotated[
    Union[DatabaseSource, ApiSource, FileSource],
    Field(discriminator="kind"),
]


class WarehouseDestination(BaseModel):
    """Batch upsert into a tenant warehouse table."""
    kind: Literal["warehouse"] = "warehouse"
    schema_name: Identifier
    table: Identifier


class CacheDestination(BaseModel):
    """Store the transformed batch in the cache."""
    kind: Literal["cache"] = "cache"
    cache_key: str = Field(..., min_length=1, description="Entity id under the etl-output namespace")
    ttl: int = Field(3600, ge=1)


Destination = Annotated[
    Union[WarehouseDestination, CacheDestination],
    Field(discriminator="kind"),
]


class Schedule(BaseModel):
    """Cron-style recurrence."""
    expression: str

    @field_validator("expression")
    @classmethod
    def must_be_valid_cron(cls, v):
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v}")
        return v


# Pipeline definition

class PipelineDefinition(BaseModel):
    """A pipeline plus its mutable run state."""

    pipeline_id: str = Field(..., min_length=1, max_length=255)
    tenant_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    source: SourceDescriptor
    steps: List[TransformationStep] = Field(default_factory=list)
    destination: Destination
    schedule: Schedule
    enabled: bool = True

    # Run state; written only by the pipeline runner
    last_run: Optional[datetime] = None
    status: PipelineStatus = PipelineStatus.IDLE

    @field_validator("steps")
    @classmethod
    def unique_step_orders(cls, v):
        orders = [step.order for step in v]
        if len(orders) != len(set(orders)):
            raise ValueError("Transformation step order values must be unique")
        ids = [step.id for step in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Transformation step ids must be unique")
        return v


# Job results

class PerformanceBreakdown(BaseModel):
    """Phase timings in milliseconds."""
    model_config = ConfigDict(frozen=True)

    extract_ms: float = 0.0
    transform_ms: float = 0.0
    load_ms: float = 0.0
    total_ms: float = 0.0


class JobResult(BaseModel):
    """Outcome of one pipeline run. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    tenant_id: str
    status: PipelineStatus
    start_time: datetime
    end_time: datetime
    records_processed: int = 0
    records_successful: int = 0
    records_failed: int = 0
    errors: List[str] = Field(default_factory=list)
    performance: PerformanceBreakdown = Field(default_factory=PerformanceBreakdown)

    @property
    def succeeded(self) -> bool:
        return self.status == PipelineStatus.COMPLETED
