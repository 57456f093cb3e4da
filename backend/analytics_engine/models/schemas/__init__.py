# Pydantic schemas package
from analytics_engine.models.schemas.pipeline import (
    PipelineStatus,
    FilterCondition,
    FilterStep,
    Calculation,
    MapStep,
    Measure,
    AggregateStep,
    ValidationRule,
    ValidateStep,
    EnrichJoin,
    EnrichStep,
    TransformationStep,
    DatabaseSource,
    ApiSource,
    FileSource,
    SourceDescriptor,
    WarehouseDestination,
    CacheDestination,
    Destination,
    Schedule,
    PipelineDefinition,
    PerformanceBreakdown,
    JobResult,
)
from analytics_engine.models.schemas.warehouse import (
    RangePartitionStrategy,
    HashPartitionStrategy,
    RangePartition,
    HashPartition,
    QueryOptions,
    QueryMetadata,
    QueryExecution,
    QueryPerformanceStats,
    QueryStatistics,
    WarehouseStatistics,
    OptimizationReport,
    SelectAggregate,
    OrderBy,
    QuerySpec,
)
from analytics_engine.models.schemas.analytics import (
    AnalyticsConfiguration,
    EtlJobPayload,
    AggregationJobPayload,
    MaintenanceJobPayload,
    JobPayload,
)

__all__ = [
    "PipelineStatus",
    "FilterCondition",
    "FilterStep",
    "Calculation",
    "MapStep",
    "Measure",
    "AggregateStep",
    "ValidationRule",
    "ValidateStep",
    "EnrichJoin",
    "EnrichStep",
    "TransformationStep",
    "DatabaseSource",
    "ApiSource",
    "FileSource",
    "SourceDescriptor",
    "WarehouseDestination",
    "CacheDestination",
    "Destination",
    "Schedule",
    "PipelineDefinition",
    "PerformanceBreakdown",
    "JobResult",
    "RangePartitionStrategy",
    "HashPartitionStrategy",
    "RangePartition",
    "HashPartition",
    "QueryOptions",
    "QueryMetadata",
    "QueryExecution",
    "QueryPerformanceStats",
    "QueryStatistics",
    "WarehouseStatistics",
    "OptimizationReport",
    "SelectAggregate",
    "OrderBy",
    "QuerySpec",
    "AnalyticsConfiguration",
    "EtlJobPayload",
    "AggregationJobPayload",
    "MaintenanceJobPayload",
    "JobPayload",
]
