"""
Pydantic schemas for tenant analytics configuration and worker job payloads.
"""
from typing import List, Literal, Union

from pydantic import BaseModel, Field

AggregationInterval = Literal["hourly", "daily", "weekly", "monthly"]


class AnalyticsConfiguration(BaseModel):
    """Tenant analytics settings consumed when building pipelines and triggers."""
    tenant_id: str = Field(..., min_length=1, max_length=255)
    data_retention_days: int = Field(365, ge=1, le=3650)
    aggregation_intervals: List[AggregationInterval] = Field(default_factory=lambda: ["hourly", "daily"])
    enabled_metrics: List[str] = Field(default_factory=list, description="Real-time metrics to compute; empty means all")


class EtlJobPayload(BaseModel):
    """Queue payload requesting one pipeline run."""
    job_type: Literal["etl"] = "etl"
    pipeline_id: str = Field(..., min_length=1)


class AggregationJobPayload(BaseModel):
    """Queue payload requesting one metric aggregation pass for a tenant."""
    job_type: Literal["aggregation"] = "aggregation"
    tenant_id: str = Field(..., min_length=1)
    interval: Literal["realtime", "hourly", "daily", "weekly", "monthly"]


class MaintenanceJobPayload(BaseModel):
    """Queue payload requesting partition roll-forward and optimization of a tenant schema."""
    job_type: Literal["maintenance"] = "maintenance"
    tenant_id: str = Field(..., min_length=1)
    retention_days: int = Field(365, ge=1, le=3650)


JobPayload = Union[EtlJobPayload, AggregationJobPayload, MaintenanceJobPayload]
