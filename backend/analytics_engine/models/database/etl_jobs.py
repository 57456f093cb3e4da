"""
ETL job run history database model.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Float, JSON, Enum as SQLEnum
from sqlalchemy.sql import func

from analytics_engine.core.database import Base
from analytics_engine.models.schemas.pipeline import PipelineStatus


class ETLJobRun(Base):
    """One persisted pipeline run result."""

    __tablename__ = "etl_job_runs"

    id = Column(Integer, primary_key=True, index=True)
    pipeline_id = Column(String(255), nullable=False, index=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    status = Column(SQLEnum(PipelineStatus, name="etlrunstatus"), nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False)
    records_processed = Column(Integer, default=0)
    records_successful = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)  # First error, for quick listing
    errors = Column(JSON, nullable=True)
    extract_ms = Column(Float, nullable=True)
    transform_ms = Column(Float, nullable=True)
    load_ms = Column(Float, nullable=True)
    total_ms = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
