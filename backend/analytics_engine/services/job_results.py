"""
Persistence of pipeline run results.
"""
from sqlalchemy.ext.asyncio import async_sessionmaker

from analytics_engine.core.database import session_scope
from analytics_engine.core.logging import get_logger
from analytics_engine.models.database.etl_jobs import ETLJobRun
from analytics_engine.models.schemas.pipeline import JobResult

logger = get_logger(__name__)


class DatabaseJobResultStore:
    """Writes each JobResult to the ``etl_job_runs`` table."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def save(self, result: JobResult) -> None:
        async with session_scope(self.session_factory) as session:
            session.add(to_model(result))
        logger.debug(f"Persisted {result.status.value} run of pipeline {result.pipeline_id}")


def to_model(result: JobResult) -> ETLJobRun:
    return ETLJobRun(
        pipeline_id=result.pipeline_id,
        tenant_id=result.tenant_id,
        status=result.status,
        started_at=result.start_time,
        completed_at=result.end_time,
        records_processed=result.records_processed,
        records_successful=result.records_successful,
        records_failed=result.records_failed,
        error_message=result.errors[0] if result.errors else None,
        errors=list(result.errors),
        extract_ms=result.performance.extract_ms,
        transform_ms=result.performance.transform_ms,
        load_ms=result.performance.load_ms,
        total_ms=result.performance.total_ms,
    )
