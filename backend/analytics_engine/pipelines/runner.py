"""
Pipeline runner: one extract → transform → load cycle per call, at most one
in flight per pipeline id.
"""
import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from analytics_engine.core import metrics
from analytics_engine.core.config import settings
from analytics_engine.core.exceptions import AnalyticsEngineError, ConfigurationError, PipelineNotFoundError
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.pipeline import (
    JobResult,
    PerformanceBreakdown,
    PipelineDefinition,
    PipelineStatus,
)
from analytics_engine.pipelines.tasks.extract import Extractor
from analytics_engine.pipelines.tasks.load import Loader
from analytics_engine.pipelines.transformations import TransformationEngine

logger = get_logger(__name__)


class PipelineRunner:
    """
    Owns the live pipeline definitions and runs them.

    A second ``run`` for a pipeline that is already in flight does not start
    another cycle: it awaits the running task and receives the same
    ``JobResult`` (or the same exception). Concurrent cycles against one
    watermark would load the same rows twice.
    """

    def __init__(
        self,
        extractor: Extractor,
        loader: Loader,
        transformer: Optional[TransformationEngine] = None,
        result_store=None,
        history_size: Optional[int] = None,
    ):
        self.extractor = extractor
        self.loader = loader
        self.transformer = transformer or TransformationEngine()
        self.result_store = result_store
        self.history_size = history_size or settings.ETL_HISTORY_SIZE
        self._pipelines: Dict[str, PipelineDefinition] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._history: Dict[str, Deque[JobResult]] = {}

    # Registry

    def register(self, pipeline: PipelineDefinition) -> None:
        """Add or replace a pipeline definition."""
        self._pipelines[pipeline.pipeline_id] = pipeline
        logger.info(f"Registered pipeline {pipeline.pipeline_id} for tenant {pipeline.tenant_id}")

    def unregister(self, pipeline_id: str) -> bool:
        """
        Remove a pipeline definition.

        A run already in flight finishes against the definition it started with.
        """
        removed = self._pipelines.pop(pipeline_id, None)
        if removed is not None:
            logger.info(f"Unregistered pipeline {pipeline_id}")
        return removed is not None

    def get(self, pipeline_id: str) -> PipelineDefinition:
        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(f"Pipeline {pipeline_id} not found", details={"pipeline_id": pipeline_id})
        return pipeline

    def pipelines_for_tenant(self, tenant_id: str) -> List[PipelineDefinition]:
        return [p for p in self._pipelines.values() if p.tenant_id == tenant_id]

    def is_running(self, pipeline_id: str) -> bool:
        return pipeline_id in self._in_flight

    # Execution

    async def run(self, pipeline_id: str) -> JobResult:
        """
        Run a pipeline, or join its in-flight run.

        Returns:
            JobResult of the (possibly shared) run

        Raises:
            PipelineNotFoundError: if the id is not registered
            ConfigurationError: if the pipeline is disabled or misconfigured
            ExtractError, LoadError: on source or destination failure; the
                failed JobResult is attached as ``job_result``
        """
        task = self._in_flight.get(pipeline_id)
        if task is None:
            pipeline = self.get(pipeline_id)
            if not pipeline.enabled:
                raise ConfigurationError(f"Pipeline {pipeline_id} is disabled")
            # No await between the lookup and the insert, so two callers cannot both start a run
            task = asyncio.create_task(self._execute(pipeline), name=f"pipeline-run:{pipeline_id}")
            self._in_flight[pipeline_id] = task
            task.add_done_callback(_consume_exception)
        else:
            metrics.etl_duplicate_runs_joined_total.inc()
            logger.info(f"Pipeline {pipeline_id} already running; joining in-flight run")

        # Shielded so a cancelled caller does not cancel the run other callers share
        return await asyncio.shield(task)

    async def _execute(self, pipeline: PipelineDefinition) -> JobResult:
        pipeline_id = pipeline.pipeline_id
        start_time = datetime.now(timezone.utc)
        started = time.perf_counter()
        timings = {"extract_ms": 0.0, "transform_ms": 0.0, "load_ms": 0.0}
        counts = {"records_processed": 0, "records_successful": 0, "records_failed": 0}
        errors: List[str] = []

        pipeline.status = PipelineStatus.RUNNING
        since = pipeline.last_run if pipeline.source.watermark_column else None
        logger.info(f"Starting pipeline {pipeline_id} for tenant {pipeline.tenant_id}")

        try:
            phase = time.perf_counter()
            records = await self.extractor.extract(pipeline, since)
            timings["extract_ms"] = _elapsed_ms(phase)
            counts["records_processed"] = len(records)

            phase = time.perf_counter()
            transformed = await self.transformer.apply(records, pipeline.steps, tenant_id=pipeline.tenant_id)
            timings["transform_ms"] = _elapsed_ms(phase)
            counts["records_failed"] = transformed.records_failed
            errors.extend(transformed.errors)

            phase = time.perf_counter()
            loaded = await self.loader.load(pipeline, transformed.records, run_date=start_time.date())
            timings["load_ms"] = _elapsed_ms(phase)
            counts["records_successful"] = loaded.records_loaded
            counts["records_failed"] += loaded.records_failed
            errors.extend(loaded.errors)

            pipeline.status = PipelineStatus.COMPLETED
            pipeline.last_run = start_time
            result = self._build_result(pipeline, PipelineStatus.COMPLETED, start_time, started, timings, counts, errors)
            await self._record(result)

        except asyncio.CancelledError:
            pipeline.status = PipelineStatus.FAILED
            logger.warning(f"Pipeline {pipeline_id} run was cancelled")
            raise

        except Exception as e:
            errors.append(e.message if isinstance(e, AnalyticsEngineError) else f"{type(e).__name__}: {e}")
            pipeline.status = PipelineStatus.FAILED
            result = self._build_result(pipeline, PipelineStatus.FAILED, start_time, started, timings, counts, errors)
            await self._record(result)
            e.job_result = result
            logger.error(f"Pipeline {pipeline_id} failed: {errors[-1]}")
            raise

        finally:
            if self._in_flight.get(pipeline_id) is asyncio.current_task():
                del self._in_flight[pipeline_id]

        logger.info(
            f"Pipeline {pipeline_id} completed: {result.records_processed} processed, "
            f"{result.records_successful} loaded, {result.records_failed} failed "
            f"in {result.performance.total_ms:.0f}ms"
        )
        return result

    def _build_result(
        self,
        pipeline: PipelineDefinition,
        status: PipelineStatus,
        start_time: datetime,
        started: float,
        timings: Dict[str, float],
        counts: Dict[str, int],
        errors: List[str],
    ) -> JobResult:
        return JobResult(
            pipeline_id=pipeline.pipeline_id,
            tenant_id=pipeline.tenant_id,
            status=status,
            start_time=start_time,
            end_time=datetime.now(timezone.utc),
            errors=list(errors),
            performance=PerformanceBreakdown(total_ms=_elapsed_ms(started), **timings),
            **counts,
        )

    async def _record(self, result: JobResult) -> None:
        history = self._history.setdefault(result.pipeline_id, deque(maxlen=self.history_size))
        history.append(result)

        metrics.etl_pipeline_runs_total.labels(tenant_id=result.tenant_id, status=result.status.value).inc()
        for phase in ("extract", "transform", "load", "total"):
            metrics.etl_pipeline_duration_seconds.labels(phase=phase).observe(
                getattr(result.performance, f"{phase}_ms") / 1000
            )
        metrics.etl_records_total.labels(outcome="processed").inc(result.records_processed)
        metrics.etl_records_total.labels(outcome="successful").inc(result.records_successful)
        metrics.etl_records_total.labels(outcome="failed").inc(result.records_failed)

        if self.result_store is not None:
            try:
                await self.result_store.save(result)
            except Exception as e:
                # Result persistence is best effort; the in-memory history stays authoritative
                logger.error(f"Failed to persist result for pipeline {result.pipeline_id}: {e}", exc_info=True)

    # Status

    def get_history(self, pipeline_id: str, limit: Optional[int] = None) -> List[JobResult]:
        """Results for a pipeline, oldest first."""
        history = list(self._history.get(pipeline_id, ()))
        return history[-limit:] if limit else history

    def get_last_result(self, pipeline_id: str) -> Optional[JobResult]:
        history = self._history.get(pipeline_id)
        return history[-1] if history else None

    def get_pipeline_status(self, pipeline_id: str) -> Dict[str, Any]:
        pipeline = self.get(pipeline_id)
        last_result = self.get_last_result(pipeline_id)
        return {
            "pipeline_id": pipeline.pipeline_id,
            "tenant_id": pipeline.tenant_id,
            "name": pipeline.name,
            "enabled": pipeline.enabled,
            "status": pipeline.status.value,
            "last_run": pipeline.last_run,
            "running": self.is_running(pipeline_id),
            "last_result": last_result.model_dump() if last_result else None,
        }

    def get_last_run_time(self, tenant_id: str) -> Optional[datetime]:
        """Most recent successful run start across a tenant's pipelines."""
        runs = [p.last_run for p in self.pipelines_for_tenant(tenant_id) if p.last_run is not None]
        return max(runs) if runs else None


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def _consume_exception(task: asyncio.Task) -> None:
    # Mark the exception retrieved when every caller was cancelled before the run ended
    if not task.cancelled():
        task.exception()
