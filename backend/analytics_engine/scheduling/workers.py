"""
In-process worker pool consuming scheduled jobs.
"""
import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from analytics_engine.core import metrics
from analytics_engine.core.config import settings
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.analytics import (
    AggregationJobPayload,
    EtlJobPayload,
    JobPayload,
    MaintenanceJobPayload,
)

logger = get_logger(__name__)

Dispatch = Callable[[JobPayload], Awaitable[Any]]


class JobDispatcher:
    """Routes queue payloads to the pipeline runner, the metrics aggregator or the schema manager."""

    def __init__(self, runner, aggregator=None, schema_manager=None):
        self.runner = runner
        self.aggregator = aggregator
        self.schema_manager = schema_manager

    async def __call__(self, payload: JobPayload) -> Any:
        if isinstance(payload, EtlJobPayload):
            return await self.runner.run(payload.pipeline_id)
        if isinstance(payload, AggregationJobPayload):
            if self.aggregator is None:
                raise RuntimeError("No metrics aggregator configured")
            return await self.aggregator.run(payload)
        if isinstance(payload, MaintenanceJobPayload):
            if self.schema_manager is None:
                raise RuntimeError("No schema manager configured")
            await self.schema_manager.extend_partitions(payload.tenant_id, retention_days=payload.retention_days)
            return await self.schema_manager.optimize(payload.tenant_id)
        raise TypeError(f"Unsupported job payload: {payload!r}")


class WorkerPool:
    """
    N asyncio workers draining one queue.

    A job's failure is logged and counted; it never stops the worker or
    reaches whoever enqueued the job.
    """

    def __init__(self, dispatch: Dispatch, concurrency: Optional[int] = None, max_queue_size: int = 0):
        self.dispatch = dispatch
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def enqueue(self, payload: JobPayload) -> bool:
        """Queue a job without waiting. Returns False if the queue is full."""
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(f"Worker queue full, dropping {payload.job_type} job")
            metrics.worker_jobs_total.labels(job_type=payload.job_type, status="dropped").inc()
            return False
        return True

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._work(index), name=f"analytics-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} workers")

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self.queue.join()

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers, optionally after finishing queued jobs."""
        if drain and self._workers:
            await self.queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Workers stopped")

    async def _work(self, index: int) -> None:
        while True:
            payload = await self.queue.get()
            try:
                await self.dispatch(payload)
                metrics.worker_jobs_total.labels(job_type=payload.job_type, status="succeeded").inc()
            except Exception as e:
                metrics.worker_jobs_total.labels(job_type=payload.job_type, status="failed").inc()
                logger.error(f"Worker {index} job {payload.model_dump()} failed: {e}", exc_info=True)
            finally:
                self.queue.task_done()
