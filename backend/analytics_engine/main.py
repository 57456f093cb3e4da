"""
Engine entry point: component wiring and lifespan.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from prometheus_client import start_http_server

from analytics_engine.cache.redis_client import RedisClient
from analytics_engine.core.config import settings
from analytics_engine.core.database import Base, create_engine, create_session_factory
from analytics_engine.core.logging import get_logger, setup_logging
from analytics_engine.core.metrics import registry
from analytics_engine.pipelines.runner import PipelineRunner
from analytics_engine.pipelines.tasks import Extractor, Loader, WarehouseLookupSource
from analytics_engine.pipelines.transformations import TransformationEngine
from analytics_engine.scheduling.scheduler import Scheduler
from analytics_engine.scheduling.workers import JobDispatcher, WorkerPool
from analytics_engine.services.job_results import DatabaseJobResultStore
from analytics_engine.services.metrics_aggregation import MetricsAggregator
from analytics_engine.services.tenant_analytics import TenantAnalyticsService
from analytics_engine.warehouse.query_executor import QueryExecutor, SQLAlchemyWarehouse
from analytics_engine.warehouse.schema_manager import SchemaManager

logger = get_logger(__name__)


@dataclass
class AnalyticsEngine:
    """Every long-lived component of one engine process."""
    warehouse_engine: object
    source_engine: object
    cache: RedisClient
    query_executor: QueryExecutor
    schema_manager: SchemaManager
    runner: PipelineRunner
    aggregator: MetricsAggregator
    workers: WorkerPool
    scheduler: Scheduler
    tenants: TenantAnalyticsService

    async def start(self) -> None:
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        logger.info(f"Environment: {settings.ENVIRONMENT}")

        # Bookkeeping tables (in production, use migrations)
        if settings.ENVIRONMENT == "local":
            async with self.warehouse_engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        self.workers.start()
        self.scheduler.start()

    async def stop(self) -> None:
        logger.info("Shutting down analytics engine")
        await self.scheduler.stop()
        # Queued jobs are dropped; in-flight runs are cancelled and recorded as failed
        await self.workers.stop(drain=False)

        try:
            await self.cache.close()
        except Exception as e:
            logger.error(f"Failed to close Redis client: {e}")

        await self.warehouse_engine.dispose()
        if self.source_engine is not self.warehouse_engine:
            await self.source_engine.dispose()
        logger.info("Analytics engine stopped")


def build_engine(cache: Optional[RedisClient] = None) -> AnalyticsEngine:
    """
    Construct and wire the engine components from settings.

    Nothing connects until the first query; ``AnalyticsEngine.start`` starts
    the background tasks.
    """
    warehouse_engine = create_engine(settings.DATABASE_URL, application_name="analytics_engine")
    if settings.SOURCE_DATABASE_URL:
        source_engine = create_engine(settings.SOURCE_DATABASE_URL, application_name="analytics_engine_extract")
    else:
        source_engine = warehouse_engine

    cache = cache or RedisClient()
    query_executor = QueryExecutor(SQLAlchemyWarehouse(warehouse_engine), cache=cache)
    schema_manager = SchemaManager(warehouse_engine, query_executor=query_executor)

    runner = PipelineRunner(
        extractor=Extractor(source_engine=source_engine),
        loader=Loader(engine=warehouse_engine, cache=cache),
        transformer=TransformationEngine(lookup_source=WarehouseLookupSource(source_engine)),
        result_store=DatabaseJobResultStore(create_session_factory(warehouse_engine)),
    )
    aggregator = MetricsAggregator(query_executor, cache=cache)
    workers = WorkerPool(JobDispatcher(runner, aggregator, schema_manager))
    scheduler = Scheduler(workers.enqueue)

    return AnalyticsEngine(
        warehouse_engine=warehouse_engine,
        source_engine=source_engine,
        cache=cache,
        query_executor=query_executor,
        schema_manager=schema_manager,
        runner=runner,
        aggregator=aggregator,
        workers=workers,
        scheduler=scheduler,
        tenants=TenantAnalyticsService(schema_manager, runner, scheduler, aggregator, cache=cache),
    )


@asynccontextmanager
async def lifespan(engine: AnalyticsEngine) -> AsyncIterator[AnalyticsEngine]:
    """Run ``engine`` for the duration of the block."""
    await engine.start()
    try:
        yield engine
    finally:
        await engine.stop()


async def serve() -> None:
    """Run the engine until cancelled."""
    setup_logging()
    if settings.ENABLE_METRICS:
        start_http_server(settings.METRICS_PORT, registry=registry)
        logger.info(f"Prometheus metrics exposed on port {settings.METRICS_PORT}")

    async with lifespan(build_engine()):
        await asyncio.Event().wait()


def main() -> None:
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
