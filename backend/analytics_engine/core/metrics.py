"""
Prometheus metrics for pipeline runs, warehouse queries and scheduling.
"""
from prometheus_client import Counter, Histogram, Info
from prometheus_client import CollectorRegistry

from analytics_engine.core.config import settings

# Create a custom registry (can use default if preferred)
registry = CollectorRegistry()

# Application info
app_info = Info('analytics_engine', 'Analytics engine information', registry=registry)
app_info.info({
    'name': settings.APP_NAME,
    'version': settings.APP_VERSION
})

# ETL Pipeline Metrics
etl_pipeline_runs_total = Counter(
    'etl_pipeline_runs_total',
    'Total number of ETL pipeline runs',
    ['tenant_id', 'status'],
    registry=registry
)

etl_pipeline_duration_seconds = Histogram(
    'etl_pipeline_duration_seconds',
    'ETL pipeline run duration in seconds',
    ['phase'],
    buckets=[0.1, 0.5, 1, 5, 15, 60, 300, 900, 3600],
    registry=registry
)

etl_records_total = Counter(
    'etl_records_total',
    'Records handled by ETL pipeline runs',
    ['outcome'],  # processed, successful, failed
    registry=registry
)

etl_duplicate_runs_joined_total = Counter(
    'etl_duplicate_runs_joined_total',
    'Run requests that joined an already in-flight run',
    registry=registry
)

# Warehouse Query Metrics
warehouse_queries_total = Counter(
    'warehouse_queries_total',
    'Total number of analytics queries',
    ['cache_hit'],
    registry=registry
)

warehouse_query_duration_seconds = Histogram(
    'warehouse_query_duration_seconds',
    'Analytics query duration in seconds',
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0],
    registry=registry
)

warehouse_query_timeouts_total = Counter(
    'warehouse_query_timeouts_total',
    'Analytics queries that exceeded their timeout',
    registry=registry
)

# Cache Metrics
cache_errors_total = Counter(
    'cache_errors_total',
    'Cache operations that failed and were bypassed',
    ['operation'],
    registry=registry
)

# Scheduler Metrics
scheduler_triggers_fired_total = Counter(
    'scheduler_triggers_fired_total',
    'Triggers fired by the scheduler',
    ['job_type'],
    registry=registry
)

worker_jobs_total = Counter(
    'worker_jobs_total',
    'Jobs processed by the worker pool',
    ['job_type', 'status'],
    registry=registry
)
