"""
Cache key grammar shared with the dashboard and reporting layers.

Keys have the shape ``{namespace}:{tenant_id}:{entity_id}``. Other services
read these keys directly, so the shape must not change.
"""
from analytics_engine.core.exceptions import ConfigurationError

ANALYTICS_QUERY = "analytics-query"
REALTIME_METRICS = "realtime-metrics"
METRIC_AGGREGATIONS = "metric-aggregations"
ETL_OUTPUT = "etl-output"

NAMESPACES = frozenset({ANALYTICS_QUERY, REALTIME_METRICS, METRIC_AGGREGATIONS, ETL_OUTPUT})


def build_cache_key(namespace: str, tenant_id: str, entity_id: str) -> str:
    """Build a tenant-scoped cache key."""
    if namespace not in NAMESPACES:
        raise ConfigurationError(f"Unknown cache namespace: {namespace}")
    for part_name, part in (("tenant_id", tenant_id), ("entity_id", entity_id)):
        if not part or ":" in part:
            raise ConfigurationError(f"Invalid cache key {part_name}: {part!r}")
    return f"{namespace}:{tenant_id}:{entity_id}"


def tenant_pattern(namespace: str, tenant_id: str) -> str:
    """Glob pattern matching every key of ``namespace`` for one tenant."""
    return f"{build_cache_key(namespace, tenant_id, '_')[:-1]}*"
