"""
Tenant analytics lifecycle: schema, default pipelines and trigger sets.
"""
from typing import Any, Dict, List

from analytics_engine.cache.keys import METRIC_AGGREGATIONS, REALTIME_METRICS, tenant_pattern
from analytics_engine.cache.redis_client import RedisClient
from analytics_engine.core.exceptions import CacheError
from analytics_engine.core.logging import get_logger
from analytics_engine.models.schemas.analytics import (
    AggregationJobPayload,
    AnalyticsConfiguration,
    EtlJobPayload,
    MaintenanceJobPayload,
)
from analytics_engine.models.schemas.pipeline import PipelineDefinition
from analytics_engine.pipelines.runner import PipelineRunner
from analytics_engine.scheduling.scheduler import CronTrigger, Scheduler
from analytics_engine.services.metrics_aggregation import MetricsAggregator
from analytics_engine.warehouse.partitions import tenant_schema_name
from analytics_engine.warehouse.schema_manager import SchemaManager

logger = get_logger(__name__)

REALTIME_SCHEDULE = "*/5 * * * *"

# Rolls the range partition window forward once a month
MAINTENANCE_SCHEDULE = "0 4 1 * *"

AGGREGATION_SCHEDULES: Dict[str, str] = {
    "hourly": "0 * * * *",
    "daily": "0 1 * * *",
    "weekly": "0 2 * * 0",
    "monthly": "0 3 1 * *",
}


def default_pipelines(tenant_id: str) -> List[PipelineDefinition]:
    """
    Transactions, inventory and customer pipelines for a new tenant.

    Sources are the operational tables. Transaction rows carry their own
    date key; inventory and customer rows are snapshots stamped with the
    run date by the loader.
    """
    schema_name = tenant_schema_name(tenant_id)
    return [
        PipelineDefinition.model_validate({
            "pipeline_id": f"{tenant_id}-transactions-etl",
            "tenant_id": tenant_id,
            "name": "Transactions ETL",
            "source": {"kind": "database", "tables": ["transactions"], "watermark_column": "created_at"},
            "steps": [
                {
                    "type": "validate",
                    "id": "validate-transactions",
                    "order": 1,
                    "rules": [
                        {"field": "id", "required": True},
                        {"field": "transaction_date", "required": True, "type": "date"},
                        {"field": "total_amount", "required": True, "type": "number", "min": 0},
                    ],
                },
                {
                    "type": "map",
                    "id": "derive-unit-price",
                    "order": 2,
                    "calculations": [
                        {
                            "field": "unit_price",
                            "expression": "round(total_amount / quantity, 2) if quantity else total_amount",
                        },
                    ],
                },
            ],
            "destination": {"kind": "warehouse", "schema_name": schema_name, "table": "fact_transactions"},
            "schedule": {"expression": "0 */4 * * *"},
        }),
        PipelineDefinition.model_validate({
            "pipeline_id": f"{tenant_id}-inventory-etl",
            "tenant_id": tenant_id,
            "name": "Inventory ETL",
            "source": {"kind": "database", "tables": ["inventory_levels"], "watermark_column": "updated_at"},
            "steps": [
                {
                    "type": "enrich",
                    "id": "enrich-product-cost",
                    "order": 1,
                    "joins": [
                        {"table": "products", "on": "product_id", "foreign_key": "id", "fields": ["unit_cost"]},
                    ],
                },
                {
                    "type": "map",
                    "id": "inventory-value",
                    "order": 2,
                    "calculations": [
                        {"field": "total_value", "expression": "ending_quantity * unit_cost"},
                    ],
                },
            ],
            "destination": {"kind": "warehouse", "schema_name": schema_name, "table": "fact_inventory"},
            "schedule": {"expression": "0 2 * * *"},
        }),
        PipelineDefinition.model_validate({
            "pipeline_id": f"{tenant_id}-customers-etl",
            "tenant_id": tenant_id,
            "name": "Customers ETL",
            "source": {"kind": "database", "tables": ["customers"], "watermark_column": "updated_at"},
            "steps": [
                {
                    "type": "validate",
                    "id": "validate-customers",
                    "order": 1,
                    "rules": [
                        {"field": "customer_id", "required": True},
                        {"field": "total_spent", "type": "number", "min": 0},
                    ],
                },
                {
                    "type": "map",
                    "id": "average-order-value",
                    "order": 2,
                    "calculations": [
                        {
                            "field": "average_order_value",
                            "expression": "total_spent / total_orders if total_orders else 0",
                        },
                    ],
                },
            ],
            "destination": {"kind": "warehouse", "schema_name": schema_name, "table": "fact_customers"},
            "schedule": {"expression": "0 3 * * *"},
        }),
    ]


def build_tenant_triggers(config: AnalyticsConfiguration, pipelines: List[PipelineDefinition]) -> List[CronTrigger]:
    """Cron triggers for a tenant's enabled pipelines, aggregation intervals and schema maintenance."""
    tenant_id = config.tenant_id
    triggers = [
        CronTrigger(
            trigger_id=f"etl:{pipeline.pipeline_id}",
            tenant_id=tenant_id,
            expression=pipeline.schedule.expression,
            payload=EtlJobPayload(pipeline_id=pipeline.pipeline_id),
        )
        for pipeline in pipelines
        if pipeline.enabled
    ]
    triggers.append(CronTrigger(
        trigger_id=f"aggregation:{tenant_id}:realtime",
        tenant_id=tenant_id,
        expression=REALTIME_SCHEDULE,
        payload=AggregationJobPayload(tenant_id=tenant_id, interval="realtime"),
    ))
    for interval in config.aggregation_intervals:
        triggers.append(CronTrigger(
            trigger_id=f"aggregation:{tenant_id}:{interval}",
            tenant_id=tenant_id,
            expression=AGGREGATION_SCHEDULES[interval],
            payload=AggregationJobPayload(tenant_id=tenant_id, interval=interval),
        ))
    triggers.append(CronTrigger(
        trigger_id=f"maintenance:{tenant_id}",
        tenant_id=tenant_id,
        expression=MAINTENANCE_SCHEDULE,
        payload=MaintenanceJobPayload(tenant_id=tenant_id, retention_days=config.data_retention_days),
    ))
    return triggers


class TenantAnalyticsService:
    """Initializes, reconfigures and deactivates analytics for tenants."""

    def __init__(
        self,
        schema_manager: SchemaManager,
        runner: PipelineRunner,
        scheduler: Scheduler,
        aggregator: MetricsAggregator = None,
        cache: RedisClient = None,
    ):
        self.schema_manager = schema_manager
        self.runner = runner
        self.scheduler = scheduler
        self.aggregator = aggregator
        self.cache = cache

    async def initialize_tenant(self, config: AnalyticsConfiguration) -> Dict[str, Any]:
        """
        Set up analytics for a tenant.

        Ensures the warehouse schema, registers the default pipelines and
        installs the tenant's trigger set.

        Args:
            config: Tenant analytics configuration

        Returns:
            Tenant status
        """
        logger.info(f"Initializing analytics for tenant {config.tenant_id}")
        await self._apply(config)
        return self.get_tenant_status(config.tenant_id)

    async def reconfigure_tenant(self, config: AnalyticsConfiguration) -> Dict[str, Any]:
        """
        Apply a new configuration to an active tenant.

        The previous pipelines and triggers stay in place until the schema
        is ensured and the replacements are built, so a failure here leaves
        the tenant running on its old configuration. Cached metrics of the
        tenant are cleared afterwards.
        """
        tenant_id = config.tenant_id
        logger.info(f"Reconfiguring analytics for tenant {tenant_id}")
        await self._apply(config)

        if self.cache is not None:
            for namespace in (REALTIME_METRICS, METRIC_AGGREGATIONS):
                try:
                    await self.cache.clear_pattern(tenant_pattern(namespace, tenant_id))
                except CacheError as e:
                    logger.warning(f"Could not clear {namespace} cache for tenant {tenant_id}: {e}")

        return self.get_tenant_status(tenant_id)

    async def _apply(self, config: AnalyticsConfiguration) -> None:
        tenant_id = config.tenant_id
        await self.schema_manager.ensure_tenant_schema(tenant_id, retention_days=config.data_retention_days)

        pipelines = default_pipelines(tenant_id)
        triggers = build_tenant_triggers(config, pipelines)
        current = {p.pipeline_id: p for p in self.runner.pipelines_for_tenant(tenant_id)}

        for pipeline in pipelines:
            previous = current.pop(pipeline.pipeline_id, None)
            if previous is not None:
                # incremental extraction resumes from the previous watermark
                pipeline.last_run = previous.last_run
            self.runner.register(pipeline)
        for stale_id in current:
            self.runner.unregister(stale_id)

        if self.aggregator is not None:
            self.aggregator.set_configuration(config)
        self.scheduler.replace_tenant_triggers(tenant_id, triggers)

    def deactivate_tenant(self, tenant_id: str) -> int:
        """
        Stop a tenant's triggers and unregister its pipelines.

        The warehouse schema and its data are kept.

        Returns:
            Number of pipelines unregistered
        """
        self.scheduler.remove_tenant_triggers(tenant_id)
        removed = 0
        for pipeline in self.runner.pipelines_for_tenant(tenant_id):
            if self.runner.unregister(pipeline.pipeline_id):
                removed += 1
        if self.aggregator is not None:
            self.aggregator.remove_configuration(tenant_id)
        logger.info(f"Deactivated analytics for tenant {tenant_id}: {removed} pipelines removed")
        return removed

    def get_tenant_status(self, tenant_id: str) -> Dict[str, Any]:
        return {
            "tenant_id": tenant_id,
            "schema_name": tenant_schema_name(tenant_id),
            "pipelines": [
                self.runner.get_pipeline_status(pipeline.pipeline_id)
                for pipeline in self.runner.pipelines_for_tenant(tenant_id)
            ],
            "last_run": self.runner.get_last_run_time(tenant_id),
            "trigger_count": len(self.scheduler.triggers_for_tenant(tenant_id)),
        }
