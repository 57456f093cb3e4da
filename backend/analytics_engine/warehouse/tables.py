"""
Tenant warehouse table definitions.

Tables are declared once on a template ``MetaData`` without a schema and
copied into each tenant schema by ``build_tenant_metadata``. Fact tables are
range-partitioned by their date column, so their primary keys include it.
"""
from typing import Dict, List, NamedTuple, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    SmallInteger,
    String,
    Table,
    Time,
)
from sqlalchemy.sql import func

template_metadata = MetaData()

DEFAULT_HASH_PARTITIONS = 8


# Fact tables

fact_transactions = Table(
    "fact_transactions",
    template_metadata,
    Column("id", String(64), primary_key=True),
    Column("tenant_id", String(255), nullable=False),
    Column("transaction_date", Date, primary_key=True),
    Column("transaction_time", Time, nullable=True),
    Column("location_id", String(64), nullable=True),
    Column("customer_id", String(64), nullable=True),
    Column("employee_id", String(64), nullable=True),
    Column("product_id", String(64), nullable=True),
    Column("quantity", Numeric(12, 3), nullable=True),
    Column("unit_price", Numeric(12, 2), nullable=True),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("discount_amount", Numeric(12, 2), nullable=True),
    Column("tax_amount", Numeric(12, 2), nullable=True),
    Column("payment_method", String(50), nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_fact_transactions_tenant_date", "tenant_id", "transaction_date"),
    Index("idx_fact_transactions_location_date", "location_id", "transaction_date"),
    Index("idx_fact_transactions_customer_date", "customer_id", "transaction_date"),
    Index("idx_fact_transactions_product_date", "product_id", "transaction_date"),
    postgresql_partition_by="RANGE (transaction_date)",
)

fact_inventory = Table(
    "fact_inventory",
    template_metadata,
    Column("id", String(64), primary_key=True),
    Column("tenant_id", String(255), nullable=False),
    Column("snapshot_date", Date, primary_key=True),
    Column("location_id", String(64), nullable=True),
    Column("product_id", String(64), nullable=True),
    Column("beginning_quantity", Numeric(12, 3), nullable=True),
    Column("ending_quantity", Numeric(12, 3), nullable=True),
    Column("quantity_sold", Numeric(12, 3), nullable=True),
    Column("quantity_received", Numeric(12, 3), nullable=True),
    Column("quantity_adjusted", Numeric(12, 3), nullable=True),
    Column("unit_cost", Numeric(12, 2), nullable=True),
    Column("total_value", Numeric(14, 2), nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_fact_inventory_tenant_date", "tenant_id", "snapshot_date"),
    Index("idx_fact_inventory_location_date", "location_id", "snapshot_date"),
    Index("idx_fact_inventory_product_date", "product_id", "snapshot_date"),
    postgresql_partition_by="RANGE (snapshot_date)",
)

fact_customers = Table(
    "fact_customers",
    template_metadata,
    Column("id", String(64), primary_key=True),
    Column("tenant_id", String(255), nullable=False),
    Column("snapshot_date", Date, primary_key=True),
    Column("customer_id", String(64), nullable=False),
    Column("location_id", String(64), nullable=True),
    Column("total_orders", Integer, nullable=True),
    Column("total_spent", Numeric(14, 2), nullable=True),
    Column("average_order_value", Numeric(12, 2), nullable=True),
    Column("days_since_last_purchase", Integer, nullable=True),
    Column("loyalty_points", Integer, nullable=True),
    Column("churn_risk", Numeric(5, 4), nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_fact_customers_tenant_date", "tenant_id", "snapshot_date"),
    Index("idx_fact_customers_customer_date", "customer_id", "snapshot_date"),
    postgresql_partition_by="RANGE (snapshot_date)",
)


# Dimension tables

dim_date = Table(
    "dim_date",
    template_metadata,
    Column("date_key", Date, primary_key=True),
    Column("year", SmallInteger, nullable=False),
    Column("quarter", SmallInteger, nullable=False),
    Column("month", SmallInteger, nullable=False),
    Column("week", SmallInteger, nullable=False),
    Column("day_of_year", SmallInteger, nullable=False),
    Column("day_of_month", SmallInteger, nullable=False),
    Column("day_of_week", SmallInteger, nullable=False),
    Column("day_name", String(10), nullable=False),
    Column("month_name", String(10), nullable=False),
    Column("is_weekend", Boolean, nullable=False),
    Column("is_holiday", Boolean, nullable=False, server_default="false"),
    Column("fiscal_year", SmallInteger, nullable=False),
    Column("fiscal_quarter", SmallInteger, nullable=False),
)

dim_location = Table(
    "dim_location",
    template_metadata,
    Column("location_id", String(64), primary_key=True),
    Column("tenant_id", String(255), nullable=False),
    Column("location_name", String(255), nullable=True),
    Column("location_type", String(50), nullable=True),
    Column("address", String(500), nullable=True),
    Column("city", String(100), nullable=True),
    Column("state", String(100), nullable=True),
    Column("country", String(100), nullable=True),
    Column("postal_code", String(20), nullable=True),
    Column("timezone", String(50), nullable=True),
    Column("is_active", Boolean, nullable=False, server_default="true"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_dim_location_tenant", "tenant_id"),
)

dim_product = Table(
    "dim_product",
    template_metadata,
    Column("product_id", String(64), primary_key=True),
    Column("tenant_id", String(255), nullable=False),
    Column("sku", String(100), nullable=True),
    Column("product_name", String(255), nullable=True),
    Column("category", String(100), nullable=True),
    Column("subcategory", String(100), nullable=True),
    Column("brand", String(100), nullable=True),
    Column("unit_of_measure", String(20), nullable=True),
    Column("is_active", Boolean, nullable=False, server_default="true"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_dim_product_tenant_category", "tenant_id", "category"),
)

dim_customer = Table(
    "dim_customer",
    template_metadata,
    Column("customer_id", String(64), primary_key=True),
    Column("tenant_id", String(255), nullable=False),
    Column("customer_type", String(50), nullable=True),
    Column("customer_segment", String(50), nullable=True),
    Column("loyalty_tier", String(50), nullable=True),
    Column("acquisition_channel", String(50), nullable=True),
    Column("is_active", Boolean, nullable=False, server_default="true"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_dim_customer_tenant_segment", "tenant_id", "customer_segment"),
    postgresql_partition_by="HASH (customer_id)",
)

FACT_TABLES = ("fact_transactions", "fact_inventory", "fact_customers")
DIMENSION_TABLES = ("dim_date", "dim_location", "dim_product", "dim_customer")


class PartitionSpec(NamedTuple):
    method: str  # "range" or "hash"
    column: str


PARTITIONED_TABLES: Dict[str, PartitionSpec] = {
    "fact_transactions": PartitionSpec("range", "transaction_date"),
    "fact_inventory": PartitionSpec("range", "snapshot_date"),
    "fact_customers": PartitionSpec("range", "snapshot_date"),
    "dim_customer": PartitionSpec("hash", "customer_id"),
}


# Materialized views

class MaterializedView(NamedTuple):
    name: str
    query: str  # ``{schema}`` is replaced with the quoted tenant schema
    unique_columns: Tuple[str, ...]


MATERIALIZED_VIEWS: List[MaterializedView] = [
    MaterializedView(
        "mv_daily_sales",
        """
        SELECT
            transaction_date,
            COALESCE(location_id, '') AS location_id,
            COUNT(*) AS transaction_count,
            SUM(total_amount) AS total_revenue,
            AVG(total_amount) AS average_order_value,
            COUNT(DISTINCT customer_id) AS unique_customers
        FROM {schema}.fact_transactions
        GROUP BY transaction_date, COALESCE(location_id, '')
        """,
        ("transaction_date", "location_id"),
    ),
    MaterializedView(
        "mv_product_performance",
        """
        SELECT
            product_id,
            COALESCE(location_id, '') AS location_id,
            date_trunc('month', transaction_date)::date AS month,
            SUM(quantity) AS units_sold,
            SUM(total_amount) AS revenue,
            COUNT(DISTINCT customer_id) AS unique_buyers
        FROM {schema}.fact_transactions
        WHERE product_id IS NOT NULL
        GROUP BY product_id, COALESCE(location_id, ''), date_trunc('month', transaction_date)::date
        """,
        ("product_id", "location_id", "month"),
    ),
    MaterializedView(
        "mv_customer_ltv",
        """
        SELECT
            customer_id,
            COALESCE(location_id, '') AS location_id,
            COUNT(*) AS total_orders,
            SUM(total_amount) AS lifetime_value,
            AVG(total_amount) AS avg_order_value,
            MIN(transaction_date) AS first_purchase_date,
            MAX(transaction_date) AS last_purchase_date
        FROM {schema}.fact_transactions
        WHERE customer_id IS NOT NULL
        GROUP BY customer_id, COALESCE(location_id, '')
        """,
        ("customer_id", "location_id"),
    ),
]


def build_tenant_metadata(schema_name: str) -> MetaData:
    """Copy every warehouse table (with its indexes) into ``schema_name``."""
    tenant_metadata = MetaData()
    for table in template_metadata.sorted_tables:
        table.to_metadata(tenant_metadata, schema=schema_name)
    return tenant_metadata


def declared_indexes() -> Dict[str, List[Index]]:
    """Index set per table name, as declared on the template tables."""
    return {
        table.name: sorted(table.indexes, key=lambda index: index.name)
        for table in template_metadata.sorted_tables
    }
