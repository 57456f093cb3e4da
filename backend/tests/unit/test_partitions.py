"""
Partition planning and warehouse table definition tests.
"""
import random
from datetime import date, timedelta

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateTable

from analytics_engine.core.exceptions import ConfigurationError
from analytics_engine.models.schemas.warehouse import HashPartitionStrategy, RangePartitionStrategy
from analytics_engine.warehouse.partitions import (
    add_months,
    hash_partition_ddl,
    partition_for_key,
    plan_hash_partitions,
    plan_range_partitions,
    range_partition_ddl,
    range_partition_for,
    retention_strategy,
    tenant_schema_name,
)
from analytics_engine.warehouse.tables import (
    FACT_TABLES,
    PARTITIONED_TABLES,
    build_tenant_metadata,
    declared_indexes,
)


class TestTenantSchemaName:
    def test_sanitizes(self):
        assert tenant_schema_name("Acme-Co.EU") == "analytics_acme_co_eu"
        assert tenant_schema_name("t1; DROP SCHEMA public") == "analytics_t1__drop_schema_public"

    def test_deterministic(self):
        assert tenant_schema_name("acme") == tenant_schema_name("acme")

    def test_rejects_empty_and_overlong(self):
        with pytest.raises(ConfigurationError):
            tenant_schema_name("")
        with pytest.raises(ConfigurationError):
            tenant_schema_name("x" * 60)


class TestHashPartitions:
    @pytest.mark.parametrize("count", [1, 2, 8, 13, 64])
    def test_every_key_maps_to_exactly_one_partition(self, count):
        partitions = plan_hash_partitions("dim_customer", HashPartitionStrategy(column="customer_id", partition_count=count))
        rng = random.Random(count)

        for key in (rng.randint(-10**12, 10**12) for _ in range(2000)):
            owner = partition_for_key(key, partitions)
            assert owner.remainder == key % count

    def test_names_and_ddl(self):
        partitions = plan_hash_partitions("dim_customer", HashPartitionStrategy(column="customer_id", partition_count=4))

        assert [p.name for p in partitions] == ["dim_customer_h0", "dim_customer_h1", "dim_customer_h2", "dim_customer_h3"]
        assert hash_partition_ddl("analytics_acme", "dim_customer", partitions[3]) == (
            "CREATE TABLE IF NOT EXISTS analytics_acme.dim_customer_h3 PARTITION OF analytics_acme.dim_customer "
            "FOR VALUES WITH (MODULUS 4, REMAINDER 3)"
        )

    def test_gap_detected(self):
        partitions = plan_hash_partitions("t", HashPartitionStrategy(column="k", partition_count=4))
        with pytest.raises(ConfigurationError):
            partition_for_key(6, partitions[:2])


class TestRangePartitions:
    @pytest.mark.parametrize("interval, start", [
        ("day", date(2024, 2, 27)),
        ("week", date(2024, 12, 25)),
        ("month", date(2023, 11, 17)),
    ])
    def test_partitions_are_contiguous(self, interval, start):
        strategy = RangePartitionStrategy(column="d", interval=interval, start=start, count=30)
        partitions = plan_range_partitions("fact_transactions", strategy)

        assert len(partitions) == 30
        for current, following in zip(partitions, partitions[1:]):
            assert current.lower < current.upper
            assert current.upper == following.lower

        day = partitions[0].lower
        while day < partitions[-1].upper:
            assert sum(p.contains(day) for p in partitions) == 1
            day += timedelta(days=1)

    def test_monthly_alignment_and_names(self):
        strategy = RangePartitionStrategy(column="d", interval="month", start=date(2024, 11, 20), count=3)
        partitions = plan_range_partitions("fact_inventory", strategy)

        assert [(p.lower, p.upper) for p in partitions] == [
            (date(2024, 11, 1), date(2024, 12, 1)),
            (date(2024, 12, 1), date(2025, 1, 1)),
            (date(2025, 1, 1), date(2025, 2, 1)),
        ]
        assert partitions[0].name == "fact_inventory_p20241101"
        assert range_partition_for(date(2024, 12, 31), partitions) is partitions[1]
        assert range_partition_for(date(2025, 2, 1), partitions) is None

    def test_weeks_start_on_monday(self):
        strategy = RangePartitionStrategy(column="d", interval="week", start=date(2024, 1, 4), count=1)
        assert plan_range_partitions("t", strategy)[0].lower == date(2024, 1, 1)

    def test_ddl(self):
        strategy = RangePartitionStrategy(column="d", interval="month", start=date(2024, 1, 1), count=1)
        partition = plan_range_partitions("fact_transactions", strategy)[0]

        assert range_partition_ddl("analytics_acme", "fact_transactions", partition) == (
            "CREATE TABLE IF NOT EXISTS analytics_acme.fact_transactions_p20240101 "
            "PARTITION OF analytics_acme.fact_transactions "
            "FOR VALUES FROM ('2024-01-01') TO ('2024-02-01')"
        )

    def test_retention_window_covers_history_and_future(self):
        today = date(2024, 6, 15)
        strategy = retention_strategy("transaction_date", retention_days=365, months_ahead=12, today=today)
        partitions = plan_range_partitions("fact_transactions", strategy)

        assert partitions[0].lower == date(2023, 6, 1)
        assert partitions[-1].upper == date(2025, 7, 1)
        assert range_partition_for(today - timedelta(days=365), partitions) is not None
        assert range_partition_for(today, partitions) is not None

    def test_add_months(self):
        assert add_months(date(2024, 1, 1), -1) == date(2023, 12, 1)
        assert add_months(date(2024, 11, 1), 14) == date(2026, 1, 1)


class TestTables:
    def test_fact_tables_are_range_partitioned_with_date_in_key(self):
        metadata = build_tenant_metadata("analytics_acme")
        for name in FACT_TABLES:
            table = metadata.tables[f"analytics_acme.{name}"]
            column = PARTITIONED_TABLES[name].column
            ddl = str(CreateTable(table).compile(dialect=postgresql.dialect()))

            assert f"PARTITION BY RANGE ({column})" in ddl
            assert column in [col.name for col in table.primary_key.columns]
            assert f"CREATE TABLE analytics_acme.{name}" in ddl

    def test_dim_customer_is_hash_partitioned(self):
        table = build_tenant_metadata("analytics_acme").tables["analytics_acme.dim_customer"]
        ddl = str(CreateTable(table).compile(dialect=postgresql.dialect()))
        assert "PARTITION BY HASH (customer_id)" in ddl

    def test_tenant_copies_are_independent(self):
        first = build_tenant_metadata("analytics_a")
        second = build_tenant_metadata("analytics_b")

        assert {t.schema for t in first.tables.values()} == {"analytics_a"}
        assert {t.schema for t in second.tables.values()} == {"analytics_b"}

    def test_declared_indexes(self):
        indexes = declared_indexes()
        assert [index.name for index in indexes["fact_customers"]] == [
            "idx_fact_customers_customer_date",
            "idx_fact_customers_tenant_date",
        ]
        assert indexes["dim_date"] == []
