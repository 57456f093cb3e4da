"""
Job result persistence mapping tests.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from analytics_engine.models.schemas.pipeline import JobResult, PerformanceBreakdown, PipelineStatus
from analytics_engine.services.job_results import DatabaseJobResultStore, to_model


def failed_result():
    return JobResult(
        pipeline_id="p1",
        tenant_id="acme",
        status=PipelineStatus.FAILED,
        start_time=datetime(2024, 1, 1, 10, tzinfo=timezone.utc),
        end_time=datetime(2024, 1, 1, 10, 1, tzinfo=timezone.utc),
        records_processed=10,
        records_successful=0,
        records_failed=2,
        errors=["[validate] record 3: Field 'id' is required", "Load failed"],
        performance=PerformanceBreakdown(extract_ms=1.0, transform_ms=2.0, load_ms=3.0, total_ms=6.5),
    )


def test_model_keeps_counts_and_timings():
    run = to_model(failed_result())

    assert run.pipeline_id == "p1"
    assert run.status == PipelineStatus.FAILED
    assert run.started_at == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert run.records_failed == 2
    assert run.error_message == "[validate] record 3: Field 'id' is required"
    assert run.errors == ["[validate] record 3: Field 'id' is required", "Load failed"]
    assert (run.extract_ms, run.transform_ms, run.load_ms, run.total_ms) == (1.0, 2.0, 3.0, 6.5)


def test_successful_run_has_no_error_message():
    run = to_model(JobResult(
        pipeline_id="p1",
        tenant_id="acme",
        status=PipelineStatus.COMPLETED,
        start_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
        end_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
    ))

    assert run.error_message is None
    assert run.errors == []


@pytest.mark.asyncio
async def test_store_adds_and_commits_one_row():
    session = AsyncMock()
    session.add = MagicMock()

    await DatabaseJobResultStore(lambda: session).save(failed_result())

    added = session.add.call_args.args[0]
    assert added.pipeline_id == "p1"
    session.commit.assert_awaited_once()
