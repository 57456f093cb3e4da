"""
Pipeline runner tests.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from analytics_engine.core.exceptions import ConfigurationError, ExtractError, PipelineNotFoundError
from analytics_engine.models.schemas.pipeline import PipelineStatus
from analytics_engine.pipelines.runner import PipelineRunner

from fakes import StubExtractor, StubLoader, make_pipeline


def build_runner(extractor=None, loader=None, **kwargs):
    runner = PipelineRunner(extractor or StubExtractor(), loader or StubLoader(), **kwargs)
    return runner


class TestRegistry:
    def test_register_and_lookup(self):
        runner = build_runner()
        runner.register(make_pipeline("p1", "acme"))
        runner.register(make_pipeline("p2", "globex"))

        assert runner.get("p1").tenant_id == "acme"
        assert [p.pipeline_id for p in runner.pipelines_for_tenant("globex")] == ["p2"]

    def test_unknown_pipeline(self):
        with pytest.raises(PipelineNotFoundError):
            build_runner().get("missing")

    def test_unregister(self):
        runner = build_runner()
        runner.register(make_pipeline("p1"))

        assert runner.unregister("p1") is True
        assert runner.unregister("p1") is False


class TestRun:
    @pytest.mark.asyncio
    async def test_successful_run(self):
        extractor = StubExtractor(records=[{"amt": 1}, {"amt": -2}, {"amt": 3}])
        loader = StubLoader()
        runner = build_runner(extractor, loader)
        pipeline = make_pipeline(steps=[
            {"type": "validate", "id": "v", "order": 1, "rules": [{"field": "amt", "min": 0}]},
        ])
        runner.register(pipeline)

        result = await runner.run("p1")

        assert result.status == PipelineStatus.COMPLETED
        assert result.records_processed == 3
        assert result.records_successful == 2
        assert result.records_failed == 1
        assert loader.batches == [[{"amt": 1}, {"amt": 3}]]
        assert pipeline.status == PipelineStatus.COMPLETED
        assert pipeline.last_run == result.start_time
        assert result.performance.total_ms >= result.performance.extract_ms
        assert not runner.is_running("p1")

    @pytest.mark.asyncio
    async def test_zero_records_is_success(self):
        runner = build_runner()
        runner.register(make_pipeline())

        result = await runner.run("p1")

        assert result.status == PipelineStatus.COMPLETED
        assert result.records_processed == 0
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_incremental_runs_use_previous_start_time(self):
        extractor = StubExtractor()
        runner = build_runner(extractor)
        runner.register(make_pipeline())

        first = await runner.run("p1")
        await runner.run("p1")

        assert extractor.calls == [None, first.start_time]

    @pytest.mark.asyncio
    async def test_full_extract_without_watermark(self):
        extractor = StubExtractor()
        runner = build_runner(extractor)
        runner.register(make_pipeline(source={"kind": "database", "tables": ["orders"]}))

        await runner.run("p1")
        await runner.run("p1")

        assert extractor.calls == [None, None]

    @pytest.mark.asyncio
    async def test_concurrent_runs_share_one_execution(self):
        gate = asyncio.Event()
        extractor = StubExtractor(records=[{"amt": 1}], gate=gate)
        loader = StubLoader()
        runner = build_runner(extractor, loader)
        runner.register(make_pipeline())

        first = asyncio.create_task(runner.run("p1"))
        second = asyncio.create_task(runner.run("p1"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert runner.is_running("p1")

        gate.set()
        results = await asyncio.gather(first, second)

        assert len(extractor.calls) == 1
        assert len(loader.batches) == 1
        assert results[0] is results[1]
        assert len(runner.get_history("p1")) == 1

    @pytest.mark.asyncio
    async def test_cancelled_joiner_does_not_cancel_the_run(self):
        gate = asyncio.Event()
        runner = build_runner(StubExtractor(gate=gate))
        runner.register(make_pipeline())

        owner = asyncio.create_task(runner.run("p1"))
        joiner = asyncio.create_task(runner.run("p1"))
        await asyncio.sleep(0)
        joiner.cancel()
        gate.set()

        result = await owner
        assert result.status == PipelineStatus.COMPLETED
        with pytest.raises(asyncio.CancelledError):
            await joiner

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_raised(self):
        runner = build_runner(StubExtractor(error=ExtractError("source down")))
        pipeline = make_pipeline()
        runner.register(pipeline)

        with pytest.raises(ExtractError) as exc_info:
            await runner.run("p1")

        result = exc_info.value.job_result
        assert result.status == PipelineStatus.FAILED
        assert result.errors == ["source down"]
        assert pipeline.status == PipelineStatus.FAILED
        assert pipeline.last_run is None
        assert runner.get_last_result("p1") is result
        assert not runner.is_running("p1")

    @pytest.mark.asyncio
    async def test_joiners_receive_the_same_error(self):
        gate = asyncio.Event()
        runner = build_runner(StubExtractor(gate=gate, error=ExtractError("source down")))
        runner.register(make_pipeline())

        tasks = [asyncio.create_task(runner.run("p1")) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(outcome, ExtractError) for outcome in outcomes)
        assert len({id(outcome) for outcome in outcomes}) == 1

    @pytest.mark.asyncio
    async def test_disabled_pipeline(self):
        runner = build_runner()
        runner.register(make_pipeline(enabled=False))

        with pytest.raises(ConfigurationError):
            await runner.run("p1")

    @pytest.mark.asyncio
    async def test_invalid_steps_fail_the_run(self):
        loader = StubLoader()
        runner = build_runner(StubExtractor(records=[{"x": 1}]), loader)
        runner.register(make_pipeline(steps=[
            {"type": "enrich", "id": "e", "order": 1,
             "joins": [{"table": "products", "on": "x", "fields": ["cost"]}]},
        ]))

        with pytest.raises(ConfigurationError):
            await runner.run("p1")
        assert loader.batches == []

    @pytest.mark.asyncio
    async def test_result_store_failure_does_not_fail_the_run(self):
        store = AsyncMock()
        store.save.side_effect = RuntimeError("db down")
        runner = build_runner(result_store=store)
        runner.register(make_pipeline())

        result = await runner.run("p1")

        assert result.status == PipelineStatus.COMPLETED
        store.save.assert_awaited_once_with(result)


class TestStatus:
    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        runner = build_runner(history_size=2)
        runner.register(make_pipeline())
        for _ in range(3):
            await runner.run("p1")

        assert len(runner.get_history("p1")) == 2
        assert runner.get_history("p1", limit=1) == [runner.get_last_result("p1")]

    @pytest.mark.asyncio
    async def test_pipeline_status(self):
        runner = build_runner()
        runner.register(make_pipeline("p1", "acme"))
        runner.register(make_pipeline("p2", "acme"))

        assert runner.get_last_run_time("acme") is None
        result = await runner.run("p1")
        status = runner.get_pipeline_status("p1")

        assert status["status"] == "completed"
        assert status["running"] is False
        assert status["last_result"]["records_processed"] == 0
        assert runner.get_last_run_time("acme") == result.start_time
