"""Tests for ContinuousProfiler.

The sampling adapter is scripted (FakeAdapter) so call ordering and raw data
are deterministic; everything else is the real implementation.
"""

import asyncio

import pytest
from beartype.roar import BeartypeCallHintParamViolation

from conftest import FakeAdapter, RecordingLogger
from perfscope import (
    AdapterUnavailable,
    AlreadyRunning,
    CallFrame,
    ContinuousProfiler,
    CpuProfile,
    GcStats,
    HeapProfile,
    HeapSample,
    Insights,
    MissingRequiredConfig,
    NotRunning,
    ProfileNode,
    RawProfileBundle,
    WarningKind,
)
from perfscope._continuous import estimate_bundle_mb


def make_profiler(adapter, logger=None, **overrides) -> ContinuousProfiler:
    config = {
        "max_memory_budget_mb": 200,
        "interval_minutes": 60,
        "logger": logger if logger is not None else RecordingLogger(),
        "adapter": adapter,
    }
    config.update(overrides)
    return ContinuousProfiler(**config)


def sample_bundle() -> RawProfileBundle:
    cpu = CpuProfile(
        nodes=(
            ProfileNode(id=1, call_frame=CallFrame("slowFn", "app.py", 10), hit_count=20),
            ProfileNode(id=2, call_frame=CallFrame("fastFn", "app.py", 30), hit_count=5),
        ),
        interval_us=1000,
    )
    heap = HeapProfile(
        samples=(
            HeapSample(size=64, stack=(CallFrame("small", "b.py", 2),)),
            HeapSample(size=2048, stack=(CallFrame("big", "a.py", 1),)),
        )
    )
    return RawProfileBundle(cpu_profile=cpu, heap_profile=heap, gc_stats=GcStats(4.0, 2))


# ---------------------------------------------------------------------------
# Construction and budget warnings
# ---------------------------------------------------------------------------

class TestConstruction:
    def test_missing_budget_raises(self, adapter):
        with pytest.raises(MissingRequiredConfig, match="max_memory_budget_mb"):
            ContinuousProfiler(adapter=adapter)

    def test_missing_budget_is_a_value_error(self, adapter):
        with pytest.raises(ValueError):
            ContinuousProfiler(adapter=adapter, interval_minutes=10)

    def test_missing_budget_raised_before_adapter_is_touched(self, adapter):
        with pytest.raises(MissingRequiredConfig):
            ContinuousProfiler(adapter=adapter)
        assert adapter.calls == []

    def test_defaults(self, adapter):
        profiler = ContinuousProfiler(max_memory_budget_mb=100, adapter=adapter)
        assert profiler.interval_minutes == 60
        assert profiler.cpu_profiling is True
        assert profiler.sampling_heap_profiler is True
        assert profiler.streaming_mode is True
        assert profiler.suppress_warnings is False
        assert profiler.is_running is False
        assert profiler.session is None

    def test_beartype_rejects_non_bool_flag(self, adapter):
        with pytest.raises(BeartypeCallHintParamViolation):
            ContinuousProfiler(max_memory_budget_mb=100, cpu_profiling="yes", adapter=adapter)

    def test_non_positive_budget_raises(self, adapter):
        with pytest.raises(AssertionError, match="positive"):
            ContinuousProfiler(max_memory_budget_mb=0, adapter=adapter)

    def test_high_risk_and_long_interval_both_warn(self, adapter, recorder):
        profiler = make_profiler(
            adapter,
            recorder,
            max_memory_budget_mb=50,
            interval_minutes=300,
        )

        kinds = [data["kind"] for data in recorder.data("warn")]
        assert kinds == [WarningKind.HIGH_MEMORY_RISK.value, WarningKind.LONG_INTERVAL.value]
        assert profiler.budget_estimate.estimated_mb_per_minute == pytest.approx(1.5)
        assert profiler.budget_estimate.projected_usage_mb == pytest.approx(450.0)
        assert recorder.data("warn")[0]["projected_usage_mb"] == pytest.approx(450.0)

    def test_suppress_warnings_emits_nothing_but_still_computes(self, adapter, recorder):
        profiler = make_profiler(
            adapter,
            recorder,
            max_memory_budget_mb=50,
            interval_minutes=300,
            suppress_warnings=True,
        )

        assert recorder.messages("warn") == []
        assert len(profiler.budget_warnings) == 2

    def test_sane_config_emits_no_warnings(self, adapter, recorder):
        make_profiler(adapter, recorder, max_memory_budget_mb=500, interval_minutes=30)
        assert recorder.messages("warn") == []


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class TestStateGuards:
    def test_stop_while_idle_raises(self, adapter):
        profiler = make_profiler(adapter)
        with pytest.raises(NotRunning):
            asyncio.run(profiler.stop_continuous_profiling())

    def test_flush_while_idle_raises(self, adapter):
        profiler = make_profiler(adapter)
        with pytest.raises(NotRunning):
            asyncio.run(profiler.flush_current_interval())

    def test_start_while_running_raises(self, adapter):
        profiler = make_profiler(adapter)

        async def scenario():
            await profiler.start_continuous_profiling()
            try:
                with pytest.raises(AlreadyRunning):
                    await profiler.start_continuous_profiling()
            finally:
                await profiler.stop_continuous_profiling()

        asyncio.run(scenario())
        assert adapter.calls.count("open") == 1

    def test_start_flush_stop_lifecycle(self, adapter):
        profiler = make_profiler(adapter)

        async def scenario():
            await profiler.start_continuous_profiling()
            assert profiler.is_running
            assert profiler.session.cpu_enabled and profiler.session.heap_enabled
            await profiler.flush_current_interval()
            final = await profiler.stop_continuous_profiling()
            assert not profiler.is_running
            return final

        final = asyncio.run(scenario())
        assert isinstance(final, Insights)
        assert adapter.calls == ["open", "start", "stop", "start", "stop", "close"]

    def test_can_restart_after_stop(self, adapter):
        profiler = make_profiler(adapter)

        async def scenario():
            for _ in range(2):
                await profiler.start_continuous_profiling()
                await profiler.stop_continuous_profiling()

        asyncio.run(scenario())
        assert adapter.calls.count("open") == 2
        assert adapter.calls.count("close") == 2

    def test_adapter_unavailable_leaves_idle(self, recorder):
        failing = FakeAdapter(fail_open=True)
        profiler = make_profiler(failing, recorder)

        with pytest.raises(AdapterUnavailable, match="relaunch"):
            asyncio.run(profiler.start_continuous_profiling())

        assert profiler.is_running is False
        assert failing.calls == ["open", "close"]

    def test_async_context_manager(self, adapter):
        profiler = make_profiler(adapter)

        async def scenario():
            async with profiler:
                assert profiler.is_running
            assert not profiler.is_running

        asyncio.run(scenario())
        assert adapter.calls[-1] == "close"


# ---------------------------------------------------------------------------
# Flushing
# ---------------------------------------------------------------------------

class TestFlush:
    def test_restart_precedes_returned_insights(self, adapter):
        profiler = make_profiler(adapter)

        async def scenario():
            await profiler.start_continuous_profiling()
            calls_before = len(adapter.calls)
            await profiler.flush_current_interval()
            calls_at_return = adapter.calls[calls_before:]
            await profiler.stop_continuous_profiling()
            return calls_at_return

        assert asyncio.run(scenario()) == ["stop", "start"]

    def test_final_flush_does_not_restart(self, adapter):
        profiler = make_profiler(adapter)

        async def scenario():
            await profiler.start_continuous_profiling()
            await profiler.stop_continuous_profiling()

        asyncio.run(scenario())
        assert adapter.calls == ["open", "start", "stop", "close"]

    def test_failed_collection_still_restarts_sampling(self):
        calls = {"n": 0}

        def flaky_bundle():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("snapshot failed")
            return sample_bundle()

        adapter = FakeAdapter([flaky_bundle])
        profiler = make_profiler(adapter)

        async def scenario():
            await profiler.start_continuous_profiling()
            with pytest.raises(RuntimeError, match="snapshot failed"):
                await profiler.flush_current_interval()
            calls_after_failure = list(adapter.calls)
            assert profiler.is_running
            insights = await profiler.flush_current_interval()
            await profiler.stop_continuous_profiling()
            return calls_after_failure, insights

        calls_after_failure, insights = asyncio.run(scenario())
        assert calls_after_failure == ["open", "start", "stop", "start"]
        assert insights.top_functions[0].function_name == "slowFn"

    def test_insights_are_ranked(self):
        adapter = FakeAdapter([sample_bundle()])
        profiler = make_profiler(adapter)

        async def scenario():
            await profiler.start_continuous_profiling()
            insights = await profiler.flush_current_interval()
            await profiler.stop_continuous_profiling()
            return insights

        insights = asyncio.run(scenario())
        assert [f.function_name for f in insights.top_functions] == ["slowFn", "fastFn"]
        assert insights.top_functions[0].self_time_ms == pytest.approx(20.0)
        assert insights.memory_hotspots[0].size_bytes == 2048
        assert insights.memory_hotspots[0].allocation_site.startswith("big")
        assert insights.memory_hotspots[1].allocation_site.startswith("small")
        assert insights.gc_impact.gc_count == 2
        assert insights.gc_impact.avg_gc_duration_ms == pytest.approx(2.0)
        assert insights.memory_usage.rss.endswith("MB")
        assert profiler.last_insights == insights

    def test_absent_raw_data_degrades_to_empty(self, adapter):
        profiler = make_profiler(adapter)

        async def scenario():
            await profiler.start_continuous_profiling()
            insights = await profiler.flush_current_interval()
            await profiler.stop_continuous_profiling()
            return insights

        insights = asyncio.run(scenario())
        assert insights.top_functions == ()
        assert insights.memory_hotspots == ()

    def test_malformed_raw_data_degrades_to_empty(self, recorder):
        broken_cpu = CpuProfile(
            nodes=(ProfileNode(id=1, call_frame=CallFrame("f"), hit_count=1, children=(99,)),),
            interval_us=1000,
        )
        adapter = FakeAdapter([RawProfileBundle(cpu_profile=broken_cpu), object()])
        profiler = make_profiler(adapter, recorder)

        async def scenario():
            await profiler.start_continuous_profiling()
            first = await profiler.flush_current_interval()
            second = await profiler.flush_current_interval()
            await profiler.stop_continuous_profiling()
            return first, second

        first, second = asyncio.run(scenario())
        assert first.top_functions == ()
        assert second.top_functions == ()
        assert second.memory_hotspots == ()
        assert any("unusable" in message for message in recorder.messages("debug"))

    def test_memory_accumulator_is_zero_after_flush(self):
        adapter = FakeAdapter([sample_bundle()])
        profiler = make_profiler(adapter)

        async def scenario():
            await profiler.start_continuous_profiling()
            await profiler.flush_current_interval()
            usage = profiler.get_current_memory_usage()
            exceeded = profiler.is_memory_budget_exceeded()
            await profiler.stop_continuous_profiling()
            return usage, exceeded

        assert asyncio.run(scenario()) == (0.0, False)

    def test_budget_queries_valid_while_idle(self, adapter):
        profiler = make_profiler(adapter)
        assert profiler.get_current_memory_usage() == 0.0
        assert profiler.is_memory_budget_exceeded() is False

    def test_bundle_size_estimate_is_positive(self):
        assert estimate_bundle_mb(sample_bundle()) > 0
        assert estimate_bundle_mb(sample_bundle()) < 1

    def test_concurrent_flushes_and_stop_never_overlap(self, adapter):
        profiler = make_profiler(adapter)

        async def scenario():
            await profiler.start_continuous_profiling()
            return await asyncio.gather(
                profiler.flush_current_interval(),
                profiler.flush_current_interval(),
                profiler.stop_continuous_profiling(),
            )

        results = asyncio.run(scenario())
        assert all(isinstance(r, Insights) for r in results)
        assert adapter.overlaps == 0
        assert adapter.calls[-1] == "close"


# ---------------------------------------------------------------------------
# Timer-driven flushes
# ---------------------------------------------------------------------------

class TestScheduledFlush:
    # 0.0005 minutes == 30ms
    INTERVAL = 0.0005

    def test_timer_flushes_and_reports_insights(self):
        adapter = FakeAdapter([sample_bundle()])
        received: list[Insights] = []
        profiler = make_profiler(
            adapter, interval_minutes=self.INTERVAL, on_insights=received.append
        )

        async def scenario():
            await profiler.start_continuous_profiling()
            await asyncio.sleep(0.2)
            await profiler.stop_continuous_profiling()

        asyncio.run(scenario())
        assert len(received) >= 2
        assert received[0].top_functions[0].function_name == "slowFn"
        assert adapter.overlaps == 0

    def test_timer_survives_failing_flush(self, recorder):
        calls = {"n": 0}

        def flaky_bundle():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("sampler hiccup")
            return sample_bundle()

        adapter = FakeAdapter([flaky_bundle])
        received: list[Insights] = []
        profiler = make_profiler(
            adapter,
            recorder,
            interval_minutes=self.INTERVAL,
            on_insights=received.append,
        )

        async def scenario():
            await profiler.start_continuous_profiling()
            await asyncio.sleep(0.25)
            assert profiler.is_running
            await profiler.stop_continuous_profiling()

        asyncio.run(scenario())
        assert adapter.calls[:4] == ["open", "start", "stop", "start"]
        assert any("Scheduled flush failed" in m for m in recorder.messages("error"))
        assert len(received) >= 1

    def test_coroutine_callback_is_awaited(self):
        adapter = FakeAdapter([sample_bundle()])
        received: list[Insights] = []

        async def on_insights(insights):
            await asyncio.sleep(0)
            received.append(insights)

        profiler = make_profiler(
            adapter, interval_minutes=self.INTERVAL, on_insights=on_insights
        )

        async def scenario():
            await profiler.start_continuous_profiling()
            await asyncio.sleep(0.2)
            await profiler.stop_continuous_profiling()

        asyncio.run(scenario())
        assert len(received) >= 2
        assert received[0].top_functions[0].function_name == "slowFn"
