"""Interval-bounded continuous profiling.

``ContinuousProfiler`` keeps one sampling session open, flushes it every
``interval_minutes`` into a compact ``Insights`` record and restarts
sampling immediately, so retained sampling data never outlives one interval.

States: Idle -> Running -> Idle (re-enterable). Start, flush and stop are
serialized through one asyncio.Lock because the sampler cannot be stopped
and started concurrently. Stop waits for an in-flight flush to finish
before taking the final one.

Usage:
    profiler = ContinuousProfiler(max_memory_budget_mb=200, interval_minutes=30)
    await profiler.start_continuous_profiling()
    ...
    final = await profiler.stop_continuous_profiling()
"""

import asyncio
import dataclasses
import inspect
import json
import time
from collections.abc import Callable
from typing import Any

from beartype import beartype

from perfscope._adapter import LocalSamplingAdapter, SamplingAdapter
from perfscope._budget import BudgetWarning, estimate_budget, validate_budget
from perfscope._errors import (
    AlreadyRunning,
    ExtractionError,
    MissingRequiredConfig,
    NotRunning,
)
from perfscope._insights import (
    compute_gc_impact,
    current_memory_usage,
    extract_memory_hotspots,
    extract_top_functions,
)
from perfscope._logging import resolve_logger
from perfscope._models import GcImpact, Insights, ProfilingSession, RawProfileBundle
from perfscope._scheduler import IntervalScheduler


def estimate_bundle_mb(bundle: RawProfileBundle) -> float:
    """Size of ``bundle`` serialized to JSON, in MB."""
    payload = json.dumps(dataclasses.asdict(bundle), default=str)
    return len(payload.encode("utf-8")) / 1024 / 1024


class ContinuousProfiler:
    """Long-running CPU/heap profiler with a memory budget.

    Args:
        max_memory_budget_mb: Ceiling for retained profiling data (required)
        interval_minutes: Minutes between automatic flushes (default: 60)
        cpu_profiling: Sample CPU stacks (default: True)
        sampling_heap_profiler: Trace heap allocation sites (default: True)
        streaming_mode: Reserved; recorded and reported only (default: True)
        suppress_warnings: Compute budget warnings but do not log them
        logger: Anything ``resolve_logger`` accepts; loguru when omitted
        adapter: Sampling adapter; ``LocalSamplingAdapter()`` when omitted
        on_insights: Called with every timer-driven Insights record; a
            coroutine function is awaited

    Raises:
        MissingRequiredConfig: max_memory_budget_mb was not given
    """

    @beartype
    def __init__(
        self,
        *,
        max_memory_budget_mb: int | float | None = None,
        interval_minutes: int | float = 60,
        cpu_profiling: bool = True,
        sampling_heap_profiler: bool = True,
        streaming_mode: bool = True,
        suppress_warnings: bool = False,
        logger: Any = None,
        adapter: SamplingAdapter | None = None,
        on_insights: Callable[[Insights], Any] | None = None,
    ) -> None:
        if max_memory_budget_mb is None:
            raise MissingRequiredConfig(
                "max_memory_budget_mb is required: set the ceiling (MB) for "
                "retained profiling data, e.g. ContinuousProfiler(max_memory_budget_mb=200)"
            )
        assert max_memory_budget_mb > 0, (
            f"max_memory_budget_mb must be positive: {max_memory_budget_mb}"
        )
        assert interval_minutes > 0, f"interval_minutes must be positive: {interval_minutes}"

        self.max_memory_budget_mb = max_memory_budget_mb
        self.interval_minutes = interval_minutes
        self.cpu_profiling = cpu_profiling
        self.sampling_heap_profiler = sampling_heap_profiler
        self.streaming_mode = streaming_mode
        self.suppress_warnings = suppress_warnings

        self._logger = resolve_logger(logger)
        self._adapter: SamplingAdapter = adapter if adapter is not None else LocalSamplingAdapter()
        self._on_insights = on_insights
        self._scheduler = IntervalScheduler(self._logger)
        self._lock = asyncio.Lock()
        self._session: ProfilingSession | None = None
        self._interval_start = 0.0
        self._current_memory_usage_mb = 0.0
        self.last_insights: Insights | None = None

        self.budget_estimate = estimate_budget(
            interval_minutes, cpu_profiling, sampling_heap_profiler
        )
        self.budget_warnings: list[BudgetWarning] = validate_budget(
            max_memory_budget_mb, interval_minutes, cpu_profiling, sampling_heap_profiler
        )
        if not suppress_warnings:
            for warning in self.budget_warnings:
                self._logger.warn(warning.message, kind=warning.kind.value, **warning.details)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> ProfilingSession | None:
        return self._session

    def _require_running(self, operation: str) -> None:
        if self._session is None:
            raise NotRunning(f"Cannot {operation}: continuous profiling is not running")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_continuous_profiling(self) -> None:
        """Open the sampling session, start sampling and arm the interval timer.

        Raises:
            AlreadyRunning: a session is already active
            AdapterUnavailable: the sampling facility cannot be used here
        """
        async with self._lock:
            if self._session is not None:
                raise AlreadyRunning("Continuous profiling is already running")

            try:
                await self._adapter.open()
                await self._adapter.start_sampling(
                    cpu=self.cpu_profiling, heap=self.sampling_heap_profiler
                )
            except Exception:
                await self._adapter.close()
                raise

            self._session = ProfilingSession(
                is_running=True,
                started_at=time.time(),
                cpu_enabled=self.cpu_profiling,
                heap_enabled=self.sampling_heap_profiler,
            )
            self._interval_start = time.perf_counter()
            self._current_memory_usage_mb = 0.0
            self._scheduler.arm(self.interval_minutes * 60, self._scheduled_flush)

        self._logger.log(
            "Continuous profiling started",
            interval_minutes=self.interval_minutes,
            cpu_profiling=self.cpu_profiling,
            sampling_heap_profiler=self.sampling_heap_profiler,
            streaming_mode=self.streaming_mode,
            max_memory_budget_mb=self.max_memory_budget_mb,
        )

    async def flush_current_interval(self) -> Insights:
        """Collect the current interval into Insights; sampling keeps going.

        Raises:
            NotRunning: no session is active
        """
        async with self._lock:
            self._require_running("flush")
            return await self._flush(restart=True)

    async def stop_continuous_profiling(self) -> Insights:
        """Disarm the timer, take a final flush and close the session.

        A timer-driven flush already in progress completes first.

        Raises:
            NotRunning: no session is active
        """
        self._require_running("stop")
        await self._scheduler.disarm()

        async with self._lock:
            self._require_running("stop")
            try:
                insights = await self._flush(restart=False)
            finally:
                await self._adapter.close()
                self._session = None

        self._logger.log(
            "Continuous profiling stopped",
            final_interval_ms=f"{insights.duration_ms:.2f}",
        )
        return insights

    async def __aenter__(self) -> "ContinuousProfiler":
        await self.start_continuous_profiling()
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self.is_running:
            await self.stop_continuous_profiling()

    # ------------------------------------------------------------------
    # Budget queries
    # ------------------------------------------------------------------

    def get_current_memory_usage(self) -> float:
        """Estimated retained raw profile data in MB.

        Set from the serialized size of the bundle being processed during a
        flush, and reset to zero once its insights exist.
        """
        return self._current_memory_usage_mb

    def is_memory_budget_exceeded(self) -> bool:
        return self._current_memory_usage_mb > self.max_memory_budget_mb

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def _scheduled_flush(self) -> None:
        async with self._lock:
            if self._session is None:
                return
            insights = await self._flush(restart=True)

        self._logger.log(
            "Profiling interval insights",
            duration_ms=f"{insights.duration_ms:.2f}",
            top_functions=[f.function_name for f in insights.top_functions[:3]],
            memory_hotspots=[h.allocation_site for h in insights.memory_hotspots[:3]],
            gc_count=insights.gc_impact.gc_count,
            heap=insights.memory_usage.heap,
            rss=insights.memory_usage.rss,
        )
        if self._on_insights is not None:
            result = self._on_insights(insights)
            if inspect.isawaitable(result):
                await result

    async def _flush(self, restart: bool) -> Insights:
        """Stop-collect, restart (when asked), then extract. Caller holds the lock."""
        cpu, heap = self.cpu_profiling, self.sampling_heap_profiler

        try:
            bundle = await self._adapter.stop_and_collect(cpu=cpu, heap=heap)
        finally:
            # Sampling resumes even when collection fails
            if restart:
                await self._adapter.start_sampling(cpu=cpu, heap=heap)

        now = time.perf_counter()
        duration_ms = (now - self._interval_start) * 1000
        self._interval_start = now

        self._current_memory_usage_mb = self._measure(bundle)
        if self.is_memory_budget_exceeded():
            self._logger.warn(
                "Collected profile data exceeds the memory budget",
                collected_mb=f"{self._current_memory_usage_mb:.2f}",
                max_memory_budget_mb=self.max_memory_budget_mb,
            )
        try:
            insights = self._extract(bundle, duration_ms)
        finally:
            self._current_memory_usage_mb = 0.0

        self.last_insights = insights
        self._logger.debug(
            "Profiling interval flushed",
            duration_ms=f"{duration_ms:.2f}",
            functions=len(insights.top_functions),
            hotspots=len(insights.memory_hotspots),
            restarted=restart,
        )
        return insights

    def _measure(self, bundle: Any) -> float:
        try:
            return estimate_bundle_mb(bundle)
        except (TypeError, ValueError) as exc:
            self._logger.debug("Could not size raw profile bundle", reason=str(exc))
            return 0.0

    def _extract(self, bundle: Any, duration_ms: float) -> Insights:
        top_functions = self._degrade_on_error(
            "cpu", lambda: extract_top_functions(bundle.cpu_profile, duration_ms), ()
        )
        memory_hotspots = self._degrade_on_error(
            "heap", lambda: extract_memory_hotspots(bundle.heap_profile), ()
        )
        gc_impact = self._degrade_on_error(
            "gc", lambda: compute_gc_impact(bundle.gc_stats), GcImpact()
        )
        return Insights(
            duration_ms=duration_ms,
            top_functions=top_functions,
            memory_hotspots=memory_hotspots,
            gc_impact=gc_impact,
            memory_usage=current_memory_usage(),
        )

    def _degrade_on_error(self, stream: str, extract: Callable[[], Any], fallback: Any) -> Any:
        try:
            return extract()
        except (ExtractionError, AttributeError, TypeError) as exc:
            self._logger.debug(
                "Raw profile data unusable, reporting empty results",
                stream=stream,
                reason=str(exc),
            )
            return fallback
