"""Instrumentation helpers: timers, call profiling, memory snapshots, marks.

Design by Contract:
- Elapsed time MUST be non-negative (crash if negative)
- Labels MUST be non-empty
- Optional measurements are explicit None, never missing
- Errors raised by profiled code are re-raised unchanged

All timings use time.perf_counter() and are reported in milliseconds.
Memory is read through read_memory_counters() (psutil).
"""

import functools
import gc
import inspect
import time
from collections.abc import Awaitable, Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, NamedTuple, TypeVar

from beartype import beartype

from perfscope._insights import format_bytes, format_delta, read_memory_counters
from perfscope._logging import ProfilerLogger, emit, resolve_logger
from perfscope._models import MemoryCounters, MemoryDelta, ProfileResult

T = TypeVar("T")

DEFAULT_GC_THRESHOLD_MB = 100


def _heap_mb(counters: MemoryCounters) -> float:
    return counters.heap_used / 1024 / 1024


def _collect_if_over(
    counters: MemoryCounters, enable_gc: bool, gc_threshold_mb: int | float
) -> tuple[MemoryCounters, bool]:
    """Run gc.collect() when heap use is above the threshold.

    Returns the counters to report (re-read after a collection) and whether
    a collection ran.
    """
    if enable_gc and _heap_mb(counters) > gc_threshold_mb:
        gc.collect()
        return read_memory_counters(), True
    return counters, False


def _memory_fields(counters: MemoryCounters) -> dict[str, str]:
    return {"heap": format_bytes(counters.heap_used), "rss": format_bytes(counters.rss)}


def _delta_fields(delta: MemoryDelta) -> dict[str, str]:
    return {"heap": format_delta(delta.heap_used), "rss": format_delta(delta.rss)}


# ---------------------------------------------------------------------------
# ComponentTimer
# ---------------------------------------------------------------------------

class ComponentTimer:
    """Context manager for timing code blocks with memory tracking.

    Args:
        track_memory: If True, read process memory on entry and exit

    Attributes:
        elapsed_ms: Time elapsed in milliseconds (MUST be >= 0)
        memory_before: Counters on entry, or None when not tracking
        memory_after: Counters on exit, or None when not tracking
        memory_delta: memory_after - memory_before, or None

    Example:
        with ComponentTimer(track_memory=True) as timer:
            result = expensive_operation()
        print(f"Elapsed: {timer.elapsed_ms:.2f}ms, RSS Δ: {timer.memory_delta.rss}")
    """

    @beartype
    def __init__(self, track_memory: bool = True) -> None:
        self.track_memory = track_memory
        self.elapsed_ms: float = 0.0
        self.memory_before: MemoryCounters | None = None
        self.memory_after: MemoryCounters | None = None
        self.memory_delta: MemoryDelta | None = None
        self._start: float = 0.0

    def __enter__(self) -> "ComponentTimer":
        if self.track_memory:
            self.memory_before = read_memory_counters()
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000

        assert self.elapsed_ms >= 0, (
            f"Elapsed time cannot be negative: {self.elapsed_ms:.6f}ms. "
            f"Monotonic clock went backwards or timing bug."
        )

        if self.track_memory and self.memory_before is not None:
            self.memory_after = read_memory_counters()
            self.memory_delta = self.memory_after - self.memory_before


# ---------------------------------------------------------------------------
# profile / aprofile / profiled
# ---------------------------------------------------------------------------

class ProfileOutcome(NamedTuple):
    result: Any
    profile: ProfileResult


@dataclass
class _CallProfile:
    """Shared settings and bookkeeping for profile() and aprofile()."""

    name: str
    track_memory: bool = True
    enable_gc: bool = False
    gc_threshold_mb: int | float = DEFAULT_GC_THRESHOLD_MB
    logger: Any = None
    tags: dict[str, Any] | None = None
    log_level: str = "debug"
    silent: bool = False
    verbose: bool = False
    mem_before: MemoryCounters | None = field(default=None, init=False)
    start: float = field(default=0.0, init=False)

    def begin(self) -> None:
        if self.track_memory:
            self.mem_before = read_memory_counters()
        self.start = time.perf_counter()

    def finish(self, error: BaseException | None = None) -> ProfileResult:
        duration_ms = (time.perf_counter() - self.start) * 1000
        mem_after: MemoryCounters | None = None
        mem_delta: MemoryDelta | None = None
        gc_triggered = False

        if self.track_memory and self.mem_before is not None:
            mem_after, gc_triggered = _collect_if_over(
                read_memory_counters(), self.enable_gc, self.gc_threshold_mb
            )
            mem_delta = mem_after - self.mem_before

        result = ProfileResult(
            name=self.name,
            duration_ms=duration_ms,
            mem_before=self.mem_before,
            mem_after=mem_after,
            mem_delta=mem_delta,
            gc_triggered=gc_triggered,
            tags=dict(self.tags or {}),
        )
        if not self.silent and self.verbose:
            self._log(result, error)
        return result

    def _log(self, result: ProfileResult, error: BaseException | None) -> None:
        data: dict[str, Any] = {"function": result.name, "duration": f"{result.duration_ms:.2f}ms"}
        if result.mem_before is not None:
            data["mem_before"] = _memory_fields(result.mem_before)
        if result.mem_after is not None:
            data["mem_after"] = _memory_fields(result.mem_after)
        if result.mem_delta is not None:
            data["mem_delta"] = _delta_fields(result.mem_delta)
        if result.gc_triggered:
            data["gc_triggered"] = True
        if error is not None:
            data["error"] = str(error)
        data.update(result.tags)

        emit(
            resolve_logger(self.logger),
            self.log_level,
            f"Profile: {result.name} completed in {result.duration_ms:.2f}ms",
            **data,
        )


def profile(fn: Callable[[], T], name: str, **config: Any) -> ProfileOutcome:
    """Call ``fn`` and measure it.

    Args:
        fn: Zero-argument callable to run
        name: Label for the measurement
        **config: track_memory, enable_gc, gc_threshold_mb, logger, tags,
            log_level, silent, verbose

    Returns:
        ProfileOutcome(result, profile). Errors from ``fn`` are re-raised
        after being logged (when verbose).

    Example:
        outcome = profile(lambda: load_rows(path), "load_rows", enable_gc=True)
        rows = outcome.result
    """
    assert name, "Profile name must be non-empty"
    call = _CallProfile(name=name, **config)
    call.begin()
    try:
        result = fn()
    except Exception as exc:
        call.finish(error=exc)
        raise
    return ProfileOutcome(result, call.finish())


async def aprofile(fn: Callable[[], Awaitable[T]], name: str, **config: Any) -> ProfileOutcome:
    """Async counterpart of profile(); ``fn`` returns an awaitable."""
    assert name, "Profile name must be non-empty"
    call = _CallProfile(name=name, **config)
    call.begin()
    try:
        result = await fn()
    except Exception as exc:
        call.finish(error=exc)
        raise
    return ProfileOutcome(result, call.finish())


def profiled(name: str | None = None, **config: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator profiling every call of a function or method.

    Coroutine functions are awaited inside the measurement. The wrapped
    function returns what the original returns.

    Usage:
        class CarService:
            @profiled("list_cars", track_memory=True, enable_gc=True)
            async def list_cars(self, query): ...
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        label = name or fn.__qualname__

        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                outcome = await aprofile(lambda: fn(*args, **kwargs), label, **config)
                return outcome.result

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return profile(lambda: fn(*args, **kwargs), label, **config).result

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------

class Timer:
    """Quick stopwatch that logs its duration at debug level.

    Usage:
        timer = Timer("database-query")
        rows = repository.find()
        timer.stop(row_count=len(rows))

        result = Timer.time(lambda: process_batch(data), "process_batch")
    """

    def __init__(self, name: str, logger: Any = None) -> None:
        assert name, "Timer name must be non-empty"
        self.name = name
        self._logger: ProfilerLogger = resolve_logger(logger)
        self._start = time.perf_counter()

    def stop(self, **data: Any) -> float:
        """Log and return milliseconds since construction."""
        duration_ms = (time.perf_counter() - self._start) * 1000
        self._logger.debug(
            f"Timer: {self.name} completed in {duration_ms:.2f}ms",
            duration=f"{duration_ms:.2f}ms",
            **data,
        )
        return duration_ms

    @classmethod
    def time(cls, fn: Callable[[], T], name: str, logger: Any = None) -> T:
        timer = cls(name, logger)
        try:
            result = fn()
        except Exception as exc:
            timer.stop(error=str(exc))
            raise
        timer.stop()
        return result

    @classmethod
    async def atime(cls, fn: Callable[[], Awaitable[T]], name: str, logger: Any = None) -> T:
        timer = cls(name, logger)
        try:
            result = await fn()
        except Exception as exc:
            timer.stop(error=str(exc))
            raise
        timer.stop()
        return result


# ---------------------------------------------------------------------------
# MemMonitor
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MemorySnap:
    timestamp: float
    usage: MemoryCounters
    label: str | None = None


class MemMonitor:
    """Labelled memory snapshots with pairwise comparison.

    Usage:
        monitor = MemMonitor()
        monitor.snap("start")
        process_alerts(alerts)
        monitor.snap("after-processing")
        delta = monitor.compare("start", "after-processing")
    """

    def __init__(self, logger: Any = None) -> None:
        self._logger: ProfilerLogger = resolve_logger(logger)
        self._snaps: list[MemorySnap] = []

    def snap(self, label: str | None = None) -> MemoryCounters:
        usage = read_memory_counters()
        self._snaps.append(MemorySnap(timestamp=time.time(), usage=usage, label=label))
        self._logger.debug(
            f"Memory snapshot: {label or 'unnamed'}",
            heap=format_bytes(usage.heap_used),
            rss=format_bytes(usage.rss),
            external=format_bytes(usage.external),
        )
        return usage

    def _find(self, label: str | None, default_index: int) -> MemorySnap | None:
        if label is None:
            return self._snaps[default_index] if self._snaps else None
        return next((s for s in self._snaps if s.label == label), None)

    def compare(self, from_label: str | None = None, to_label: str | None = None) -> MemoryDelta | None:
        """Delta between two snapshots (first and last when labels are omitted).

        Returns None, with a warning, when either snapshot does not exist.
        """
        start = self._find(from_label, 0)
        end = self._find(to_label, -1)
        if start is None or end is None:
            self._logger.warn(
                "Memory comparison failed: snapshot not found",
                from_label=from_label,
                to_label=to_label,
            )
            return None

        delta = end.usage - start.usage
        self._logger.debug(
            f"Memory comparison: {start.label or 'start'} → {end.label or 'end'}",
            duration=f"{(end.timestamp - start.timestamp) * 1000:.0f}ms",
            heap_delta=format_delta(delta.heap_used),
            rss_delta=format_delta(delta.rss),
            external_delta=format_delta(delta.external),
        )
        return delta

    def clear(self) -> None:
        self._snaps = []

    def get_snaps(self) -> list[MemorySnap]:
        return list(self._snaps)


# ---------------------------------------------------------------------------
# Profiler (checkpoint marks)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Mark:
    label: str
    timestamp: float
    memory: MemoryCounters | None
    gc_triggered: bool


@dataclass(frozen=True)
class StepRecord:
    step: str
    duration_ms: float
    start_ms: float
    end_ms: float
    gc_triggered: bool

    @property
    def duration_formatted(self) -> str:
        return f"{self.duration_ms:.2f}ms"


@dataclass(frozen=True)
class MarkRecord:
    label: str
    timestamp_ms: float
    step_duration_ms: float | None
    heap: str | None
    rss: str | None
    gc_triggered: bool


@dataclass(frozen=True)
class MemDeltaRecord:
    from_label: str
    to_label: str
    duration_ms: float
    heap_delta: str
    rss_delta: str


@dataclass(frozen=True)
class ProfilerSummary:
    name: str
    total_duration_ms: float
    total_gc_count: int
    marks: tuple[MarkRecord, ...]
    steps: tuple[StepRecord, ...]
    mem_deltas: tuple[MemDeltaRecord, ...]

    def slowest_steps(self, n: int = 3) -> list[StepRecord]:
        return sorted(self.steps, key=lambda s: s.duration_ms, reverse=True)[:n]


class Profiler:
    """Multi-step workflow profiler built from named checkpoints.

    Args:
        name: Workflow name
        track_memory: Read memory at every mark (default: True)
        enable_gc: Collect garbage at a mark when heap exceeds gc_threshold_mb
        gc_threshold_mb: Heap threshold in MB (default: 100)
        logger: Anything resolve_logger accepts
        log_level: Method used for progress logs: "debug" or "log"
        log_steps: Log individual marks (verbose only)
        verbose: Log start and every mark
        silent: Log nothing except explicit print_summary()
        tags: Extra data attached to the completion log

    Usage:
        profiler = Profiler("alert-processing", enable_gc=True)
        profiler.start()
        for alert in alerts:
            process(alert)
            profiler.mark(f"alert-{alert.id}")
        summary = profiler.end()
    """

    @beartype
    def __init__(
        self,
        name: str,
        *,
        track_memory: bool = True,
        enable_gc: bool = False,
        gc_threshold_mb: int | float = DEFAULT_GC_THRESHOLD_MB,
        logger: Any = None,
        log_level: str = "debug",
        log_steps: bool = True,
        verbose: bool = False,
        silent: bool = False,
        tags: dict[str, Any] | None = None,
    ) -> None:
        assert name, "Profiler name must be non-empty"
        self.name = name
        self.track_memory = track_memory
        self.enable_gc = enable_gc
        self.gc_threshold_mb = gc_threshold_mb
        self.log_level = log_level
        self.log_steps = log_steps
        self.verbose = verbose
        self.silent = silent
        self.tags = dict(tags or {})
        self._logger: ProfilerLogger = resolve_logger(logger)
        self._start_time = 0.0
        self._marks: list[_Mark] = []
        self._gc_count = 0

    def _log(self, message: str, **data: Any) -> None:
        emit(self._logger, self.log_level, message, **data)

    def start(self) -> None:
        self._start_time = time.perf_counter()
        memory = read_memory_counters() if self.track_memory else None
        self._marks = [_Mark("start", self._start_time, memory, False)]
        self._gc_count = 0
        if not self.silent and self.verbose:
            self._log("Profiler started", profiler=self.name)

    @beartype
    def mark(self, label: str) -> None:
        assert label, "Mark label must be non-empty"
        assert self._marks, "Profiler.start() must be called before mark()"
        timestamp = time.perf_counter()
        memory: MemoryCounters | None = None
        gc_triggered = False

        if self.track_memory:
            memory, gc_triggered = _collect_if_over(
                read_memory_counters(), self.enable_gc, self.gc_threshold_mb
            )
            if gc_triggered:
                self._gc_count += 1

        previous = self._marks[-1]
        self._marks.append(_Mark(label, timestamp, memory, gc_triggered))

        if self.silent or not self.log_steps or not self.verbose:
            return

        data: dict[str, Any] = {
            "mark": label,
            "total_elapsed": f"{(timestamp - self._start_time) * 1000:.2f}ms",
            "step_duration": f"{(timestamp - previous.timestamp) * 1000:.2f}ms",
        }
        if memory is not None:
            data["memory"] = _memory_fields(memory)
        if previous.memory is not None and memory is not None:
            data["mem_delta"] = _delta_fields(memory - previous.memory)
        if gc_triggered:
            data["gc_triggered"] = True
        self._log(f"Mark: {label}", **data)

    def get_summary(self) -> dict[str, Any]:
        """Progress so far without ending the profiler."""
        summary: dict[str, Any] = {
            "name": self.name,
            "elapsed_ms": (time.perf_counter() - self._start_time) * 1000,
            "mark_count": len(self._marks),
            "gc_count": self._gc_count,
            "last_step": None,
            "last_step_duration_ms": None,
        }
        if len(self._marks) >= 2:
            prev, last = self._marks[-2], self._marks[-1]
            summary["last_step"] = f"{prev.label} → {last.label}"
            summary["last_step_duration_ms"] = (last.timestamp - prev.timestamp) * 1000
        return summary

    def _step_records(self) -> list[StepRecord]:
        return [
            StepRecord(
                step=f"{prev.label} → {cur.label}",
                duration_ms=(cur.timestamp - prev.timestamp) * 1000,
                start_ms=(prev.timestamp - self._start_time) * 1000,
                end_ms=(cur.timestamp - self._start_time) * 1000,
                gc_triggered=cur.gc_triggered,
            )
            for prev, cur in zip(self._marks, self._marks[1:])
        ]

    def get_steps(self) -> list[StepRecord]:
        """Steps between consecutive marks, slowest first."""
        return sorted(self._step_records(), key=lambda s: s.duration_ms, reverse=True)

    def end(self) -> ProfilerSummary:
        """Finish the workflow and summarize it.

        Adds a final ``end`` mark when memory is tracked.
        """
        end_time = time.perf_counter()
        total_duration_ms = (end_time - self._start_time) * 1000

        if self.track_memory and self._marks and self._marks[-1].label != "end":
            self.mark("end")

        steps = self._step_records()
        mem_deltas = tuple(
            MemDeltaRecord(
                from_label=prev.label,
                to_label=cur.label,
                duration_ms=(cur.timestamp - prev.timestamp) * 1000,
                heap_delta=format_delta(cur.memory.heap_used - prev.memory.heap_used),
                rss_delta=format_delta(cur.memory.rss - prev.memory.rss),
            )
            for prev, cur in zip(self._marks, self._marks[1:])
            if prev.memory is not None and cur.memory is not None
        )
        marks = tuple(
            MarkRecord(
                label=m.label,
                timestamp_ms=(m.timestamp - self._start_time) * 1000,
                step_duration_ms=(
                    (m.timestamp - self._marks[i - 1].timestamp) * 1000 if i > 0 else None
                ),
                heap=format_bytes(m.memory.heap_used) if m.memory is not None else None,
                rss=format_bytes(m.memory.rss) if m.memory is not None else None,
                gc_triggered=m.gc_triggered,
            )
            for i, m in enumerate(self._marks)
        )
        summary = ProfilerSummary(
            name=self.name,
            total_duration_ms=total_duration_ms,
            total_gc_count=self._gc_count,
            marks=marks,
            steps=tuple(steps),
            mem_deltas=mem_deltas,
        )

        if not self.silent:
            slowest = [f"{s.step}: {s.duration_formatted}" for s in summary.slowest_steps()]
            data: dict[str, Any] = {
                "total_duration": f"{total_duration_ms:.2f}ms",
                "marks": len(marks),
                "steps": len(steps),
                "gc_triggered": self._gc_count,
                "tags": self.tags,
            }
            if slowest:
                data["slowest_steps"] = slowest
            self._log(f"Profiler completed: {self.name}", **data)

        return summary

    def print_summary(self, title: str = "PROFILING RESULTS") -> None:
        """Log a formatted table of every step, in mark order."""
        steps = self._step_records()
        total_ms = sum(s.duration_ms for s in steps)
        deltas = {
            f"{prev.label} → {cur.label}": cur.memory - prev.memory
            for prev, cur in zip(self._marks, self._marks[1:])
            if prev.memory is not None and cur.memory is not None
        }
        has_memory = bool(deltas)
        width = 110 if has_memory else 80

        self._logger.log("=" * width)
        self._logger.log(f"{title:^{width}}")
        self._logger.log("=" * width)
        header = f"{'Step':<50} {'Duration':>12} {'Share':>8} {'GC':>6}"
        if has_memory:
            header += f" {'Heap Δ':>14} {'RSS Δ':>14}"
        self._logger.log(header)
        self._logger.log("-" * width)

        for step in steps:
            share = step.duration_ms / total_ms * 100 if total_ms > 0 else 0.0
            line = (
                f"{step.step:<50} "
                f"{step.duration_ms:>10.2f}ms "
                f"{share:>7.1f}% "
                f"{'yes' if step.gc_triggered else '-':>6}"
            )
            if has_memory:
                delta = deltas.get(step.step)
                heap = format_delta(delta.heap_used) if delta is not None else "-"
                rss = format_delta(delta.rss) if delta is not None else "-"
                line += f" {heap:>14} {rss:>14}"
            self._logger.log(line)

        self._logger.log("=" * width)
        self._logger.log(f"{'TOTAL':^50} {total_ms:>10.2f}ms")
        self._logger.log("=" * width)


@contextmanager
def profile_operation(label: str, profiler: Profiler | None) -> Generator[ComponentTimer, None, None]:
    """Time a block and record it as a mark on ``profiler``.

    When profiler is None the block still runs but nothing is recorded,
    which saves ``if profiler:`` branching at call sites.

    Yields:
        ComponentTimer for the block (memory tracked only with a profiler)
    """
    assert label, "Operation label must be non-empty"
    with ComponentTimer(track_memory=profiler is not None) as timer:
        yield timer
    if profiler is not None:
        profiler.mark(label)
