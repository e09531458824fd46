"""Interpreter-level sampling facilities.

These are the low-level samplers the session adapter drives:

- StackSampler: a daemon thread polling ``sys._current_frames()`` at a fixed
  period and folding every thread's stack into a call tree of self hits.
- HeapTracer: ``tracemalloc`` start/snapshot/stop, reporting live
  allocations grouped by traceback.
- GcMonitor: a ``gc.callbacks`` hook timing collector pauses.

None of them know about intervals, budgets or insights.
"""

import gc
import linecache
import re
import sys
import threading
import time
import tracemalloc
from collections import defaultdict
from functools import lru_cache
from typing import Any

from perfscope._models import (
    CallFrame,
    CpuProfile,
    GcStats,
    HeapProfile,
    HeapSample,
    ProfileNode,
)

ROOT_FRAME = CallFrame(function_name="(root)")

_DEF_RE = re.compile(r"^(\s*)(?:async\s+def|def|class)\s+(\w+)")


# ---------------------------------------------------------------------------
# CPU
# ---------------------------------------------------------------------------

def _frame_path(frame: Any, max_depth: int) -> tuple[CallFrame, ...]:
    """Outermost-first path of CallFrames ending at ``frame``."""
    path: list[CallFrame] = []
    while frame is not None and len(path) < max_depth:
        code = frame.f_code
        path.append(
            CallFrame(
                function_name=getattr(code, "co_qualname", code.co_name),
                script_name=code.co_filename,
                line_number=code.co_firstlineno,
            )
        )
        frame = frame.f_back
    path.reverse()
    return tuple(path)


def build_call_tree(hits: dict[tuple[CallFrame, ...], int]) -> tuple[ProfileNode, ...]:
    """Turn ``{stack path: self hits}`` into tree nodes, root first.

    Every prefix of every path becomes a node; node ids start at 1 (root).
    """
    ids: dict[tuple[CallFrame, ...], int] = {(): 1}
    children: dict[tuple[CallFrame, ...], list[int]] = defaultdict(list)

    for path in hits:
        for depth in range(1, len(path) + 1):
            prefix = path[:depth]
            if prefix not in ids:
                ids[prefix] = len(ids) + 1
                children[prefix[:-1]].append(ids[prefix])

    return tuple(
        ProfileNode(
            id=node_id,
            call_frame=prefix[-1] if prefix else ROOT_FRAME,
            hit_count=hits.get(prefix, 0),
            children=tuple(children.get(prefix, ())),
        )
        for prefix, node_id in ids.items()
    )


class StackSampler:
    """Statistical CPU sampler over all interpreter threads.

    The sampler's own thread is never sampled. Hit data lives only inside
    the sampler thread until ``stop()`` has joined it.

    Args:
        interval_s: Sampling period in seconds (MUST be > 0)
        max_depth: Frames kept per sample, innermost frames are kept when a
            stack is deeper than this
    """

    def __init__(self, interval_s: float = 0.01, max_depth: int = 64) -> None:
        assert interval_s > 0, f"Sampling interval must be positive: {interval_s}"
        assert max_depth > 0, f"max_depth must be positive: {max_depth}"
        self.interval_s = interval_s
        self.max_depth = max_depth
        self._hits: dict[tuple[CallFrame, ...], int] = defaultdict(int)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._start_time = 0.0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        assert not self.is_running, "StackSampler is already running"
        self._hits = defaultdict(int)
        self._stop_event.clear()
        self._start_time = time.perf_counter()
        self._thread = threading.Thread(
            target=self._run, name="perfscope-sampler", daemon=True
        )
        self._thread.start()

    def stop(self) -> CpuProfile:
        """Stop sampling and hand back everything collected since start()."""
        assert self._thread is not None, "StackSampler was never started"
        self._stop_event.set()
        self._thread.join(timeout=max(1.0, self.interval_s * 10))
        self._thread = None
        end_time = time.perf_counter()

        hits, self._hits = self._hits, defaultdict(int)
        return CpuProfile(
            nodes=build_call_tree(dict(hits)),
            interval_us=self.interval_s * 1_000_000,
            start_time=self._start_time,
            end_time=end_time,
        )

    def _run(self) -> None:
        own_ident = threading.get_ident()
        while not self._stop_event.wait(self.interval_s):
            for thread_id, frame in sys._current_frames().items():
                if thread_id == own_ident:
                    continue
                path = _frame_path(frame, self.max_depth)
                if path:
                    self._hits[path] += 1


# ---------------------------------------------------------------------------
# Heap
# ---------------------------------------------------------------------------

@lru_cache(maxsize=4096)
def _enclosing_function(filename: str, lineno: int) -> str:
    """Best-effort name of the def/class enclosing ``filename:lineno``.

    tracemalloc frames carry only a file and line; the name is recovered from
    source. Falls back to ``<module>``.
    """
    lines = linecache.getlines(filename)
    if not lines or lineno < 1 or lineno > len(lines):
        return "<module>"

    target = lines[lineno - 1]
    indent = len(target) - len(target.lstrip())
    for line in reversed(lines[: lineno - 1]):
        match = _DEF_RE.match(line)
        if match and len(match.group(1)) < indent:
            return match.group(2)
    return "<module>"


class HeapTracer:
    """tracemalloc wrapper that owns the tracer while it runs.

    Args:
        nframe: Frames stored per allocation traceback
    """

    def __init__(self, nframe: int = 16) -> None:
        assert nframe >= 1, f"nframe must be >= 1: {nframe}"
        self.nframe = nframe
        self._owned = False

    @property
    def is_running(self) -> bool:
        return self._owned

    @staticmethod
    def held_elsewhere() -> bool:
        """True when tracemalloc is tracing but not on our behalf."""
        return tracemalloc.is_tracing()

    def start(self) -> None:
        assert not self._owned, "HeapTracer is already running"
        tracemalloc.start(self.nframe)
        self._owned = True

    def stop(self) -> HeapProfile:
        """Snapshot live allocations, then stop tracing (clears all traces)."""
        assert self._owned, "HeapTracer is not running"
        try:
            snapshot = tracemalloc.take_snapshot().filter_traces(
                (
                    tracemalloc.Filter(False, tracemalloc.__file__),
                    tracemalloc.Filter(False, linecache.__file__),
                    tracemalloc.Filter(False, "<frozen importlib._bootstrap*>"),
                )
            )
        finally:
            tracemalloc.stop()
            self._owned = False

        samples = []
        for stat in snapshot.statistics("traceback"):
            # Traceback is oldest-first; samples are innermost-first
            stack = tuple(
                CallFrame(
                    function_name=_enclosing_function(frame.filename, frame.lineno),
                    script_name=frame.filename,
                    line_number=frame.lineno,
                )
                for frame in reversed(stat.traceback)
            )
            samples.append(HeapSample(size=stat.size, stack=stack, count=stat.count))
        return HeapProfile(samples=tuple(samples))

    def abort(self) -> None:
        """Stop tracing and drop all traces without snapshotting."""
        if self._owned:
            tracemalloc.stop()
            self._owned = False


# ---------------------------------------------------------------------------
# GC
# ---------------------------------------------------------------------------

class GcMonitor:
    """Accumulates collector pause time between ``collect()`` calls.

    The callback takes no locks: it may run on any thread, including while
    this object is being read, and a lock there could deadlock the collector.
    """

    def __init__(self) -> None:
        self._pause_start: float | None = None
        self._gc_time = 0.0
        self._gc_count = 0
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> None:
        if not self._installed:
            gc.callbacks.append(self._on_gc)
            self._installed = True

    def uninstall(self) -> None:
        if self._installed:
            gc.callbacks.remove(self._on_gc)
            self._installed = False
            self._pause_start = None

    def collect(self) -> GcStats:
        """Return stats since the previous collect() and reset them."""
        gc_time, gc_count = self._gc_time, self._gc_count
        self._gc_time = 0.0
        self._gc_count = 0
        return GcStats(gc_time_ms=gc_time * 1000, gc_count=gc_count)

    def _on_gc(self, phase: str, info: dict[str, Any]) -> None:
        if phase == "start":
            self._pause_start = time.perf_counter()
        elif phase == "stop" and self._pause_start is not None:
            self._gc_time += time.perf_counter() - self._pause_start
            self._gc_count += 1
            self._pause_start = None
