"""Immutable records passed between the sampler, extractor and controller.

Optional fields are explicit ``None`` rather than absent, so callers never
have to inspect the shape of a result to know what it carries.
"""

from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Raw sampler output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CallFrame:
    function_name: str
    script_name: str = ""
    line_number: int = 0


@dataclass(frozen=True)
class ProfileNode:
    """One node of a sampled call tree.

    ``hit_count`` counts samples where this node was the innermost frame,
    i.e. self hits. ``children`` holds the ids of callee nodes.
    """

    id: int
    call_frame: CallFrame
    hit_count: int = 0
    children: tuple[int, ...] = ()


@dataclass(frozen=True)
class CpuProfile:
    """Call tree accumulated by the stack sampler over one interval.

    Attributes:
        nodes: Tree nodes; the root (if any) is the node no other node lists
            as a child.
        interval_us: Sampling period in microseconds. One hit accounts for
            this much self time.
        start_time: perf_counter() seconds when sampling started
        end_time: perf_counter() seconds when sampling stopped
    """

    nodes: tuple[ProfileNode, ...]
    interval_us: float
    start_time: float = 0.0
    end_time: float = 0.0


@dataclass(frozen=True)
class HeapSample:
    """Live allocations sharing one traceback.

    ``stack`` is ordered innermost frame first.
    """

    size: int
    stack: tuple[CallFrame, ...]
    count: int = 1


@dataclass(frozen=True)
class HeapProfile:
    samples: tuple[HeapSample, ...]


@dataclass(frozen=True)
class GcStats:
    gc_time_ms: float = 0.0
    gc_count: int = 0


@dataclass(frozen=True)
class RawProfileBundle:
    """Everything one stop-and-collect cycle returned.

    Owned by the flush that requested it and dropped once insights exist.
    """

    cpu_profile: CpuProfile | None = None
    heap_profile: HeapProfile | None = None
    gc_stats: GcStats | None = None


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FunctionHotspot:
    function_name: str
    self_time_ms: float
    total_time_ms: float
    percentage: float


@dataclass(frozen=True)
class MemoryHotspot:
    allocation_site: str
    size_bytes: int
    count: int


@dataclass(frozen=True)
class GcImpact:
    gc_time_ms: float = 0.0
    gc_count: int = 0
    avg_gc_duration_ms: float = 0.0


@dataclass(frozen=True)
class MemoryUsage:
    """Human-readable memory counters, e.g. ``heap="12.34MB"``."""

    heap: str
    rss: str
    external: str


@dataclass(frozen=True)
class Insights:
    """Memory-light summary of one profiling interval.

    ``top_functions`` is sorted by self time and ``memory_hotspots`` by size,
    both descending and both capped, so the size of an Insights record does
    not depend on the workload.
    """

    duration_ms: float
    top_functions: tuple[FunctionHotspot, ...]
    memory_hotspots: tuple[MemoryHotspot, ...]
    gc_impact: GcImpact
    memory_usage: MemoryUsage


# ---------------------------------------------------------------------------
# Session state and budget
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProfilingSession:
    is_running: bool
    started_at: float
    cpu_enabled: bool
    heap_enabled: bool


@dataclass(frozen=True)
class BudgetEstimate:
    estimated_mb_per_minute: float
    projected_usage_mb: float


# ---------------------------------------------------------------------------
# Process memory (instrumentation helpers)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MemoryCounters:
    """Point-in-time process memory, all values in bytes."""

    heap_used: int
    heap_total: int
    external: int
    rss: int

    def __sub__(self, other: "MemoryCounters") -> "MemoryDelta":
        return MemoryDelta(
            heap_used=self.heap_used - other.heap_used,
            heap_total=self.heap_total - other.heap_total,
            external=self.external - other.external,
            rss=self.rss - other.rss,
        )


@dataclass(frozen=True)
class MemoryDelta:
    """Difference between two MemoryCounters (bytes, may be negative)."""

    heap_used: int
    heap_total: int
    external: int
    rss: int


@dataclass(frozen=True)
class ProfileResult:
    """Outcome of one ``profile()`` call.

    Memory fields are ``None`` when memory tracking was disabled; ``error``
    is the exception the profiled callable raised, if any.
    """

    name: str
    duration_ms: float
    mem_before: MemoryCounters | None = None
    mem_after: MemoryCounters | None = None
    mem_delta: MemoryDelta | None = None
    gc_triggered: bool = False
    tags: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None
