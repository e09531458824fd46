"""Turn raw sampler output into capped, ranked insights.

Design by Contract:
- Outputs are sorted descending and never longer than ``limit``
- Absent or empty input yields an empty tuple, not an error
- Malformed input raises ExtractionError (the controller absorbs it)
"""

import math
from collections import Counter, defaultdict

import psutil

from perfscope._errors import ExtractionError
from perfscope._models import (
    CpuProfile,
    FunctionHotspot,
    GcImpact,
    GcStats,
    HeapProfile,
    MemoryCounters,
    MemoryHotspot,
    MemoryUsage,
    ProfileNode,
)

TOP_N = 10
UNKNOWN_SITE = "(unknown)"

_MALFORMED = (AttributeError, TypeError, KeyError, ValueError)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_bytes(num_bytes: int | float) -> str:
    """``1048576 -> "1.00MB"``."""
    return f"{num_bytes / 1024 / 1024:.2f}MB"


def format_delta(num_bytes: int | float) -> str:
    """Signed variant of format_bytes, ``"+1.00MB"`` / ``"-0.50MB"``."""
    sign = "+" if num_bytes >= 0 else ""
    return f"{sign}{format_bytes(num_bytes)}"


# ---------------------------------------------------------------------------
# CPU
# ---------------------------------------------------------------------------

def _subtree_hits(
    by_id: dict[int, ProfileNode], roots: list[int]
) -> dict[int, int]:
    """Hits of each node plus all of its descendants (iterative post-order)."""
    totals: dict[int, int] = {}
    visiting: set[int] = set()

    for root in roots:
        stack = [(root, False)]
        while stack:
            node_id, expanded = stack.pop()
            node = by_id[node_id]
            if expanded:
                visiting.discard(node_id)
                totals[node_id] = node.hit_count + sum(totals[c] for c in node.children)
                continue
            if node_id in totals or node_id in visiting:
                raise ExtractionError(f"Profile node {node_id} is reachable twice")
            visiting.add(node_id)
            stack.append((node_id, True))
            for child in node.children:
                if child not in by_id:
                    raise ExtractionError(
                        f"Profile node {node_id} references unknown child {child}"
                    )
                stack.append((child, False))
    return totals


def _total_hits_by_name(
    by_id: dict[int, ProfileNode], roots: list[int], subtree: dict[int, int]
) -> dict[str, int]:
    """Inclusive hits per function name, counting recursion once per path."""
    totals: dict[str, int] = defaultdict(int)
    active: Counter[str] = Counter()

    for root in roots:
        stack = [(root, False)]
        while stack:
            node_id, leaving = stack.pop()
            node = by_id[node_id]
            name = node.call_frame.function_name
            if leaving:
                active[name] -= 1
                continue
            if active[name] == 0:
                totals[name] += subtree[node_id]
            active[name] += 1
            stack.append((node_id, True))
            stack.extend((child, False) for child in node.children)
    return totals


def extract_top_functions(
    cpu_profile: CpuProfile | None,
    duration_ms: float,
    limit: int = TOP_N,
) -> tuple[FunctionHotspot, ...]:
    """Rank functions by accumulated self time.

    Self time per node is ``hit_count * interval_us / 1000`` ms, merged by
    function name: distinct call sites sharing a name are one entry.
    Functions with no self hits are not listed.

    Args:
        cpu_profile: Sampled call tree, or None when CPU sampling was off
        duration_ms: Wall time the profile covers (percentage denominator)
        limit: Maximum number of entries returned

    Returns:
        At most ``limit`` hotspots, sorted by ``self_time_ms`` descending.
    """
    if cpu_profile is None or not cpu_profile.nodes:
        return ()

    try:
        interval_ms = float(cpu_profile.interval_us) / 1000
        if not math.isfinite(interval_ms) or interval_ms < 0:
            raise ExtractionError(f"Invalid sampling interval: {cpu_profile.interval_us}")

        by_id: dict[int, ProfileNode] = {}
        referenced: set[int] = set()
        for node in cpu_profile.nodes:
            if node.hit_count < 0:
                raise ExtractionError(f"Negative hit count on node {node.id}")
            by_id[node.id] = node
            referenced.update(node.children)

        roots = [node_id for node_id in by_id if node_id not in referenced]
        if not roots:
            raise ExtractionError("Profile has no root node")

        self_hits: dict[str, int] = defaultdict(int)
        for node in by_id.values():
            self_hits[node.call_frame.function_name] += node.hit_count

        subtree = _subtree_hits(by_id, roots)
        total_hits = _total_hits_by_name(by_id, roots, subtree)
    except _MALFORMED as exc:
        raise ExtractionError(f"Malformed CPU profile: {exc}") from exc

    ranked = sorted(
        ((name, hits) for name, hits in self_hits.items() if hits > 0),
        key=lambda item: item[1],
        reverse=True,
    )[:limit]

    return tuple(
        FunctionHotspot(
            function_name=name,
            self_time_ms=hits * interval_ms,
            total_time_ms=total_hits[name] * interval_ms,
            percentage=(hits * interval_ms / duration_ms * 100) if duration_ms > 0 else 0.0,
        )
        for name, hits in ranked
    )


# ---------------------------------------------------------------------------
# Heap
# ---------------------------------------------------------------------------

def allocation_site_label(function_name: str, script_name: str, line_number: int) -> str:
    return f"{function_name or '(anonymous)'} ({script_name}:{line_number})"


def extract_memory_hotspots(
    heap_profile: HeapProfile | None,
    limit: int = TOP_N,
) -> tuple[MemoryHotspot, ...]:
    """Rank allocation sites by total live size.

    The site is the innermost stack frame of each sample; deeper frames are
    ignored, so one site aggregates every path that allocates there.
    """
    if heap_profile is None or not heap_profile.samples:
        return ()

    sizes: dict[str, int] = defaultdict(int)
    counts: dict[str, int] = defaultdict(int)
    try:
        for sample in heap_profile.samples:
            if sample.size < 0 or sample.count < 0:
                raise ExtractionError(
                    f"Negative heap sample (size={sample.size}, count={sample.count})"
                )
            if sample.stack:
                top = sample.stack[0]
                label = allocation_site_label(
                    top.function_name, top.script_name, top.line_number
                )
            else:
                label = UNKNOWN_SITE
            sizes[label] += sample.size
            counts[label] += sample.count
    except _MALFORMED as exc:
        raise ExtractionError(f"Malformed heap profile: {exc}") from exc

    ranked = sorted(sizes.items(), key=lambda item: item[1], reverse=True)[:limit]
    return tuple(
        MemoryHotspot(allocation_site=label, size_bytes=size, count=counts[label])
        for label, size in ranked
    )


# ---------------------------------------------------------------------------
# GC and process memory
# ---------------------------------------------------------------------------

def compute_gc_impact(gc_stats: GcStats | None) -> GcImpact:
    if gc_stats is None or gc_stats.gc_count <= 0:
        return GcImpact(gc_time_ms=gc_stats.gc_time_ms if gc_stats else 0.0)
    return GcImpact(
        gc_time_ms=gc_stats.gc_time_ms,
        gc_count=gc_stats.gc_count,
        avg_gc_duration_ms=gc_stats.gc_time_ms / gc_stats.gc_count,
    )


def read_memory_counters() -> MemoryCounters:
    """Current process memory in bytes.

    ``heap_used`` is the process data segment where the platform reports
    one, else RSS, read the same way whether or not tracemalloc is tracing.
    ``external`` is shared memory where reported, else 0.
    """
    info = psutil.Process().memory_info()
    return MemoryCounters(
        heap_used=getattr(info, "data", info.rss),
        heap_total=info.vms,
        external=getattr(info, "shared", 0),
        rss=info.rss,
    )


def current_memory_usage() -> MemoryUsage:
    """Formatted memory counters; reports zeros if psutil cannot read them."""
    try:
        counters = read_memory_counters()
    except psutil.Error:
        counters = MemoryCounters(heap_used=0, heap_total=0, external=0, rss=0)
    return MemoryUsage(
        heap=format_bytes(counters.heap_used),
        rss=format_bytes(counters.rss),
        external=format_bytes(counters.external),
    )
