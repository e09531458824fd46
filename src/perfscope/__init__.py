"""perfscope: In-process performance instrumentation and continuous profiling.

Provides:
- ContinuousProfiler: Interval-bounded CPU/heap sampling session with a memory budget
- profile / aprofile / profiled: Call timing with memory tracking and optional GC
- Timer: Quick stopwatch that logs its duration
- MemMonitor: Labelled memory snapshots and comparisons
- Profiler: Multi-step workflow checkpoints with a summary
- ComponentTimer / profile_operation: Context managers for timing code blocks

Usage:
    from perfscope import ContinuousProfiler

    profiler = ContinuousProfiler(max_memory_budget_mb=200, interval_minutes=30)
    await profiler.start_continuous_profiling()
    ...
    insights = await profiler.stop_continuous_profiling()
    for entry in insights.top_functions:
        print(entry.function_name, f"{entry.self_time_ms:.1f}ms")
"""

from perfscope._adapter import LocalSamplingAdapter, SamplingAdapter
from perfscope._budget import (
    BudgetWarning,
    WarningKind,
    estimate_budget,
    estimate_mb_per_minute,
    validate_budget,
)
from perfscope._continuous import ContinuousProfiler
from perfscope._core import (
    ComponentTimer,
    MemMonitor,
    Profiler,
    ProfilerSummary,
    Timer,
    aprofile,
    profile,
    profile_operation,
    profiled,
)
from perfscope._errors import (
    AdapterUnavailable,
    AlreadyRunning,
    ExtractionError,
    MissingRequiredConfig,
    NotRunning,
    PerfscopeError,
    SessionStateError,
)
from perfscope._insights import (
    extract_memory_hotspots,
    extract_top_functions,
    format_bytes,
    read_memory_counters,
)
from perfscope._logging import (
    LoguruLogger,
    NullLogger,
    ProfilerLogger,
    StdlibLogger,
    resolve_logger,
)
from perfscope._models import (
    BudgetEstimate,
    CallFrame,
    CpuProfile,
    FunctionHotspot,
    GcImpact,
    GcStats,
    HeapProfile,
    HeapSample,
    Insights,
    MemoryCounters,
    MemoryDelta,
    MemoryHotspot,
    MemoryUsage,
    ProfileNode,
    ProfileResult,
    ProfilingSession,
    RawProfileBundle,
)
from perfscope._scheduler import IntervalScheduler

__all__ = [
    "AdapterUnavailable",
    "AlreadyRunning",
    "BudgetEstimate",
    "BudgetWarning",
    "CallFrame",
    "ComponentTimer",
    "ContinuousProfiler",
    "CpuProfile",
    "ExtractionError",
    "FunctionHotspot",
    "GcImpact",
    "GcStats",
    "HeapProfile",
    "HeapSample",
    "Insights",
    "IntervalScheduler",
    "LocalSamplingAdapter",
    "LoguruLogger",
    "MemMonitor",
    "MemoryCounters",
    "MemoryDelta",
    "MemoryHotspot",
    "MemoryUsage",
    "MissingRequiredConfig",
    "NotRunning",
    "NullLogger",
    "PerfscopeError",
    "ProfileNode",
    "ProfileResult",
    "Profiler",
    "ProfilerLogger",
    "ProfilerSummary",
    "ProfilingSession",
    "RawProfileBundle",
    "SamplingAdapter",
    "SessionStateError",
    "StdlibLogger",
    "Timer",
    "WarningKind",
    "aprofile",
    "estimate_budget",
    "estimate_mb_per_minute",
    "extract_memory_hotspots",
    "extract_top_functions",
    "format_bytes",
    "profile",
    "profile_operation",
    "profiled",
    "read_memory_counters",
    "resolve_logger",
    "validate_budget",
]

__version__ = "0.1.0"
