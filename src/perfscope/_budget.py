"""Memory budget heuristics for continuous profiling.

The per-feature rates are configuration-derived estimates, not
measurements. Validation is advisory: it returns warnings and never blocks.
"""

import math
from dataclasses import dataclass, field
from enum import Enum

from beartype import beartype

from perfscope._models import BudgetEstimate

CPU_PROFILING_MB_PER_MINUTE = 0.5
HEAP_PROFILING_MB_PER_MINUTE = 1.0

HIGH_RISK_RATIO = 0.8
LONG_INTERVAL_MINUTES = 240
LOW_BUDGET_MB = 50


class WarningKind(Enum):
    HIGH_MEMORY_RISK = "high_memory_risk"
    LONG_INTERVAL = "long_interval"
    LOW_MEMORY_BUDGET = "low_memory_budget"


@dataclass(frozen=True)
class BudgetWarning:
    """One advisory message; ``details`` carries the numbers behind it."""

    kind: WarningKind
    message: str
    details: dict[str, float] = field(default_factory=dict)


@beartype
def estimate_mb_per_minute(cpu_profiling: bool, sampling_heap_profiler: bool) -> float:
    rate = 0.0
    if cpu_profiling:
        rate += CPU_PROFILING_MB_PER_MINUTE
    if sampling_heap_profiler:
        rate += HEAP_PROFILING_MB_PER_MINUTE
    return rate


@beartype
def estimate_budget(
    interval_minutes: int | float,
    cpu_profiling: bool,
    sampling_heap_profiler: bool,
) -> BudgetEstimate:
    rate = estimate_mb_per_minute(cpu_profiling, sampling_heap_profiler)
    return BudgetEstimate(
        estimated_mb_per_minute=rate,
        projected_usage_mb=rate * interval_minutes,
    )


@beartype
def validate_budget(
    max_memory_budget_mb: int | float,
    interval_minutes: int | float,
    cpu_profiling: bool,
    sampling_heap_profiler: bool,
) -> list[BudgetWarning]:
    """Check a configuration against the budget rules.

    Every rule is evaluated independently; all that match are returned.

    Args:
        max_memory_budget_mb: Ceiling for retained profiling data (MB)
        interval_minutes: Flush interval (minutes)
        cpu_profiling: Whether CPU sampling is enabled
        sampling_heap_profiler: Whether heap sampling is enabled

    Returns:
        Zero or more BudgetWarning, in rule order (risk, interval, budget).
    """
    warnings: list[BudgetWarning] = []
    estimate = estimate_budget(interval_minutes, cpu_profiling, sampling_heap_profiler)
    rate = estimate.estimated_mb_per_minute
    projected = estimate.projected_usage_mb
    safe_limit = max_memory_budget_mb * HIGH_RISK_RATIO

    if projected > safe_limit:
        suggested_interval = math.floor(safe_limit / rate) if rate > 0 else interval_minutes
        suggested_budget = math.ceil(projected / HIGH_RISK_RATIO)
        warnings.append(
            BudgetWarning(
                kind=WarningKind.HIGH_MEMORY_RISK,
                message=(
                    f"High memory risk: projected usage {projected:.1f}MB over a "
                    f"{interval_minutes} minute interval exceeds "
                    f"{HIGH_RISK_RATIO:.0%} of the {max_memory_budget_mb}MB budget. "
                    f"Reduce interval_minutes to {suggested_interval} or raise "
                    f"max_memory_budget_mb to {suggested_budget}."
                ),
                details={
                    "projected_usage_mb": projected,
                    "estimated_mb_per_minute": rate,
                    "suggested_interval_minutes": suggested_interval,
                    "suggested_budget_mb": suggested_budget,
                },
            )
        )

    if interval_minutes > LONG_INTERVAL_MINUTES:
        warnings.append(
            BudgetWarning(
                kind=WarningKind.LONG_INTERVAL,
                message=(
                    f"Very long interval: {interval_minutes} minutes between flushes "
                    f"(more than {LONG_INTERVAL_MINUTES}). Insights will arrive rarely "
                    "and retained sampling data grows for the whole interval."
                ),
                details={"interval_minutes": interval_minutes},
            )
        )

    if max_memory_budget_mb < LOW_BUDGET_MB:
        warnings.append(
            BudgetWarning(
                kind=WarningKind.LOW_MEMORY_BUDGET,
                message=(
                    f"Low memory budget: {max_memory_budget_mb}MB is below "
                    f"{LOW_BUDGET_MB}MB. Consider shorter intervals or fewer "
                    "enabled profilers."
                ),
                details={"max_memory_budget_mb": max_memory_budget_mb},
            )
        )

    return warnings
