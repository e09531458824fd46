"""Sampling session adapter.

The controller talks to the sampling facility only through a
``SamplingAdapter``. The adapter never restarts sampling on its own:
after ``stop_and_collect`` the caller decides whether to call
``start_sampling`` again.
"""

import gc
import sys
from typing import Protocol, runtime_checkable

from perfscope._errors import AdapterUnavailable
from perfscope._facility import GcMonitor, HeapTracer, StackSampler
from perfscope._models import RawProfileBundle


@runtime_checkable
class SamplingAdapter(Protocol):
    async def open(self) -> None: ...

    async def start_sampling(self, cpu: bool, heap: bool) -> None: ...

    async def stop_and_collect(self, cpu: bool, heap: bool) -> RawProfileBundle: ...

    async def close(self) -> None: ...


class LocalSamplingAdapter:
    """Adapter over the in-process StackSampler, HeapTracer and GcMonitor.

    Args:
        sampling_interval_s: CPU sampling period in seconds
        max_stack_depth: Frames kept per CPU sample
        heap_frames: Frames kept per traced allocation
    """

    def __init__(
        self,
        sampling_interval_s: float = 0.01,
        max_stack_depth: int = 64,
        heap_frames: int = 16,
    ) -> None:
        self._sampler = StackSampler(sampling_interval_s, max_stack_depth)
        self._heap = HeapTracer(heap_frames)
        self._gc = GcMonitor()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self._open:
            return
        if not hasattr(sys, "_current_frames"):
            raise AdapterUnavailable(
                f"{sys.implementation.name} does not expose sys._current_frames(); "
                "CPU sampling needs CPython or PyPy. "
                "Run under a supported interpreter or disable cpu_profiling."
            )
        if not hasattr(gc, "callbacks"):
            raise AdapterUnavailable(
                "gc.callbacks is not available in this interpreter; "
                "collector timing cannot be sampled."
            )
        self._gc.install()
        self._open = True

    async def start_sampling(self, cpu: bool, heap: bool) -> None:
        assert self._open, "Adapter must be opened before sampling"
        if heap and not self._heap.is_running:
            if HeapTracer.held_elsewhere():
                raise AdapterUnavailable(
                    "tracemalloc is already tracing in this process "
                    "(PYTHONTRACEMALLOC or -X tracemalloc?). Stop it first, or "
                    "construct the profiler with sampling_heap_profiler=False."
                )
            self._heap.start()
        if cpu and not self._sampler.is_running:
            self._sampler.start()

    async def stop_and_collect(self, cpu: bool, heap: bool) -> RawProfileBundle:
        assert self._open, "Adapter must be opened before collecting"
        cpu_profile = self._sampler.stop() if cpu and self._sampler.is_running else None
        heap_profile = self._heap.stop() if heap and self._heap.is_running else None
        return RawProfileBundle(
            cpu_profile=cpu_profile,
            heap_profile=heap_profile,
            gc_stats=self._gc.collect(),
        )

    async def close(self) -> None:
        if self._sampler.is_running:
            self._sampler.stop()
        self._heap.abort()
        self._gc.uninstall()
        self._open = False
