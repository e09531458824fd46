"""Shared fixtures: a recording logger and a scripted sampling adapter.

The adapter is the only external boundary of the continuous profiler, so it
is the only thing replaced in controller tests.
"""

import asyncio
from typing import Any

import pytest

from perfscope import AdapterUnavailable, RawProfileBundle


class RecordingLogger:
    """ProfilerLogger that keeps every call as (level, message, data)."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def debug(self, message: str, **data: Any) -> None:
        self.records.append(("debug", message, data))

    def log(self, message: str, **data: Any) -> None:
        self.records.append(("log", message, data))

    def warn(self, message: str, **data: Any) -> None:
        self.records.append(("warn", message, data))

    def error(self, message: str, **data: Any) -> None:
        self.records.append(("error", message, data))

    def messages(self, level: str) -> list[str]:
        return [message for lvl, message, _ in self.records if lvl == level]

    def data(self, level: str) -> list[dict[str, Any]]:
        return [data for lvl, _, data in self.records if lvl == level]


class FakeAdapter:
    """Scripted SamplingAdapter recording the order of calls.

    Args:
        bundles: Returned by successive stop_and_collect calls; the last one
            repeats. Callables are invoked (and may raise).
        fail_open: Raise AdapterUnavailable from open()
    """

    def __init__(
        self,
        bundles: list[Any] | None = None,
        fail_open: bool = False,
    ) -> None:
        self.bundles = list(bundles) if bundles else [RawProfileBundle()]
        self.fail_open = fail_open
        self.calls: list[str] = []
        self.overlaps = 0
        self._busy = False

    async def _enter(self, name: str) -> None:
        if self._busy:
            self.overlaps += 1
        self._busy = True
        self.calls.append(name)
        # yield so interleaving callers would be observed
        await asyncio.sleep(0)
        self._busy = False

    async def open(self) -> None:
        await self._enter("open")
        if self.fail_open:
            raise AdapterUnavailable("sampling facility missing; relaunch with it enabled")

    async def start_sampling(self, cpu: bool, heap: bool) -> None:
        await self._enter("start")

    async def stop_and_collect(self, cpu: bool, heap: bool) -> Any:
        await self._enter("stop")
        bundle = self.bundles.pop(0) if len(self.bundles) > 1 else self.bundles[0]
        if callable(bundle):
            return bundle()
        return bundle

    async def close(self) -> None:
        self.calls.append("close")


@pytest.fixture
def recorder() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()
