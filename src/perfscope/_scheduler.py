"""Repeating asyncio trigger for interval flushes.

Fires never overlap: the next period starts counting only after the previous
callback has finished. A failing callback is logged and the loop carries on.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from perfscope._logging import ProfilerLogger, resolve_logger


class IntervalScheduler:
    """Runs ``on_fire`` every ``period_s`` seconds on the running event loop.

    Usage:
        scheduler = IntervalScheduler()
        scheduler.arm(3600.0, profiler.flush_current_interval)
        ...
        await scheduler.disarm()
    """

    def __init__(self, logger: ProfilerLogger | None = None) -> None:
        self._logger = resolve_logger(logger)
        self._task: asyncio.Task[None] | None = None
        self._disarmed = True
        self._firing = False
        self.fire_count = 0
        self.failure_count = 0

    @property
    def is_armed(self) -> bool:
        return self._task is not None

    def arm(self, period_s: float, on_fire: Callable[[], Awaitable[Any]]) -> None:
        """Start firing. Must be called from inside a running event loop."""
        assert period_s > 0, f"Period must be positive: {period_s}"
        if self._task is not None:
            raise RuntimeError("IntervalScheduler is already armed")
        self._disarmed = False
        self._task = asyncio.get_running_loop().create_task(
            self._run(period_s, on_fire), name="perfscope-interval"
        )

    async def disarm(self) -> None:
        """Stop firing; waits for a fire already in progress to finish.

        Idempotent. Called from inside ``on_fire`` it only prevents further
        fires.
        """
        task, self._task = self._task, None
        self._disarmed = True
        if task is None or task is asyncio.current_task():
            return
        if not self._firing:
            task.cancel()
        await asyncio.wait([task])

    async def _run(self, period_s: float, on_fire: Callable[[], Awaitable[Any]]) -> None:
        while not self._disarmed:
            await asyncio.sleep(period_s)
            if self._disarmed:
                return
            self._firing = True
            try:
                await on_fire()
                self.fire_count += 1
            except Exception as exc:  # noqa: BLE001
                self.failure_count += 1
                self._logger.error(
                    "Scheduled flush failed; timer stays armed",
                    error=f"{type(exc).__name__}: {exc}",
                )
            finally:
                self._firing = False
