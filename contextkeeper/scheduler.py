"""Scheduler — one self-pacing sync loop per (project, platform) integration."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta

import structlog

logger = structlog.get_logger(__name__)


class SyncLoop:
    """Single integration loop with trigger/timeout wake mechanism.

    ``run_fn`` returns the delay until the next cycle, or ``None`` to end
    the loop (integration disabled or gone).
    """

    def __init__(
        self,
        name: str,
        run_fn: Callable[[], Awaitable[timedelta | None]],
        interval: float,
        initial_delay: float = 0.0,
    ) -> None:
        self.name = name
        self.run_fn = run_fn
        self.interval = interval
        self.initial_delay = initial_delay
        self.trigger = asyncio.Event()
        self.cycles = 0

    async def loop(self) -> None:
        """Run cycles until ``run_fn`` returns None or the task is cancelled."""
        delay = self.initial_delay
        while True:
            if delay > 0:
                try:
                    await asyncio.wait_for(self.trigger.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
            self.trigger.clear()

            try:
                next_delay = await self.run_fn()
            except Exception:
                logger.exception("sync_loop.error", loop=self.name)
                delay = self.interval
                continue

            self.cycles += 1
            if next_delay is None:
                logger.info("sync_loop.finished", loop=self.name, cycles=self.cycles)
                return
            delay = max(next_delay.total_seconds(), 0.0)
            logger.debug("sync_loop.cycle", loop=self.name, next_in=delay)


class Scheduler:
    """Manages lifecycle of SyncLoop tasks, keyed by loop name."""

    def __init__(self) -> None:
        self._loops: dict[str, SyncLoop] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def add(self, loop: SyncLoop) -> bool:
        """Start *loop* as an asyncio task; False if one is already running."""
        if self.is_running(loop.name):
            return False
        self._loops[loop.name] = loop
        self._tasks[loop.name] = asyncio.create_task(loop.loop(), name=f"sync-{loop.name}")
        logger.info("scheduler.loop_started", loop=loop.name)
        return True

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def trigger(self, name: str) -> bool:
        """Wake a running loop early."""
        if not self.is_running(name):
            return False
        self._loops[name].trigger.set()
        return True

    def names(self) -> list[str]:
        return sorted(name for name in self._tasks if self.is_running(name))

    async def remove(self, name: str) -> bool:
        """Cancel one loop and wait for it to exit."""
        task = self._tasks.pop(name, None)
        self._loops.pop(name, None)
        if task is None:
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("scheduler.loop_stopped", loop=name)
        return True

    async def stop(self) -> None:
        """Cancel all loops and wait for them to exit."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._loops.clear()
        logger.info("scheduler.stopped")
