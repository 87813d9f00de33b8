"""Background pollers: the deposit bridge and vault log sync run on a fixed cadence.

A SingleFlightPoller fires a tick every ``interval_seconds``. If the previous
tick is still running the new one is skipped, so a slow chain never stacks up
overlapping scans. ``stop()`` sets the stop event and waits for the in-flight
tick to finish.

Usage:
    poller = SingleFlightPoller("deposit_bridge", bridge.run_once, 60)
    poller.start()
    ...
    await poller.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog

from deal_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger(__name__)


class SingleFlightPoller:
    """Runs an async job periodically, never more than one tick at a time."""

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        interval_seconds: float,
    ) -> None:
        self.name = name
        self._job = job
        self._interval = interval_seconds
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._ticks: set[asyncio.Task[bool]] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"poller:{self.name}")
        logger.info("poller.started", poller=self.name, interval=self._interval)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        self._stop.set()
        if task is not None:
            await task
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)
        logger.info("poller.stopped", poller=self.name)

    async def run_once(self) -> bool:
        """Run one tick. Returns False if it was skipped because a tick is in flight."""
        if self._lock.locked():
            logger.debug("poller.tick_skipped", poller=self.name)
            return False
        async with self._lock:
            with structlog.contextvars.bound_contextvars(poller=self.name):
                try:
                    result = await self._job()
                except Exception:
                    logger.exception("poller.tick_failed")
                else:
                    logger.debug("poller.tick_done", result=result)
        return True

    async def _loop(self) -> None:
        while not self._stop.is_set():
            tick = asyncio.create_task(self.run_once(), name=f"poller:{self.name}:tick")
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
