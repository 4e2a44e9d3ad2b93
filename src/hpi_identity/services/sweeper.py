"""Periodic background sweep of expired verification state."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

SweepJob = Callable[[], Awaitable[int]]


class Sweeper:
    """Runs registered sweep jobs every ``interval`` seconds.

    Nothing runs until :meth:`start` is called, and :meth:`stop` cancels
    the task and waits for it to finish.
    """

    def __init__(self, interval: float, jobs: list[tuple[str, SweepJob]] | None = None) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._jobs: list[tuple[str, SweepJob]] = list(jobs or [])
        self._task: asyncio.Task | None = None

    def register(self, name: str, job: SweepJob) -> None:
        self._jobs.append((name, job))

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="hpi-identity-sweeper")
        logger.info("Sweeper started (interval=%ss, jobs=%d)", self._interval, len(self._jobs))

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to exit."""
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Sweeper stopped")

    async def run_once(self) -> dict[str, int]:
        """Run every job once and return the number removed per job."""
        results: dict[str, int] = {}
        for name, job in self._jobs:
            try:
                results[name] = await job()
            except Exception:
                logger.exception("Sweep job %s failed", name)
                results[name] = 0
        return results

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()
