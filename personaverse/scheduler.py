"""Periodic tick driver.

Runs Orchestrator.run_tick() every tick interval. A failed tick is logged and
followed by a longer back-off before the next attempt. stop() lets the
in-flight tick finish and then ends the loop; it never cancels a tick midway.
"""

import asyncio
from typing import Optional

from .logging_utils import log_error, log_info, log_success
from .orchestrator import Orchestrator


class TickScheduler:
    """Drive an orchestrator on a fixed interval."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        interval_seconds: Optional[float] = None,
        error_backoff_seconds: Optional[float] = None,
        max_ticks: Optional[int] = None,
    ) -> None:
        settings = orchestrator.settings
        self.orchestrator = orchestrator
        self.interval_seconds = (
            settings.tick_interval_seconds if interval_seconds is None else interval_seconds
        )
        self.error_backoff_seconds = (
            settings.error_backoff_seconds if error_backoff_seconds is None else error_backoff_seconds
        )
        self.max_ticks = max_ticks

        self.ticks_completed = 0
        self.failures = 0
        self._stop = asyncio.Event()
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "asyncio.Task[None]":
        """Start the loop as a background task (idempotent)."""
        if self.running:
            assert self._task is not None
            return self._task
        self._stop.clear()
        self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        """Stop scheduling and wait for the in-flight tick, if any."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _sleep(self, seconds: float) -> None:
        # Wake early when stop() is requested.
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_forever(self) -> None:
        log_info(f"Universe tick scheduler started (every {self.interval_seconds:g}s)")
        while not self._stop.is_set():
            try:
                await self.orchestrator.run_tick()
            except Exception as exc:
                self.failures += 1
                log_error(f"Universe tick failed: {exc}; retrying in {self.error_backoff_seconds:g}s")
                await self._sleep(self.error_backoff_seconds)
                continue

            self.ticks_completed += 1
            if self.max_ticks is not None and self.ticks_completed >= self.max_ticks:
                break
            await self._sleep(self.interval_seconds)
        log_success(f"Universe tick scheduler stopped after {self.ticks_completed} tick(s)")
