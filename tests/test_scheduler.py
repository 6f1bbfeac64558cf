"""Tests for the periodic tick driver."""

import asyncio
import contextlib
import io
import random
from unittest.mock import AsyncMock

import pytest

from personaverse.config import SimulationSettings
from personaverse.orchestrator import Orchestrator
from personaverse.persistence import InMemoryPersistence
from personaverse.scheduler import TickScheduler


def make_orchestrator() -> Orchestrator:
    return Orchestrator(
        persistence=InMemoryPersistence(),
        settings=SimulationSettings(tick_interval_seconds=60.0, error_backoff_seconds=120.0),
        rng=random.Random(0),
    )


@pytest.mark.asyncio
async def test_runs_until_max_ticks():
    orchestrator = make_orchestrator()
    scheduler = TickScheduler(orchestrator, interval_seconds=0, max_ticks=3)

    with contextlib.redirect_stdout(io.StringIO()):
        await scheduler.run_forever()

    assert scheduler.ticks_completed == 3
    assert scheduler.failures == 0
    assert (await orchestrator.persistence.latest_snapshot()).tick == 3


@pytest.mark.asyncio
async def test_intervals_default_to_settings():
    scheduler = TickScheduler(make_orchestrator())
    assert scheduler.interval_seconds == 60.0
    assert scheduler.error_backoff_seconds == 120.0


@pytest.mark.asyncio
async def test_failed_tick_backs_off_and_continues():
    orchestrator = make_orchestrator()
    orchestrator.run_tick = AsyncMock(side_effect=[RuntimeError("store offline"), None])
    scheduler = TickScheduler(orchestrator, interval_seconds=0, error_backoff_seconds=0, max_ticks=1)

    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        await scheduler.run_forever()

    assert scheduler.failures == 1
    assert scheduler.ticks_completed == 1
    assert orchestrator.run_tick.await_count == 2
    assert "[!] Universe tick failed: store offline" in buf.getvalue()


@pytest.mark.asyncio
async def test_stop_interrupts_the_wait():
    orchestrator = make_orchestrator()
    scheduler = TickScheduler(orchestrator, interval_seconds=60)

    with contextlib.redirect_stdout(io.StringIO()):
        task = scheduler.start()
        assert scheduler.start() is task
        while scheduler.ticks_completed < 1:
            await asyncio.sleep(0)
        await asyncio.wait_for(scheduler.stop(), timeout=1.0)

    assert not scheduler.running
    assert scheduler.ticks_completed == 1
