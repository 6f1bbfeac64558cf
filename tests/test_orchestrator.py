"""Tests covering the orchestrator tick flow with in-memory collaborators."""

import asyncio
import contextlib
import io
import json
import random
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4
from unittest.mock import AsyncMock

import pytest

from personaverse.config import SimulationSettings
from personaverse.events import BroadcastHook, CallbackBroadcastHook, EventSink, InMemoryEventSink
from personaverse.orchestrator import Orchestrator, SnapshotPersistenceError, TickInProgressError
from personaverse.persistence import InMemoryPersistence, JsonPersistence, PersistenceStrategy, build_persistence
from personaverse.schemas import InteractionType, Particle, ParticleState, TraitVector
from personaverse.world import TickResult

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)
KINDRED = dict(curiosity=0.7, social_affinity=0.8, aggression=0.2, stability=0.8, growth_potential=0.6)


def make_orchestrator(persistence: Optional[PersistenceStrategy] = None, **kwargs) -> Orchestrator:
    kwargs.setdefault("event_sink", InMemoryEventSink())
    return Orchestrator(
        persistence=persistence or InMemoryPersistence(),
        settings=SimulationSettings(),
        rng=random.Random(42),
        clock=lambda: NOW,
        **kwargs,
    )


def make_particle(x: float, y: float, **fields) -> Particle:
    fields.setdefault("last_input_at", NOW)
    return Particle(user_id=uuid4(), position_x=x, position_y=y, **fields)


async def add_particle(persistence: PersistenceStrategy, particle: Particle, traits: Optional[dict] = None) -> Particle:
    await persistence.create_particle(particle)
    if traits is not None:
        await persistence.save_traits(TraitVector(particle_id=particle.id, **traits))
    return particle


class FailingSaves(InMemoryPersistence):
    """Rejects updates for selected particles."""

    def __init__(self, fail_ids):
        super().__init__()
        self.fail_ids = set(fail_ids)

    async def save_particle(self, particle: Particle) -> bool:
        if particle.id in self.fail_ids:
            raise RuntimeError("disk full")
        return await super().save_particle(particle)


class FlakySnapshots(InMemoryPersistence):
    def __init__(self):
        super().__init__()
        self.snapshot_failures = 1

    async def save_snapshot(self, snapshot):
        if self.snapshot_failures:
            self.snapshot_failures -= 1
            raise RuntimeError("snapshot table locked")
        await super().save_snapshot(snapshot)


class BlockingPersistence(InMemoryPersistence):
    """Holds the tick inside load_active until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def load_active(self):
        self.entered.set()
        await self.gate.wait()
        return await super().load_active()


class BrokenSink(EventSink):
    async def publish(self, event_type, payload):
        raise RuntimeError("broker unavailable")


class BrokenBroadcast(BroadcastHook):
    async def push_snapshot(self, snapshot):
        raise RuntimeError("socket closed")


@pytest.mark.asyncio
async def test_tick_numbers_increase_and_resume():
    persistence = InMemoryPersistence()
    orchestrator = make_orchestrator(persistence)
    for _ in range(3):
        await orchestrator.spawn_particle(uuid4())

    ticks = [(await orchestrator.run_tick()).snapshot.tick for _ in range(3)]
    assert ticks == [1, 2, 3]

    restarted = make_orchestrator(persistence)
    result = await restarted.run_tick()
    assert result.snapshot.tick == 4
    assert sorted(persistence.snapshots) == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_tick_persists_moves_and_events():
    persistence = InMemoryPersistence()
    sink = InMemoryEventSink()
    orchestrator = make_orchestrator(persistence, event_sink=sink)
    mover = await add_particle(persistence, make_particle(100, 100, velocity_x=2.0), {})

    result = await orchestrator.run_tick()

    stored = persistence.particles[mover.id]
    assert stored.position_x == pytest.approx(102.0)
    assert stored.energy == pytest.approx(99.9)
    assert result.snapshot.active_particle_count == 1
    tick_events = sink.of_type("universe.tick")
    assert len(tick_events) == 1
    assert tick_events[0]["tick"] == 1


@pytest.mark.asyncio
async def test_merge_is_persisted_with_new_trait_version():
    persistence = InMemoryPersistence()
    sink = InMemoryEventSink()
    orchestrator = make_orchestrator(persistence, event_sink=sink)
    a = await add_particle(persistence, make_particle(100, 100), KINDRED)
    b = await add_particle(persistence, make_particle(110, 100), KINDRED)

    result = await orchestrator.run_tick()

    states = {persistence.particles[a.id].state, persistence.particles[b.id].state}
    assert states == {ParticleState.ACTIVE, ParticleState.MERGED}
    survivor = a.id if persistence.particles[a.id].state is ParticleState.ACTIVE else b.id
    assert persistence.particles[survivor].mass == pytest.approx(2.0)
    latest = await persistence.latest_traits(survivor)
    assert latest.version == 2
    assert latest.stability == pytest.approx(0.9)
    assert result.snapshot.interaction_count == 1
    merged_events = sink.of_type("particle.merged")
    assert merged_events[0]["resulting_particle_id"] == str(survivor)


@pytest.mark.asyncio
async def test_failed_particle_save_is_isolated():
    stuck_particle = make_particle(100, 100, velocity_x=1.0)
    persistence = FailingSaves([stuck_particle.id])
    orchestrator = make_orchestrator(persistence)
    await add_particle(persistence, stuck_particle, {})
    other = await add_particle(persistence, make_particle(600, 600, velocity_x=1.0), {})

    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        result = await orchestrator.run_tick()

    assert result.snapshot.tick == 1
    assert persistence.particles[stuck_particle.id].position_x == pytest.approx(100.0)
    assert persistence.particles[other.id].position_x == pytest.approx(601.0)
    assert f"Failed to persist particle {stuck_particle.id}" in buf.getvalue()


@pytest.mark.asyncio
async def test_side_effect_failures_do_not_abort_tick():
    persistence = InMemoryPersistence()
    cache_hook = AsyncMock()
    orchestrator = make_orchestrator(
        persistence,
        event_sink=BrokenSink(),
        broadcast_hook=BrokenBroadcast(),
        cache_hook=cache_hook,
    )
    await add_particle(persistence, make_particle(100, 100), {})

    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        result = await orchestrator.run_tick()

    assert result.snapshot.tick == 1
    assert 1 in persistence.snapshots
    cache_hook.invalidate_active_particles_view.assert_awaited_once()
    out = buf.getvalue()
    assert "broker unavailable" in out
    assert "Snapshot broadcast for tick 1 failed" in out


@pytest.mark.asyncio
async def test_trigger_rejected_while_tick_running():
    persistence = BlockingPersistence()
    orchestrator = make_orchestrator(persistence)

    running = asyncio.create_task(orchestrator.run_tick())
    await persistence.entered.wait()
    assert orchestrator.tick_in_progress

    with pytest.raises(TickInProgressError):
        await orchestrator.trigger_tick()

    persistence.gate.set()
    result = await running
    assert result.snapshot.tick == 1
    assert not orchestrator.tick_in_progress

    second = await orchestrator.trigger_tick()
    assert second.snapshot.tick == 2


@pytest.mark.asyncio
async def test_snapshot_failure_does_not_consume_tick_number():
    persistence = FlakySnapshots()
    orchestrator = make_orchestrator(persistence)

    with pytest.raises(SnapshotPersistenceError) as excinfo:
        await orchestrator.run_tick()
    assert excinfo.value.tick == 1
    assert "Remediation tips" in str(excinfo.value)

    result = await orchestrator.run_tick()
    assert result.snapshot.tick == 1
    assert list(persistence.snapshots) == [1]


@pytest.mark.asyncio
async def test_spawn_is_idempotent_per_user():
    persistence = InMemoryPersistence()
    sink = InMemoryEventSink()
    orchestrator = make_orchestrator(persistence, event_sink=sink)
    user = uuid4()

    first = await orchestrator.spawn_particle(user)
    second = await orchestrator.spawn_particle(user)

    assert first.id == second.id
    assert first.state is ParticleState.ACTIVE
    assert first.energy == 100.0 and first.mass == 1.0
    assert (first.velocity_x, first.velocity_y) == (0.0, 0.0)
    assert 0.0 <= first.position_x < 1000.0
    assert len(persistence.particles) == 1
    traits = await persistence.latest_traits(first.id)
    assert traits.version == 1
    assert traits.as_tuple() == (0.5, 0.5, 0.5, 0.5, 0.5)
    spawned = sink.of_type("particle.spawned")
    assert len(spawned) == 1
    assert spawned[0]["user_id"] == str(user)


@pytest.mark.asyncio
async def test_spawn_is_reproducible_under_seed():
    first = await make_orchestrator().spawn_particle(UUID(int=7))
    second = await make_orchestrator().spawn_particle(UUID(int=7))
    assert first.id == second.id
    assert (first.position_x, first.position_y) == (second.position_x, second.position_y)


@pytest.mark.asyncio
async def test_find_neighbors():
    persistence = InMemoryPersistence()
    orchestrator = make_orchestrator(persistence)
    center = await add_particle(persistence, make_particle(100, 100))
    near = await add_particle(persistence, make_particle(130, 100))
    await add_particle(persistence, make_particle(400, 400))

    found = await orchestrator.find_neighbors(center.id)
    assert [p.id for p in found] == [near.id]

    assert await orchestrator.find_neighbors(uuid4()) == []
    assert await orchestrator.find_neighbors(center.id, radius=10) == []
    with pytest.raises(ValueError):
        await orchestrator.find_neighbors(center.id, radius=-1)


@pytest.mark.asyncio
async def test_universe_state_before_and_after_first_tick():
    persistence = InMemoryPersistence()
    orchestrator = make_orchestrator(persistence)
    await add_particle(persistence, make_particle(100, 100, energy=80.0), {})
    await add_particle(persistence, make_particle(700, 700, energy=60.0), {})

    before = await orchestrator.get_universe_state()
    assert before.tick == 0
    assert before.active_particle_count == 2
    assert before.average_energy == pytest.approx(70.0)
    assert len(before.particles) == 2

    await orchestrator.run_tick()
    after = await orchestrator.get_universe_state()
    assert after.tick == 1
    assert after.timestamp == NOW
    assert after.interaction_count == 0


@pytest.mark.asyncio
async def test_missing_traits_fall_back_to_neutral_with_warning():
    persistence = InMemoryPersistence()
    orchestrator = make_orchestrator(persistence)
    particle = await add_particle(persistence, make_particle(100, 100))

    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        result = await orchestrator.run_tick()

    assert result.snapshot.active_particle_count == 1
    out = buf.getvalue()
    assert "[~]" in out
    assert f"Particle {particle.id} has no trait vector; using neutral defaults" in out


@pytest.mark.asyncio
async def test_record_input_revives_decaying_particle():
    persistence = InMemoryPersistence()
    orchestrator = make_orchestrator(persistence)
    particle = await add_particle(
        persistence,
        make_particle(
            100, 100,
            state=ParticleState.DECAYING,
            decay_level=20,
            last_input_at=NOW - timedelta(hours=48),
        ),
        {},
    )

    updated = await orchestrator.record_input(particle.id, TraitVector(curiosity=0.9))
    assert updated.last_input_at == NOW
    traits = await persistence.latest_traits(particle.id)
    assert traits.version == 2
    assert traits.curiosity == pytest.approx(0.9)

    await orchestrator.run_tick()
    stored = persistence.particles[particle.id]
    assert stored.state is ParticleState.ACTIVE
    assert stored.decay_level == 20

    assert await orchestrator.record_input(uuid4()) is None


@pytest.mark.asyncio
async def test_idle_particle_decays_across_ticks():
    persistence = InMemoryPersistence()
    sink = InMemoryEventSink()
    orchestrator = make_orchestrator(persistence, event_sink=sink)
    particle = await add_particle(
        persistence, make_particle(100, 100, decay_level=80, last_input_at=NOW - timedelta(hours=30)), {}
    )

    await orchestrator.run_tick()
    assert persistence.particles[particle.id].state is ParticleState.DECAYING
    await orchestrator.run_tick()

    assert persistence.particles[particle.id].state is ParticleState.EXPIRED
    assert await persistence.load_active() == []
    expired = sink.of_type("particle.expired")
    assert len(expired) == 1
    assert expired[0]["particle_id"] == str(particle.id)
    assert expired[0]["reason"] == "decay"
    assert expired[0]["occurred_at"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_broadcast_callbacks_and_listeners_receive_snapshot():
    calls = []

    def on_sync(snapshot):
        calls.append(("sync", snapshot.tick))

    async def on_async(snapshot):
        calls.append(("async", snapshot.tick))

    heard = []
    orchestrator = make_orchestrator(
        broadcast_hook=CallbackBroadcastHook(on_sync, on_async),
        tick_listeners=[lambda tick, result: heard.append((tick, result.snapshot.active_particle_count))],
    )

    await orchestrator.run_tick()

    assert calls == [("sync", 1), ("async", 1)]
    assert heard == [(1, 0)]


@pytest.mark.asyncio
async def test_run_returns_summary():
    orchestrator = make_orchestrator()
    await orchestrator.spawn_particle(uuid4())

    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        summary = await orchestrator.run(2)

    assert summary["ticks_completed"] == 2
    assert summary["final_snapshot"].tick == 2
    out = buf.getvalue()
    assert "=== Tick 1/2 ===" in out
    assert "[•] [Tick 2] Advancing world..." in out


@pytest.mark.asyncio
async def test_unreadable_record_is_skipped_and_tick_still_runs(tmp_path, capsys):
    persistence = JsonPersistence(tmp_path)
    orchestrator = make_orchestrator(persistence)
    await orchestrator.initialize()
    mover = await add_particle(persistence, make_particle(100, 100, velocity_x=2.0), {})
    broken = make_particle(300, 300)
    record = {**broken.model_dump(mode="json"), "energy": 150.0}
    (tmp_path / "particles" / f"{broken.id}.json").write_text(json.dumps(record))

    result = await orchestrator.run_tick()

    assert result.snapshot.tick == 1
    assert result.snapshot.active_particle_count == 1
    assert (await persistence.get_particle(mover.id)).position_x == pytest.approx(102.0)
    assert f"Skipping unreadable particle record {broken.id}" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_manual_trigger_respects_tick_lock_held_by_other_store(tmp_path):
    scheduled = make_orchestrator(build_persistence("json", json_path=tmp_path))
    manual = make_orchestrator(build_persistence("json", json_path=tmp_path))
    await scheduled.initialize()
    await manual.initialize()
    for _ in range(4):
        await manual.spawn_particle(uuid4())

    other_process = JsonPersistence(tmp_path)
    async with other_process.tick_lock():
        with pytest.raises(TickInProgressError):
            await manual.trigger_tick()
        queued = asyncio.create_task(scheduled.run_tick())
        await asyncio.sleep(0.2)
        assert not queued.done()

    first = await asyncio.wait_for(queued, timeout=5)
    second = await manual.trigger_tick()
    assert (first.snapshot.tick, second.snapshot.tick) == (1, 2)


@pytest.mark.asyncio
async def test_scheduled_and_manual_ticks_never_overlap(tmp_path):
    scheduled = make_orchestrator(build_persistence("json", json_path=tmp_path))
    manual = make_orchestrator(build_persistence("json", json_path=tmp_path))
    await scheduled.initialize()
    await manual.initialize()
    for _ in range(30):
        await scheduled.spawn_particle(uuid4())

    results = await asyncio.gather(scheduled.run_tick(), manual.trigger_tick(), return_exceptions=True)

    assert isinstance(results[0], TickResult)
    assert isinstance(results[1], (TickResult, TickInProgressError))
    completed = sorted(r.snapshot.tick for r in results if isinstance(r, TickResult))
    assert completed == list(range(1, len(completed) + 1))
    assert [s.tick for s in await scheduled.persistence.list_snapshots()] == completed[::-1]


@pytest.mark.asyncio
async def test_evaluate_interaction_is_read_only():
    persistence = InMemoryPersistence()
    sink = InMemoryEventSink()
    orchestrator = make_orchestrator(persistence, event_sink=sink)
    a = await add_particle(persistence, make_particle(100, 100), KINDRED)
    b = await add_particle(persistence, make_particle(800, 800), KINDRED)
    plain = await add_particle(persistence, make_particle(400, 400))
    stored = {pid: p.model_copy(deep=True) for pid, p in persistence.particles.items()}

    outcome = await orchestrator.evaluate_interaction(a.id, b.id)
    assert outcome.interaction_type is InteractionType.MERGE
    assert outcome.particle_ids == (a.id, b.id)
    assert outcome.strength == outcome.compatibility

    neutral = await orchestrator.evaluate_interaction(plain.id, a.id)
    assert neutral.compatibility == pytest.approx(0.2 * 0.8 + 0.3 * 0.7 + 0.2 * 0.7 + 0.15 * 0.65 + 0.15 * 0.9)

    assert persistence.particles == stored
    assert len(persistence.traits[a.id]) == 1
    assert plain.id not in persistence.traits
    assert sink.events == []
    assert persistence.snapshots == {}

    assert await orchestrator.evaluate_interaction(a.id, uuid4()) is None
    with pytest.raises(ValueError):
        await orchestrator.evaluate_interaction(a.id, a.id)
