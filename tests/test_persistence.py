"""Tests for the storage backends and the retry wrapper."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4
from unittest.mock import AsyncMock

import pytest

from personaverse.persistence import (
    DuplicateSnapshotError,
    InMemoryPersistence,
    JsonPersistence,
    PersistenceStrategy,
    RetryingPersistence,
    TickLockUnavailable,
    TransientStoreError,
    build_persistence,
)
from personaverse.schemas import Particle, ParticleState, TraitVector, WorldSnapshot

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_particle(state: ParticleState = ParticleState.ACTIVE, **fields) -> Particle:
    fields.setdefault("user_id", uuid4())
    return Particle(position_x=10.0, position_y=20.0, state=state, **fields)


def make_snapshot(tick: int) -> WorldSnapshot:
    return WorldSnapshot(
        tick=tick,
        timestamp=NOW + timedelta(seconds=10 * tick),
        active_particle_count=tick,
        average_energy=50.0,
        interaction_count=0,
    )


def make_backend(kind: str, tmp_path) -> PersistenceStrategy:
    if kind == "memory":
        return InMemoryPersistence()
    return JsonPersistence(tmp_path / "universe")


BACKENDS = ["memory", "json"]


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_particle_records(kind, tmp_path):
    store = make_backend(kind, tmp_path)
    await store.initialize()

    active = make_particle()
    decaying = make_particle(ParticleState.DECAYING)
    merged = make_particle(ParticleState.MERGED)
    for particle in (active, decaying, merged):
        assert await store.create_particle(particle) == particle.id

    live_ids = {p.id for p in await store.load_active()}
    assert live_ids == {active.id, decaying.id}
    assert len(await store.load_all()) == 3

    with pytest.raises(ValueError):
        await store.create_particle(active)

    fetched = await store.get_particle(active.id)
    assert fetched == active
    assert await store.get_particle(uuid4()) is None

    fetched.position_x = 42.0
    assert await store.save_particle(fetched) is True
    assert (await store.get_particle(active.id)).position_x == 42.0
    assert await store.save_particle(make_particle()) is False

    await store.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_particle_by_user_ignores_terminal_records(kind, tmp_path):
    store = make_backend(kind, tmp_path)
    await store.initialize()
    owner = uuid4()

    await store.create_particle(make_particle(ParticleState.MERGED, user_id=owner))
    assert await store.get_particle_by_user(owner) is None

    live = make_particle(user_id=owner)
    await store.create_particle(live)
    assert (await store.get_particle_by_user(owner)).id == live.id


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_latest_traits_prefers_highest_version(kind, tmp_path):
    store = make_backend(kind, tmp_path)
    await store.initialize()
    particle = make_particle()
    await store.create_particle(particle)

    assert await store.latest_traits(particle.id) is None

    await store.save_traits(TraitVector(particle_id=particle.id, version=2, curiosity=0.9, calculated_at=NOW))
    await store.save_traits(
        TraitVector(particle_id=particle.id, version=1, curiosity=0.1, calculated_at=NOW + timedelta(hours=1))
    )

    latest = await store.latest_traits(particle.id)
    assert latest.version == 2
    assert latest.curiosity == pytest.approx(0.9)

    with pytest.raises(ValueError):
        await store.save_traits(TraitVector())


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_snapshots_unique_and_ordered(kind, tmp_path):
    store = make_backend(kind, tmp_path)
    await store.initialize()

    assert await store.latest_snapshot() is None
    for tick in (1, 2, 3):
        await store.save_snapshot(make_snapshot(tick))

    with pytest.raises(DuplicateSnapshotError) as excinfo:
        await store.save_snapshot(make_snapshot(2))
    assert excinfo.value.tick == 2

    assert (await store.latest_snapshot()).tick == 3
    assert [s.tick for s in await store.list_snapshots(limit=2)] == [3, 2]
    assert await store.list_snapshots() == [make_snapshot(3), make_snapshot(2), make_snapshot(1)]


@pytest.mark.asyncio
async def test_json_snapshots_order_numerically_past_six_digits(tmp_path):
    store = JsonPersistence(tmp_path)
    await store.initialize()
    for tick in (999998, 1000000, 999999):
        await store.save_snapshot(make_snapshot(tick))

    assert (await store.latest_snapshot()).tick == 1000000
    assert [s.tick for s in await store.list_snapshots()] == [1000000, 999999, 999998]
    with pytest.raises(DuplicateSnapshotError):
        await store.save_snapshot(make_snapshot(1000000))


@pytest.mark.asyncio
async def test_json_skips_unreadable_particle_records(tmp_path, capsys):
    store = JsonPersistence(tmp_path)
    await store.initialize()
    healthy = make_particle()
    await store.create_particle(healthy)
    broken = make_particle()
    record = {**broken.model_dump(mode="json"), "energy": 150.0}
    (tmp_path / "particles" / f"{broken.id}.json").write_text(json.dumps(record))

    assert [p.id for p in await store.load_active()] == [healthy.id]
    assert [p.id for p in await store.load_all()] == [healthy.id]
    assert f"Skipping unreadable particle record {broken.id}" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_in_memory_records_are_copied():
    store = InMemoryPersistence()
    particle = make_particle()
    await store.create_particle(particle)

    particle.energy = 5.0
    loaded = (await store.load_active())[0]
    assert loaded.energy == 100.0

    loaded.energy = 1.0
    assert store.particles[particle.id].energy == 100.0


@pytest.mark.asyncio
async def test_json_layout(tmp_path):
    store = JsonPersistence(tmp_path)
    await store.initialize()
    particle = make_particle()
    await store.create_particle(particle)
    await store.save_traits(TraitVector(particle_id=particle.id, version=1))
    await store.save_traits(TraitVector(particle_id=particle.id, version=2))
    await store.save_snapshot(make_snapshot(1))

    particle_file = tmp_path / "particles" / f"{particle.id}.json"
    assert json.loads(particle_file.read_text())["state"] == "active"
    trait_lines = (tmp_path / "traits" / f"{particle.id}.jsonl").read_text().splitlines()
    assert [json.loads(line)["version"] for line in trait_lines] == [1, 2]
    assert json.loads((tmp_path / "snapshots" / "000001.json").read_text())["tick"] == 1

    reopened = JsonPersistence(tmp_path)
    assert (await reopened.get_particle(particle.id)) == particle


@pytest.mark.asyncio
async def test_retry_recovers_from_transient_failures():
    inner = AsyncMock(spec=PersistenceStrategy)
    inner.load_active.side_effect = [TransientStoreError("timeout"), ConnectionError("reset"), []]
    store = RetryingPersistence(inner, max_attempts=3, backoff_seconds=0, max_backoff_seconds=0)

    assert await store.load_active() == []
    assert inner.load_active.await_count == 3


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_attempts():
    inner = AsyncMock(spec=PersistenceStrategy)
    inner.latest_snapshot.side_effect = TransientStoreError("still down")
    store = RetryingPersistence(inner, max_attempts=2, backoff_seconds=0, max_backoff_seconds=0)

    with pytest.raises(TransientStoreError):
        await store.latest_snapshot()
    assert inner.latest_snapshot.await_count == 2


@pytest.mark.asyncio
async def test_retry_does_not_repeat_logic_errors():
    inner = AsyncMock(spec=PersistenceStrategy)
    inner.create_particle.side_effect = ValueError("already exists")
    inner.save_snapshot.side_effect = DuplicateSnapshotError(4)
    store = RetryingPersistence(inner, max_attempts=5, backoff_seconds=0, max_backoff_seconds=0)

    with pytest.raises(ValueError):
        await store.create_particle(make_particle())
    with pytest.raises(DuplicateSnapshotError):
        await store.save_snapshot(make_snapshot(4))
    assert inner.create_particle.await_count == 1
    assert inner.save_snapshot.await_count == 1


@pytest.mark.asyncio
async def test_retry_wrapper_delegates_to_backend():
    inner = InMemoryPersistence()
    store = RetryingPersistence(inner, max_attempts=1)
    await store.initialize()
    particle = make_particle()

    await store.create_particle(particle)
    await store.save_traits(TraitVector(particle_id=particle.id))
    await store.save_snapshot(make_snapshot(1))

    assert particle.id in inner.particles
    assert (await store.latest_traits(particle.id)).particle_id == particle.id
    assert (await store.latest_snapshot()).tick == 1
    await store.close()


def test_build_persistence(tmp_path):
    assert isinstance(build_persistence("memory", retry=False), InMemoryPersistence)

    wrapped = build_persistence("json", json_path=tmp_path)
    assert isinstance(wrapped, RetryingPersistence)
    assert isinstance(wrapped.inner, JsonPersistence)
    assert wrapped.inner.base_path == tmp_path

    with pytest.raises(ValueError):
        build_persistence("redis")


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", BACKENDS)
async def test_tick_lock_rejects_second_holder(kind, tmp_path):
    store = make_backend(kind, tmp_path)
    await store.initialize()

    async with store.tick_lock():
        with pytest.raises(TickLockUnavailable):
            async with store.tick_lock(blocking=False):
                pass

    async with store.tick_lock(blocking=False):
        pass


@pytest.mark.asyncio
async def test_json_tick_lock_is_shared_between_store_instances(tmp_path):
    first = JsonPersistence(tmp_path)
    second = RetryingPersistence(JsonPersistence(tmp_path), max_attempts=1)
    entered = []

    async def wait_for_lock():
        async with second.tick_lock():
            entered.append("second")

    async with first.tick_lock():
        with pytest.raises(TickLockUnavailable):
            async with second.tick_lock(blocking=False):
                pass
        waiter = asyncio.create_task(wait_for_lock())
        await asyncio.sleep(0.2)
        assert entered == []

    await asyncio.wait_for(waiter, timeout=5)
    assert entered == ["second"]
