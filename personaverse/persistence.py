"""
Storage interfaces and pluggable backends for the simulation engine.

The engine depends on three narrow stores, combined into one
PersistenceStrategy so a backend can be swapped without touching simulation
code:

- ParticleStore: particle records (load live population, save, create)
- TraitStore: append-only trait vector history, newest version wins
- SnapshotStore: one WorldSnapshot per tick, tick numbers unique

Included implementations:
1. InMemoryPersistence - dict-based, data lost on exit (tests, prototyping)
2. JsonPersistence - human-readable files under one directory
3. PostgresPersistence - asyncpg pool, schema created on initialize()

Every backend also provides tick_lock(), the store-wide guard that keeps two
orchestrators (in one process or several) from advancing the same universe
at once.

RetryingPersistence wraps any strategy and retries transient failures with
bounded exponential back-off (tenacity). Retrying happens here, at the
collaborator boundary, never inside the tick computation.

Usage pattern:
    persistence = RetryingPersistence(JsonPersistence("universe_data"))
    await persistence.initialize()
    particles = await persistence.load_active()
    ...
    await persistence.close()
"""

import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
)
from uuid import UUID

import asyncpg
from filelock import FileLock, Timeout
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Config
from .logging_utils import log_error, log_warning
from .schemas import Particle, ParticleState, TraitVector, WorldSnapshot

T = TypeVar("T")

_LIVE_STATES = (ParticleState.ACTIVE.value, ParticleState.DECAYING.value)


class TransientStoreError(Exception):
    """A store operation failed for a reason that may clear up on retry."""


class DuplicateSnapshotError(Exception):
    """A snapshot for this tick number already exists."""

    def __init__(self, tick: int) -> None:
        self.tick = tick
        super().__init__(f"Snapshot for tick {tick} already exists")


class TickLockUnavailable(Exception):
    """Another orchestrator holds the store's tick lock."""

    def __init__(self, holder: str) -> None:
        self.holder = holder
        super().__init__(f"Tick lock is held elsewhere ({holder})")


class ParticleStore(ABC):
    """Particle records. The engine never deletes particles."""

    @abstractmethod
    async def load_active(self) -> List[Particle]:
        """Return every live particle (Active or Decaying)."""

    @abstractmethod
    async def load_all(self) -> List[Particle]:
        """Return every particle regardless of state."""

    @abstractmethod
    async def get_particle(self, particle_id: UUID) -> Optional[Particle]:
        pass

    @abstractmethod
    async def get_particle_by_user(self, user_id: UUID) -> Optional[Particle]:
        """Return the owner's live particle, if any."""

    @abstractmethod
    async def save_particle(self, particle: Particle) -> bool:
        """
        Overwrite an existing particle record.

        Returns:
            True if the record existed and was updated, False otherwise
        """

    @abstractmethod
    async def create_particle(self, particle: Particle) -> UUID:
        """Insert a new particle record and return its id."""


class TraitStore(ABC):
    """Trait vector history per particle."""

    @abstractmethod
    async def latest_traits(self, particle_id: UUID) -> Optional[TraitVector]:
        """Return the highest-version vector for the particle, if any."""

    @abstractmethod
    async def save_traits(self, traits: TraitVector) -> None:
        """Append a vector (particle_id must be set)."""


class SnapshotStore(ABC):
    """Per-tick world snapshots."""

    @abstractmethod
    async def save_snapshot(self, snapshot: WorldSnapshot) -> None:
        """
        Store a snapshot.

        Raises:
            DuplicateSnapshotError: If a snapshot for the tick already exists
        """

    @abstractmethod
    async def latest_snapshot(self) -> Optional[WorldSnapshot]:
        pass

    @abstractmethod
    async def list_snapshots(self, limit: int = 10) -> List[WorldSnapshot]:
        """Most recent snapshots first."""


class PersistenceStrategy(ParticleStore, TraitStore, SnapshotStore):
    """All three stores behind one lifecycle.

    initialize() and close() manage connection pools, directories and the
    like. Both must be safe to call more than once.
    """

    @abstractmethod
    def tick_lock(self, blocking: bool = True) -> AsyncContextManager[None]:
        """
        Hold the store-wide tick lock for the duration of an `async with`.

        Args:
            blocking: Wait for the lock when True, fail at once when False

        Raises:
            TickLockUnavailable: If blocking is False and the lock is taken
        """

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


def _require_trait_owner(traits: TraitVector) -> UUID:
    if traits.particle_id is None:
        raise ValueError("Trait vector has no particle_id; cannot store it")
    return traits.particle_id


class InMemoryPersistence(PersistenceStrategy):
    """Dict-based storage.

    Records are copied on the way in and out, so callers never share mutable
    particles with the store.
    """

    def __init__(self) -> None:
        self.particles: Dict[UUID, Particle] = {}
        self.traits: Dict[UUID, List[TraitVector]] = {}
        self.snapshots: Dict[int, WorldSnapshot] = {}
        self._tick_lock = asyncio.Lock()

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        # Data is kept after close so callers can inspect a finished run.
        pass

    @asynccontextmanager
    async def tick_lock(self, blocking: bool = True) -> AsyncIterator[None]:
        if not blocking and self._tick_lock.locked():
            raise TickLockUnavailable("in-memory store")
        async with self._tick_lock:
            yield

    async def load_active(self) -> List[Particle]:
        return [p.model_copy(deep=True) for p in self.particles.values() if p.is_live]

    async def load_all(self) -> List[Particle]:
        return [p.model_copy(deep=True) for p in self.particles.values()]

    async def get_particle(self, particle_id: UUID) -> Optional[Particle]:
        particle = self.particles.get(particle_id)
        return particle.model_copy(deep=True) if particle else None

    async def get_particle_by_user(self, user_id: UUID) -> Optional[Particle]:
        for particle in self.particles.values():
            if particle.user_id == user_id and particle.is_live:
                return particle.model_copy(deep=True)
        return None

    async def save_particle(self, particle: Particle) -> bool:
        if particle.id not in self.particles:
            return False
        self.particles[particle.id] = particle.model_copy(deep=True)
        return True

    async def create_particle(self, particle: Particle) -> UUID:
        if particle.id in self.particles:
            raise ValueError(f"Particle {particle.id} already exists")
        self.particles[particle.id] = particle.model_copy(deep=True)
        return particle.id

    async def latest_traits(self, particle_id: UUID) -> Optional[TraitVector]:
        history = self.traits.get(particle_id)
        if not history:
            return None
        return max(history, key=lambda t: (t.version, t.calculated_at))

    async def save_traits(self, traits: TraitVector) -> None:
        owner = _require_trait_owner(traits)
        self.traits.setdefault(owner, []).append(traits)

    async def save_snapshot(self, snapshot: WorldSnapshot) -> None:
        if snapshot.tick in self.snapshots:
            raise DuplicateSnapshotError(snapshot.tick)
        self.snapshots[snapshot.tick] = snapshot

    async def latest_snapshot(self) -> Optional[WorldSnapshot]:
        if not self.snapshots:
            return None
        return self.snapshots[max(self.snapshots)]

    async def list_snapshots(self, limit: int = 10) -> List[WorldSnapshot]:
        ticks = sorted(self.snapshots, reverse=True)[:limit]
        return [self.snapshots[tick] for tick in ticks]


class JsonPersistence(PersistenceStrategy):
    """File-based persistence using JSON for human-readable storage.

    Directory structure:
    ```
    {base_path}/
      particles/
        {particle_id}.json      # current particle record
      traits/
        {particle_id}.jsonl     # append-only trait history
      snapshots/
        000001.json             # WorldSnapshot for tick 1
        000002.json
        ...
      tick.lock                 # held while a tick runs
    ```

    Snapshot files are ordered by the integer in their name, so ticks past
    999999 still sort after the six-digit ones. All file I/O runs in a
    worker thread (asyncio.to_thread).

    Only the tick itself is serialized across processes (tick.lock, via
    filelock). Other writes are last-writer-wins.
    """

    LOCK_POLL_SECONDS = 0.05

    def __init__(self, base_path: Union[Path, str] = "universe_data"):
        self.base_path = Path(base_path)

    @property
    def particles_dir(self) -> Path:
        return self.base_path / "particles"

    @property
    def traits_dir(self) -> Path:
        return self.base_path / "traits"

    @property
    def snapshots_dir(self) -> Path:
        return self.base_path / "snapshots"

    @property
    def lock_path(self) -> Path:
        return self.base_path / "tick.lock"

    async def initialize(self) -> None:
        for directory in (self.particles_dir, self.traits_dir, self.snapshots_dir):
            await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        return None

    def _try_lock(self, lock: FileLock) -> bool:
        self.base_path.mkdir(parents=True, exist_ok=True)
        try:
            lock.acquire(timeout=0)
        except Timeout:
            return False
        return True

    @asynccontextmanager
    async def tick_lock(self, blocking: bool = True) -> AsyncIterator[None]:
        # One FileLock per hold: separate handles contend even inside one process.
        lock = FileLock(str(self.lock_path), thread_local=False)
        while not await asyncio.to_thread(self._try_lock, lock):
            if not blocking:
                raise TickLockUnavailable(str(self.lock_path))
            await asyncio.sleep(self.LOCK_POLL_SECONDS)
        try:
            yield
        finally:
            await asyncio.to_thread(lock.release)

    def _particle_path(self, particle_id: UUID) -> Path:
        return self.particles_dir / f"{particle_id}.json"

    def _read_particles(self) -> List[Particle]:
        if not self.particles_dir.exists():
            return []
        particles = []
        for path in sorted(self.particles_dir.glob("*.json")):
            try:
                particles.append(Particle.model_validate_json(path.read_text("utf-8")))
            except ValidationError as exc:
                log_warning(f"Skipping unreadable particle record {path.stem}: {exc.error_count()} error(s)")
        return particles

    def _write_particle(self, particle: Particle) -> None:
        path = self._particle_path(particle.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(particle.model_dump(mode="json"), indent=2), "utf-8")

    async def load_active(self) -> List[Particle]:
        particles = await asyncio.to_thread(self._read_particles)
        return [p for p in particles if p.is_live]

    async def load_all(self) -> List[Particle]:
        return await asyncio.to_thread(self._read_particles)

    async def get_particle(self, particle_id: UUID) -> Optional[Particle]:
        path = self._particle_path(particle_id)
        if not path.exists():
            return None
        text = await asyncio.to_thread(path.read_text, "utf-8")
        return Particle.model_validate_json(text)

    async def get_particle_by_user(self, user_id: UUID) -> Optional[Particle]:
        for particle in await self.load_active():
            if particle.user_id == user_id:
                return particle
        return None

    async def save_particle(self, particle: Particle) -> bool:
        if not self._particle_path(particle.id).exists():
            return False
        await asyncio.to_thread(self._write_particle, particle)
        return True

    async def create_particle(self, particle: Particle) -> UUID:
        if self._particle_path(particle.id).exists():
            raise ValueError(f"Particle {particle.id} already exists")
        await asyncio.to_thread(self._write_particle, particle)
        return particle.id

    async def latest_traits(self, particle_id: UUID) -> Optional[TraitVector]:
        path = self.traits_dir / f"{particle_id}.jsonl"
        if not path.exists():
            return None

        def _read() -> List[str]:
            return path.read_text("utf-8").splitlines()

        lines = await asyncio.to_thread(_read)
        history = [TraitVector.model_validate_json(line) for line in lines if line]
        if not history:
            return None
        return max(history, key=lambda t: (t.version, t.calculated_at))

    async def save_traits(self, traits: TraitVector) -> None:
        owner = _require_trait_owner(traits)
        path = self.traits_dir / f"{owner}.jsonl"
        payload = traits.model_dump(mode="json")

        def _append() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload))
                handle.write("\n")

        await asyncio.to_thread(_append)

    async def save_snapshot(self, snapshot: WorldSnapshot) -> None:
        path = self.snapshots_dir / f"{snapshot.tick:06d}.json"
        if path.exists():
            raise DuplicateSnapshotError(snapshot.tick)
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        payload = snapshot.model_dump(mode="json")
        await asyncio.to_thread(path.write_text, json.dumps(payload, indent=2), "utf-8")

    def _snapshot_paths(self) -> List[Path]:
        if not self.snapshots_dir.exists():
            return []
        paths = [p for p in self.snapshots_dir.glob("*.json") if p.stem.isdigit()]
        return sorted(paths, key=lambda p: int(p.stem), reverse=True)

    async def latest_snapshot(self) -> Optional[WorldSnapshot]:
        snapshots = await self.list_snapshots(limit=1)
        return snapshots[0] if snapshots else None

    async def list_snapshots(self, limit: int = 10) -> List[WorldSnapshot]:
        paths = (await asyncio.to_thread(self._snapshot_paths))[:limit]
        snapshots = []
        for path in paths:
            text = await asyncio.to_thread(path.read_text, "utf-8")
            snapshots.append(WorldSnapshot.model_validate_json(text))
        return snapshots


class PostgresPersistence(PersistenceStrategy):
    """PostgreSQL-backed persistence using an asyncpg connection pool.

    Database schema (created on initialize()):
    - particles: current particle records, indexed by owner and state
    - personality_metrics: trait vector history (particle_id, version)
    - universe_states: one row per tick, tick_number unique

    Connection management:
    - initialize() creates the pool and bootstraps the schema
    - close() releases the pool
    - tick_lock() holds a session advisory lock on a dedicated connection
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS particles (
            id UUID PRIMARY KEY,
            user_id UUID NOT NULL,
            position_x DOUBLE PRECISION NOT NULL,
            position_y DOUBLE PRECISION NOT NULL,
            velocity_x DOUBLE PRECISION NOT NULL DEFAULT 0,
            velocity_y DOUBLE PRECISION NOT NULL DEFAULT 0,
            mass DOUBLE PRECISION NOT NULL DEFAULT 1.0,
            energy DOUBLE PRECISION NOT NULL DEFAULT 100.0,
            state TEXT NOT NULL DEFAULT 'active',
            decay_level INTEGER NOT NULL DEFAULT 0,
            last_input_at TIMESTAMPTZ NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS ix_particles_user_id ON particles (user_id);
        CREATE INDEX IF NOT EXISTS ix_particles_state ON particles (state);

        CREATE TABLE IF NOT EXISTS personality_metrics (
            id BIGSERIAL PRIMARY KEY,
            particle_id UUID NOT NULL REFERENCES particles (id),
            curiosity DOUBLE PRECISION NOT NULL DEFAULT 0.5,
            social_affinity DOUBLE PRECISION NOT NULL DEFAULT 0.5,
            aggression DOUBLE PRECISION NOT NULL DEFAULT 0.5,
            stability DOUBLE PRECISION NOT NULL DEFAULT 0.5,
            growth_potential DOUBLE PRECISION NOT NULL DEFAULT 0.5,
            version INTEGER NOT NULL DEFAULT 1,
            calculated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS ix_personality_metrics_particle
            ON personality_metrics (particle_id, version DESC);

        CREATE TABLE IF NOT EXISTS universe_states (
            tick_number INTEGER PRIMARY KEY,
            timestamp TIMESTAMPTZ NOT NULL,
            active_particle_count INTEGER NOT NULL,
            average_energy DOUBLE PRECISION NOT NULL,
            interaction_count INTEGER NOT NULL
        );
    """

    PARTICLE_COLUMNS = (
        "id, user_id, position_x, position_y, velocity_x, velocity_y, mass, energy, "
        "state, decay_level, last_input_at, created_at, updated_at"
    )

    # Advisory lock key shared by every orchestrator on the same database.
    TICK_LOCK_KEY = 0x5045_5253_4F4E_41

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or Config.DATABASE_URL
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        if self.pool is None:
            self.pool = await asyncpg.create_pool(self.database_url)
            async with self.pool.acquire() as conn:
                await conn.execute(self.SCHEMA)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def tick_lock(self, blocking: bool = True) -> AsyncIterator[None]:
        assert self.pool is not None, "Persistence not initialized"
        async with self.pool.acquire() as conn:
            if blocking:
                await conn.execute("SELECT pg_advisory_lock($1)", self.TICK_LOCK_KEY)
            elif not await conn.fetchval("SELECT pg_try_advisory_lock($1)", self.TICK_LOCK_KEY):
                raise TickLockUnavailable(f"postgres advisory lock {self.TICK_LOCK_KEY}")
            try:
                yield
            finally:
                await conn.execute("SELECT pg_advisory_unlock($1)", self.TICK_LOCK_KEY)

    @staticmethod
    def _particle_from_row(row: Any) -> Particle:
        return Particle.model_validate(dict(row))

    @staticmethod
    def _particle_values(particle: Particle) -> Tuple[Any, ...]:
        return (
            particle.id,
            particle.user_id,
            particle.position_x,
            particle.position_y,
            particle.velocity_x,
            particle.velocity_y,
            particle.mass,
            particle.energy,
            particle.state.value,
            particle.decay_level,
            particle.last_input_at,
            particle.created_at,
            particle.updated_at,
        )

    async def _fetch_particles(self, query: str, *args: Any) -> List[Particle]:
        assert self.pool is not None, "Persistence not initialized"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        particles = []
        for row in rows:
            try:
                particles.append(self._particle_from_row(row))
            except ValidationError as exc:
                log_warning(f"Skipping unreadable particle record {row['id']}: {exc.error_count()} error(s)")
        return particles

    async def load_active(self) -> List[Particle]:
        query = f"SELECT {self.PARTICLE_COLUMNS} FROM particles WHERE state = ANY($1::text[])"
        return await self._fetch_particles(query, list(_LIVE_STATES))

    async def load_all(self) -> List[Particle]:
        return await self._fetch_particles(f"SELECT {self.PARTICLE_COLUMNS} FROM particles")

    async def get_particle(self, particle_id: UUID) -> Optional[Particle]:
        query = f"SELECT {self.PARTICLE_COLUMNS} FROM particles WHERE id = $1"
        rows = await self._fetch_particles(query, particle_id)
        return rows[0] if rows else None

    async def get_particle_by_user(self, user_id: UUID) -> Optional[Particle]:
        query = (
            f"SELECT {self.PARTICLE_COLUMNS} FROM particles "
            "WHERE user_id = $1 AND state = ANY($2::text[]) ORDER BY created_at LIMIT 1"
        )
        rows = await self._fetch_particles(query, user_id, list(_LIVE_STATES))
        return rows[0] if rows else None

    async def save_particle(self, particle: Particle) -> bool:
        assert self.pool is not None, "Persistence not initialized"

        query = """
            UPDATE particles
            SET user_id = $2, position_x = $3, position_y = $4, velocity_x = $5,
                velocity_y = $6, mass = $7, energy = $8, state = $9, decay_level = $10,
                last_input_at = $11, created_at = $12, updated_at = $13
            WHERE id = $1
        """

        async with self.pool.acquire() as conn:
            status = await conn.execute(query, *self._particle_values(particle))
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return status.split()[-1] != "0"

    async def create_particle(self, particle: Particle) -> UUID:
        assert self.pool is not None, "Persistence not initialized"

        query = f"""
            INSERT INTO particles ({self.PARTICLE_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
        """

        async with self.pool.acquire() as conn:
            await conn.execute(query, *self._particle_values(particle))
        return particle.id

    async def latest_traits(self, particle_id: UUID) -> Optional[TraitVector]:
        assert self.pool is not None, "Persistence not initialized"

        query = """
            SELECT particle_id, curiosity, social_affinity, aggression, stability,
                   growth_potential, version, calculated_at
            FROM personality_metrics
            WHERE particle_id = $1
            ORDER BY version DESC, calculated_at DESC
            LIMIT 1
        """

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, particle_id)

        if not row:
            return None
        return TraitVector.model_validate(dict(row))

    async def save_traits(self, traits: TraitVector) -> None:
        assert self.pool is not None, "Persistence not initialized"
        owner = _require_trait_owner(traits)

        query = """
            INSERT INTO personality_metrics
            (particle_id, curiosity, social_affinity, aggression, stability,
             growth_potential, version, calculated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """

        async with self.pool.acquire() as conn:
            await conn.execute(
                query,
                owner,
                traits.curiosity,
                traits.social_affinity,
                traits.aggression,
                traits.stability,
                traits.growth_potential,
                traits.version,
                traits.calculated_at,
            )

    async def save_snapshot(self, snapshot: WorldSnapshot) -> None:
        assert self.pool is not None, "Persistence not initialized"

        query = """
            INSERT INTO universe_states
            (tick_number, timestamp, active_particle_count, average_energy, interaction_count)
            VALUES ($1, $2, $3, $4, $5)
        """

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    query,
                    snapshot.tick,
                    snapshot.timestamp,
                    snapshot.active_particle_count,
                    snapshot.average_energy,
                    snapshot.interaction_count,
                )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateSnapshotError(snapshot.tick) from exc

    async def latest_snapshot(self) -> Optional[WorldSnapshot]:
        snapshots = await self.list_snapshots(limit=1)
        return snapshots[0] if snapshots else None

    async def list_snapshots(self, limit: int = 10) -> List[WorldSnapshot]:
        assert self.pool is not None, "Persistence not initialized"

        query = """
            SELECT tick_number AS tick, timestamp, active_particle_count,
                   average_energy, interaction_count
            FROM universe_states
            ORDER BY tick_number DESC
            LIMIT $1
        """

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, limit)
        return [WorldSnapshot.model_validate(dict(row)) for row in rows]


RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    TransientStoreError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


class RetryingPersistence(PersistenceStrategy):
    """Retry transient store failures with bounded exponential back-off.

    Only RETRYABLE_ERRORS are retried; validation errors, duplicate snapshots
    and other logic faults propagate on the first attempt. After the last
    attempt the original exception is re-raised to the caller.
    """

    def __init__(
        self,
        inner: PersistenceStrategy,
        max_attempts: Optional[int] = None,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 5.0,
    ) -> None:
        self.inner = inner
        self.max_attempts = max_attempts or Config.STORE_RETRY_ATTEMPTS
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds

    async def _call(self, operation: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        attempt_number = 0
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            reraise=True,
        ):
            with attempt:
                attempt_number += 1
                try:
                    return await func(*args)
                except RETRYABLE_ERRORS as exc:
                    log_error(
                        f"[Store] {operation} failed (attempt {attempt_number}/{self.max_attempts}): {exc}"
                    )
                    raise
        # AsyncRetrying with reraise=True always exits via return or raise.
        raise RuntimeError(f"Store retry loop for {operation} exited unexpectedly")

    async def initialize(self) -> None:
        await self._call("initialize", self.inner.initialize)

    async def close(self) -> None:
        await self.inner.close()

    def tick_lock(self, blocking: bool = True) -> AsyncContextManager[None]:
        return self.inner.tick_lock(blocking)

    async def load_active(self) -> List[Particle]:
        return await self._call("load_active", self.inner.load_active)

    async def load_all(self) -> List[Particle]:
        return await self._call("load_all", self.inner.load_all)

    async def get_particle(self, particle_id: UUID) -> Optional[Particle]:
        return await self._call("get_particle", self.inner.get_particle, particle_id)

    async def get_particle_by_user(self, user_id: UUID) -> Optional[Particle]:
        return await self._call("get_particle_by_user", self.inner.get_particle_by_user, user_id)

    async def save_particle(self, particle: Particle) -> bool:
        return await self._call("save_particle", self.inner.save_particle, particle)

    async def create_particle(self, particle: Particle) -> UUID:
        return await self._call("create_particle", self.inner.create_particle, particle)

    async def latest_traits(self, particle_id: UUID) -> Optional[TraitVector]:
        return await self._call("latest_traits", self.inner.latest_traits, particle_id)

    async def save_traits(self, traits: TraitVector) -> None:
        await self._call("save_traits", self.inner.save_traits, traits)

    async def save_snapshot(self, snapshot: WorldSnapshot) -> None:
        await self._call("save_snapshot", self.inner.save_snapshot, snapshot)

    async def latest_snapshot(self) -> Optional[WorldSnapshot]:
        return await self._call("latest_snapshot", self.inner.latest_snapshot)

    async def list_snapshots(self, limit: int = 10) -> List[WorldSnapshot]:
        return await self._call("list_snapshots", self.inner.list_snapshots, limit)


def build_persistence(
    store: Optional[str] = None,
    *,
    json_path: Optional[Union[Path, str]] = None,
    database_url: Optional[str] = None,
    retry: bool = True,
) -> PersistenceStrategy:
    """Create the backend named by `store` (defaults to Config.STORE)."""
    store = store or Config.STORE
    backend: PersistenceStrategy
    if store == "memory":
        backend = InMemoryPersistence()
    elif store == "json":
        backend = JsonPersistence(json_path or Config.JSON_PATH)
    elif store == "postgres":
        backend = PostgresPersistence(database_url or Config.DATABASE_URL)
    else:
        raise ValueError(f"Unknown store {store!r}; expected memory, json or postgres")
    return RetryingPersistence(backend) if retry else backend
