"""
Main simulation orchestrator.

All collaborators are injected: storage, event sink, cache refresh hook,
broadcast hook, random source and clock. Nothing here reads files or
environment variables directly.

Coordinates one tick at a time, under both a process-local lock and the
store's tick lock (so orchestrators in other processes wait their turn):
1. Load the live population and each particle's latest traits
2. Advance the world with the pure tick function (movement, lifecycle,
   interactions, snapshot)
3. Persist mutated and newly created particles plus new trait versions
4. Save the snapshot with the next tick number
5. Publish events, invalidate the active-particles view, broadcast the
   snapshot and notify tick listeners

Failures in step 3 and step 5 are logged per record or per call and never
abort the tick. A failed particle save leaves the last persisted state in
place, so that particle simply runs again next tick.
"""

import asyncio
import random
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from .config import Config, SimulationSettings
from .events import (
    BroadcastHook,
    CacheRefreshHook,
    EventSink,
    NoopBroadcastHook,
    NoopCacheRefreshHook,
    NullEventSink,
)
from .interactions import InteractionResolver
from .logging_utils import (
    log_deterministic,
    log_error,
    log_info,
    log_io,
    log_success,
    log_warning,
)
from .persistence import InMemoryPersistence, PersistenceStrategy, TickLockUnavailable
from .schemas import (
    EventType,
    InteractionOutcome,
    Particle,
    ParticleState,
    SimulationEvent,
    TraitVector,
    UniverseState,
    WorldSnapshot,
    random_uuid,
    utc_now,
)
from .spatial import find_neighbors, wrap_coordinate
from .world import TickResult, World, advance_world


# =============================
# Module-level Exceptions
# =============================

class TickInProgressError(Exception):
    """Raised when a manual tick is requested while another tick is running."""

    def __init__(self) -> None:
        message = (
            "A universe tick is already in progress; manual trigger rejected.\n\n"
            "Remediation tips:\n"
            "  - Wait for the running tick to finish and try again\n"
            "  - Check for a `personaverse serve` process using the same store\n"
            "  - Use Orchestrator.run_tick() to queue behind the running tick instead"
        )
        super().__init__(message)


class SnapshotPersistenceError(Exception):
    """Raised when the tick snapshot could not be stored.

    The tick number is not consumed, so the next tick reuses it.
    """

    def __init__(self, *, tick: int, underlying: Exception) -> None:
        self.tick = tick
        self.underlying = underlying
        message = (
            f"Failed to save snapshot for tick {tick}: {underlying}\n\n"
            "Remediation tips:\n"
            "  - Check that the store is reachable (PERSONAVERSE_STORE, DATABASE_URL)\n"
            "  - Raise PERSONAVERSE_STORE_RETRY_ATTEMPTS for flaky connections\n"
            "  - Inspect existing snapshots with `personaverse state`"
        )
        super().__init__(message)


TickListener = Callable[[int, TickResult], None]


class Orchestrator:
    """
    Main simulation orchestrator.

    Fully decoupled: accepts all dependencies as parameters and defaults to
    in-memory storage with no-op side effects.
    """

    def __init__(
        self,
        persistence: Optional[PersistenceStrategy] = None,
        settings: Optional[SimulationSettings] = None,
        event_sink: Optional[EventSink] = None,
        cache_hook: Optional[CacheRefreshHook] = None,
        broadcast_hook: Optional[BroadcastHook] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tick_listeners: Optional[List[TickListener]] = None,
        persist_concurrency: Optional[int] = None,
    ):
        """Initialize orchestrator with all dependencies injected.

        Args:
            persistence: Storage backend (defaults to InMemoryPersistence)
            settings: Validated engine settings (defaults to environment config)
            event_sink: Destination for lifecycle events (defaults to a null sink)
            cache_hook: Active-particles view invalidation (defaults to no-op)
            broadcast_hook: Snapshot push to observers (defaults to no-op)
            rng: Random source for spawning and fission (seeded from
                PERSONAVERSE_SEED when omitted)
            clock: Callable returning the current UTC time
            tick_listeners: Optional callables invoked after each tick with
                (tick, result). Listener failures are logged and ignored.
            persist_concurrency: Max concurrent store writes per tick

        Raises:
            ConfigurationError: If settings are built from an invalid environment
        """
        # Settings are validated on construction; an invalid configuration
        # never gets this far.
        self.settings = settings or SimulationSettings.from_config()
        self.persistence = persistence or InMemoryPersistence()
        self.event_sink = event_sink or NullEventSink()
        self.cache_hook = cache_hook or NoopCacheRefreshHook()
        self.broadcast_hook = broadcast_hook or NoopBroadcastHook()
        self.rng = rng or random.Random(Config.SEED)
        self.clock = clock or utc_now
        self.tick_listeners = tick_listeners or []
        self.persist_concurrency = persist_concurrency or Config.PERSIST_CONCURRENCY

        self._tick_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self.persistence.initialize()
        await self.event_sink.initialize()

    async def close(self) -> None:
        await self.event_sink.close()
        await self.persistence.close()

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_lock.locked()

    async def run(self, num_ticks: int, trigger: bool = False) -> Dict[str, Any]:
        """Run the simulation for N ticks.

        Args:
            num_ticks: Number of ticks to simulate
            trigger: Fail with TickInProgressError instead of waiting when
                another tick holds the lock

        Returns:
            Dict with ticks_completed and final_snapshot
        """
        await self.initialize()
        try:
            log_info(f"Starting universe run: {num_ticks} tick(s)")
            final: Optional[WorldSnapshot] = None
            for index in range(1, num_ticks + 1):
                print(f"=== Tick {index}/{num_ticks} ===")
                try:
                    result = await (self.trigger_tick() if trigger else self.run_tick())
                except Exception as exc:
                    log_error(f"Tick {index}/{num_ticks} failed: {exc}")
                    raise
                final = result.snapshot
            log_success("Universe run complete")
            return {"ticks_completed": num_ticks, "final_snapshot": final}
        finally:
            await self.close()

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickResult:
        """Run one tick, waiting for any tick already in progress."""
        async with self._tick_lock:
            async with self.persistence.tick_lock():
                return await self._run_tick()

    async def trigger_tick(self) -> TickResult:
        """Run one tick now, or fail fast if one is already running.

        Raises:
            TickInProgressError: If this orchestrator or another one sharing
                the store is mid-tick
        """
        if self._tick_lock.locked():
            raise TickInProgressError()
        async with self._tick_lock:
            try:
                async with self.persistence.tick_lock(blocking=False):
                    return await self._run_tick()
            except TickLockUnavailable as exc:
                raise TickInProgressError() from exc

    async def _next_tick_number(self) -> int:
        # Read under the tick lock; another process may have advanced the store.
        latest = await self.persistence.latest_snapshot()
        return (latest.tick if latest else 0) + 1

    async def _run_tick(self) -> TickResult:
        now = self.clock()
        tick = await self._next_tick_number()

        # 1. Load population and traits
        particles = await self.persistence.load_active()
        log_io(f"[Tick {tick}] Loaded {len(particles)} live particle(s)")
        world = await self._build_world(particles)

        # 2. Deterministic tick (pure; no I/O)
        log_deterministic(f"[Tick {tick}] Advancing world...")
        result = advance_world(world, self.settings, tick=tick, now=now, rng=self.rng)
        for fault in result.faults:
            ids = ", ".join(str(entity_id) for entity_id in fault.entity_ids)
            log_warning(f"[Tick {tick}] Skipped {fault.phase} for {ids}: {fault.error}")

        # 3. Persist records
        await self._persist_result(result)

        # 4. Snapshot (tick number consumed only once it is stored)
        try:
            await self.persistence.save_snapshot(result.snapshot)
        except Exception as exc:
            raise SnapshotPersistenceError(tick=tick, underlying=exc) from exc

        # 5. Side effects
        await self._publish(result.events)
        await self._invalidate_cache()
        await self._broadcast(result.snapshot)
        self._notify_listeners(tick, result)

        self._print_tick_summary(result)
        return result

    async def _build_world(self, particles: List[Particle]) -> World:
        traits: Dict[UUID, TraitVector] = {}
        results = await self._bounded(self.persistence.latest_traits(p.id) for p in particles)

        usable: List[Particle] = []
        for particle, result in zip(particles, results):
            if isinstance(result, Exception):
                log_warning(f"Skipping particle {particle.id} this tick: traits unavailable ({result})")
                continue
            if result is None:
                log_warning(f"Particle {particle.id} has no trait vector; using neutral defaults")
                result = TraitVector.neutral(particle.id)
            traits[particle.id] = result
            usable.append(particle)
        return World.from_particles(usable, traits)

    async def _bounded(self, coros: Iterable[Awaitable[Any]]) -> List[Any]:
        """Gather with at most persist_concurrency calls in flight."""
        semaphore = asyncio.Semaphore(self.persist_concurrency)

        async def _guarded(coro: Awaitable[Any]) -> Any:
            async with semaphore:
                return await coro

        return await asyncio.gather(*[_guarded(c) for c in coros], return_exceptions=True)

    async def _persist_result(self, result: TickResult) -> None:
        mutated = result.mutated_particles()
        created = result.created_particles()

        # Particles first: new trait rows reference their particle.
        outcomes = await self._bounded(
            [self.persistence.save_particle(p) for p in mutated]
            + [self.persistence.create_particle(p) for p in created]
        )
        created_ids = {p.id for p in created}
        failed_creates: set = set()
        for particle, outcome in zip(mutated + created, outcomes):
            if isinstance(outcome, Exception):
                log_error(f"Failed to persist particle {particle.id}: {outcome}")
                if particle.id in created_ids:
                    failed_creates.add(particle.id)
            elif outcome is False:
                log_warning(f"Particle {particle.id} no longer exists in the store; update dropped")

        trait_updates = [t for t in result.trait_updates if t.particle_id not in failed_creates]
        trait_outcomes = await self._bounded(self.persistence.save_traits(t) for t in trait_updates)
        for traits, outcome in zip(trait_updates, trait_outcomes):
            if isinstance(outcome, Exception):
                log_error(f"Failed to persist traits v{traits.version} for {traits.particle_id}: {outcome}")

        log_io(
            f"[Tick {result.snapshot.tick}] Persisted {len(mutated)} update(s), "
            f"{len(created)} new particle(s), {len(trait_updates)} trait vector(s)"
        )

    async def _publish(self, events: List[SimulationEvent]) -> None:
        for event in events:
            try:
                await self.event_sink.publish(event.event_type.value, event.to_message())
            except Exception as exc:
                log_warning(f"Failed to publish {event.event_type.value} event {event.event_id}: {exc}")

    async def _invalidate_cache(self) -> None:
        try:
            await self.cache_hook.invalidate_active_particles_view()
        except Exception as exc:
            log_warning(f"Active particles view invalidation failed: {exc}")

    async def _broadcast(self, snapshot: WorldSnapshot) -> None:
        try:
            await self.broadcast_hook.push_snapshot(snapshot)
        except Exception as exc:
            log_warning(f"Snapshot broadcast for tick {snapshot.tick} failed: {exc}")

    def _notify_listeners(self, tick: int, result: TickResult) -> None:
        for listener in self.tick_listeners:
            try:
                listener(tick, result)
            except Exception as exc:  # pragma: no cover - diagnostic hook
                log_warning(f"[Analysis] Listener failed: {exc}")

    def _print_tick_summary(self, result: TickResult) -> None:
        snapshot = result.snapshot
        log_success(
            f"[Tick {snapshot.tick}] {snapshot.active_particle_count} active, "
            f"avg energy {snapshot.average_energy:.1f}, "
            f"{snapshot.interaction_count} interaction(s)"
        )
        transitions = {
            key: count
            for key, count in result.transitions.items()
            if key not in (EventType.PARTICLE_INTERACTION.value, EventType.UNIVERSE_TICK.value)
        }
        if transitions:
            details = ", ".join(f"{key}={count}" for key, count in sorted(transitions.items()))
            print(f"  Events: {details}")

    # ------------------------------------------------------------------
    # Service operations
    # ------------------------------------------------------------------

    async def spawn_particle(self, user_id: UUID) -> Particle:
        """Create the owner's particle, or return the one they already have.

        New particles start Active at a random position with zero velocity,
        full energy, unit mass and neutral traits.
        """
        existing = await self.persistence.get_particle_by_user(user_id)
        if existing is not None:
            log_info(f"User {user_id} already owns particle {existing.id}")
            return existing

        now = self.clock()
        size = self.settings.world_size
        particle = Particle(
            id=random_uuid(self.rng),
            user_id=user_id,
            position_x=wrap_coordinate(self.rng.uniform(0.0, size), size),
            position_y=wrap_coordinate(self.rng.uniform(0.0, size), size),
            velocity_x=0.0,
            velocity_y=0.0,
            mass=1.0,
            energy=100.0,
            state=ParticleState.ACTIVE,
            decay_level=0,
            last_input_at=now,
            created_at=now,
            updated_at=now,
        )
        await self.persistence.create_particle(particle)
        await self.persistence.save_traits(
            TraitVector(particle_id=particle.id, version=1, calculated_at=now)
        )
        log_io(f"Spawned particle {particle.id} for user {user_id}")

        await self.announce_spawned([particle])
        return particle

    async def announce_spawned(self, particles: List[Particle]) -> None:
        """Publish particle.spawned for each new particle, then invalidate the
        active-particles view once. Failures are logged, never raised."""
        if not particles:
            return
        await self._publish(
            [
                SimulationEvent(
                    event_type=EventType.PARTICLE_SPAWNED,
                    occurred_at=particle.created_at,
                    payload={
                        "particle_id": str(particle.id),
                        "user_id": str(particle.user_id),
                        "position_x": particle.position_x,
                        "position_y": particle.position_y,
                    },
                )
                for particle in particles
            ]
        )
        await self._invalidate_cache()

    async def record_input(self, particle_id: UUID, traits: Optional[TraitVector] = None) -> Optional[Particle]:
        """Register fresh personality input for a live particle.

        Stamps last_input_at (which holds off decay and revives a Decaying
        particle on its next evaluation) and, when given, stores the new
        trait values as the next version. Waits for any running tick.

        Returns:
            The updated particle, or None if it is unknown or terminal
        """
        async with self._tick_lock, self.persistence.tick_lock():
            particle = await self.persistence.get_particle(particle_id)
            if particle is None or not particle.is_live:
                log_warning(f"Input for unknown or inactive particle {particle_id} ignored")
                return None

            now = self.clock()
            particle.last_input_at = now
            particle.updated_at = now
            await self.persistence.save_particle(particle)

            if traits is not None:
                current = await self.persistence.latest_traits(particle_id)
                version = current.version + 1 if current else 1
                await self.persistence.save_traits(
                    traits.model_copy(update={"particle_id": particle_id, "version": version, "calculated_at": now})
                )
            return particle

    async def find_neighbors(self, particle_id: UUID, radius: Optional[float] = None) -> List[Particle]:
        """Active particles within `radius` of a stored particle.

        Returns an empty list when the particle is unknown.

        Raises:
            ValueError: If radius is negative
        """
        radius = self.settings.interaction_radius if radius is None else radius
        if radius < 0:
            raise ValueError(f"Neighbor radius must not be negative (got {radius})")
        particle = await self.persistence.get_particle(particle_id)
        if particle is None:
            return []
        population = await self.persistence.load_active()
        return find_neighbors(particle, radius, population, self.settings.world_size)

    async def evaluate_interaction(self, first_id: UUID, second_id: UUID) -> Optional[InteractionOutcome]:
        """Classify how two stored particles would interact, without applying it.

        Nothing is written and no event is published. Distance and state are
        not checked; a particle with no trait vector scores as neutral.

        Returns:
            The would-be outcome (type, strength, compatibility), or None if
            either particle is unknown

        Raises:
            ValueError: If both ids name the same particle
        """
        if first_id == second_id:
            raise ValueError(f"Particle {first_id} cannot interact with itself")
        first = await self.persistence.get_particle(first_id)
        second = await self.persistence.get_particle(second_id)
        if first is None or second is None:
            return None

        first_traits = await self.persistence.latest_traits(first_id) or TraitVector.neutral(first_id)
        second_traits = await self.persistence.latest_traits(second_id) or TraitVector.neutral(second_id)
        outcome = InteractionResolver(self.settings).evaluate(first, second, first_traits, second_traits)
        log_deterministic(
            f"Evaluated {first_id} / {second_id}: {outcome.interaction_type.value} "
            f"(compatibility {outcome.compatibility:.3f})"
        )
        return outcome

    async def get_universe_state(self) -> UniverseState:
        """Latest snapshot figures plus the current live population."""
        latest = await self.persistence.latest_snapshot()
        particles = await self.persistence.load_active()
        if latest is not None:
            return UniverseState(
                tick=latest.tick,
                timestamp=latest.timestamp,
                active_particle_count=latest.active_particle_count,
                average_energy=latest.average_energy,
                interaction_count=latest.interaction_count,
                particles=particles,
            )

        active = [p for p in particles if p.state == ParticleState.ACTIVE]
        return UniverseState(
            tick=0,
            timestamp=self.clock(),
            active_particle_count=len(active),
            average_energy=sum(p.energy for p in active) / len(active) if active else 0.0,
            interaction_count=0,
            particles=particles,
        )
