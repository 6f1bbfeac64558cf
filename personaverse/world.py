"""
Pure tick computation over an explicit world arena.

advance_world() takes the population loaded for a tick and returns what the
tick did, without touching storage or any other collaborator. The
orchestrator owns loading, persisting and publishing; this module owns the
phases in between:

1. Movement     position += velocity (wrapped), energy drained by speed
2. Lifecycle    decay / expiry / revival / fission, once per original particle
3. Interactions neighbor discovery on post-movement positions, then each
                unordered Active pair within radius resolved exactly once
4. Snapshot     counts and mean energy over the Active population

A failure while processing one particle or one pair is recorded as a fault
and that entity is skipped; the rest of the tick carries on.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple
from uuid import UUID

from .config import SimulationSettings
from .interactions import InteractionResolver, outcome_events
from .lifecycle import LifecycleEvaluator, LifecycleTransition
from .schemas import (
    MAX_ENERGY,
    EventType,
    InteractionOutcome,
    Particle,
    ParticleState,
    SimulationEvent,
    TraitVector,
    WorldSnapshot,
)
from .spatial import build_index, toroidal_distance, wrap_coordinate


class ParticleInvariantError(Exception):
    """A particle record violates a data invariant and cannot be simulated."""

    def __init__(self, particle_id: UUID, problem: str) -> None:
        self.particle_id = particle_id
        self.problem = problem
        super().__init__(f"Particle {particle_id}: {problem}")


def check_particle(particle: Particle, world_size: float) -> None:
    """Raise ParticleInvariantError if the record is not safe to simulate."""
    for name in ("position_x", "position_y", "velocity_x", "velocity_y", "mass", "energy"):
        value = getattr(particle, name)
        if not math.isfinite(value):
            raise ParticleInvariantError(particle.id, f"{name} is not finite ({value})")
    for name in ("position_x", "position_y"):
        value = getattr(particle, name)
        if not 0.0 <= value < world_size:
            raise ParticleInvariantError(particle.id, f"{name}={value} outside [0, {world_size:g})")
    if particle.mass <= 0:
        raise ParticleInvariantError(particle.id, f"mass must be positive (got {particle.mass})")
    if not 0.0 <= particle.energy <= MAX_ENERGY:
        raise ParticleInvariantError(particle.id, f"energy={particle.energy} outside [0, {MAX_ENERGY:g}]")


@dataclass
class World:
    """Population owned by one tick: particles plus their current traits."""

    particles: Dict[UUID, Particle] = field(default_factory=dict)
    traits: Dict[UUID, TraitVector] = field(default_factory=dict)

    @classmethod
    def from_particles(cls, particles: List[Particle], traits: Optional[Dict[UUID, TraitVector]] = None) -> "World":
        return cls(particles={p.id: p for p in particles}, traits=dict(traits or {}))

    def copy(self) -> "World":
        # Trait vectors are frozen, so only the particles need copying.
        return World(
            particles={pid: p.model_copy(deep=True) for pid, p in self.particles.items()},
            traits=dict(self.traits),
        )

    def traits_for(self, particle_id: UUID) -> TraitVector:
        vector = self.traits.get(particle_id)
        if vector is None:
            vector = TraitVector.neutral(particle_id)
            self.traits[particle_id] = vector
        return vector

    def active(self) -> List[Particle]:
        return [p for p in self.particles.values() if p.state == ParticleState.ACTIVE]


@dataclass
class TickFault:
    """A particle or pair that was skipped during a tick."""

    phase: str
    entity_ids: Tuple[UUID, ...]
    error: str


@dataclass
class TickResult:
    """Everything a tick produced; the orchestrator persists and publishes it."""

    world: World
    snapshot: WorldSnapshot
    events: List[SimulationEvent] = field(default_factory=list)
    outcomes: List[InteractionOutcome] = field(default_factory=list)
    mutated_ids: List[UUID] = field(default_factory=list)
    created_ids: List[UUID] = field(default_factory=list)
    trait_updates: List[TraitVector] = field(default_factory=list)
    faults: List[TickFault] = field(default_factory=list)

    def mutated_particles(self) -> List[Particle]:
        return [self.world.particles[pid] for pid in self.mutated_ids]

    def created_particles(self) -> List[Particle]:
        return [self.world.particles[pid] for pid in self.created_ids]

    @property
    def transitions(self) -> Dict[str, int]:
        """Event counts by routing key, for tick summaries."""
        counts: Dict[str, int] = {}
        for event in self.events:
            counts[event.event_type.value] = counts.get(event.event_type.value, 0) + 1
        return counts


def _move(particle: Particle, settings: SimulationSettings, now: datetime) -> None:
    size = settings.world_size
    speed = particle.speed
    particle.position_x = wrap_coordinate(particle.position_x + particle.velocity_x, size)
    particle.position_y = wrap_coordinate(particle.position_y + particle.velocity_y, size)
    particle.energy = max(0.0, particle.energy - speed * settings.energy_decay_per_speed)
    particle.updated_at = now


def advance_world(
    world: World,
    settings: SimulationSettings,
    *,
    tick: int,
    now: datetime,
    rng: random.Random,
    resolver: Optional[InteractionResolver] = None,
    evaluator: Optional[LifecycleEvaluator] = None,
) -> TickResult:
    """Run one tick over a copy of `world`.

    Args:
        world: Live population at tick start (left untouched)
        settings: Validated engine settings
        tick: Number assigned to this tick's snapshot
        now: Tick timestamp used for lifecycle checks and record stamps
        rng: Source of every random draw (fission, child placement)
        resolver: Optional interaction resolver (built from settings if omitted)
        evaluator: Optional lifecycle evaluator (built from settings and rng if omitted)

    Returns:
        TickResult holding the advanced world and everything that changed
    """
    resolver = resolver or InteractionResolver(settings)
    evaluator = evaluator or LifecycleEvaluator(settings, rng)

    arena = world.copy()
    events: List[SimulationEvent] = []
    outcomes: List[InteractionOutcome] = []
    faults: List[TickFault] = []
    mutated: Dict[UUID, None] = {}
    created: List[UUID] = []
    trait_updates: List[TraitVector] = []
    skipped: Set[UUID] = set()

    # Sorted ids keep random draws in a stable order under a fixed seed.
    original_ids = sorted(pid for pid, p in arena.particles.items() if p.is_live)

    # 1. Movement
    for pid in original_ids:
        particle = arena.particles[pid]
        try:
            check_particle(particle, settings.world_size)
            _move(particle, settings, now)
        except Exception as exc:
            faults.append(TickFault("movement", (pid,), str(exc)))
            skipped.add(pid)
            continue
        mutated[pid] = None

    # 2. Lifecycle (children join after the loop and are never evaluated this tick)
    newborn: Set[UUID] = set()
    for pid in original_ids:
        if pid in skipped:
            continue
        particle = arena.particles[pid]
        try:
            outcome = evaluator.evaluate(particle, arena.traits_for(pid), now)
        except Exception as exc:
            faults.append(TickFault("lifecycle", (pid,), str(exc)))
            skipped.add(pid)
            continue
        events.extend(outcome.events)
        if outcome.transition is LifecycleTransition.FISSION:
            for child, child_traits in zip(outcome.children, outcome.child_traits):
                arena.particles[child.id] = child
                arena.traits[child.id] = child_traits
                created.append(child.id)
                newborn.add(child.id)
                trait_updates.append(child_traits)

    # 3. Interactions on post-movement positions
    radius = settings.interaction_radius
    candidates = sorted(
        (p for p in arena.active() if p.id not in skipped and p.id not in newborn),
        key=lambda p: p.id,
    )
    index = build_index(candidates, settings.world_size, radius, settings.use_spatial_grid)
    resolved: Set[Tuple[UUID, UUID]] = set()

    for particle in candidates:
        for neighbor in index.neighbors(particle, radius):
            key = (particle.id, neighbor.id) if particle.id < neighbor.id else (neighbor.id, particle.id)
            if key in resolved:
                continue
            resolved.add(key)

            first, second = arena.particles[key[0]], arena.particles[key[1]]
            # An earlier merge this tick may have consumed or moved either one.
            if first.state != ParticleState.ACTIVE or second.state != ParticleState.ACTIVE:
                continue
            if toroidal_distance(first, second, settings.world_size) > radius:
                continue

            try:
                outcome = resolver.resolve(
                    first, second, arena.traits_for(first.id), arena.traits_for(second.id), now
                )
            except Exception as exc:
                faults.append(TickFault("interaction", key, str(exc)))
                continue

            outcomes.append(outcome)
            events.extend(outcome_events(outcome, now))
            mutated[first.id] = None
            mutated[second.id] = None
            if outcome.merged_traits is not None and outcome.target_id is not None:
                arena.traits[outcome.target_id] = outcome.merged_traits
                trait_updates.append(outcome.merged_traits)

    # 4. Snapshot
    active = arena.active()
    average_energy = sum(p.energy for p in active) / len(active) if active else 0.0
    snapshot = WorldSnapshot(
        tick=tick,
        timestamp=now,
        active_particle_count=len(active),
        average_energy=min(MAX_ENERGY, average_energy),
        interaction_count=len(outcomes),
    )
    events.append(
        SimulationEvent(
            event_type=EventType.UNIVERSE_TICK,
            occurred_at=now,
            payload=snapshot.model_dump(mode="json"),
        )
    )

    return TickResult(
        world=arena,
        snapshot=snapshot,
        events=events,
        outcomes=outcomes,
        mutated_ids=[pid for pid in mutated if pid not in newborn],
        created_ids=created,
        trait_updates=trait_updates,
        faults=faults,
    )
