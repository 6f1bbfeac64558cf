"""Per-particle lifecycle evaluation.

State machine evaluated once per tick, before interactions, independently
for every live particle:

    Active   --idle > decay_after-->  Decaying (decay_level += step)
    Decaying --idle-->                Decaying (decay_level += step)
    Decaying --decay_level >= max-->  Expired  (terminal)
    Decaying --fresh input-->         Active   (decay level kept)
    Active   --unstable + draw-->     Expired  (replaced by two children)

Randomness comes from an injected random.Random so outcomes are
reproducible under a fixed seed.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional
from uuid import UUID

from .config import SimulationSettings
from .schemas import (
    EventType,
    Particle,
    ParticleState,
    SimulationEvent,
    TraitVector,
    clamp,
    random_uuid,
)
from .spatial import wrap_coordinate


class LifecycleTransition(str, Enum):
    """Closed set of lifecycle results for one evaluation."""

    UNCHANGED = "unchanged"
    REVIVED = "revived"
    DECAYED = "decayed"
    EXPIRED = "expired"
    FISSION = "fission"


@dataclass
class LifecycleOutcome:
    """What happened to one particle during evaluation."""

    particle_id: UUID
    transition: LifecycleTransition
    children: List[Particle] = field(default_factory=list)
    child_traits: List[TraitVector] = field(default_factory=list)
    events: List[SimulationEvent] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.transition is not LifecycleTransition.UNCHANGED


class LifecycleEvaluator:
    """Decay, expiry and fission decisions for single particles."""

    def __init__(self, settings: Optional[SimulationSettings] = None, rng: Optional[random.Random] = None) -> None:
        self.settings = settings or SimulationSettings()
        self.rng = rng or random.Random()

    def instability(self, traits: TraitVector) -> float:
        return traits.aggression * (1.0 - traits.stability)

    def is_idle(self, particle: Particle, now: datetime) -> bool:
        """True when the particle has had no input for longer than decay_after."""
        reference = particle.last_input_at or particle.created_at
        return now - reference > timedelta(hours=self.settings.decay_after_hours)

    def can_fission(self, particle: Particle, traits: TraitVector) -> bool:
        """Deterministic part of the fission check (the random draw is separate)."""
        s = self.settings
        return (
            particle.state == ParticleState.ACTIVE
            and particle.mass >= s.fission_min_mass
            and particle.energy >= s.fission_min_energy
            and self.instability(traits) > s.fission_instability_threshold
        )

    def evaluate(self, particle: Particle, traits: TraitVector, now: datetime) -> LifecycleOutcome:
        """Apply at most one lifecycle transition to `particle` in place.

        Args:
            particle: Live particle to evaluate (mutated in place)
            traits: The particle's current trait vector
            now: Evaluation time

        Returns:
            LifecycleOutcome; for fission it carries the two new particles,
            their traits and the split/expired notifications
        """
        if particle.state.is_terminal:
            return LifecycleOutcome(particle.id, LifecycleTransition.UNCHANGED)

        if self.is_idle(particle, now):
            return self._decay(particle, now)

        if particle.state == ParticleState.DECAYING:
            particle.state = ParticleState.ACTIVE
            particle.updated_at = now
            return LifecycleOutcome(particle.id, LifecycleTransition.REVIVED)

        if self.can_fission(particle, traits) and self.rng.random() < self.settings.fission_probability:
            return self._fission(particle, traits, now)

        return LifecycleOutcome(particle.id, LifecycleTransition.UNCHANGED)

    def _decay(self, particle: Particle, now: datetime) -> LifecycleOutcome:
        particle.decay_level += self.settings.decay_step
        particle.updated_at = now
        if particle.decay_level >= self.settings.expiry_decay_level:
            particle.state = ParticleState.EXPIRED
            return LifecycleOutcome(
                particle.id,
                LifecycleTransition.EXPIRED,
                events=[_expired_event(particle, "decay", now)],
            )
        particle.state = ParticleState.DECAYING
        return LifecycleOutcome(particle.id, LifecycleTransition.DECAYED)

    def _fission(self, source: Particle, traits: TraitVector, now: datetime) -> LifecycleOutcome:
        s = self.settings
        child_mass = source.mass / 2.0
        child_energy = source.energy * (1.0 - s.fission_energy_loss) / 2.0

        children = [self._spawn_child(source, child_mass, child_energy, now) for _ in range(2)]

        d = s.fission_divergence
        volatile = TraitVector.clamped(
            curiosity=traits.curiosity,
            social_affinity=traits.social_affinity - d,
            aggression=traits.aggression + d,
            stability=traits.stability - d,
            growth_potential=traits.growth_potential,
            particle_id=children[0].id,
            calculated_at=now,
        )
        settled = TraitVector.clamped(
            curiosity=traits.curiosity,
            social_affinity=traits.social_affinity + d,
            aggression=traits.aggression - d,
            stability=traits.stability + d,
            growth_potential=traits.growth_potential,
            particle_id=children[1].id,
            calculated_at=now,
        )

        source.state = ParticleState.EXPIRED
        source.updated_at = now

        split_event = SimulationEvent(
            event_type=EventType.PARTICLE_SPLIT,
            occurred_at=now,
            payload={
                "source_particle_id": str(source.id),
                "resulting_particle_ids": [str(child.id) for child in children],
            },
        )
        return LifecycleOutcome(
            source.id,
            LifecycleTransition.FISSION,
            children=children,
            child_traits=[volatile, settled],
            events=[split_event, _expired_event(source, "fission", now)],
        )

    def _spawn_child(self, source: Particle, mass: float, energy: float, now: datetime) -> Particle:
        s = self.settings
        offset = s.fission_spawn_offset
        jitter = s.fission_velocity_jitter
        limit = s.max_velocity
        return Particle(
            id=random_uuid(self.rng),
            user_id=source.user_id,
            position_x=wrap_coordinate(source.position_x + self.rng.uniform(-offset, offset), s.world_size),
            position_y=wrap_coordinate(source.position_y + self.rng.uniform(-offset, offset), s.world_size),
            velocity_x=clamp(source.velocity_x + self.rng.uniform(-jitter, jitter), -limit, limit),
            velocity_y=clamp(source.velocity_y + self.rng.uniform(-jitter, jitter), -limit, limit),
            mass=mass,
            energy=energy,
            state=ParticleState.ACTIVE,
            decay_level=0,
            last_input_at=source.last_input_at,
            created_at=now,
            updated_at=now,
        )


def _expired_event(particle: Particle, reason: str, now: datetime) -> SimulationEvent:
    return SimulationEvent(
        event_type=EventType.PARTICLE_EXPIRED,
        occurred_at=now,
        payload={"particle_id": str(particle.id), "reason": reason},
    )
