"""Pairwise interaction resolution.

Maps a compatibility score onto one of four outcomes and applies its effects
to both particles in place:

- Merge:   heavier particle absorbs the other; the absorbed one becomes Merged
- Bond:    velocities partially align, both gain a little energy
- Attract: lower-id particle is nudged toward the other
- Repel:   both are pushed apart, harder at short range

The caller guarantees each unordered pair is resolved at most once per tick
and that no other code touches either particle while effects are applied.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import List, Optional, Tuple

from . import compatibility
from .config import SimulationSettings
from .schemas import (
    MAX_ENERGY,
    EventType,
    InteractionOutcome,
    InteractionType,
    Particle,
    ParticleState,
    SimulationEvent,
    TraitVector,
    clamp,
    utc_now,
)
from .spatial import displacement, wrap_coordinate


class InteractionResolver:
    """Resolve one particle pair per call using configured thresholds."""

    def __init__(self, settings: Optional[SimulationSettings] = None) -> None:
        self.settings = settings or SimulationSettings()

    def classify(self, score: float) -> InteractionType:
        """Categorical outcome for a compatibility score."""
        thresholds = self.settings.thresholds
        if score >= thresholds.merge:
            return InteractionType.MERGE
        if score >= thresholds.bond:
            return InteractionType.BOND
        if score >= thresholds.attract:
            return InteractionType.ATTRACT
        return InteractionType.REPEL

    def evaluate(
        self,
        first: Particle,
        second: Particle,
        first_traits: TraitVector,
        second_traits: TraitVector,
    ) -> InteractionOutcome:
        """Score and classify a pair without touching either particle.

        Raises:
            ValueError: If both particles are the same one
        """
        if first.id == second.id:
            raise ValueError(f"Particle {first.id} cannot interact with itself")
        score = compatibility.score(first_traits, second_traits)
        kind = self.classify(score)
        return InteractionOutcome(
            particle_ids=(first.id, second.id),
            interaction_type=kind,
            strength=1.0 - score if kind is InteractionType.REPEL else score,
            compatibility=score,
        )

    def resolve(
        self,
        first: Particle,
        second: Particle,
        first_traits: TraitVector,
        second_traits: TraitVector,
        now: Optional[datetime] = None,
    ) -> InteractionOutcome:
        """Score the pair, pick an outcome and apply its effects.

        Args:
            first: One particle of the pair (mutated in place)
            second: The other particle (mutated in place)
            first_traits: Current traits of `first`
            second_traits: Current traits of `second`
            now: Timestamp stamped on mutated records

        Returns:
            InteractionOutcome describing what happened

        Raises:
            ValueError: If the pair is not two distinct Active particles
        """
        if first.id == second.id:
            raise ValueError(f"Particle {first.id} cannot interact with itself")
        for particle in (first, second):
            if particle.state != ParticleState.ACTIVE:
                raise ValueError(
                    f"Particle {particle.id} is {particle.state.value}; only active particles interact"
                )

        now = now or utc_now()
        verdict = self.evaluate(first, second, first_traits, second_traits)
        kind, score, strength = verdict.interaction_type, verdict.compatibility, verdict.strength

        if kind is InteractionType.MERGE:
            return self._merge(first, second, first_traits, second_traits, score, now)
        if kind is InteractionType.BOND:
            self._bond(first, second)
        elif kind is InteractionType.ATTRACT:
            self._attract(first, second, strength)
        elif kind is InteractionType.REPEL:
            self._repel(first, second, strength)
        else:  # pragma: no cover - enum is closed
            raise AssertionError(f"Unhandled interaction type {kind!r}")

        first.updated_at = now
        second.updated_at = now
        return verdict

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _merge(
        self,
        first: Particle,
        second: Particle,
        first_traits: TraitVector,
        second_traits: TraitVector,
        score: float,
        now: datetime,
    ) -> InteractionOutcome:
        # Heavier particle survives; equal mass falls back to the lower id.
        if (first.mass, _neg_id(first)) >= (second.mass, _neg_id(second)):
            target, source, target_traits = first, second, first_traits
        else:
            target, source, target_traits = second, first, second_traits

        size = self.settings.world_size
        total_mass = target.mass + source.mass
        share = source.mass / total_mass

        # Centre of mass along the shortest path across the torus.
        dx, dy = displacement(target, source, size)
        target.position_x = wrap_coordinate(target.position_x + dx * share, size)
        target.position_y = wrap_coordinate(target.position_y + dy * share, size)
        target.velocity_x = (target.velocity_x * target.mass + source.velocity_x * source.mass) / total_mass
        target.velocity_y = (target.velocity_y * target.mass + source.velocity_y * source.mass) / total_mass
        target.mass = total_mass
        target.energy = min(MAX_ENERGY, target.energy + source.energy)
        target.updated_at = now

        source.state = ParticleState.MERGED
        source.updated_at = now

        merged_traits = TraitVector.clamped(
            curiosity=(first_traits.curiosity + second_traits.curiosity) / 2.0,
            social_affinity=(first_traits.social_affinity + second_traits.social_affinity) / 2.0,
            aggression=(first_traits.aggression + second_traits.aggression) / 2.0,
            stability=target_traits.stability + self.settings.merge_stability_boost,
            growth_potential=(first_traits.growth_potential + second_traits.growth_potential) / 2.0,
            particle_id=target.id,
            version=target_traits.version + 1,
            calculated_at=now,
        )

        return InteractionOutcome(
            particle_ids=(first.id, second.id),
            interaction_type=InteractionType.MERGE,
            strength=score,
            compatibility=score,
            target_id=target.id,
            source_id=source.id,
            merged_traits=merged_traits,
        )

    def _bond(self, first: Particle, second: Particle) -> None:
        keep = self.settings.bond_self_weight
        avg_vx = (first.velocity_x + second.velocity_x) / 2.0
        avg_vy = (first.velocity_y + second.velocity_y) / 2.0
        for particle in (first, second):
            particle.velocity_x = keep * particle.velocity_x + (1.0 - keep) * avg_vx
            particle.velocity_y = keep * particle.velocity_y + (1.0 - keep) * avg_vy
            particle.energy = min(MAX_ENERGY, particle.energy + self.settings.bond_energy_gain)

    def _attract(self, first: Particle, second: Particle, strength: float) -> None:
        mover, other = (first, second) if first.id < second.id else (second, first)
        ux, uy, distance = self._bearing(mover, other)
        if distance == 0.0:
            return
        impulse = self.settings.attract_force * strength
        mover.velocity_x += ux * impulse
        mover.velocity_y += uy * impulse
        self._clamp_velocity(mover)

    def _repel(self, first: Particle, second: Particle, strength: float) -> None:
        ux, uy, distance = self._bearing(first, second)
        if distance == 0.0:
            ux, uy = 1.0, 0.0
        falloff = self.settings.interaction_radius / max(distance, self.settings.min_separation)
        magnitude = self.settings.repel_force * strength * falloff
        first.velocity_x -= ux * magnitude
        first.velocity_y -= uy * magnitude
        second.velocity_x += ux * magnitude
        second.velocity_y += uy * magnitude
        self._clamp_velocity(first)
        self._clamp_velocity(second)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _bearing(self, origin: Particle, target: Particle) -> Tuple[float, float, float]:
        """Unit vector from origin toward target plus the distance."""
        dx, dy = displacement(origin, target, self.settings.world_size)
        distance = math.hypot(dx, dy)
        if distance == 0.0:
            return 0.0, 0.0, 0.0
        return dx / distance, dy / distance, distance

    def _clamp_velocity(self, particle: Particle) -> None:
        limit = self.settings.max_velocity
        particle.velocity_x = clamp(particle.velocity_x, -limit, limit)
        particle.velocity_y = clamp(particle.velocity_y, -limit, limit)


def _neg_id(particle: Particle) -> int:
    # Lower UUID wins ties when compared with >=.
    return -particle.id.int


def outcome_events(outcome: InteractionOutcome, now: Optional[datetime] = None) -> List[SimulationEvent]:
    """Notifications for one resolved pair."""
    now = now or utc_now()
    first_id, second_id = outcome.particle_ids
    events = [
        SimulationEvent(
            event_type=EventType.PARTICLE_INTERACTION,
            occurred_at=now,
            payload={
                "particle1_id": str(first_id),
                "particle2_id": str(second_id),
                "interaction_type": outcome.interaction_type.value,
                "strength": outcome.strength,
            },
        )
    ]
    if outcome.interaction_type is InteractionType.MERGE:
        events.append(
            SimulationEvent(
                event_type=EventType.PARTICLE_MERGED,
                occurred_at=now,
                payload={
                    "source_particle_id": str(outcome.source_id),
                    "target_particle_id": str(outcome.target_id),
                    "resulting_particle_id": str(outcome.target_id),
                },
            )
        )
    return events
