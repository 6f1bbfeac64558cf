"""
Pydantic schemas for the Personaverse simulation engine.

All data structures exchanged between the engine and its collaborators are
defined here.

Design Philosophy:
- Particles are mutable records owned by the tick that loaded them
- Trait vectors, snapshots and events are immutable values
- Pydantic validation guards invariants at every persistence boundary
"""

import random
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

MAX_ENERGY = 100.0
NEUTRAL_TRAIT = 0.5


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def random_uuid(rng: random.Random) -> UUID:
    """Version-4 UUID drawn from an injected generator (reproducible under a seed)."""
    return UUID(int=rng.getrandbits(128), version=4)


# ============================================================================
# Particle Schemas
# ============================================================================


class ParticleState(str, Enum):
    """Lifecycle state of a particle.

    Merged and Expired are terminal: the engine never processes them again.
    """

    ACTIVE = "active"
    DECAYING = "decaying"
    EXPIRED = "expired"
    MERGED = "merged"

    @property
    def is_terminal(self) -> bool:
        return self in (ParticleState.EXPIRED, ParticleState.MERGED)


class Particle(BaseModel):
    """A simulated personality-bearing entity.

    Kinematics live on a toroidal plane; the world size is an engine setting,
    so the position bound is checked by the world (see world.check_particle)
    rather than by this model.
    """

    id: UUID = Field(default_factory=uuid4, description="Unique particle identifier")
    user_id: UUID = Field(..., description="Opaque owner reference")
    position_x: float = Field(..., description="X coordinate in [0, W)")
    position_y: float = Field(..., description="Y coordinate in [0, W)")
    velocity_x: float = Field(0.0)
    velocity_y: float = Field(0.0)
    mass: float = Field(1.0, gt=0, description="Positive mass; grows on merge, halves on split")
    energy: float = Field(MAX_ENERGY, ge=0, le=MAX_ENERGY, description="Energy in [0, 100]")
    state: ParticleState = Field(ParticleState.ACTIVE)
    decay_level: int = Field(0, ge=0, description="Increases while the particle is idle")
    last_input_at: Optional[datetime] = Field(None, description="Last personality input")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_live(self) -> bool:
        """Live particles (Active or Decaying) take part in ticks."""
        return not self.state.is_terminal

    @property
    def speed(self) -> float:
        return (self.velocity_x ** 2 + self.velocity_y ** 2) ** 0.5


class TraitVector(BaseModel):
    """Five-scalar personality fingerprint.

    Vectors are immutable; a new version is stored whenever traits change
    (merge consolidation, fission children, external personality updates).
    """

    model_config = ConfigDict(frozen=True)

    curiosity: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)
    social_affinity: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)
    aggression: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)
    stability: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)
    growth_potential: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)
    particle_id: Optional[UUID] = Field(None, description="Owning particle")
    version: int = Field(1, ge=1, description="Monotonic per particle")
    calculated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def clamped(
        cls,
        *,
        curiosity: float,
        social_affinity: float,
        aggression: float,
        stability: float,
        growth_potential: float,
        **extra: Any,
    ) -> "TraitVector":
        """Build a vector with every scalar clamped into [0, 1]."""
        return cls(
            curiosity=clamp(curiosity, 0.0, 1.0),
            social_affinity=clamp(social_affinity, 0.0, 1.0),
            aggression=clamp(aggression, 0.0, 1.0),
            stability=clamp(stability, 0.0, 1.0),
            growth_potential=clamp(growth_potential, 0.0, 1.0),
            **extra,
        )

    @classmethod
    def neutral(cls, particle_id: Optional[UUID] = None) -> "TraitVector":
        """Default traits given to a freshly spawned particle."""
        return cls(particle_id=particle_id)

    def as_tuple(self) -> Tuple[float, float, float, float, float]:
        return (
            self.curiosity,
            self.social_affinity,
            self.aggression,
            self.stability,
            self.growth_potential,
        )


# ============================================================================
# Interaction Schemas
# ============================================================================


class InteractionType(str, Enum):
    """Closed set of pairwise interaction outcomes."""

    MERGE = "merge"
    BOND = "bond"
    ATTRACT = "attract"
    REPEL = "repel"


class InteractionOutcome(BaseModel):
    """Transient result of resolving one unordered particle pair."""

    model_config = ConfigDict(frozen=True)

    particle_ids: Tuple[UUID, UUID]
    interaction_type: InteractionType
    strength: float = Field(..., ge=0.0, le=1.0)
    compatibility: float = Field(..., ge=0.0, le=1.0)
    # Merge only
    target_id: Optional[UUID] = None
    source_id: Optional[UUID] = None
    merged_traits: Optional[TraitVector] = None


# ============================================================================
# World Schemas
# ============================================================================


class WorldSnapshot(BaseModel):
    """Immutable per-tick summary used for external reporting only."""

    model_config = ConfigDict(frozen=True)

    tick: int = Field(..., ge=1, description="Strictly increasing tick number")
    timestamp: datetime
    active_particle_count: int = Field(..., ge=0)
    average_energy: float = Field(..., ge=0.0, le=MAX_ENERGY)
    interaction_count: int = Field(..., ge=0)


class UniverseState(BaseModel):
    """Read model combining the latest snapshot with the live population."""

    tick: int = Field(0, description="Latest completed tick (0 before the first tick)")
    timestamp: datetime = Field(default_factory=utc_now)
    active_particle_count: int = 0
    average_energy: float = 0.0
    interaction_count: int = 0
    particles: List[Particle] = Field(default_factory=list)


# ============================================================================
# Event Schemas
# ============================================================================


class EventType(str, Enum):
    """Routing keys for lifecycle notifications."""

    PARTICLE_SPAWNED = "particle.spawned"
    PARTICLE_INTERACTION = "particle.interaction"
    PARTICLE_MERGED = "particle.merged"
    PARTICLE_SPLIT = "particle.split"
    PARTICLE_EXPIRED = "particle.expired"
    UNIVERSE_TICK = "universe.tick"


class SimulationEvent(BaseModel):
    """Notification produced by the engine and handed to the event sink."""

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    occurred_at: datetime = Field(default_factory=utc_now)
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        """JSON-compatible payload including the envelope fields."""
        return {
            "event_id": str(self.event_id),
            "occurred_at": self.occurred_at.isoformat(),
            **self.payload,
        }
