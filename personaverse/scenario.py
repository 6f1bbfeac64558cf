"""
Scenario loading for JSON-defined starting populations.

A scenario describes the particles a universe starts with. Anything left
out is filled in the way a freshly spawned particle would be: random
position, zero velocity, full energy, unit mass, neutral traits.

Scenario file structure:
```json
{
  "name": "First Contact",
  "description": "...",
  "particles": [
    {
      "user_id": "6f1c...",            // optional, random when omitted
      "position": [100.0, 100.0],      // optional, random when omitted
      "velocity": [0.5, -0.2],         // optional
      "mass": 2.0,                     // optional
      "energy": 80.0,                  // optional
      "idle_hours": 30,                // optional, backdates last input
      "traits": {"curiosity": 0.9}     // optional, missing scalars are 0.5
    }
  ]
}
```

Usage:
    loader = ScenarioLoader()
    scenario = loader.load("first_contact")
    particles = await seed_population(orchestrator, scenario)
"""

import json
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError

from .config import Config
from .logging_utils import log_io
from .orchestrator import Orchestrator
from .schemas import (
    MAX_ENERGY,
    NEUTRAL_TRAIT,
    Particle,
    ParticleState,
    TraitVector,
    random_uuid,
)
from .spatial import wrap_coordinate


class TraitSeed(BaseModel):
    curiosity: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)
    social_affinity: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)
    aggression: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)
    stability: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)
    growth_potential: float = Field(NEUTRAL_TRAIT, ge=0.0, le=1.0)


class ParticleSeed(BaseModel):
    """One particle in a scenario file."""

    user_id: Optional[UUID] = None
    position: Optional[Tuple[float, float]] = None
    velocity: Tuple[float, float] = (0.0, 0.0)
    mass: float = Field(1.0, gt=0)
    energy: float = Field(MAX_ENERGY, ge=0, le=MAX_ENERGY)
    idle_hours: float = Field(0.0, ge=0, description="Hours since the last personality input")
    traits: TraitSeed = Field(default_factory=TraitSeed)


class Scenario(BaseModel):
    name: str
    description: str = ""
    particles: List[ParticleSeed] = Field(default_factory=list)


class ScenarioLoader:
    """Load and validate starting populations from JSON files.

    Directory structure:
    - Default: {PROJECT_ROOT}/examples/scenarios/
    - Override via constructor: ScenarioLoader(Path("/custom/scenarios"))
    - Scenario files: {scenario_name}.json

    Validation errors are re-raised as ValueError naming the file, so a bad
    scenario fails before any particle is created.
    """

    def __init__(self, scenarios_dir: Optional[Path] = None):
        self.scenarios_dir = scenarios_dir or Config.SCENARIOS_DIR

    def load(self, scenario_name: str) -> Scenario:
        """Load a scenario by name, or by path when given a .json file.

        Raises:
            FileNotFoundError: If the scenario file does not exist
            ValueError: If the file does not match the scenario schema
            json.JSONDecodeError: If the file is not valid JSON
        """
        candidate = Path(scenario_name)
        if candidate.suffix == ".json":
            scenario_path = candidate
        else:
            scenario_path = self.scenarios_dir / f"{scenario_name}.json"

        if not scenario_path.exists():
            raise FileNotFoundError(f"Scenario '{scenario_name}' not found at {scenario_path}")

        data = json.loads(scenario_path.read_text())
        try:
            return Scenario.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid scenario {scenario_path}: {exc}") from exc

    def list_scenarios(self) -> List[str]:
        if not self.scenarios_dir.exists():
            return []
        return sorted(path.stem for path in self.scenarios_dir.glob("*.json"))


async def seed_population(orchestrator: Orchestrator, scenario: Scenario) -> List[Particle]:
    """Create every particle of `scenario` in the orchestrator's store.

    Random draws (ids, owners, positions) come from the orchestrator's rng,
    so seeding is reproducible under a fixed seed. Each particle is announced
    the way Orchestrator.spawn_particle announces one.
    """
    rng = orchestrator.rng
    size = orchestrator.settings.world_size
    now = orchestrator.clock()
    created: List[Particle] = []

    for seed in scenario.particles:
        if seed.position is None:
            x, y = rng.uniform(0.0, size), rng.uniform(0.0, size)
        else:
            x, y = seed.position
        particle = Particle(
            id=random_uuid(rng),
            user_id=seed.user_id or random_uuid(rng),
            position_x=wrap_coordinate(x, size),
            position_y=wrap_coordinate(y, size),
            velocity_x=seed.velocity[0],
            velocity_y=seed.velocity[1],
            mass=seed.mass,
            energy=seed.energy,
            state=ParticleState.ACTIVE,
            last_input_at=now - timedelta(hours=seed.idle_hours),
            created_at=now,
            updated_at=now,
        )
        await orchestrator.persistence.create_particle(particle)
        await orchestrator.persistence.save_traits(
            TraitVector(particle_id=particle.id, calculated_at=now, **seed.traits.model_dump())
        )
        created.append(particle)

    log_io(f"Seeded {len(created)} particle(s) from scenario '{scenario.name}'")
    await orchestrator.announce_spawned(created)
    return created


def load_scenario(scenario_name: str, scenarios_dir: Optional[Path] = None) -> Scenario:
    """Convenience wrapper around ScenarioLoader.load()."""
    return ScenarioLoader(scenarios_dir).load(scenario_name)
