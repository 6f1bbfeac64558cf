"""
Personaverse Configuration

Loads configuration from environment variables with sensible defaults and
turns it into validated, typed simulation settings.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

# Load .env file if it exists
load_dotenv()


class ConfigurationError(Exception):
    """Raised when simulation settings are logically invalid.

    A configuration fault is fatal: the engine refuses to start any tick until
    the offending values are fixed.
    """

    def __init__(self, problems: List[str]) -> None:
        self.problems = problems
        message_lines = ["Invalid simulation configuration:"]
        message_lines.extend(f"  - {problem}" for problem in problems)
        message_lines.extend(
            [
                "\nRemediation tips:",
                "  - Check PERSONAVERSE_* environment variables (or your .env file)",
                "  - Run `personaverse config` to print the effective configuration",
            ]
        )
        super().__init__("\n".join(message_lines))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    """Application configuration loaded from environment variables."""

    # World geometry
    WORLD_SIZE: float = _env_float("PERSONAVERSE_WORLD_SIZE", 1000.0)
    INTERACTION_RADIUS: float = _env_float("PERSONAVERSE_INTERACTION_RADIUS", 50.0)

    # Interaction thresholds (compatibility score cutoffs)
    MERGE_THRESHOLD: float = _env_float("PERSONAVERSE_MERGE_THRESHOLD", 0.85)
    BOND_THRESHOLD: float = _env_float("PERSONAVERSE_BOND_THRESHOLD", 0.65)
    ATTRACT_THRESHOLD: float = _env_float("PERSONAVERSE_ATTRACT_THRESHOLD", 0.50)

    # Lifecycle
    DECAY_AFTER_HOURS: float = _env_float("PERSONAVERSE_DECAY_AFTER_HOURS", 24.0)
    DECAY_STEP: int = _env_int("PERSONAVERSE_DECAY_STEP", 10)
    EXPIRY_DECAY_LEVEL: int = _env_int("PERSONAVERSE_EXPIRY_DECAY_LEVEL", 100)
    FISSION_PROBABILITY: float = _env_float("PERSONAVERSE_FISSION_PROBABILITY", 0.2)

    # Scheduling
    TICK_INTERVAL_SECONDS: float = _env_float("PERSONAVERSE_TICK_INTERVAL_SECONDS", 10.0)
    ERROR_BACKOFF_SECONDS: float = _env_float("PERSONAVERSE_ERROR_BACKOFF_SECONDS", 30.0)

    # Randomness (unset means nondeterministic)
    SEED: Optional[int] = (
        int(os.environ["PERSONAVERSE_SEED"]) if os.getenv("PERSONAVERSE_SEED") else None
    )

    # Storage
    STORE: str = os.getenv("PERSONAVERSE_STORE", "memory")
    # The command line keeps state between invocations, so it defaults to files
    CLI_STORE: str = os.getenv("PERSONAVERSE_STORE", "json")
    JSON_PATH: str = os.getenv("PERSONAVERSE_JSON_PATH", "universe_data")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://localhost/personaverse")
    STORE_RETRY_ATTEMPTS: int = _env_int("PERSONAVERSE_STORE_RETRY_ATTEMPTS", 3)
    PERSIST_CONCURRENCY: int = _env_int("PERSONAVERSE_PERSIST_CONCURRENCY", 16)

    # Project Paths
    PROJECT_ROOT: Path = Path(__file__).parent.parent
    SCENARIOS_DIR: Path = PROJECT_ROOT / "examples" / "scenarios"

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if values are unusable."""
        if cls.STORE not in ("memory", "json", "postgres"):
            raise ConfigurationError(
                [f"PERSONAVERSE_STORE must be memory, json or postgres (got {cls.STORE!r})"]
            )
        if cls.STORE_RETRY_ATTEMPTS < 1:
            raise ConfigurationError(["PERSONAVERSE_STORE_RETRY_ATTEMPTS must be at least 1"])
        if cls.PERSIST_CONCURRENCY < 1:
            raise ConfigurationError(["PERSONAVERSE_PERSIST_CONCURRENCY must be at least 1"])
        # Building the settings runs the full logical validation.
        SimulationSettings.from_config(cls)

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Personaverse Configuration:",
            f"  World: {cls.WORLD_SIZE:g} x {cls.WORLD_SIZE:g}",
            f"  Interaction radius: {cls.INTERACTION_RADIUS:g}",
            (
                "  Thresholds: merge>={:.2f} bond>={:.2f} attract>={:.2f}".format(
                    cls.MERGE_THRESHOLD, cls.BOND_THRESHOLD, cls.ATTRACT_THRESHOLD
                )
            ),
            f"  Decay: +{cls.DECAY_STEP} after {cls.DECAY_AFTER_HOURS:g}h idle, expire at {cls.EXPIRY_DECAY_LEVEL}",
            f"  Tick interval: {cls.TICK_INTERVAL_SECONDS:g}s",
            f"  Store: {cls.STORE}",
            f"  Seed: {cls.SEED if cls.SEED is not None else 'random'}",
        ]
        return "\n".join(lines)


class InteractionThresholds(BaseModel):
    """Compatibility cutoffs separating Merge / Bond / Attract / Repel."""

    model_config = ConfigDict(frozen=True)

    merge: float = Field(0.85, description="Scores at or above this merge")
    bond: float = Field(0.65, description="Scores at or above this (and below merge) bond")
    attract: float = Field(0.50, description="Scores at or above this (and below bond) attract")


class SimulationSettings(BaseModel):
    """Validated engine settings shared by every simulation component.

    Construct directly in tests or via ``from_config()`` in applications. Any
    logically invalid combination raises ConfigurationError at construction,
    so an engine holding a settings instance can always start a tick.
    """

    model_config = ConfigDict(frozen=True)

    # World geometry
    world_size: float = Field(1000.0, description="Edge length W of the toroidal plane")
    interaction_radius: float = Field(50.0, description="Neighbor radius for interactions")
    max_velocity: float = Field(5.0, description="Per-axis velocity clamp")
    energy_decay_per_speed: float = Field(
        0.05, description="Energy lost per tick per unit of speed"
    )
    use_spatial_grid: bool = Field(True, description="Use grid bucketing for neighbor search")

    # Interactions
    thresholds: InteractionThresholds = Field(default_factory=InteractionThresholds)
    bond_self_weight: float = Field(0.3, description="Share of own velocity kept on bond")
    bond_energy_gain: float = Field(1.0, description="Energy gained by each bonded particle")
    attract_force: float = Field(0.5, description="Velocity impulse per unit strength on attract")
    repel_force: float = Field(1.0, description="Velocity impulse per unit strength at full radius")
    min_separation: float = Field(1.0, description="Distance floor for the repel falloff")
    merge_stability_boost: float = Field(0.1, description="Stability nudge after a merge")

    # Lifecycle
    decay_after_hours: float = Field(24.0, description="Idle time before decay starts")
    decay_step: int = Field(10, description="Decay level added per idle evaluation")
    expiry_decay_level: int = Field(100, description="Decay level at which a particle expires")
    fission_min_mass: float = Field(2.0)
    fission_min_energy: float = Field(40.0)
    fission_instability_threshold: float = Field(0.6)
    fission_probability: float = Field(0.2)
    fission_energy_loss: float = Field(0.1, description="Fraction of energy lost on split")
    fission_divergence: float = Field(0.15, description="Trait skew applied to each child")
    fission_spawn_offset: float = Field(5.0, description="Max positional offset of children")
    fission_velocity_jitter: float = Field(0.5, description="Max velocity perturbation of children")

    # Scheduling
    tick_interval_seconds: float = Field(10.0)
    error_backoff_seconds: float = Field(30.0)

    @model_validator(mode="after")
    def _check_logic(self) -> "SimulationSettings":
        problems: List[str] = []

        if self.world_size <= 0:
            problems.append(f"world_size must be positive (got {self.world_size})")
        if self.interaction_radius < 0:
            problems.append(f"interaction_radius must not be negative (got {self.interaction_radius})")
        elif self.world_size > 0 and self.interaction_radius > self.world_size / 2:
            problems.append("interaction_radius must not exceed half the world size")
        if self.max_velocity <= 0:
            problems.append("max_velocity must be positive")
        if self.energy_decay_per_speed < 0:
            problems.append("energy_decay_per_speed must not be negative")

        t = self.thresholds
        for name, value in (("merge", t.merge), ("bond", t.bond), ("attract", t.attract)):
            if not 0.0 <= value <= 1.0:
                problems.append(f"{name} threshold must lie in [0, 1] (got {value})")
        if not t.attract <= t.bond <= t.merge:
            problems.append(
                f"thresholds must satisfy attract <= bond <= merge (got {t.attract}, {t.bond}, {t.merge})"
            )

        if not 0.0 <= self.bond_self_weight <= 1.0:
            problems.append("bond_self_weight must lie in [0, 1]")
        if self.min_separation <= 0:
            problems.append("min_separation must be positive")
        if self.decay_after_hours < 0:
            problems.append("decay_after_hours must not be negative")
        if self.decay_step <= 0:
            problems.append("decay_step must be positive")
        if self.expiry_decay_level <= 0:
            problems.append("expiry_decay_level must be positive")
        if not 0.0 <= self.fission_probability <= 1.0:
            problems.append("fission_probability must lie in [0, 1]")
        if not 0.0 <= self.fission_energy_loss <= 1.0:
            problems.append("fission_energy_loss must lie in [0, 1]")
        if self.fission_min_mass <= 0:
            problems.append("fission_min_mass must be positive")
        if self.tick_interval_seconds <= 0:
            problems.append("tick_interval_seconds must be positive")
        if self.error_backoff_seconds < 0:
            problems.append("error_backoff_seconds must not be negative")

        if problems:
            raise ConfigurationError(problems)
        return self

    @classmethod
    def from_config(cls, config: type = Config) -> "SimulationSettings":
        """Build settings from a Config class (environment-backed by default)."""
        return cls(
            world_size=config.WORLD_SIZE,
            interaction_radius=config.INTERACTION_RADIUS,
            thresholds=InteractionThresholds(
                merge=config.MERGE_THRESHOLD,
                bond=config.BOND_THRESHOLD,
                attract=config.ATTRACT_THRESHOLD,
            ),
            decay_after_hours=config.DECAY_AFTER_HOURS,
            decay_step=config.DECAY_STEP,
            expiry_decay_level=config.EXPIRY_DECAY_LEVEL,
            fission_probability=config.FISSION_PROBABILITY,
            tick_interval_seconds=config.TICK_INTERVAL_SECONDS,
            error_backoff_seconds=config.ERROR_BACKOFF_SECONDS,
        )
