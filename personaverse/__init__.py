"""
Personaverse - personality-particle universe simulation engine.

Particles carrying a five-trait personality drift across a toroidal plane,
meet their neighbors each tick and merge, bond, attract or repel according
to how compatible they are. Idle particles decay and expire; unstable ones
split in two.

All collaborators (storage, event sink, cache and broadcast hooks, random
source, clock) are injected by the user. In-memory defaults need no
database and no files.
"""

__version__ = "0.1.0"

# Main simulation components
from .orchestrator import Orchestrator, TickInProgressError, SnapshotPersistenceError
from .scheduler import TickScheduler
from .world import World, TickResult, TickFault, advance_world, ParticleInvariantError

# Core logic
from .compatibility import score as compatibility_score
from .interactions import InteractionResolver
from .lifecycle import LifecycleEvaluator, LifecycleOutcome, LifecycleTransition
from .spatial import (
    GridSpatialIndex,
    NaiveSpatialIndex,
    SpatialIndex,
    find_neighbors,
    toroidal_distance,
)

# Configuration
from .config import Config, ConfigurationError, InteractionThresholds, SimulationSettings

# Collaborator interfaces
from .persistence import (
    PersistenceStrategy,
    InMemoryPersistence,
    JsonPersistence,
    PostgresPersistence,
    RetryingPersistence,
    TransientStoreError,
)
from .events import (
    EventSink,
    InMemoryEventSink,
    JsonlEventSink,
    NullEventSink,
    CacheRefreshHook,
    BroadcastHook,
    CallbackBroadcastHook,
)

# Core schemas
from .schemas import (
    Particle,
    ParticleState,
    TraitVector,
    InteractionType,
    InteractionOutcome,
    WorldSnapshot,
    UniverseState,
    EventType,
    SimulationEvent,
)

# Scenario helpers
from .scenario import load_scenario, ScenarioLoader, seed_population

__all__ = [
    # Main classes
    "Orchestrator",
    "TickScheduler",
    "TickInProgressError",
    "SnapshotPersistenceError",
    # Tick computation
    "World",
    "TickResult",
    "TickFault",
    "advance_world",
    "ParticleInvariantError",
    "compatibility_score",
    "InteractionResolver",
    "LifecycleEvaluator",
    "LifecycleOutcome",
    "LifecycleTransition",
    "SpatialIndex",
    "NaiveSpatialIndex",
    "GridSpatialIndex",
    "find_neighbors",
    "toroidal_distance",
    # Configuration
    "Config",
    "ConfigurationError",
    "InteractionThresholds",
    "SimulationSettings",
    # Collaborator interfaces
    "PersistenceStrategy",
    "InMemoryPersistence",
    "JsonPersistence",
    "PostgresPersistence",
    "RetryingPersistence",
    "TransientStoreError",
    "EventSink",
    "InMemoryEventSink",
    "JsonlEventSink",
    "NullEventSink",
    "CacheRefreshHook",
    "BroadcastHook",
    "CallbackBroadcastHook",
    # Schemas
    "Particle",
    "ParticleState",
    "TraitVector",
    "InteractionType",
    "InteractionOutcome",
    "WorldSnapshot",
    "UniverseState",
    "EventType",
    "SimulationEvent",
    # Scenario helpers
    "load_scenario",
    "ScenarioLoader",
    "seed_population",
]
