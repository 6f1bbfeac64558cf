"""Command line interface for running and inspecting a universe.

    personaverse spawn --count 20
    personaverse tick --count 5
    personaverse state --particles
    personaverse neighbors <particle-id> --radius 80
    personaverse evaluate <particle-id> <other-particle-id>
    personaverse seed first_contact
    personaverse serve --interval 10 --max-ticks 100
    personaverse config

State lives in the backend chosen by PERSONAVERSE_STORE (JSON files under
PERSONAVERSE_JSON_PATH unless configured otherwise), so successive commands
operate on the same universe.
"""

from __future__ import annotations

import argparse
import asyncio
import random
import uuid
from pathlib import Path
from typing import List, Optional

from .config import Config, ConfigurationError, SimulationSettings
from .events import EventSink, JsonlEventSink, NullEventSink
from .logging_utils import log_error, log_info, log_warning
from .orchestrator import Orchestrator, TickInProgressError
from .persistence import build_persistence
from .scenario import ScenarioLoader, seed_population
from .scheduler import TickScheduler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="personaverse", description="Universe simulation engine")
    parser.add_argument(
        "--store",
        choices=["memory", "json", "postgres"],
        default=None,
        help="Storage backend (default: PERSONAVERSE_STORE or json)",
    )
    parser.add_argument("--data-dir", type=Path, default=None, help="Directory for the json store")
    parser.add_argument("--seed", type=int, default=None, help="Seed for reproducible random draws")
    parser.add_argument("--no-events", action="store_true", help="Do not write the event log")

    sub = parser.add_subparsers(dest="command", required=True)

    tick = sub.add_parser("tick", help="Run one or more ticks now")
    tick.add_argument("--count", type=int, default=1, help="Number of ticks to run")

    spawn = sub.add_parser("spawn", help="Spawn particles for new users")
    spawn.add_argument("--count", type=int, default=1, help="Number of particles to spawn")
    spawn.add_argument("--user-id", type=uuid.UUID, default=None, help="Spawn for this user only")

    seed = sub.add_parser("seed", help="Create the population described by a scenario file")
    seed.add_argument("scenario", help="Scenario name (in the scenarios dir) or path to a .json file")
    seed.add_argument("--scenarios-dir", type=Path, default=None)

    state = sub.add_parser("state", help="Show the latest snapshot")
    state.add_argument("--particles", action="store_true", help="List live particles")

    neighbors = sub.add_parser("neighbors", help="List active particles near a particle")
    neighbors.add_argument("particle_id", type=uuid.UUID)
    neighbors.add_argument("--radius", type=float, default=None, help="Search radius (default: interaction radius)")

    evaluate = sub.add_parser("evaluate", help="Show how two particles would interact, without applying it")
    evaluate.add_argument("first_id", type=uuid.UUID)
    evaluate.add_argument("second_id", type=uuid.UUID)

    serve = sub.add_parser("serve", help="Run ticks on a fixed interval until interrupted")
    serve.add_argument("--interval", type=float, default=None, help="Seconds between ticks")
    serve.add_argument("--max-ticks", type=int, default=None, help="Stop after this many ticks")

    sub.add_parser("config", help="Print and validate the effective configuration")
    return parser


def build_orchestrator(args: argparse.Namespace) -> Orchestrator:
    store = args.store or Config.CLI_STORE
    data_dir = args.data_dir or Path(Config.JSON_PATH)
    persistence = build_persistence(store, json_path=data_dir)

    event_sink: EventSink = NullEventSink()
    if store == "json" and not args.no_events:
        event_sink = JsonlEventSink(data_dir / "events.jsonl")

    seed = args.seed if args.seed is not None else Config.SEED
    return Orchestrator(
        persistence=persistence,
        settings=SimulationSettings.from_config(),
        event_sink=event_sink,
        rng=random.Random(seed),
    )


async def _cmd_tick(orchestrator: Orchestrator, args: argparse.Namespace) -> None:
    result = await orchestrator.run(args.count, trigger=True)
    snapshot = result["final_snapshot"]
    if snapshot is not None:
        log_info(f"Universe is at tick {snapshot.tick}")


async def _cmd_spawn(orchestrator: Orchestrator, args: argparse.Namespace) -> None:
    if args.user_id:
        owners = [args.user_id]
    else:
        owners = [uuid.uuid4() for _ in range(args.count)]
    for owner in owners:
        particle = await orchestrator.spawn_particle(owner)
        print(f"{particle.id}  user={particle.user_id}  pos=({particle.position_x:.1f}, {particle.position_y:.1f})")


async def _cmd_seed(orchestrator: Orchestrator, args: argparse.Namespace) -> None:
    loader = ScenarioLoader(args.scenarios_dir)
    scenario = loader.load(args.scenario)
    particles = await seed_population(orchestrator, scenario)
    for particle in particles:
        print(f"{particle.id}  pos=({particle.position_x:.1f}, {particle.position_y:.1f})")


async def _cmd_state(orchestrator: Orchestrator, args: argparse.Namespace) -> None:
    state = await orchestrator.get_universe_state()
    print(f"Tick: {state.tick}")
    print(f"Timestamp: {state.timestamp.isoformat()}")
    print(f"Active particles: {state.active_particle_count}")
    print(f"Average energy: {state.average_energy:.2f}")
    print(f"Interactions: {state.interaction_count}")
    if args.particles:
        for particle in state.particles:
            print(
                f"  {particle.id}  {particle.state.value:<8} "
                f"pos=({particle.position_x:.1f}, {particle.position_y:.1f}) "
                f"mass={particle.mass:.2f} energy={particle.energy:.1f} decay={particle.decay_level}"
            )


async def _cmd_neighbors(orchestrator: Orchestrator, args: argparse.Namespace) -> None:
    if await orchestrator.persistence.get_particle(args.particle_id) is None:
        log_warning(f"Particle {args.particle_id} not found")
        return
    found = await orchestrator.find_neighbors(args.particle_id, args.radius)
    print(f"{len(found)} neighbor(s)")
    for particle in found:
        print(f"  {particle.id}  pos=({particle.position_x:.1f}, {particle.position_y:.1f})")


async def _cmd_evaluate(orchestrator: Orchestrator, args: argparse.Namespace) -> None:
    outcome = await orchestrator.evaluate_interaction(args.first_id, args.second_id)
    if outcome is None:
        log_warning("One or both particles not found")
        return
    print(f"Interaction: {outcome.interaction_type.value}")
    print(f"Strength: {outcome.strength:.3f}")
    print(f"Compatibility: {outcome.compatibility:.3f} ({outcome.compatibility * 100:.1f}%)")


async def _cmd_serve(orchestrator: Orchestrator, args: argparse.Namespace) -> None:
    scheduler = TickScheduler(orchestrator, interval_seconds=args.interval, max_ticks=args.max_ticks)
    await scheduler.run_forever()


COMMANDS = {
    "tick": _cmd_tick,
    "spawn": _cmd_spawn,
    "seed": _cmd_seed,
    "state": _cmd_state,
    "neighbors": _cmd_neighbors,
    "evaluate": _cmd_evaluate,
    "serve": _cmd_serve,
}


async def run_command(args: argparse.Namespace) -> None:
    orchestrator = build_orchestrator(args)
    handler = COMMANDS[args.command]
    if args.command == "tick":
        # Orchestrator.run() manages initialize/close itself.
        await handler(orchestrator, args)
        return

    await orchestrator.initialize()
    try:
        await handler(orchestrator, args)
    finally:
        await orchestrator.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "config":
        print(Config.display())
        try:
            Config.validate()
        except ConfigurationError as exc:
            log_error(str(exc))
            return 2
        return 0

    try:
        asyncio.run(run_command(args))
    except ConfigurationError as exc:
        log_error(str(exc))
        return 2
    except (TickInProgressError, ValueError) as exc:
        log_error(str(exc))
        return 1
    except KeyboardInterrupt:
        log_info("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
