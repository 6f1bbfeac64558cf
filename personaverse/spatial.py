"""Spatial queries on the toroidal world.

Every axis wraps: leaving one edge re-enters the opposite one. Distances are
always measured along the shortest way around the torus, so a particle at
x=1 and one at x=999 in a 1000-wide world are 2 units apart, not 998.

Two interchangeable indexes answer neighbor queries:
- NaiveSpatialIndex: bounding-box filter + exact check over the population
- GridSpatialIndex: uniform buckets keyed by floor(pos / cell), wrapping with
  the torus so buckets on opposite edges are adjacent

Both return exactly the same neighbors; the grid is only an optimization.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Set, Tuple

from .schemas import Particle, ParticleState


def wrap_coordinate(value: float, size: float) -> float:
    """Map any real coordinate into [0, size)."""
    wrapped = value % size
    # Float modulo can return `size` for tiny negative inputs (e.g. -1e-18 % 1000).
    if wrapped >= size:
        wrapped = 0.0
    return wrapped


def toroidal_delta(a: float, b: float, size: float) -> float:
    """Absolute per-axis distance on a wrapping axis."""
    d = abs(a - b)
    if d > size / 2:
        d = size - d
    return d


def signed_toroidal_delta(origin: float, target: float, size: float) -> float:
    """Signed shortest displacement from origin to target on a wrapping axis."""
    d = (target - origin) % size
    if d > size / 2:
        d -= size
    return d


def displacement(origin: Particle, target: Particle, size: float) -> Tuple[float, float]:
    """Shortest (dx, dy) vector from origin to target on the torus."""
    return (
        signed_toroidal_delta(origin.position_x, target.position_x, size),
        signed_toroidal_delta(origin.position_y, target.position_y, size),
    )


def toroidal_distance(p: Particle, q: Particle, size: float) -> float:
    """Euclidean distance between two particles using wrapped axis deltas."""
    dx = toroidal_delta(p.position_x, q.position_x, size)
    dy = toroidal_delta(p.position_y, q.position_y, size)
    return math.sqrt(dx * dx + dy * dy)


def _check_radius(radius: float) -> None:
    if radius < 0:
        raise ValueError(f"Neighbor radius must not be negative (got {radius})")


def _within_box(p: Particle, q: Particle, radius: float, size: float) -> bool:
    # Wrapped per-axis deltas: never rejects a pair that the exact check accepts.
    return (
        toroidal_delta(p.position_x, q.position_x, size) <= radius
        and toroidal_delta(p.position_y, q.position_y, size) <= radius
    )


def find_neighbors(
    particle: Particle,
    radius: float,
    population: Iterable[Particle],
    world_size: float,
) -> List[Particle]:
    """Return all other Active particles within `radius` of `particle`.

    Reference implementation (O(n) per query). The query particle itself and
    any non-Active particle are excluded.

    Raises:
        ValueError: If radius is negative
    """
    _check_radius(radius)
    neighbors: List[Particle] = []
    for candidate in population:
        if candidate.id == particle.id or candidate.state != ParticleState.ACTIVE:
            continue
        if not _within_box(particle, candidate, radius, world_size):
            continue
        if toroidal_distance(particle, candidate, world_size) <= radius:
            neighbors.append(candidate)
    return neighbors


class SpatialIndex(ABC):
    """Neighbor lookup over a fixed population snapshot.

    Build once per tick after the movement phase, then query as often as
    needed. Only Active particles are indexed.
    """

    def __init__(self, world_size: float) -> None:
        self.world_size = world_size

    @abstractmethod
    def build(self, particles: Iterable[Particle]) -> None:
        """Index the given particles (replacing any previous content)."""

    @abstractmethod
    def neighbors(self, particle: Particle, radius: float) -> List[Particle]:
        """All other indexed Active particles within radius of particle."""


class NaiveSpatialIndex(SpatialIndex):
    """Full scan over the population. Used as reference in tests."""

    def __init__(self, world_size: float) -> None:
        super().__init__(world_size)
        self._particles: List[Particle] = []

    def build(self, particles: Iterable[Particle]) -> None:
        self._particles = [p for p in particles if p.state == ParticleState.ACTIVE]

    def neighbors(self, particle: Particle, radius: float) -> List[Particle]:
        return find_neighbors(particle, radius, self._particles, self.world_size)


class GridSpatialIndex(SpatialIndex):
    """Uniform grid bucketing on the torus.

    The world is split into n x n cells of width W/n, with n chosen so a cell
    is at least `cell_size` wide. A query scans the (2k+1)^2 block of cells
    around the particle's cell, where k = ceil(radius / cell width), taking
    cell indices modulo n so the block wraps across the world edges.
    """

    def __init__(self, world_size: float, cell_size: float) -> None:
        super().__init__(world_size)
        if cell_size <= 0:
            cell_size = world_size
        self.cells_per_axis = max(1, int(world_size // cell_size))
        self.cell_width = world_size / self.cells_per_axis
        self._buckets: Dict[Tuple[int, int], List[Particle]] = {}

    def _cell_of(self, x: float, y: float) -> Tuple[int, int]:
        n = self.cells_per_axis
        return (int(x // self.cell_width) % n, int(y // self.cell_width) % n)

    def build(self, particles: Iterable[Particle]) -> None:
        self._buckets = {}
        for p in particles:
            if p.state != ParticleState.ACTIVE:
                continue
            self._buckets.setdefault(self._cell_of(p.position_x, p.position_y), []).append(p)

    def _cells_around(self, particle: Particle, radius: float) -> Set[Tuple[int, int]]:
        n = self.cells_per_axis
        rings = max(1, math.ceil(radius / self.cell_width))
        cx, cy = self._cell_of(particle.position_x, particle.position_y)
        if 2 * rings + 1 >= n:
            # Block covers the whole axis; scan every column/row once.
            xs = range(n)
            ys = range(n)
        else:
            xs = [(cx + d) % n for d in range(-rings, rings + 1)]
            ys = [(cy + d) % n for d in range(-rings, rings + 1)]
        return {(x, y) for x in xs for y in ys}

    def neighbors(self, particle: Particle, radius: float) -> List[Particle]:
        _check_radius(radius)
        candidates: List[Particle] = []
        for cell in self._cells_around(particle, radius):
            candidates.extend(self._buckets.get(cell, ()))
        return find_neighbors(particle, radius, candidates, self.world_size)


def build_index(particles: Iterable[Particle], world_size: float, radius: float, use_grid: bool = True) -> SpatialIndex:
    """Create and populate the preferred index for a tick."""
    index: SpatialIndex
    if use_grid and radius > 0:
        index = GridSpatialIndex(world_size, cell_size=radius)
    else:
        index = NaiveSpatialIndex(world_size)
    index.build(particles)
    return index
