"""
Territory derivation.

Two capture strategies are supported:
- ``ConvexHullStrategy``: the territory is the convex hull of the player's
  established nodes, simplified for rendering. Needs at least three nodes.
- ``LoopClosureStrategy``: the territory is the union of closed loops the
  player walked. A loop closes when the walk returns near its start or
  touches an already captured boundary.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from shapely.geometry import MultiPolygon, Polygon
from shapely.ops import unary_union

from .geo_math import Bounds, bounds, close_ring, convex_hull, distance, open_ring, point_in_polygon, polygon_area
from .models import Coordinates, Node

logger = structlog.get_logger()


class Owner(str, Enum):
    PLAYER = "player"
    ALLY = "ally"
    ENEMY = "enemy"
    NEUTRAL = "neutral"


Ring = Tuple[Coordinates, ...]


@dataclass(frozen=True)
class Territory:
    """Derived territory: one or more open rings with their total area."""

    rings: Tuple[Ring, ...]
    owner: Owner = Owner.PLAYER
    area_m2: float = 0.0

    @property
    def ring(self) -> Ring:
        """The largest ring (the only one for hull territories)."""
        return max(self.rings, key=lambda r: polygon_area(close_ring(r)))

    @property
    def bounds(self) -> Bounds:
        return bounds([p for ring in self.rings for p in ring])

    def contains(self, point: Sequence[float]) -> bool:
        return any(point_in_polygon(point, ring) for ring in self.rings)

    def to_geojson(self) -> Dict:
        polygons = [[[list(p) for p in close_ring(ring)]] for ring in self.rings]
        if len(polygons) == 1:
            geometry = {"type": "Polygon", "coordinates": polygons[0]}
        else:
            geometry = {"type": "MultiPolygon", "coordinates": polygons}
        return {
            "type": "Feature",
            "geometry": geometry,
            "properties": {"owner": self.owner.value, "area_m2": self.area_m2},
        }


def _shapely_rings(geometry) -> List[Ring]:
    if geometry.is_empty:
        return []
    if isinstance(geometry, MultiPolygon):
        polygons = list(geometry.geoms)
    elif isinstance(geometry, Polygon):
        polygons = [geometry]
    else:
        polygons = [g for g in getattr(geometry, "geoms", []) if isinstance(g, Polygon)]
    return [tuple(open_ring(p.exterior.coords)) for p in polygons if not p.is_empty]


class ConvexHullStrategy:
    """Convex hull of the established nodes."""

    name = "convex_hull"

    def __init__(self, simplify_tolerance: float = 0.0001):
        self.simplify_tolerance = simplify_tolerance

    def rings(self, nodes: Sequence[Node], include_temporary: bool = False) -> List[Ring]:
        points = [
            n.coordinates for n in nodes
            if n.is_established and (include_temporary or not n.temporary)
        ]
        if len(points) < 3:
            return []

        hull = convex_hull(points)
        if not hull:
            logger.debug("Degenerate hull", points=len(points))
            return []

        if self.simplify_tolerance > 0:
            simplified = Polygon(hull).simplify(self.simplify_tolerance, preserve_topology=True)
            candidates = _shapely_rings(simplified)
            if candidates and len(candidates[0]) >= 3:
                # Re-hull to restore the canonical vertex order
                hull = convex_hull(candidates[0]) or hull

        return [tuple(hull)]

    def observe_path(self, path: Sequence[Coordinates]) -> Optional[Ring]:
        return None


class LoopClosureStrategy:
    """Union of the loops closed while walking."""

    name = "loop_closure"

    def __init__(
        self,
        close_distance_m: float = 25.0,
        min_points: int = 8,
        check_min_points: int = 5,
        snap_distance_m: float = 15.0,
        min_area_m2: float = 50.0,
        cooldown_seconds: float = 2.0,
        captured: Sequence[Sequence[Coordinates]] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.close_distance_m = close_distance_m
        self.min_points = min_points
        self.check_min_points = check_min_points
        self.snap_distance_m = snap_distance_m
        self.min_area_m2 = min_area_m2
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.captured: List[Ring] = [tuple(open_ring(loop)) for loop in captured]

        self._segment_start = 0
        self._last_attempt: Optional[float] = None

    def reset(self) -> None:
        """Forget the current walk; captured loops are kept."""
        self._segment_start = 0

    def restore(self, loops: Sequence[Sequence[Coordinates]]) -> None:
        """Replace the captured loops with previously saved ones."""
        self.captured = [tuple(open_ring(loop)) for loop in loops if len(loop) >= 3]
        logger.info("Captured loops restored", loops=len(self.captured))

    def _closes(self, segment: Sequence[Coordinates]) -> Optional[str]:
        current = segment[-1]
        if len(segment) >= self.min_points and distance(segment[0], current) <= self.close_distance_m:
            return "start"
        for loop in self.captured:
            if any(distance(p, current) <= self.snap_distance_m for p in loop):
                return "boundary"
        return None

    def observe_path(self, path: Sequence[Coordinates]) -> Optional[Ring]:
        """
        Check the walk for a closed loop.

        Returns:
            The newly captured ring, or None
        """
        if len(path) < self._segment_start:
            self._segment_start = 0
        segment = list(path[self._segment_start:])
        if len(segment) < self.check_min_points:
            return None

        how = self._closes(segment)
        if how is None:
            return None

        now = self.clock()
        if self._last_attempt is not None and now - self._last_attempt < self.cooldown_seconds:
            logger.debug("Capture cooldown active")
            return None
        self._last_attempt = now

        if len(segment) < 4:
            return None

        area = polygon_area(close_ring(segment))
        if area < self.min_area_m2:
            # Too small: keep walking on the same segment
            logger.info("Loop too small to capture", area_m2=round(area, 1), minimum=self.min_area_m2)
            return None

        ring = tuple(open_ring(segment))
        self.captured.append(ring)
        self._segment_start = len(path)
        logger.info("Loop captured", closed_at=how, area_m2=round(area, 1), loops=len(self.captured))
        return ring

    def rings(self, nodes: Sequence[Node] = (), include_temporary: bool = False) -> List[Ring]:
        polygons = []
        for loop in self.captured:
            polygon = Polygon(loop)
            if not polygon.is_valid:
                polygon = polygon.buffer(0)
            if not polygon.is_empty:
                polygons.append(polygon)
        if not polygons:
            return []
        return _shapely_rings(unary_union(polygons))


def build_strategy(settings):
    """Territory strategy selected by ``settings.territory_strategy``."""
    name = settings.territory_strategy
    if name == ConvexHullStrategy.name:
        return ConvexHullStrategy(settings.territory_simplify_tolerance)
    if name == LoopClosureStrategy.name:
        return LoopClosureStrategy(
            close_distance_m=settings.loop_close_distance_m,
            min_points=settings.loop_min_points,
            check_min_points=settings.loop_check_min_points,
            snap_distance_m=settings.boundary_snap_distance_m,
            min_area_m2=settings.min_capture_area_m2,
            cooldown_seconds=settings.capture_cooldown_seconds,
        )
    raise ValueError(f"Unknown territory strategy: {name}")


class TerritoryComputer:
    """Caches the territory derived from the latest node set."""

    def __init__(self, strategy=None, owner: Owner = Owner.PLAYER):
        self.strategy = strategy or ConvexHullStrategy()
        self.owner = owner
        self._territory: Optional[Territory] = None
        self._nodes: Sequence[Node] = ()
        self._include_temporary = False

    @property
    def territory(self) -> Optional[Territory]:
        return self._territory

    @property
    def area_m2(self) -> float:
        return self._territory.area_m2 if self._territory else 0.0

    def recompute(self, nodes: Sequence[Node], include_temporary: bool = False) -> Optional[Territory]:
        self._nodes = tuple(nodes)
        self._include_temporary = include_temporary

        rings = self.strategy.rings(self._nodes, include_temporary)
        if not rings:
            self._territory = None
            logger.debug("No territory", strategy=self.strategy.name, nodes=len(self._nodes))
            return None

        area = sum(polygon_area(close_ring(r)) for r in rings)
        self._territory = Territory(rings=tuple(rings), owner=self.owner, area_m2=area)
        logger.info("Territory recomputed", strategy=self.strategy.name, rings=len(rings),
                    area_m2=round(area, 1))
        return self._territory

    def observe_path(self, path: Sequence[Coordinates]) -> Optional[Territory]:
        """Feed the live walk to the strategy; returns the new territory on capture."""
        if self.strategy.observe_path(path) is None:
            return None
        return self.recompute(self._nodes, self._include_temporary)


def territory_from_nodes(nodes: Sequence[Node], owner: Owner, simplify_tolerance: float = 0.0001) -> Optional[Territory]:
    """Hull territory of a node list, used for peers."""
    return TerritoryComputer(ConvexHullStrategy(simplify_tolerance), owner).recompute(nodes)
