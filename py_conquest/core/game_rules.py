"""Rules that gate when a player may start and finish a walk."""

from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from .geo_math import distance
from .models import Chain, Node
from .spatial_index import NodeSpatialIndex

logger = structlog.get_logger()


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a rule check. Rejections carry a human-readable reason."""
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = ValidationResult(True)


@dataclass
class GameRules:
    """Pure decision functions parameterised by the tunable game settings."""

    influence_radius_km: float = 0.5
    max_chains_per_day: int = 2
    min_path_length: int = 2

    @classmethod
    def from_settings(cls, settings) -> "GameRules":
        return cls(
            influence_radius_km=settings.influence_radius_km,
            max_chains_per_day=settings.max_chains_per_day,
            min_path_length=settings.min_path_length,
        )

    def can_create_chain_today(self, count_today: int, is_simulation: bool) -> bool:
        """The daily quota only governs permanent progress."""
        if is_simulation:
            return True

        allowed = count_today < self.max_chains_per_day
        if not allowed:
            logger.info("Daily limit reached", count_today=count_today, limit=self.max_chains_per_day)
        return allowed

    def is_inside_sphere_of_influence(
        self,
        coordinates: Sequence[float],
        nodes: Sequence[Node],
        index: Optional[NodeSpatialIndex] = None,
    ) -> bool:
        """
        Whether ``coordinates`` lies within the influence radius of any of ``nodes``.

        When an index is given, its bounding-box candidates are used instead of
        scanning every node; candidates outside ``nodes`` are ignored so the
        index may hold a larger pool than the one being checked.
        """
        if not nodes:
            return False

        radius_m = self.influence_radius_km * 1000
        if index is not None:
            pool = {n.id for n in nodes}
            candidates = [n for n in index.search_radius(coordinates) if n.id in pool]
        else:
            candidates = nodes

        return any(distance(coordinates, n.coordinates) <= radius_m for n in candidates)

    def can_start_chain(
        self,
        coordinates: Sequence[float],
        nodes: Sequence[Node],
        chains: Sequence[Chain],
        is_simulation: bool,
        index: Optional[NodeSpatialIndex] = None,
    ) -> ValidationResult:
        """
        Check the sphere-of-influence rule for a new walk.

        Rules:
        1. The very first chain may start anywhere.
        2. Later walks must start inside the sphere of an existing node.
        3. Permanent nodes gate permanent walks, temporary nodes gate
           simulation walks; an empty pool passes.
        """
        if not chains:
            logger.debug("First chain, allowed anywhere")
            return ALLOWED

        pool = [n for n in nodes if n.temporary == is_simulation]
        logger.debug("Checking sphere rules",
                     pool="temporary" if is_simulation else "permanent", nodes=len(pool))

        if not pool:
            return ALLOWED

        if not self.is_inside_sphere_of_influence(coordinates, pool, index):
            return ValidationResult(
                False,
                f"You must be inside a sphere of influence "
                f"({self.influence_radius_km:g} km around one of your nodes) to start a walk",
            )

        return ALLOWED

    def is_valid_path(self, path: Sequence[Sequence[float]]) -> ValidationResult:
        """Reject paths too short to represent a real walk."""
        if len(path) < self.min_path_length:
            return ValidationResult(
                False,
                f"Path too short: {len(path)} points (minimum {self.min_path_length})",
            )
        return ALLOWED
