"""
Spatial index over nodes.

Each node is stored as the bounding box of its sphere of influence, so a
box query around a point returns every node whose sphere might contain it.
Results are candidates only: callers needing exact distances post-filter
with ``geo_math.distance``.

The index is backed by a shapely STRtree. STR trees are bulk-loaded and
immutable, so incremental changes mark the tree stale and it is rebuilt on
the next query.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from shapely import STRtree
from shapely.geometry import Polygon, box

from .geo_math import Bounds, distance, radius_bounds
from .models import Node

logger = structlog.get_logger()


class NodeSpatialIndex:
    """R-tree style index of nodes sized by the influence radius."""

    def __init__(self, radius_km: float = 0.5):
        if radius_km <= 0:
            raise ValueError(f"Influence radius must be positive, got {radius_km}")
        self.radius_km = radius_km
        self._entries: Dict[str, Tuple[Node, Polygon]] = {}
        self._tree: Optional[STRtree] = None
        self._tree_nodes: List[Node] = []
        self._stale = False
        logger.debug("Spatial index initialized", radius_km=radius_km)

    def _node_box(self, node: Node) -> Polygon:
        b = radius_bounds(node.coordinates, self.radius_km)
        return box(b.min_lon, b.min_lat, b.max_lon, b.max_lat)

    def _ensure_tree(self) -> Optional[STRtree]:
        if self._stale or self._tree is None:
            if self._entries:
                self._tree_nodes = [node for node, _ in self._entries.values()]
                self._tree = STRtree([geom for _, geom in self._entries.values()])
            else:
                self._tree_nodes = []
                self._tree = None
            self._stale = False
        return self._tree

    def build_index(self, nodes: Sequence[Node]) -> None:
        """Replace the index contents with ``nodes``."""
        self._entries = {node.id: (node, self._node_box(node)) for node in nodes}
        self._stale = True
        logger.debug("Spatial index built", size=len(self._entries))

    def insert(self, node: Node) -> None:
        """Add a node, replacing any entry with the same id."""
        self._entries[node.id] = (node, self._node_box(node))
        self._stale = True

    def remove(self, node: Node) -> None:
        """Remove a node, matched by id."""
        if self._entries.pop(node.id, None) is not None:
            self._stale = True

    def update(self, old: Node, new: Node) -> None:
        """Replace ``old`` with ``new``."""
        self.remove(old)
        self.insert(new)

    def search_bbox(self, bounds: Bounds) -> List[Node]:
        """Nodes whose influence box intersects ``bounds``."""
        tree = self._ensure_tree()
        if tree is None:
            return []
        hits = tree.query(box(bounds.min_lon, bounds.min_lat, bounds.max_lon, bounds.max_lat))
        return [self._tree_nodes[i] for i in sorted(int(i) for i in hits)]

    def search_radius(self, coordinates: Sequence[float]) -> List[Node]:
        """Candidate nodes within the influence radius of a point (approximate)."""
        return self.search_bbox(radius_bounds(coordinates, self.radius_km))

    def find_nearest(self, coordinates: Sequence[float], k: int = 1) -> List[Node]:
        """Up to ``k`` candidates from ``search_radius`` ranked by exact distance."""
        if k <= 0:
            return []
        candidates = self.search_radius(coordinates)
        candidates.sort(key=lambda n: distance(n.coordinates, coordinates))
        return candidates[:k]

    def clear(self) -> None:
        self._entries = {}
        self._tree = None
        self._tree_nodes = []
        self._stale = False

    def size(self) -> int:
        return len(self._entries)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._entries

    def stats(self) -> Dict[str, float]:
        return {"size": self.size(), "radius_km": self.radius_km}
