"""Tests for territory derivation."""

import pytest

from py_conquest.config import Settings
from py_conquest.core.geo_math import convex_hull
from py_conquest.core.models import NodeStatus
from py_conquest.core.territory import (
    ConvexHullStrategy,
    LoopClosureStrategy,
    Owner,
    TerritoryComputer,
    build_strategy,
)
from conftest import make_node, offset


def square_nodes(side_m, origin=(0.0, 0.0), prefix="n"):
    corners = [offset(0, 0, origin), offset(side_m, 0, origin), offset(side_m, side_m, origin), offset(0, side_m, origin)]
    return [make_node(f"{prefix}{i}", c) for i, c in enumerate(corners)]


class TestConvexHullTerritory:
    """Test the hull strategy."""

    def test_fewer_than_three_nodes(self):
        """Test that two nodes make no territory."""
        computer = TerritoryComputer(ConvexHullStrategy())
        assert computer.recompute(square_nodes(200)[:2]) is None
        assert computer.territory is None
        assert computer.area_m2 == 0.0

    def test_square_area(self):
        """Test the hull of four corner nodes."""
        territory = TerritoryComputer(ConvexHullStrategy()).recompute(square_nodes(200))
        assert territory.area_m2 == pytest.approx(40000, rel=0.01)
        assert territory.owner is Owner.PLAYER
        assert len(territory.ring) == 4

    def test_pending_nodes_ignored(self):
        """Test that pending nodes do not count."""
        nodes = square_nodes(200)
        nodes[3] = nodes[3].with_status(NodeStatus.PENDING)
        territory = TerritoryComputer(ConvexHullStrategy()).recompute(nodes)
        assert territory.area_m2 == pytest.approx(20000, rel=0.01)

    def test_temporary_nodes_only_when_included(self):
        """Test the temporary node switch."""
        nodes = square_nodes(200)
        nodes[3] = make_node("t", nodes[3].coordinates, temporary=True)
        computer = TerritoryComputer(ConvexHullStrategy())
        assert computer.recompute(nodes).area_m2 == pytest.approx(20000, rel=0.01)
        assert computer.recompute(nodes, include_temporary=True).area_m2 == pytest.approx(40000, rel=0.01)

    def test_interior_nodes_do_not_change_hull(self):
        """Test that interior nodes leave the hull unchanged."""
        nodes = square_nodes(200) + [make_node("inner", offset(100, 100))]
        territory = TerritoryComputer(ConvexHullStrategy()).recompute(nodes)
        assert territory.area_m2 == pytest.approx(40000, rel=0.01)

    def test_hull_is_stable(self):
        """Test that recomputing gives the same ring."""
        territory = TerritoryComputer(ConvexHullStrategy()).recompute(square_nodes(500))
        assert convex_hull(territory.ring) == list(territory.ring)

    def test_contains_and_bounds(self):
        """Test point containment and bounds."""
        territory = TerritoryComputer(ConvexHullStrategy()).recompute(square_nodes(200))
        assert territory.contains(offset(100, 100))
        assert not territory.contains(offset(300, 100))
        assert territory.bounds.max_lat == pytest.approx(offset(0, 200)[1])

    def test_geojson(self):
        """Test the GeoJSON export."""
        feature = TerritoryComputer(ConvexHullStrategy()).recompute(square_nodes(200)).to_geojson()
        assert feature["geometry"]["type"] == "Polygon"
        ring = feature["geometry"]["coordinates"][0]
        assert ring[0] == ring[-1]
        assert feature["properties"]["owner"] == "player"


class TestLoopClosureTerritory:
    """Test the walked-loop strategy."""

    def setup_method(self):
        self.now = 0.0
        self.strategy = LoopClosureStrategy(clock=lambda: self.now)
        s = 0.0005  # ~56 m
        self.side = s
        self.loop = [(0, 0), (s / 2, 0), (s, 0), (s, s / 2), (s, s), (s / 2, s), (0, s), (0, s / 2), (0, s * 0.1)]

    def test_loop_closing_at_start_is_captured(self):
        """Test a loop that returns to its start."""
        ring = self.strategy.observe_path(self.loop)
        assert ring is not None
        assert len(self.strategy.captured) == 1

    def test_open_path_not_captured(self):
        """Test that an open path captures nothing."""
        assert self.strategy.observe_path(self.loop[:6]) is None

    def test_too_few_points_for_start_closure(self):
        """Test that a short loop cannot close at its start."""
        s = self.side
        short = [(0, 0), (s, 0), (s, s), (0, s), (0, s * 0.1)]
        assert self.strategy.observe_path(short) is None

    def test_tiny_loop_rejected(self):
        """Test the minimum capture area."""
        d = 0.00001  # ~1 m
        tiny = [(0, 0), (d, 0), (d, d), (d / 2, d), (0, d), (0, d / 2), (d / 4, 0), (0, d / 10)]
        assert self.strategy.observe_path(tiny) is None
        assert self.strategy.captured == []

    def test_boundary_snap_and_cooldown(self):
        """Test closing on a captured boundary and the capture cooldown."""
        s = self.side
        self.strategy.observe_path(self.loop)
        self.strategy.reset()

        second = [(2 * s, 0), (3 * s, 0), (3 * s, s), (2 * s, s), (s + 0.0001, s)]
        # Within the cooldown window nothing is captured
        self.now = 1.0
        assert self.strategy.observe_path(second) is None

        self.now = 5.0
        assert self.strategy.observe_path(second) is not None
        assert len(self.strategy.captured) == 2

    def test_territory_is_union_of_loops(self):
        """Test that separate loops form a multi-ring territory."""
        s = self.side
        computer = TerritoryComputer(self.strategy)
        first = computer.observe_path(self.loop)
        assert first is not None
        single_area = first.area_m2

        self.strategy.reset()
        self.now = 10.0
        second = [(2 * s, 0), (3 * s, 0), (3 * s, s), (2 * s, s), (s + 0.0001, s)]
        territory = computer.observe_path(second)
        assert len(territory.rings) == 2
        assert territory.area_m2 > single_area
        assert territory.to_geojson()["geometry"]["type"] == "MultiPolygon"

    def test_overlapping_loops_are_merged(self):
        """Test that overlapping loops merge into one ring."""
        strategy = LoopClosureStrategy(captured=[self.loop, [(x + self.side / 2, y) for x, y in self.loop]])
        rings = strategy.rings()
        assert len(rings) == 1

    def test_restore_replaces_captured_loops(self):
        """Test that restored loops replace the captured set."""
        self.strategy.observe_path(self.loop)
        self.strategy.restore([self.loop + [self.loop[0]], [(0, 0), (1, 1)]])
        assert self.strategy.captured == [tuple((float(x), float(y)) for x, y in self.loop)]
        assert len(self.strategy.rings()) == 1


def test_build_strategy_from_settings():
    """Test strategy selection from settings."""
    assert isinstance(build_strategy(Settings(territory_strategy="convex_hull")), ConvexHullStrategy)
    assert isinstance(build_strategy(Settings(territory_strategy="loop_closure")), LoopClosureStrategy)
    with pytest.raises(ValueError):
        build_strategy(Settings(territory_strategy="voronoi"))
