"""Tests for the walk gating rules."""

import pytest

from py_conquest.config import Settings
from py_conquest.core.game_rules import GameRules
from py_conquest.core.models import Chain
from py_conquest.core.spatial_index import NodeSpatialIndex
from conftest import make_node, offset


@pytest.fixture
def rules():
    return GameRules(influence_radius_km=0.5, max_chains_per_day=2, min_path_length=2)


def chain_between(a, b, temporary=False):
    return Chain(id=f"{a}-{b}", node_a_id=a, node_b_id=b, path=((0, 0), (0, 0)),
                 created_at=0, temporary=temporary)


class TestCanStartChain:
    """Test the sphere-of-influence rule."""

    def test_first_chain_allowed_anywhere(self, rules):
        """Test that a player without chains may start anywhere."""
        result = rules.can_start_chain([0, 0], [], [], False)
        assert result.allowed
        assert result.reason is None

    def test_far_from_only_node_rejected(self, rules):
        """Test starting outside every sphere of influence."""
        nodes = [make_node("n1", (0, 0))]
        chains = [chain_between("n1", "n1")]
        result = rules.can_start_chain([0, 0.01], nodes, chains, False)
        assert not result.allowed
        assert "sphere of influence" in result.reason

    def test_inside_sphere_allowed(self, rules):
        """Test starting inside a sphere of influence."""
        nodes = [make_node("n1", (0, 0))]
        chains = [chain_between("n1", "n1")]
        assert rules.can_start_chain(offset(0, 400), nodes, chains, False)

    def test_index_gives_same_answer(self, rules):
        """Test that the spatial index agrees with a linear scan."""
        nodes = [make_node("n1", (0, 0)), make_node("n2", offset(3000, 0))]
        chains = [chain_between("n1", "n2")]
        index = NodeSpatialIndex(0.5)
        index.build_index(nodes)
        for point in (offset(0, 400), offset(0, 600), offset(3000, 450), offset(1500, 0)):
            assert bool(rules.can_start_chain(point, nodes, chains, False, index)) == \
                bool(rules.can_start_chain(point, nodes, chains, False))

    def test_simulation_uses_temporary_pool(self, rules):
        """Test that simulations only consider temporary nodes."""
        nodes = [make_node("perm", (0, 0)), make_node("temp", (1, 1), temporary=True)]
        chains = [chain_between("perm", "temp")]
        # Near the permanent node, but only temporary nodes count in simulation
        assert not rules.can_start_chain(offset(0, 100), nodes, chains, True)
        assert rules.can_start_chain((1, 1), nodes, chains, True)

    def test_empty_pool_allowed(self, rules):
        """Test starting with an empty node pool."""
        nodes = [make_node("perm", (0, 0))]
        chains = [chain_between("perm", "perm")]
        assert rules.can_start_chain((50, 50), nodes, chains, True)

    def test_index_candidates_outside_pool_ignored(self, rules):
        """Test that index hits from the other pool are ignored."""
        perm = make_node("perm", (0, 0))
        temp = make_node("temp", (2, 2), temporary=True)
        index = NodeSpatialIndex(0.5)
        index.build_index([perm, temp])
        assert not rules.is_inside_sphere_of_influence(offset(0, 100), [temp], index)


class TestDailyQuota:
    """Test the daily chain limit."""

    def test_under_limit(self, rules):
        """Test the daily quota below its limit."""
        assert rules.can_create_chain_today(0, False)
        assert rules.can_create_chain_today(1, False)

    def test_limit_reached(self, rules):
        """Test the daily quota at its limit."""
        assert not rules.can_create_chain_today(2, False)

    def test_simulation_ignores_limit(self, rules):
        """Test that simulations have no daily quota."""
        assert rules.can_create_chain_today(100, True)


class TestPathValidation:
    """Test minimum path length."""

    def test_too_short(self, rules):
        """Test rejection of a one-point path."""
        result = rules.is_valid_path([(0, 0)])
        assert not result
        assert "too short" in result.reason

    def test_long_enough(self, rules):
        """Test acceptance of a minimal path."""
        assert rules.is_valid_path([(0, 0), (0, 0.001)])


def test_rules_from_settings():
    """Test building rules from settings."""
    rules = GameRules.from_settings(Settings(influence_radius_km=1.5, max_chains_per_day=5))
    assert rules.influence_radius_km == 1.5
    assert rules.max_chains_per_day == 5
    assert rules.min_path_length == 2
