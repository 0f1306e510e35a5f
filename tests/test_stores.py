"""Tests for the node and chain stores."""

import datetime

import pytest

from py_conquest.core.models import Chain, NodeStatus
from py_conquest.core.stores import ChainStore, NodeStore
from conftest import make_node

DAY_MS = 24 * 60 * 60 * 1000
# 2024-03-10T12:00:00Z
NOON = 1710072000000


def make_chain(chain_id, a, b, created_at=NOON, temporary=False):
    return Chain(id=chain_id, node_a_id=a, node_b_id=b, path=((0, 0), (1, 1)),
                 created_at=created_at, temporary=temporary)


class TestNodeStore:
    """Test node collection behaviour."""

    def test_add_and_get(self):
        """Test adding and looking up a node."""
        store = NodeStore()
        node = make_node("a", (0, 0))
        store.add(node)
        assert store.get("a") == node
        assert len(store) == 1

    def test_duplicate_add_rejected(self):
        """Test adding a node id twice."""
        store = NodeStore([make_node("a", (0, 0))])
        with pytest.raises(ValueError):
            store.add(make_node("a", (1, 1)))

    def test_snapshot_is_not_affected_by_later_changes(self):
        """Test that snapshots are immutable."""
        store = NodeStore([make_node("a", (0, 0))])
        before = store.snapshot()
        store.add(make_node("b", (1, 1)))
        store.remove("a")
        assert [n.id for n in before] == ["a"]
        assert [n.id for n in store.snapshot()] == ["b"]

    def test_update(self):
        """Test replacing a stored node."""
        store = NodeStore([make_node("a", (0, 0), status=NodeStatus.PENDING)])
        store.update(store.get("a").with_status(NodeStatus.ESTABLISHED))
        assert store.get("a").is_established
        with pytest.raises(KeyError):
            store.update(make_node("missing", (0, 0)))

    def test_remove_missing_returns_none(self):
        """Test removing an unknown id."""
        assert NodeStore().remove("nope") is None

    def test_permanent_and_temporary(self):
        """Test splitting nodes by permanence."""
        store = NodeStore([make_node("p", (0, 0)), make_node("t", (1, 1), temporary=True)])
        assert [n.id for n in store.permanent()] == ["p"]
        assert [n.id for n in store.temporary()] == ["t"]

    def test_status_queries(self):
        """Test status filters and counts."""
        store = NodeStore([
            make_node("a", (0, 0)),
            make_node("b", (1, 1), status=NodeStatus.PENDING),
            make_node("c", (2, 2)),
        ])
        assert [n.id for n in store.established()] == ["a", "c"]
        assert store.count_by_status() == {"established": 2, "pending": 1}
        assert store.stats()["total"] == 3

    def test_listener_receives_new_snapshot(self):
        """Test change notifications."""
        store = NodeStore()
        seen = []
        unsubscribe = store.subscribe(lambda items: seen.append(len(items)))
        store.add(make_node("a", (0, 0)))
        store.add(make_node("b", (0, 0)))
        unsubscribe()
        store.remove("a")
        assert seen == [1, 2]


class TestChainStore:
    """Test chain collection behaviour."""

    def setup_method(self):
        self.store = ChainStore([
            make_chain("c1", "a", "b"),
            make_chain("c2", "b", "c"),
        ])

    def test_for_node(self):
        """Test chains touching a node."""
        assert [c.id for c in self.store.for_node("b")] == ["c1", "c2"]
        assert self.store.connected_node_ids("b") == ["a", "c"]

    def test_between_ignores_direction(self):
        """Test chain lookup in both directions."""
        assert self.store.between("b", "a").id == "c1"
        assert self.store.exists_between("c", "b")
        assert not self.store.exists_between("a", "c")

    def test_prune_orphans(self):
        """Test dropping chains with missing nodes."""
        removed = self.store.prune_orphans({"a", "b"})
        assert [c.id for c in removed] == ["c2"]
        assert [c.id for c in self.store] == ["c1"]

    def test_created_on(self):
        """Test chains created on a given day."""
        store = ChainStore([
            make_chain("today", "a", "b", created_at=NOON),
            make_chain("yesterday", "a", "b", created_at=NOON - DAY_MS),
            make_chain("sim", "a", "b", created_at=NOON, temporary=True),
        ])
        day = datetime.date(2024, 3, 10)
        assert [c.id for c in store.created_on(day)] == ["today"]
        assert [c.id for c in store.created_on(day, include_temporary=True)] == ["today", "sim"]

    def test_created_on_respects_timezone(self):
        """Test day boundaries in a local timezone."""
        # 23:30 UTC on the 9th is already the 10th in Tokyo
        late = NOON - DAY_MS + int(11.5 * 60 * 60 * 1000)
        store = ChainStore([make_chain("late", "a", "b", created_at=late)])
        assert store.created_on(datetime.date(2024, 3, 9), "UTC")
        assert store.created_on(datetime.date(2024, 3, 10), "Asia/Tokyo")
