"""
Authoritative node and chain collections for one player session.

Both stores keep their items in a tuple that is replaced on every change
(copy-on-write), so a snapshot handed out earlier never changes under the
reader. Listeners registered with ``subscribe`` run after each change with
the new snapshot.
"""

import datetime
from collections import Counter
from typing import Callable, Dict, Generic, Iterable, List, Optional, Set, Tuple, TypeVar
from zoneinfo import ZoneInfo

import structlog

from .models import Chain, Node, NodeStatus

logger = structlog.get_logger()

T = TypeVar("T", Node, Chain)


class _Store(Generic[T]):
    """Shared copy-on-write plumbing for the node and chain stores."""

    kind = "item"

    def __init__(self, items: Iterable[T] = ()):
        self._items: Tuple[T, ...] = tuple(items)
        self._listeners: List[Callable[[Tuple[T, ...]], None]] = []

    def subscribe(self, listener: Callable[[Tuple[T, ...]], None]) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, items: Iterable[T]) -> None:
        self._items = tuple(items)
        for listener in list(self._listeners):
            listener(self._items)

    def snapshot(self) -> Tuple[T, ...]:
        return self._items

    def get(self, item_id: str) -> Optional[T]:
        return next((item for item in self._items if item.id == item_id), None)

    def add(self, item: T) -> None:
        if self.get(item.id) is not None:
            raise ValueError(f"{self.kind} {item.id} already exists")
        self._commit(self._items + (item,))

    def remove(self, item_id: str) -> Optional[T]:
        removed = self.get(item_id)
        if removed is not None:
            self._commit(item for item in self._items if item.id != item_id)
        return removed

    def update(self, updated: T) -> None:
        if self.get(updated.id) is None:
            raise KeyError(f"{self.kind} {updated.id} not found")
        self._commit(updated if item.id == updated.id else item for item in self._items)

    def replace_all(self, items: Iterable[T]) -> None:
        self._commit(items)

    def permanent(self) -> List[T]:
        return [item for item in self._items if not item.temporary]

    def temporary(self) -> List[T]:
        return [item for item in self._items if item.temporary]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)


class NodeStore(_Store[Node]):
    """Owns the player's node collection."""

    kind = "Node"

    def by_status(self, status: NodeStatus) -> List[Node]:
        return [n for n in self._items if n.status is status]

    def established(self) -> List[Node]:
        return self.by_status(NodeStatus.ESTABLISHED)

    def ids(self) -> Set[str]:
        return {n.id for n in self._items}

    def count_by_status(self) -> Dict[str, int]:
        counts = Counter(n.status.value for n in self._items)
        return dict(counts)

    def stats(self) -> Dict[str, object]:
        return {
            "total": len(self._items),
            "permanent": len(self.permanent()),
            "temporary": len(self.temporary()),
            "by_status": self.count_by_status(),
        }


class ChainStore(_Store[Chain]):
    """Owns the player's chain collection."""

    kind = "Chain"

    def for_node(self, node_id: str) -> List[Chain]:
        return [c for c in self._items if c.connects(node_id)]

    def between(self, node_a_id: str, node_b_id: str) -> Optional[Chain]:
        for chain in self._items:
            if {chain.node_a_id, chain.node_b_id} == {node_a_id, node_b_id}:
                return chain
        return None

    def exists_between(self, node_a_id: str, node_b_id: str) -> bool:
        return self.between(node_a_id, node_b_id) is not None

    def connected_node_ids(self, node_id: str) -> List[str]:
        return [c.other_end(node_id) for c in self.for_node(node_id)]

    def prune_orphans(self, node_ids: Set[str]) -> List[Chain]:
        """Drop chains referencing nodes outside ``node_ids``; returns the dropped chains."""
        orphans = [c for c in self._items if c.node_a_id not in node_ids or c.node_b_id not in node_ids]
        if orphans:
            logger.warning("Pruning chains with missing nodes", count=len(orphans),
                           chain_ids=[c.id for c in orphans])
            orphan_ids = {c.id for c in orphans}
            self._commit(c for c in self._items if c.id not in orphan_ids)
        return orphans

    def created_on(self, day: datetime.date, timezone: str = "UTC", include_temporary: bool = False) -> List[Chain]:
        """Chains created on a calendar day in ``timezone``."""
        tz = ZoneInfo(timezone)
        return [
            c for c in self._items
            if (include_temporary or not c.temporary)
            and datetime.datetime.fromtimestamp(c.created_at / 1000, tz).date() == day
        ]
