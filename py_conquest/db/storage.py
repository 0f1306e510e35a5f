"""
Persisted storage for one player's local game state.

Four logical records are kept: the single active chain attempt (keyed,
overwritten in place, deleted on clear), the permanent node collection, the
permanent chain collection and the loops captured by walking. Temporary
(simulation) entities are filtered out before every write.

All methods are coroutines. ``SqlStorage`` runs its blocking SQLAlchemy work
in a worker thread so callers on the event loop never block on I/O.
"""

from __future__ import annotations

import asyncio
import json
from typing import Dict, List, Optional, Protocol, Sequence

import structlog

from ..core.models import (
    AttemptRecord,
    Chain,
    ChainAttempt,
    ChainRecord,
    Coordinates,
    Node,
    NodeRecord,
)
from .connection import Database
from .models import LocalChain, LocalNode, LocalState

logger = structlog.get_logger()

ATTEMPT_KEY = "chain_attempt"
TERRITORIES_KEY = "captured_territories"


class GameStorage(Protocol):
    """Storage collaborator used by a player session."""

    async def save_nodes(self, nodes: Sequence[Node]) -> int: ...

    async def load_nodes(self) -> List[Node]: ...

    async def save_chains(self, chains: Sequence[Chain]) -> int: ...

    async def load_chains(self) -> List[Chain]: ...

    async def save_attempt(self, attempt: ChainAttempt) -> None: ...

    async def load_attempt(self) -> Optional[ChainAttempt]: ...

    async def delete_attempt(self) -> None: ...

    async def save_territories(self, loops: Sequence[Sequence[Coordinates]]) -> int: ...

    async def load_territories(self) -> List[List[Coordinates]]: ...


def permanent_only(items: Sequence) -> list:
    """Drop temporary entities; they must never reach durable storage."""
    return [item for item in items if not item.temporary]


def loops_to_json(loops: Sequence[Sequence[Coordinates]]) -> str:
    return json.dumps([[[float(p[0]), float(p[1])] for p in loop] for loop in loops])


def loops_from_json(payload: str) -> List[List[Coordinates]]:
    return [[(p[0], p[1]) for p in loop] for loop in json.loads(payload)]


class SqlStorage:
    """GameStorage backed by a SQLAlchemy database."""

    def __init__(self, database: Database):
        self.database = database

    # Nodes

    def _save_nodes_sync(self, nodes: List[Node]) -> int:
        with self.database.get_session() as session:
            session.query(LocalNode).delete()
            for node in nodes:
                session.add(LocalNode(
                    id=node.id,
                    longitude=node.coordinates[0],
                    latitude=node.coordinates[1],
                    created_at=node.created_at,
                    status=node.status.value,
                    temporary=False,
                ))
        return len(nodes)

    async def save_nodes(self, nodes: Sequence[Node]) -> int:
        permanent = permanent_only(nodes)
        saved = await asyncio.to_thread(self._save_nodes_sync, permanent)
        logger.debug("Saved permanent nodes", count=saved, skipped=len(nodes) - saved)
        return saved

    def _load_nodes_sync(self) -> List[Node]:
        with self.database.get_session() as session:
            rows = session.query(LocalNode).order_by(LocalNode.created_at, LocalNode.id).all()
            return [
                Node.from_record(NodeRecord(
                    id=row.id,
                    coordinates=[row.longitude, row.latitude],
                    created_at=row.created_at,
                    status=row.status,
                    temporary=row.temporary,
                ))
                for row in rows
            ]

    async def load_nodes(self) -> List[Node]:
        nodes = await asyncio.to_thread(self._load_nodes_sync)
        logger.debug("Loaded nodes", count=len(nodes))
        return nodes

    # Chains

    def _save_chains_sync(self, chains: List[Chain]) -> int:
        with self.database.get_session() as session:
            session.query(LocalChain).delete()
            for chain in chains:
                session.add(LocalChain(
                    id=chain.id,
                    node_a_id=chain.node_a_id,
                    node_b_id=chain.node_b_id,
                    path=[list(p) for p in chain.path],
                    created_at=chain.created_at,
                    temporary=False,
                ))
        return len(chains)

    async def save_chains(self, chains: Sequence[Chain]) -> int:
        permanent = permanent_only(chains)
        saved = await asyncio.to_thread(self._save_chains_sync, permanent)
        logger.debug("Saved permanent chains", count=saved, skipped=len(chains) - saved)
        return saved

    def _load_chains_sync(self) -> List[Chain]:
        with self.database.get_session() as session:
            rows = session.query(LocalChain).order_by(LocalChain.created_at, LocalChain.id).all()
            return [
                Chain.from_record(ChainRecord(
                    id=row.id,
                    node_a_id=row.node_a_id,
                    node_b_id=row.node_b_id,
                    path=row.path,
                    created_at=row.created_at,
                    temporary=row.temporary,
                ))
                for row in rows
            ]

    async def load_chains(self) -> List[Chain]:
        chains = await asyncio.to_thread(self._load_chains_sync)
        logger.debug("Loaded chains", count=len(chains))
        return chains

    # Active attempt

    def _put_state_sync(self, key: str, value: str) -> None:
        with self.database.get_session() as session:
            row = session.get(LocalState, key)
            if row is None:
                session.add(LocalState(key=key, value=value))
            else:
                row.value = value

    def _get_state_sync(self, key: str) -> Optional[str]:
        with self.database.get_session() as session:
            row = session.get(LocalState, key)
            return row.value if row else None

    def _delete_state_sync(self, key: str) -> None:
        with self.database.get_session() as session:
            session.query(LocalState).filter(LocalState.key == key).delete()

    async def save_attempt(self, attempt: ChainAttempt) -> None:
        payload = attempt.to_record().model_dump_json(by_alias=True)
        await asyncio.to_thread(self._put_state_sync, ATTEMPT_KEY, payload)

    async def load_attempt(self) -> Optional[ChainAttempt]:
        payload = await asyncio.to_thread(self._get_state_sync, ATTEMPT_KEY)
        if payload is None:
            return None
        try:
            return ChainAttempt.from_record(AttemptRecord.model_validate_json(payload))
        except ValueError as e:
            # Unreadable record: drop it rather than failing every start-up
            logger.error("Discarding corrupt chain attempt", error=str(e))
            await self.delete_attempt()
            return None

    async def delete_attempt(self) -> None:
        await asyncio.to_thread(self._delete_state_sync, ATTEMPT_KEY)

    # Captured loops

    async def save_territories(self, loops: Sequence[Sequence[Coordinates]]) -> int:
        await asyncio.to_thread(self._put_state_sync, TERRITORIES_KEY, loops_to_json(loops))
        logger.debug("Saved captured loops", count=len(loops))
        return len(loops)

    async def load_territories(self) -> List[List[Coordinates]]:
        payload = await asyncio.to_thread(self._get_state_sync, TERRITORIES_KEY)
        if payload is None:
            return []
        try:
            return loops_from_json(payload)
        except (ValueError, TypeError, IndexError) as e:
            logger.error("Discarding corrupt captured loops", error=str(e))
            return []


class MemoryStorage:
    """
    GameStorage kept in process memory.

    Used by simulation sessions, which never persist, and by tests. Records
    are stored serialised so loads return fresh objects like a real store.
    """

    def __init__(self):
        self.records: Dict[str, str] = {}
        self.writes = 0

    async def save_nodes(self, nodes: Sequence[Node]) -> int:
        permanent = permanent_only(nodes)
        self.records["nodes"] = json.dumps([n.to_record().model_dump(by_alias=True, mode="json") for n in permanent])
        self.writes += 1
        return len(permanent)

    async def load_nodes(self) -> List[Node]:
        raw = json.loads(self.records.get("nodes", "[]"))
        return [Node.from_record(NodeRecord.model_validate(r)) for r in raw]

    async def save_chains(self, chains: Sequence[Chain]) -> int:
        permanent = permanent_only(chains)
        self.records["chains"] = json.dumps([c.to_record().model_dump(by_alias=True, mode="json") for c in permanent])
        self.writes += 1
        return len(permanent)

    async def load_chains(self) -> List[Chain]:
        raw = json.loads(self.records.get("chains", "[]"))
        return [Chain.from_record(ChainRecord.model_validate(r)) for r in raw]

    async def save_attempt(self, attempt: ChainAttempt) -> None:
        self.records[ATTEMPT_KEY] = attempt.to_record().model_dump_json(by_alias=True)
        self.writes += 1

    async def load_attempt(self) -> Optional[ChainAttempt]:
        payload = self.records.get(ATTEMPT_KEY)
        if payload is None:
            return None
        return ChainAttempt.from_record(AttemptRecord.model_validate_json(payload))

    async def delete_attempt(self) -> None:
        self.records.pop(ATTEMPT_KEY, None)

    async def save_territories(self, loops: Sequence[Sequence[Coordinates]]) -> int:
        self.records[TERRITORIES_KEY] = loops_to_json(loops)
        self.writes += 1
        return len(loops)

    async def load_territories(self) -> List[List[Coordinates]]:
        return loops_from_json(self.records.get(TERRITORIES_KEY, "[]"))
