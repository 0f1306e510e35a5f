"""
Shared multiplayer backend.

Holds every player's uploaded nodes and chains plus their public profiles.
Writes are published on an in-process ``ChangeFeed`` so subscribers (the
conflict detector) can schedule a re-fetch.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set

import structlog

from ..core.geo_math import distance
from ..core.models import (
    NodeRecord,
    ChainRecord,
    PlayerChainRecord,
    PlayerNodeRecord,
    ProfileRecord,
    reduce_path,
)
from ..utils.timers import now_ms
from .connection import Database
from .models import PlayerChain, PlayerNode, Profile

logger = structlog.get_logger()


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    type: ChangeType
    table: str
    user_id: str
    timestamp: int = field(default_factory=now_ms)


class ChangeFeed:
    """Fan-out of change events to in-process subscribers."""

    def __init__(self):
        self._listeners: List[Callable[[ChangeEvent], None]] = []

    def subscribe(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        logger.debug("Change published", type=event.type.value, table=event.table, user_id=event.user_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Change listener failed", error=str(e), table=event.table)


class SyncBackend(Protocol):
    async def existing_node_ids(self, user_id: str) -> Set[str]: ...

    async def insert_nodes(self, user_id: str, records: Sequence[NodeRecord]) -> int: ...

    async def existing_chain_ids(self, user_id: str) -> Set[str]: ...

    async def insert_chains(self, user_id: str, records: Sequence[ChainRecord]) -> int: ...

    async def fetch_profiles(self) -> List[ProfileRecord]: ...

    async def fetch_nodes(self, exclude_user: Optional[str] = None) -> List[PlayerNodeRecord]: ...

    async def fetch_chains(self, exclude_user: Optional[str] = None) -> List[PlayerChainRecord]: ...

    async def upsert_profile(self, profile: ProfileRecord) -> ProfileRecord: ...

    async def update_territory_stats(self, user_id: str, area_km2: float) -> None: ...

    async def delete_player_data(self, user_id: str) -> Dict[str, int]: ...

    def subscribe(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]: ...


class DatabaseBackend:
    """SyncBackend over the SQLAlchemy backend tables."""

    def __init__(self, database: Database, feed: Optional[ChangeFeed] = None):
        self.database = database
        self.feed = feed or ChangeFeed()

    def subscribe(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        return self.feed.subscribe(callback)

    @staticmethod
    def _ensure_profile(session, user_id: str) -> None:
        if session.get(Profile, user_id) is None:
            session.add(Profile(user_id=user_id))
            session.flush()

    # Nodes

    def _existing_node_ids_sync(self, user_id: str) -> Set[str]:
        with self.database.get_session() as session:
            rows = session.query(PlayerNode.id).filter(PlayerNode.user_id == user_id).all()
            return {row.id for row in rows}

    async def existing_node_ids(self, user_id: str) -> Set[str]:
        return await asyncio.to_thread(self._existing_node_ids_sync, user_id)

    def _insert_nodes_sync(self, user_id: str, records: Sequence[NodeRecord]) -> int:
        with self.database.get_session() as session:
            self._ensure_profile(session, user_id)
            existing = {
                row.id for row in
                session.query(PlayerNode.id).filter(PlayerNode.id.in_([r.id for r in records])).all()
            }
            inserted = 0
            for record in records:
                if record.id in existing:
                    continue
                session.add(PlayerNode(
                    id=record.id,
                    user_id=user_id,
                    longitude=record.coordinates[0],
                    latitude=record.coordinates[1],
                    created_at=record.created_at,
                ))
                existing.add(record.id)
                inserted += 1
            return inserted

    async def insert_nodes(self, user_id: str, records: Sequence[NodeRecord]) -> int:
        if not records:
            return 0
        inserted = await asyncio.to_thread(self._insert_nodes_sync, user_id, list(records))
        logger.info("Nodes uploaded", user_id=user_id, inserted=inserted, received=len(records))
        if inserted:
            self.feed.publish(ChangeEvent(ChangeType.INSERT, "nodes", user_id))
        return inserted

    def _fetch_nodes_sync(self, exclude_user: Optional[str]) -> List[PlayerNodeRecord]:
        with self.database.get_session() as session:
            query = session.query(PlayerNode)
            if exclude_user:
                query = query.filter(PlayerNode.user_id != exclude_user)
            return [
                PlayerNodeRecord(
                    id=row.id,
                    user_id=row.user_id,
                    coordinates=[row.longitude, row.latitude],
                    created_at=row.created_at,
                )
                for row in query.order_by(PlayerNode.created_at, PlayerNode.id).all()
            ]

    async def fetch_nodes(self, exclude_user: Optional[str] = None) -> List[PlayerNodeRecord]:
        return await asyncio.to_thread(self._fetch_nodes_sync, exclude_user)

    # Chains

    def _existing_chain_ids_sync(self, user_id: str) -> Set[str]:
        with self.database.get_session() as session:
            rows = session.query(PlayerChain.id).filter(PlayerChain.user_id == user_id).all()
            return {row.id for row in rows}

    async def existing_chain_ids(self, user_id: str) -> Set[str]:
        return await asyncio.to_thread(self._existing_chain_ids_sync, user_id)

    def _insert_chains_sync(self, user_id: str, records: Sequence[ChainRecord]) -> int:
        with self.database.get_session() as session:
            self._ensure_profile(session, user_id)
            existing = {
                row.id for row in
                session.query(PlayerChain.id).filter(PlayerChain.id.in_([r.id for r in records])).all()
            }
            inserted = 0
            for record in records:
                if record.id in existing:
                    continue
                path = [list(p) for p in reduce_path(record.path)]
                length_km = distance(path[0], path[-1]) / 1000 if len(path) >= 2 else 0.0
                session.add(PlayerChain(
                    id=record.id,
                    user_id=user_id,
                    node_a_id=record.node_a_id,
                    node_b_id=record.node_b_id,
                    path=path,
                    distance_km=length_km,
                    created_at=record.created_at,
                ))
                existing.add(record.id)
                inserted += 1
            return inserted

    async def insert_chains(self, user_id: str, records: Sequence[ChainRecord]) -> int:
        if not records:
            return 0
        inserted = await asyncio.to_thread(self._insert_chains_sync, user_id, list(records))
        logger.info("Chains uploaded", user_id=user_id, inserted=inserted, received=len(records))
        if inserted:
            self.feed.publish(ChangeEvent(ChangeType.INSERT, "chains", user_id))
        return inserted

    def _fetch_chains_sync(self, exclude_user: Optional[str]) -> List[PlayerChainRecord]:
        with self.database.get_session() as session:
            query = session.query(PlayerChain)
            if exclude_user:
                query = query.filter(PlayerChain.user_id != exclude_user)
            return [
                PlayerChainRecord(
                    id=row.id,
                    user_id=row.user_id,
                    node_a_id=row.node_a_id,
                    node_b_id=row.node_b_id,
                    path=row.path,
                    distance_km=row.distance_km,
                    created_at=row.created_at,
                )
                for row in query.order_by(PlayerChain.created_at, PlayerChain.id).all()
            ]

    async def fetch_chains(self, exclude_user: Optional[str] = None) -> List[PlayerChainRecord]:
        return await asyncio.to_thread(self._fetch_chains_sync, exclude_user)

    # Profiles

    def _fetch_profiles_sync(self) -> List[ProfileRecord]:
        with self.database.get_session() as session:
            return [
                ProfileRecord(
                    user_id=row.user_id,
                    username=row.username,
                    display_name=row.display_name,
                    avatar_url=row.avatar_url,
                    territory_area_km2=row.territory_area_km2,
                )
                for row in session.query(Profile).order_by(Profile.user_id).all()
            ]

    async def fetch_profiles(self) -> List[ProfileRecord]:
        return await asyncio.to_thread(self._fetch_profiles_sync)

    def _upsert_profile_sync(self, profile: ProfileRecord) -> bool:
        with self.database.get_session() as session:
            row = session.get(Profile, profile.user_id)
            created = row is None
            if created:
                row = Profile(user_id=profile.user_id)
                session.add(row)
            row.username = profile.username
            row.display_name = profile.display_name
            row.avatar_url = profile.avatar_url
            return created

    async def upsert_profile(self, profile: ProfileRecord) -> ProfileRecord:
        created = await asyncio.to_thread(self._upsert_profile_sync, profile)
        change = ChangeType.INSERT if created else ChangeType.UPDATE
        self.feed.publish(ChangeEvent(change, "user_profiles", profile.user_id))
        return profile

    def _update_territory_stats_sync(self, user_id: str, area_km2: float) -> None:
        with self.database.get_session() as session:
            self._ensure_profile(session, user_id)
            session.get(Profile, user_id).territory_area_km2 = area_km2

    async def update_territory_stats(self, user_id: str, area_km2: float) -> None:
        """Store the player's current territory area on their profile."""
        await asyncio.to_thread(self._update_territory_stats_sync, user_id, area_km2)
        logger.info("Territory stats updated", user_id=user_id, area_km2=area_km2)
        self.feed.publish(ChangeEvent(ChangeType.UPDATE, "user_profiles", user_id))

    def _delete_player_data_sync(self, user_id: str) -> Dict[str, int]:
        with self.database.get_session() as session:
            chains = session.query(PlayerChain).filter(PlayerChain.user_id == user_id).delete()
            nodes = session.query(PlayerNode).filter(PlayerNode.user_id == user_id).delete()
            return {"nodes": nodes, "chains": chains}

    async def delete_player_data(self, user_id: str) -> Dict[str, int]:
        """Remove a player's nodes and chains; the profile is kept."""
        deleted = await asyncio.to_thread(self._delete_player_data_sync, user_id)
        logger.info("Player data deleted", user_id=user_id, **deleted)
        if deleted["nodes"] or deleted["chains"]:
            self.feed.publish(ChangeEvent(ChangeType.DELETE, "nodes", user_id))
        return deleted
