"""Domain models for nodes, chains and in-progress walks.

Nodes and chains are immutable value objects; stores replace them instead of
mutating them in place. The ``*Record`` pydantic models describe the wire
format used by the storage and sync collaborators.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

Coordinates = Tuple[float, float]  # (longitude, latitude) in degrees
Path = List[Coordinates]


def new_id() -> str:
    """Generate an opaque unique identifier."""
    return str(uuid.uuid4())


def as_coordinates(value: Sequence[float]) -> Coordinates:
    """Normalise a ``[lon, lat]`` pair into a float tuple."""
    if len(value) < 2:
        raise ValueError(f"Coordinates need longitude and latitude, got {value!r}")
    return (float(value[0]), float(value[1]))


class NodeStatus(str, Enum):
    """Lifecycle status of a node."""

    PENDING = "pending"
    ESTABLISHED = "established"


class SessionKind(str, Enum):
    """Kind of player session.

    Permanent sessions persist and sync their progress. Simulation sessions
    work on a disposable pool of temporary nodes and chains.
    """

    PERMANENT = "permanent"
    SIMULATION = "simulation"

    @property
    def is_simulation(self) -> bool:
        return self is SessionKind.SIMULATION


@dataclass(frozen=True)
class Node:
    """A point the player has established on the ground."""

    id: str
    coordinates: Coordinates
    created_at: int  # epoch milliseconds
    status: NodeStatus = NodeStatus.PENDING
    temporary: bool = False

    @property
    def is_established(self) -> bool:
        return self.status is NodeStatus.ESTABLISHED

    def with_status(self, status: NodeStatus) -> "Node":
        return replace(self, status=status)

    def to_record(self) -> "NodeRecord":
        return NodeRecord(
            id=self.id,
            coordinates=list(self.coordinates),
            created_at=self.created_at,
            status=self.status,
            temporary=self.temporary,
        )

    @classmethod
    def from_record(cls, record: "NodeRecord") -> "Node":
        return cls(
            id=record.id,
            coordinates=as_coordinates(record.coordinates),
            created_at=record.created_at,
            status=NodeStatus(record.status),
            temporary=record.temporary,
        )


@dataclass(frozen=True)
class Chain:
    """An edge between two nodes, produced by one completed walk."""

    id: str
    node_a_id: str
    node_b_id: str
    path: Tuple[Coordinates, ...]
    created_at: int  # epoch milliseconds
    temporary: bool = False

    def connects(self, node_id: str) -> bool:
        return node_id in (self.node_a_id, self.node_b_id)

    def other_end(self, node_id: str) -> str:
        return self.node_b_id if self.node_a_id == node_id else self.node_a_id

    def reduced(self) -> "Chain":
        """Copy of the chain with its path reduced to the two endpoints."""
        return replace(self, path=reduce_path(self.path))

    def to_record(self) -> "ChainRecord":
        return ChainRecord(
            id=self.id,
            node_a_id=self.node_a_id,
            node_b_id=self.node_b_id,
            path=[list(p) for p in self.path],
            created_at=self.created_at,
            temporary=self.temporary,
        )

    @classmethod
    def from_record(cls, record: "ChainRecord") -> "Chain":
        return cls(
            id=record.id,
            node_a_id=record.node_a_id,
            node_b_id=record.node_b_id,
            path=tuple(as_coordinates(p) for p in record.path),
            created_at=record.created_at,
            temporary=record.temporary,
        )


def reduce_path(path: Sequence[Coordinates]) -> Tuple[Coordinates, ...]:
    """Keep only the first and last point of a path (location privacy)."""
    if len(path) <= 2:
        return tuple(as_coordinates(p) for p in path)
    return (as_coordinates(path[0]), as_coordinates(path[-1]))


@dataclass
class ChainAttempt:
    """The single in-progress walk of a player."""

    anchor_node: Node
    path: Path = field(default_factory=list)

    def __post_init__(self):
        if not self.path:
            self.path = [self.anchor_node.coordinates]

    def to_record(self) -> "AttemptRecord":
        return AttemptRecord(
            anchor_node=self.anchor_node.to_record(),
            path=[list(p) for p in self.path],
        )

    @classmethod
    def from_record(cls, record: "AttemptRecord") -> "ChainAttempt":
        return cls(
            anchor_node=Node.from_record(record.anchor_node),
            path=[as_coordinates(p) for p in record.path],
        )


class NodeRecord(BaseModel):
    """Persisted node: ``{id, coordinates, createdAt, status, temporary}``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    coordinates: List[float] = Field(..., min_length=2, max_length=2)
    created_at: int = Field(..., alias="createdAt")
    status: NodeStatus = NodeStatus.ESTABLISHED
    temporary: bool = False


class ChainRecord(BaseModel):
    """Persisted chain: ``{id, nodeA_id, nodeB_id, path, createdAt, temporary}``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    node_a_id: str = Field(..., alias="nodeA_id")
    node_b_id: str = Field(..., alias="nodeB_id")
    path: List[List[float]] = Field(default_factory=list)
    created_at: int = Field(..., alias="createdAt")
    temporary: bool = False


class AttemptRecord(BaseModel):
    """Persisted in-progress walk."""

    model_config = ConfigDict(populate_by_name=True)

    anchor_node: NodeRecord = Field(..., alias="anchorNode")
    path: List[List[float]] = Field(default_factory=list)


class ProfileRecord(BaseModel):
    """Public profile of a player as served by the backend."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    territory_area_km2: Optional[float] = None


class PlayerNodeRecord(NodeRecord):
    """Node as stored on the shared backend, tagged with its owner."""

    user_id: str


class PlayerChainRecord(ChainRecord):
    """Chain as stored on the shared backend; the path holds only its endpoints."""

    user_id: str
    distance_km: Optional[float] = None
