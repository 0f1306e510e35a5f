"""
Resumable state machine for the in-progress walk.

States:
- IDLE: no walk in progress
- ACTIVE: a pending anchor node and a growing path, persisted

Leaving ACTIVE always goes back to IDLE; the reason is kept on
``last_outcome`` (finalized, cancelled or expired). An attempt older than the
expiry window is never resumed.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence, Set

import structlog

from ..utils.timers import now_ms
from .models import ChainAttempt, Coordinates, Node, NodeStatus, as_coordinates, new_id

logger = structlog.get_logger()

DAY_MS = 24 * 60 * 60 * 1000


class AttemptState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class AttemptOutcome(str, Enum):
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class AttemptStateError(RuntimeError):
    """Raised when an operation is not legal in the current state."""


@dataclass(frozen=True)
class AttemptInfo:
    anchor_id: str
    start_coordinates: Coordinates
    path_length: int
    duration_seconds: float
    is_expired: bool

    @property
    def duration_minutes(self) -> int:
        return round(self.duration_seconds / 60)


class ChainAttemptController:
    """
    Owns the single in-progress walk of a player session.

    Points are appended synchronously; persistence of the growing path is
    batched every ``persist_every`` points and runs as a background task so
    point ingestion never waits on storage. At most one such write is in
    flight, so an older snapshot can never land after a newer one.
    """

    def __init__(
        self,
        storage,
        expiry_days: float = 3.0,
        persist_every: int = 10,
        temporary: bool = False,
        clock: Callable[[], int] = now_ms,
    ):
        self.storage = storage
        self.expiry_ms = int(expiry_days * DAY_MS)
        self.persist_every = max(1, persist_every)
        self.temporary = temporary
        self.clock = clock

        self._attempt: Optional[ChainAttempt] = None
        self._pending_writes: Set[asyncio.Task] = set()
        self._dirty = False
        self.last_outcome: Optional[AttemptOutcome] = None

    @property
    def state(self) -> AttemptState:
        return AttemptState.ACTIVE if self._attempt is not None else AttemptState.IDLE

    @property
    def is_active(self) -> bool:
        return self._attempt is not None

    @property
    def current_attempt(self) -> Optional[ChainAttempt]:
        """Copy of the active attempt, or None when idle."""
        if self._attempt is None:
            return None
        return ChainAttempt(anchor_node=self._attempt.anchor_node, path=list(self._attempt.path))

    @property
    def anchor_node(self) -> Optional[Node]:
        return self._attempt.anchor_node if self._attempt else None

    @property
    def path(self) -> list:
        return list(self._attempt.path) if self._attempt else []

    def _is_expired(self, attempt: ChainAttempt) -> bool:
        return self.clock() - attempt.anchor_node.created_at > self.expiry_ms

    async def start_attempt(self, coordinates: Sequence[float]) -> ChainAttempt:
        """Begin a walk: create the pending anchor node and persist immediately."""
        if self._attempt is not None:
            raise AttemptStateError("A chain attempt is already active")

        coords = as_coordinates(coordinates)
        anchor = Node(
            id=new_id(),
            coordinates=coords,
            created_at=self.clock(),
            status=NodeStatus.PENDING,
            temporary=self.temporary,
        )
        self._attempt = ChainAttempt(anchor_node=anchor, path=[coords])
        self.last_outcome = None
        logger.info("Chain attempt started", anchor_id=anchor.id, coordinates=coords)

        await self._persist()
        return self.current_attempt

    def add_point(self, coordinates: Sequence[float]) -> int:
        """
        Append a point to the active walk.

        Returns:
            The new path length
        """
        if self._attempt is None:
            raise AttemptStateError("No active chain attempt to add a point to")

        self._attempt.path.append(as_coordinates(coordinates))
        length = len(self._attempt.path)
        self._dirty = True
        if length % self.persist_every == 0:
            self._schedule_persist()
        return length

    def _schedule_persist(self) -> None:
        if any(not task.done() for task in self._pending_writes):
            # One write at a time; the newer points stay dirty for the next one
            logger.debug("Attempt write in flight, deferring", path_length=len(self._attempt.path))
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: the point stays dirty until the next flush
            return
        task = loop.create_task(self._persist())
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist(self) -> None:
        attempt = self.current_attempt
        if attempt is None:
            return
        try:
            await self.storage.save_attempt(attempt)
            if self._attempt is not None and len(self._attempt.path) == len(attempt.path):
                self._dirty = False
        except Exception as e:
            # Retried at the next cadence point or flush
            logger.error("Failed to persist chain attempt", error=str(e), path_length=len(attempt.path))

    async def flush(self) -> None:
        """Wait for background writes and persist any unsaved points."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)
        if self._dirty and self._attempt is not None:
            await self._persist()

    def get_attempt_info(self) -> Optional[AttemptInfo]:
        if self._attempt is None:
            return None
        anchor = self._attempt.anchor_node
        duration_ms = self.clock() - anchor.created_at
        return AttemptInfo(
            anchor_id=anchor.id,
            start_coordinates=anchor.coordinates,
            path_length=len(self._attempt.path),
            duration_seconds=duration_ms / 1000,
            is_expired=duration_ms > self.expiry_ms,
        )

    async def clear_attempt(self, outcome: AttemptOutcome = AttemptOutcome.CANCELLED) -> None:
        """Return to idle and erase persisted state. Safe to call when idle."""
        attempt = self._attempt
        self._attempt = None
        self._dirty = False

        if attempt is not None:
            self.last_outcome = outcome
            logger.info("Clearing chain attempt", anchor_id=attempt.anchor_node.id,
                        final_path_length=len(attempt.path), outcome=outcome.value)

        # In-flight writes must not resurrect the record after deletion
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

        try:
            await self.storage.delete_attempt()
        except Exception as e:
            logger.error("Failed to delete persisted chain attempt", error=str(e))

    async def restore(self) -> Optional[ChainAttempt]:
        """
        Resume a persisted walk after a restart.

        Expired or unreadable attempts are discarded silently.
        """
        if self._attempt is not None:
            return self.current_attempt

        try:
            attempt = await self.storage.load_attempt()
        except Exception as e:
            logger.error("Failed to load chain attempt", error=str(e))
            return None

        if attempt is None:
            return None

        if self._is_expired(attempt):
            age_minutes = round((self.clock() - attempt.anchor_node.created_at) / 60000)
            logger.info("Discarding expired chain attempt", anchor_id=attempt.anchor_node.id,
                        age_minutes=age_minutes)
            self.last_outcome = AttemptOutcome.EXPIRED
            try:
                await self.storage.delete_attempt()
            except Exception as e:
                logger.error("Failed to delete expired chain attempt", error=str(e))
            return None

        self._attempt = attempt
        logger.info("Restored unfinished chain attempt", anchor_id=attempt.anchor_node.id,
                    path_length=len(attempt.path))
        return self.current_attempt
