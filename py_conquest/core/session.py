"""
Player session: the single owner of one player's game state.

A session is created once with its kind. Permanent sessions persist their
progress and upload it to the shared backend; simulation sessions work on
temporary nodes and chains in memory and never sync.
"""

import asyncio
import datetime
from typing import Any, Dict, NamedTuple, Optional, Sequence, Set, Tuple
from zoneinfo import ZoneInfo

import structlog

from ..config import settings as default_settings
from ..db.storage import MemoryStorage
from ..utils.timers import now_ms
from .chain_attempt import AttemptOutcome, ChainAttemptController
from .chain_factory import create_chain_from_path
from .game_rules import ALLOWED, GameRules, ValidationResult
from .geo_math import path_length
from .models import Chain, Node, SessionKind
from .position_sampler import PositionSampler
from .spatial_index import NodeSpatialIndex
from .stores import ChainStore, NodeStore
from .territory import Territory, TerritoryComputer, build_strategy

logger = structlog.get_logger()


class FinishResult(NamedTuple):
    success: bool
    reason: Optional[str] = None
    chain: Optional[Chain] = None
    nodes: Tuple[Node, ...] = ()
    territory: Optional[Territory] = None


class PlayerSession:
    def __init__(
        self,
        kind: SessionKind = SessionKind.PERMANENT,
        storage=None,
        sync=None,
        conflicts=None,
        settings=None,
        territory_strategy=None,
        clock=now_ms,
    ):
        self.settings = settings or default_settings
        self.kind = kind
        self.clock = clock

        if kind.is_simulation:
            if sync is not None:
                logger.warning("Simulation sessions never sync; ignoring sync service")
            self.storage = MemoryStorage()
            self.sync = None
        else:
            if storage is None:
                raise ValueError("Permanent sessions need a storage backend")
            self.storage = storage
            self.sync = sync

        self.conflicts = conflicts
        self.rules = GameRules.from_settings(self.settings)
        self.nodes = NodeStore()
        self.chains = ChainStore()
        self.index = NodeSpatialIndex(self.settings.influence_radius_km)
        self.territory = TerritoryComputer(territory_strategy or build_strategy(self.settings))
        self.attempt = ChainAttemptController(
            self.storage,
            expiry_days=self.settings.attempt_expiry_days,
            persist_every=self.settings.attempt_persist_every,
            temporary=kind.is_simulation,
            clock=clock,
        )

        self.sampler: Optional[PositionSampler] = None
        self.cheat_detected = False
        self._background: Set[asyncio.Task] = set()
        self._territory_lock: Optional[asyncio.Lock] = None

        self.nodes.subscribe(self._on_nodes_changed)

    @property
    def is_simulation(self) -> bool:
        return self.kind.is_simulation

    def _on_nodes_changed(self, nodes: Sequence[Node]) -> None:
        self.index.build_index(nodes)
        territory = self.territory.recompute(nodes, include_temporary=self.is_simulation)
        self._territory_changed(territory)

    def _territory_changed(self, territory: Optional[Territory]) -> None:
        if self.conflicts is not None:
            self.conflicts.update_my_territory(territory)
        if self.sync is not None:
            area_m2 = territory.area_m2 if territory is not None else 0.0
            self.sync.schedule_territory(round(area_m2 / 1_000_000, 6))

    async def load(self) -> None:
        """Load persisted progress and resume an unfinished walk."""
        nodes = await self.storage.load_nodes()
        chains = await self.storage.load_chains()
        loops = await self.storage.load_territories()

        restore = getattr(self.territory.strategy, "restore", None)
        if restore is not None:
            restore(loops)

        self.chains.replace_all(chains)
        self.nodes.replace_all(nodes)
        self.chains.prune_orphans(self.nodes.ids())

        attempt = await self.attempt.restore()
        logger.info("Session loaded", kind=self.kind.value, nodes=len(self.nodes),
                    chains=len(self.chains), resumed_walk=attempt is not None)

    def chains_created_today(self) -> int:
        tz = self.settings.timezone
        today = datetime.datetime.fromtimestamp(self.clock() / 1000, ZoneInfo(tz)).date()
        return len(self.chains.created_on(today, tz))

    async def start_walk(self, coordinates: Sequence[float]) -> ValidationResult:
        if self.attempt.is_active:
            return ValidationResult(False, "A walk is already in progress")

        if not self.rules.can_create_chain_today(self.chains_created_today(), self.is_simulation):
            return ValidationResult(
                False, f"Daily limit reached: {self.rules.max_chains_per_day} chains per day"
            )

        check = self.rules.can_start_chain(
            coordinates, self.nodes.snapshot(), self.chains.snapshot(), self.is_simulation, self.index
        )
        if not check:
            logger.info("Walk rejected", reason=check.reason, coordinates=list(coordinates))
            return check

        await self.attempt.start_attempt(coordinates)
        reset = getattr(self.territory.strategy, "reset", None)
        if reset is not None:
            reset()
        self.cheat_detected = False
        return ALLOWED

    def begin_tracking(self, source, on_error=None) -> PositionSampler:
        """Feed positions from ``source`` into the active walk."""
        if not self.attempt.is_active:
            raise RuntimeError("Start a walk before tracking positions")
        self._stop_sampler()
        self.sampler = PositionSampler(
            source,
            on_position=lambda sample: self.record_point(sample.coordinates),
            on_cheat=self._on_cheat,
            throttle_seconds=self.settings.sampler_throttle_seconds,
            max_speed_mps=self.settings.max_walking_speed_mps,
            min_speed_mps=self.settings.min_walking_speed_mps,
            on_error=on_error,
        )
        self.sampler.start()
        return self.sampler

    def record_point(self, coordinates: Sequence[float]) -> int:
        length = self.attempt.add_point(coordinates)
        captured = self.territory.observe_path(self.attempt.path)
        if captured is not None:
            self._territory_changed(captured)
            self._spawn(self._save_territories())
        return length

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _save_territories(self) -> None:
        if self._territory_lock is None:
            self._territory_lock = asyncio.Lock()
        # Serialised; each save writes the newest loop set
        async with self._territory_lock:
            loops = list(getattr(self.territory.strategy, "captured", []))
            try:
                await self.storage.save_territories(loops)
            except Exception as e:
                # Saved again with the next capture
                logger.error("Failed to save captured territory", error=str(e), loops=len(loops))

    def _stop_sampler(self) -> None:
        if self.sampler is not None:
            self.sampler.stop()
            self.sampler = None

    def _on_cheat(self, sample) -> None:
        self._stop_sampler()
        self._spawn(self.abort_for_cheat())

    async def abort_for_cheat(self) -> None:
        self._stop_sampler()
        self.cheat_detected = True
        logger.warning("Walk aborted: speed limit exceeded", kind=self.kind.value)
        await self.attempt.clear_attempt(AttemptOutcome.CANCELLED)

    async def cancel_walk(self, reason: str = "cancelled") -> None:
        self._stop_sampler()
        if self.attempt.is_active:
            logger.info("Walk cancelled", reason=reason)
        await self.attempt.clear_attempt(AttemptOutcome.CANCELLED)

    async def finish_walk(self, end_coordinates: Optional[Sequence[float]] = None) -> FinishResult:
        """
        Promote the active walk into two established nodes and a chain.

        A path that is too short is rejected; the walk stays active and keeps
        being tracked so the player can keep walking or cancel it.
        """
        if not self.attempt.is_active:
            self._stop_sampler()
            return FinishResult(False, "No walk in progress")

        if end_coordinates is not None:
            self.attempt.add_point(end_coordinates)

        path = self.attempt.path
        check = self.rules.is_valid_path(path)
        if not check:
            logger.info("Finish rejected", reason=check.reason, tracking=self.sampler is not None)
            return FinishResult(False, check.reason)

        self._stop_sampler()
        result = create_chain_from_path(
            path[0], path[-1], path,
            temporary=self.is_simulation,
            anchor=self.attempt.anchor_node,
            created_at=self.clock(),
        )

        existing = [n for n in self.nodes.snapshot() if n.id not in (result.node_a.id, result.node_b.id)]
        self.chains.add(result.chain)
        self.nodes.replace_all(existing + [result.node_a, result.node_b])

        await self.attempt.clear_attempt(AttemptOutcome.FINALIZED)
        await self._save_progress()

        logger.info("Walk finished", chain_id=result.chain.id, points=len(path),
                    length_m=round(path_length(path), 1), kind=self.kind.value)
        return FinishResult(
            True,
            chain=result.chain,
            nodes=(result.node_a, result.node_b),
            territory=self.territory.territory,
        )

    async def _save_progress(self) -> None:
        try:
            await self.storage.save_nodes(self.nodes.snapshot())
            await self.storage.save_chains(self.chains.snapshot())
        except Exception as e:
            # Saved again with the next change
            logger.error("Failed to save progress", error=str(e))

        if self.sync is not None:
            self.sync.schedule(self.nodes.permanent(), self.chains.permanent())

    async def close(self) -> None:
        self._stop_sampler()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.attempt.flush()
        if self.sync is not None:
            await self.sync.flush()

    def stats(self) -> Dict[str, Any]:
        info = self.attempt.get_attempt_info()
        return {
            "kind": self.kind.value,
            "nodes": self.nodes.stats(),
            "chains": len(self.chains),
            "chains_today": self.chains_created_today(),
            "territory_area_m2": self.territory.area_m2,
            "index": self.index.stats(),
            "walk": None if info is None else {
                "anchor_id": info.anchor_id,
                "path_length": info.path_length,
                "duration_minutes": info.duration_minutes,
                "is_expired": info.is_expired,
            },
        }
