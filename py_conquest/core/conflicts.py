"""
Multiplayer territory view and overlap detection.

Peers' nodes and chains are read into a separate ``PlayerTerritory`` map;
the local player's stores are never touched. Overlap is approximated with
bounding boxes.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from ..utils.timers import Debouncer
from .geo_math import bounds_overlap
from .models import Chain, Node
from .territory import Owner, Territory, territory_from_nodes

logger = structlog.get_logger()

PALETTE = (
    "#FF6B6B",
    "#4ECDC4",
    "#45B7D1",
    "#FFA07A",
    "#98D8C8",
    "#F7DC6F",
    "#BB8FCE",
    "#85C1E2",
    "#F8B739",
    "#52B788",
)


class ColorPalette:
    """Stable colour per player: round-robin over the palette, memoised."""

    def __init__(self, colors: Sequence[str] = PALETTE):
        self.colors = tuple(colors)
        self._assigned: Dict[str, str] = {}

    def color_for(self, user_id: str) -> str:
        if user_id not in self._assigned:
            self._assigned[user_id] = self.colors[len(self._assigned) % len(self.colors)]
        return self._assigned[user_id]


@dataclass(frozen=True)
class PlayerTerritory:
    """Read-only projection of another player."""

    user_id: str
    color: str
    nodes: Tuple[Node, ...] = ()
    chains: Tuple[Chain, ...] = ()
    territory: Optional[Territory] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def name(self) -> str:
        return self.display_name or self.username or self.user_id


class TerritoryConflictDetector:
    """
    Keeps the peers' territories fresh and flags those overlapping ours.

    Refreshes run periodically and after backend change events; a burst of
    events collapses into a single debounced re-fetch.
    """

    def __init__(
        self,
        backend,
        current_user_id: str,
        palette: Optional[ColorPalette] = None,
        debounce_seconds: float = 2.0,
        refresh_interval_seconds: float = 30.0,
        simplify_tolerance: float = 0.0001,
    ):
        self.backend = backend
        self.current_user_id = current_user_id
        self.palette = palette or ColorPalette()
        self.refresh_interval_seconds = refresh_interval_seconds
        self.simplify_tolerance = simplify_tolerance

        self.players: Dict[str, PlayerTerritory] = {}
        self.conflicts: List[str] = []
        self.my_territory: Optional[Territory] = None

        self._debouncer = Debouncer(debounce_seconds, self.refresh, name="conflict_refetch")
        self._periodic: Optional[asyncio.Task] = None
        self._unsubscribe = None

    async def fetch_all(self) -> Dict[str, PlayerTerritory]:
        """Fetch every other player's data and derive their territories."""
        profiles = {p.user_id: p for p in await self.backend.fetch_profiles()}
        node_records = await self.backend.fetch_nodes(exclude_user=self.current_user_id)
        chain_records = await self.backend.fetch_chains(exclude_user=self.current_user_id)

        nodes_by_user: Dict[str, List[Node]] = defaultdict(list)
        for record in node_records:
            if record.user_id != self.current_user_id:
                nodes_by_user[record.user_id].append(Node.from_record(record))

        chains_by_user: Dict[str, List[Chain]] = defaultdict(list)
        for record in chain_records:
            if record.user_id != self.current_user_id:
                chains_by_user[record.user_id].append(Chain.from_record(record).reduced())

        players = {}
        for user_id in sorted(set(nodes_by_user) | set(chains_by_user)):
            nodes = nodes_by_user.get(user_id, [])
            profile = profiles.get(user_id)
            players[user_id] = PlayerTerritory(
                user_id=user_id,
                color=self.palette.color_for(user_id),
                nodes=tuple(nodes),
                chains=tuple(chains_by_user.get(user_id, [])),
                territory=territory_from_nodes(nodes, Owner.ENEMY, self.simplify_tolerance),
                username=profile.username if profile else None,
                display_name=profile.display_name if profile else None,
                avatar_url=profile.avatar_url if profile else None,
            )

        logger.info("Fetched peer territories", players=len(players), nodes=len(node_records),
                    chains=len(chain_records))
        return players

    @staticmethod
    def detect_conflicts(my_territory: Optional[Territory], territories: Iterable[PlayerTerritory]) -> List[str]:
        """Ids of players whose territory bounding box overlaps ours."""
        if my_territory is None:
            return []
        mine = my_territory.bounds
        return [
            player.user_id for player in territories
            if player.territory is not None and bounds_overlap(mine, player.territory.bounds)
        ]

    def update_my_territory(self, territory: Optional[Territory]) -> List[str]:
        """Re-evaluate conflicts against the cached peers, without fetching."""
        self.my_territory = territory
        self.conflicts = self.detect_conflicts(territory, self.players.values())
        return self.conflicts

    async def refresh(self, my_territory: Optional[Territory] = None) -> List[str]:
        if my_territory is not None:
            self.my_territory = my_territory
        try:
            self.players = await self.fetch_all()
        except Exception as e:
            # Keep serving the previous view until the next trigger
            logger.error("Failed to fetch peer territories", error=str(e))

        self.conflicts = self.detect_conflicts(self.my_territory, self.players.values())
        if self.conflicts:
            logger.info("Territory conflicts detected", user_ids=self.conflicts)
        return self.conflicts

    def _on_change(self, event) -> None:
        if event.user_id == self.current_user_id:
            return
        self._debouncer.trigger()

    async def _refresh_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_seconds)
            await self.refresh()

    async def start(self) -> None:
        if self._periodic is not None:
            return
        self._unsubscribe = self.backend.subscribe(self._on_change)
        self._periodic = asyncio.get_running_loop().create_task(self._refresh_periodically())
        await self.refresh()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._debouncer.cancel()
        if self._periodic is not None:
            self._periodic.cancel()
            try:
                await self._periodic
            except asyncio.CancelledError:
                pass
            self._periodic = None
