"""Upload of local progress to the shared backend."""

from typing import NamedTuple, Optional, Sequence

import structlog

from ..utils.timers import Debouncer
from .models import Chain, Node

logger = structlog.get_logger()


class SyncResult(NamedTuple):
    success: bool
    synced_nodes: int = 0
    synced_chains: int = 0
    error: Optional[str] = None


class SyncService:
    """
    Debounced, idempotent upload of one player's nodes and chains.

    Only established permanent nodes and permanent chains are sent. Ids the
    backend already holds are skipped, so a partially failed upload can
    simply be repeated.

    The player's territory area is pushed to their profile separately, on
    its own quiet period; a value equal to the last one sent is not sent again.
    """

    def __init__(
        self,
        backend,
        user_id: str,
        debounce_seconds: float = 2.0,
        territory_debounce_seconds: float = 5.0,
    ):
        self.backend = backend
        self.user_id = user_id
        self._debouncer = Debouncer(debounce_seconds, self.sync_now, name="sync")
        self._territory_debouncer = Debouncer(
            territory_debounce_seconds, self.sync_territory_now, name="territory_sync"
        )
        self.last_result: Optional[SyncResult] = None
        self.last_synced_area_km2: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    def schedule(self, nodes: Sequence[Node], chains: Sequence[Chain]) -> None:
        """Upload after the quiet period; a newer call supersedes a pending one."""
        self._debouncer.trigger(tuple(nodes), tuple(chains))

    def schedule_territory(self, area_km2: float) -> None:
        """Upload the territory area after its quiet period unless already sent."""
        if area_km2 == self.last_synced_area_km2:
            self._territory_debouncer.cancel()
            return
        self._territory_debouncer.trigger(area_km2)

    async def flush(self) -> None:
        await self._debouncer.flush()
        await self._territory_debouncer.flush()

    def cancel(self) -> None:
        self._debouncer.cancel()
        self._territory_debouncer.cancel()

    async def sync_territory_now(self, area_km2: float) -> bool:
        try:
            await self.backend.update_territory_stats(self.user_id, area_km2)
        except Exception as e:
            logger.error("Territory sync failed", user_id=self.user_id, error=str(e))
            return False
        self.last_synced_area_km2 = area_km2
        logger.info("Territory synced", user_id=self.user_id, area_km2=area_km2)
        return True

    async def sync_now(self, nodes: Sequence[Node], chains: Sequence[Chain]) -> SyncResult:
        nodes_to_sync = [n for n in nodes if n.is_established and not n.temporary]
        chains_to_sync = [c for c in chains if not c.temporary]

        try:
            existing_nodes = await self.backend.existing_node_ids(self.user_id)
            new_nodes = [n.to_record() for n in nodes_to_sync if n.id not in existing_nodes]
            synced_nodes = await self.backend.insert_nodes(self.user_id, new_nodes) if new_nodes else 0

            existing_chains = await self.backend.existing_chain_ids(self.user_id)
            new_chains = [c.reduced().to_record() for c in chains_to_sync if c.id not in existing_chains]
            synced_chains = await self.backend.insert_chains(self.user_id, new_chains) if new_chains else 0
        except Exception as e:
            logger.error("Sync failed", user_id=self.user_id, error=str(e))
            self.last_result = SyncResult(False, error=str(e))
            return self.last_result

        logger.info("Sync complete", user_id=self.user_id, synced_nodes=synced_nodes,
                    synced_chains=synced_chains,
                    skipped_nodes=len(nodes_to_sync) - len(new_nodes),
                    skipped_chains=len(chains_to_sync) - len(new_chains))
        self.last_result = SyncResult(True, synced_nodes, synced_chains)
        return self.last_result
