"""Tests for uploading local progress."""

import asyncio

from py_conquest.core.models import Chain, NodeStatus
from py_conquest.core.sync import SyncService
from conftest import make_node


def walk_chain(chain_id, a, b, temporary=False):
    path = tuple((0.0, i * 0.0001) for i in range(6))
    return Chain(id=chain_id, node_a_id=a, node_b_id=b, path=path, created_at=0, temporary=temporary)


class TestSyncService:
    """Test idempotent, filtered uploads."""

    def setup_method(self):
        self.nodes = [
            make_node("a", (0, 0)),
            make_node("b", (0, 0.0005)),
            make_node("pending", (1, 1), status=NodeStatus.PENDING),
            make_node("temp", (2, 2), temporary=True),
        ]
        self.chains = [walk_chain("c1", "a", "b"), walk_chain("sim", "temp", "temp", temporary=True)]

    async def test_uploads_established_permanent_only(self, fake_backend):
        """Test that only established permanent data is uploaded."""
        result = await SyncService(fake_backend, "me").sync_now(self.nodes, self.chains)

        assert result.success
        assert result.synced_nodes == 2
        assert result.synced_chains == 1
        assert {r.id for r in fake_backend.nodes["me"]} == {"a", "b"}
        assert [r.id for r in fake_backend.chains["me"]] == ["c1"]

    async def test_chain_paths_reduced(self, fake_backend):
        """Test that uploaded chains keep only endpoints."""
        await SyncService(fake_backend, "me").sync_now(self.nodes, self.chains)
        uploaded = fake_backend.chains["me"][0]
        walked = self.chains[0].path
        assert uploaded.path == [list(walked[0]), list(walked[-1])]

    async def test_existing_ids_skipped(self, fake_backend):
        """Test that a repeated sync uploads nothing."""
        service = SyncService(fake_backend, "me")
        await service.sync_now(self.nodes, self.chains)
        result = await service.sync_now(self.nodes, self.chains)

        assert result.success
        assert result.synced_nodes == 0
        assert result.synced_chains == 0
        assert len(fake_backend.nodes["me"]) == 2

    async def test_failure_reported_not_raised(self, fake_backend):
        """Test that sync failures are returned as results."""
        fake_backend.fail = True
        result = await SyncService(fake_backend, "me").sync_now(self.nodes, self.chains)

        assert not result.success
        assert "unreachable" in result.error

        fake_backend.fail = False
        result = await SyncService(fake_backend, "me").sync_now(self.nodes, self.chains)
        assert result.synced_nodes == 2

    async def test_schedule_collapses_bursts(self, fake_backend):
        """Test that scheduled syncs are debounced."""
        service = SyncService(fake_backend, "me", debounce_seconds=0.02)
        service.schedule(self.nodes[:1], [])
        service.schedule(self.nodes[:2], [])
        service.schedule(self.nodes, self.chains)
        assert service.pending

        await service.flush()
        await asyncio.sleep(0)

        assert fake_backend.sync_calls == 1
        assert service.last_result.synced_nodes == 2
        assert service.last_result.synced_chains == 1


class TestTerritorySync:
    """Test the debounced territory area upload."""

    async def test_unchanged_area_not_resent(self, fake_backend):
        """Test that an area equal to the last one sent is skipped."""
        service = SyncService(fake_backend, "me", territory_debounce_seconds=0.01)
        service.schedule_territory(0.5)
        await service.flush()
        service.schedule_territory(0.5)
        await service.flush()

        assert fake_backend.territory_calls == 1
        assert service.last_synced_area_km2 == 0.5

        service.schedule_territory(0.75)
        await service.flush()
        assert fake_backend.territory["me"] == 0.75
        assert fake_backend.territory_calls == 2

    async def test_burst_collapses_to_latest(self, fake_backend):
        """Test that rapid changes upload only the newest area."""
        service = SyncService(fake_backend, "me", territory_debounce_seconds=0.02)
        for area in (0.1, 0.2, 0.3):
            service.schedule_territory(area)
        await service.flush()

        assert fake_backend.territory_calls == 1
        assert fake_backend.territory["me"] == 0.3

    async def test_failed_upload_retried(self, fake_backend):
        """Test that a failed upload does not count as sent."""
        service = SyncService(fake_backend, "me", territory_debounce_seconds=0.01)
        fake_backend.fail = True
        assert not await service.sync_territory_now(0.5)
        assert service.last_synced_area_km2 is None

        fake_backend.fail = False
        service.schedule_territory(0.5)
        await service.flush()
        assert fake_backend.territory["me"] == 0.5
