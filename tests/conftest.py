"""Shared fixtures."""

import os

# Must be set before py_conquest.config is imported
os.environ.setdefault("CONQUEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("CONQUEST_LOG_FORMAT", "console")

import pytest

from py_conquest.config import Settings
from py_conquest.core.models import Node, NodeStatus
from py_conquest.core.position_sampler import PositionSample
from py_conquest.db.connection import Database
from py_conquest.db.storage import MemoryStorage

METERS_PER_DEGREE = 111194.93  # along a meridian, R = 6371 km


def offset(meters_east: float, meters_north: float, origin=(0.0, 0.0)):
    """Coordinates ``meters_east``/``meters_north`` from an equatorial origin."""
    return (origin[0] + meters_east / METERS_PER_DEGREE, origin[1] + meters_north / METERS_PER_DEGREE)


def make_node(node_id, coordinates, status=NodeStatus.ESTABLISHED, temporary=False, created_at=0):
    return Node(id=node_id, coordinates=tuple(coordinates), created_at=created_at,
                status=status, temporary=temporary)


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeSubscription:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeGeolocationSource:
    """Source whose samples are pushed by the test."""

    def __init__(self, position=(0.0, 0.0), error=None):
        self.position = position
        self.error = error
        self.subscription = None
        self._on_sample = None
        self._on_error = None

    def subscribe(self, on_sample, on_error):
        self._on_sample = on_sample
        self._on_error = on_error
        self.subscription = FakeSubscription()
        return self.subscription

    def emit(self, coordinates, speed=None, timestamp=0):
        if self.subscription is not None and not self.subscription.cancelled:
            self._on_sample(PositionSample(coordinates=tuple(coordinates), timestamp=timestamp, speed=speed))

    def fail(self, error):
        if self.subscription is not None and not self.subscription.cancelled:
            self._on_error(error)

    async def current_position(self):
        if self.error is not None:
            raise self.error
        return PositionSample(coordinates=self.position, timestamp=0)


class FakeBackend:
    """In-memory sync backend that can be told to fail."""

    def __init__(self):
        self.nodes = {}
        self.chains = {}
        self.territory = {}
        self.fail = False
        self.sync_calls = 0
        self.territory_calls = 0

    def _check(self):
        if self.fail:
            raise ConnectionError("backend unreachable")

    async def existing_node_ids(self, user_id):
        self._check()
        self.sync_calls += 1
        return {r.id for r in self.nodes.get(user_id, [])}

    async def insert_nodes(self, user_id, records):
        self._check()
        self.nodes.setdefault(user_id, []).extend(records)
        return len(records)

    async def existing_chain_ids(self, user_id):
        self._check()
        return {r.id for r in self.chains.get(user_id, [])}

    async def insert_chains(self, user_id, records):
        self._check()
        self.chains.setdefault(user_id, []).extend(records)
        return len(records)

    async def update_territory_stats(self, user_id, area_km2):
        self._check()
        self.territory_calls += 1
        self.territory[user_id] = area_km2


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.initialize()
    yield db
    db.dispose()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_source():
    return FakeGeolocationSource()


@pytest.fixture
def game_settings():
    return Settings(
        sampler_throttle_seconds=0.0,
        sync_debounce_seconds=0.01,
        territory_sync_debounce_seconds=0.01,
        territory_simplify_tolerance=0.0,
    )
