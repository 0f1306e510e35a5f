"""
Geolocation intake for an active walk.

The sampler wraps a push-style geolocation source and applies two filters
before a position reaches the walk:

1. Cheat detection: a reported speed above the walking ceiling drops the
   sample and fires the cheat callback instead.
2. Throttling: the first sample of a burst is forwarded at once, later ones
   are coalesced so at most one sample per interval gets through, and the
   most recent pending sample is forwarded when the interval ends.

Failures of the source are surfaced as distinct ``GeolocationError``
subclasses so callers can react to each case separately.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Protocol, Sequence

import structlog

from ..utils.timers import now_ms
from .geo_math import distance
from .models import Coordinates, as_coordinates

logger = structlog.get_logger()


@dataclass(frozen=True)
class PositionSample:
    coordinates: Coordinates
    timestamp: int  # epoch milliseconds
    speed: Optional[float] = None  # metres per second, when reported
    accuracy: Optional[float] = None  # metres


class GeolocationError(Exception):
    """Base class for failures reported by a geolocation source."""


class PermissionDeniedError(GeolocationError):
    pass


class PositionUnavailableError(GeolocationError):
    pass


class GeolocationTimeoutError(GeolocationError):
    pass


class GeolocationState(str, Enum):
    IDLE = "idle"
    LOCATING = "locating"
    SUCCESS = "success"
    DENIED = "denied"
    ERROR = "error"


class Subscription(Protocol):
    def cancel(self) -> None: ...


class GeolocationSource(Protocol):
    """Push-style location provider (device GPS, simulator, test double)."""

    def subscribe(
        self,
        on_sample: Callable[[PositionSample], None],
        on_error: Callable[[GeolocationError], None],
    ) -> Subscription: ...

    async def current_position(self) -> PositionSample: ...


class LocateResult(NamedTuple):
    state: GeolocationState
    sample: Optional[PositionSample] = None
    error: Optional[GeolocationError] = None


async def locate(source: GeolocationSource, timeout: float = 10.0) -> LocateResult:
    """One-shot position fix mapped onto the geolocation states."""
    try:
        sample = await asyncio.wait_for(source.current_position(), timeout)
    except asyncio.TimeoutError:
        error = GeolocationTimeoutError(f"No position fix within {timeout:g}s")
        logger.warning("Geolocation timed out", timeout=timeout)
        return LocateResult(GeolocationState.ERROR, error=error)
    except PermissionDeniedError as e:
        logger.warning("Geolocation permission denied", error=str(e))
        return LocateResult(GeolocationState.DENIED, error=e)
    except GeolocationError as e:
        logger.warning("Geolocation failed", error=str(e), error_type=type(e).__name__)
        return LocateResult(GeolocationState.ERROR, error=e)

    return LocateResult(GeolocationState.SUCCESS, sample=sample)


class PositionSampler:
    """Throttled, cheat-filtered position feed for one walk."""

    def __init__(
        self,
        source: GeolocationSource,
        on_position: Callable[[PositionSample], None],
        on_cheat: Optional[Callable[[PositionSample], None]] = None,
        throttle_seconds: float = 1.0,
        max_speed_mps: float = 5.0,
        min_speed_mps: float = 0.0,
        on_error: Optional[Callable[[GeolocationError], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.on_position = on_position
        self.on_cheat = on_cheat
        self.on_error = on_error
        self.throttle_seconds = throttle_seconds
        self.max_speed_mps = max_speed_mps
        self.min_speed_mps = min_speed_mps
        self.clock = clock

        self._subscription: Optional[Subscription] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._trailing: Optional[asyncio.TimerHandle] = None
        self._pending: Optional[PositionSample] = None
        self._last_emit: Optional[float] = None
        self._active = False

        self.accepted = 0
        self.dropped = 0
        self.cheats = 0

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        if self._active:
            return
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._active = True
        self._last_emit = None
        self._subscription = self.source.subscribe(self.handle_sample, self.handle_error)
        logger.info("Position sampler started", throttle_seconds=self.throttle_seconds,
                    max_speed_mps=self.max_speed_mps)

    def stop(self) -> None:
        """Stop synchronously: no sample is forwarded after this returns."""
        was_active = self._active
        self._active = False
        self._pending = None
        if self._trailing is not None:
            self._trailing.cancel()
            self._trailing = None
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if was_active:
            logger.info("Position sampler stopped", accepted=self.accepted, dropped=self.dropped,
                        cheats=self.cheats)

    def handle_sample(self, sample: PositionSample) -> None:
        if not self._active:
            return

        if sample.speed is not None and sample.speed > self.max_speed_mps:
            self.cheats += 1
            logger.warning("Speed above walking ceiling", speed=sample.speed,
                           ceiling=self.max_speed_mps, coordinates=sample.coordinates)
            if self.on_cheat is not None:
                self.on_cheat(sample)
            return

        if self.min_speed_mps > 0 and sample.speed is not None and sample.speed < self.min_speed_mps:
            self.dropped += 1
            return

        now = self.clock()
        if self._last_emit is None or now - self._last_emit >= self.throttle_seconds:
            self._emit(sample)
            return

        # Inside the interval: remember only the newest sample
        if self._pending is not None:
            self.dropped += 1
        self._pending = sample
        if self._trailing is None and self._loop is not None:
            wait = self.throttle_seconds - (now - self._last_emit)
            self._trailing = self._loop.call_later(max(0.0, wait), self._emit_trailing)

    def handle_error(self, error: GeolocationError) -> None:
        logger.warning("Geolocation source error", error=str(error), error_type=type(error).__name__)
        if self.on_error is not None:
            self.on_error(error)

    def _emit_trailing(self) -> None:
        self._trailing = None
        if self._active and self._pending is not None:
            self._emit(self._pending)

    def _emit(self, sample: PositionSample) -> None:
        self._pending = None
        self._last_emit = self.clock()
        self.accepted += 1
        self.on_position(sample)


class _TaskSubscription:
    def __init__(self, task: asyncio.Task):
        self.task = task

    def cancel(self) -> None:
        self.task.cancel()


class RouteSimulator:
    """
    Geolocation source that walks along a fixed route.

    Positions are interpolated every ``interval_seconds`` of simulated time at
    ``speed_mps``. ``time_scale`` shortens the real delay between samples
    so a long walk can be replayed quickly.
    """

    def __init__(
        self,
        route: Sequence[Sequence[float]],
        speed_mps: float = 1.4,
        interval_seconds: float = 1.0,
        time_scale: float = 1.0,
        start_time_ms: Optional[int] = None,
    ):
        if len(route) < 1:
            raise ValueError("Route needs at least one point")
        self.route: List[Coordinates] = [as_coordinates(p) for p in route]
        self.speed_mps = speed_mps
        self.interval_seconds = interval_seconds
        self.time_scale = time_scale
        self.start_time_ms = start_time_ms
        self.position: Coordinates = self.route[0]

    def samples(self) -> List[PositionSample]:
        """All samples of the walk, start and end included."""
        start = self.start_time_ms if self.start_time_ms is not None else now_ms()
        step_m = self.speed_mps * self.interval_seconds
        points: List[Coordinates] = [self.route[0]]

        carry = 0.0
        for a, b in zip(self.route, self.route[1:]):
            seg = distance(a, b)
            if seg == 0:
                continue
            offset = step_m - carry
            while offset < seg:
                t = offset / seg
                points.append((a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t))
                offset += step_m
            carry = seg - (offset - step_m)

        if points[-1] != self.route[-1]:
            points.append(self.route[-1])

        interval_ms = int(self.interval_seconds * 1000)
        return [
            PositionSample(coordinates=p, timestamp=start + i * interval_ms, speed=self.speed_mps)
            for i, p in enumerate(points)
        ]

    async def _replay(self, on_sample: Callable[[PositionSample], None]) -> None:
        delay = self.interval_seconds / self.time_scale if self.time_scale > 0 else 0
        for sample in self.samples():
            self.position = sample.coordinates
            on_sample(sample)
            await asyncio.sleep(delay)

    def subscribe(self, on_sample, on_error) -> Subscription:
        task = asyncio.get_running_loop().create_task(self._replay(on_sample))
        return _TaskSubscription(task)

    async def current_position(self) -> PositionSample:
        return PositionSample(coordinates=self.position, timestamp=now_ms(), speed=0.0)
