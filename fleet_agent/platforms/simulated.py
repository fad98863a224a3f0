from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..acquisition import AcquisitionOptions, BatchHandler, FixHandler
from ..errors import AcquisitionCapabilityUnavailable
from ..models import LocationSample, utcnow


logger = logging.getLogger("fleetwatch.platform.simulated")

DEFAULT_CENTER_LAT = 37.4083
DEFAULT_CENTER_LON = -102.6144
EARTH_RADIUS_M = 6_371_000.0


def _rng_for(seed: str) -> random.Random:
    seed_bytes = hashlib.sha256(seed.encode("utf-8")).digest()[:8]
    return random.Random(int.from_bytes(seed_bytes, "big", signed=False))


@dataclass
class SimulatedRoute:
    """A vehicle wandering around a start point with noisy fix quality.

    `poor_fix_ratio` of the fixes report an accuracy worse than the default
    acceptance threshold, like a cached network-provider fix would.
    """

    seed: str = "fleet-sim"
    lat: float = DEFAULT_CENTER_LAT
    lon: float = DEFAULT_CENTER_LON
    speed_mps: float = 12.0
    poor_fix_ratio: float = 0.1

    def __post_init__(self) -> None:
        self._rng = _rng_for(self.seed)
        self._heading = self._rng.uniform(0.0, 360.0)

    def next_fix(self, elapsed_s: float, now: Optional[datetime] = None) -> LocationSample:
        self._heading = (self._heading + self._rng.uniform(-20.0, 20.0)) % 360.0
        speed = max(0.0, self.speed_mps + self._rng.uniform(-3.0, 3.0))
        distance_m = speed * max(0.0, elapsed_s)

        lat1 = math.radians(self.lat)
        lon1 = math.radians(self.lon)
        bearing = math.radians(self._heading)
        angular = distance_m / EARTH_RADIUS_M
        lat2 = math.asin(
            math.sin(lat1) * math.cos(angular) + math.cos(lat1) * math.sin(angular) * math.cos(bearing)
        )
        lon2 = lon1 + math.atan2(
            math.sin(bearing) * math.sin(angular) * math.cos(lat1),
            math.cos(angular) - math.sin(lat1) * math.sin(lat2),
        )
        self.lat = round(math.degrees(lat2), 6)
        self.lon = round(((math.degrees(lon2) + 180.0) % 360.0) - 180.0, 6)

        if self._rng.random() < self.poor_fix_ratio:
            accuracy = self._rng.uniform(200.0, 1500.0)
        else:
            accuracy = self._rng.uniform(3.0, 25.0)

        return LocationSample(
            latitude=self.lat,
            longitude=self.lon,
            captured_at=now or utcnow(),
            accuracy_m=round(accuracy, 1),
            speed_mps=round(speed, 2),
            heading_deg=round(self._heading, 1),
            altitude_m=round(1300.0 + self._rng.uniform(-5.0, 5.0), 1),
        )


class _WatchSubscription:
    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def remove(self) -> None:
        self._task.cancel()


class SimulatedPlatform:
    """Headless positioning runtime for development and the simulator.

    Permissions and background capability are plain flags so every branch of
    the acquisition fallback can be exercised without a device.
    """

    def __init__(
        self,
        *,
        route: Optional[SimulatedRoute] = None,
        foreground_granted: bool = True,
        background_granted: bool = True,
        background_available: bool = True,
        tick_s: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.route = route or SimulatedRoute()
        self.foreground_granted = foreground_granted
        self.background_granted = background_granted
        self.background_available = background_available
        self.tick_s = tick_s
        self._clock = clock
        self._background_task: Optional[asyncio.Task[None]] = None

    async def request_foreground_permission(self) -> bool:
        return self.foreground_granted

    async def request_background_permission(self) -> bool:
        return self.background_granted

    async def background_updates_available(self) -> bool:
        return self.background_available

    async def start_background_updates(self, handler: BatchHandler, options: AcquisitionOptions) -> None:
        if not self.background_available:
            raise AcquisitionCapabilityUnavailable("simulated runtime has background updates disabled")
        await self.stop_background_updates()
        self._background_task = asyncio.get_running_loop().create_task(
            self._emit(lambda fix: handler([fix]), options),
            name="simulated-background-updates",
        )
        logger.info("simulated background updates registered (interval=%ss)", self._interval(options))

    async def background_updates_registered(self) -> bool:
        return self._background_task is not None and not self._background_task.done()

    async def stop_background_updates(self) -> None:
        task = self._background_task
        self._background_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def watch_position(self, handler: FixHandler, options: AcquisitionOptions) -> _WatchSubscription:
        task = asyncio.get_running_loop().create_task(self._emit(handler, options), name="simulated-watch")
        logger.info("simulated foreground watch started (interval=%ss)", self._interval(options))
        return _WatchSubscription(task)

    def _interval(self, options: AcquisitionOptions) -> float:
        return float(self.tick_s if self.tick_s is not None else options.interval_s)

    async def _emit(self, handler: FixHandler, options: AcquisitionOptions) -> None:
        interval = self._interval(options)
        while True:
            await asyncio.sleep(interval)
            handler(self.route.next_fix(interval, now=self._clock()))
