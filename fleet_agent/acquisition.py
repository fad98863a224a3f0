from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

from .errors import AcquisitionCapabilityUnavailable
from .models import LocationSample


logger = logging.getLogger("fleetwatch.acquisition")

FixHandler = Callable[[LocationSample], None]
BatchHandler = Callable[[Sequence[LocationSample]], None]


@dataclass(frozen=True)
class AcquisitionOptions:
    interval_s: float = 15.0
    # 0 = time-based only. A distance gate lets a stationary device keep
    # re-reporting a stale cached network fix.
    distance_m: float = 0.0
    deferred_interval_s: float = 60.0
    deferred_distance_m: float = 50.0
    notification_title: str = "Fleet Tracker Active"
    notification_body: str = "Your location is being tracked."


class Subscription(Protocol):
    def remove(self) -> None: ...


class LocationPlatform(Protocol):
    """Host positioning runtime (permissions + update delivery)."""

    async def request_foreground_permission(self) -> bool: ...

    async def request_background_permission(self) -> bool: ...

    async def background_updates_available(self) -> bool: ...

    async def start_background_updates(self, handler: BatchHandler, options: AcquisitionOptions) -> None: ...

    async def background_updates_registered(self) -> bool: ...

    async def stop_background_updates(self) -> None: ...

    async def watch_position(self, handler: FixHandler, options: AcquisitionOptions) -> Subscription: ...


class AcquisitionMode(Protocol):
    @property
    def is_background(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class BackgroundAcquisition:
    """Keeps reporting while the host process is not in the foreground.

    The platform may deliver several deferred fixes at once; they are handed
    to the per-fix handler one by one in delivery order.
    """

    is_background = True

    def __init__(self, platform: LocationPlatform, handler: FixHandler, options: AcquisitionOptions) -> None:
        self._platform = platform
        self._handler = handler
        self._options = options

    def _on_batch(self, fixes: Sequence[LocationSample]) -> None:
        for fix in fixes:
            self._handler(fix)

    async def start(self) -> None:
        if not await self._platform.background_updates_available():
            raise AcquisitionCapabilityUnavailable("background location updates are not available on this runtime")
        try:
            await self._platform.start_background_updates(self._on_batch, self._options)
        except AcquisitionCapabilityUnavailable:
            raise
        except Exception as exc:
            raise AcquisitionCapabilityUnavailable(f"background registration failed: {exc}") from exc

    async def stop(self) -> None:
        try:
            if await self._platform.background_updates_registered():
                await self._platform.stop_background_updates()
        except Exception as exc:
            logger.warning("stopping background updates failed: %r", exc)


class ForegroundAcquisition:
    """Receives fixes only while the host process is in the foreground."""

    is_background = False

    def __init__(self, platform: LocationPlatform, handler: FixHandler, options: AcquisitionOptions) -> None:
        self._platform = platform
        self._handler = handler
        self._options = options
        self._subscription: Optional[Subscription] = None

    async def start(self) -> None:
        self._subscription = await self._platform.watch_position(self._handler, self._options)

    async def stop(self) -> None:
        if self._subscription is None:
            return
        try:
            self._subscription.remove()
        except Exception as exc:
            logger.warning("removing foreground subscription failed: %r", exc)
        self._subscription = None


async def select_acquisition_mode(
    platform: LocationPlatform,
    handler: FixHandler,
    options: AcquisitionOptions,
) -> AcquisitionMode:
    """Start background acquisition, falling back to foreground-only."""

    background = BackgroundAcquisition(platform, handler, options)
    try:
        await background.start()
        logger.info("background location updates started")
        return background
    except AcquisitionCapabilityUnavailable as exc:
        logger.warning("background acquisition unavailable, using foreground-only mode: %s", exc)

    foreground = ForegroundAcquisition(platform, handler, options)
    await foreground.start()
    logger.info("foreground location watch started")
    return foreground
