from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from fleet_agent.acquisition import (
    AcquisitionOptions,
    BackgroundAcquisition,
    ForegroundAcquisition,
    select_acquisition_mode,
)
from fleet_agent.events import EventStream, StateChanged
from fleet_agent.models import LocationSample
from fleet_agent.platforms import SimulatedPlatform, SimulatedRoute


def test_background_registration_error_falls_back_to_foreground() -> None:
    class _BrokenBackground(SimulatedPlatform):
        async def start_background_updates(self, handler, options):
            raise RuntimeError("task manager rejected registration")

    platform = _BrokenBackground(tick_s=3600.0)

    async def _run():
        mode = await select_acquisition_mode(platform, lambda fix: None, AcquisitionOptions())
        await mode.stop()
        return mode

    mode = asyncio.run(_run())
    assert isinstance(mode, ForegroundAcquisition)
    assert mode.is_background is False


def test_simulated_platform_background_delivers_fixes() -> None:
    platform = SimulatedPlatform(route=SimulatedRoute(seed="truck-7", poor_fix_ratio=0.0), tick_s=0.01)
    received: list[LocationSample] = []

    async def _run():
        mode = await select_acquisition_mode(platform, received.append, AcquisitionOptions())
        assert isinstance(mode, BackgroundAcquisition)
        for _ in range(300):
            if len(received) >= 3:
                break
            await asyncio.sleep(0.01)
        await mode.stop()
        assert await platform.background_updates_registered() is False

    asyncio.run(_run())
    assert len(received) >= 3
    assert all(fix.accuracy_m is not None and fix.accuracy_m <= 25.0 for fix in received)
    assert [f.captured_at for f in received] == sorted(f.captured_at for f in received)


def test_simulated_route_is_deterministic_per_seed() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    a = SimulatedRoute(seed="truck-7")
    b = SimulatedRoute(seed="truck-7")
    assert [a.next_fix(15.0, now=now) for _ in range(5)] == [b.next_fix(15.0, now=now) for _ in range(5)]


def test_event_stream_drops_oldest_for_slow_subscriber() -> None:
    async def _run():
        stream = EventStream(maxsize=2)
        q = stream.subscribe()
        for state in ("register", "waiting", "tracking"):
            stream.publish(StateChanged(state=state))
        out = [q.get_nowait().state, q.get_nowait().state]
        stream.unsubscribe(q)
        stream.unsubscribe(q)
        stream.publish(StateChanged(state="waiting"))
        return out, q.empty()

    out, empty = asyncio.run(_run())
    assert out == ["waiting", "tracking"]
    assert empty is True
