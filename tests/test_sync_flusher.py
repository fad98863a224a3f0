from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from fleet_agent.errors import DeliveryFailure
from fleet_agent.models import LocationSample, QueuedPing
from fleet_agent.offline_queue import OfflineQueue
from fleet_agent.sync import SyncFlusher


_T0 = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


def _ping(idx: int) -> QueuedPing:
    sample = LocationSample(
        latitude=37.0,
        longitude=-102.0 + idx / 1000.0,
        captured_at=_T0 + timedelta(seconds=idx),
        accuracy_m=5.0,
    )
    return QueuedPing(sample=sample, asset_id="truck-7", operator_id="op-1")


class _FakeSender:
    def __init__(self, *, fail_on_calls: set[int] | None = None, hang_on_call: int | None = None) -> None:
        self.fail_on_calls = fail_on_calls or set()
        self.hang_on_call = hang_on_call
        self.batches: list[list[dict[str, Any]]] = []
        self.on_send = None

    async def __call__(self, payloads: list[dict[str, Any]]) -> None:
        call_no = len(self.batches) + 1
        self.batches.append(list(payloads))
        if self.on_send is not None:
            self.on_send(call_no)
        if call_no == self.hang_on_call:
            await asyncio.Event().wait()
        if call_no in self.fail_on_calls:
            raise DeliveryFailure("batch post failed: 500", status_code=500)


def _flusher(queue: OfflineQueue, sender: _FakeSender, *, connected: bool = True, bound: bool = True) -> SyncFlusher:
    async def _is_connected() -> bool:
        return connected

    return SyncFlusher(
        queue=queue,
        send_batch=sender,
        is_connected=_is_connected,
        is_bound=lambda: bound,
        interval_s=30.0,
        batch_size=50,
    )


def _fill(queue: OfflineQueue, n: int) -> None:
    for idx in range(n):
        queue.append(_ping(idx))


def test_flush_sends_everything_in_ordered_batches(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    _fill(queue, 120)
    sender = _FakeSender()

    result = asyncio.run(_flusher(queue, sender).flush_once())

    assert [len(b) for b in sender.batches] == [50, 50, 20]
    flat = [p["captured_at"] for b in sender.batches for p in b]
    assert flat == [_ping(i).to_payload()["captured_at"] for i in range(120)]
    assert result.sent == 120
    assert result.remaining == 0
    assert result.error is None
    assert queue.count() == 0


def test_partial_flush_keeps_failed_batch_and_suffix(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    _fill(queue, 120)
    sender = _FakeSender(fail_on_calls={2})

    result = asyncio.run(_flusher(queue, sender).flush_once())

    # Stops at the first failed batch; the third batch is never attempted.
    assert len(sender.batches) == 2
    assert result.sent == 50
    assert result.remaining == 70
    assert result.error is not None

    remaining = [QueuedPing.from_payload(e.payload) for e in queue.drain()]
    assert remaining == [_ping(i) for i in range(50, 120)]


def test_third_batch_failure_keeps_only_third_batch(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    _fill(queue, 150)
    sender = _FakeSender(fail_on_calls={3})

    result = asyncio.run(_flusher(queue, sender).flush_once())

    assert len(sender.batches) == 3
    assert result.sent == 100
    assert result.remaining == 50
    remaining = [QueuedPing.from_payload(e.payload) for e in queue.drain()]
    assert remaining == [_ping(i) for i in range(100, 150)]


def test_cancelled_flush_still_removes_confirmed_batches(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    _fill(queue, 120)
    sender = _FakeSender(hang_on_call=2)

    async def _run() -> None:
        task = asyncio.create_task(_flusher(queue, sender).flush_once())
        while len(sender.batches) < 2:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())
    remaining = [QueuedPing.from_payload(e.payload) for e in queue.drain()]
    assert remaining == [_ping(i) for i in range(50, 120)]


def test_first_batch_failure_leaves_queue_untouched(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    _fill(queue, 10)
    sender = _FakeSender(fail_on_calls={1})

    result = asyncio.run(_flusher(queue, sender).flush_once())

    assert result.sent == 0
    assert queue.count() == 10


def test_flush_skipped_when_offline_or_unbound(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    _fill(queue, 3)

    sender = _FakeSender()
    offline = asyncio.run(_flusher(queue, sender, connected=False).flush_once())
    unbound = asyncio.run(_flusher(queue, sender, bound=False).flush_once())

    assert sender.batches == []
    assert offline.sent == unbound.sent == 0
    assert offline.remaining == unbound.remaining == 3


def test_empty_queue_sends_nothing(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    sender = _FakeSender()

    result = asyncio.run(_flusher(queue, sender).flush_once())

    assert sender.batches == []
    assert result.sent == 0 and result.remaining == 0


def test_append_during_flush_survives(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    _fill(queue, 3)
    sender = _FakeSender()
    sender.on_send = lambda call_no: queue.append(_ping(99))

    result = asyncio.run(_flusher(queue, sender).flush_once())

    assert result.sent == 3
    assert result.remaining == 1
    remaining = [QueuedPing.from_payload(e.payload) for e in queue.drain()]
    assert remaining == [_ping(99)]


def test_unbinding_mid_flush_stops_before_next_batch(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    _fill(queue, 60)
    state = {"bound": True}
    sender = _FakeSender()
    sender.on_send = lambda call_no: state.update(bound=False)

    async def _is_connected() -> bool:
        return True

    flusher = SyncFlusher(
        queue=queue,
        send_batch=sender,
        is_connected=_is_connected,
        is_bound=lambda: state["bound"],
        batch_size=50,
    )
    result = asyncio.run(flusher.flush_once())

    assert len(sender.batches) == 1
    assert result.sent == 50
    assert queue.count() == 10


def test_start_twice_leaves_one_running_task(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    flusher = _flusher(queue, _FakeSender())

    async def _run() -> None:
        flusher.start()
        first = flusher._task  # noqa: SLF001 - test inspects task replacement
        flusher.start()
        second = flusher._task  # noqa: SLF001
        await asyncio.sleep(0)

        assert first is not None and second is not None and first is not second
        assert first.cancelled() or first.done()
        assert flusher.running is True
        running = [t for t in asyncio.all_tasks() if t.get_name() == "sync-flusher" and not t.done()]
        assert running == [second]

        await flusher.stop()
        assert flusher.running is False
        await flusher.stop()

    asyncio.run(_run())


def test_periodic_loop_flushes_after_interval(tmp_path: Path) -> None:
    queue = OfflineQueue(str(tmp_path / "queue.sqlite"))
    _fill(queue, 5)
    sender = _FakeSender()

    async def _is_connected() -> bool:
        return True

    flusher = SyncFlusher(
        queue=queue,
        send_batch=sender,
        is_connected=_is_connected,
        is_bound=lambda: True,
        interval_s=0.01,
    )

    async def _run() -> None:
        flusher.start()
        for _ in range(200):
            if queue.count() == 0:
                break
            await asyncio.sleep(0.01)
        await flusher.stop()

    asyncio.run(_run())
    assert queue.count() == 0
    assert len(sender.batches) >= 1
