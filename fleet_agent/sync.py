from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import DeliveryFailure, FlushFailure
from .offline_queue import OfflineQueue


logger = logging.getLogger("fleetwatch.sync")

FLUSH_INTERVAL_S = 30.0
BATCH_SIZE = 50

BatchSender = Callable[[List[Dict[str, Any]]], Awaitable[None]]
ConnectivityCheck = Callable[[], Awaitable[bool]]


@dataclass(frozen=True)
class FlushResult:
    sent: int
    remaining: int
    error: Optional[FlushFailure] = None


class SyncFlusher:
    """Periodically drains the offline queue in ordered batches.

    A flush stops at the first failed batch and removes only the prefix the
    collector confirmed, so the failed batch and everything after it stay
    queued in order for the next run.
    """

    def __init__(
        self,
        *,
        queue: OfflineQueue,
        send_batch: BatchSender,
        is_connected: ConnectivityCheck,
        is_bound: Callable[[], bool],
        interval_s: float = FLUSH_INTERVAL_S,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        self._queue = queue
        self._send_batch = send_batch
        self._is_connected = is_connected
        self._is_bound = is_bound
        self.interval_s = float(interval_s)
        self.batch_size = max(1, int(batch_size))
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """(Re)start the periodic task. Any previous task is cancelled first."""

        self._cancel()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="sync-flusher")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.flush_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("flush run failed")

    async def flush_once(self) -> FlushResult:
        if not await self._is_connected():
            logger.debug("skipping flush: offline")
            return FlushResult(sent=0, remaining=self._queue.count())

        if not self._is_bound():
            logger.debug("skipping flush: no active shift")
            return FlushResult(sent=0, remaining=self._queue.count())

        entries = self._queue.drain()
        if not entries:
            return FlushResult(sent=0, remaining=0)

        logger.info("flushing %s queued pings", len(entries))

        sent = 0
        last_seq: Optional[int] = None
        error: Optional[FlushFailure] = None
        try:
            for idx in range(0, len(entries), self.batch_size):
                if not self._is_bound():
                    error = FlushFailure("shift ended during flush")
                    break
                chunk = entries[idx : idx + self.batch_size]
                try:
                    await self._send_batch([e.payload for e in chunk])
                except DeliveryFailure as exc:
                    error = FlushFailure(f"batch {idx // self.batch_size + 1} failed: {exc}")
                    break
                sent += len(chunk)
                last_seq = chunk[-1].seq
        finally:
            # Confirmed batches leave the queue even if the flush is cancelled.
            if last_seq is not None:
                self._queue.remove_through(last_seq)

        remaining = self._queue.count()
        if remaining == 0:
            self._queue.clear()

        if error is not None:
            logger.warning("flush halted: %s (sent=%s remaining=%s)", error, sent, remaining)
        else:
            logger.info("flushed %s pings (remaining=%s)", sent, remaining)
        return FlushResult(sent=sent, remaining=remaining, error=error)
