from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from .accuracy import MAX_ACCEPTABLE_ACCURACY_M, accept_sample
from .acquisition import AcquisitionMode, AcquisitionOptions, LocationPlatform, select_acquisition_mode
from .client import BATCH_TIMEOUT_S, SEND_TIMEOUT_S, post_location, post_location_batch
from .connectivity import ConnectivityProbe
from .errors import DeliveryFailure, PermissionDenied
from .events import EventStream, SampleObserved
from .models import LocationSample, QueuedPing
from .offline_queue import OfflineQueue
from .sync import BATCH_SIZE, FLUSH_INTERVAL_S, SyncFlusher


logger = logging.getLogger("fleetwatch.tracking")

SampleCallback = Callable[[LocationSample], None]


class SampleOutcome(str, enum.Enum):
    SENT = "sent"
    QUEUED = "queued"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class TrackingController:
    """Owns acquisition, the bound asset/operator identifiers, and the flusher.

    Fixes reported by the acquisition mode go through an inbox consumed by a
    single worker task, so they are handled strictly in arrival order even
    when a delivery is slow.
    """

    def __init__(
        self,
        *,
        platform: LocationPlatform,
        queue: OfflineQueue,
        http: requests.Session,
        connectivity: ConnectivityProbe,
        events: Optional[EventStream] = None,
        acquisition_options: Optional[AcquisitionOptions] = None,
        max_accuracy_m: float = MAX_ACCEPTABLE_ACCURACY_M,
        send_timeout_s: float = SEND_TIMEOUT_S,
        batch_timeout_s: float = BATCH_TIMEOUT_S,
        flush_interval_s: float = FLUSH_INTERVAL_S,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        self._platform = platform
        self._queue = queue
        self._http = http
        self._connectivity = connectivity
        self._events = events
        self._options = acquisition_options or AcquisitionOptions()
        self.max_accuracy_m = float(max_accuracy_m)
        self.send_timeout_s = float(send_timeout_s)
        self.batch_timeout_s = float(batch_timeout_s)

        self._collector_url: Optional[str] = None
        self._asset_id: Optional[str] = None
        self._operator_id: Optional[str] = None

        self._mode: Optional[AcquisitionMode] = None
        self._on_sample: Optional[SampleCallback] = None
        self._inbox: asyncio.Queue[LocationSample] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None

        self.flusher = SyncFlusher(
            queue=queue,
            send_batch=self._send_batch,
            is_connected=self._is_connected,
            is_bound=lambda: self.is_bound,
            interval_s=flush_interval_s,
            batch_size=batch_size,
        )

    # State

    @property
    def is_bound(self) -> bool:
        return bool(self._collector_url and self._asset_id and self._operator_id)

    @property
    def is_tracking(self) -> bool:
        return self._mode is not None

    @property
    def is_using_background_mode(self) -> bool:
        return self._mode is not None and bool(self._mode.is_background)

    @property
    def asset_id(self) -> Optional[str]:
        return self._asset_id

    @property
    def operator_id(self) -> Optional[str]:
        return self._operator_id

    # Lifecycle

    def init(self, collector_url: str, asset_id: str, operator_id: str) -> None:
        """Bind identifiers for subsequent samples and (re)start the flusher."""

        self._collector_url = collector_url
        self._asset_id = asset_id
        self._operator_id = operator_id
        self.flusher.start()
        logger.info("bound asset=%s operator=%s collector=%s", asset_id, operator_id, collector_url)

    async def start_tracking(self, on_sample: Optional[SampleCallback] = None) -> None:
        """Request permissions and start the best available acquisition mode.

        Raises PermissionDenied when either permission is refused; nothing is
        registered with the platform in that case.
        """

        self._on_sample = on_sample

        if not await self._platform.request_foreground_permission():
            raise PermissionDenied("foreground")
        if not await self._platform.request_background_permission():
            raise PermissionDenied("background")

        if self._mode is not None:
            await self._mode.stop()
            self._mode = None

        self._start_worker()
        self._mode = await select_acquisition_mode(self._platform, self._on_fix, self._options)
        logger.info(
            "tracking started (mode=%s)",
            "background" if self._mode.is_background else "foreground",
        )

    async def stop_tracking(self) -> None:
        """Deregister acquisition, cancel the flusher, and unbind. Safe to call twice."""

        mode = self._mode
        self._mode = None
        if mode is not None:
            await mode.stop()

        await self.flusher.stop()
        await self._stop_worker()

        was_bound = self.is_bound
        self._collector_url = None
        self._asset_id = None
        self._operator_id = None
        self._on_sample = None
        if mode is not None or was_bound:
            logger.info("tracking stopped")

    def clear_queue(self) -> None:
        self._queue.clear()

    def queue_depth(self) -> int:
        return self._queue.count()

    def queue_metrics(self) -> Dict[str, int]:
        return self._queue.metrics()

    # Per-sample path

    def _on_fix(self, sample: LocationSample) -> None:
        if self._worker is None or self._worker.done():
            logger.warning("dropping fix received while tracking is stopped")
            return
        self._inbox.put_nowait(sample)

    def _start_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._worker = asyncio.get_running_loop().create_task(self._process_inbox(), name="sample-worker")

    async def _stop_worker(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        # Fixes captured before the stop are kept for the next flush.
        while not self._inbox.empty():
            sample = self._inbox.get_nowait()
            if self._asset_id and self._operator_id and accept_sample(sample, self.max_accuracy_m):
                self._queue.append(QueuedPing(sample=sample, asset_id=self._asset_id, operator_id=self._operator_id))

    async def _process_inbox(self) -> None:
        while True:
            sample = await self._inbox.get()
            try:
                await self.handle_sample(sample)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("sample handling failed")

    async def handle_sample(self, sample: LocationSample) -> SampleOutcome:
        collector_url, asset_id, operator_id = self._collector_url, self._asset_id, self._operator_id
        if not (collector_url and asset_id and operator_id):
            logger.warning("skipping sample: asset/operator not bound")
            return SampleOutcome.SKIPPED

        if not accept_sample(sample, self.max_accuracy_m):
            logger.warning("dropping low-accuracy fix: +/-%.0fm", sample.accuracy_m)
            self._display(sample, accepted=False)
            return SampleOutcome.REJECTED

        self._display(sample, accepted=True)

        ping = QueuedPing(sample=sample, asset_id=asset_id, operator_id=operator_id)
        if not await self._is_connected():
            self._queue.append(ping)
            logger.info("offline -> queued (depth=%s)", self._queue.count())
            return SampleOutcome.QUEUED

        try:
            await asyncio.to_thread(
                post_location,
                self._http,
                collector_url,
                ping.to_payload(),
                timeout_s=self.send_timeout_s,
            )
        except DeliveryFailure as exc:
            self._queue.append(ping)
            logger.info("%s -> queued (depth=%s)", exc, self._queue.count())
            return SampleOutcome.QUEUED
        except asyncio.CancelledError:
            self._queue.append(ping)
            raise
        return SampleOutcome.SENT

    def _display(self, sample: LocationSample, *, accepted: bool) -> None:
        if self._on_sample is not None:
            try:
                self._on_sample(sample)
            except Exception:
                logger.exception("sample display callback failed")
        if self._events is not None:
            self._events.publish(SampleObserved(sample=sample, accepted=accepted))

    # Collaborators

    async def _is_connected(self) -> bool:
        try:
            return bool(await asyncio.to_thread(self._connectivity.is_connected))
        except Exception as exc:
            logger.warning("connectivity probe failed: %r", exc)
            return False

    async def _send_batch(self, payloads: List[Dict[str, Any]]) -> None:
        collector_url = self._collector_url
        if not collector_url:
            raise DeliveryFailure("no collector bound")
        await asyncio.to_thread(
            post_location_batch,
            self._http,
            collector_url,
            payloads,
            timeout_s=self.batch_timeout_s,
        )
