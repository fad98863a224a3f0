from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from .acquisition import AcquisitionOptions, LocationPlatform
from .client import create_http_session
from .config import AgentSettings
from .connectivity import ConnectivityProbe, SocketConnectivityProbe
from .events import EventStream
from .offline_queue import OfflineQueue
from .session import SessionMachine
from .state_store import StateStore
from .tracking import TrackingController


logger = logging.getLogger("fleetwatch.runtime")


@dataclass
class AgentRuntime:
    settings: AgentSettings
    http: requests.Session
    queue: OfflineQueue
    store: StateStore
    events: EventStream
    controller: TrackingController
    machine: SessionMachine

    async def close(self) -> None:
        await self.machine.shutdown()
        self.http.close()


def build_runtime(
    settings: AgentSettings,
    *,
    platform: LocationPlatform,
    connectivity: Optional[ConnectivityProbe] = None,
    http: Optional[requests.Session] = None,
) -> AgentRuntime:
    """Construct the agent object graph. Must be called before the loop runs any of it."""

    settings.data_dir.mkdir(parents=True, exist_ok=True)

    http = http or create_http_session()
    queue = OfflineQueue(
        str(settings.queue_path),
        capacity=settings.queue_capacity,
        journal_mode=settings.sqlite_journal_mode,
        synchronous=settings.sqlite_synchronous,
    )
    store = StateStore(settings.data_dir)
    events = EventStream()
    probe = connectivity or SocketConnectivityProbe(
        settings.collector_url,
        timeout_s=settings.connectivity_timeout_s,
    )

    controller = TrackingController(
        platform=platform,
        queue=queue,
        http=http,
        connectivity=probe,
        events=events,
        acquisition_options=AcquisitionOptions(
            interval_s=settings.sample_interval_s,
            distance_m=settings.sample_distance_m,
        ),
        max_accuracy_m=settings.max_accuracy_m,
        send_timeout_s=settings.send_timeout_s,
        batch_timeout_s=settings.batch_timeout_s,
        flush_interval_s=settings.flush_interval_s,
        batch_size=settings.batch_size,
    )
    machine = SessionMachine(
        controller=controller,
        store=store,
        http=http,
        collector_url=settings.collector_url,
        device_id=settings.device_id,
        events=events,
        poll_interval_s=settings.poll_interval_s,
        poll_timeout_s=settings.poll_timeout_s,
        register_timeout_s=settings.register_timeout_s,
        end_shift_timeout_s=settings.send_timeout_s,
    )

    logger.info(
        "agent runtime built device_id=%s collector=%s data_dir=%s queue_capacity=%s",
        settings.device_id,
        settings.collector_url,
        settings.data_dir,
        settings.queue_capacity,
    )
    return AgentRuntime(
        settings=settings,
        http=http,
        queue=queue,
        store=store,
        events=events,
        controller=controller,
        machine=machine,
    )
