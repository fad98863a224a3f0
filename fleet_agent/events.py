from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from .models import LocationSample, Session


logger = logging.getLogger("fleetwatch.events")


@dataclass(frozen=True)
class SampleObserved:
    sample: LocationSample
    accepted: bool


@dataclass(frozen=True)
class StateChanged:
    state: str
    session: Optional[Session] = None


@dataclass(frozen=True)
class PollCompleted:
    at: datetime
    error: bool


@dataclass(frozen=True)
class TrackingError:
    message: str
    scope: Optional[str] = None


Event = Union[SampleObserved, StateChanged, PollCompleted, TrackingError]


class EventStream:
    """Fan-out channel from the agent core to presentation subscribers.

    Each subscriber gets its own bounded asyncio queue. When a slow
    subscriber's queue is full its oldest event is dropped; publishers never
    block.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._maxsize = maxsize
        self._subscribers: List[asyncio.Queue[Event]] = []

    def subscribe(self) -> asyncio.Queue[Event]:
        q: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue[Event]) -> None:
        try:
            self._subscribers.remove(q)
        except ValueError:
            return

    def publish(self, event: Event) -> None:
        for q in list(self._subscribers):
            if q.full():
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug("subscriber queue full; dropped oldest event")
            q.put_nowait(event)
