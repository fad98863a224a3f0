from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime
from typing import Callable, Optional

import requests

from .client import POLL_TIMEOUT_S, REGISTER_TIMEOUT_S, SEND_TIMEOUT_S, end_shift, fetch_shift_status, register_operator
from .errors import DeliveryFailure, PermissionDenied, PollFailure, RegistrationFailure, SessionStateError
from .events import EventStream, PollCompleted, StateChanged, TrackingError
from .models import LocationSample, OperatorProfile, RegisteredOperator, Session, utcnow
from .state_store import StateStore
from .tracking import TrackingController


logger = logging.getLogger("fleetwatch.session")

POLL_INTERVAL_S = 30.0


class SessionState(str, enum.Enum):
    LOADING = "loading"
    REGISTER = "register"
    WAITING = "waiting"
    TRACKING = "tracking"


class SessionMachine:
    """Drives register / waiting / tracking from server-authoritative shift state.

    Only one poll task exists at a time. In WAITING it polls immediately on
    entry and then every `poll_interval_s`; in TRACKING the first poll comes
    one interval after entry. Transitions triggered by a poll run on the poll
    task itself, which keeps running in the new state.
    """

    def __init__(
        self,
        *,
        controller: TrackingController,
        store: StateStore,
        http: requests.Session,
        collector_url: str,
        device_id: str,
        events: Optional[EventStream] = None,
        poll_interval_s: float = POLL_INTERVAL_S,
        poll_timeout_s: float = POLL_TIMEOUT_S,
        register_timeout_s: float = REGISTER_TIMEOUT_S,
        end_shift_timeout_s: float = SEND_TIMEOUT_S,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.controller = controller
        self.store = store
        self._http = http
        self.collector_url = collector_url
        self.device_id = device_id
        self._events = events
        self.poll_interval_s = float(poll_interval_s)
        self.poll_timeout_s = float(poll_timeout_s)
        self.register_timeout_s = float(register_timeout_s)
        self.end_shift_timeout_s = float(end_shift_timeout_s)
        self._clock = clock

        self.state = SessionState.LOADING
        self.operator: Optional[RegisteredOperator] = None
        self.session: Optional[Session] = None
        self.last_sample: Optional[LocationSample] = None
        self.last_poll_at: Optional[datetime] = None
        self.poll_error = False
        self.permission_error: Optional[PermissionDenied] = None

        self._poll_task: Optional[asyncio.Task[None]] = None
        self._poll_now = False

    # Transitions

    async def boot(self) -> SessionState:
        """Resume a persisted shift, else go to WAITING or REGISTER."""

        if self.state != SessionState.LOADING:
            raise SessionStateError(f"boot() is only valid while loading (state={self.state.value})")

        session = self.store.load_session()
        if session is not None:
            if await self._begin_tracking(session):
                logger.info("resumed shift on asset=%s", session.asset.id)
                return self.state
            # The waiting poll re-creates the session once tracking can start.
            self.store.remove_session()

        operator = self.store.load_operator()
        if operator is not None:
            self.operator = operator
            self._enter_waiting()
        else:
            self._set_state(SessionState.REGISTER)
        return self.state

    async def register(self, profile: OperatorProfile) -> RegisteredOperator:
        if self.state != SessionState.REGISTER:
            raise SessionStateError(f"register() is only valid in REGISTER (state={self.state.value})")
        if not profile.name.strip():
            raise RegistrationFailure("Please enter your full name.")

        operator = await asyncio.to_thread(
            register_operator,
            self._http,
            self.collector_url,
            profile,
            self.device_id,
            timeout_s=self.register_timeout_s,
        )
        self.store.save_operator(operator)
        self.operator = operator
        logger.info("registered operator id=%s", operator.id)
        self._enter_waiting()
        return operator

    async def unregister(self) -> None:
        if self.state == SessionState.TRACKING:
            raise SessionStateError("cannot unregister while a shift is active")

        await self._stop_polling()
        # A poll cancelled mid-transition may have bound the controller.
        await self.controller.stop_tracking()
        self.store.remove_operator()
        self.operator = None
        self.poll_error = False
        self.last_poll_at = None
        logger.info("operator unregistered")
        self._set_state(SessionState.REGISTER)

    async def end_shift(self) -> None:
        """Operator-initiated shift end. Local teardown happens even if the collector call fails."""

        if self.state != SessionState.TRACKING or self.session is None:
            raise SessionStateError("no active shift to end")

        session = self.session
        try:
            await asyncio.to_thread(
                end_shift,
                self._http,
                self.collector_url,
                session.asset.id,
                session.operator.id,
                timeout_s=self.end_shift_timeout_s,
            )
        except DeliveryFailure as exc:
            logger.warning("end-shift call failed, ending locally: %s", exc)
        if self.session is not session or self.state != SessionState.TRACKING:
            # A tracking poll already ended this shift while the call was in flight.
            logger.info("shift on asset=%s already ended", session.asset.id)
            return
        await self._end_tracking()

    async def shutdown(self) -> None:
        """Stop polling and acquisition. Persisted records stay for the next boot."""

        await self._stop_polling()
        await self.controller.stop_tracking()
        logger.info("session machine shut down (state=%s)", self.state.value)

    # Polling

    async def poll_once(self) -> None:
        if self.state == SessionState.WAITING:
            await self._poll_waiting()
        elif self.state == SessionState.TRACKING:
            await self._poll_tracking()

    async def _poll_waiting(self) -> None:
        operator = self.operator
        if operator is None:
            return

        try:
            status = await asyncio.to_thread(
                fetch_shift_status,
                self._http,
                self.collector_url,
                operator.id,
                timeout_s=self.poll_timeout_s,
            )
        except PollFailure as exc:
            if exc.status_code is not None:
                self.last_poll_at = self._clock()
            self.poll_error = True
            logger.warning("shift poll failed: %s", exc)
            self._publish(PollCompleted(at=self._clock(), error=True))
            return

        self.last_poll_at = self._clock()
        self.poll_error = False
        self._publish(PollCompleted(at=self.last_poll_at, error=False))

        if not status.is_active or status.asset is None:
            return

        session = Session(
            operator=operator,
            asset=status.asset,
            started_at=status.shift_started_at or self._clock(),
        )
        self.controller.clear_queue()
        if await self._begin_tracking(session):
            logger.info("shift started on asset=%s", session.asset.id)

    async def _poll_tracking(self) -> None:
        session = self.session
        if session is None:
            return

        try:
            status = await asyncio.to_thread(
                fetch_shift_status,
                self._http,
                self.collector_url,
                session.operator.id,
                timeout_s=self.poll_timeout_s,
            )
        except PollFailure as exc:
            logger.debug("tracking poll failed, ignoring: %s", exc)
            return

        if not status.on_shift:
            logger.info("shift ended by collector for asset=%s", session.asset.id)
            await self._end_tracking()

    def _start_polling(self, *, immediate: bool) -> None:
        self._poll_now = immediate
        task = self._poll_task
        if task is not None and not task.done():
            if task is asyncio.current_task():
                return
            task.cancel()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(), name="shift-poll")

    async def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll_loop(self) -> None:
        while True:
            if self._poll_now:
                self._poll_now = False
            else:
                await asyncio.sleep(self.poll_interval_s)
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("shift poll raised")

    # Helpers

    async def _begin_tracking(self, session: Session) -> bool:
        """Bind and start tracking for `session`. On failure nothing stays bound."""

        self.session = session
        self.operator = session.operator
        try:
            self.controller.init(self.collector_url, session.asset.id, session.operator.id)
            await self.controller.start_tracking(self._on_sample)
            self.store.save_session(session)
        except PermissionDenied as exc:
            await self._abort_tracking()
            self._report_permission(exc)
            return False
        except Exception as exc:
            logger.exception("tracking start failed for asset=%s", session.asset.id)
            await self._abort_tracking()
            self._publish(TrackingError(message=str(exc) or type(exc).__name__))
            return False

        self.permission_error = None
        self._set_state(SessionState.TRACKING)
        self._start_polling(immediate=False)
        return True

    async def _abort_tracking(self) -> None:
        try:
            await self.controller.stop_tracking()
        except Exception:
            logger.exception("stopping tracking after a failed start raised")
        self.session = None

    async def _end_tracking(self) -> None:
        await self.controller.stop_tracking()
        self.controller.clear_queue()
        self.store.remove_session()
        self.session = None
        self.last_sample = None
        self._enter_waiting()

    def _enter_waiting(self) -> None:
        self._set_state(SessionState.WAITING)
        self._start_polling(immediate=True)

    def _on_sample(self, sample: LocationSample) -> None:
        self.last_sample = sample

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        logger.info("state %s -> %s", self.state.value, state.value)
        self.state = state
        self._publish(StateChanged(state=state.value, session=self.session))

    def _report_permission(self, exc: PermissionDenied) -> None:
        self.permission_error = exc
        logger.warning("tracking not started: %s", exc)
        self._publish(TrackingError(message=str(exc), scope=exc.scope))

    def _publish(self, event) -> None:
        if self._events is not None:
            self._events.publish(event)
