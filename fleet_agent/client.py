from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import DeliveryFailure, PollFailure, RegistrationFailure
from .models import (
    OperatorProfile,
    RegisteredOperator,
    ShiftStatus,
    parse_operator,
    parse_shift_status,
)


logger = logging.getLogger("fleetwatch.client")

SEND_TIMEOUT_S = 8.0
BATCH_TIMEOUT_S = 15.0
POLL_TIMEOUT_S = 10.0
REGISTER_TIMEOUT_S = 15.0

# Only status-coded GET responses are retried; connect and read errors fail
# the call at once so deliveries fall back to the queue within their timeout.
_retry_strategy = Retry(
    total=2,
    connect=0,
    read=0,
    other=0,
    status=2,
    backoff_factor=0.5,
    status_forcelist=[502, 503, 504],
    allowed_methods=["GET"],
    raise_on_status=False,
)


def create_http_session() -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=1, pool_maxsize=4, max_retries=_retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _url(api_url: str, path: str) -> str:
    return f"{api_url.rstrip('/')}/{path.lstrip('/')}"


def _ok(resp: Any) -> bool:
    return 200 <= int(resp.status_code) < 300


def post_location(
    session: requests.Session,
    api_url: str,
    payload: Mapping[str, Any],
    *,
    timeout_s: float = SEND_TIMEOUT_S,
) -> None:
    """POST one ping. Raises DeliveryFailure on transport errors and non-2xx."""

    try:
        resp = session.post(_url(api_url, "/locations"), json=dict(payload), timeout=timeout_s)
    except requests.RequestException as exc:
        raise DeliveryFailure(f"location post failed: {exc!r}") from exc
    if not _ok(resp):
        raise DeliveryFailure(
            f"location post failed: {resp.status_code} {resp.text[:200]}",
            status_code=resp.status_code,
        )


def post_location_batch(
    session: requests.Session,
    api_url: str,
    payloads: List[Dict[str, Any]],
    *,
    timeout_s: float = BATCH_TIMEOUT_S,
) -> None:
    try:
        resp = session.post(
            _url(api_url, "/locations/batch"),
            json={"samples": payloads},
            timeout=timeout_s,
        )
    except requests.RequestException as exc:
        raise DeliveryFailure(f"batch post failed: {exc!r}") from exc
    if not _ok(resp):
        raise DeliveryFailure(
            f"batch post failed: {resp.status_code} {resp.text[:200]}",
            status_code=resp.status_code,
        )


def fetch_shift_status(
    session: requests.Session,
    api_url: str,
    operator_id: str,
    *,
    timeout_s: float = POLL_TIMEOUT_S,
) -> ShiftStatus:
    """GET /shift-status/{operator_id}. Raises PollFailure on any failure."""

    try:
        resp = session.get(_url(api_url, f"/shift-status/{operator_id}"), timeout=timeout_s)
    except requests.RequestException as exc:
        raise PollFailure(f"shift-status fetch failed: {exc!r}") from exc

    if not _ok(resp):
        raise PollFailure(
            f"shift-status fetch failed: {resp.status_code} {resp.text[:200]}",
            status_code=resp.status_code,
        )

    try:
        data = resp.json()
    except ValueError as exc:
        raise PollFailure("shift-status response was not JSON") from exc
    if not isinstance(data, dict):
        raise PollFailure("shift-status response was not a JSON object")

    try:
        return parse_shift_status(data)
    except ValueError as exc:
        raise PollFailure(f"invalid shift-status response: {exc}") from exc


def register_operator(
    session: requests.Session,
    api_url: str,
    profile: OperatorProfile,
    device_id: str,
    *,
    timeout_s: float = REGISTER_TIMEOUT_S,
) -> RegisteredOperator:
    body: Dict[str, Any] = {"name": profile.name.strip(), "device_id": device_id}
    if profile.phone and profile.phone.strip():
        body["phone"] = profile.phone.strip()
    if profile.employee_id and profile.employee_id.strip():
        body["employee_id"] = profile.employee_id.strip()

    try:
        resp = session.post(_url(api_url, "/register"), json=body, timeout=timeout_s)
    except requests.RequestException as exc:
        raise RegistrationFailure(f"Could not reach the server: {exc}") from exc

    if not _ok(resp):
        message = "Registration failed"
        try:
            err = resp.json()
        except ValueError:
            err = None
        if isinstance(err, dict):
            error = err.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                message = error["message"]
            elif isinstance(error, str):
                message = error
            elif isinstance(err.get("detail"), str):
                message = err["detail"]
        raise RegistrationFailure(message)

    try:
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError("response was not a JSON object")
        return parse_operator(data)
    except ValueError as exc:
        raise RegistrationFailure(f"Invalid registration response: {exc}") from exc


def end_shift(
    session: requests.Session,
    api_url: str,
    asset_id: str,
    operator_id: str,
    *,
    timeout_s: float = SEND_TIMEOUT_S,
) -> None:
    try:
        resp = session.put(
            _url(api_url, f"/assets/{asset_id}/end-shift"),
            json={"operator_id": operator_id},
            timeout=timeout_s,
        )
    except requests.RequestException as exc:
        raise DeliveryFailure(f"end-shift failed: {exc!r}") from exc
    if not _ok(resp):
        raise DeliveryFailure(f"end-shift failed: {resp.status_code}", status_code=resp.status_code)
