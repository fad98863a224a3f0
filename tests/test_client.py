from __future__ import annotations

import socket
from datetime import datetime, timezone
from typing import Any

import pytest
import requests
import urllib3.util.connection

from fleet_agent.client import (
    BATCH_TIMEOUT_S,
    SEND_TIMEOUT_S,
    create_http_session,
    end_shift,
    fetch_shift_status,
    post_location,
    post_location_batch,
    register_operator,
)
from fleet_agent.errors import DeliveryFailure, PollFailure, RegistrationFailure
from fleet_agent.models import OperatorProfile


API = "http://collector.test/api"


class _FakeResponse:
    def __init__(self, *, status_code: int, text: str = "", body: object | None = None) -> None:
        self.status_code = status_code
        self.text = text
        self._body = body

    def json(self) -> object:
        if self._body is None:
            raise ValueError("no json")
        return self._body


class _FakeHttpSession:
    def __init__(self, responses: list[object] | None = None) -> None:
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    def _next(self, method: str, url: str, **kwargs: Any) -> _FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0) if self.responses else _FakeResponse(status_code=200, body={})
        if isinstance(item, Exception):
            raise item
        assert isinstance(item, _FakeResponse)
        return item

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        return self._next("POST", url, **kwargs)

    def get(self, url: str, **kwargs: Any) -> _FakeResponse:
        return self._next("GET", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> _FakeResponse:
        return self._next("PUT", url, **kwargs)


def test_post_location_uses_single_send_timeout() -> None:
    http = _FakeHttpSession([_FakeResponse(status_code=201)])
    post_location(http, API + "/", {"asset_id": "truck-7"})  # type: ignore[arg-type]

    call = http.calls[0]
    assert call["url"] == "http://collector.test/api/locations"
    assert call["json"] == {"asset_id": "truck-7"}
    assert call["timeout"] == SEND_TIMEOUT_S == 8.0


@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse(status_code=500, text="boom"),
        _FakeResponse(status_code=404, text="missing"),
        requests.Timeout("read timed out"),
        requests.ConnectionError("refused"),
    ],
)
def test_post_location_failures_raise_delivery_failure(response: object) -> None:
    http = _FakeHttpSession([response])
    with pytest.raises(DeliveryFailure):
        post_location(http, API, {"asset_id": "truck-7"})  # type: ignore[arg-type]


def test_batch_post_wraps_samples_and_uses_batch_timeout() -> None:
    http = _FakeHttpSession([_FakeResponse(status_code=200)])
    post_location_batch(http, API, [{"n": 1}, {"n": 2}])  # type: ignore[arg-type]

    call = http.calls[0]
    assert call["url"] == "http://collector.test/api/locations/batch"
    assert call["json"] == {"samples": [{"n": 1}, {"n": 2}]}
    assert call["timeout"] == BATCH_TIMEOUT_S == 15.0


def test_batch_post_non_2xx_carries_status_code() -> None:
    http = _FakeHttpSession([_FakeResponse(status_code=503, text="unavailable")])
    with pytest.raises(DeliveryFailure) as excinfo:
        post_location_batch(http, API, [{"n": 1}])  # type: ignore[arg-type]
    assert excinfo.value.status_code == 503


def test_fetch_shift_status_parses_body() -> None:
    http = _FakeHttpSession(
        [
            _FakeResponse(
                status_code=200,
                body={"on_shift": True, "asset": {"id": "truck-7"}, "shift_started_at": None},
            )
        ]
    )
    status = fetch_shift_status(http, API, "op-1")  # type: ignore[arg-type]

    assert http.calls[0]["url"] == "http://collector.test/api/shift-status/op-1"
    assert status.is_active is True
    assert status.shift_started_at is None


def test_fetch_shift_status_failures() -> None:
    http = _FakeHttpSession(
        [
            _FakeResponse(status_code=502, text="bad gateway"),
            requests.ConnectionError("offline"),
            _FakeResponse(status_code=200, body=["not", "an", "object"]),
            _FakeResponse(status_code=200, body={"on_shift": "maybe"}),
        ]
    )
    with pytest.raises(PollFailure) as excinfo:
        fetch_shift_status(http, API, "op-1")  # type: ignore[arg-type]
    assert excinfo.value.status_code == 502

    for _ in range(3):
        with pytest.raises(PollFailure) as excinfo:
            fetch_shift_status(http, API, "op-1")  # type: ignore[arg-type]
        assert excinfo.value.status_code is None


def test_register_operator_sends_trimmed_profile() -> None:
    http = _FakeHttpSession(
        [_FakeResponse(status_code=201, body={"id": "op-9", "name": "Dana Reyes", "employee_id": "E-17"})]
    )
    operator = register_operator(
        http,  # type: ignore[arg-type]
        API,
        OperatorProfile(name="  Dana Reyes ", phone="  ", employee_id="E-17"),
        "pixel-7",
    )

    assert http.calls[0]["json"] == {"name": "Dana Reyes", "device_id": "pixel-7", "employee_id": "E-17"}
    assert operator.id == "op-9"
    assert operator.phone is None


def test_register_operator_surfaces_server_message() -> None:
    http = _FakeHttpSession(
        [
            _FakeResponse(status_code=400, body={"error": {"code": "HTTP_ERROR", "message": "name is required"}}),
            _FakeResponse(status_code=409, body={"error": "device already registered"}),
            _FakeResponse(status_code=500, text="oops"),
            requests.ConnectionError("offline"),
        ]
    )
    messages = []
    for _ in range(4):
        with pytest.raises(RegistrationFailure) as excinfo:
            register_operator(http, API, OperatorProfile(name="Dana"), "pixel-7")  # type: ignore[arg-type]
        messages.append(str(excinfo.value))

    assert messages[0] == "name is required"
    assert messages[1] == "device already registered"
    assert messages[2] == "Registration failed"
    assert messages[3].startswith("Could not reach the server")


def test_end_shift_puts_operator_id() -> None:
    http = _FakeHttpSession([_FakeResponse(status_code=200, body={"ended": True})])
    end_shift(http, API, "truck-7", "op-1")  # type: ignore[arg-type]

    call = http.calls[0]
    assert call["method"] == "PUT"
    assert call["url"] == "http://collector.test/api/assets/truck-7/end-shift"
    assert call["json"] == {"operator_id": "op-1"}


def test_fetch_shift_status_accepts_camel_case_body() -> None:
    http = _FakeHttpSession(
        [
            _FakeResponse(
                status_code=200,
                body={"onShift": True, "asset": {"id": "V1"}, "shiftStartedAt": "2024-01-01T08:00:00Z"},
            )
        ]
    )
    status = fetch_shift_status(http, API, "op-1")  # type: ignore[arg-type]

    assert status.is_active is True
    assert status.asset is not None and status.asset.id == "V1"
    assert status.shift_started_at == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("error", [socket.timeout("timed out"), ConnectionRefusedError(111, "refused")])
def test_deliveries_make_one_connect_attempt(monkeypatch: pytest.MonkeyPatch, error: OSError) -> None:
    attempts: list[tuple[Any, ...]] = []

    def _create_connection(address: Any, *args: Any, **kwargs: Any) -> Any:
        attempts.append(address)
        raise error

    monkeypatch.setattr(urllib3.util.connection, "create_connection", _create_connection)
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    http = create_http_session()

    with pytest.raises(DeliveryFailure):
        post_location(http, "http://127.0.0.1:9/api", {"n": 1}, timeout_s=0.5)
    assert len(attempts) == 1

    with pytest.raises(DeliveryFailure):
        post_location_batch(http, "http://127.0.0.1:9/api", [{"n": 1}], timeout_s=0.5)
    assert len(attempts) == 2
