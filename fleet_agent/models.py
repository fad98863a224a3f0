from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_dt(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _require_str(obj: Mapping[str, Any], key: str) -> str:
    v = obj.get(key)
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"'{key}' must be a non-empty string")
    return v


def _optional_str(obj: Mapping[str, Any], key: str) -> Optional[str]:
    v = obj.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        raise ValueError(f"'{key}' must be a string")
    return v or None


def _key(obj: Mapping[str, Any], key: str, alias: str) -> str:
    # Collector responses may use camelCase field names.
    return key if key in obj or alias not in obj else alias


def _require_float(obj: Mapping[str, Any], key: str) -> float:
    v = obj.get(key)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ValueError(f"'{key}' must be a number")
    return float(v)


def _optional_float(obj: Mapping[str, Any], key: str) -> Optional[float]:
    v = obj.get(key)
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ValueError(f"'{key}' must be a number")
    f = float(v)
    if math.isnan(f):
        return None
    return f


@dataclass(frozen=True)
class LocationSample:
    latitude: float
    longitude: float
    captured_at: datetime
    accuracy_m: Optional[float] = None
    speed_mps: Optional[float] = None
    heading_deg: Optional[float] = None
    altitude_m: Optional[float] = None


@dataclass(frozen=True)
class QueuedPing:
    """A sample tagged with the asset/operator it was captured under."""

    sample: LocationSample
    asset_id: str
    operator_id: str

    def to_payload(self) -> Dict[str, Any]:
        s = self.sample
        return {
            "asset_id": self.asset_id,
            "operator_id": self.operator_id,
            "latitude": s.latitude,
            "longitude": s.longitude,
            "accuracy_m": s.accuracy_m,
            "speed_mps": s.speed_mps,
            "heading_deg": s.heading_deg,
            "altitude_m": s.altitude_m,
            "captured_at": format_dt(s.captured_at),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> QueuedPing:
        sample = LocationSample(
            latitude=_require_float(payload, "latitude"),
            longitude=_require_float(payload, "longitude"),
            captured_at=parse_dt(_require_str(payload, "captured_at")),
            accuracy_m=_optional_float(payload, "accuracy_m"),
            speed_mps=_optional_float(payload, "speed_mps"),
            heading_deg=_optional_float(payload, "heading_deg"),
            altitude_m=_optional_float(payload, "altitude_m"),
        )
        return cls(
            sample=sample,
            asset_id=_require_str(payload, "asset_id"),
            operator_id=_require_str(payload, "operator_id"),
        )


@dataclass(frozen=True)
class Asset:
    id: str
    name: str = ""
    plate_number: Optional[str] = None
    type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "plate_number": self.plate_number, "type": self.type}


def parse_asset(payload: Mapping[str, Any]) -> Asset:
    return Asset(
        id=_require_str(payload, "id"),
        name=str(payload.get("name") or ""),
        plate_number=_optional_str(payload, _key(payload, "plate_number", "plateNumber")),
        type=_optional_str(payload, "type"),
    )


@dataclass(frozen=True)
class RegisteredOperator:
    id: str
    name: str
    employee_id: Optional[str] = None
    phone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "employee_id": self.employee_id, "phone": self.phone}


def parse_operator(payload: Mapping[str, Any]) -> RegisteredOperator:
    return RegisteredOperator(
        id=_require_str(payload, "id"),
        name=_require_str(payload, "name"),
        employee_id=_optional_str(payload, _key(payload, "employee_id", "employeeId")),
        phone=_optional_str(payload, "phone"),
    )


@dataclass(frozen=True)
class OperatorProfile:
    """Registration form input."""

    name: str
    phone: Optional[str] = None
    employee_id: Optional[str] = None


@dataclass(frozen=True)
class Session:
    operator: RegisteredOperator
    asset: Asset
    started_at: datetime

    def elapsed_minutes(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        return max(0, int((current - self.started_at).total_seconds() // 60))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operator": self.operator.to_dict(),
            "asset": self.asset.to_dict(),
            "started_at": format_dt(self.started_at),
        }


def parse_session(payload: Mapping[str, Any]) -> Session:
    operator_raw = payload.get("operator")
    asset_raw = payload.get("asset")
    if not isinstance(operator_raw, Mapping):
        raise ValueError("'operator' must be a mapping")
    if not isinstance(asset_raw, Mapping):
        raise ValueError("'asset' must be a mapping")
    return Session(
        operator=parse_operator(operator_raw),
        asset=parse_asset(asset_raw),
        started_at=parse_dt(_require_str(payload, "started_at")),
    )


@dataclass(frozen=True)
class ShiftStatus:
    on_shift: bool
    asset: Optional[Asset] = None
    shift_started_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.on_shift and self.asset is not None


def parse_shift_status(payload: Mapping[str, Any]) -> ShiftStatus:
    on_shift_key = _key(payload, "on_shift", "onShift")
    on_shift = payload.get(on_shift_key)
    if not isinstance(on_shift, bool):
        raise ValueError(f"'{on_shift_key}' must be a bool")

    asset_raw = payload.get(_key(payload, "asset", "assignedAsset"))
    asset = parse_asset(asset_raw) if isinstance(asset_raw, Mapping) else None

    started_raw = payload.get(_key(payload, "shift_started_at", "shiftStartedAt"))
    started_at = parse_dt(started_raw) if isinstance(started_raw, str) and started_raw.strip() else None

    return ShiftStatus(on_shift=on_shift, asset=asset, shift_started_at=started_at)


def format_elapsed(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} min"
    return f"{minutes // 60}h {minutes % 60}m"


def speed_kmh(sample: Optional[LocationSample]) -> float:
    if sample is None or sample.speed_mps is None or sample.speed_mps < 0:
        return 0.0
    return round(sample.speed_mps * 3.6, 1)
