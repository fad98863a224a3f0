from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


logger = logging.getLogger("fleetwatch.collector.store")


class UnknownOperator(LookupError):
    pass


class ShiftConflict(RuntimeError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class OperatorRecord:
    id: str
    name: str
    device_id: str
    employee_id: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class ShiftRecord:
    operator_id: str
    asset: Dict[str, Any]
    started_at: datetime


@dataclass
class IngestResult:
    accepted: int = 0
    duplicates: int = 0


@dataclass
class CollectorStore:
    """In-memory operators, shifts, and accepted pings.

    Pings are de-duplicated on (asset_id, captured_at) so a batch replayed
    after a lost response is accepted without double-counting.
    """

    operators: Dict[str, OperatorRecord] = field(default_factory=dict)
    shifts: Dict[str, ShiftRecord] = field(default_factory=dict)
    pings: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    _seen: set[Tuple[str, datetime]] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    # Operators

    def register(
        self,
        *,
        name: str,
        device_id: str,
        employee_id: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> OperatorRecord:
        with self._lock:
            # Re-registering from the same device keeps the operator id.
            for rec in self.operators.values():
                if rec.device_id == device_id:
                    rec.name = name
                    rec.employee_id = employee_id
                    rec.phone = phone
                    logger.info("operator re-registered id=%s device=%s", rec.id, device_id)
                    return rec

            rec = OperatorRecord(
                id=f"op_{uuid.uuid4().hex[:12]}",
                name=name,
                device_id=device_id,
                employee_id=employee_id,
                phone=phone,
            )
            self.operators[rec.id] = rec
            logger.info("operator registered id=%s device=%s", rec.id, device_id)
            return rec

    # Shifts

    def start_shift(self, operator_id: str, asset: Dict[str, Any], started_at: Optional[datetime] = None) -> ShiftRecord:
        with self._lock:
            if operator_id not in self.operators:
                raise UnknownOperator(operator_id)
            asset_id = str(asset["id"])
            for other_id, shift in self.shifts.items():
                if other_id != operator_id and shift.asset.get("id") == asset_id:
                    raise ShiftConflict(f"asset {asset_id} is already assigned to operator {other_id}")
            shift = ShiftRecord(
                operator_id=operator_id,
                asset=dict(asset),
                started_at=_as_utc(started_at) if started_at else _utcnow(),
            )
            self.shifts[operator_id] = shift
            logger.info("shift started operator=%s asset=%s", operator_id, asset_id)
            return shift

    def end_shift(self, operator_id: str, *, asset_id: Optional[str] = None) -> bool:
        """End the operator's shift. With `asset_id`, only if it matches."""

        with self._lock:
            shift = self.shifts.get(operator_id)
            if shift is None:
                return False
            if asset_id is not None and shift.asset.get("id") != asset_id:
                return False
            del self.shifts[operator_id]
            logger.info("shift ended operator=%s asset=%s", operator_id, shift.asset.get("id"))
            return True

    def shift_for(self, operator_id: str) -> Optional[ShiftRecord]:
        with self._lock:
            if operator_id not in self.operators:
                raise UnknownOperator(operator_id)
            return self.shifts.get(operator_id)

    # Pings

    def ingest(self, pings: List[Dict[str, Any]]) -> IngestResult:
        result = IngestResult()
        received_at = _utcnow()
        with self._lock:
            for ping in pings:
                key = (str(ping["asset_id"]), _as_utc(ping["captured_at"]))
                if key in self._seen:
                    result.duplicates += 1
                    continue
                self._seen.add(key)
                self.pings.setdefault(key[0], []).append({**ping, "received_at": received_at})
                result.accepted += 1
        return result

    def pings_for(self, asset_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = list(self.pings.get(asset_id, []))
        return sorted(rows, key=lambda r: _as_utc(r["captured_at"]))


_store = CollectorStore()


def get_store() -> CollectorStore:
    return _store
