from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class PingIn(BaseModel):
    asset_id: str = Field(..., min_length=1, max_length=128)
    operator_id: str = Field(..., min_length=1, max_length=128)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy_m: Optional[float] = Field(None, ge=0)
    speed_mps: Optional[float] = None
    heading_deg: Optional[float] = None
    altitude_m: Optional[float] = None
    captured_at: datetime


class PingBatchIn(BaseModel):
    samples: List[PingIn]


class IngestOut(BaseModel):
    accepted: int
    duplicates: int


class PingOut(PingIn):
    received_at: datetime


class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    phone: Optional[str] = Field(None, max_length=64)
    employee_id: Optional[str] = Field(None, max_length=64)
    device_id: str = Field(..., min_length=1, max_length=256)


class OperatorOut(BaseModel):
    id: str
    name: str
    employee_id: Optional[str] = None
    phone: Optional[str] = None


class AssetIn(BaseModel):
    id: str = Field(..., min_length=1, max_length=128)
    name: str = Field("", max_length=256)
    plate_number: Optional[str] = Field(None, max_length=32)
    type: Optional[str] = Field(None, max_length=64)


class AssetOut(BaseModel):
    id: str
    name: str = ""
    plate_number: Optional[str] = None
    type: Optional[str] = None


class ShiftStatusOut(BaseModel):
    on_shift: bool
    asset: Optional[AssetOut] = None
    shift_started_at: Optional[datetime] = None


class EndShiftIn(BaseModel):
    operator_id: str = Field(..., min_length=1, max_length=128)


class AdminShiftStartIn(BaseModel):
    operator_id: str = Field(..., min_length=1, max_length=128)
    asset: AssetIn
    started_at: Optional[datetime] = None


class ShiftOut(BaseModel):
    operator_id: str
    asset: AssetOut
    started_at: datetime
