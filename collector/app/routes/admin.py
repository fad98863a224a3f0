from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from ..schemas import AdminShiftStartIn, AssetOut, PingOut, ShiftOut
from ..store import CollectorStore, ShiftConflict, UnknownOperator, get_store


router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/shifts", response_model=ShiftOut, status_code=status.HTTP_201_CREATED)
def start_shift(req: AdminShiftStartIn, store: CollectorStore = Depends(get_store)) -> ShiftOut:
    try:
        shift = store.start_shift(req.operator_id, req.asset.model_dump(), started_at=req.started_at)
    except UnknownOperator:
        raise HTTPException(status_code=404, detail="Operator not found")
    except ShiftConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return ShiftOut(operator_id=shift.operator_id, asset=AssetOut(**shift.asset), started_at=shift.started_at)


@router.post("/shifts/{operator_id}/end")
def end_shift(operator_id: str, store: CollectorStore = Depends(get_store)) -> dict:
    if not store.end_shift(operator_id):
        raise HTTPException(status_code=404, detail="No active shift for this operator")
    return {"ended": True, "operator_id": operator_id}


@router.get("/assets/{asset_id}/pings", response_model=List[PingOut])
def list_pings(asset_id: str, store: CollectorStore = Depends(get_store)) -> List[PingOut]:
    return [PingOut(**row) for row in store.pings_for(asset_id)]
