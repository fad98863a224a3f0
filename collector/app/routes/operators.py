from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..schemas import AssetOut, EndShiftIn, OperatorOut, RegisterIn, ShiftStatusOut
from ..store import CollectorStore, UnknownOperator, get_store


router = APIRouter(prefix="/api", tags=["operators"])


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


@router.post("/register", response_model=OperatorOut, status_code=status.HTTP_201_CREATED)
def register(req: RegisterIn, store: CollectorStore = Depends(get_store)) -> OperatorOut:
    name = req.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")

    rec = store.register(
        name=name,
        device_id=req.device_id.strip(),
        employee_id=_clean(req.employee_id),
        phone=_clean(req.phone),
    )
    return OperatorOut(id=rec.id, name=rec.name, employee_id=rec.employee_id, phone=rec.phone)


@router.get("/shift-status/{operator_id}", response_model=ShiftStatusOut)
def shift_status(operator_id: str, store: CollectorStore = Depends(get_store)) -> ShiftStatusOut:
    try:
        shift = store.shift_for(operator_id)
    except UnknownOperator:
        raise HTTPException(status_code=404, detail="Operator not found")

    if shift is None:
        return ShiftStatusOut(on_shift=False)
    return ShiftStatusOut(on_shift=True, asset=AssetOut(**shift.asset), shift_started_at=shift.started_at)


@router.put("/assets/{asset_id}/end-shift")
def end_shift(asset_id: str, req: EndShiftIn, store: CollectorStore = Depends(get_store)) -> dict:
    ended = store.end_shift(req.operator_id, asset_id=asset_id)
    if not ended:
        raise HTTPException(status_code=404, detail="No active shift for this operator and asset")
    return {"ended": True, "asset_id": asset_id, "operator_id": req.operator_id}
