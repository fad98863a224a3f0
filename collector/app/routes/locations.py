from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ..config import settings
from ..schemas import IngestOut, PingBatchIn, PingIn
from ..store import CollectorStore, get_store


logger = logging.getLogger("fleetwatch.collector.locations")

router = APIRouter(prefix="/api", tags=["locations"])


@router.post("/locations", response_model=IngestOut, status_code=status.HTTP_201_CREATED)
def post_location(req: PingIn, store: CollectorStore = Depends(get_store)) -> IngestOut:
    result = store.ingest([req.model_dump()])
    return IngestOut(accepted=result.accepted, duplicates=result.duplicates)


@router.post("/locations/batch", response_model=IngestOut)
def post_location_batch(req: PingBatchIn, store: CollectorStore = Depends(get_store)) -> IngestOut:
    """Accept a flush batch. Pings already seen are counted as duplicates, not rejected."""

    count = len(req.samples)
    if count > settings.max_batch_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={
                "error": {
                    "code": "TOO_MANY_SAMPLES",
                    "message": f"Too many samples in one request: {count} > {settings.max_batch_size}",
                    "max_batch_size": settings.max_batch_size,
                }
            },
        )

    result = store.ingest([s.model_dump() for s in req.samples])
    logger.info("batch ingest accepted=%s duplicates=%s", result.accepted, result.duplicates)
    return IngestOut(accepted=result.accepted, duplicates=result.duplicates)
