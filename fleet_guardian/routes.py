import datetime as dt
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from fleet_guardian.crud import to_dt
from fleet_guardian.logging_config import get_logger
from fleet_guardian.pipeline import (PERMANENT_ERROR, RATE_LIMITED, TRANSIENT_ERROR, CycleResult,
                                     run_ingestion_cycle, run_reconciliation, run_trip_sync)
from fleet_guardian.trips import FULL, INCREMENTAL

router = APIRouter(prefix="/cycles")
logger = get_logger("routes", "routes.log")

STATUS_CODES = {RATE_LIMITED: 429, TRANSIENT_ERROR: 503, PERMANENT_ERROR: 500}


def _respond(result: CycleResult) -> JSONResponse:
    status = STATUS_CODES.get(result.outcome, 200)
    headers = {}
    if result.outcome == RATE_LIMITED and result.retry_after is not None:
        headers["Retry-After"] = str(int(result.retry_after + 0.999))
    return JSONResponse(status_code=status, content=result.as_dict(), headers=headers)


# ---------------------------------------------------
#                INGESTION CYCLE
# ---------------------------------------------------
@router.post("/ingest")
async def trigger_ingest():
    logger.info("[routes] ingestion cycle triggered")
    return _respond(await run_ingestion_cycle())


# ---------------------------------------------------
#                  TRIP SYNC
# ---------------------------------------------------
@router.post("/trips")
async def trigger_trip_sync(payload: Optional[dict] = None):
    payload = payload or {}
    mode = payload.get("mode", INCREMENTAL)
    if mode not in (INCREMENTAL, FULL):
        raise HTTPException(status_code=400, detail=f"mode must be {INCREMENTAL} or {FULL}")

    device_id = payload.get("device_id")
    logger.info(f"[routes] {mode} trip sync triggered device={device_id or 'all'}")
    return _respond(await run_trip_sync(mode, None if device_id is None else str(device_id)))


# ---------------------------------------------------
#                RECONCILIATION
# ---------------------------------------------------
@router.post("/reconcile")
async def trigger_reconciliation(payload: dict):
    device_id = payload.get("device_id")
    if device_id is None:
        raise HTTPException(status_code=400, detail="missing device_id")

    try:
        start, end = to_dt(payload.get("start")), to_dt(payload.get("end"))
    except ValueError:
        raise HTTPException(status_code=400, detail="start/end must be ISO timestamps")
    if end is None:
        end = dt.datetime.now(dt.timezone.utc)
    if start is None:
        start = end - dt.timedelta(days=1)
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be after start")

    logger.info(f"[routes] reconciliation triggered device={device_id} {start} -> {end}")
    return _respond(await run_reconciliation(str(device_id), (start, end)))
