# pipeline.py
"""
Public entry points called by the scheduler (worker loop or HTTP trigger):

    run_ingestion_cycle()
    run_trip_sync(mode, device_id=None)
    run_reconciliation(device_id, date_range)

Each returns a CycleResult whose outcome is one of ok / rate_limited /
transient_error / permanent_error. One device failing never stops the rest
of the batch; only an active provider backoff ends a cycle early.
"""
import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import DBAPIError

from fleet_guardian.client import TelemetryClient
from fleet_guardian.config import ALLOWED_DEVICES, INTER_DEVICE_DELAY, POSITION_BATCH_SIZE
from fleet_guardian.crud import (active_device_ids, mark_sample_evaluated, sample_at,
                                 save_sample_with_retry)
from fleet_guardian.database import AsyncSessionLocal
from fleet_guardian.events import evaluate_sample
from fleet_guardian.exceptions import FleetGuardianError, MalformedUpstreamData, RateLimited
from fleet_guardian.logging_config import get_logger
from fleet_guardian.models import PositionSample
from fleet_guardian.normalizer import normalize_report
from fleet_guardian.ratelimit import IP_LIMIT, default_limiter
from fleet_guardian.trips import INCREMENTAL, reconcile_device, sync_device_trips

logger = get_logger("pipeline", "pipeline.log")

UTC = dt.timezone.utc

OK = "ok"
RATE_LIMITED = "rate_limited"
TRANSIENT_ERROR = "transient_error"
PERMANENT_ERROR = "permanent_error"

# worst first
_SEVERITY = {PERMANENT_ERROR: 3, RATE_LIMITED: 2, TRANSIENT_ERROR: 1, OK: 0}


def outcome_for(exc: BaseException) -> str:
    if isinstance(exc, FleetGuardianError):
        return exc.outcome
    if isinstance(exc, (DBAPIError, OSError, asyncio.TimeoutError)):
        return TRANSIENT_ERROR
    return PERMANENT_ERROR


def _stops_cycle(exc: BaseException) -> bool:
    """Provider said stop for a while: every further call would just wait."""
    return isinstance(exc, RateLimited) and exc.kind in (IP_LIMIT, "backoff")


@dataclass
class CycleResult:
    outcome: str = OK
    retry_after: Optional[float] = None
    processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    samples_written: int = 0
    events_created: int = 0
    trips_upserted: int = 0
    backfilled: int = 0
    reconciled: int = 0

    def record_failure(self, device_ids, exc: BaseException) -> None:
        outcome = outcome_for(exc)
        for device_id in device_ids:
            self.failed[device_id] = outcome
        if _SEVERITY[outcome] > _SEVERITY[self.outcome]:
            self.outcome = outcome
        if isinstance(exc, RateLimited):
            self.retry_after = max(self.retry_after or 0.0, exc.retry_after)

    def as_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "retry_after": self.retry_after,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "samples_written": self.samples_written,
            "events_created": self.events_created,
            "trips_upserted": self.trips_upserted,
            "backfilled": self.backfilled,
            "reconciled": self.reconciled,
        }


def _batches(items: List[str], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


async def _device_ids(db, device_id: Optional[str] = None) -> List[str]:
    if device_id is not None:
        return [device_id]
    ids = await active_device_ids(db)
    if ALLOWED_DEVICES:
        ids = [d for d in ids if d in ALLOWED_DEVICES]
    return ids


# =====================================================================
# Ingestion
# =====================================================================
async def _ingest_report(db, report, result: CycleResult, now: dt.datetime) -> None:
    """
    Store the sample, then run the event engine on it. A sample stored by an
    earlier cycle whose evaluation failed is evaluated again; the marker is
    only set once every event insert went through.
    """
    row = normalize_report(report)
    sample_id = await save_sample_with_retry(db, row)
    if sample_id is not None:
        result.samples_written += 1
        sample = await db.get(PositionSample, sample_id)
    else:
        sample = await sample_at(db, row["device_id"], row["observed_at"])
        if sample is None or sample.events_evaluated:
            logger.info(f"[pipeline] device={row['device_id']} sample at {row['observed_at']} already stored")
            return
        logger.warning(
            f"[pipeline] device={row['device_id']} sample at {row['observed_at']} stored but never evaluated, retrying"
        )

    created = await evaluate_sample(db, sample, now)
    await mark_sample_evaluated(db, sample.id)
    result.events_created += len(created)


async def run_ingestion_cycle(session_factory=AsyncSessionLocal, client: Optional[TelemetryClient] = None,
                              sleep=asyncio.sleep, batch_size: int = POSITION_BATCH_SIZE,
                              now: Optional[dt.datetime] = None) -> CycleResult:
    result = CycleResult()
    owns_client = client is None
    client = client or TelemetryClient(default_limiter())

    try:
        async with session_factory() as db:
            device_ids = await _device_ids(db)
        logger.info(f"[pipeline] ingestion cycle for {len(device_ids)} devices")

        for n, batch in enumerate(_batches(device_ids, batch_size)):
            if n:
                # one lastposition call covers a whole batch, so the delay spaces batches
                await sleep(INTER_DEVICE_DELAY)

            try:
                reports = await client.fetch_latest_positions(batch)
            except Exception as e:
                logger.error(f"[pipeline] position fetch failed for {len(batch)} devices: {e}")
                result.record_failure(batch, e)
                if _stops_cycle(e):
                    remaining = [d for d in device_ids if d not in result.failed and d not in result.processed]
                    result.record_failure(remaining, e)
                    break
                continue

            wanted = set(batch)
            for report in reports:
                if report.device_id not in wanted:
                    continue
                try:
                    async with session_factory() as db:
                        await _ingest_report(db, report, result, now or dt.datetime.now(UTC))
                    result.processed.append(report.device_id)
                except MalformedUpstreamData as e:
                    logger.warning(f"[pipeline] device={report.device_id} skipped this cycle: {e}")
                    result.skipped.append(report.device_id)
                except Exception as e:
                    logger.exception(f"[pipeline] device={report.device_id} ingestion failed: {e}")
                    result.record_failure([report.device_id], e)
    finally:
        if owns_client:
            await client.close()

    logger.info(
        f"[pipeline] ingestion done: outcome={result.outcome} samples={result.samples_written} "
        f"events={result.events_created} skipped={len(result.skipped)} failed={len(result.failed)}"
    )
    return result


# =====================================================================
# Trips
# =====================================================================
async def run_trip_sync(mode: str = INCREMENTAL, device_id: Optional[str] = None,
                        session_factory=AsyncSessionLocal, client: Optional[TelemetryClient] = None,
                        sleep=asyncio.sleep, now: Optional[dt.datetime] = None) -> CycleResult:
    result = CycleResult()
    owns_client = client is None
    client = client or TelemetryClient(default_limiter())

    try:
        async with session_factory() as db:
            device_ids = await _device_ids(db, device_id)
        logger.info(f"[pipeline] {mode} trip sync for {len(device_ids)} devices")

        for n, dev in enumerate(device_ids):
            if n:
                await sleep(INTER_DEVICE_DELAY)
            try:
                async with session_factory() as db:
                    summary = await sync_device_trips(db, client, dev, mode, now)
                result.processed.append(dev)
                result.trips_upserted += summary.upserted
                result.backfilled += summary.backfilled
            except Exception as e:
                result.record_failure([dev], e)
                if _stops_cycle(e):
                    result.record_failure([d for d in device_ids[n + 1:]], e)
                    logger.warning(f"[pipeline] provider backoff active, ending trip sync early: {e}")
                    break
    finally:
        if owns_client:
            await client.close()

    logger.info(
        f"[pipeline] trip sync done: outcome={result.outcome} trips={result.trips_upserted} "
        f"backfilled={result.backfilled} failed={len(result.failed)}"
    )
    return result


async def run_reconciliation(device_id: str, date_range: Tuple[dt.datetime, dt.datetime],
                             session_factory=AsyncSessionLocal,
                             now: Optional[dt.datetime] = None) -> CycleResult:
    result = CycleResult()
    start, end = date_range
    try:
        async with session_factory() as db:
            summary = await reconcile_device(db, device_id, start, end, now)
        result.processed.append(device_id)
        result.backfilled = summary.backfilled
        result.reconciled = summary.reconciled
    except Exception as e:
        logger.exception(f"[pipeline] reconciliation failed for device {device_id}: {e}")
        result.record_failure([device_id], e)
    return result
