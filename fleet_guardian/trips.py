# trips.py
import datetime as dt
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fleet_guardian.client import RawTrip, TelemetryClient
from fleet_guardian.config import FIRST_SYNC_DAYS, FULL_SYNC_DAYS
from fleet_guardian.crud import (get_sync_status, nearest_sample_with_coordinates,
                                 overlapping_trip_exists, samples_between,
                                 trips_missing_coordinates, upsert_sync_status, upsert_trip)
from fleet_guardian.logging_config import device_logger, get_logger
from fleet_guardian.models import PositionSample, Trip
from fleet_guardian.utils.geo import has_coordinates, haversine_km
from fleet_guardian.utils.variables import (BACKFILL_WINDOW_MINUTES,
                                            INCREMENTAL_OVERLAP_MINUTES, TRIP_MAX_GAP_MINUTES,
                                            TRIP_MAX_HOP_KM, TRIP_MIN_DISTANCE_KM,
                                            TRIP_MOVING_SPEED_KMH)

logger = get_logger("trips", "trips.log")

UTC = dt.timezone.utc

INCREMENTAL = "incremental"
FULL = "full"
SOURCE_PROVIDER = "provider"
SOURCE_RECONCILED = "reconciled"


@dataclass
class SyncSummary:
    device_id: str
    window_start: dt.datetime
    window_end: dt.datetime
    upserted: int = 0
    dropped: int = 0
    backfilled: int = 0
    reconciled: int = 0


# ---------- window selection ----------
def sync_window(status, mode: str, now: dt.datetime):
    """
    full           -> fixed recent window
    first sync     -> fixed recent window, never the whole device history
    incremental    -> from the end of the last successful window
    """
    if mode not in (INCREMENTAL, FULL):
        raise ValueError(f"unknown trip sync mode: {mode}")

    if mode == FULL:
        return now - dt.timedelta(days=FULL_SYNC_DAYS), now

    last = getattr(status, "last_trip_synced", None)
    if last is None:
        return now - dt.timedelta(days=FIRST_SYNC_DAYS), now

    start = last - dt.timedelta(minutes=INCREMENTAL_OVERLAP_MINUTES)
    return min(start, now), now


# ---------- provider trips ----------
def provider_trip_values(raw: RawTrip, now: dt.datetime) -> Optional[dict]:
    if raw.start_time is None or raw.end_time is None or raw.end_time <= raw.start_time:
        return None

    start_ok = has_coordinates(raw.start_lat, raw.start_lon)
    end_ok = has_coordinates(raw.end_lat, raw.end_lon)
    return {
        "device_id": raw.device_id,
        "start_time": raw.start_time,
        "end_time": raw.end_time,
        "start_lat": raw.start_lat if start_ok else None,
        "start_lon": raw.start_lon if start_ok else None,
        "end_lat": raw.end_lat if end_ok else None,
        "end_lon": raw.end_lon if end_ok else None,
        "distance_km": raw.distance_km,
        "distance_from_provider": raw.distance_km is not None,
        "max_speed_kmh": raw.max_speed_kmh,
        "avg_speed_kmh": raw.avg_speed_kmh,
        "duration_s": int((raw.end_time - raw.start_time).total_seconds()),
        "source": SOURCE_PROVIDER,
        "synced_at": now,
    }


async def ingest_provider_trips(db: AsyncSession, device_id: str, raw_trips: List[RawTrip],
                                now: Optional[dt.datetime] = None) -> SyncSummary:
    """Upsert one device's provider trip list. Safe to call twice with the same list."""
    now = now or dt.datetime.now(UTC)
    log = device_logger(logger, "trips", device_id)
    summary = SyncSummary(device_id, now, now)

    for raw in raw_trips:
        values = provider_trip_values(raw, now)
        if values is None:
            summary.dropped += 1
            log.warning(f"dropping provider trip with bad bounds {raw.start_time} -> {raw.end_time}")
            continue
        await upsert_trip(db, values)
        summary.upserted += 1

    await db.commit()
    log.info(f"upserted {summary.upserted} provider trips, dropped {summary.dropped}")
    return summary


# ---------- backfill ----------
async def backfill_trip(db: AsyncSession, trip: Trip) -> bool:
    """
    Fill zero/null trip endpoints from the closest sample with coordinates
    within the backfill window. Present coordinates are left alone and a
    provider-reported distance is never replaced.
    """
    changed = False

    if not has_coordinates(trip.start_lat, trip.start_lon):
        sample = await nearest_sample_with_coordinates(
            db, trip.device_id, trip.start_time, BACKFILL_WINDOW_MINUTES
        )
        if sample is not None:
            trip.start_lat, trip.start_lon = sample.latitude, sample.longitude
            changed = True

    if not has_coordinates(trip.end_lat, trip.end_lon):
        sample = await nearest_sample_with_coordinates(
            db, trip.device_id, trip.end_time, BACKFILL_WINDOW_MINUTES
        )
        if sample is not None:
            trip.end_lat, trip.end_lon = sample.latitude, sample.longitude
            changed = True

    if not changed:
        return False

    trip.coordinates_backfilled = True
    if (not trip.distance_from_provider
            and has_coordinates(trip.start_lat, trip.start_lon)
            and has_coordinates(trip.end_lat, trip.end_lon)):
        trip.distance_km = round(
            haversine_km(trip.start_lat, trip.start_lon, trip.end_lat, trip.end_lon), 3
        )
    return True


async def backfill_device(db: AsyncSession, device_id: str, start: dt.datetime, end: dt.datetime) -> int:
    trips = await trips_missing_coordinates(db, device_id, start, end)
    filled = 0
    for trip in trips:
        if await backfill_trip(db, trip):
            filled += 1
    await db.commit()
    if trips:
        logger.info(f"[trips] device={device_id} backfilled {filled}/{len(trips)} trips missing coordinates")
    return filled


# ---------- local segmentation ----------
def _is_active(sample: PositionSample, use_ignition: bool) -> bool:
    if use_ignition:
        return sample.ignition_on is True
    return float(sample.speed_kmh or 0) > TRIP_MOVING_SPEED_KMH


def _summarize(points: List[PositionSample]) -> Optional[dict]:
    located = [p for p in points if has_coordinates(p.latitude, p.longitude)]
    if len(points) < 2 or len(located) < 2:
        return None

    distance = 0.0
    for a, b in zip(located, located[1:]):
        hop = haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)
        if hop < TRIP_MAX_HOP_KM:  # larger hops are GPS jumps
            distance += hop
    if distance < TRIP_MIN_DISTANCE_KM:
        return None

    speeds = [float(p.speed_kmh) for p in points if p.speed_kmh and p.speed_kmh > 0]
    first, last = points[0], points[-1]
    return {
        "device_id": first.device_id,
        "start_time": first.observed_at,
        "end_time": last.observed_at,
        "start_lat": located[0].latitude,
        "start_lon": located[0].longitude,
        "end_lat": located[-1].latitude,
        "end_lon": located[-1].longitude,
        "distance_km": round(distance, 3),
        "distance_from_provider": False,
        "max_speed_kmh": round(max(speeds), 1) if speeds else None,
        "avg_speed_kmh": round(sum(speeds) / len(speeds), 1) if speeds else None,
        "duration_s": int((last.observed_at - first.observed_at).total_seconds()),
        "source": SOURCE_RECONCILED,
    }


def segment_samples(samples: List[PositionSample]) -> List[dict]:
    """
    Cut an ascending sample list into trips. Ignition decides when the
    samples carry it, speed otherwise; a long silence always closes a trip.
    """
    if len(samples) < 2:
        return []

    use_ignition = any(s.ignition_on is not None for s in samples)
    max_gap = dt.timedelta(minutes=TRIP_MAX_GAP_MINUTES)

    trips, current, prev = [], [], None
    for sample in samples:
        if current and sample.observed_at - prev.observed_at > max_gap:
            trips.append(current)
            current = []
        if _is_active(sample, use_ignition):
            current.append(sample)
        elif current:
            current.append(sample)  # the stop point closes the trip
            trips.append(current)
            current = []
        prev = sample
    if current:
        trips.append(current)

    return [t for t in (_summarize(points) for points in trips) if t is not None]


async def fill_gaps(db: AsyncSession, device_id: str, start: dt.datetime, end: dt.datetime,
                    now: Optional[dt.datetime] = None) -> int:
    """Store locally segmented trips that no existing trip already covers."""
    now = now or dt.datetime.now(UTC)
    samples = await samples_between(db, device_id, start, end)
    added = 0
    for values in segment_samples(samples):
        if await overlapping_trip_exists(db, device_id, values["start_time"], values["end_time"]):
            continue
        await upsert_trip(db, {**values, "synced_at": now})
        added += 1
    await db.commit()
    return added


# ---------- entry points used by the pipeline ----------
async def sync_device_trips(db: AsyncSession, client: TelemetryClient, device_id: str,
                            mode: str = INCREMENTAL, now: Optional[dt.datetime] = None) -> SyncSummary:
    now = now or dt.datetime.now(UTC)
    log = device_logger(logger, "trips", device_id)

    status = await get_sync_status(db, device_id)
    start, end = sync_window(status, mode, now)
    await upsert_sync_status(db, device_id, sync_status="syncing", last_sync_at=now, error_message=None)
    log.info(f"{mode} sync {start.isoformat()} -> {end.isoformat()}")

    try:
        raw_trips = await client.fetch_trips(device_id, start, end)
        summary = await ingest_provider_trips(db, device_id, raw_trips, now)
        summary.window_start, summary.window_end = start, end
        summary.backfilled = await backfill_device(db, device_id, start, end)
    except Exception as e:
        await db.rollback()
        await upsert_sync_status(db, device_id, sync_status="error", error_message=str(e)[:500])
        log.exception(f"trip sync failed: {e}")
        raise

    previous = (status.trips_synced_count or 0) if status is not None else 0
    await upsert_sync_status(
        db, device_id,
        sync_status="completed",
        last_trip_synced=end,
        trips_synced_count=previous + summary.upserted,
        error_message=None,
    )
    return summary


async def reconcile_device(db: AsyncSession, device_id: str, start: dt.datetime, end: dt.datetime,
                           now: Optional[dt.datetime] = None) -> SyncSummary:
    """Backfill coordinates and fill trip gaps from stored samples. No upstream calls."""
    if end <= start:
        raise ValueError("reconciliation range must end after it starts")
    summary = SyncSummary(device_id, start, end)
    summary.backfilled = await backfill_device(db, device_id, start, end)
    summary.reconciled = await fill_gaps(db, device_id, start, end, now)
    logger.info(
        f"[trips] device={device_id} reconciled {start.date()}..{end.date()}: "
        f"{summary.backfilled} backfilled, {summary.reconciled} gap trips added"
    )
    return summary
