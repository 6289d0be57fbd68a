import datetime as dt
from typing import List, Optional

import asyncpg
from sqlalchemy import and_, case, cast, func, literal, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (retry, retry_if_exception_type, stop_after_attempt,
                      wait_exponential_jitter)

from fleet_guardian.logging_config import get_logger
from fleet_guardian.models import Device, Event, Geofence, PositionSample, Trip, TripSyncStatus

logger = get_logger("crud", "crud.log")

UTC = dt.timezone.utc

db_retry = retry(
    wait=wait_exponential_jitter(initial=2, max=30),
    stop=stop_after_attempt(5),
    retry=retry_if_exception_type(
        (DBAPIError, OperationalError, OSError, asyncpg.CannotConnectNowError)
    ),
    reraise=True,
)


def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=UTC)

    if isinstance(v, str):
        dt_obj = dt.datetime.fromisoformat(v)
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=UTC)

    return None


def _insert(db: AsyncSession, table):
    """INSERT that understands ON CONFLICT on both PostgreSQL and SQLite."""
    if db.bind.dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


# ---------- devices / geofences ----------
async def active_device_ids(db: AsyncSession) -> List[str]:
    res = await db.execute(
        select(Device.device_id).where(Device.active.is_(True)).order_by(Device.device_id)
    )
    return list(res.scalars().all())


async def active_geofences(db: AsyncSession, device_id: str) -> List[Geofence]:
    res = await db.execute(
        select(Geofence).where(
            Geofence.active.is_(True),
            or_(Geofence.device_id.is_(None), Geofence.device_id == device_id),
        )
    )
    return list(res.scalars().all())


# ---------- position samples ----------
@db_retry
async def save_sample_with_retry(db: AsyncSession, row: dict) -> Optional[int]:
    """
    Append one sample. Returns the new id, or None when the same
    (device_id, observed_at) was already stored by an overlapping cycle.
    """
    try:
        stmt = (
            _insert(db, PositionSample)
            .values(**row)
            .on_conflict_do_nothing(index_elements=["device_id", "observed_at"])
            .returning(PositionSample.id)
        )
        res = await db.execute(stmt)
        sample_id = res.scalar_one_or_none()
        await db.commit()
        return sample_id
    except Exception as e:
        await db.rollback()
        logger.exception(f"[crud] failed to save sample for device {row.get('device_id')}: {e}")
        raise


async def sample_at(db: AsyncSession, device_id: str, observed_at: dt.datetime) -> Optional[PositionSample]:
    res = await db.execute(
        select(PositionSample).where(
            PositionSample.device_id == device_id, PositionSample.observed_at == observed_at
        )
    )
    return res.scalars().first()


async def mark_sample_evaluated(db: AsyncSession, sample_id: int) -> None:
    await db.execute(
        update(PositionSample).where(PositionSample.id == sample_id).values(events_evaluated=True)
    )
    await db.commit()


async def previous_sample(db: AsyncSession, device_id: str, before: dt.datetime) -> Optional[PositionSample]:
    """Most recent sample strictly older than `before`, whatever order they arrived in."""
    res = await db.execute(
        select(PositionSample)
        .where(PositionSample.device_id == device_id, PositionSample.observed_at < before)
        .order_by(PositionSample.observed_at.desc())
        .limit(1)
    )
    return res.scalars().first()


async def samples_between(db: AsyncSession, device_id: str, start: dt.datetime,
                          end: dt.datetime) -> List[PositionSample]:
    res = await db.execute(
        select(PositionSample)
        .where(
            and_(
                PositionSample.device_id == device_id,
                PositionSample.observed_at >= start,
                PositionSample.observed_at <= end,
            )
        )
        .order_by(PositionSample.observed_at.asc())
    )
    return list(res.scalars().all())


async def nearest_sample_with_coordinates(db: AsyncSession, device_id: str, at: dt.datetime,
                                          window_minutes: int) -> Optional[PositionSample]:
    window = dt.timedelta(minutes=window_minutes)
    res = await db.execute(
        select(PositionSample).where(
            PositionSample.device_id == device_id,
            PositionSample.observed_at >= at - window,
            PositionSample.observed_at <= at + window,
            PositionSample.latitude.is_not(None),
            PositionSample.longitude.is_not(None),
            ~and_(PositionSample.latitude == 0, PositionSample.longitude == 0),
        )
    )
    rows = res.scalars().all()
    if not rows:
        return None
    return min(rows, key=lambda s: abs((s.observed_at - at).total_seconds()))


# ---------- trips ----------
async def upsert_trip(db: AsyncSession, values: dict) -> int:
    """
    Insert or refresh a trip on (device_id, start_time, end_time).

    A re-sent row refreshes speeds, duration, source and sync time. Coordinates and
    distance are only replaced by non-null values, so backfilled coordinates
    survive a provider that keeps sending zeros.
    """
    stmt = _insert(db, Trip).values(**values)
    ex = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=["device_id", "start_time", "end_time"],
        set_={
            "start_lat": func.coalesce(ex.start_lat, Trip.start_lat),
            "start_lon": func.coalesce(ex.start_lon, Trip.start_lon),
            "end_lat": func.coalesce(ex.end_lat, Trip.end_lat),
            "end_lon": func.coalesce(ex.end_lon, Trip.end_lon),
            "distance_km": func.coalesce(ex.distance_km, Trip.distance_km),
            "distance_from_provider": case(
                (ex.distance_km.is_(None), Trip.distance_from_provider),
                else_=ex.distance_from_provider,
            ),
            "max_speed_kmh": func.coalesce(ex.max_speed_kmh, Trip.max_speed_kmh),
            "avg_speed_kmh": func.coalesce(ex.avg_speed_kmh, Trip.avg_speed_kmh),
            "duration_s": ex.duration_s,
            "source": ex.source,
            "synced_at": ex.synced_at,
        },
    ).returning(Trip.id)
    res = await db.execute(stmt)
    return res.scalar_one()


async def trips_missing_coordinates(db: AsyncSession, device_id: str, start: dt.datetime,
                                    end: dt.datetime) -> List[Trip]:
    missing = or_(
        Trip.start_lat.is_(None), Trip.start_lon.is_(None), and_(Trip.start_lat == 0, Trip.start_lon == 0),
        Trip.end_lat.is_(None), Trip.end_lon.is_(None), and_(Trip.end_lat == 0, Trip.end_lon == 0),
    )
    res = await db.execute(
        select(Trip)
        .where(Trip.device_id == device_id, Trip.start_time >= start, Trip.start_time <= end, missing)
        .order_by(Trip.start_time.asc())
    )
    return list(res.scalars().all())


async def overlapping_trip_exists(db: AsyncSession, device_id: str, start: dt.datetime,
                                  end: dt.datetime) -> bool:
    res = await db.execute(
        select(Trip.id)
        .where(Trip.device_id == device_id, Trip.start_time < end, Trip.end_time > start)
        .limit(1)
    )
    return res.scalar_one_or_none() is not None


# ---------- sync status ----------
async def get_sync_status(db: AsyncSession, device_id: str) -> Optional[TripSyncStatus]:
    return await db.get(TripSyncStatus, device_id)


async def upsert_sync_status(db: AsyncSession, device_id: str, **fields) -> None:
    stmt = _insert(db, TripSyncStatus).values(device_id=device_id, **fields)
    stmt = stmt.on_conflict_do_update(
        index_elements=["device_id"],
        set_={k: getattr(stmt.excluded, k) for k in fields},
    )
    await db.execute(stmt)
    await db.commit()


# ---------- events ----------
async def conditional_insert_event(db: AsyncSession, values: dict, cooldown_minutes: float,
                                   now: Optional[dt.datetime] = None) -> Optional[int]:
    """
    INSERT ... SELECT ... WHERE NOT EXISTS (same device and type inside the
    cooldown). Returns the new id, or None when suppressed.

    `values` uses table column names (so "metadata", not "meta").
    On PostgreSQL a transaction advisory lock on (device, type) serializes
    racing writers; it is released by the commit below.
    """
    now = now or dt.datetime.now(UTC)
    device_id, event_type = values["device_id"], values["event_type"]
    table = Event.__table__

    is_pg = db.bind.dialect.name == "postgresql"

    if is_pg:
        await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(f"{device_id}:{event_type}"))))

    def _param(col, value):
        # PostgreSQL cannot infer types for bare parameters in a FROM-less SELECT
        param = literal(value, type_=table.c[col].type)
        return cast(param, table.c[col].type) if is_pg else param

    row = {**values, "created_at": now, "notified": False}
    recent = (
        select(table.c.id)
        .where(
            table.c.device_id == device_id,
            table.c.event_type == event_type,
            table.c.created_at > now - dt.timedelta(minutes=cooldown_minutes),
        )
        .correlate(None)
        .exists()
    )
    source = select(*[_param(k, v) for k, v in row.items()]).where(~recent)
    stmt = table.insert().from_select(list(row), source).returning(table.c.id)

    try:
        res = await db.execute(stmt)
        event_id = res.scalar_one_or_none()
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.exception(f"[crud] event insert failed for device {device_id} type {event_type}: {e}")
        raise
    return event_id


async def pending_events(db: AsyncSession, limit: int) -> List[Event]:
    stmt = select(Event).where(Event.notified.is_(False)).order_by(Event.created_at.asc(), Event.id.asc()).limit(limit)
    if db.bind.dialect.name == "postgresql":
        stmt = stmt.with_for_update(skip_locked=True)
    res = await db.execute(stmt)
    return list(res.scalars().all())


async def mark_notified(db: AsyncSession, event_id: int, when: Optional[dt.datetime] = None) -> bool:
    """Flip notified once; False when someone else already did."""
    res = await db.execute(
        update(Event)
        .where(Event.id == event_id, Event.notified.is_(False))
        .values(notified=True, notified_at=when or dt.datetime.now(UTC))
    )
    return res.rowcount == 1
