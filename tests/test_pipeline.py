import datetime as dt

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from fleet_guardian import pipeline
from fleet_guardian.client import RawReport, RawTrip
from fleet_guardian.exceptions import PermanentError, RateLimited, TransientNetworkError
from fleet_guardian.models import Device, Event, PositionSample, Trip
from fleet_guardian.pipeline import (OK, PERMANENT_ERROR, RATE_LIMITED, TRANSIENT_ERROR, CycleResult,
                                     outcome_for, run_ingestion_cycle, run_reconciliation, run_trip_sync)
from fleet_guardian.ratelimit import IP_LIMIT

from .conftest import T0, add_sample

NOW = T0 + dt.timedelta(hours=1)
DEVICES = ["dev-1", "dev-2", "dev-3"]


def _report(device_id, minutes=0, speed_kmh=0.0, status=1, observed=True) -> RawReport:
    return RawReport(
        device_id=device_id,
        payload={"deviceid": device_id, "status": status, "callat": 6.5244, "callon": 3.3792},
        speed_kmh=speed_kmh,
        total_distance_m=1000.0,
        observed_at=T0 + dt.timedelta(minutes=minutes) if observed else None,
    )


class _Client:
    """Answers per device; a device mapped to an exception fails its whole batch."""

    def __init__(self, reports=None, errors=None, trips=None) -> None:
        self.reports = reports or {}
        self.errors = errors or {}
        self.trips = trips or {}
        self.position_calls = []
        self.trip_calls = []

    async def fetch_latest_positions(self, device_ids):
        self.position_calls.append(list(device_ids))
        for d in device_ids:
            if d in self.errors:
                raise self.errors[d]
        return [self.reports[d] for d in device_ids if d in self.reports]

    async def fetch_trips(self, device_id, begin, end):
        self.trip_calls.append(device_id)
        if device_id in self.errors:
            raise self.errors[device_id]
        return list(self.trips.get(device_id, []))


class _Sleeper:
    def __init__(self) -> None:
        self.sleeps = []

    async def __call__(self, seconds) -> None:
        self.sleeps.append(seconds)


@pytest_asyncio.fixture
async def devices(session_factory):
    async with session_factory() as db:
        db.add_all([Device(device_id=d, name=d.upper()) for d in DEVICES])
        db.add(Device(device_id="dev-retired", active=False))
        await db.commit()
    return DEVICES


async def _count(session_factory, model) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(model.id)))).scalar_one()


def test_outcome_mapping() -> None:
    assert outcome_for(RateLimited("x", retry_after=2)) == RATE_LIMITED
    assert outcome_for(TransientNetworkError("x")) == TRANSIENT_ERROR
    assert outcome_for(PermanentError("x")) == PERMANENT_ERROR
    assert outcome_for(OSError("reset")) == TRANSIENT_ERROR
    assert outcome_for(KeyError("boom")) == PERMANENT_ERROR


def test_worst_outcome_wins() -> None:
    result = CycleResult()
    result.record_failure(["a"], TransientNetworkError("x"))
    result.record_failure(["b"], RateLimited("x", retry_after=8))
    result.record_failure(["c"], TransientNetworkError("x"))
    assert result.outcome == RATE_LIMITED
    assert result.retry_after == 8


# ---------- ingestion ----------
@pytest.mark.asyncio
async def test_ingestion_cycle_writes_samples(session_factory, devices) -> None:
    client = _Client({d: _report(d) for d in devices})
    sleep = _Sleeper()

    result = await run_ingestion_cycle(session_factory, client, sleep=sleep, now=NOW)

    assert result.outcome == OK
    assert sorted(result.processed) == devices
    assert result.samples_written == 3
    assert client.position_calls == [devices]
    assert sleep.sleeps == []
    assert await _count(session_factory, PositionSample) == 3


@pytest.mark.asyncio
async def test_repeated_cycle_does_not_duplicate(session_factory, devices) -> None:
    client = _Client({d: _report(d) for d in devices})

    await run_ingestion_cycle(session_factory, client, sleep=_Sleeper(), now=NOW)
    again = await run_ingestion_cycle(session_factory, client, sleep=_Sleeper(), now=NOW)

    assert again.outcome == OK
    assert again.samples_written == 0
    assert await _count(session_factory, PositionSample) == 3


@pytest.mark.asyncio
async def test_malformed_report_skips_only_that_device(session_factory, devices) -> None:
    reports = {d: _report(d) for d in devices}
    reports["dev-2"] = _report("dev-2", observed=False)

    result = await run_ingestion_cycle(session_factory, _Client(reports), sleep=_Sleeper(), now=NOW)

    assert result.outcome == OK
    assert result.skipped == ["dev-2"]
    assert sorted(result.processed) == ["dev-1", "dev-3"]


@pytest.mark.asyncio
async def test_failed_batch_does_not_stop_the_others(session_factory, devices) -> None:
    client = _Client({d: _report(d) for d in devices}, errors={"dev-2": TransientNetworkError("timeout")})
    sleep = _Sleeper()

    result = await run_ingestion_cycle(session_factory, client, sleep=sleep, batch_size=1, now=NOW)

    assert result.outcome == TRANSIENT_ERROR
    assert result.failed == {"dev-2": TRANSIENT_ERROR}
    assert sorted(result.processed) == ["dev-1", "dev-3"]
    assert len(client.position_calls) == 3
    assert len(sleep.sleeps) == 2


@pytest.mark.asyncio
async def test_ip_limit_ends_the_cycle(session_factory, devices) -> None:
    limited = RateLimited("ip limited", retry_after=60, kind=IP_LIMIT, code=8902)
    client = _Client({d: _report(d) for d in devices}, errors={"dev-1": limited})

    result = await run_ingestion_cycle(session_factory, client, sleep=_Sleeper(), batch_size=1, now=NOW)

    assert result.outcome == RATE_LIMITED
    assert result.retry_after == 60
    assert result.failed == {d: RATE_LIMITED for d in devices}
    assert client.position_calls == [["dev-1"]]
    assert await _count(session_factory, PositionSample) == 0


@pytest.mark.asyncio
async def test_events_are_evaluated_on_ingest(session_factory, devices) -> None:
    async with session_factory() as db:
        await add_sample(db, minutes=-1, device_id="dev-1", speed_kmh=90.0)

    client = _Client({"dev-1": _report("dev-1", speed_kmh=105.0)})
    result = await run_ingestion_cycle(session_factory, client, sleep=_Sleeper(), now=NOW)

    assert result.events_created == 1
    async with session_factory() as db:
        types = (await db.execute(select(Event.event_type))).scalars().all()
    assert types == ["overspeeding"]


@pytest.mark.asyncio
async def test_failed_evaluation_is_retried_next_cycle(session_factory, devices, monkeypatch) -> None:
    async with session_factory() as db:
        await add_sample(db, minutes=-1, device_id="dev-1", speed_kmh=90.0)

    real_evaluate = pipeline.evaluate_sample
    calls = []

    async def flaky_evaluate(db, sample, now=None):
        calls.append(sample.id)
        if len(calls) == 1:
            raise OperationalError("INSERT INTO events", {}, Exception("database is locked"))
        return await real_evaluate(db, sample, now)

    monkeypatch.setattr(pipeline, "evaluate_sample", flaky_evaluate)
    client = _Client({"dev-1": _report("dev-1", speed_kmh=105.0)})

    first = await run_ingestion_cycle(session_factory, client, sleep=_Sleeper(), now=NOW)
    assert first.outcome == TRANSIENT_ERROR
    assert first.samples_written == 1
    assert first.events_created == 0

    second = await run_ingestion_cycle(session_factory, client, sleep=_Sleeper(), now=NOW)
    assert second.outcome == OK
    assert second.samples_written == 0
    assert second.events_created == 1
    assert calls[0] == calls[1]

    third = await run_ingestion_cycle(session_factory, client, sleep=_Sleeper(), now=NOW)
    assert third.events_created == 0
    assert len(calls) == 2

    async with session_factory() as db:
        types = (await db.execute(select(Event.event_type))).scalars().all()
        evaluated = (await db.execute(
            select(PositionSample.events_evaluated).where(PositionSample.id == calls[0])
        )).scalar_one()
    assert types == ["overspeeding"]
    assert evaluated is True


# ---------- trips ----------
def _raw_trip(device_id) -> RawTrip:
    return RawTrip(
        device_id=device_id,
        start_time=T0, end_time=T0 + dt.timedelta(minutes=20),
        start_lat=6.5244, start_lon=3.3792, end_lat=6.6018, end_lon=3.3515,
        distance_km=9.5, max_speed_kmh=60.0, avg_speed_kmh=30.0,
    )


@pytest.mark.asyncio
async def test_trip_sync_isolates_a_failing_device(session_factory, devices) -> None:
    client = _Client(
        trips={d: [_raw_trip(d)] for d in devices},
        errors={"dev-2": PermanentError("bad deviceid", code=1)},
    )
    sleep = _Sleeper()

    result = await run_trip_sync(session_factory=session_factory, client=client, sleep=sleep, now=NOW)

    assert result.outcome == PERMANENT_ERROR
    assert result.processed == ["dev-1", "dev-3"]
    assert result.failed == {"dev-2": PERMANENT_ERROR}
    assert result.trips_upserted == 2
    assert len(sleep.sleeps) == 2
    assert await _count(session_factory, Trip) == 2


@pytest.mark.asyncio
async def test_trip_sync_stops_on_provider_backoff(session_factory, devices) -> None:
    client = _Client(errors={"dev-1": RateLimited("backoff active", retry_after=42, kind="backoff")})

    result = await run_trip_sync(session_factory=session_factory, client=client, sleep=_Sleeper(), now=NOW)

    assert result.outcome == RATE_LIMITED
    assert result.retry_after == 42
    assert client.trip_calls == ["dev-1"]
    assert set(result.failed) == set(devices)


@pytest.mark.asyncio
async def test_single_device_trip_sync(session_factory, devices) -> None:
    client = _Client(trips={"dev-3": [_raw_trip("dev-3")]})

    result = await run_trip_sync("full", "dev-3", session_factory=session_factory, client=client,
                                 sleep=_Sleeper(), now=NOW)

    assert result.outcome == OK
    assert client.trip_calls == ["dev-3"]


# ---------- reconciliation ----------
@pytest.mark.asyncio
async def test_reconciliation_builds_trips_from_samples(session_factory) -> None:
    async with session_factory() as db:
        for i in range(6):
            await add_sample(db, minutes=i, latitude=6.50 + 0.009 * i, longitude=3.38, speed_kmh=50.0,
                             ignition_on=None, ignition_method="unknown", ignition_confidence=0.0)

    result = await run_reconciliation("dev-1", (T0 - dt.timedelta(hours=1), NOW), session_factory, now=NOW)

    assert result.outcome == OK
    assert result.reconciled == 1
    assert await _count(session_factory, Trip) == 1


@pytest.mark.asyncio
async def test_reconciliation_rejects_an_empty_range(session_factory) -> None:
    result = await run_reconciliation("dev-1", (NOW, T0), session_factory, now=NOW)

    assert result.outcome == PERMANENT_ERROR
    assert result.failed == {"dev-1": PERMANENT_ERROR}
