import datetime as dt

import pytest
from sqlalchemy import select

from fleet_guardian.crud import conditional_insert_event, mark_notified
from fleet_guardian.dispatcher import dispatch_pending_events
from fleet_guardian.models import Event

from .conftest import T0


async def _seed(db, *event_types):
    ids = []
    for i, event_type in enumerate(event_types):
        ids.append(await conditional_insert_event(
            db,
            {"device_id": "dev-1", "event_type": event_type, "severity": "info",
             "title": event_type, "description": f"{event_type} happened"},
            5,
            T0 + dt.timedelta(seconds=i),
        ))
    return ids


async def _notified(db):
    res = await db.execute(select(Event.id, Event.notified).order_by(Event.id).execution_options(populate_existing=True))
    return dict(res.all())


@pytest.mark.asyncio
async def test_events_are_handed_off_once(db) -> None:
    ids = await _seed(db, "ignition_on", "vehicle_moving")
    seen = []

    async def handler(event):
        seen.append(event.id)

    assert await dispatch_pending_events(db, handler) == 2
    assert await dispatch_pending_events(db, handler) == 0

    assert seen == ids
    assert await _notified(db) == {ids[0]: True, ids[1]: True}


@pytest.mark.asyncio
async def test_failing_handler_leaves_event_pending(db) -> None:
    ids = await _seed(db, "ignition_on", "low_battery")
    calls = []

    async def flaky(event):
        calls.append(event.id)
        if event.event_type == "low_battery" and calls.count(event.id) == 1:
            raise ConnectionError("notification channel down")

    assert await dispatch_pending_events(db, flaky) == 1
    assert await _notified(db) == {ids[0]: True, ids[1]: False}

    assert await dispatch_pending_events(db, flaky) == 1
    assert await _notified(db) == {ids[0]: True, ids[1]: True}


@pytest.mark.asyncio
async def test_mark_notified_is_conditional(db) -> None:
    (event_id,) = await _seed(db, "geofence_exit")

    assert await mark_notified(db, event_id) is True
    assert await mark_notified(db, event_id) is False
    await db.commit()


@pytest.mark.asyncio
async def test_default_handler_only_logs(db) -> None:
    await _seed(db, "overspeeding")
    assert await dispatch_pending_events(db) == 1
