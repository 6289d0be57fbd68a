# dispatcher.py
"""
Hands newly created events to the notification side.

Writers only commit Event rows; this consumer polls notified = false,
awaits the handler, then flips the flag with a conditional update so an
event is marked exactly once even when two dispatchers overlap.
"""
import datetime as dt
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from fleet_guardian.crud import mark_notified, pending_events
from fleet_guardian.logging_config import get_logger
from fleet_guardian.models import Event

logger = get_logger("dispatcher", "dispatcher.log")

UTC = dt.timezone.utc

DISPATCH_BATCH_SIZE = 100

EventHandler = Callable[[Event], Awaitable[None]]


async def log_handler(event: Event) -> None:
    """Default handler when no delivery channel is wired in."""
    logger.info(
        f"[dispatcher] {event.severity.upper()} {event.event_type} device={event.device_id} "
        f"id={event.id}: {event.description}"
    )


async def dispatch_pending_events(db: AsyncSession, handler: EventHandler = log_handler,
                                  limit: int = DISPATCH_BATCH_SIZE) -> int:
    events = await pending_events(db, limit)
    if not events:
        return 0

    delivered = 0
    for event in events:
        try:
            await handler(event)
        except Exception as e:
            # left pending, picked up again on the next poll
            logger.exception(f"[dispatcher] handler failed for event {event.id}: {e}")
            continue

        if await mark_notified(db, event.id, dt.datetime.now(UTC)):
            delivered += 1
        else:
            logger.warning(f"[dispatcher] event {event.id} was already marked notified")

    # row locks are held until here
    await db.commit()
    logger.info(f"[dispatcher] handed off {delivered}/{len(events)} pending events")
    return delivered
