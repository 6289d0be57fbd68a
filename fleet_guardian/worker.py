# worker.py
import asyncio
import time
from typing import Optional

from fleet_guardian.config import INGEST_INTERVAL_SECONDS, TRIP_SYNC_INTERVAL_SECONDS
from fleet_guardian.database import AsyncSessionLocal, init_models
from fleet_guardian.dispatcher import dispatch_pending_events
from fleet_guardian.logging_config import get_logger
from fleet_guardian.pipeline import RATE_LIMITED, CycleResult, run_ingestion_cycle, run_trip_sync
from fleet_guardian.trips import INCREMENTAL

# ------------ Variable Declaration -----------
logger = get_logger("worker", "worker.log")


def next_delay(result: Optional[CycleResult], interval: float = INGEST_INTERVAL_SECONDS) -> float:
    """Regular cadence, stretched when the provider asked us to back off for longer."""
    if result is not None and result.outcome == RATE_LIMITED and result.retry_after:
        return max(interval, result.retry_after)
    return interval


# ---------- Main Worker Loop ----------
async def worker():
    logger.info("[worker] ensuring tables exist...")
    await init_models()

    last_trip_sync = 0.0
    while True:
        result = None
        try:
            result = await run_ingestion_cycle()
        except Exception as e:
            logger.exception(f"[worker] ingestion cycle crashed: {e}")

        if time.monotonic() - last_trip_sync >= TRIP_SYNC_INTERVAL_SECONDS:
            try:
                trip_result = await run_trip_sync(INCREMENTAL)
                last_trip_sync = time.monotonic()
                logger.info(f"[worker] trip sync outcome={trip_result.outcome}")
            except Exception as e:
                logger.exception(f"[worker] trip sync crashed: {e}")

        try:
            async with AsyncSessionLocal() as db:
                await dispatch_pending_events(db)
        except Exception as e:
            logger.exception(f"[worker] event dispatch failed: {e}")

        delay = next_delay(result)
        logger.info(f"[worker] sleeping {delay:.0f}s until next cycle")
        await asyncio.sleep(delay)


if __name__ == "__main__":
    logger.info("Worker starting up...")
    asyncio.run(worker())
