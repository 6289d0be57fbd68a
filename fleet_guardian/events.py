# events.py
import datetime as dt
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fleet_guardian.crud import active_geofences, conditional_insert_event, previous_sample, samples_between
from fleet_guardian.geofences import ENTER, crossing
from fleet_guardian.logging_config import device_logger, get_logger
from fleet_guardian.models import Geofence, PositionSample
from fleet_guardian.utils.variables import (COOLDOWN_MINUTES, CRITICAL_BATTERY_PERCENT,
                                            DEFAULT_COOLDOWN_MINUTES, HARSH_BRAKING_KMH,
                                            IDLE_LOOKBACK_MINUTES, IDLE_SPEED_KMH,
                                            IDLE_THRESHOLD_MINUTES, LOW_BATTERY_PERCENT,
                                            MOVING_SPEED_KMH, OVERSPEED_CRITICAL_KMH,
                                            OVERSPEED_ERROR_KMH, OVERSPEED_KMH,
                                            RAPID_ACCELERATION_KMH)

logger = get_logger("events", "events.log")

UTC = dt.timezone.utc

INFO, WARNING, ERROR, CRITICAL = "info", "warning", "error", "critical"


@dataclass
class Detection:
    event_type: str
    severity: str
    title: str
    description: str
    value_before: Optional[float] = None
    value_after: Optional[float] = None
    threshold: Optional[float] = None
    metadata: dict = field(default_factory=dict)


def cooldown_minutes(event_type: str) -> float:
    return COOLDOWN_MINUTES.get(event_type, DEFAULT_COOLDOWN_MINUTES)


def _speed(sample: PositionSample) -> float:
    return float(sample.speed_kmh or 0)


def _ignition_known(sample: PositionSample) -> bool:
    return sample.ignition_on is not None and sample.ignition_method != "unknown"


# =====================================================================
# Threshold rules (pure, prev vs curr)
# =====================================================================
def overspeed_severity(speed_kmh: float) -> str:
    if speed_kmh > OVERSPEED_CRITICAL_KMH:
        return CRITICAL
    if speed_kmh > OVERSPEED_ERROR_KMH:
        return ERROR
    return WARNING


def battery_rules(prev: PositionSample, curr: PositionSample) -> List[Detection]:
    before, after = prev.battery_percent, curr.battery_percent
    if before is None or after is None:
        return []

    # a single drop through both thresholds reports the critical one only
    if before >= CRITICAL_BATTERY_PERCENT > after:
        return [Detection(
            "critical_battery", CRITICAL, "Critical battery",
            f"Battery dropped to {after:.0f}%", before, after, CRITICAL_BATTERY_PERCENT,
        )]
    if before >= LOW_BATTERY_PERCENT > after:
        return [Detection(
            "low_battery", WARNING, "Low battery",
            f"Battery dropped to {after:.0f}%", before, after, LOW_BATTERY_PERCENT,
        )]
    return []


def speed_rules(prev: PositionSample, curr: PositionSample) -> List[Detection]:
    before, after = _speed(prev), _speed(curr)
    found = []

    if before <= OVERSPEED_KMH < after:
        found.append(Detection(
            "overspeeding", overspeed_severity(after), "Overspeeding",
            f"Speed {after:.0f} km/h exceeds {OVERSPEED_KMH:.0f} km/h",
            before, after, OVERSPEED_KMH, {"speed_kmh": after},
        ))

    delta = after - before
    if delta > RAPID_ACCELERATION_KMH:
        found.append(Detection(
            "rapid_acceleration", WARNING, "Rapid acceleration",
            f"Speed rose {delta:.0f} km/h between reports",
            before, after, RAPID_ACCELERATION_KMH, {"delta_kmh": delta},
        ))
    elif -delta > HARSH_BRAKING_KMH:
        found.append(Detection(
            "harsh_braking", WARNING, "Harsh braking",
            f"Speed fell {-delta:.0f} km/h between reports",
            before, after, HARSH_BRAKING_KMH, {"delta_kmh": delta},
        ))
    return found


def ignition_rules(prev: PositionSample, curr: PositionSample) -> List[Detection]:
    """Indeterminate ignition on either side never counts as a transition."""
    if not (_ignition_known(prev) and _ignition_known(curr)):
        return []

    found = []
    meta = {"method": curr.ignition_method, "confidence": curr.ignition_confidence}

    if prev.ignition_on != curr.ignition_on:
        if curr.ignition_on:
            found.append(Detection("ignition_on", INFO, "Ignition on", "Engine started",
                                   0.0, 1.0, None, meta))
        else:
            found.append(Detection("ignition_off", INFO, "Ignition off", "Engine stopped",
                                   1.0, 0.0, None, meta))

    before, after = _speed(prev), _speed(curr)
    if curr.ignition_on and before <= MOVING_SPEED_KMH < after:
        found.append(Detection(
            "vehicle_moving", INFO, "Vehicle moving", f"Vehicle started moving at {after:.0f} km/h",
            before, after, MOVING_SPEED_KMH, meta,
        ))
    return found


def geofence_rules(fences: List[Geofence], prev: PositionSample, curr: PositionSample) -> List[Detection]:
    found = []
    for fence in fences:
        direction = crossing(fence, prev, curr)
        if direction is None:
            continue
        entered = direction == ENTER
        found.append(Detection(
            "geofence_enter" if entered else "geofence_exit",
            INFO if entered else WARNING,
            f"{'Entered' if entered else 'Left'} {fence.name}",
            f"Vehicle {'entered' if entered else 'left'} geofence {fence.name}",
            threshold=fence.radius_m,
            metadata={"geofence_id": fence.id, "geofence_name": fence.name},
        ))
    return found


# =====================================================================
# Idle detection (bounded look-back)
# =====================================================================
def _idling(sample: PositionSample) -> bool:
    return _ignition_known(sample) and sample.ignition_on is True and _speed(sample) < IDLE_SPEED_KMH


def idle_run_start(samples: List[PositionSample]) -> Optional[PositionSample]:
    """
    samples is oldest-first and ends with the current sample. Returns the
    first sample of the idle run that reaches the end, or None.
    """
    start = None
    for s in reversed(samples):
        if not _idling(s):
            break
        start = s
    return start


async def idle_rule(db: AsyncSession, prev: PositionSample, curr: PositionSample) -> Optional[Detection]:
    if not (_ignition_known(prev) and _idling(curr)):
        return None

    since = curr.observed_at - dt.timedelta(minutes=IDLE_LOOKBACK_MINUTES)
    window = await samples_between(db, curr.device_id, since, curr.observed_at)
    start = idle_run_start(window)
    if start is None:
        return None

    threshold = dt.timedelta(minutes=IDLE_THRESHOLD_MINUTES)
    idle_for = curr.observed_at - start.observed_at
    # fire on the sample that crosses the threshold, not on every later one
    if idle_for < threshold or (_idling(prev) and prev.observed_at - start.observed_at >= threshold):
        return None

    minutes = idle_for.total_seconds() / 60
    return Detection(
        "idle_too_long", WARNING, "Idling too long",
        f"Engine on and stationary for {minutes:.0f} minutes",
        None, minutes, float(IDLE_THRESHOLD_MINUTES), {"idle_since": start.observed_at.isoformat()},
    )


# =====================================================================
# Evaluator
# =====================================================================
async def detect(db: AsyncSession, prev: PositionSample, curr: PositionSample) -> List[Detection]:
    found = []
    found += battery_rules(prev, curr)
    found += speed_rules(prev, curr)
    found += ignition_rules(prev, curr)

    idle = await idle_rule(db, prev, curr)
    if idle is not None:
        found.append(idle)

    fences = await active_geofences(db, curr.device_id)
    found += geofence_rules(fences, prev, curr)
    return found


async def evaluate_sample(db: AsyncSession, sample: PositionSample,
                          now: Optional[dt.datetime] = None) -> List[int]:
    """
    Compare a freshly stored sample with the newest older sample for the
    device and store every qualifying event that is outside its cooldown.
    Returns the ids of events actually created.
    """
    log = device_logger(logger, "events", sample.device_id)
    now = now or dt.datetime.now(UTC)

    prev = await previous_sample(db, sample.device_id, sample.observed_at)
    if prev is None:
        log.info(f"no earlier sample before {sample.observed_at}, nothing to compare")
        return []

    created = []
    for d in await detect(db, prev, sample):
        event_id = await conditional_insert_event(
            db,
            {
                "device_id": sample.device_id,
                "event_type": d.event_type,
                "severity": d.severity,
                "title": d.title,
                "description": d.description,
                "observed_at": sample.observed_at,
                "latitude": sample.latitude,
                "longitude": sample.longitude,
                "value_before": d.value_before,
                "value_after": d.value_after,
                "threshold": d.threshold,
                "metadata": d.metadata,
            },
            cooldown_minutes(d.event_type),
            now,
        )
        if event_id is None:
            log.info(f"{d.event_type} suppressed by {cooldown_minutes(d.event_type)} min cooldown")
        else:
            log.info(f"{d.event_type} ({d.severity}) created id={event_id}")
            created.append(event_id)
    return created
