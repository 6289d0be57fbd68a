# normalizer.py
"""
Turns one raw provider report into a PositionSample row with a
confidence-scored ignition state.

Ignition detection, first usable step wins:
  1. status bits     (32-bit status, base = s & 0xFFFF, extended = s >> 16)
  2. multi signal    (weighted base / extended / speed when the bits disagree)
  3. string parse    (free-text status, several languages)
  4. speed inference (fast means on, stopped means off)
  5. unknown
"""
import datetime as dt
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from fleet_guardian.client import RawReport, parse_provider_time
from fleet_guardian.config import BATTERY_PROFILE
from fleet_guardian.exceptions import MalformedUpstreamData
from fleet_guardian.logging_config import get_logger
from fleet_guardian.utils.geo import has_coordinates, mh_to_kmh
from fleet_guardian.utils.variables import (BASE_ACC_WEIGHT, EXTENDED_ACC_WEIGHT,
                                            IGNITION_ON_THRESHOLD, MAX_SPEED_KMH,
                                            SPEED_INFERENCE_MAX_CONFIDENCE,
                                            SPEED_INFERENCE_MIN_CONFIDENCE,
                                            SPEED_INFERENCE_SPAN_KMH, SPEED_OFF_KMH,
                                            SPEED_ON_KMH, SPEED_SIGNAL_KMH,
                                            SPEED_SIGNAL_WEIGHT, STRING_PARSE_CONFIDENCE)

logger = get_logger("normalizer", "normalizer.log")

STATUS_BIT = "status_bit"
MULTI_SIGNAL = "multi_signal"
STRING_PARSE = "string_parse"
SPEED_INFERENCE = "speed_inference"
UNKNOWN = "unknown"

MAX_STATUS = 0xFFFFFFFF

# OFF patterns are checked first
ACC_OFF_PATTERNS = [
    re.compile(r"ACC\s*关", re.IGNORECASE),
    re.compile(r"ACC\s*OFF\b", re.IGNORECASE),
    re.compile(r"ACC[:_=]\s*OFF\b", re.IGNORECASE),
    re.compile(r"IGNITION\s*OFF\b", re.IGNORECASE),
    re.compile(r"ACC\s*ВЫКЛ", re.IGNORECASE),
    re.compile(r"ACC\s*APAGADO", re.IGNORECASE),
]
ACC_ON_PATTERNS = [
    re.compile(r"ACC\s*开", re.IGNORECASE),
    re.compile(r"ACC\s*ON\b", re.IGNORECASE),
    re.compile(r"ACC[:_=]\s*ON\b", re.IGNORECASE),
    re.compile(r"IGNITION\s*ON\b", re.IGNORECASE),
    re.compile(r"ACC\s*ВКЛ", re.IGNORECASE),
    re.compile(r"ACC\s*ENCENDIDO", re.IGNORECASE),
]


@dataclass(frozen=True)
class BatteryProfile:
    min_voltage: float
    max_voltage: float
    chemistry: str  # lead_acid / lithium


BATTERY_PROFILES = {
    "12v_lead_acid": BatteryProfile(11.0, 12.8, "lead_acid"),
    "24v_lead_acid": BatteryProfile(22.0, 25.6, "lead_acid"),
    "48v_lithium": BatteryProfile(40.0, 54.4, "lithium"),
}


@dataclass(frozen=True)
class StatusBits:
    raw: int
    base: int
    extended: int

    @property
    def base_acc(self) -> bool:
        return bool(self.base & 1)

    @property
    def extended_acc(self) -> bool:
        return bool(self.extended & 1)


@dataclass
class IgnitionState:
    on: Optional[bool]
    confidence: float
    method: str
    signals: dict = field(default_factory=dict)

    @property
    def known(self) -> bool:
        return self.method != UNKNOWN


# ---------- small parsers ----------
def _num(v) -> Optional[float]:
    if v is None or v == "" or isinstance(v, bool):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def parse_status_bits(status) -> Optional[StatusBits]:
    """
    Always parse at 32 bits. A legacy 16-bit value simply has an empty
    upper half; large values keep their extended half.
    """
    value = _num(status)
    if value is None or value < 0 or value > MAX_STATUS or value != int(value):
        return None
    s = int(value)
    return StatusBits(raw=s, base=s & 0xFFFF, extended=s >> 16)


def parse_status_text(text) -> Optional[bool]:
    if not text or not isinstance(text, str):
        return None
    for pattern in ACC_OFF_PATTERNS:
        if pattern.search(text):
            return False
    for pattern in ACC_ON_PATTERNS:
        if pattern.search(text):
            return True
    return None


def _speed_confidence(distance_kmh: float, span_kmh: float) -> float:
    spread = SPEED_INFERENCE_MAX_CONFIDENCE - SPEED_INFERENCE_MIN_CONFIDENCE
    return round(SPEED_INFERENCE_MIN_CONFIDENCE + spread * min(1.0, max(distance_kmh, 0.0) / span_kmh), 3)


# ---------- ignition ----------
def detect_ignition(status=None, status_text=None, speed_kmh: Optional[float] = None) -> IgnitionState:
    bits = parse_status_bits(status)

    if bits is not None:
        moving = speed_kmh is not None and speed_kmh > SPEED_SIGNAL_KMH
        signals = {
            "base_acc": bits.base_acc,
            "extended_acc": bits.extended_acc,
            "speed_over_threshold": moving,
        }

        # base bit set, or every signal agrees on off: conclusive
        if bits.base_acc:
            return IgnitionState(True, 1.0, STATUS_BIT, signals)
        if not bits.extended_acc and not moving:
            return IgnitionState(False, 1.0, STATUS_BIT, signals)

        score = (
            (BASE_ACC_WEIGHT if bits.base_acc else 0.0)
            + (EXTENDED_ACC_WEIGHT if bits.extended_acc else 0.0)
            + (SPEED_SIGNAL_WEIGHT if moving else 0.0)
        )
        score = round(score, 3)
        signals["score"] = score
        return IgnitionState(score >= IGNITION_ON_THRESHOLD, score, MULTI_SIGNAL, signals)

    parsed = parse_status_text(status_text)
    if parsed is not None:
        return IgnitionState(parsed, STRING_PARSE_CONFIDENCE, STRING_PARSE, {"status_text": status_text})

    if speed_kmh is not None:
        if speed_kmh > SPEED_ON_KMH:
            conf = _speed_confidence(speed_kmh - SPEED_ON_KMH, SPEED_INFERENCE_SPAN_KMH)
            return IgnitionState(True, conf, SPEED_INFERENCE, {"speed_kmh": speed_kmh})
        if speed_kmh <= SPEED_OFF_KMH:
            conf = _speed_confidence(SPEED_OFF_KMH - speed_kmh, SPEED_OFF_KMH)
            return IgnitionState(False, conf, SPEED_INFERENCE, {"speed_kmh": speed_kmh})

    return IgnitionState(None, 0.0, UNKNOWN, {})


# ---------- battery ----------
def voltage_to_percent(voltage: Optional[float], profile: BatteryProfile) -> Optional[float]:
    if voltage is None or voltage <= 0:
        return None
    if voltage >= profile.max_voltage:
        return 100.0
    if voltage <= profile.min_voltage:
        return 0.0

    ratio = (voltage - profile.min_voltage) / (profile.max_voltage - profile.min_voltage)
    if profile.chemistry == "lead_acid":
        ratio = ratio ** 1.5  # lead-acid discharge curve is non-linear
    return float(round(ratio * 100))


def battery_percent(payload: dict, profile_name: str = BATTERY_PROFILE) -> Optional[float]:
    percent = _num(payload.get("voltagepercent"))
    if percent is not None and percent > 0:
        return float(max(0, min(100, round(percent))))

    profile = BATTERY_PROFILES.get(profile_name, BATTERY_PROFILES["12v_lead_acid"])
    for key in ("voltagev", "exvoltage"):
        volts = _num(payload.get(key))
        if volts is not None and volts > 0:
            return voltage_to_percent(volts, profile)
    return None


# ---------- coordinates / speed ----------
def coordinates(payload: dict):
    for lat_key, lon_key in (("callat", "callon"), ("lat", "lon"), ("latitude", "longitude")):
        lat, lon = _num(payload.get(lat_key)), _num(payload.get(lon_key))
        if lat is None or lon is None:
            continue
        if not (-90 <= lat <= 90 and -180 <= lon <= 180):
            return None, None
        if not has_coordinates(lat, lon):
            return None, None
        return lat, lon
    return None, None


def clamp_speed(speed_kmh: Optional[float]) -> Optional[float]:
    if speed_kmh is None:
        return None
    return min(max(speed_kmh, 0.0), MAX_SPEED_KMH)


def data_quality(row: dict, payload: dict) -> str:
    score = 0
    if row["latitude"] is not None and row["longitude"] is not None:
        score += 2
    if row["speed_kmh"]:
        score += 1
    if row["battery_percent"] is not None:
        score += 1
    if row["ignition_on"] is not None:
        score += 1
    if _num(payload.get("rxlevel")) is not None:
        score += 1

    if score >= 5:
        return "high"
    if score >= 3:
        return "medium"
    return "low"


# ---------- main entry ----------
def normalize_report(report: Union[RawReport, dict], battery_profile: str = BATTERY_PROFILE) -> dict:
    """
    Build the PositionSample column values for one report.

    RawReports from the client already carry km/h; a bare provider record
    (replays, webhooks) still has meters/hour and is converted here.
    Raises MalformedUpstreamData when the device or timestamp is unusable.
    """
    if isinstance(report, RawReport):
        payload = report.payload
        device_id = report.device_id
        speed = report.speed_kmh
        total_distance_m = report.total_distance_m
        observed_at = report.observed_at
    else:
        payload = report or {}
        device_id = payload.get("deviceid")
        raw_speed = _num(payload.get("speed"))
        speed = mh_to_kmh(raw_speed) if raw_speed is not None else None
        total_distance_m = _num(payload.get("totaldistance"))
        observed_at = parse_provider_time(
            payload.get("gpstime") or payload.get("devicetime") or payload.get("updatetime")
        )

    if device_id in (None, ""):
        raise MalformedUpstreamData("report without device id")
    device_id = str(device_id)
    if not isinstance(observed_at, dt.datetime):
        raise MalformedUpstreamData(f"report for {device_id} has no usable timestamp", device_id=device_id)

    speed = clamp_speed(speed)
    status = payload.get("status")
    status_text = payload.get("strstatus") or payload.get("strstatusen")
    if isinstance(status, str) and parse_status_bits(status) is None:
        # some firmwares put the free-text status in the numeric field
        status_text, status = status_text or status, None

    ignition = detect_ignition(status, status_text, speed)
    lat, lon = coordinates(payload)

    row = {
        "device_id": device_id,
        "observed_at": observed_at,
        "latitude": lat,
        "longitude": lon,
        "speed_kmh": speed if speed is not None else 0.0,
        "heading": _num(payload.get("course")),
        "battery_percent": battery_percent(payload, battery_profile),
        "raw_status": None if status is None else str(status),
        "status_text": status_text,
        "total_distance_m": total_distance_m,
        "ignition_on": ignition.on,
        "ignition_confidence": ignition.confidence,
        "ignition_method": ignition.method,
        "ignition_signals": ignition.signals,
    }
    row["data_quality"] = data_quality(row, payload)

    if ignition.method == UNKNOWN:
        logger.debug(f"[normalizer] device={device_id} ignition indeterminate at {observed_at}")
    return row
