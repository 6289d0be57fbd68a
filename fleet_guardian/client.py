# client.py
"""
Upstream telemetry client.

Every outbound call acquires a permit from the shared RateLimiter, carries a
bounded timeout and is classified into throttled / auth_expired / transient /
permanent. This module is also the single place provider units are converted:
speeds arrive in meters/hour and distances in meters, everything returned from
here is km/h and km (odometer stays in meters, as stored).
"""
import asyncio
import datetime as dt
from dataclasses import dataclass, field
from typing import List, Optional

import aiohttp
import pytz
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from fleet_guardian.config import (PROVIDER_SERVER_ID, PROVIDER_TOKEN, PROVIDER_TZ,
                                   PROVIDER_URL, REQUEST_TIMEOUT)
from fleet_guardian.exceptions import (AuthExpired, MalformedUpstreamData, PermanentError,
                                       RateLimited, TransientNetworkError)
from fleet_guardian.logging_config import get_logger
from fleet_guardian.ratelimit import IP_LIMIT, THROTTLED, RateLimiter, Wait, backoff_delay
from fleet_guardian.utils.geo import m_to_km, mh_to_kmh

logger = get_logger("client", "client.log")

UTC = dt.timezone.utc

IP_LIMIT_CODES = {8902}
THROTTLE_CODES = {9904}
TOKEN_EXPIRED_CODES = {9903, 9906}

MAX_RETRIES = 2
MAX_RATE_WAITS = 20  # inter-call waits tolerated before giving up on a permit
EPOCH_MS_THRESHOLD = 946684800000  # 2000-01-01 in ms; smaller numbers are seconds


@dataclass
class RawReport:
    device_id: str
    payload: dict
    speed_kmh: Optional[float]
    total_distance_m: Optional[float]
    observed_at: Optional[dt.datetime]
    converted: bool = True


@dataclass
class RawTrip:
    device_id: str
    start_time: Optional[dt.datetime]
    end_time: Optional[dt.datetime]
    start_lat: Optional[float] = None
    start_lon: Optional[float] = None
    end_lat: Optional[float] = None
    end_lon: Optional[float] = None
    distance_km: Optional[float] = None
    max_speed_kmh: Optional[float] = None
    avg_speed_kmh: Optional[float] = None
    payload: dict = field(default_factory=dict)


# ---------- unit / time helpers ----------
def _num(v) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def parse_provider_time(value, tz_name: str = PROVIDER_TZ) -> Optional[dt.datetime]:
    """
    Provider timestamps come as epoch ms, epoch seconds, ISO strings, or
    "YYYY-MM-DD HH:MM:SS" in the provider's local zone. Returns UTC or None.
    """
    if value is None or value == "":
        return None

    if isinstance(value, dt.datetime):
        return value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)

    if isinstance(value, str) and "-" in value:
        text = value.strip().replace("T", " ")
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = pytz.timezone(tz_name).localize(parsed)
        return parsed.astimezone(UTC)

    num = _num(value)
    if num is None or num <= 0:
        return None
    seconds = num if num < EPOCH_MS_THRESHOLD else num / 1000.0
    return dt.datetime.fromtimestamp(seconds, tz=UTC)


def format_provider_time(value: dt.datetime, tz_name: str = PROVIDER_TZ) -> str:
    return value.astimezone(pytz.timezone(tz_name)).strftime("%Y-%m-%d %H:%M:%S")


def provider_utc_offset(at: dt.datetime, tz_name: str = PROVIDER_TZ):
    """Hours east of UTC in the provider zone at `at`, as querytrips expects."""
    hours = at.astimezone(pytz.timezone(tz_name)).utcoffset().total_seconds() / 3600
    return int(hours) if hours.is_integer() else hours


def report_from_record(record: dict, tz_name: str = PROVIDER_TZ) -> RawReport:
    device_id = record.get("deviceid")
    if device_id in (None, ""):
        raise MalformedUpstreamData("position record without deviceid")

    speed = _num(record.get("speed"))
    return RawReport(
        device_id=str(device_id),
        payload=record,
        speed_kmh=mh_to_kmh(speed) if speed is not None else None,
        total_distance_m=_num(record.get("totaldistance")),
        observed_at=parse_provider_time(
            record.get("gpstime") or record.get("devicetime")
            or record.get("updatetime") or record.get("time"),
            tz_name,
        ),
    )


def trip_from_record(device_id: str, record: dict, tz_name: str = PROVIDER_TZ) -> RawTrip:
    distance_m = _num(record.get("distance") or record.get("totaldistance"))
    max_speed = _num(record.get("maxspeed"))
    avg_speed = _num(record.get("avgspeed"))
    return RawTrip(
        device_id=str(device_id),
        start_time=parse_provider_time(record.get("starttime") or record.get("starttime_str"), tz_name),
        end_time=parse_provider_time(record.get("endtime") or record.get("endtime_str"), tz_name),
        start_lat=_num(record.get("startlat") or record.get("startlatitude")),
        start_lon=_num(record.get("startlon") or record.get("startlongitude")),
        end_lat=_num(record.get("endlat") or record.get("endlatitude")),
        end_lon=_num(record.get("endlon") or record.get("endlongitude")),
        distance_km=m_to_km(distance_m) if distance_m else None,
        max_speed_kmh=mh_to_kmh(max_speed) if max_speed is not None else None,
        avg_speed_kmh=mh_to_kmh(avg_speed) if avg_speed is not None else None,
        payload=record,
    )


# ---------- auth collaborator ----------
class StaticTokenProvider:
    """Token handed over by the external auth service through configuration."""

    def __init__(self, token: str = PROVIDER_TOKEN, server_id: str = PROVIDER_SERVER_ID):
        self.token = token
        self.server_id = server_id

    async def get_token(self) -> str:
        if not self.token:
            raise AuthExpired("no provider token configured")
        return self.token

    async def refresh(self) -> str:
        raise AuthExpired("static token cannot be refreshed, re-authentication required")


# ---------- client ----------
class TelemetryClient:
    def __init__(self, limiter: RateLimiter, tokens=None, base_url: str = PROVIDER_URL,
                 timeout: float = REQUEST_TIMEOUT, session: Optional[aiohttp.ClientSession] = None,
                 sleep=asyncio.sleep, max_retries: int = MAX_RETRIES, tz_name: str = PROVIDER_TZ):
        self.limiter = limiter
        self.tokens = tokens or StaticTokenProvider()
        self.base_url = base_url
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self.max_retries = max_retries
        self.tz_name = tz_name

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    # ---------- transport ----------
    async def _send(self, action: str, body: dict, token: str):
        """One HTTP round trip. Returns (http_status, decoded_json_or_None)."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        params = {"action": action, "token": token, "serverid": getattr(self.tokens, "server_id", "1")}
        async with self._session.post(
            self.base_url,
            params=params,
            json=body,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as resp:
            try:
                payload = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                payload = None
            return resp.status, payload

    async def _acquire(self, action: str):
        loop = asyncio.get_running_loop()
        for _ in range(MAX_RATE_WAITS):
            decision = await loop.run_in_executor(None, self.limiter.acquire)
            if not isinstance(decision, Wait):
                return decision
            if decision.is_backoff:
                raise RateLimited(
                    f"backoff active for {decision.duration:.1f}s",
                    retry_after=decision.duration, kind="backoff", action=action,
                )
            await self._sleep(decision.duration)
        raise RateLimited("could not obtain a call permit", retry_after=1.0, kind="backoff", action=action)

    async def _report_throttled(self, kind: str, attempt: int) -> float:
        loop = asyncio.get_running_loop()
        deadline = await loop.run_in_executor(None, self.limiter.report_throttled, kind, attempt)
        return max(deadline - self.limiter.clock(), 0.0)

    async def _call_once(self, action: str, body: dict, attempt: int) -> dict:
        await self._acquire(action)
        token = await self.tokens.get_token()

        try:
            status, payload = await self._send(action, body, token)
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise TransientNetworkError(f"{action} timed out after {self.timeout}s", action=action) from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"{action} connection error: {e}", action=action) from e

        if status == 429:
            retry_after = await self._report_throttled(THROTTLED, attempt)
            raise RateLimited(f"{action} HTTP 429", retry_after=retry_after, kind=THROTTLED, action=action)
        if status == 401:
            raise AuthExpired(f"{action} HTTP 401", code=status, action=action)
        if status >= 500:
            raise TransientNetworkError(f"{action} HTTP {status}", code=status, action=action)
        if status >= 300:
            raise PermanentError(f"{action} HTTP {status}", code=status, action=action)
        if not isinstance(payload, dict):
            raise PermanentError(f"{action} returned a non-JSON body", action=action)

        code = payload.get("status", 0)
        try:
            code = int(code)
        except (TypeError, ValueError):
            raise PermanentError(f"{action} returned status {code!r}", action=action)
        cause = payload.get("cause") or "unknown"

        if code == 0:
            return payload
        if code in IP_LIMIT_CODES:
            retry_after = await self._report_throttled(IP_LIMIT, attempt)
            raise RateLimited(f"{action} IP limit: {cause}", retry_after=retry_after,
                              kind=IP_LIMIT, code=code, action=action)
        if code in THROTTLE_CODES:
            retry_after = await self._report_throttled(THROTTLED, attempt)
            raise RateLimited(f"{action} throttled: {cause}", retry_after=retry_after,
                              kind=THROTTLED, code=code, action=action)
        if code in TOKEN_EXPIRED_CODES:
            raise AuthExpired(f"{action} token expired: {cause}", code=code, action=action)
        raise PermanentError(f"{action} failed: {cause} (status {code})", code=code, action=action)

    @staticmethod
    def _retryable(exc: BaseException) -> bool:
        if isinstance(exc, RateLimited):
            return exc.kind == THROTTLED
        return isinstance(exc, TransientNetworkError)

    @staticmethod
    def _wait(retry_state) -> float:
        exc = retry_state.outcome.exception()
        if isinstance(exc, RateLimited):
            return exc.retry_after
        return backoff_delay(THROTTLED, retry_state.attempt_number - 1)

    async def _call_with_retry(self, action: str, body: dict) -> dict:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(self._retryable),
            sleep=self._sleep,
            before_sleep=lambda rs: logger.warning(
                f"[client] {action} attempt {rs.attempt_number} failed: {rs.outcome.exception()}; retrying"
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_once(action, body, attempt.retry_state.attempt_number - 1)

    async def call(self, action: str, body: dict) -> dict:
        try:
            return await self._call_with_retry(action, body)
        except AuthExpired:
            logger.warning(f"[client] token rejected on {action}, asking auth collaborator to refresh")
            await self.tokens.refresh()
            return await self._call_with_retry(action, body)

    # ---------- endpoints ----------
    async def fetch_latest_positions(self, device_ids: List[str]) -> List[RawReport]:
        """
        Latest position per device. Records that cannot be attributed to a
        device are dropped here; per-device parsing problems surface later
        in the normalizer.
        """
        if not device_ids:
            return []
        result = await self.call("lastposition", {"deviceids": list(device_ids), "lastquerypositiontime": 0})
        reports = []
        for record in result.get("records") or []:
            try:
                reports.append(report_from_record(record, self.tz_name))
            except MalformedUpstreamData as e:
                logger.warning(f"[client] skipping position record: {e}")
        logger.info(f"[client] lastposition returned {len(reports)} records for {len(device_ids)} devices")
        return reports

    async def fetch_trips(self, device_id: str, begin: dt.datetime, end: dt.datetime) -> List[RawTrip]:
        body = {
            "deviceid": device_id,
            "begintime": format_provider_time(begin, self.tz_name),
            "endtime": format_provider_time(end, self.tz_name),
            "timezone": provider_utc_offset(begin, self.tz_name),
        }
        result = await self.call("querytrips", body)
        records = result.get("records") or []
        logger.info(f"[client] querytrips returned {len(records)} trips for device {device_id}")
        return [trip_from_record(device_id, r, self.tz_name) for r in records]
