# ratelimit.py
"""
Shared rate limiter and backoff coordinator for the upstream provider.

State lives in one Redis hash per provider so every worker process, scheduler
tick and manual trigger sees the same budget. Every read-modify-write runs in a
WATCH/MULTI transaction; a writer that loses the race simply re-reads and
recomputes.
"""
import time
from dataclasses import dataclass
from typing import Optional, Union

import redis

from fleet_guardian.config import MAX_CALLS_PER_SECOND, PROVIDER_NAME, REDIS_URL
from fleet_guardian.logging_config import get_logger

logger = get_logger("ratelimit", "ratelimit.log")

THROTTLED = "throttled"
IP_LIMIT = "ip_limit"

BACKOFF_INITIAL_SECONDS = 2.0
BACKOFF_MAX_SECONDS = 60.0
IP_LIMIT_BACKOFF_SECONDS = 60.0
STATE_TTL_SECONDS = 3600
# epoch-sized floats lose ~1e-7 s; shorter gaps count as elapsed
CLOCK_TOLERANCE_SECONDS = 1e-6
MIN_WAIT_SECONDS = 0.001


@dataclass
class RateLimitState:
    last_call_at: float = 0.0
    window_start: float = 0.0
    calls_in_window: int = 0
    backoff_until: Optional[float] = None

    @classmethod
    def from_hash(cls, raw: dict) -> "RateLimitState":
        data = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in (raw or {}).items()
        }
        backoff = data.get("backoff_until")
        return cls(
            last_call_at=float(data.get("last_call_at") or 0.0),
            window_start=float(data.get("window_start") or 0.0),
            calls_in_window=int(data.get("calls_in_window") or 0),
            backoff_until=float(backoff) if backoff else None,
        )

    def to_hash(self) -> dict:
        return {
            "last_call_at": repr(self.last_call_at),
            "window_start": repr(self.window_start),
            "calls_in_window": self.calls_in_window,
            "backoff_until": "" if self.backoff_until is None else repr(self.backoff_until),
        }


@dataclass(frozen=True)
class Permit:
    granted_at: float


@dataclass(frozen=True)
class Wait:
    duration: float
    reason: str  # "backoff" or "rate"

    @property
    def is_backoff(self) -> bool:
        return self.reason == "backoff"


def backoff_delay(kind: str, attempt: int = 0) -> float:
    """
    Generic throttling doubles from 2s per attempt, capped at 60s.
    An IP-level limit is a flat 60s whatever the attempt.
    """
    if kind == IP_LIMIT:
        return IP_LIMIT_BACKOFF_SECONDS
    return min(BACKOFF_INITIAL_SECONDS * (2 ** max(attempt, 0)), BACKOFF_MAX_SECONDS)


class RateLimiter:
    def __init__(self, client: redis.Redis, provider: str = PROVIDER_NAME,
                 max_calls: int = MAX_CALLS_PER_SECOND, window_seconds: float = 1.0,
                 clock=time.time):
        self.client = client
        self.key = f"fleet_guardian:ratelimit:{provider}"
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.min_interval = window_seconds / max_calls
        self.clock = clock

    def state(self) -> RateLimitState:
        return RateLimitState.from_hash(self.client.hgetall(self.key))

    def acquire(self) -> Union[Permit, Wait]:
        def _txn(pipe):
            now = self.clock()
            state = RateLimitState.from_hash(pipe.hgetall(self.key))

            if state.backoff_until is not None and now < state.backoff_until:
                return Wait(state.backoff_until - now, "backoff")

            if now - state.window_start >= self.window_seconds - CLOCK_TOLERANCE_SECONDS:
                state.window_start = now
                state.calls_in_window = 0

            if state.calls_in_window >= self.max_calls:
                return Wait(max(state.window_start + self.window_seconds - now, MIN_WAIT_SECONDS), "rate")

            since_last = now - state.last_call_at
            if since_last < self.min_interval - CLOCK_TOLERANCE_SECONDS:
                return Wait(max(self.min_interval - since_last, MIN_WAIT_SECONDS), "rate")

            state.last_call_at = now
            state.calls_in_window += 1
            pipe.multi()
            pipe.hset(self.key, mapping=state.to_hash())
            pipe.expire(self.key, STATE_TTL_SECONDS)
            return Permit(now)

        decision = self.client.transaction(_txn, self.key, value_from_callable=True)
        if isinstance(decision, Wait) and decision.is_backoff:
            logger.info(f"[ratelimit] backoff active for {self.key}, {decision.duration:.1f}s remaining")
        return decision

    def report_throttled(self, kind: str = THROTTLED, attempt: int = 0) -> float:
        """
        Record a provider throttle and return the deadline. A later deadline
        already in place is kept: the coordinator only ever extends backoff.
        """
        delay = backoff_delay(kind, attempt)

        def _txn(pipe):
            now = self.clock()
            state = RateLimitState.from_hash(pipe.hgetall(self.key))
            deadline = now + delay
            if state.backoff_until is not None and state.backoff_until > deadline:
                deadline = state.backoff_until
            state.backoff_until = deadline
            pipe.multi()
            pipe.hset(self.key, mapping=state.to_hash())
            pipe.expire(self.key, max(STATE_TTL_SECONDS, int(delay) + 60))
            return deadline

        deadline = self.client.transaction(_txn, self.key, value_from_callable=True)
        logger.warning(f"[ratelimit] {kind} reported (attempt {attempt + 1}), backing off {delay:.0f}s")
        return deadline


def default_limiter() -> RateLimiter:
    return RateLimiter(redis.from_url(REDIS_URL, decode_responses=False))
