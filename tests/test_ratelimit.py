import fakeredis
import pytest

from fleet_guardian.ratelimit import (IP_LIMIT, THROTTLED, Permit, RateLimiter, Wait,
                                      backoff_delay)


def test_backoff_delay_schedule() -> None:
    assert [backoff_delay(THROTTLED, n) for n in range(4)] == [2, 4, 8, 16]
    assert backoff_delay(THROTTLED, 10) == 60
    assert backoff_delay(IP_LIMIT, 0) == 60
    assert backoff_delay(IP_LIMIT, 5) == 60


def test_minimum_interval_between_calls(limiter, clock) -> None:
    assert isinstance(limiter.acquire(), Permit)

    decision = limiter.acquire()
    assert isinstance(decision, Wait)
    assert decision.reason == "rate"
    assert decision.duration == pytest.approx(1 / 3)

    clock.now += decision.duration + 0.001
    assert isinstance(limiter.acquire(), Permit)


def test_calls_per_window_are_capped(clock, redis_server) -> None:
    burst = RateLimiter(fakeredis.FakeRedis(server=redis_server), provider="burst",
                        max_calls=2, window_seconds=10.0, clock=clock)
    burst.min_interval = 0.0

    assert isinstance(burst.acquire(), Permit)
    assert isinstance(burst.acquire(), Permit)
    decision = burst.acquire()
    assert isinstance(decision, Wait)
    assert decision.duration == pytest.approx(10.0)

    clock.now += 10.0
    assert isinstance(burst.acquire(), Permit)
    assert burst.state().calls_in_window == 1


def test_ip_limit_blocks_every_process_until_deadline(limiter, clock, redis_server) -> None:
    other_process = RateLimiter(fakeredis.FakeRedis(server=redis_server), provider="test", clock=clock)

    deadline = limiter.report_throttled(IP_LIMIT)
    assert deadline == pytest.approx(clock.now + 60)

    for _ in range(3):
        decision = other_process.acquire()
        assert isinstance(decision, Wait)
        assert decision.is_backoff
        clock.now += 19

    clock.now += 4
    assert isinstance(other_process.acquire(), Permit)


def test_backoff_is_only_ever_extended(limiter, clock) -> None:
    long_deadline = limiter.report_throttled(IP_LIMIT)
    short_deadline = limiter.report_throttled(THROTTLED, 0)

    assert short_deadline == long_deadline
    assert limiter.state().backoff_until == pytest.approx(clock.now + 60)


def test_providers_do_not_share_state(clock, redis_server) -> None:
    a = RateLimiter(fakeredis.FakeRedis(server=redis_server), provider="a", clock=clock)
    b = RateLimiter(fakeredis.FakeRedis(server=redis_server), provider="b", clock=clock)

    a.report_throttled(IP_LIMIT)
    assert isinstance(b.acquire(), Permit)


def test_exact_interval_at_epoch_scale_is_granted(limiter, clock) -> None:
    assert clock.now > 1e9
    assert isinstance(limiter.acquire(), Permit)

    decision = limiter.acquire()
    clock.now += decision.duration
    assert isinstance(limiter.acquire(), Permit)


def test_rate_waits_are_never_vanishingly_short(limiter, clock) -> None:
    limiter.acquire()
    clock.now += limiter.min_interval - 1e-4

    decision = limiter.acquire()
    assert isinstance(decision, Wait)
    assert decision.duration >= 0.001
