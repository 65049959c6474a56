import pytest

from track_orchestrator.services.concurrency_manager.rate_limiter import (
    KeyedRateLimiter,
    SlidingWindowRateLimiter,
    burst_for_rate,
)


def test_burst_for_rate():
    assert burst_for_rate(120) == 10
    assert burst_for_rate(50) == 5
    assert burst_for_rate(9) == 0


def test_burst_bucket_refuses_when_empty_and_refills(fake_clock):
    limiter = SlidingWindowRateLimiter(120, window_ms=60000, burst_limit=10, clock=fake_clock)

    for _ in range(10):
        assert limiter.check().allowed

    refused = limiter.check()
    assert not refused.allowed
    assert refused.retry_after_ms == pytest.approx(500.0)

    fake_clock.advance(0.5)
    assert limiter.check().allowed
    assert not limiter.check().allowed


def test_window_limit_without_burst(fake_clock):
    limiter = SlidingWindowRateLimiter(3, window_ms=1000, burst_limit=0, clock=fake_clock)

    assert [limiter.check().allowed for _ in range(3)] == [True, True, True]
    refused = limiter.check()
    assert not refused.allowed
    assert refused.remaining == 0
    assert refused.retry_after_ms == pytest.approx(1000.0)

    fake_clock.advance(0.4)
    assert limiter.check().retry_after_ms == pytest.approx(600.0)

    fake_clock.advance(0.7)
    assert limiter.check().allowed


def test_status_does_not_consume(fake_clock):
    limiter = SlidingWindowRateLimiter(2, window_ms=1000, clock=fake_clock)
    limiter.check()

    assert limiter.status().remaining == 1
    assert limiter.status().remaining == 1
    assert limiter.get_status()["remaining"] == 1


def test_reconfigure_and_reset(fake_clock):
    limiter = SlidingWindowRateLimiter(1, window_ms=1000, clock=fake_clock)
    assert limiter.check().allowed
    assert not limiter.check().allowed

    limiter.reconfigure(max_requests=2)
    assert limiter.check().allowed

    limiter.reset()
    assert limiter.status().remaining == 2


def test_invalid_max_requests():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(0)


def test_keyed_limiter_isolates_keys(fake_clock):
    limiter = KeyedRateLimiter(1, window_ms=1000, clock=fake_clock, message="slow down")

    assert limiter.check("10.0.0.1").allowed
    refused = limiter.check("10.0.0.1")
    assert not refused.allowed
    assert refused.message == "slow down"
    assert limiter.check("10.0.0.2").allowed

    fake_clock.advance(1.0)
    # Idle entries are dropped on the next access
    assert limiter.check("10.0.0.3").allowed
    assert len(limiter) == 1
