import pytest

from ingest_queue.errors import RateLimitExceeded
from ingest_queue.models import RateLimitRule
from ingest_queue.ratelimit import RateLimiter


class Ticker:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def limiter(ticker):
    return RateLimiter({"cron": RateLimitRule(window_s=60, max_requests=2)}, clock=ticker)


def test_allows_up_to_limit(limiter):
    assert limiter.check("cron", "1.2.3.4").remaining == 1
    assert limiter.check("cron", "1.2.3.4").remaining == 0
    result = limiter.check("cron", "1.2.3.4")
    assert result.allowed is False
    assert result.retry_after_s == 60


def test_window_resets(limiter, ticker):
    for _ in range(2):
        limiter.check("cron", "a")
    ticker.now += 61
    assert limiter.check("cron", "a").allowed is True


def test_keys_are_independent(limiter):
    for _ in range(2):
        limiter.check("cron", "a")
    assert limiter.check("cron", "b").allowed is True


def test_unknown_group_is_unlimited(limiter):
    for _ in range(100):
        assert limiter.check("webhook", "a").allowed is True


def test_enforce_raises(limiter, ticker):
    limiter.enforce("cron", "a")
    limiter.enforce("cron", "a")
    ticker.now += 15
    with pytest.raises(RateLimitExceeded) as exc:
        limiter.enforce("cron", "a")
    assert exc.value.status_code == 429
    assert exc.value.retry_after_s == 45


def test_cleanup_drops_expired_windows(limiter, ticker):
    limiter.check("cron", "a")
    limiter.check("cron", "b")
    assert limiter.cleanup() == 0
    ticker.now += 60
    assert limiter.cleanup() == 2


def test_check_sweeps_expired_windows(ticker):
    limiter = RateLimiter(
        {"cron": RateLimitRule(window_s=60, max_requests=2)}, clock=ticker, sweep_every=5
    )
    for i in range(4):
        limiter.check("cron", f"10.0.0.{i}")
    assert len(limiter) == 4

    ticker.now += 60
    limiter.check("cron", "10.0.0.99")
    assert len(limiter) == 1


def test_window_bound_triggers_sweep(ticker):
    limiter = RateLimiter(
        {"cron": RateLimitRule(window_s=60, max_requests=2)}, clock=ticker, max_windows=3
    )
    for i in range(3):
        limiter.check("cron", f"10.0.0.{i}")

    ticker.now += 60
    limiter.check("cron", "10.0.0.3")
    assert len(limiter) == 1
