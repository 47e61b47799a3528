"""Unit tests for in-memory rate limiter adapter."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from ipecho.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter


def test_allows_up_to_limit_in_same_window() -> None:
    clock = Mock(return_value=1000.0)
    limiter = InMemoryFixedWindowRateLimiter(limit=3, window_seconds=60, clock=clock)

    assert limiter.consume("k").allowed is True
    assert limiter.consume("k").allowed is True
    result = limiter.consume("k")
    assert result.allowed is True
    assert result.remaining == 0
    assert result.retry_after_seconds is None


def test_blocks_when_over_limit() -> None:
    clock = Mock(return_value=1000.0)
    limiter = InMemoryFixedWindowRateLimiter(limit=2, window_seconds=60, clock=clock)

    assert limiter.consume("k").allowed is True
    assert limiter.consume("k").allowed is True

    blocked = limiter.consume("k")
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.retry_after_seconds == 60
    assert blocked.reset_at == 1060


def test_window_starts_at_first_request() -> None:
    clock = Mock(return_value=1000.0)
    limiter = InMemoryFixedWindowRateLimiter(limit=1, window_seconds=10, clock=clock)

    assert limiter.consume("k").allowed is True

    clock.return_value = 1009.5
    blocked = limiter.consume("k")
    assert blocked.allowed is False
    assert blocked.retry_after_seconds == 1


def test_resets_on_new_window() -> None:
    clock = Mock(return_value=1000.0)
    limiter = InMemoryFixedWindowRateLimiter(limit=1, window_seconds=10, clock=clock)

    assert limiter.consume("k").allowed is True
    assert limiter.consume("k").allowed is False

    clock.return_value = 1010.0
    assert limiter.consume("k").allowed is True


def test_new_window_admits_after_many_rejections() -> None:
    clock = Mock(return_value=1000.0)
    limiter = InMemoryFixedWindowRateLimiter(limit=2, window_seconds=60, clock=clock)

    results = [limiter.consume("k").allowed for _ in range(50)]
    assert results.count(True) == 2
    assert results[2:] == [False] * 48

    clock.return_value = 1061.0
    fresh = limiter.consume("k")
    assert fresh.allowed is True
    assert fresh.remaining == 1


def test_isolated_by_key() -> None:
    clock = Mock(return_value=1000.0)
    limiter = InMemoryFixedWindowRateLimiter(limit=1, window_seconds=60, clock=clock)

    assert limiter.consume("k1").allowed is True
    assert limiter.consume("k1").allowed is False

    assert limiter.consume("k2").allowed is True


def test_concurrent_consumers_never_exceed_limit() -> None:
    limiter = InMemoryFixedWindowRateLimiter(limit=100, window_seconds=60)

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda _: limiter.consume("ip:203.0.113.42").allowed, range(800)))

    assert results.count(True) == 100
    assert results.count(False) == 700


def test_concurrent_keys_are_counted_independently() -> None:
    limiter = InMemoryFixedWindowRateLimiter(limit=10, window_seconds=60)
    keys = [f"ip:198.51.100.{i % 20}" for i in range(400)]

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda key: (key, limiter.consume(key).allowed), keys))

    allowed_per_key: dict[str, int] = {}
    for key, allowed in results:
        allowed_per_key[key] = allowed_per_key.get(key, 0) + int(allowed)
    assert set(allowed_per_key.values()) == {10}


def test_expired_windows_are_swept() -> None:
    clock = Mock(return_value=1000.0)
    limiter = InMemoryFixedWindowRateLimiter(limit=1, window_seconds=60, clock=clock, shards=1)

    limiter.consume("a")
    limiter.consume("b")
    assert limiter.tracked_keys() == 2

    clock.return_value = 1100.0
    limiter.consume("c")
    assert limiter.tracked_keys() == 1


@pytest.mark.parametrize(
    "kwargs",
    [
        {"limit": 0, "window_seconds": 60},
        {"limit": 1, "window_seconds": 0},
        {"limit": 1, "window_seconds": 60, "shards": 0},
    ],
)
def test_invalid_constructor_args(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        InMemoryFixedWindowRateLimiter(**kwargs)


def test_invalid_consume_args() -> None:
    limiter = InMemoryFixedWindowRateLimiter(limit=1, window_seconds=60)

    with pytest.raises(ValueError):
        limiter.consume("")

    with pytest.raises(ValueError):
        limiter.consume("k", cost=0)
