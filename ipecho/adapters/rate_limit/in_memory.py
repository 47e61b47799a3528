"""In-memory fixed-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: keys are spread over lock-guarded shards, so updates to one key
  are serialized while unrelated keys rarely share a lock.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from ipecho.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult


@dataclass
class _WindowState:
    started_at: float
    expires_at: float
    count: int = 0


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    states: dict[str, _WindowState] = field(default_factory=dict)
    next_sweep_at: float = 0.0


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter using a fixed time window per key.

    A key's window opens with its first request and lasts ``window_seconds``.
    Every attempt inside the window is counted, rejected ones included; the
    attempt that pushes the count past ``limit`` and all later ones are
    rejected until the window expires and a fresh one starts.

    Important:
        This limiter is per-process only. If the service runs with multiple
        workers or instances, each enforces its own independent limits.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
        shards: int = 16,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            limit: Maximum number of allowed units per window.
            window_seconds: Size of the fixed window in seconds.
            clock: Time source function returning UNIX time in seconds.
            shards: Number of independently locked key partitions.

        Raises:
            ValueError: If limit, window_seconds or shards are invalid.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if shards < 1:
            raise ValueError("shards must be >= 1")

        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._shards = [_Shard() for _ in range(shards)]

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def _sweep_expired(self, shard: _Shard, now: float) -> None:
        """Drop expired windows so idle keys don't accumulate. Caller holds the lock."""
        if now < shard.next_sweep_at:
            return
        expired = [key for key, state in shard.states.items() if state.expires_at <= now]
        for key in expired:
            del shard.states[key]
        shard.next_sweep_at = now + self._window_seconds

    def _get_or_reset_state(self, shard: _Shard, key: str, now: float) -> _WindowState:
        """Get the current window for key, starting a new one if it expired."""
        state = shard.states.get(key)
        if state is None or state.expires_at <= now:
            state = _WindowState(started_at=now, expires_at=now + self._window_seconds)
            shard.states[key] = state
        return state

    def _build_result(self, *, state: _WindowState, now: float) -> RateLimitResult:
        allowed = state.count <= self._limit
        remaining = max(0, self._limit - state.count)
        reset_at = int(math.ceil(state.expires_at))
        retry_after = None
        if not allowed:
            retry_after = max(1, int(math.ceil(state.expires_at - now)))
        return RateLimitResult(
            allowed=allowed,
            limit=self._limit,
            remaining=remaining,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Count an attempt for the provided key and decide admission.

        Args:
            key: Unique identifier for rate limiting (e.g. client address).
            cost: Units to consume (default 1).

        Returns:
            RateLimitResult with allowance decision and metadata.

        Raises:
            ValueError: If key is empty or cost is invalid.
        """
        if cost < 1:
            raise ValueError("cost must be >= 1")
        if not key:
            raise ValueError("key must be a non-empty string")

        shard = self._shard_for(key)
        with shard.lock:
            now = self._clock()
            self._sweep_expired(shard, now)
            state = self._get_or_reset_state(shard, key, now)
            state.count += cost
            return self._build_result(state=state, now=now)

    def tracked_keys(self) -> int:
        """Number of keys with a window currently held in memory."""
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.states)
        return total
