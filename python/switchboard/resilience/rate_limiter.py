"""
Fixed-window rate limiter with a burst allowance.

Each identifier gets a counter that resets every ``window_ms``. A request is
allowed while the counter stays within ``max_requests + burst_size``; beyond
that callers get a hard rejection, never a silent queue.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from switchboard.exceptions import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int = 100
    window_ms: int = 60000
    burst_size: int = 10


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: float                   # epoch ms when the current window ends
    retry_after: Optional[int] = None   # seconds, set only when rejected


@dataclass
class _Window:
    start: float
    count: int
    config: RateLimitConfig


class RateLimiter:
    """
    Per-identifier request counting.

    Attributes:
        default_config: Limits used when ``check`` gets no explicit config
    """

    def __init__(self, default_config: Optional[RateLimitConfig] = None, clock: Callable[[], float] = time.time):
        self.default_config = default_config or RateLimitConfig()
        self._windows: Dict[str, _Window] = {}
        self._clock = clock

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _current_window(self, identifier: str, config: RateLimitConfig, now: float) -> _Window:
        window = self._windows.get(identifier)
        if window is None or now - window.start >= config.window_ms or window.config != config:
            window = _Window(start=now, count=0, config=config)
            self._windows[identifier] = window
        return window

    def check(self, identifier: str, config: Optional[RateLimitConfig] = None) -> RateLimitResult:
        """
        Count one request for identifier.

        Args:
            identifier: Caller key (session id, agent id, client hash)
            config: Optional per-call limits

        Returns:
            RateLimitResult for this request
        """
        limit = config or self.default_config
        now = self._now_ms()
        window = self._current_window(identifier, limit, now)
        window.count += 1

        reset_time = window.start + limit.window_ms
        allowed = window.count <= limit.max_requests + limit.burst_size
        remaining = max(0, limit.max_requests - window.count)

        if allowed:
            return RateLimitResult(allowed=True, remaining=remaining, reset_time=reset_time)

        retry_after = max(1, math.ceil((reset_time - now) / 1000))
        return RateLimitResult(allowed=False, remaining=remaining, reset_time=reset_time, retry_after=retry_after)

    def get_status(self, identifier: str) -> Optional[RateLimitResult]:
        """Current state without counting a request; None for unknown identifiers."""
        window = self._windows.get(identifier)
        if window is None:
            return None
        limit = window.config
        now = self._now_ms()
        if now - window.start >= limit.window_ms:
            return RateLimitResult(allowed=True, remaining=limit.max_requests, reset_time=now + limit.window_ms)
        return RateLimitResult(
            allowed=window.count < limit.max_requests + limit.burst_size,
            remaining=max(0, limit.max_requests - window.count),
            reset_time=window.start + limit.window_ms,
        )

    def reset(self, identifier: Optional[str] = None) -> None:
        if identifier is None:
            self._windows.clear()
        else:
            self._windows.pop(identifier, None)

    def cleanup(self) -> int:
        """Drop expired windows; returns how many were removed."""
        now = self._now_ms()
        expired = [k for k, w in self._windows.items() if now - w.start >= w.config.window_ms]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Rate limiter dropped %d expired windows", len(expired))
        return len(expired)

    def tracked_identifiers(self) -> int:
        return len(self._windows)


async def with_rate_limit(
    limiter: RateLimiter,
    identifier: str,
    fn: Callable[[], Awaitable[T]],
    config: Optional[RateLimitConfig] = None,
) -> T:
    """Check the limit, then run fn; a rejection raises RateLimitError."""
    result = limiter.check(identifier, config)
    if not result.allowed:
        raise RateLimitError(
            f"Rate limit exceeded. Try again in {result.retry_after} seconds.",
            retry_after=result.retry_after,
            details={"identifier": identifier},
        )
    return await fn()
