"""
Rate limiting implementations for controlling API request rates.

Limiters suspend with `await clock.sleep(...)` so one waiting search never
stalls other searches running on the same event loop. Token counters are
only mutated between awaits, which makes refill-then-consume atomic under
asyncio's cooperative scheduling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional

from .base import Clock, RateLimiter

logger = logging.getLogger(__name__)

# Float slack so a refill that lands a hair under 1.0 does not spin
_EPSILON = 1e-9


class SystemClock(Clock):
    """Wall clock backed by time.monotonic and asyncio.sleep."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class TokenBucket(RateLimiter):
    """
    Token bucket rate limiter.

    Maintains a bucket of "tokens" that refill at a specified rate
    (tokens per second). Each request consumes one token. When the
    bucket is empty, callers are suspended for exactly as long as the
    refill needs to produce the missing tokens.

    Refill is lazy: it is computed from elapsed clock time on every access,
    there is no background timer.
    """

    def __init__(
        self,
        rate: float,
        capacity: Optional[float] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize token bucket.

        Args:
            rate: Tokens per second (i.e., requests per second allowed)
            capacity: Maximum bucket size (defaults to max(1, rate * 60), one minute of budget)
            clock: Time source; defaults to SystemClock
        """
        if rate <= 0:
            raise ValueError("rate must be > 0")
        capacity = capacity if capacity is not None else max(1.0, rate * 60)
        if capacity < 1:
            raise ValueError("capacity must be >= 1")

        self.rate = float(rate)
        self.capacity = float(capacity)
        self.clock = clock or SystemClock()
        self.tokens = self.capacity
        self.last_refill = self.clock.now()

    def _refill(self) -> None:
        now = self.clock.now()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.last_refill = now

    def available(self) -> float:
        """Current token count after refill, without consuming."""
        self._refill()
        return self.tokens

    async def wait_for_token(self) -> None:
        """Suspend until one token is available, then consume it."""
        await self.acquire(1)

    async def acquire(self, count: int = 1) -> None:
        """
        Acquire one or more tokens.

        Suspends until the requested number of tokens are available. After
        every sleep the bucket is refilled and re-checked, since another
        task may have taken the tokens in the meantime.

        Args:
            count: Number of tokens to acquire
        """
        if count <= 0:
            raise ValueError("count must be > 0")
        if count > self.capacity:
            raise ValueError(f"count {count} exceeds bucket capacity {self.capacity}")

        while True:
            self._refill()
            if self.tokens + _EPSILON >= count:
                self.tokens = max(0.0, self.tokens - count)
                return

            wait_s = (count - self.tokens) / self.rate
            logger.debug(f"Rate limiter empty ({self.tokens:.3f} tokens), waiting {wait_s * 1000:.0f}ms")
            await self.clock.sleep(wait_s)


class NoOpRateLimiter(RateLimiter):
    """
    Rate limiter that does nothing (for testing/development).

    Useful when you want to disable rate limiting without changing code.
    """

    async def wait_for_token(self) -> None:
        """Do nothing."""
        pass

    async def acquire(self, count: int = 1) -> None:
        """Do nothing."""
        pass


class RateLimiterRegistry:
    """
    One shared TokenBucket per upstream provider name.

    Limiters are created lazily on first request and reused afterwards, so
    every search against the same provider draws from the same budget. The
    first caller's settings win for a given name. Pass the registry into
    providers explicitly; `reset()` drops all limiters (test teardown).
    """

    def __init__(self, max_calls_per_min: int = 30, clock: Optional[Clock] = None):
        if max_calls_per_min <= 0:
            raise ValueError("max_calls_per_min must be > 0")
        self.max_calls_per_min = max_calls_per_min
        self.clock = clock
        self._limiters: Dict[str, TokenBucket] = {}

    def get(self, provider_name: str, max_calls_per_min: Optional[int] = None) -> TokenBucket:
        """
        Return the limiter for `provider_name`, creating it if needed.

        Args:
            provider_name: Upstream provider identifier
            max_calls_per_min: Budget for a newly created limiter (ignored if one exists)
        """
        limiter = self._limiters.get(provider_name)
        if limiter is None:
            per_min = max_calls_per_min or self.max_calls_per_min
            limiter = TokenBucket(rate=per_min / 60.0, capacity=per_min, clock=self.clock)
            self._limiters[provider_name] = limiter
            logger.debug(f"Created rate limiter for '{provider_name}': {per_min} calls/min")
        return limiter

    def reset(self) -> None:
        self._limiters.clear()

    def __contains__(self, provider_name: str) -> bool:
        return provider_name in self._limiters

    def __len__(self) -> int:
        return len(self._limiters)
