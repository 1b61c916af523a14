"""
Per-API rate limiting for provider adapters.

Token bucket per (api, user) so one user's sync never eats another user's
quota. Google enforces its quotas per user, so the buckets mirror that.

Usage:
    from utils.rate_limiter import get_rate_limiter

    limiter = get_rate_limiter("gmail", user_key="user-1")
    await limiter.acquire()
    response = await client.get(url)

Limits (kept below the published per-user quotas):
    - Google Calendar: 500 requests / 100s
    - Gmail: 40 requests / second (messages.get costs 5 of the 250 units/s)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class AsyncRateLimiter:
    """
    Async token bucket.

    Args:
        rate: Maximum requests per period (None = unlimited)
        period: Time period in seconds
    """

    def __init__(self, rate: Optional[int] = None, period: float = 1):
        self.rate = rate
        self.period = period
        self._lock = asyncio.Lock()
        self._tokens: float = float(rate) if rate else float("inf")
        self._last_refill: Optional[float] = None

    async def acquire(self) -> None:
        """Wait until a request is allowed. Unlimited limiters return at once."""
        if self.rate is None:
            return

        async with self._lock:
            now = time.monotonic()

            if self._last_refill is None:
                self._last_refill = now
                self._tokens = float(self.rate)

            elapsed = now - self._last_refill
            self._tokens = min(self.rate, self._tokens + elapsed * (self.rate / self.period))
            self._last_refill = now

            if self._tokens < 1:
                wait_time = (1 - self._tokens) * (self.period / self.rate)
                logger.debug(f"Rate limit: waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
                self._tokens = 1
                self._last_refill = time.monotonic()

            self._tokens -= 1

    def is_idle(self, now: Optional[float] = None) -> bool:
        """True once the bucket is full again and nobody is waiting on it."""
        if self._lock.locked():
            return False
        if self.rate is None or self._last_refill is None:
            return True
        now = time.monotonic() if now is None else now
        # A drained bucket refills completely within one period
        return now - self._last_refill >= self.period


class RateLimiterPool:
    """
    Creates limiters on demand with the right limits for each API.

    Buckets are per (api, user), so a long-running API process would collect
    one per user ever seen. Once the pool reaches max_limiters, idle buckets
    are dropped; a fresh bucket behaves exactly like a full idle one.
    """

    API_LIMITS: Dict[str, Dict[str, Optional[float]]] = {
        "google_calendar": {"rate": 500, "period": 100},
        "gmail": {"rate": 40, "period": 1},
    }

    def __init__(self, max_limiters: int = 1024):
        self.max_limiters = max_limiters
        self._limiters: Dict[Tuple[str, str], AsyncRateLimiter] = {}

    def __len__(self) -> int:
        return len(self._limiters)

    def get(self, api_name: str, user_key: str = "") -> AsyncRateLimiter:
        key = (api_name, user_key)
        if key not in self._limiters:
            if len(self._limiters) >= self.max_limiters:
                self._evict_idle()
            limits = self.API_LIMITS.get(api_name, {"rate": None, "period": 1})
            self._limiters[key] = AsyncRateLimiter(
                rate=limits["rate"],
                period=limits["period"],
            )
            if limits["rate"]:
                logger.debug(
                    f"Created rate limiter for {api_name}/{user_key or '-'}: "
                    f"{limits['rate']} requests per {limits['period']}s"
                )

        return self._limiters[key]

    def _evict_idle(self) -> None:
        now = time.monotonic()
        idle = [key for key, limiter in self._limiters.items() if limiter.is_idle(now)]
        for key in idle:
            del self._limiters[key]
        logger.debug(f"Evicted {len(idle)} idle rate limiters, {len(self._limiters)} still active")

    def reset(self) -> None:
        """Drop all limiters (for testing)."""
        self._limiters.clear()


_global_pool = RateLimiterPool()


def get_rate_limiter(api_name: str, user_key: str = "") -> AsyncRateLimiter:
    """Limiter from the process-wide pool."""
    return _global_pool.get(api_name, user_key)


def reset_limiters() -> None:
    _global_pool.reset()
