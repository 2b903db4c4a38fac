"""
Timing helpers for the registration coordinator

Clock, tick pacing, rate limiting and retry policy shared by the poller,
the classifier and the settlement committer.
"""
import asyncio
import time
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
import pytz

logger = logging.getLogger(__name__)


class PrecisionScheduler:
    """
    Timezone-aware clock used to pace the external poll trigger.
    """

    def __init__(self, timezone: str = "UTC"):
        self.tz = pytz.timezone(timezone)
        self._cancelled = False

    def now(self) -> datetime:
        """Get current time in configured timezone"""
        return datetime.now(self.tz)

    def cancel(self):
        """Cancel any pending waits"""
        self._cancelled = True

    async def wait_until(
        self,
        target: datetime,
        callback: Optional[Callable[[], None]] = None,
    ) -> bool:
        """
        Wait until the target time.

        Args:
            target: Target datetime (naive values are localized to the scheduler zone)
            callback: Optional callback to call on every wake-up while waiting

        Returns:
            True if reached target time, False if cancelled
        """
        self._cancelled = False

        if target.tzinfo is None:
            target = self.tz.localize(target)

        while not self._cancelled:
            remaining = (target - datetime.now(self.tz)).total_seconds()

            if remaining <= 0:
                return True

            if callback:
                callback()

            # Ticks are a minute apart, sub-second accuracy is plenty
            if remaining > 5:
                await asyncio.sleep(1)
            else:
                await asyncio.sleep(min(remaining, 0.1))

        logger.info("Wait cancelled")
        return False

    def next_tick(self, cadence_seconds: int, after: Optional[datetime] = None) -> datetime:
        """Next instant aligned to the cadence (e.g. the top of the next minute)"""
        after = after or self.now()
        epoch = after.timestamp()
        aligned = (int(epoch // cadence_seconds) + 1) * cadence_seconds
        return datetime.fromtimestamp(aligned, self.tz)

    def time_until(self, target: datetime) -> timedelta:
        """Get timedelta until target"""
        now = datetime.now(self.tz)
        if target.tzinfo is None:
            target = self.tz.localize(target)
        return target - now

    def format_countdown(self, target: datetime) -> str:
        """Format remaining time as human-readable string"""
        delta = self.time_until(target)
        total_seconds = int(delta.total_seconds())

        if total_seconds < 0:
            return "NOW!"

        days = total_seconds // 86400
        hours = (total_seconds % 86400) // 3600
        minutes = (total_seconds % 3600) // 60
        seconds = total_seconds % 60

        parts = []
        if days > 0:
            parts.append(f"{days}d")
        if hours > 0:
            parts.append(f"{hours}h")
        if minutes > 0:
            parts.append(f"{minutes}m")
        parts.append(f"{seconds}s")

        return " ".join(parts)


class RateLimiter:
    """
    Rate limiter for outbound probes.

    Uses token bucket algorithm.
    """

    def __init__(self, requests_per_second: float = 2.0):
        self.rate = requests_per_second
        self.tokens = requests_per_second
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait until a request can be made"""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.tokens = min(self.rate, self.tokens + elapsed * self.rate)
            self.last_update = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.rate
                await asyncio.sleep(wait_time)
                self.tokens = 0
            else:
                self.tokens -= 1

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, *args):
        pass


class RetryStrategy:
    """
    Bounded retry policy for transient network failures.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: int = 100,
        max_delay_ms: int = 5000,
        exponential_backoff: bool = False
    ):
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.exponential_backoff = exponential_backoff
        self.attempts = 0

    def should_retry(self) -> bool:
        """Check if another attempt should be made"""
        return self.attempts < self.max_attempts

    def record_attempt(self):
        """Record an attempt"""
        self.attempts += 1

    def delay_ms(self) -> int:
        if self.exponential_backoff:
            return min(
                self.base_delay_ms * (2 ** max(self.attempts - 1, 0)),
                self.max_delay_ms
            )
        return self.base_delay_ms

    async def wait(self):
        """Wait appropriate time before next attempt"""
        await asyncio.sleep(self.delay_ms() / 1000)
