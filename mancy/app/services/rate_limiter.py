"""Admission control for inbound conversation requests.

Three checks guard every request, all evaluated before anything is consumed:

- a token bucket per principal with lazy, interval-based refill
- a system-wide sliding window counting recent admissions
- a hard cap on concurrently in-flight generations
"""

import asyncio
import math
from collections import OrderedDict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from mancy.app.core.logging import get_logger, get_log_context
from mancy.app.core.utils import Clock, default_clock
from mancy.app.exceptions import AdmissionDenied

logger = get_logger(__name__)


class AdmissionReason(str, Enum):
    ADMITTED = "admitted"
    USER_RATE_LIMITED = "user_rate_limited"
    GLOBAL_RATE_LIMITED = "global_rate_limited"
    CONCURRENCY_LIMITED = "concurrency_limited"


@dataclass
class AdmissionResult:
    """Result of an admission check."""
    allowed: bool
    reason: AdmissionReason
    wait_time: float = 0.0
    remaining_tokens: float = 0.0

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class RateBucket:
    """Token bucket state for one principal."""
    tokens: float
    last_refill: float


class RateLimiter:
    """In-memory admission controller.

    Suitable for a single process running one event loop. Bucket and window
    mutations happen under one ``asyncio.Lock`` so the check and the token
    consumption are a single atomic step.

    Usage:
        limiter = RateLimiter()

        result = await limiter.try_admit("user-1")
        if result:
            try:
                ...  # generate
            finally:
                limiter.release()

        # or
        async with limiter.admission("user-1"):
            ...
    """

    DEFAULT_MAX_BUCKETS = 10000

    def __init__(
        self,
        capacity: int = 5,
        refill_amount: int = 5,
        refill_interval: float = 10.0,
        global_limit: int = 25,
        global_window: float = 10.0,
        max_concurrent: int = 3,
        max_buckets: int = DEFAULT_MAX_BUCKETS,
        clock: Clock = default_clock,
    ):
        """Initialize rate limiter.

        Args:
            capacity: Maximum tokens a principal's bucket can hold
            refill_amount: Tokens added per elapsed refill interval
            refill_interval: Refill interval in seconds
            global_limit: Maximum admissions across all principals per window
            global_window: Length of the global sliding window in seconds
            max_concurrent: Maximum in-flight generations
            max_buckets: Maximum buckets kept before oldest-first trimming
            clock: Time source in seconds
        """
        self.capacity = capacity
        self.refill_amount = refill_amount
        self.refill_interval = refill_interval
        self.global_limit = global_limit
        self.global_window = global_window
        self.max_concurrent = max_concurrent
        self._max_buckets = max_buckets
        self._clock = clock

        self._buckets: OrderedDict[str, RateBucket] = OrderedDict()
        self._global_window: deque[float] = deque()
        self._in_flight = 0
        self._lock = asyncio.Lock()

        self._admitted_total = 0
        self._denied_total = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _refill(self, bucket: RateBucket, now: float) -> None:
        elapsed = now - bucket.last_refill
        refill_count = math.floor(elapsed / self.refill_interval) * self.refill_amount
        if refill_count > 0:
            bucket.tokens = min(self.capacity, bucket.tokens + refill_count)
            bucket.last_refill = now

    def _get_bucket(self, principal_id: str, now: float) -> RateBucket:
        bucket = self._buckets.get(principal_id)
        if bucket is None:
            bucket = RateBucket(tokens=float(self.capacity), last_refill=now)
            self._buckets[principal_id] = bucket
            self._enforce_bucket_limit()
        else:
            self._buckets.move_to_end(principal_id)
            self._refill(bucket, now)
        return bucket

    def _enforce_bucket_limit(self) -> None:
        """Drop the least recently used 20% of buckets when over the limit."""
        if len(self._buckets) > self._max_buckets:
            remove_count = max(1, int(self._max_buckets * 0.2))
            for _ in range(remove_count):
                self._buckets.popitem(last=False)

    def _prune_window(self, now: float) -> None:
        cutoff = now - self.global_window
        while self._global_window and self._global_window[0] <= cutoff:
            self._global_window.popleft()

    def _bucket_wait(self, bucket: RateBucket, now: float) -> float:
        return max(0.0, self.refill_interval - (now - bucket.last_refill))

    async def try_admit(self, principal_id: str) -> AdmissionResult:
        """Check all limits and, if they pass, consume a token and a slot."""
        async with self._lock:
            now = self._clock()
            bucket = self._get_bucket(principal_id, now)
            self._prune_window(now)

            result: Optional[AdmissionResult] = None
            if bucket.tokens <= 0:
                result = AdmissionResult(
                    allowed=False,
                    reason=AdmissionReason.USER_RATE_LIMITED,
                    wait_time=self._bucket_wait(bucket, now),
                )
            elif len(self._global_window) >= self.global_limit:
                oldest = self._global_window[0]
                result = AdmissionResult(
                    allowed=False,
                    reason=AdmissionReason.GLOBAL_RATE_LIMITED,
                    wait_time=max(0.0, oldest + self.global_window - now),
                    remaining_tokens=bucket.tokens,
                )
            elif self._in_flight >= self.max_concurrent:
                result = AdmissionResult(
                    allowed=False,
                    reason=AdmissionReason.CONCURRENCY_LIMITED,
                    remaining_tokens=bucket.tokens,
                )

            if result is not None:
                self._denied_total += 1
                logger.debug(
                    f"Admission denied: {result.reason.value}",
                    extra=get_log_context(
                        principal_id=principal_id,
                        wait_time=round(result.wait_time, 3),
                        in_flight=self._in_flight,
                    ),
                )
                return result

            bucket.tokens -= 1
            self._global_window.append(now)
            self._in_flight += 1
            self._admitted_total += 1

            logger.debug(
                "Token consumed",
                extra=get_log_context(
                    principal_id=principal_id,
                    remaining_tokens=bucket.tokens,
                    in_flight=self._in_flight,
                ),
            )
            return AdmissionResult(
                allowed=True,
                reason=AdmissionReason.ADMITTED,
                remaining_tokens=bucket.tokens,
            )

    def release(self) -> None:
        """Give back one concurrency slot. Never drops below zero."""
        self._in_flight = max(0, self._in_flight - 1)
        logger.debug("Slot released", extra={"in_flight": self._in_flight})

    @asynccontextmanager
    async def admission(self, principal_id: str) -> AsyncIterator[AdmissionResult]:
        """Hold a slot for the duration of the block.

        Raises:
            AdmissionDenied: If any limit refuses the request.
        """
        result = await self.try_admit(principal_id)
        if not result.allowed:
            raise AdmissionDenied(wait_time=result.wait_time, reason=result.reason.value)
        try:
            yield result
        finally:
            self.release()

    def wait_time(self, principal_id: str) -> float:
        """Seconds until the principal's bucket refills (0 if it has tokens)."""
        bucket = self._buckets.get(principal_id)
        if bucket is None or bucket.tokens > 0:
            return 0.0
        return self._bucket_wait(bucket, self._clock())

    def tokens(self, principal_id: str) -> float:
        """Current token count for a principal, refilled lazily."""
        bucket = self._buckets.get(principal_id)
        if bucket is None:
            return float(self.capacity)
        self._refill(bucket, self._clock())
        return bucket.tokens

    async def reset(self, principal_id: str) -> None:
        """Forget a principal's bucket (it starts full on next request)."""
        async with self._lock:
            self._buckets.pop(principal_id, None)

    async def cleanup(self) -> int:
        """Drop buckets that have been idle long enough to be full again.

        Returns:
            Number of buckets removed.
        """
        async with self._lock:
            now = self._clock()
            self._prune_window(now)
            idle = []
            for key, bucket in self._buckets.items():
                self._refill(bucket, now)
                if bucket.tokens >= self.capacity:
                    idle.append(key)
            for key in idle:
                del self._buckets[key]
            return len(idle)

    def get_stats(self) -> dict:
        return {
            "in_flight": self._in_flight,
            "max_concurrent": self.max_concurrent,
            "buckets": len(self._buckets),
            "global_window": len(self._global_window),
            "global_limit": self.global_limit,
            "admitted_total": self._admitted_total,
            "denied_total": self._denied_total,
        }
