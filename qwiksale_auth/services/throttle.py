from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import math
import threading
import time
from typing import Callable, Iterable

from redis import Redis
from redis.exceptions import RedisError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThrottleResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int
    limit: int


@dataclass(frozen=True)
class ThrottleRule:
    name: str
    limit: int
    window_seconds: int
    block_seconds: int | None = None

    def key(self, subject: str) -> str:
        return f"{self.name}:{subject}"


class Throttle(ABC):
    name = "abstract"

    @abstractmethod
    def check(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        block_seconds: int | None = None,
    ) -> ThrottleResult:
        """Count one hit against ``key`` and report whether it is allowed."""

    def check_rule(self, rule: ThrottleRule, subject: str) -> ThrottleResult:
        return self.check(rule.key(subject), rule.limit, rule.window_seconds, rule.block_seconds)


@dataclass
class _Bucket:
    count: int
    reset_at: float
    blocked: bool = False


class MemoryThrottle(Throttle):
    """Fixed-window counters kept in process memory.

    Expired buckets are swept every ``purge_every`` checks.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time, purge_every: int = 256) -> None:
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._purge_every = max(1, purge_every)
        self._checks = 0

    def check(self, key, limit, window_seconds, block_seconds=None) -> ThrottleResult:
        if limit < 1:
            raise ValueError("Throttle limit must be at least 1")
        now = self._clock()
        with self._lock:
            self._checks += 1
            if self._checks % self._purge_every == 0:
                self._purge_locked(now)
            bucket = self._buckets.get(key)
            if bucket is None or now > bucket.reset_at:
                self._buckets[key] = _Bucket(count=1, reset_at=now + window_seconds)
                return ThrottleResult(
                    allowed=True,
                    remaining=limit - 1,
                    retry_after_seconds=max(1, math.ceil(window_seconds)),
                    limit=limit,
                )
            if bucket.count < limit:
                bucket.count += 1
                return ThrottleResult(
                    allowed=True,
                    remaining=max(0, limit - bucket.count),
                    retry_after_seconds=max(1, math.ceil(bucket.reset_at - now)),
                    limit=limit,
                )
            # The block starts at the first refusal; later refusals never move it.
            if block_seconds and not bucket.blocked:
                bucket.blocked = True
                bucket.reset_at = max(bucket.reset_at, now + block_seconds)
            return ThrottleResult(
                allowed=False,
                remaining=0,
                retry_after_seconds=max(1, math.ceil(bucket.reset_at - now)),
                limit=limit,
            )

    def _purge_locked(self, now: float) -> int:
        expired = [key for key, bucket in self._buckets.items() if now > bucket.reset_at]
        for key in expired:
            del self._buckets[key]
        return len(expired)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())


class RedisThrottle(Throttle):
    """Fixed-window counters in Redis.

    The window is a counter key created with ``SET NX PX`` and bumped with
    ``INCR``, so the first hit fixes the expiry. An extended block is a
    separate key holding the absolute unblock time in milliseconds.
    """

    name = "redis"

    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = "rl:",
        block_prefix: str = "rlblock:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._block_prefix = block_prefix
        self._clock = clock

    def check(self, key, limit, window_seconds, block_seconds=None) -> ThrottleResult:
        if limit < 1:
            raise ValueError("Throttle limit must be at least 1")
        counter_key = f"{self._prefix}{key}"
        block_key = f"{self._block_prefix}{key}"
        now_ms = int(self._clock() * 1000)

        if block_seconds:
            blocked_until = self._client.get(block_key)
            if blocked_until is not None:
                remaining_ms = int(float(blocked_until)) - now_ms
                if remaining_ms > 0:
                    return ThrottleResult(
                        allowed=False,
                        remaining=0,
                        retry_after_seconds=max(1, math.ceil(remaining_ms / 1000)),
                        limit=limit,
                    )

        window_ms = max(1, int(window_seconds * 1000))
        with self._client.pipeline() as pipe:
            pipe.set(counter_key, 0, px=window_ms, nx=True)
            pipe.incr(counter_key)
            pipe.pttl(counter_key)
            _, count, ttl_ms = pipe.execute()
        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        retry_after = max(1, math.ceil(ttl_ms / 1000))

        if count <= limit:
            return ThrottleResult(
                allowed=True,
                remaining=max(0, limit - count),
                retry_after_seconds=retry_after,
                limit=limit,
            )

        if block_seconds:
            block_ms = int(block_seconds * 1000)
            if block_ms > ttl_ms:
                self._client.set(block_key, str(now_ms + block_ms), px=block_ms)
                retry_after = max(1, math.ceil(block_ms / 1000))
        return ThrottleResult(
            allowed=False, remaining=0, retry_after_seconds=retry_after, limit=limit
        )


class FailOpenThrottle(Throttle):
    """Lets requests through when the wrapped backend is unreachable."""

    def __init__(self, inner: Throttle) -> None:
        self._inner = inner
        self.name = inner.name

    def check(self, key, limit, window_seconds, block_seconds=None) -> ThrottleResult:
        try:
            return self._inner.check(key, limit, window_seconds, block_seconds)
        except (RedisError, OSError) as exc:
            LOGGER.warning("Throttle backend unavailable for %s; allowing request: %s", key, exc)
            return ThrottleResult(
                allowed=True,
                remaining=0,
                retry_after_seconds=max(1, math.ceil(window_seconds)),
                limit=limit,
            )


def check_rules(
    throttle: Throttle, checks: Iterable[tuple[ThrottleRule, str]]
) -> tuple[ThrottleRule, ThrottleResult] | None:
    """Apply each rule in order.

    Returns the first refusal, or the allowed result with the fewest remaining
    hits, or None when ``checks`` is empty.
    """
    tightest: tuple[ThrottleRule, ThrottleResult] | None = None
    for rule, subject in checks:
        result = throttle.check_rule(rule, subject)
        if not result.allowed:
            return rule, result
        if tightest is None or result.remaining < tightest[1].remaining:
            tightest = (rule, result)
    return tightest
