"""
Request Budget Management
=========================

Fixed-window token buckets keyed by (host, endpoint). Each key gets ``limit``
tokens per ``window_ms``; when a bucket is empty, ``take()`` suspends the
calling task until the window rolls over, plus a small random jitter so that
tasks parked on the same bucket do not wake up in lockstep.

Windows are fixed, not sliding: up to ``2 * limit`` requests can pass within
one window length if they straddle a boundary. The venue documents its
budgets as fixed windows, so this is kept as is.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import urlsplit

from ..utils.config import EndpointLimit, HostLimit
from ..utils.logger import get_logger

JITTER_MIN_MS = 20
JITTER_MAX_MS = 120


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class RateLimitRule:
    """Identifies a bucket: ``limit`` requests per ``window_ms`` for ``key``"""
    key: str
    limit: int
    window_ms: int


@dataclass
class TokenBucket:
    """Mutable bucket state, owned by the RateLimiter"""
    tokens_remaining: int
    window_reset_at: float


class RateLimiter:
    """
    Per-key fixed-window admission control.

    All bucket mutation happens between suspension points on a single event
    loop, so no lock is needed; distinct keys never delay each other.
    """

    def __init__(self,
                 clock: Callable[[], float] = _monotonic_ms,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._buckets: Dict[str, TokenBucket] = {}
        self._stats: Dict[str, Dict[str, float]] = {}
        self.logger = get_logger('rate_limiter')

    def jitter_ms(self) -> int:
        return self._rng.randint(JITTER_MIN_MS, JITTER_MAX_MS)

    async def take(self, rule: RateLimitRule) -> None:
        """Suspend until a token for ``rule.key`` is available, then consume it"""
        stats = self._stats.setdefault(rule.key, {'granted': 0, 'waits': 0, 'waited_ms': 0.0})

        while True:
            now = self._clock()
            bucket = self._buckets.get(rule.key)

            if bucket is None or now >= bucket.window_reset_at:
                bucket = TokenBucket(tokens_remaining=rule.limit, window_reset_at=now + rule.window_ms)
                self._buckets[rule.key] = bucket

            if bucket.tokens_remaining > 0:
                bucket.tokens_remaining -= 1
                stats['granted'] += 1
                return

            wait_ms = max(0.0, bucket.window_reset_at - now) + self.jitter_ms()
            stats['waits'] += 1
            stats['waited_ms'] += wait_ms
            self.logger.debug(f"Bucket {rule.key} exhausted, waiting {wait_ms:.0f}ms")

            # The window may roll over again while we sleep; re-check on wake.
            await self._sleep(wait_ms / 1000.0)

    def bucket(self, key: str) -> Optional[TokenBucket]:
        """Current bucket state for ``key`` (None until first use)"""
        return self._buckets.get(key)

    def get_stats(self) -> Dict[str, Dict[str, float]]:
        return {key: dict(values) for key, values in self._stats.items()}

    def reset(self):
        self._buckets.clear()
        self._stats.clear()


class RateLimitTable:
    """
    Maps a request URL to the rule that governs it.

    Resolution order: the longest matching path prefix among the host's
    endpoint limits, then the host-wide limit, then a conservative default
    keyed by host.
    """

    def __init__(self,
                 endpoint_limits: Iterable[EndpointLimit],
                 host_limits: Iterable[HostLimit],
                 window_ms: int,
                 default_limit: int):
        self.endpoint_limits = list(endpoint_limits)
        self.host_limits = {rule.host: rule.limit for rule in host_limits}
        self.window_ms = window_ms
        self.default_limit = default_limit

    @classmethod
    def from_config(cls, http_config) -> "RateLimitTable":
        return cls(
            endpoint_limits=http_config.endpoint_limits,
            host_limits=http_config.host_limits,
            window_ms=http_config.window_ms,
            default_limit=http_config.default_limit,
        )

    def match(self, url: str) -> RateLimitRule:
        parts = urlsplit(url)
        host = parts.netloc
        path = parts.path or "/"

        best: Optional[EndpointLimit] = None
        for rule in self.endpoint_limits:
            if rule.host != host or not path.startswith(rule.path):
                continue
            if best is None or len(rule.path) > len(best.path):
                best = rule

        if best is not None:
            return RateLimitRule(key=f"{host}{best.path}", limit=best.limit, window_ms=self.window_ms)

        if host in self.host_limits:
            return RateLimitRule(key=host, limit=self.host_limits[host], window_ms=self.window_ms)

        return RateLimitRule(key=f"default:{host}", limit=self.default_limit, window_ms=self.window_ms)
