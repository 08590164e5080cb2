"""
rate_limit.py — Per-sender chat throttling.

Two backends, selected by RATE_LIMIT_BACKEND:

    Backend   Algorithm                        Scope
    ───────   ──────────────────────────────   ─────────────────────
    memory    sliding window of timestamps     this process
    redis     fixed window (INCR + EXPIRE)     all workers

Every attempt counts, including rejected ones, so a client hammering the
endpoint stays throttled until it backs off. When Redis is unreachable the
redis backend degrades to the in-memory window rather than failing open.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from guardian.app.core import cache
from guardian.app.core.config import settings
from guardian.app.core.errors import RateLimitError

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:chat:"


class ChatRateLimiter:
    """
    Parameters
    ----------
    max_messages : int
        Attempts allowed per window per key.
    window_seconds : int
    backend : str
        ``memory`` or ``redis``.
    clock : callable
        Monotonic time source (seconds).
    """

    def __init__(
        self,
        max_messages: int,
        window_seconds: int,
        *,
        backend: str = "memory",
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self.backend = backend
        self.enabled = enabled
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    async def check(self, key: str) -> None:
        """Count one attempt for ``key``; raise RateLimitError past the limit."""
        if not self.enabled:
            return

        if self.backend == "redis":
            retry_after = await self._check_redis(key)
            if retry_after is False:
                retry_after = self._check_memory(key)
        else:
            retry_after = self._check_memory(key)

        if retry_after is not None:
            logger.warning(
                "Chat rate limit hit for %s (retry in %ss)", key, retry_after,
                extra={"user_id": key},
            )
            raise RateLimitError(
                f"Too many messages. Limit is {self.max_messages} per "
                f"{self.window_seconds} seconds.",
                retry_after=retry_after,
            )

    def _check_memory(self, key: str) -> Optional[int]:
        now = self._clock()
        cutoff = now - self.window_seconds
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(cutoff)
            self._last_sweep = now
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        hits.append(now)
        if len(hits) <= self.max_messages:
            return None
        # Window reopens when the oldest hit still inside it ages out
        return max(1, math.ceil(hits[0] + self.window_seconds - now))

    def _sweep(self, cutoff: float) -> None:
        """Drop senders whose newest hit has left the window."""
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug("Dropped %d idle chat rate-limit keys", len(stale))

    async def _check_redis(self, key: str):
        """None if allowed, seconds to wait if blocked, False if Redis is down."""
        redis_key = KEY_PREFIX + key
        count = await cache.incr_window(redis_key, self.window_seconds)
        if count is None:
            return False
        if count <= self.max_messages:
            return None
        remaining = await cache.ttl(redis_key)
        return remaining or self.window_seconds

    def reset(self, key: Optional[str] = None) -> None:
        """Forget in-memory hits (one key or all)."""
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)


_limiter: Optional[ChatRateLimiter] = None


def get_rate_limiter() -> ChatRateLimiter:
    """Process-wide limiter built from settings."""
    global _limiter
    if _limiter is None:
        _limiter = ChatRateLimiter(
            settings.CHAT_RATE_LIMIT_MAX,
            settings.CHAT_RATE_LIMIT_WINDOW_SECONDS,
            backend=settings.RATE_LIMIT_BACKEND,
            enabled=settings.CHAT_RATE_LIMIT_ENABLED,
        )
    return _limiter
