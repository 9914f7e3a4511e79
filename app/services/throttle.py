"""Key-based throttles used to rate-limit repetitive log lines.

``InMemoryThrottle`` keeps a bounded per-process map; ``RedisThrottle`` shares
the window across instances. Both expose ``async allow(key) -> bool``.
"""

import time
from typing import Callable, Optional, Protocol

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("throttle")


class Throttle(Protocol):
    async def allow(self, key: str) -> bool: ...


class InMemoryThrottle:
    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, float] = {}

    def _purge(self, now: float) -> None:
        if len(self._entries) < self.max_entries:
            return
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=self._entries.get)
            self._entries.pop(oldest, None)

    async def allow(self, key: str) -> bool:
        now = self._clock()
        expires_at = self._entries.get(key)
        if expires_at and expires_at > now:
            return False
        self._purge(now)
        self._entries[key] = now + self.ttl_seconds
        return True


class RedisThrottle:
    def __init__(self, client, ttl_seconds: float, *, prefix: str = "inbox:throttle") -> None:
        self.client = client
        self.ttl_ms = max(int(ttl_seconds * 1000), 1)
        self.prefix = prefix

    async def allow(self, key: str) -> bool:
        try:
            was_set = await self.client.set(f"{self.prefix}:{key}", "1", px=self.ttl_ms, nx=True)
        except (RedisError, OSError) as e:
            logger.warning(f"Throttle redis unavailable, allowing: {e}")
            return True
        return bool(was_set)


_reaction_throttle: Optional[Throttle] = None


def get_reaction_throttle() -> Throttle:
    global _reaction_throttle
    if _reaction_throttle is None:
        ttl = settings.reaction_log_throttle_seconds
        if settings.redis_url:
            client = redis_async.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=0.3,
                socket_timeout=0.3,
            )
            _reaction_throttle = RedisThrottle(client, ttl)
        else:
            _reaction_throttle = InMemoryThrottle(ttl)
    return _reaction_throttle
