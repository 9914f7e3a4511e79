import asyncio
from unittest.mock import AsyncMock

from app.services.throttle import InMemoryThrottle, RedisThrottle


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestInMemoryThrottle:
    def test_allows_once_per_window(self):
        clock = FakeClock()
        throttle = InMemoryThrottle(5, clock=clock)

        assert asyncio.run(throttle.allow("k")) is True
        assert asyncio.run(throttle.allow("k")) is False

        clock.now += 5.1
        assert asyncio.run(throttle.allow("k")) is True

    def test_keys_are_independent(self):
        throttle = InMemoryThrottle(5, clock=FakeClock())

        assert asyncio.run(throttle.allow("a")) is True
        assert asyncio.run(throttle.allow("b")) is True

    def test_map_stays_bounded(self):
        clock = FakeClock()
        throttle = InMemoryThrottle(5, max_entries=3, clock=clock)

        for key in ("a", "b", "c", "d", "e"):
            asyncio.run(throttle.allow(key))

        assert len(throttle._entries) <= 3


class TestRedisThrottle:
    def test_uses_set_nx_with_ttl(self):
        client = AsyncMock()
        client.set.return_value = True
        throttle = RedisThrottle(client, 5)

        assert asyncio.run(throttle.allow("k")) is True
        client.set.assert_awaited_once_with("inbox:throttle:k", "1", px=5000, nx=True)

    def test_existing_key_blocks(self):
        client = AsyncMock()
        client.set.return_value = None

        assert asyncio.run(RedisThrottle(client, 5).allow("k")) is False

    def test_redis_failure_allows(self):
        client = AsyncMock()
        client.set.side_effect = ConnectionError("down")

        assert asyncio.run(RedisThrottle(client, 5).allow("k")) is True
