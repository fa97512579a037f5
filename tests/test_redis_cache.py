"""Tests for the Redis-backed one-time code cache, using a fake client."""

from datetime import datetime, timezone

from bookhub.storage.models import OTP
from bookhub.storage.redis_cache import RedisCache, SyncRedisCache, _decode_otp


class FakeAsyncRedis:
    def __init__(self):
        self.data = {}
        self.expiry = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def getdel(self, key):
        return self.data.pop(key, None)

    async def ping(self):
        return True


def _cache() -> RedisCache:
    cache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://localhost:6379/0"
    cache.client = FakeAsyncRedis()
    return cache


async def test_store_sets_ttl_and_refuses_collisions():
    cache = _cache()
    otp = OTP(code="A1B2C3", user_id="u1")
    assert await cache.store_otp(otp, 300) is True
    assert cache.client.expiry["otp:A1B2C3"] == 300
    assert await cache.store_otp(OTP(code="A1B2C3", user_id="u2"), 300) is False


async def test_pop_is_single_use():
    cache = _cache()
    created = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    await cache.store_otp(OTP(code="A1B2C3", user_id="u1", created_at=created), 300)

    popped = await cache.pop_otp("A1B2C3")
    assert popped.user_id == "u1"
    assert popped.created_at == created
    assert await cache.pop_otp("A1B2C3") is None


def test_unreadable_entries_are_missing():
    assert _decode_otp("A1B2C3", "{not json") is None
    assert _decode_otp("A1B2C3", '{"created_at": "2026-01-01T00:00:00+00:00"}') is None
    assert _decode_otp("A1B2C3", None) is None


class FakeSyncRedis:
    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.pings = 0
        self.closed = False

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.expiry[key] = ex
        return True

    def getdel(self, key):
        return self.data.pop(key, None)

    def ping(self):
        self.pings += 1
        return True

    def close(self):
        self.closed = True


def _sync_cache() -> SyncRedisCache:
    cache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://localhost:6379/0"
    cache._sync_client = FakeSyncRedis()
    return cache


async def test_sync_cache_matches_async_semantics():
    cache = _sync_cache()
    assert await cache.store_otp(OTP(code="D4E5F6", user_id="u1"), 300) is True
    assert cache._sync_client.expiry["otp:D4E5F6"] == 300
    assert await cache.store_otp(OTP(code="D4E5F6", user_id="u2"), 300) is False

    assert (await cache.pop_otp("D4E5F6")).user_id == "u1"
    assert await cache.pop_otp("D4E5F6") is None


async def test_sync_cache_ping_and_close():
    cache = _sync_cache()
    cache.verify_connection()
    assert await cache.ping() is True
    assert cache._sync_client.pings == 2
    await cache.close()
    assert cache._sync_client.closed
