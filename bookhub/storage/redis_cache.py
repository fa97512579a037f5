from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from bookhub.storage.models import OTP

_OTP_PREFIX = "otp:"


def _encode_otp(otp: OTP) -> str:
    return json.dumps({"user_id": otp.user_id, "created_at": otp.created_at.isoformat()})


def _decode_otp(code: str, cached: Optional[str]) -> Optional[OTP]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        # Unreadable entries count as missing
        return None
    created_at = datetime.now(timezone.utc)
    created_raw = data.get("created_at")
    if isinstance(created_raw, str):
        try:
            created_at = datetime.fromisoformat(created_raw)
        except ValueError:
            pass
    user_id = data.get("user_id")
    if not user_id:
        return None
    return OTP(code=code, user_id=user_id, created_at=created_at)


class RedisCache:
    """Thin Redis wrapper holding one-time codes with a hard TTL."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def store_otp(self, otp: OTP, ttl_seconds: int) -> bool:
        """Store ``otp`` unless the code is already taken; returns False on collision."""
        stored = await self.client.set(
            f"{_OTP_PREFIX}{otp.code}", _encode_otp(otp), ex=ttl_seconds, nx=True
        )
        return bool(stored)

    async def pop_otp(self, code: str) -> Optional[OTP]:
        """Atomically get and delete a one-time code so it can only be used once.

        Uses GETDEL (Redis 6.2+) so two concurrent resets cannot both consume
        the same code.
        """
        cached = await self.client.getdel(f"{_OTP_PREFIX}{code}")
        return _decode_otp(code, cached)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def store_otp(self, otp: OTP, ttl_seconds: int) -> bool:
        stored = self._sync_client.set(
            f"{_OTP_PREFIX}{otp.code}", _encode_otp(otp), ex=ttl_seconds, nx=True
        )
        return bool(stored)

    async def pop_otp(self, code: str) -> Optional[OTP]:
        return _decode_otp(code, self._sync_client.getdel(f"{_OTP_PREFIX}{code}"))

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
