from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from bookhub.config import get_settings, reset_settings_cache
from bookhub.logging import get_logger
from bookhub.service.auth import AuthService
from bookhub.service.catalog import CatalogService
from bookhub.service.email import EmailService
from bookhub.service.media import LocalObjectStorage, MediaService
from bookhub.service.oauth import OAuthReconciler
from bookhub.service.otp import OTPIssuer
from bookhub.service.sessions import SessionStore
from bookhub.service.sms import SMSService
from bookhub.service.tokens import TokenIssuer
from bookhub.service.users import UserService
from bookhub.storage.memory import MemoryStore
from bookhub.storage.mongo import MongoStore
from bookhub.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, http_transport: httpx.AsyncBaseTransport | None = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "mongo"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    otp_ttl_seconds=self.settings.otp_ttl_seconds,
                )
            else:
                if not self.settings.mongo_url:
                    raise RuntimeError("MONGO_URL is required unless USE_MEMORY_STORE=true")
                self.store = MongoStore(
                    self.settings.mongo_url,
                    self.settings.mongo_db,
                    otp_ttl_seconds=self.settings.otp_ttl_seconds,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                mongo_url=_mask_url_password(self.settings.mongo_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for one-time codes; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; one-time codes live in the document store.",
                mode=fallback_mode,
            )

        self.tokens = TokenIssuer(self.settings)
        self.sessions = SessionStore(self.store, self.settings)
        self.otp = OTPIssuer(self.store, self.cache, self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.sms = SMSService.from_settings(self.settings, transport=http_transport)
        self.object_storage = LocalObjectStorage(
            Path(self.settings.shared_fs_root) / "media",
            secret_key=self.settings.jwt_secret,
        )
        self.media = MediaService(self.object_storage, self.settings, transport=http_transport)
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.tokens,
            self.otp,
            self.settings,
            email=self.email,
            sms=self.sms,
        )
        self.oauth = OAuthReconciler(
            self.auth, self.media, self.settings, transport=http_transport
        )
        self.users = UserService(self.store, self.media)
        self.catalog = CatalogService(self.store)
        logger.info("runtime_initialized", store_type=store_type, cache=bool(self.cache))

    def use_http_transport(self, transport: httpx.AsyncBaseTransport | None) -> None:
        """Route every outbound HTTP call (OAuth, pictures, SMS) through ``transport``."""
        self.sms.transport = transport
        self.media.transport = transport
        self.oauth.transport = transport

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, MongoStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for the common case and
    a locked re-check while the runtime is being created.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton with an empty store for isolated tests."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                asyncio.run(runtime.cache.close())
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        snapshot = Path(settings.shared_fs_root) / "state" / "memory_store.json"
        if settings.use_memory_store and snapshot.exists():
            snapshot.unlink()
        runtime = Runtime()
        return runtime
