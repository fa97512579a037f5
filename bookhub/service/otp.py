from __future__ import annotations

import secrets
from typing import Optional, Protocol

from bookhub.config import Settings
from bookhub.logging import get_logger
from bookhub.service.errors import CodeNotFoundError, InternalError
from bookhub.storage.errors import ConstraintViolation
from bookhub.storage.models import OTP

logger = get_logger(__name__)

OTP_BYTES = 3
MAX_ISSUE_ATTEMPTS = 5


class OTPRepository(Protocol):
    def create_otp(self, otp: OTP) -> OTP:
        ...

    def pop_otp(self, code: str) -> Optional[OTP]:
        ...


def generate_code() -> str:
    """Six uppercase hex characters from a CSPRNG."""

    return secrets.token_hex(OTP_BYTES).upper()


class OTPIssuer:
    """Issues and consumes single-use password reset codes.

    Codes live in Redis (``otp:<code>`` with a TTL) when a cache is
    configured, otherwise in the document store where expiry is checked on
    read. Consumption deletes the code atomically.
    """

    def __init__(self, store: OTPRepository, cache=None, settings: Settings | None = None):
        self.store = store
        self.cache = cache
        self.ttl_seconds = settings.otp_ttl_seconds if settings else 300

    async def _persist(self, otp: OTP) -> bool:
        if self.cache:
            return await self.cache.store_otp(otp, self.ttl_seconds)
        try:
            self.store.create_otp(otp)
        except ConstraintViolation:
            return False
        return True

    async def issue(self, user_id: str) -> str:
        for _ in range(MAX_ISSUE_ATTEMPTS):
            otp = OTP(code=generate_code(), user_id=user_id)
            if await self._persist(otp):
                logger.info("otp_issued", user_id=user_id, ttl_seconds=self.ttl_seconds)
                return otp.code
            logger.info("otp_code_collision", user_id=user_id)
        raise InternalError("could not allocate a one-time code", detail={"user_id": user_id})

    async def consume(self, code: str) -> str:
        """Resolve ``code`` to its owner and delete it.

        Raises:
            CodeNotFoundError: the code is unknown, expired or already used.
        """

        normalized = (code or "").strip().upper()
        if not normalized:
            raise CodeNotFoundError("invalid or expired code")
        if self.cache:
            otp = await self.cache.pop_otp(normalized)
            # Redis expiry is authoritative, but guard against clock drift on stale entries
            if otp and otp.is_expired(self.ttl_seconds):
                otp = None
        else:
            otp = self.store.pop_otp(normalized)
        if otp is None:
            logger.info("otp_not_found")
            raise CodeNotFoundError("invalid or expired code")
        logger.info("otp_consumed", user_id=otp.user_id)
        return otp.user_id
