"""Tests for one-time password reset codes."""

import re
from datetime import timedelta

import pytest

from bookhub.config import Settings
from bookhub.service.errors import CodeNotFoundError, InternalError, UnauthenticatedError
from bookhub.service.otp import MAX_ISSUE_ATTEMPTS, OTPIssuer, generate_code
from bookhub.storage.memory import MemoryStore
from bookhub.storage.models import OTP, utcnow


class FakeCache:
    """In-process stand-in for RedisCache with the same coroutine API."""

    def __init__(self):
        self.entries = {}

    async def store_otp(self, otp, ttl_seconds):
        if otp.code in self.entries:
            return False
        self.entries[otp.code] = otp
        return True

    async def get_otp(self, code):
        return self.entries.get(code)

    async def pop_otp(self, code):
        return self.entries.pop(code, None)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), otp_ttl_seconds=300)


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def issuer(memory_store, settings):
    return OTPIssuer(memory_store, None, settings)


def test_generate_code_is_six_uppercase_hex():
    for _ in range(50):
        assert re.fullmatch(r"[0-9A-F]{6}", generate_code())


async def test_issue_and_consume_resolves_owner(issuer):
    code = await issuer.issue("user-1")
    assert re.fullmatch(r"[0-9A-F]{6}", code)
    assert await issuer.consume(code) == "user-1"


async def test_code_is_single_use(issuer):
    code = await issuer.issue("user-1")
    await issuer.consume(code)
    with pytest.raises(CodeNotFoundError):
        await issuer.consume(code)


async def test_consume_accepts_lowercase_and_whitespace(issuer):
    code = await issuer.issue("user-2")
    assert await issuer.consume(f"  {code.lower()} ") == "user-2"


async def test_unknown_code_rejected(issuer):
    with pytest.raises(CodeNotFoundError):
        await issuer.consume("ABCDEF")


async def test_empty_code_rejected(issuer):
    with pytest.raises(CodeNotFoundError):
        await issuer.consume("")


async def test_expired_code_rejected(issuer, memory_store):
    memory_store.create_otp(
        OTP(code="0A1B2C", user_id="user-3", created_at=utcnow() - timedelta(seconds=301))
    )
    with pytest.raises(CodeNotFoundError):
        await issuer.consume("0A1B2C")
    assert memory_store.get_otp("0A1B2C") is None


async def test_code_just_inside_window_is_accepted(issuer, memory_store):
    memory_store.create_otp(
        OTP(code="FFFFFF", user_id="user-4", created_at=utcnow() - timedelta(seconds=290))
    )
    assert await issuer.consume("FFFFFF") == "user-4"


async def test_code_not_found_is_unauthenticated(issuer):
    with pytest.raises(UnauthenticatedError):
        await issuer.consume("123456")


async def test_cache_backed_codes_are_single_use(memory_store, settings):
    cache = FakeCache()
    issuer = OTPIssuer(memory_store, cache, settings)
    code = await issuer.issue("user-5")

    assert code in cache.entries
    assert memory_store.get_otp(code) is None
    assert await issuer.consume(code) == "user-5"
    with pytest.raises(CodeNotFoundError):
        await issuer.consume(code)


async def test_stale_cache_entry_treated_as_expired(memory_store, settings):
    cache = FakeCache()
    cache.entries["ABC123"] = OTP(
        code="ABC123", user_id="user-6", created_at=utcnow() - timedelta(minutes=10)
    )
    issuer = OTPIssuer(memory_store, cache, settings)
    with pytest.raises(CodeNotFoundError):
        await issuer.consume("ABC123")


async def test_repeated_collisions_raise_internal_error(memory_store, settings, monkeypatch):
    monkeypatch.setattr("bookhub.service.otp.generate_code", lambda: "AAAAAA")
    issuer = OTPIssuer(memory_store, None, settings)
    await issuer.issue("user-7")

    with pytest.raises(InternalError):
        await issuer.issue("user-8")
    assert MAX_ISSUE_ATTEMPTS == 5
