"""Unit tests for the HS256 token issuer.

Covers claim shape, kind discrimination, expiry and algorithm-confusion
rejection.
"""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from bookhub.config import Settings
from bookhub.service.errors import (
    InvalidSignatureError,
    TokenExpiredError,
    UnauthenticatedError,
    WrongTokenKindError,
)
from bookhub.service.tokens import TokenIssuer, TokenKind
from bookhub.storage.models import User


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=30,
    )


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def user():
    return User.new(email="reader@example.com", phone="+15550100", name="Reader")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


# Well-formed HS256 header so verification reaches the signature comparison
NON_ASCII_SIGNATURE = f"{_b64({'alg': 'HS256', 'typ': 'JWT'})}.eyJhIjoxfQ.éé"


class TestIssueAuthTokens:
    def test_access_expires_before_refresh(self, issuer, user):
        tokens = issuer.issue_auth_tokens(user)
        assert tokens.access.expires_at < tokens.refresh.expires_at

    def test_both_tokens_verify_with_matching_kind(self, issuer, user):
        tokens = issuer.issue_auth_tokens(user)
        access = issuer.verify_token(tokens.access.token, TokenKind.ACCESS)
        refresh = issuer.verify_token(tokens.refresh.token, TokenKind.REFRESH)
        assert access["sub"] == refresh["sub"] == user.id
        assert access["type"] == "access"
        assert refresh["type"] == "refresh"

    def test_identity_claims_are_identical(self, issuer, user):
        tokens = issuer.issue_auth_tokens(user)
        access = issuer.verify_token(tokens.access.token, TokenKind.ACCESS)
        refresh = issuer.verify_token(tokens.refresh.token, TokenKind.REFRESH)
        for claim in ("sub", "email", "phone", "role", "iat"):
            assert access[claim] == refresh[claim]

    def test_claim_shape_is_stable_but_values_differ(self, issuer, user, clock):
        first = issuer.issue_auth_tokens(user)
        clock.advance(seconds=1)
        second = issuer.issue_auth_tokens(user)

        claims_a = issuer.verify_token(first.access.token, TokenKind.ACCESS)
        claims_b = issuer.verify_token(second.access.token, TokenKind.ACCESS)
        assert set(claims_a) == set(claims_b)
        assert first.access.token != second.access.token
        assert claims_b["iat"] == claims_a["iat"] + 1

    def test_to_dict_exposes_token_and_expiry(self, issuer, user):
        payload = issuer.issue_auth_tokens(user).to_dict()
        assert set(payload) == {"access", "refresh"}
        assert set(payload["access"]) == {"token", "expires"}


class TestVerifyToken:
    def test_wrong_kind_rejected_even_with_valid_signature(self, issuer, user):
        tokens = issuer.issue_auth_tokens(user)
        with pytest.raises(WrongTokenKindError):
            issuer.verify_token(tokens.access.token, TokenKind.REFRESH)
        with pytest.raises(WrongTokenKindError):
            issuer.verify_token(tokens.refresh.token, TokenKind.ACCESS)

    def test_expired_token_rejected(self, issuer, user, clock):
        tokens = issuer.issue_auth_tokens(user)
        clock.advance(minutes=16)
        with pytest.raises(TokenExpiredError):
            issuer.verify_token(tokens.access.token, TokenKind.ACCESS)

    def test_expired_token_allowed_when_requested(self, issuer, user, clock):
        tokens = issuer.issue_auth_tokens(user)
        clock.advance(minutes=16)
        claims = issuer.verify_token(tokens.access.token, TokenKind.ACCESS, allow_expired=True)
        assert claims["sub"] == user.id

    def test_tampered_payload_rejected(self, issuer, user):
        token = issuer.issue_auth_tokens(user).access.token
        header, payload, sig = token.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["role"] = "admin"
        with pytest.raises(InvalidSignatureError):
            issuer.verify_token(f"{header}.{_b64(claims)}.{sig}", TokenKind.ACCESS)

    def test_foreign_secret_rejected(self, issuer, user, clock):
        other = TokenIssuer(
            Settings(jwt_secret="another-secret-value-that-is-long-enough-xyz"), clock=clock
        )
        token = other.issue_auth_tokens(user).access.token
        with pytest.raises(InvalidSignatureError):
            issuer.verify_token(token, TokenKind.ACCESS)

    @pytest.mark.parametrize("alg", ["none", "RS256", "HS512"])
    def test_other_algorithms_rejected(self, issuer, user, alg):
        token = issuer.issue_auth_tokens(user).access.token
        _, payload, sig = token.split(".")
        forged = f"{_b64({'alg': alg, 'typ': 'JWT'})}.{payload}.{sig}"
        with pytest.raises(InvalidSignatureError):
            issuer.verify_token(forged, TokenKind.ACCESS)

    @pytest.mark.parametrize(
        "token", ["", "abc", "a.b", "a.b.c.d", "!!.??.**", NON_ASCII_SIGNATURE]
    )
    def test_malformed_tokens_rejected(self, issuer, token):
        with pytest.raises(InvalidSignatureError):
            issuer.verify_token(token, TokenKind.ACCESS)

    def test_token_errors_are_unauthenticated(self, issuer):
        with pytest.raises(UnauthenticatedError):
            issuer.verify_token("garbage", TokenKind.ACCESS)

    def test_verify_email_token_kind(self, issuer, user):
        token = issuer.issue_verify_email_token(user)
        claims = issuer.verify_token(token.token, TokenKind.VERIFY_EMAIL)
        assert claims["email"] == user.email
        with pytest.raises(WrongTokenKindError):
            issuer.verify_token(token.token, TokenKind.ACCESS)
