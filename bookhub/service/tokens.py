from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from bookhub.config import Settings
from bookhub.logging import get_logger
from bookhub.service.errors import (
    InvalidSignatureError,
    TokenExpiredError,
    WrongTokenKindError,
)
from bookhub.storage.models import User, utcnow

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    VERIFY_EMAIL = "verify_email"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"token": self.token, "expires": self.expires_at.isoformat()}


@dataclass(frozen=True)
class AuthTokens:
    access: IssuedToken
    refresh: IssuedToken

    def to_dict(self) -> dict[str, Any]:
        return {"access": self.access.to_dict(), "refresh": self.refresh.to_dict()}


class TokenIssuer:
    """Signs and verifies HS256 JWTs carrying user claims and a kind discriminator.

    Verification is strict about the header algorithm so a token that claims
    ``none`` or an asymmetric algorithm is rejected before the signature is
    even compared.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] | None = None):
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        signature = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": JWT_ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError) as exc:
            raise InvalidSignatureError("malformed token") from exc
        # base64url segments are ASCII; compare_digest refuses anything else
        if not token.isascii():
            raise InvalidSignatureError("malformed token")

        # Reject algorithm confusion attempts before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise InvalidSignatureError("malformed token") from exc
        if not isinstance(header, dict) or header.get("alg") != JWT_ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignatureError("invalid token signature")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError("invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidSignatureError("malformed token") from exc
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidSignatureError("invalid token issuer")
        return payload

    def generate_token(
        self, user: User, kind: TokenKind, expires_at: datetime
    ) -> IssuedToken:
        now = self._now()
        payload = {
            "sub": user.id,
            "email": user.email,
            "phone": user.phone,
            "role": user.role,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "type": kind.value,
            "iss": self.settings.jwt_issuer,
            "jti": str(uuid.uuid4()),
        }
        return IssuedToken(token=self._encode_jwt(payload), expires_at=expires_at)

    def issue_auth_tokens(self, user: User) -> AuthTokens:
        """Mint an access/refresh pair with identical identity claims."""

        now = self._now()
        access = self.generate_token(
            user,
            TokenKind.ACCESS,
            now + timedelta(minutes=self.settings.access_token_ttl_minutes),
        )
        refresh = self.generate_token(
            user,
            TokenKind.REFRESH,
            now + timedelta(days=self.settings.refresh_token_ttl_days),
        )
        return AuthTokens(access=access, refresh=refresh)

    def issue_verify_email_token(self, user: User) -> IssuedToken:
        expires_at = self._now() + timedelta(minutes=self.settings.verify_email_ttl_minutes)
        return self.generate_token(user, TokenKind.VERIFY_EMAIL, expires_at)

    def verify_token(
        self, token: str, expected_kind: TokenKind, *, allow_expired: bool = False
    ) -> dict[str, Any]:
        """Return the claims of ``token`` or raise.

        Raises:
            InvalidSignatureError: malformed token, foreign algorithm or bad signature.
            TokenExpiredError: ``exp`` is in the past (unless ``allow_expired``).
            WrongTokenKindError: the ``type`` claim differs from ``expected_kind``.
        """

        payload = self._decode_jwt(token)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidSignatureError("token has no expiry") from exc
        if not allow_expired and exp_ts <= self._now().timestamp():
            raise TokenExpiredError("token expired")
        if payload.get("type") != expected_kind.value:
            raise WrongTokenKindError(
                "wrong token type",
                detail={"expected": expected_kind.value, "actual": payload.get("type")},
            )
        return payload

    @staticmethod
    def expiry_of(claims: dict[str, Any]) -> Optional[datetime]:
        exp = claims.get("exp")
        if exp is None:
            return None
        return datetime.fromtimestamp(float(exp), tz=timezone.utc)
