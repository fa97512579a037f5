from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from bookhub.service.errors import ErrorKind


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after stripping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the closed error kinds."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,15}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: str) -> str:
    cleaned = re.sub(r"[\s()-]", "", value or "")
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("invalid phone number")
    return cleaned


def _validate_password_strength(value: str) -> str:
    """Password must be 8-128 characters and mix letters with digits."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-zA-Z]", value) or not re.search(r"\d", value):
        raise ValueError("password must contain at least 1 letter and 1 number")
    return value


def _optional(validator):
    def _inner(value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        return validator(value)

    return _inner


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: Optional[str]) -> Optional[str]:
        return _optional(_validate_phone)(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PhoneRegisterRequest(BaseModel):
    phone: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return _validate_phone(value)

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _optional(_validate_email)(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    """Either selector may be given; phone wins when both are present."""

    password: str = Field(..., max_length=128)
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        return _normalize_unicode(value.strip().lower())

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        return re.sub(r"[\s()-]", "", value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class ForgotPasswordPhoneRequest(BaseModel):
    phone: str

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return _validate_phone(value)


class ResetPasswordRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    password: str

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class VerificationRequest(BaseModel):
    country: str = Field(..., max_length=8)
    nationality: str = Field(..., max_length=64)
    date_of_birth: str = Field(..., max_length=10)
    document_name: str = Field(..., max_length=32)
    document_number: str = Field(..., max_length=32)


class BookCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=256)
    author: str = Field(..., min_length=1, max_length=256)
    genre: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = Field(default=None, max_length=4096)
    published_year: Optional[int] = Field(default=None, ge=0, le=3000)


class ReviewCreateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=4096)


class ReviewUpdateRequest(BaseModel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=4096)


class UserResponse(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: str
    is_logged_in: bool
    is_verified: bool
    is_email_verified: bool
    no_of_devices: int
    last_login: Optional[str] = None
    avatar_url: Optional[str] = None


class TokenResponse(BaseModel):
    token: str
    expires: str


class TokenPairResponse(BaseModel):
    access: TokenResponse
    refresh: TokenResponse


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenPairResponse
    image_url: Optional[str] = None
