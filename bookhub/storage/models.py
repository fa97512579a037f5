from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"
    is_logged_in: bool = False
    is_verified: bool = False
    is_email_verified: bool = False
    no_of_devices: int = 0
    last_login: Optional[datetime] = None
    avatar_ext: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        *,
        email: str | None = None,
        phone: str | None = None,
        name: str | None = None,
        role: str = "user",
    ) -> "User":
        if not email and not phone:
            raise ValueError("a user needs an email or a phone number")
        return cls(id=str(uuid.uuid4()), email=email, phone=phone, name=name, role=role)


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class Session:
    """The single live session record kept per user.

    ``version`` is bumped by the store on every successful save and is used
    for conditional writes.
    """

    user_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    renews_at: Optional[datetime] = None
    devices_logged_in: int = 0
    social_login: bool = False
    provider_access_token: Optional[str] = None
    provider_refresh_token: Optional[str] = None
    provider_expires_at: Optional[datetime] = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OTP:
    code: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, ttl_seconds: int, *, now: datetime | None = None) -> bool:
        current = now or utcnow()
        return as_utc(self.created_at) + timedelta(seconds=ttl_seconds) <= current


@dataclass
class Verification:
    user_id: str
    country: str
    nationality: str
    date_of_birth: str
    document_name: str
    document_number: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Book:
    id: str
    title: str
    author: str
    genre: Optional[str] = None
    description: Optional[str] = None
    published_year: Optional[int] = None
    created_by: Optional[str] = None
    review_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Review:
    id: str
    book_id: str
    user_id: str
    rating: int
    comment: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
