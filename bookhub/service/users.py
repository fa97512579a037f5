from __future__ import annotations

import asyncio
import re
from datetime import datetime
from typing import Optional, Protocol

from bookhub.logging import get_logger
from bookhub.service.errors import NotFoundError, ValidationError
from bookhub.service.media import MediaService, extension_for
from bookhub.storage.models import User, Verification

logger = get_logger(__name__)

COUNTRY_CODES = frozenset(
    {"IN", "US", "GB", "CA", "AU", "DE", "FR", "JP", "SG", "AE", "NZ", "IE", "ZA", "BR", "MX"}
)
SUPPORTED_NATIONALITIES = frozenset(
    {
        "Indian",
        "American",
        "British",
        "Canadian",
        "Australian",
        "German",
        "French",
        "Japanese",
        "Singaporean",
        "Emirati",
        "New Zealander",
        "Irish",
        "South African",
        "Brazilian",
        "Mexican",
    }
)

_ALNUM = re.compile(r"^[a-zA-Z0-9]+$")
_DOB = re.compile(r"^\d{2}-\d{2}-\d{4}$")

# document type -> (required length, error message)
DOCUMENT_RULES = {
    "aadhar": (12, "Invalid Aadhar card number"),
    "driving_licence": (16, "Invalid driving license number"),
    "pan_card": (10, "Invalid PAN card number"),
}


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def save_user(self, user: User) -> User: ...

    def save_verification(self, verification: Verification) -> Verification: ...

    def get_verification(self, user_id: str) -> Optional[Verification]: ...


def validate_verification_data(
    *,
    country: str,
    nationality: str,
    date_of_birth: str,
    document_name: str,
    document_number: str,
) -> None:
    if country not in COUNTRY_CODES:
        raise ValidationError("Invalid country code", detail={"field": "country"})
    if nationality not in SUPPORTED_NATIONALITIES:
        raise ValidationError("Invalid nationality", detail={"field": "nationality"})
    if not _DOB.match(date_of_birth or ""):
        raise ValidationError(
            "Invalid date of birth format, expected DD-MM-YYYY", detail={"field": "date_of_birth"}
        )
    try:
        datetime.strptime(date_of_birth, "%d-%m-%Y")
    except ValueError as exc:
        raise ValidationError("Invalid date of birth", detail={"field": "date_of_birth"}) from exc
    rule = DOCUMENT_RULES.get(document_name)
    if rule is None:
        raise ValidationError("Invalid document type", detail={"field": "document_name"})
    length, message = rule
    if len(document_number) != length or not _ALNUM.match(document_number):
        raise ValidationError(message, detail={"field": "document_number"})


def _mask(value: str) -> str:
    return f"{'*' * max(0, len(value) - 4)}{value[-4:]}"


class UserService:
    """Profile, identity verification and avatar operations for signed-in users."""

    def __init__(self, store: UserStore, media: MediaService) -> None:
        self.store = store
        self.media = media

    def profile(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "phone": user.phone,
            "role": user.role,
            "is_logged_in": user.is_logged_in,
            "is_verified": user.is_verified,
            "is_email_verified": user.is_email_verified,
            "no_of_devices": user.no_of_devices,
            "last_login": user.last_login.isoformat() if user.last_login else None,
            "avatar_url": self.media.avatar_url(user.id, user.avatar_ext) if user.avatar_ext else None,
        }

    def verify_identity(
        self,
        user: User,
        *,
        country: str,
        nationality: str,
        date_of_birth: str,
        document_name: str,
        document_number: str,
    ) -> Verification:
        if user.is_verified:
            raise ValidationError("User already verified")
        validate_verification_data(
            country=country,
            nationality=nationality,
            date_of_birth=date_of_birth,
            document_name=document_name,
            document_number=document_number,
        )
        verification = self.store.save_verification(
            Verification(
                user_id=user.id,
                country=country,
                nationality=nationality,
                date_of_birth=date_of_birth,
                document_name=document_name,
                document_number=document_number,
            )
        )
        # Not transactional with the verification record; a retry overwrites it
        user.is_verified = True
        self.store.save_user(user)
        logger.info("user_verified", user_id=user.id, document_name=document_name)
        return verification

    def dashboard(self, user: User) -> dict:
        verification = self.store.get_verification(user.id)
        details = None
        if verification:
            details = {
                "country": verification.country,
                "nationality": verification.nationality,
                "date_of_birth": verification.date_of_birth,
                "document_name": verification.document_name,
                "document_number": _mask(verification.document_number),
                "verified_at": verification.created_at.isoformat(),
            }
        return {"user": self.profile(user), "verification": details}

    async def upload_avatar(self, user: User, data: bytes, content_type: Optional[str]) -> str:
        ext = extension_for(content_type)
        if not ext:
            raise ValidationError("Unsupported image type", detail={"content_type": content_type})
        previous = user.avatar_ext
        url = await self.media.store_avatar(user.id, data, ext)
        if previous and previous != ext:
            await asyncio.to_thread(self.media.delete_avatar, user.id, previous)
        user.avatar_ext = ext
        self.store.save_user(user)
        return url

    def avatar_url(self, user: User) -> str:
        if not user.avatar_ext:
            raise NotFoundError("No avatar uploaded")
        return self.media.avatar_url(user.id, user.avatar_ext)

    async def delete_avatar(self, user: User) -> None:
        if not user.avatar_ext:
            raise NotFoundError("No avatar uploaded")
        await asyncio.to_thread(self.media.delete_avatar, user.id, user.avatar_ext)
        user.avatar_ext = None
        self.store.save_user(user)
        logger.info("avatar_deleted", user_id=user.id)
