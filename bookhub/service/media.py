from __future__ import annotations

import asyncio
import hashlib
import hmac
import os
import tempfile
import time
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import quote, urlencode

import httpx
from PIL import Image, UnidentifiedImageError

from bookhub.config import Settings
from bookhub.logging import get_logger
from bookhub.service.errors import NotFoundError, ValidationError
from bookhub.service.retry import call_with_retry

logger = get_logger(__name__)

DEFAULT_URL_EXPIRY_SECONDS = 3600

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}
EXTENSION_CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}
_PIL_FORMATS = {"jpg": "JPEG", "png": "PNG", "gif": "GIF", "webp": "WEBP"}


class PathTraversalError(ValueError):
    """Raised when a storage key escapes the storage root."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def _signature(key: str, expires_at: int, secret_key: str) -> str:
    return hmac.new(
        secret_key.encode("utf-8"),
        f"{key}|{expires_at}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def generate_signed_url(
    key: str,
    secret_key: str,
    *,
    expiry_seconds: int = DEFAULT_URL_EXPIRY_SECONDS,
    base_url: str = "/v1/media",
) -> str:
    """Build a download URL for ``key`` that stays valid for ``expiry_seconds``."""
    expires_at = int(time.time()) + expiry_seconds
    params = urlencode({"expires": expires_at, "sig": _signature(key, expires_at, secret_key)})
    return f"{base_url.rstrip('/')}/{quote(key)}?{params}"


def validate_signed_url(
    key: str, expires: str, signature: str, secret_key: str
) -> Tuple[bool, Optional[str]]:
    """Check a signed media URL. Returns ``(is_valid, error_message)``."""
    try:
        expires_at = int(expires)
    except (ValueError, TypeError):
        return False, "invalid expiry format"

    if time.time() > expires_at:
        return False, "URL has expired"

    signature = signature or ""
    if not signature.isascii() or not hmac.compare_digest(
        signature, _signature(key, expires_at, secret_key)
    ):
        return False, "invalid signature"

    return True, None


class LocalObjectStorage:
    """Object storage backed by a directory under the shared filesystem root."""

    def __init__(self, root: str | Path, *, secret_key: str, base_url: str = "/v1/media"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.secret_key = secret_key
        self.base_url = base_url

    def _path(self, key: str) -> Path:
        return safe_join(self.root, key)

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temp file then rename so readers never see partial objects
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".upload_")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError("media not found", detail={"key": key}) from exc

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def signed_url(self, key: str, *, expiry_seconds: int = DEFAULT_URL_EXPIRY_SECONDS) -> str:
        return generate_signed_url(
            key, self.secret_key, expiry_seconds=expiry_seconds, base_url=self.base_url
        )

    def validate(self, key: str, expires: str, signature: str) -> Tuple[bool, Optional[str]]:
        return validate_signed_url(key, expires, signature, self.secret_key)


def avatar_key(user_id: str, ext: str, *, thumbnail: bool = False) -> str:
    suffix = "_thumb" if thumbnail else ""
    return f"avatars/{user_id}{suffix}.{ext}"


def extension_for(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    return CONTENT_TYPE_EXTENSIONS.get(content_type.split(";", 1)[0].strip().lower())


def make_thumbnail(data: bytes, size: int, ext: str) -> bytes:
    """Resize an image to a ``size`` x ``size`` thumbnail in the same format."""
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            fmt = _PIL_FORMATS.get(ext, img.format or "PNG")
            thumb = img
            if fmt == "JPEG" and img.mode not in ("RGB", "L"):
                thumb = img.convert("RGB")
            thumb = thumb.resize((size, size))
            out = BytesIO()
            thumb.save(out, format=fmt)
            return out.getvalue()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError("Unsupported image", detail={"error": str(exc)}) from exc


class MediaService:
    """Avatar pipeline: fetch or receive an image, derive a thumbnail, store both."""

    def __init__(
        self,
        storage: LocalObjectStorage,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.storage = storage
        self.settings = settings
        self.transport = transport

    async def fetch_remote_image(self, url: str) -> Tuple[bytes, str]:
        """Download an image, returning its bytes and file extension."""

        async with httpx.AsyncClient(
            timeout=self.settings.provider_timeout_seconds,
            transport=self.transport,
            follow_redirects=True,
        ) as client:

            async def _get() -> httpx.Response:
                response = await client.get(url)
                response.raise_for_status()
                return response

            response = await call_with_retry(
                "profile_picture_fetch",
                _get,
                max_retries=self.settings.provider_max_retries,
                timeout_seconds=self.settings.provider_timeout_seconds,
                backoff_ms=self.settings.provider_backoff_ms,
            )
        ext = extension_for(response.headers.get("content-type"))
        if not ext:
            raise ValidationError(
                "Unsupported image type",
                detail={"content_type": response.headers.get("content-type")},
            )
        if len(response.content) > self.settings.max_avatar_bytes:
            raise ValidationError("Image too large")
        return response.content, ext

    async def store_avatar(self, user_id: str, data: bytes, ext: str) -> str:
        """Store the original and its thumbnail; returns the signed thumbnail URL."""

        if ext not in EXTENSION_CONTENT_TYPES:
            raise ValidationError("Unsupported image type", detail={"extension": ext})
        if len(data) > self.settings.max_avatar_bytes:
            raise ValidationError("Image too large")
        thumbnail = await asyncio.to_thread(
            make_thumbnail, data, self.settings.thumbnail_size, ext
        )
        await asyncio.to_thread(self.storage.put, avatar_key(user_id, ext), data)
        await asyncio.to_thread(
            self.storage.put, avatar_key(user_id, ext, thumbnail=True), thumbnail
        )
        logger.info("avatar_stored", user_id=user_id, extension=ext, bytes=len(data))
        return self.avatar_url(user_id, ext)

    def avatar_url(self, user_id: str, ext: str, *, thumbnail: bool = True) -> str:
        return self.storage.signed_url(
            avatar_key(user_id, ext, thumbnail=thumbnail),
            expiry_seconds=self.settings.media_url_ttl_seconds,
        )

    def delete_avatar(self, user_id: str, ext: str) -> bool:
        removed = self.storage.delete(avatar_key(user_id, ext))
        self.storage.delete(avatar_key(user_id, ext, thumbnail=True))
        return removed
