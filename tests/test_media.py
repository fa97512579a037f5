"""Tests for signed media URLs, local object storage and avatar thumbnails."""

import time
from io import BytesIO
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest
from PIL import Image

from bookhub.config import Settings
from bookhub.service.errors import NotFoundError, ValidationError
from bookhub.service.media import (
    LocalObjectStorage,
    MediaService,
    PathTraversalError,
    avatar_key,
    extension_for,
    generate_signed_url,
    make_thumbnail,
    safe_join,
    validate_signed_url,
)

SECRET = "media-secret-for-tests"


def _image_bytes(fmt="PNG", size=(64, 40), mode="RGB") -> bytes:
    buf = BytesIO()
    Image.new(mode, size).save(buf, format=fmt)
    return buf.getvalue()


def _split(url):
    parsed = urlparse(url)
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    return parsed.path, params["expires"], params["sig"]


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "media", secret_key=SECRET)


class TestSafeJoin:
    def test_nested_key_allowed(self, tmp_path):
        assert safe_join(tmp_path, "avatars/u1.png") == (tmp_path / "avatars/u1.png").resolve()

    @pytest.mark.parametrize("key", ["../escape.png", "avatars/../../etc/passwd", "/etc/passwd"])
    def test_escape_rejected(self, tmp_path, key):
        with pytest.raises(PathTraversalError):
            safe_join(tmp_path, key)


class TestSignedUrls:
    def test_round_trip_validates(self):
        url = generate_signed_url("avatars/u1_thumb.png", SECRET, expiry_seconds=60)
        path, expires, sig = _split(url)
        assert path == "/v1/media/avatars/u1_thumb.png"
        assert validate_signed_url("avatars/u1_thumb.png", expires, sig, SECRET) == (True, None)

    def test_signature_bound_to_key(self):
        _, expires, sig = _split(generate_signed_url("avatars/a.png", SECRET, expiry_seconds=60))
        valid, error = validate_signed_url("avatars/b.png", expires, sig, SECRET)
        assert not valid
        assert error == "invalid signature"

    def test_signature_bound_to_expiry(self):
        _, expires, sig = _split(generate_signed_url("avatars/a.png", SECRET, expiry_seconds=60))
        valid, _ = validate_signed_url("avatars/a.png", str(int(expires) + 1000), sig, SECRET)
        assert not valid

    def test_expired_url_rejected(self):
        expires = str(int(time.time()) - 5)
        valid, error = validate_signed_url("avatars/a.png", expires, "00", SECRET)
        assert not valid
        assert error == "URL has expired"

    def test_non_ascii_signature_rejected(self):
        _, expires, _ = _split(generate_signed_url("avatars/a.png", SECRET, expiry_seconds=60))
        assert validate_signed_url("avatars/a.png", expires, "éé", SECRET) == (
            False,
            "invalid signature",
        )

    def test_garbage_expiry_rejected(self):
        assert validate_signed_url("k", "soon", "00", SECRET) == (False, "invalid expiry format")


class TestLocalObjectStorage:
    def test_put_get_delete(self, storage):
        storage.put("avatars/u1.png", b"data")
        assert storage.exists("avatars/u1.png")
        assert storage.get("avatars/u1.png") == b"data"
        assert storage.delete("avatars/u1.png") is True
        assert storage.delete("avatars/u1.png") is False

    def test_missing_object_is_not_found(self, storage):
        with pytest.raises(NotFoundError):
            storage.get("avatars/none.png")

    def test_put_leaves_no_temp_files(self, storage):
        storage.put("avatars/u2.png", b"x" * 100)
        leftovers = [p for p in Path(storage.root, "avatars").iterdir() if p.name.startswith(".upload_")]
        assert leftovers == []

    def test_traversal_rejected(self, storage):
        with pytest.raises(PathTraversalError):
            storage.put("../outside.png", b"x")


class TestThumbnails:
    def test_thumbnail_is_resized_square(self):
        thumb = make_thumbnail(_image_bytes(), 100, "png")
        with Image.open(BytesIO(thumb)) as img:
            assert img.size == (100, 100)
            assert img.format == "PNG"

    def test_jpeg_thumbnail_from_rgba_source(self):
        thumb = make_thumbnail(_image_bytes(fmt="PNG", mode="RGBA"), 50, "jpg")
        with Image.open(BytesIO(thumb)) as img:
            assert img.format == "JPEG"

    def test_not_an_image(self):
        with pytest.raises(ValidationError, match="Unsupported image"):
            make_thumbnail(b"definitely not an image", 100, "png")


class TestHelpers:
    def test_avatar_keys(self):
        assert avatar_key("u1", "png") == "avatars/u1.png"
        assert avatar_key("u1", "png", thumbnail=True) == "avatars/u1_thumb.png"

    @pytest.mark.parametrize(
        "content_type, ext",
        [("image/png", "png"), ("image/jpeg; charset=binary", "jpg"), ("text/plain", None), (None, None)],
    )
    def test_extension_for(self, content_type, ext):
        assert extension_for(content_type) == ext


class TestMediaService:
    async def test_store_avatar_writes_original_and_thumbnail(self, storage):
        service = MediaService(storage, Settings(jwt_secret="x" * 40, thumbnail_size=20))
        url = await service.store_avatar("u9", _image_bytes(), "png")

        assert storage.exists("avatars/u9.png")
        assert storage.exists("avatars/u9_thumb.png")
        path, expires, sig = _split(url)
        assert path == "/v1/media/avatars/u9_thumb.png"
        assert storage.validate("avatars/u9_thumb.png", expires, sig) == (True, None)

    async def test_oversized_avatar_rejected(self, storage):
        service = MediaService(storage, Settings(jwt_secret="x" * 40, max_avatar_bytes=10))
        with pytest.raises(ValidationError, match="Image too large"):
            await service.store_avatar("u9", _image_bytes(), "png")

    def test_delete_avatar_removes_both(self, storage):
        service = MediaService(storage, Settings(jwt_secret="x" * 40))
        storage.put("avatars/u3.png", b"a")
        storage.put("avatars/u3_thumb.png", b"b")
        assert service.delete_avatar("u3", "png") is True
        assert not storage.exists("avatars/u3_thumb.png")
