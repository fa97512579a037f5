"""Tests for app middleware and request schema validation."""

import pytest
from pydantic import ValidationError

from bookhub import app as app_module
from bookhub.api.schemas import (
    LoginRequest,
    PhoneRegisterRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ReviewCreateRequest,
)


class TestMiddleware:
    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-abc-123"})
        assert response.headers["X-Request-ID"] == "req-abc-123"

    def test_request_id_generated_when_missing(self, client):
        response = client.get("/healthz")
        assert response.headers.get("X-Request-ID")

    def test_security_headers(self, client):
        response = client.get("/v1/books")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
        assert "Strict-Transport-Security" not in response.headers

    def test_healthz_reports_components(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["checks"]["filesystem"]["status"] == "healthy"

    def test_allowed_origins_from_settings(self, monkeypatch):
        monkeypatch.setattr(
            app_module._settings, "cors_allow_origins", "https://books.example.com, https://admin.example.com,"
        )
        assert app_module._allowed_origins() == [
            "https://books.example.com",
            "https://admin.example.com",
        ]

    def test_allowed_origins_default_to_localhost(self, monkeypatch):
        monkeypatch.setattr(app_module._settings, "cors_allow_origins", None)
        origins = app_module._allowed_origins()
        assert "*" not in origins
        assert all("localhost" in o or "127.0.0.1" in o for o in origins)


class TestRegisterSchema:
    def test_email_is_normalized(self):
        req = RegisterRequest(email="  Reader@Example.COM ", password="Secret123")
        assert req.email == "reader@example.com"

    @pytest.mark.parametrize("email", ["no-at-sign", "a@b", "a@-bad-.com", "x" * 65 + "@example.com"])
    def test_invalid_email_rejected(self, email):
        with pytest.raises(ValidationError):
            RegisterRequest(email=email, password="Secret123")

    @pytest.mark.parametrize("password", ["Short1", "allletters", "12345678", "a1" * 65])
    def test_weak_password_rejected(self, password):
        with pytest.raises(ValidationError):
            RegisterRequest(email="a@x.com", password=password)

    def test_blank_optional_phone_dropped(self):
        assert RegisterRequest(email="a@x.com", password="Secret123", phone="").phone is None

    def test_phone_punctuation_stripped(self):
        req = PhoneRegisterRequest(phone="+1 (555) 010-9999", password="Secret123")
        assert req.phone == "+15550109999"

    def test_short_phone_rejected(self):
        with pytest.raises(ValidationError):
            PhoneRegisterRequest(phone="12345", password="Secret123")


class TestOtherSchemas:
    def test_login_does_not_require_a_selector(self):
        req = LoginRequest(password="whatever")
        assert req.email is None and req.phone is None

    def test_login_normalizes_email(self):
        assert LoginRequest(password="x", email="A@X.com").email == "a@x.com"

    def test_reset_requires_strong_password(self):
        with pytest.raises(ValidationError):
            ResetPasswordRequest(code="ABC123", password="weak")

    @pytest.mark.parametrize("rating", [0, 6])
    def test_rating_bounds(self, rating):
        with pytest.raises(ValidationError):
            ReviewCreateRequest(rating=rating)
