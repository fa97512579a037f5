"""Tests for mapping OAuth provider identities onto local accounts.

The provider, the picture host and the SMS gateway are all faked with
``httpx.MockTransport`` via the ``provider`` fixture.
"""

from datetime import datetime, timedelta, timezone
from io import BytesIO
from urllib.parse import parse_qs, urlparse

import pytest
from PIL import Image

from bookhub.config import Settings
from bookhub.service.errors import (
    InternalError,
    ProviderExchangeFailedError,
    ProviderProfileFetchFailedError,
    ValidationError,
)
from bookhub.service.oauth import OAuthReconciler


def _png_bytes() -> bytes:
    buf = BytesIO()
    Image.new("RGB", (32, 24), color=(200, 40, 40)).save(buf, format="PNG")
    return buf.getvalue()


def _calls(stub, fragment):
    return [r for r in stub.requests if fragment in r.url.path]


def _users_with_email(runtime, email):
    return [u for u in runtime.store.users.values() if u.email == email]


class TestOAuthUrl:
    def test_url_carries_offline_consent_params(self, runtime):
        url = runtime.oauth.oauth_url()
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert url.startswith(runtime.settings.oauth_auth_url)
        assert params["client_id"] == runtime.settings.oauth_client_id
        assert params["redirect_uri"] == runtime.settings.oauth_redirect_uri
        assert params["scope"] == "openid email profile"
        assert params["response_type"] == "code"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"

    def test_unconfigured_provider_is_internal_error(self, runtime):
        settings = Settings(jwt_secret="x" * 40, oauth_client_id=None)
        reconciler = OAuthReconciler(runtime.auth, runtime.media, settings)
        with pytest.raises(InternalError):
            reconciler.oauth_url()


class TestOAuthLogin:
    async def test_existing_email_gains_a_device_without_duplicate(self, runtime, provider):
        registered = await runtime.auth.register_with_email(
            email="oauth@example.com", password="Secret123"
        )
        await runtime.auth.login(email="oauth@example.com", password="Secret123")
        before = runtime.store.get_user(registered.user.id).no_of_devices

        result = await runtime.oauth.oauth_login("auth-code")

        assert result.created is False
        assert result.user.id == registered.user.id
        assert result.user.no_of_devices == before + 1
        assert len(_users_with_email(runtime, "oauth@example.com")) == 1
        assert result.tokens.access.token != registered.tokens.access.token
        session = runtime.store.get_session(registered.user.id)
        assert session.social_login is True
        assert session.provider_access_token == "provider-access"
        assert session.access_token == result.tokens.access.token

    async def test_existing_email_keeps_password_login(self, runtime, provider):
        await runtime.auth.register_with_email(email="oauth@example.com", password="Secret123")
        await runtime.oauth.oauth_login("auth-code")
        result = await runtime.auth.login(email="oauth@example.com", password="Secret123")
        assert result.user.email == "oauth@example.com"

    async def test_password_login_after_short_lived_provider_token(self, runtime, provider):
        await runtime.auth.register_with_email(email="oauth@example.com", password="Secret123")
        provider.token_responses.append((200, {"access_token": "provider-access", "expires_in": 60}))
        await runtime.oauth.oauth_login("auth-code")

        result = await runtime.auth.login(email="oauth@example.com", password="Secret123")

        settings = runtime.settings
        expected = timedelta(
            minutes=settings.session_renewal_window_minutes - settings.session_renewal_margin_minutes
        )
        ahead = result.session.renews_at - datetime.now(timezone.utc)
        assert result.session.social_login is False
        assert result.session.provider_expires_at is None
        assert expected - timedelta(minutes=1) < ahead <= expected

    async def test_new_identity_is_created_with_avatar(self, runtime, provider):
        provider.picture = _png_bytes()
        provider.userinfo_responses.append(
            (
                200,
                {
                    "email": "New.Person@Example.com",
                    "name": "New Person",
                    "picture": "https://pictures.example.com/me.png",
                    "email_verified": True,
                },
            )
        )

        result = await runtime.oauth.oauth_login("auth-code")

        assert result.created is True
        assert result.user.email == "new.person@example.com"
        assert result.user.is_logged_in is True
        assert result.user.no_of_devices == 1
        assert result.user.is_email_verified is True
        assert result.image_url.startswith("/v1/media/avatars/")
        assert runtime.store.get_password_record(result.user.id) is None
        stored = runtime.store.get_user(result.user.id)
        assert stored.avatar_ext == "png"
        assert runtime.object_storage.exists(f"avatars/{result.user.id}_thumb.png")
        assert runtime.store.get_session(result.user.id).social_login is True

    async def test_picture_failure_does_not_block_login(self, runtime, provider):
        provider.userinfo_responses.append(
            (200, {"email": "nopic@example.com", "picture": "https://pictures.example.com/x.png"})
        )
        result = await runtime.oauth.oauth_login("auth-code")
        assert result.created is True
        assert result.image_url is None

    async def test_rejected_code_is_exchange_failure(self, runtime, provider):
        provider.token_responses.append((400, {"error": "invalid_grant"}))
        with pytest.raises(ProviderExchangeFailedError):
            await runtime.oauth.oauth_login("bad-code")
        assert len(_calls(provider, "token")) == 1
        assert _calls(provider, "userinfo") == []

    async def test_token_response_without_access_token(self, runtime, provider):
        provider.token_responses.append((200, {"token_type": "Bearer"}))
        with pytest.raises(ProviderExchangeFailedError):
            await runtime.oauth.oauth_login("auth-code")

    async def test_transient_exchange_failure_is_retried(self, runtime, provider):
        provider.token_responses.append((503, {"error": "unavailable"}))
        result = await runtime.oauth.oauth_login("auth-code")
        assert result.user.email == "oauth@example.com"
        assert len(_calls(provider, "token")) == 2

    async def test_profile_failure_after_retries(self, runtime, provider):
        provider.userinfo_responses.extend([(500, {})] * 3)
        with pytest.raises(ProviderProfileFetchFailedError):
            await runtime.oauth.oauth_login("auth-code")
        assert len(_calls(provider, "userinfo")) == 3
        assert _users_with_email(runtime, "oauth@example.com") == []

    async def test_profile_without_email(self, runtime, provider):
        provider.userinfo_responses.append((200, {"name": "No Email"}))
        with pytest.raises(ProviderProfileFetchFailedError):
            await runtime.oauth.oauth_login("auth-code")

    async def test_userinfo_uses_provider_bearer_token(self, runtime, provider):
        await runtime.oauth.oauth_login("auth-code")
        userinfo = _calls(provider, "userinfo")[0]
        assert userinfo.headers["Authorization"] == "Bearer provider-access"

    async def test_missing_code_is_validation_error(self, runtime, provider):
        with pytest.raises(ValidationError):
            await runtime.oauth.oauth_login("")
