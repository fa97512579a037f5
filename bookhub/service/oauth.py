from __future__ import annotations

import asyncio
from typing import Optional
from urllib.parse import urlencode

import httpx

from bookhub.config import Settings
from bookhub.logging import get_logger, sanitize_error_message
from bookhub.service.auth import AuthResult, AuthService
from bookhub.service.cookies import CookieSink
from bookhub.service.errors import (
    InternalError,
    ProviderExchangeFailedError,
    ProviderProfileFetchFailedError,
    ValidationError,
)
from bookhub.service.media import MediaService
from bookhub.service.retry import call_with_retry
from bookhub.service.sessions import ProviderTokens
from bookhub.storage.errors import ConstraintViolation
from bookhub.storage.models import User, utcnow

logger = get_logger(__name__)


def _describe_http_error(exc: BaseException) -> dict:
    info = {"error_type": type(exc).__name__}
    if isinstance(exc, httpx.HTTPStatusError):
        info["status_code"] = exc.response.status_code
        info["error"] = sanitize_error_message(exc.response.text)
    else:
        info["error"] = sanitize_error_message(str(exc) or type(exc).__name__)
    return info


class OAuthReconciler:
    """Maps an OAuth provider identity onto a local account.

    The provider is configured through ``OAUTH_*`` settings (Google endpoints by
    default). Provider calls carry explicit timeouts and bounded retries.
    """

    def __init__(
        self,
        auth: AuthService,
        media: MediaService,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.auth = auth
        self.store = auth.store
        self.media = media
        self.settings = settings
        self.transport = transport

    def oauth_url(self) -> str:
        """Build the provider consent URL requesting offline access."""
        if not self.settings.oauth_client_id or not self.settings.oauth_redirect_uri:
            logger.error("oauth_not_configured")
            raise InternalError("oauth provider is not configured")
        params = {
            "client_id": self.settings.oauth_client_id,
            "redirect_uri": self.settings.oauth_redirect_uri,
            "scope": self.settings.oauth_scope,
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.settings.oauth_auth_url}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.provider_timeout_seconds,
            transport=self.transport,
            follow_redirects=False,
        )

    async def _with_retry(self, label: str, func):
        return await call_with_retry(
            label,
            func,
            max_retries=self.settings.provider_max_retries,
            timeout_seconds=self.settings.provider_timeout_seconds,
            backoff_ms=self.settings.provider_backoff_ms,
        )

    async def _exchange_code(self, code: str) -> ProviderTokens:
        if not self.settings.oauth_client_id or not self.settings.oauth_client_secret:
            logger.error("oauth_credentials_missing")
            raise ProviderExchangeFailedError("oauth credentials missing")
        data = {
            "client_id": self.settings.oauth_client_id,
            "client_secret": self.settings.oauth_client_secret,
            "code": code,
            "redirect_uri": self.settings.oauth_redirect_uri,
            "grant_type": "authorization_code",
        }
        async with self._client() as client:

            async def _post() -> httpx.Response:
                response = await client.post(
                    self.settings.oauth_token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                return response

            try:
                response = await self._with_retry("oauth_token_exchange", _post)
            except (httpx.HTTPError, asyncio.TimeoutError) as exc:
                details = _describe_http_error(exc)
                logger.error("oauth_exchange_failed", **details)
                raise ProviderExchangeFailedError("oauth code exchange failed", detail=details) from exc
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("oauth_token_parse_error", error=str(exc))
            raise ProviderExchangeFailedError("oauth token response unreadable") from exc
        if not isinstance(payload, dict) or not payload.get("access_token"):
            logger.error("oauth_no_access_token")
            raise ProviderExchangeFailedError("oauth token response missing access token")
        logger.info("oauth_exchange_success", expires_in=payload.get("expires_in"))
        return ProviderTokens.from_response(payload)

    async def _fetch_profile(self, access_token: str) -> dict:
        async with self._client() as client:

            async def _get() -> httpx.Response:
                response = await client.get(
                    self.settings.oauth_userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                return response

            try:
                response = await self._with_retry("oauth_userinfo", _get)
            except (httpx.HTTPError, asyncio.TimeoutError) as exc:
                details = _describe_http_error(exc)
                logger.error("oauth_userinfo_failed", **details)
                raise ProviderProfileFetchFailedError("oauth profile fetch failed", detail=details) from exc
        try:
            profile = response.json()
        except ValueError as exc:
            logger.error("oauth_userinfo_parse_error", error=str(exc))
            raise ProviderProfileFetchFailedError("oauth profile unreadable") from exc
        if not isinstance(profile, dict) or not profile.get("email"):
            logger.error("oauth_userinfo_missing_email")
            raise ProviderProfileFetchFailedError("oauth profile has no email")
        return profile

    async def _import_picture(self, user: User, picture_url: Optional[str]) -> Optional[str]:
        """Copy the provider picture into object storage; failures only cost the avatar."""
        if not picture_url:
            return None
        try:
            data, ext = await self.media.fetch_remote_image(picture_url)
            image_url = await self.media.store_avatar(user.id, data, ext)
        except (httpx.HTTPError, asyncio.TimeoutError, ValidationError, OSError) as exc:
            logger.warning(
                "oauth_picture_import_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return None
        user.avatar_ext = ext
        self.store.save_user(user)
        return image_url

    def _login_existing(
        self, user: User, provider: ProviderTokens, cookies: CookieSink | None
    ) -> AuthResult:
        user = self.auth.mark_logged_in(user)
        tokens, session = self.auth.start_session(
            user, cookies=cookies, device_increment=1, is_social=True, provider=provider
        )
        image_url = self.media.avatar_url(user.id, user.avatar_ext) if user.avatar_ext else None
        logger.info("oauth_login_existing", user_id=user.id, devices=user.no_of_devices)
        return AuthResult(user=user, tokens=tokens, session=session, image_url=image_url)

    async def oauth_login(self, code: str, *, cookies: CookieSink | None = None) -> AuthResult:
        """Exchange ``code``, then log in the matching local account or create one.

        Raises:
            ValidationError: no code supplied.
            ProviderExchangeFailedError: the token endpoint rejected the code.
            ProviderProfileFetchFailedError: the user-info call failed.
        """
        if not code:
            raise ValidationError("Authorization code is required")
        provider = await self._exchange_code(code)
        profile = await self._fetch_profile(provider.access_token)
        email = str(profile["email"]).strip().lower()

        existing = self.store.get_user_by_email(email)
        if existing:
            return self._login_existing(existing, provider, cookies)

        user = User.new(email=email, name=profile.get("name"))
        user.is_logged_in = True
        user.no_of_devices = 1
        user.last_login = utcnow()
        user.is_email_verified = bool(profile.get("email_verified", False))
        try:
            user = self.store.create_user(user)
        except ConstraintViolation:
            # A concurrent first login created the account in the meantime
            existing = self.store.get_user_by_email(email)
            if not existing:
                raise
            return self._login_existing(existing, provider, cookies)

        image_url = await self._import_picture(user, profile.get("picture"))
        tokens, session = self.auth.start_session(
            user, cookies=cookies, device_increment=1, is_social=True, provider=provider
        )
        logger.info("oauth_user_created", user_id=user.id, has_avatar=bool(image_url))
        return AuthResult(
            user=user, tokens=tokens, session=session, image_url=image_url, created=True
        )
