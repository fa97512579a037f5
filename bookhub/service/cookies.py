from __future__ import annotations

from typing import Optional, Protocol

from bookhub.config import Settings
from bookhub.service.tokens import AuthTokens


class CookieSink(Protocol):
    """The subset of a framework response used to transport auth tokens.

    ``fastapi.Response`` satisfies it as-is.
    """

    def set_cookie(
        self,
        key: str,
        value: str = "",
        max_age: Optional[int] = None,
        expires=None,
        path: Optional[str] = "/",
        domain: Optional[str] = None,
        secure: bool = False,
        httponly: bool = False,
        samesite=None,
    ) -> None:
        ...

    def delete_cookie(
        self,
        key: str,
        path: str = "/",
        domain: Optional[str] = None,
        secure: bool = False,
        httponly: bool = False,
        samesite=None,
    ) -> None:
        ...


def set_auth_cookies(sink: CookieSink, tokens: AuthTokens, settings: Settings) -> None:
    secure = settings.is_production
    sink.set_cookie(
        settings.access_cookie_name,
        tokens.access.token,
        max_age=settings.access_token_ttl_minutes * 60,
        httponly=True,
        secure=secure,
        samesite="strict",
        path="/",
    )
    sink.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh.token,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        httponly=True,
        secure=secure,
        samesite="strict",
        path="/",
    )


def clear_auth_cookies(sink: CookieSink, settings: Settings) -> None:
    secure = settings.is_production
    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        sink.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="strict")
