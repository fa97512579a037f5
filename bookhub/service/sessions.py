from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from bookhub.config import Settings
from bookhub.logging import get_logger
from bookhub.service.errors import InternalError
from bookhub.service.tokens import AuthTokens
from bookhub.storage.errors import StaleWriteError
from bookhub.storage.models import Session, utcnow

logger = get_logger(__name__)

MAX_WRITE_ATTEMPTS = 5


class SessionRepository(Protocol):
    def get_session(self, user_id: str) -> Optional[Session]:
        ...

    def save_session(self, session: Session, *, expected_version: Optional[int]) -> Session:
        ...


@dataclass(frozen=True)
class ProviderTokens:
    """Tokens handed back by the OAuth provider's token endpoint."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None

    @classmethod
    def from_response(cls, payload: dict) -> "ProviderTokens":
        expires_in = payload.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None
        return cls(
            access_token=str(payload["access_token"]),
            refresh_token=payload.get("refresh_token"),
            expires_in=expires_in,
        )


class SessionStore:
    """Keeps the single session record per user.

    Token fields are last-writer-wins. The device counter is protected by a
    conditional write on ``Session.version``: on conflict the record is
    re-read and the mutation re-applied, so concurrent logins never lose an
    increment.
    """

    def __init__(
        self,
        store: SessionRepository,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow

    def get(self, user_id: str) -> Optional[Session]:
        return self.store.get_session(user_id)

    def _renewal_time(self, session: Session) -> datetime:
        margin = timedelta(minutes=self.settings.session_renewal_margin_minutes)
        if session.social_login and session.provider_expires_at:
            return session.provider_expires_at - margin
        window = timedelta(minutes=self.settings.session_renewal_window_minutes)
        return self._clock() + window - margin

    def _write(
        self,
        user_id: str,
        mutate: Callable[[Session], None],
        create: Callable[[], Session] | None = None,
    ) -> Optional[Session]:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            current = self.store.get_session(user_id)
            if current is None:
                if create is None:
                    return None
                candidate, expected = create(), None
            else:
                mutate(current)
                candidate, expected = current, current.version
            try:
                return self.store.save_session(candidate, expected_version=expected)
            except StaleWriteError as exc:
                logger.info(
                    "session_write_conflict",
                    user_id=user_id,
                    attempt=attempt,
                    expected=exc.expected,
                    actual=exc.actual,
                )
        logger.error("session_write_conflict_exhausted", user_id=user_id)
        raise InternalError("session update conflict", detail={"user_id": user_id})

    def upsert_session(
        self,
        user_id: str,
        tokens: AuthTokens,
        *,
        device_increment: int = 1,
        is_social: Optional[bool] = False,
        provider: ProviderTokens | None = None,
    ) -> Session:
        """Create the user's session or overwrite its tokens and bump the device counter.

        ``is_social`` names the flow of this login and replaces the stored one:
        a password login drops any provider tokens left by an earlier OAuth
        login. Pass ``None`` (token refresh) to keep the stored flow.
        """

        now = self._clock()
        provider_expires_at = (
            now + timedelta(seconds=provider.expires_in)
            if provider and provider.expires_in
            else None
        )

        def apply_tokens(session: Session) -> None:
            session.access_token = tokens.access.token
            session.refresh_token = tokens.refresh.token
            session.access_expires_at = tokens.access.expires_at
            session.refresh_expires_at = tokens.refresh.expires_at
            if is_social is not None:
                session.social_login = is_social
            if not session.social_login:
                session.provider_access_token = None
                session.provider_refresh_token = None
                session.provider_expires_at = None
            elif provider:
                session.provider_access_token = provider.access_token
                if provider.refresh_token:
                    session.provider_refresh_token = provider.refresh_token
                session.provider_expires_at = provider_expires_at
            session.renews_at = self._renewal_time(session)

        def mutate(session: Session) -> None:
            apply_tokens(session)
            session.devices_logged_in = max(0, session.devices_logged_in + device_increment)

        def create() -> Session:
            session = Session(
                user_id=user_id,
                access_token=tokens.access.token,
                refresh_token=tokens.refresh.token,
                access_expires_at=tokens.access.expires_at,
                refresh_expires_at=tokens.refresh.expires_at,
                devices_logged_in=max(0, device_increment),
                social_login=bool(is_social),
            )
            apply_tokens(session)
            return session

        session = self._write(user_id, mutate, create)
        logger.info(
            "session_upserted",
            user_id=user_id,
            devices_logged_in=session.devices_logged_in,
            social_login=session.social_login,
            version=session.version,
        )
        return session

    def touch_renewal(self, session: Session) -> Session:
        """Recompute and persist the renewal timestamp of ``session``."""

        def mutate(current: Session) -> None:
            current.renews_at = self._renewal_time(current)

        updated = self._write(session.user_id, mutate)
        if updated is None:
            # No stored record to touch; hand back the computed value only
            session.renews_at = self._renewal_time(session)
            return session
        return updated

    def decrement_device(self, user_id: str) -> Optional[Session]:
        """Decrement the device counter, floored at zero. Returns None without a session."""

        def mutate(session: Session) -> None:
            session.devices_logged_in = max(0, session.devices_logged_in - 1)

        return self._write(user_id, mutate)
