from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bookhub.config import Settings
from bookhub.logging import get_logger
from bookhub.service.cookies import CookieSink, clear_auth_cookies, set_auth_cookies
from bookhub.service.email import EmailService
from bookhub.service.errors import (
    BadRequestError,
    CodeNotFoundError,
    DispatchFailedError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from bookhub.service.otp import OTPIssuer
from bookhub.service.sessions import ProviderTokens, SessionStore
from bookhub.service.sms import SMSService
from bookhub.service.tokens import AuthTokens, TokenIssuer, TokenKind
from bookhub.storage.errors import ConstraintViolation
from bookhub.storage.models import Session, User, as_utc, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def save_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthResult:
    user: User
    tokens: AuthTokens
    session: Session
    image_url: Optional[str] = None
    created: bool = False


@dataclass
class CookieRefreshResult:
    refreshed: bool
    message: str
    tokens: Optional[AuthTokens] = None


@dataclass
class LogoutResult:
    user_id: str
    already_logged_out: bool

    @property
    def message(self) -> str:
        return "User already logged out" if self.already_logged_out else "Logged out successfully"


class AuthService:
    """Coordinates registration, login, refresh, password reset and logout.

    Storage calls are synchronous; the methods that reach out to email, SMS
    or the OTP cache are coroutines.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionStore,
        tokens: TokenIssuer,
        otp: OTPIssuer,
        settings: Settings,
        *,
        email: EmailService | None = None,
        sms: SMSService | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.tokens = tokens
        self.otp = otp
        self.settings = settings
        self.email = email or EmailService()
        self.sms = sms or SMSService()
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return utcnow()

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            # OAuth-only identities have no password
            self.logger.info("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- sessions ----------------------------------------------------------

    def start_session(
        self,
        user: User,
        *,
        cookies: CookieSink | None = None,
        device_increment: int = 1,
        is_social: Optional[bool] = False,
        provider: ProviderTokens | None = None,
    ) -> Tuple[AuthTokens, Session]:
        """Issue a token pair, record it on the user's session and set cookies."""
        tokens = self.tokens.issue_auth_tokens(user)
        session = self.sessions.upsert_session(
            user.id,
            tokens,
            device_increment=device_increment,
            is_social=is_social,
            provider=provider,
        )
        if cookies is not None:
            set_auth_cookies(cookies, tokens, self.settings)
        return tokens, session

    def mark_logged_in(self, user: User) -> User:
        user.is_logged_in = True
        user.no_of_devices = max(0, user.no_of_devices) + 1
        user.last_login = self._now()
        return self.store.save_user(user)

    # -- registration ------------------------------------------------------

    def _ensure_available(self, email: Optional[str], phone: Optional[str]) -> None:
        if email and self.store.get_user_by_email(email):
            raise ValidationError("Email already taken", detail={"field": "email"})
        if phone and self.store.get_user_by_phone(phone):
            raise ValidationError("Phone number already taken", detail={"field": "phone"})

    def _register(
        self,
        *,
        name: Optional[str],
        email: Optional[str],
        phone: Optional[str],
        password: str,
        cookies: CookieSink | None,
    ) -> AuthResult:
        self._ensure_available(email, phone)
        user = User.new(email=email, phone=phone, name=name)
        user.is_logged_in = True
        user.no_of_devices = 1
        user.last_login = self._now()
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup for the same identifier
            field = exc.detail.get("field")
            message = "Phone number already taken" if field == "phone" else "Email already taken"
            raise ValidationError(message, detail={"field": field}) from exc
        self.save_password(user.id, password)
        tokens, session = self.start_session(user, cookies=cookies)
        self.logger.info("user_registered", user_id=user.id, via="phone" if phone and not email else "email")
        return AuthResult(user=user, tokens=tokens, session=session, created=True)

    async def register_with_email(
        self,
        *,
        email: str,
        password: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        cookies: CookieSink | None = None,
    ) -> AuthResult:
        if not email:
            raise ValidationError("Email is required", detail={"field": "email"})
        return self._register(name=name, email=email, phone=phone, password=password, cookies=cookies)

    async def register_with_phone(
        self,
        *,
        phone: str,
        password: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        cookies: CookieSink | None = None,
    ) -> AuthResult:
        if not phone:
            raise ValidationError("Phone number is required", detail={"field": "phone"})
        return self._register(name=name, email=email, phone=phone, password=password, cookies=cookies)

    # -- login / refresh ---------------------------------------------------

    async def login(
        self,
        *,
        password: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        cookies: CookieSink | None = None,
    ) -> AuthResult:
        """Password login by phone (preferred when present) or email.

        Raises:
            BadRequestError: neither email nor phone was supplied.
            InvalidCredentialsError: unknown identity or wrong password.
        """
        if not email and not phone:
            raise BadRequestError("Either email or phone number is required")
        if phone:
            user = self.store.get_user_by_phone(phone)
            failure = "Incorrect phone or password"
        else:
            user = self.store.get_user_by_email(email)
            failure = "Incorrect email or password"
        if not user or not self.verify_password(user.id, password):
            self.logger.info("login_failed", via="phone" if phone else "email")
            raise InvalidCredentialsError(failure)
        user = self.mark_logged_in(user)
        tokens, session = self.start_session(user, cookies=cookies)
        self.logger.info("login_succeeded", user_id=user.id, devices=session.devices_logged_in)
        return AuthResult(user=user, tokens=tokens, session=session)

    async def refresh_auth(
        self, refresh_token: str, *, cookies: CookieSink | None = None
    ) -> AuthResult:
        """Swap a valid refresh token for a new pair without counting a new device."""
        claims = self.tokens.verify_token(refresh_token, TokenKind.REFRESH)
        user = self.store.get_user(str(claims.get("sub")))
        if not user:
            raise UnauthenticatedError("Please authenticate")
        # A refresh stays in the flow the session was opened with
        tokens, session = self.start_session(
            user, cookies=cookies, device_increment=0, is_social=None
        )
        self.logger.info("tokens_refreshed", user_id=user.id)
        return AuthResult(user=user, tokens=tokens, session=session)

    async def refresh_from_cookies(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        *,
        cookies: CookieSink | None = None,
    ) -> CookieRefreshResult:
        """Re-issue cookie tokens only when the access token is close to expiry."""
        if not access_token or not refresh_token:
            raise UnauthenticatedError("Please authenticate")
        access_claims = self.tokens.verify_token(
            access_token, TokenKind.ACCESS, allow_expired=True
        )
        refresh_claims = self.tokens.verify_token(refresh_token, TokenKind.REFRESH)
        if access_claims.get("sub") != refresh_claims.get("sub"):
            raise UnauthenticatedError("Please authenticate")
        access_expiry = TokenIssuer.expiry_of(access_claims)
        buffer = timedelta(minutes=self.settings.access_cookie_expiration_buffer_minutes)
        if access_expiry and access_expiry - self._now() >= buffer:
            return CookieRefreshResult(refreshed=False, message="Token hasn't expired yet")
        result = await self.refresh_auth(refresh_token, cookies=cookies)
        return CookieRefreshResult(refreshed=True, message="Tokens refreshed", tokens=result.tokens)

    # -- password reset ----------------------------------------------------

    async def forgot_password(
        self, *, email: Optional[str] = None, phone: Optional[str] = None
    ) -> str:
        """Issue a reset code and deliver it by SMS (phone) or email.

        Returns the channel used. Delivery failures are logged and surface as
        :class:`DispatchFailedError`.
        """
        if phone:
            user = self.store.get_user_by_phone(phone)
            if not user:
                raise NotFoundError("No users found with this phone number")
        elif email:
            user = self.store.get_user_by_email(email)
            if not user:
                raise NotFoundError("No users found with this email")
        else:
            raise BadRequestError("Either email or phone number is required")

        code = await self.otp.issue(user.id)
        if phone:
            channel = "sms"
            sent = await self.sms.send_reset_code(phone, code)
        else:
            channel = "email"
            sent = await asyncio.to_thread(
                self.email.send_password_reset_code,
                email,
                code,
                ttl_minutes=max(1, self.settings.otp_ttl_seconds // 60),
            )
        if not sent:
            self.logger.error("otp_dispatch_failed", user_id=user.id, channel=channel)
            raise DispatchFailedError(
                "reset code dispatch failed", detail={"channel": channel, "user_id": user.id}
            )
        self.logger.info("password_reset_requested", user_id=user.id, channel=channel)
        return channel

    async def reset_password(self, code: str, new_password: str) -> User:
        """Consume ``code`` and set a new password; the old one is not required."""
        try:
            user_id = await self.otp.consume(code)
        except CodeNotFoundError as exc:
            raise UnauthenticatedError("Password reset failed") from exc
        user = self.store.get_user(user_id)
        if not user:
            raise UnauthenticatedError("Password reset failed")
        self.save_password(user.id, new_password)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    # -- email verification ------------------------------------------------

    async def send_verification_email(self, user: User) -> None:
        if not user.email:
            raise ValidationError("User has no email address")
        token = self.tokens.issue_verify_email_token(user)
        sent = await asyncio.to_thread(self.email.send_email_verification, user.email, token.token)
        if not sent:
            self.logger.error("verification_email_dispatch_failed", user_id=user.id)
            raise DispatchFailedError("verification email dispatch failed", detail={"user_id": user.id})

    async def verify_email(self, token: str) -> User:
        try:
            claims = self.tokens.verify_token(token, TokenKind.VERIFY_EMAIL)
        except UnauthenticatedError as exc:
            raise UnauthenticatedError("Email verification failed") from exc
        user = self.store.get_user(str(claims.get("sub")))
        if not user or user.email != claims.get("email"):
            raise UnauthenticatedError("Email verification failed")
        if not user.is_email_verified:
            user.is_email_verified = True
            user = self.store.save_user(user)
            self.logger.info("email_verified", user_id=user.id)
        return user

    # -- logout ------------------------------------------------------------

    async def logout(self, user_id: str, *, cookies: CookieSink | None = None) -> LogoutResult:
        """Clear the login flag and release one device; a second call is a no-op."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if cookies is not None:
            clear_auth_cookies(cookies, self.settings)
        if not user.is_logged_in:
            self.logger.info("already_logged_out", user_id=user_id)
            return LogoutResult(user_id=user_id, already_logged_out=True)
        user.is_logged_in = False
        user.no_of_devices = max(0, user.no_of_devices - 1)
        self.store.save_user(user)
        self.sessions.decrement_device(user_id)
        self.logger.info("user_logged_out", user_id=user_id)
        return LogoutResult(user_id=user_id, already_logged_out=False)

    # -- request authentication --------------------------------------------

    def authenticate(
        self,
        token: str,
        *,
        roles: Iterable[str] | None = None,
        require_logged_in: bool = True,
    ) -> User:
        """Resolve the user behind an access token.

        Raises:
            UnauthenticatedError: bad token, unknown user, logged out user or
                expired session.
            ForbiddenError: the user's role is not in ``roles``.
        """
        claims: dict[str, Any] = self.tokens.verify_token(token, TokenKind.ACCESS)
        user = self.store.get_user(str(claims.get("sub")))
        if not user:
            raise UnauthenticatedError("Please authenticate")
        if claims.get("email") != user.email or claims.get("role") != user.role:
            raise UnauthenticatedError("Please authenticate")
        if require_logged_in:
            if not user.is_logged_in:
                raise UnauthenticatedError("User logged out, please login again")
            session = self.sessions.get(user.id)
            if not session or as_utc(session.access_expires_at) <= self._now():
                raise UnauthenticatedError("Session expired, please login again")
        allowed = set(roles or ())
        if allowed and user.role not in allowed:
            raise ForbiddenError("Forbidden")
        return user
