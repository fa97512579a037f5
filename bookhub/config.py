from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bookhub.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; cookies are only marked secure in production."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the bookhub API."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    mongo_url: str | None = env_field(None, "MONGO_URL")
    mongo_db: str = env_field("bookhub", "MONGO_DB")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/bookhub", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors used by the test suite.",
    )
    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("bookhub", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    verify_email_ttl_minutes: int = env_field(60, "VERIFY_EMAIL_TTL_MINUTES")
    # Cookies and sessions
    access_cookie_name: str = env_field("BOOKHUB_ACCESS_T", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("BOOKHUB_REFRESH_T", "REFRESH_COOKIE_NAME")
    access_cookie_expiration_buffer_minutes: int = env_field(
        5,
        "ACCESS_COOKIE_EXPIRATION_BUFFER",
        description="Cookie refresh only re-issues tokens when less than this many minutes remain",
    )
    session_renewal_margin_minutes: int = env_field(2, "SESSION_RENEWAL_MARGIN_MINUTES")
    session_renewal_window_minutes: int = env_field(60, "SESSION_RENEWAL_WINDOW_MINUTES")
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS")
    # OAuth settings
    oauth_client_id: str | None = env_field(None, "OAUTH_CLIENT_ID")
    oauth_client_secret: str | None = env_field(None, "OAUTH_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_auth_url: str = env_field(GOOGLE_AUTH_URL, "OAUTH_AUTH_URL")
    oauth_token_url: str = env_field(GOOGLE_TOKEN_URL, "OAUTH_TOKEN_URL")
    oauth_userinfo_url: str = env_field(GOOGLE_USERINFO_URL, "OAUTH_USERINFO_URL")
    oauth_scope: str = env_field("openid email profile", "OAUTH_SCOPE")
    # Outbound calls (OAuth provider, profile pictures, SMS gateway)
    provider_timeout_seconds: float = env_field(10.0, "PROVIDER_TIMEOUT_SECONDS")
    provider_max_retries: int = env_field(2, "PROVIDER_MAX_RETRIES")
    provider_backoff_ms: int = env_field(200, "PROVIDER_BACKOFF_MS")
    # SMS gateway settings
    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_customer_id: str | None = env_field(None, "SMS_CUSTOMER_ID")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_message_type: str = env_field("ARN", "SMS_MESSAGE_TYPE")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM")
    email_from_name: str = env_field("BookHub", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: str | None = env_field(
        None, "CORS_ALLOW_ORIGINS", description="Comma-separated list of allowed origins"
    )
    # Media
    media_url_ttl_seconds: int = env_field(3600, "MEDIA_URL_TTL_SECONDS")
    thumbnail_size: int = env_field(100, "THUMBNAIL_SIZE")
    max_avatar_bytes: int = env_field(5 * 1024 * 1024, "MAX_AVATAR_BYTES")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("provider_max_retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("provider_max_retries must be >= 0")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/bookhub"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
