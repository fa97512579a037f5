import pytest
from pydantic import ValidationError

from bookhub.config import Environment, Settings


def test_environment_overrides_dotenv(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("MONGO_DB=from_file\nOTP_TTL_SECONDS=120\n")
    monkeypatch.setenv("MONGO_DB", "from_env")
    settings = Settings.from_env()
    assert settings.mongo_db == "from_env"
    assert settings.otp_ttl_seconds == 120


def test_cookie_names_and_production_flag(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    settings = Settings.from_env()
    assert settings.environment is Environment.PRODUCTION
    assert settings.is_production
    assert settings.access_cookie_name == "BOOKHUB_ACCESS_T"


def test_generated_jwt_secret_is_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings()
    second = Settings()
    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_negative_retries_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, provider_max_retries=-1)
