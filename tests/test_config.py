import os

import pytest
from pydantic import ValidationError

from accountgate.config import Settings

SECRET = "a" * 40


def test_defaults_match_security_parameters():
    settings = Settings(use_memory_store=True, token_hash_secret=SECRET)
    assert settings.otp_ttl_minutes == 10
    assert settings.otp_max_attempts == 5
    assert settings.otp_resend_cooldown_seconds == 60
    assert settings.lockout_threshold == 5
    assert settings.lockout_minutes == 120
    assert settings.session_ttl_minutes == 7 * 24 * 60
    assert settings.reset_token_ttl_minutes == 60


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    monkeypatch.setenv("OTP_TTL_MINUTES", "15")
    monkeypatch.setenv("ALLOW_SIGNUP", "false")
    monkeypatch.setenv("APP_BASE_URL", "https://app.example.com/")
    settings = Settings.from_env()
    assert settings.otp_ttl_minutes == 15
    assert settings.allow_signup is False
    assert settings.app_base_url == "https://app.example.com"


def test_blank_redis_url_means_disabled():
    settings = Settings(use_memory_store=True, redis_url="  ", token_hash_secret=SECRET)
    assert settings.redis_url is None


def test_database_url_required_without_memory_store():
    with pytest.raises(ValidationError, match="DATABASE_URL"):
        Settings(use_memory_store=False, database_url=None, token_hash_secret=SECRET)


def test_short_token_secret_rejected():
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(use_memory_store=True, token_hash_secret="too-short")


@pytest.mark.parametrize("name, value", [("otp_ttl_minutes", 0), ("lockout_threshold", 0)])
def test_out_of_range_values_rejected(name, value):
    with pytest.raises(ValidationError):
        Settings(use_memory_store=True, token_hash_secret=SECRET, **{name: value})


def test_generated_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(use_memory_store=True, token_hash_secret=None)
    second = Settings(use_memory_store=True, token_hash_secret=None)

    assert len(first.token_hash_secret) >= 32
    assert first.token_hash_secret == second.token_hash_secret
    secret_file = tmp_path / ".token_hash_secret"
    assert secret_file.read_text() == first.token_hash_secret
    assert oct(os.stat(secret_file).st_mode & 0o777) == "0o600"
