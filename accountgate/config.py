from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from accountgate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FS_ROOT = "/srv/accountgate"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account engine and its HTTP surface."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT/state between restarts",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: in-process rate limits, no SMTP",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Key for hashing reset tokens; generated and persisted when unset
    token_hash_secret: str = env_field(None, "TOKEN_HASH_SECRET", validate_default=True)

    # Verification codes
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1, le=60)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1, le=20)
    otp_resend_cooldown_seconds: int = env_field(
        60, "OTP_RESEND_COOLDOWN_SECONDS", ge=0, le=3600
    )

    # Credential lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1, le=100)
    lockout_minutes: int = env_field(120, "LOCKOUT_MINUTES", ge=1, le=7 * 24 * 60)

    # Sessions and reset tokens
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES", ge=1)
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", ge=1, le=24 * 60)
    password_reset_min_response_ms: int = env_field(
        800,
        "PASSWORD_RESET_MIN_RESPONSE_MS",
        ge=0,
        le=10_000,
        description="Reset requests take at least this long whether or not the email exists",
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=6, le=128)
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # Route-level rate limits
    signup_rate_limit_per_minute: int = env_field(10, "SIGNUP_RATE_LIMIT_PER_MINUTE", ge=1)
    signin_rate_limit_per_minute: int = env_field(20, "SIGNIN_RATE_LIMIT_PER_MINUTE", ge=1)
    verify_rate_limit_per_minute: int = env_field(30, "VERIFY_RATE_LIMIT_PER_MINUTE", ge=1)
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE", ge=1)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Basha Lagbe", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator("database_url", "redis_url")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _require_database(self) -> "Settings":
        if not self.use_memory_store and not self.database_url:
            raise ValueError("DATABASE_URL is required unless USE_MEMORY_STORE is enabled")
        return self

    @field_validator("token_hash_secret", mode="before")
    @classmethod
    def _ensure_token_hash_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("TOKEN_HASH_SECRET must be at least 32 characters")
            return value
        # Persist a generated key so outstanding reset links survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", DEFAULT_FS_ROOT))
        secret_path = fs_root / ".token_hash_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "token_secret_dir_setup",
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
                    "token_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".token_hash_secret_", suffix=".tmp"
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
                "token_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist token hash secret; set TOKEN_HASH_SECRET or make SHARED_FS_ROOT writable"
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
