from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authflow.logging import get_logger

logger = get_logger(__name__)

# HS512 keys shorter than the digest size weaken the MAC
MIN_TOKEN_SECRET_BYTES = 64


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authflow", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authflow", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_redis_codes: bool = env_field(
        True,
        "USE_REDIS_CODES",
        description="Keep 2FA and recovery codes in Redis instead of process memory",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime resets, sync Redis client)",
    )
    token_secret: str = env_field(None, "TOKEN_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    verification_token_ttl_minutes: int = env_field(
        24 * 60,
        "VERIFICATION_TOKEN_TTL_MINUTES",
        description="TTL for activation, email-change and password-reset tokens",
    )
    two_factor_code_ttl_seconds: int = env_field(300, "TWO_FACTOR_CODE_TTL_SECONDS")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")
    supersede_verification_tokens: bool = env_field(
        True,
        "SUPERSEDE_VERIFICATION_TOKENS",
        description="Delete older activation/email-change/reset tokens when issuing a new one",
    )
    refresh_cookie_name: str = env_field("rt_cookie", "REFRESH_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authflow", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    default_locale: str = env_field("en", "DEFAULT_LOCALE")

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes", "verification_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @field_validator("token_secret")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if value:
            if len(value.encode()) < MIN_TOKEN_SECRET_BYTES:
                raise ValueError(
                    f"TOKEN_SECRET must be at least {MIN_TOKEN_SECRET_BYTES} bytes for HS512"
                )
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authflow"))
        secret_path = fs_root / ".token_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error(
                    "token_secret_read_failed", error=str(exc), path=str(secret_path)
                )
            else:
                if len(persisted.encode()) >= MIN_TOKEN_SECRET_BYTES:
                    return persisted

        generated = secrets.token_urlsafe(96)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".token_secret_", suffix=".tmp"
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
                "Unable to persist token secret; set TOKEN_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("token_secret_generated", path=str(secret_path))
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
