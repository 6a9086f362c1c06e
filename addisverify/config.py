from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from addisverify.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/addisverify"
_MIN_SECRET_LENGTH = 32


class SmsProvider(str, Enum):
    """Delivery backends for OTP text messages."""

    LOG = "log"
    HTTP = "http"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str, label: str) -> str:
    """Return a persisted server secret, generating it on first use.

    The value lives under SHARED_FS_ROOT so every worker sharing the mount
    signs and hashes with the same key across restarts.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", _DEFAULT_FS_ROOT))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            f"{label}_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error(f"{label}_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Atomic write: temp file then rename
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error(f"{label}_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {label}; set it via environment or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info(f"{label}_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the verification service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/addis_verify", "DATABASE_URL"
    )
    database_statement_timeout_ms: int = env_field(
        5000,
        "DATABASE_STATEMENT_TIMEOUT_MS",
        description="Server-side statement timeout applied to every pooled connection",
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_operation_timeout_seconds: float = env_field(
        5.0, "REDIS_OPERATION_TIMEOUT_SECONDS"
    )
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks.",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("addis_verify", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")

    hash_pepper: str = env_field(None, "HASH_PEPPER", validate_default=True)
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_seconds: int = env_field(
        300, "OTP_TTL_SECONDS", description="Lifetime of an issued challenge"
    )
    otp_lock_ttl_seconds: int = env_field(
        60, "OTP_LOCK_TTL_SECONDS", description="Cool-down before a new code may be issued"
    )

    sms_provider: SmsProvider = env_field(SmsProvider.LOG, "SMS_PROVIDER")
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender_id: str = env_field("AddisVerify", "SMS_SENDER_ID")
    sms_timeout_seconds: float = env_field(30.0, "SMS_TIMEOUT_SECONDS")

    auth_rate_limit_per_minute: int = env_field(5, "AUTH_RATE_LIMIT_PER_MINUTE")
    read_rate_limit_per_minute: int = env_field(100, "READ_RATE_LIMIT_PER_MINUTE")
    max_request_bytes: int = env_field(1024 * 1024, "MAX_REQUEST_BYTES")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("sms_provider")
    @classmethod
    def _validate_sms_provider(cls, value: SmsProvider) -> SmsProvider:
        return SmsProvider(value)

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if value < 4 or value > 10:
            raise ValueError("otp_length must be between 4 and 10 digits")
        return value

    @field_validator("otp_ttl_seconds", "otp_lock_ttl_seconds")
    @classmethod
    def _validate_positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("challenge TTLs must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret", "jwt_secret")

    @field_validator("hash_pepper", mode="before")
    @classmethod
    def _ensure_hash_pepper(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".hash_pepper", "hash_pepper")


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
