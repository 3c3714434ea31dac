from __future__ import annotations

import os
import re
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from otpgate.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": "seconds", "s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_duration(value: Any) -> timedelta:
    """Parse ``15m`` / ``7d`` / ``3600`` style durations into a timedelta.

    Bare numbers are seconds. Accepts an existing timedelta unchanged.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '15m'")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_PATTERN.match(str(value))
        if not match:
            raise ValueError(f"invalid duration '{value}'; expected e.g. 30s, 15m, 12h, 7d")
        amount, unit = match.groups()
        return _positive(timedelta(**{_DURATION_UNITS[unit.lower()]: int(amount)}))
    return _positive(timedelta(seconds=seconds))


def _positive(delta: timedelta) -> timedelta:
    if delta.total_seconds() <= 0:
        raise ValueError("duration must be positive")
    return delta


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the OTP authentication service."""

    database_url: str = env_field("postgresql://localhost:5432/otpgate", "DATABASE_URL")
    shared_fs_root: str = env_field("/srv/otpgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    store_timeout_seconds: float = env_field(
        5.0, "STORE_TIMEOUT_SECONDS", gt=0, description="Upper bound for a single store call"
    )

    # One-time passcodes
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_expiry_minutes: int = env_field(10, "OTP_EXPIRY_MINUTES", ge=1)
    max_otp_attempts: int = env_field(3, "MAX_OTP_ATTEMPTS", ge=1)
    master_otp_code: str | None = env_field(
        None,
        "MASTER_OTP_CODE",
        description="Accepted as a code value without format checks; still needs a matching challenge",
    )
    otp_cleanup_interval_seconds: int = env_field(
        300, "OTP_CLEANUP_INTERVAL_SECONDS", ge=0, description="0 disables the periodic sweep"
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("otpgate", "JWT_ISSUER")
    jwt_audience: str = env_field("otpgate-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    access_token_ttl: timedelta = env_field(timedelta(minutes=15), "ACCESS_TOKEN_TTL")
    refresh_token_ttl: timedelta = env_field(timedelta(days=7), "REFRESH_TOKEN_TTL")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("otpgate", "EMAIL_FROM_NAME")
    mail_timeout_seconds: float = env_field(30.0, "MAIL_TIMEOUT_SECONDS", gt=0)
    email_dev_mode: bool = env_field(
        False,
        "EMAIL_DEV_MODE",
        description="Without SMTP, log outgoing mail (codes included) and report it delivered",
    )

    # Admin
    employee_id_prefix: str = env_field("LHWK", "EMPLOYEE_ID_PREFIX", min_length=1, max_length=8)

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

    @field_validator("access_token_ttl", "refresh_token_ttl", mode="before")
    @classmethod
    def _parse_ttl(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("master_otp_code", mode="before")
    @classmethod
    def _blank_master_code(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/otpgate"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
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
