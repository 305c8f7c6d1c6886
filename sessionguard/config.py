from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32

_SECRET_FILES = {
    "access_token_secret": ".jwt_access_secret",
    "refresh_token_secret": ".jwt_refresh_secret",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, revocation and login monitoring."""

    # Token signing
    secrets_dir: str = env_field(
        "/srv/sessionguard",
        "SESSIONGUARD_SECRETS_DIR",
        description="Where generated signing secrets are persisted when not set explicitly",
    )
    access_token_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("finance-dashboard", "JWT_ISSUER")
    jwt_audience: str = env_field("finance-dashboard-users", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0)
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)

    # Login throttling and activity monitoring
    security_monitoring_enabled: bool = env_field(True, "SECURITY_MONITORING_ENABLED")
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", gt=0)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", gt=0)
    activity_history_limit: int = env_field(50, "ACTIVITY_HISTORY_LIMIT", gt=0)
    monitor_retention_hours: int = env_field(24, "MONITOR_RETENTION_HOURS", gt=0)
    monitor_cleanup_interval_seconds: int = env_field(
        60 * 60, "MONITOR_CLEANUP_INTERVAL_SECONDS", gt=0
    )

    # Revocation storage
    revocation_sweep_interval_seconds: int = env_field(
        60 * 60, "REVOCATION_SWEEP_INTERVAL_SECONDS", gt=0
    )
    revocation_probe_interval_seconds: int = env_field(
        30,
        "REVOCATION_PROBE_INTERVAL_SECONDS",
        gt=0,
        description="How often a degraded revocation store retries Redis",
    )
    redis_enabled: bool = env_field(False, "REDIS_ENABLED")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_operation_timeout_seconds: float = env_field(
        0.5,
        "REDIS_OPERATION_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound on a single Redis call before falling back to local storage",
    )
    require_redis: bool = env_field(
        False,
        "REQUIRE_REDIS",
        description="Refuse to start when Redis is enabled but unreachable",
    )

    # Sessions and registration
    max_sessions_per_user: int = env_field(10, "MAX_SESSIONS_PER_USER", gt=0)
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH", gt=0)

    alert_webhook_url: str | None = env_field(None, "ALERT_WEBHOOK_URL")
    test_mode: bool = env_field(False, "TEST_MODE")

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
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60

    @property
    def lockout_seconds(self) -> int:
        return self.lockout_minutes * 60

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def _ensure_signing_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{info.field_name} must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        secrets_dir = (info.data or {}).get("secrets_dir") or os.getenv(
            "SESSIONGUARD_SECRETS_DIR", "/srv/sessionguard"
        )
        return _load_or_create_secret(Path(secrets_dir), _SECRET_FILES[info.field_name])

    @model_validator(mode="after")
    def _secrets_differ(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self


def _load_or_create_secret(root: Path, filename: str) -> str:
    """Read a persisted signing secret, generating one on first use.

    Tokens stay valid across restarts as long as the directory survives.
    """
    secret_path = root / filename
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist signing secret; set JWT_ACCESS_SECRET/JWT_REFRESH_SECRET "
            "or make SESSIONGUARD_SECRETS_DIR writable"
        ) from exc
    logger.info("secret_generated", path=str(secret_path))
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
