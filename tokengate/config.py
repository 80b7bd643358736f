from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Dict

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from tokengate.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def parse_keyring(raw: str | None) -> Dict[str, str]:
    """Parse ``kid:secret,kid:secret`` into a mapping of verification keys."""

    keys: Dict[str, str] = {}
    if not raw:
        return keys
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        kid, sep, secret = entry.partition(":")
        if not sep or not kid.strip() or not secret.strip():
            raise ValueError("JWT_PREVIOUS_KEYS entries must look like kid:secret")
        keys[kid.strip()] = secret.strip()
    return keys


class Settings(BaseModel):
    """Runtime settings for token issuance, verification and storage."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokengate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tokengate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_key_id: str = env_field(
        "v1", "JWT_KEY_ID", description="Key id embedded in the assertion header"
    )
    jwt_previous_keys: Dict[str, str] = env_field(
        {},
        "JWT_PREVIOUS_KEYS",
        description="Retired signing keys still accepted for verification (kid:secret,...)",
    )
    jwt_issuer: str = env_field("tokengate", "JWT_ISSUER")
    jwt_audience: str = env_field("tokengate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", gt=0, description="Access assertion TTL in minutes"
    )
    refresh_token_ttl_days: int = env_field(
        30, "REFRESH_TOKEN_TTL_DAYS", gt=0, description="Requested refresh secret TTL in days"
    )
    refresh_token_max_days: int = env_field(
        90,
        "REFRESH_TOKEN_MAX_DAYS",
        gt=0,
        description="Absolute cap on refresh secret and grant lifetime in days",
    )
    clock_skew_seconds: int = env_field(0, "CLOCK_SKEW_SECONDS", ge=0)
    # argon2id cost parameters for refresh secret hashing
    refresh_hash_time_cost: int = env_field(3, "REFRESH_HASH_TIME_COST", gt=0)
    refresh_hash_memory_kib: int = env_field(65536, "REFRESH_HASH_MEMORY_KIB", gt=0)
    refresh_hash_parallelism: int = env_field(4, "REFRESH_HASH_PARALLELISM", gt=0)
    admin_api_key: str | None = env_field(
        None, "ADMIN_API_KEY", description="Out-of-band admin credential"
    )
    approval_lock_ttl_seconds: int = env_field(30, "APPROVAL_LOCK_TTL_SECONDS", gt=0)
    approval_lock_timeout_seconds: float = env_field(
        10.0, "APPROVAL_LOCK_TIMEOUT_SECONDS", gt=0
    )
    reaper_enabled: bool = env_field(True, "REAPER_ENABLED")
    reaper_interval_seconds: int = env_field(3600, "REAPER_INTERVAL_SECONDS", gt=0)
    reaper_retention_days: int = env_field(30, "REAPER_RETENTION_DAYS", ge=0)

    model_config = ConfigDict(extra="ignore", validate_default=True)

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
    def refresh_ttl_days(self) -> int:
        """Refresh secret lifetime after applying the absolute cap."""

        return min(self.refresh_token_ttl_days, self.refresh_token_max_days)

    @property
    def signing_keys(self) -> Dict[str, str]:
        """All verification keys, active key last so it wins on kid clashes."""

        keys = dict(self.jwt_previous_keys)
        keys[self.jwt_key_id] = self.jwt_secret or ""
        return keys

    @field_validator("jwt_previous_keys", mode="before")
    @classmethod
    def _parse_previous_keys(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            return parse_keyring(value)
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so assertions survive restarts
        fs_root = Path(info.data.get("shared_fs_root") or "/srv/tokengate")
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
                if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Atomic write: temp file then rename
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
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
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
