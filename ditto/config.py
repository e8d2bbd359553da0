from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from ditto.logging import get_logger

logger = get_logger(__name__)

GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"


class AppEnv(str, Enum):
    """Deployment environments; staging and production are production-like."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


class CodeMode(str, Enum):
    """How verification codes are produced.

    - DETERMINISTIC: code is the last six digits of the phone number (bypass)
    - RANDOM: code is drawn from a CSPRNG over the six-digit space
    """

    DETERMINISTIC = "deterministic"
    RANDOM = "random"


PRODUCTION_LIKE_ENVS = frozenset({AppEnv.STAGING, AppEnv.PRODUCTION})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(secret_path: Path, *, min_length: int = 32) -> str:
    """Return the signing secret stored at ``secret_path``, creating it if absent.

    The secret is written atomically with 0600 permissions so every worker
    sharing the directory signs with the same key across restarts.
    """
    fs_root = secret_path.parent
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            stored = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(stored) >= min_length:
                return stored
            logger.warning("jwt_secret_too_short", path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_name: str | None = None
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
        )
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        if tmp_name:
            Path(tmp_name).unlink(missing_ok=True)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    shared_fs_root: str = env_field("/srv/ditto", "SHARED_FS_ROOT")
    user_store_persist: bool = env_field(
        True,
        "USER_STORE_PERSIST",
        description="Snapshot the in-memory user store under SHARED_FS_ROOT/state",
    )
    # Verification codes
    code_mode: CodeMode | None = env_field(
        None,
        "CODE_MODE",
        description="deterministic or random; derived from APP_ENV when unset",
    )
    code_ttl_minutes: int = env_field(5, "CODE_TTL_MINUTES", ge=1)
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    state_cleanup_interval_seconds: int = env_field(
        300, "STATE_CLEANUP_INTERVAL_SECONDS", ge=1
    )
    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Signing secret for refresh tokens; falls back to JWT_SECRET",
    )
    jwt_issuer: str = env_field("ditto", "JWT_ISSUER")
    jwt_audience: str = env_field("ditto-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS", ge=0)
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    # Identity federation
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_certs_url: str = env_field(GOOGLE_CERTS_URL, "GOOGLE_CERTS_URL")
    google_jwks_cache_seconds: int = env_field(3600, "GOOGLE_JWKS_CACHE_SECONDS", ge=0)
    google_jwks_min_refetch_seconds: int = env_field(
        60, "GOOGLE_JWKS_MIN_REFETCH_SECONDS", ge=0
    )
    provider_verify_timeout_seconds: float = env_field(
        10.0, "PROVIDER_VERIFY_TIMEOUT_SECONDS", gt=0
    )

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            value = value.strip().lower()
        return AppEnv(value)

    @field_validator("code_mode", mode="before")
    @classmethod
    def _validate_code_mode(cls, value: Any) -> CodeMode | None:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            value = value.strip().lower()
        return CodeMode(value)

    @field_validator("jwt_refresh_secret", "google_client_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = info.data.get("shared_fs_root") or "/srv/ditto"
        return _load_or_create_secret(Path(fs_root) / ".jwt_secret")

    @model_validator(mode="after")
    def _check_code_mode(self) -> "Settings":
        if self.code_mode == CodeMode.DETERMINISTIC and self.is_production_like:
            raise ValueError(
                f"CODE_MODE=deterministic is not allowed when APP_ENV={self.app_env.value}"
            )
        return self

    @property
    def is_production_like(self) -> bool:
        return self.app_env in PRODUCTION_LIKE_ENVS

    @property
    def resolved_code_mode(self) -> CodeMode:
        if self.code_mode is not None:
            return self.code_mode
        if self.is_production_like:
            return CodeMode.RANDOM
        return CodeMode.DETERMINISTIC

    @property
    def expose_debug_codes(self) -> bool:
        """Whether issued codes may be logged and kept in the debug slot."""
        return not self.is_production_like

    @property
    def refresh_signing_secret(self) -> str:
        return self.jwt_refresh_secret or self.jwt_secret


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
