from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from interspace_auth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/interspace", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/interspace", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviors and in-memory fallbacks",
    )
    cors_allow_origins: str = env_field("*", "CORS_ALLOW_ORIGINS")

    # Tokens and sessions
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("interspace-api", "JWT_ISSUER")
    jwt_audience: str = env_field("interspace-app", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")

    # Sign-In with Ethereum
    siwe_domain: str = env_field("localhost", "SIWE_DOMAIN")
    siwe_uri: str = env_field("http://localhost:8000", "SIWE_URI")
    siwe_chain_id: int = env_field(1, "SIWE_CHAIN_ID")
    siwe_nonce_ttl_seconds: int = env_field(300, "SIWE_NONCE_TTL_SECONDS")
    siwe_max_message_age_seconds: int = env_field(
        600,
        "SIWE_MAX_MESSAGE_AGE_SECONDS",
        description="Reject SIWE messages issued longer ago than this",
    )

    # Email verification codes
    email_code_ttl_minutes: int = env_field(10, "EMAIL_CODE_TTL_MINUTES")
    email_code_max_attempts: int = env_field(5, "EMAIL_CODE_MAX_ATTEMPTS")
    email_code_hourly_limit: int = env_field(3, "EMAIL_CODE_HOURLY_LIMIT")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Interspace", "EMAIL_FROM_NAME")

    # Social providers
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    apple_client_id: str | None = env_field(None, "APPLE_CLIENT_ID")

    # Passkeys
    passkey_rp_id: str = env_field("localhost", "PASSKEY_RP_ID")
    passkey_origin: str = env_field("http://localhost:8000", "PASSKEY_ORIGIN")

    # Farcaster
    optimism_rpc_url: str = env_field("https://mainnet.optimism.io", "OPTIMISM_RPC_URL")
    farcaster_id_registry: str = env_field(
        "0x00000000fc6c5f01fc30151999387bb99a9f489b", "FARCASTER_ID_REGISTRY"
    )
    farcaster_relay_url: str = env_field(
        "https://relay.farcaster.xyz", "FARCASTER_RELAY_URL"
    )
    farcaster_channel_ttl_minutes: int = env_field(60, "FARCASTER_CHANNEL_TTL_MINUTES")

    # MPC key generation webhook
    mpc_webhook_secret: str | None = env_field(None, "MPC_WEBHOOK_SECRET")

    cleanup_interval_seconds: int = env_field(
        300,
        "CLEANUP_INTERVAL_SECONDS",
        description="Interval of the expired nonce/blacklist/session sweep",
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

    @field_validator("farcaster_id_registry")
    @classmethod
    def _validate_registry_address(cls, value: str) -> str:
        if not value.startswith("0x") or len(value) != 42:
            raise ValueError("FARCASTER_ID_REGISTRY must be a 20-byte hex address")
        return value.lower()

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days", "session_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token and session TTLs must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return load_or_create_jwt_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/interspace")))


MIN_PERSISTED_SECRET_LENGTH = 32


def load_or_create_jwt_secret(fs_root: Path) -> str:
    """Read ``.jwt_secret`` under ``fs_root``, creating it on first start.

    The file is written to a temp name and renamed into place so a reader
    never sees a partial secret.
    """
    secret_path = fs_root / ".jwt_secret"
    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= MIN_PERSISTED_SECRET_LENGTH:
                return persisted

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fs_root.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
    return generated


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
