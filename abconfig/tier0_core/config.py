"""
abconfig.tier0_core.config
────────────────────────────
Typed engine settings with env layering. Reads from .env → environment
variables. All fields are typed via Pydantic; env vars are prefixed with
ABCONFIG_ unless an alias says otherwise.

Minimal stack: pydantic-settings + python-dotenv
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AbconfigSettings(BaseSettings):
    """Everything the engine reads from its environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ───────────────────────────────────────────────────────────
    app_name: str = Field(default="abconfig", alias="APP_NAME")
    environment: str = Field(default="development", alias="APP_ENV")

    # ── Record store ──────────────────────────────────────────────────────────
    store_backend: str = Field(default="memory", alias="ABCONFIG_STORE_BACKEND")
    database_url: str = Field(
        default="sqlite:///./abconfig.db",
        alias="ABCONFIG_DATABASE_URL",
    )
    database_echo: bool = Field(default=False, alias="ABCONFIG_DATABASE_ECHO")

    # ── Experiment cache ──────────────────────────────────────────────────────
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    cache_key: str = Field(default="allexperiment", alias="ABCONFIG_CACHE_KEY")
    cache_ttl: int | None = Field(default=None, alias="ABCONFIG_CACHE_TTL")

    # ── Audit / config-change log ─────────────────────────────────────────────
    audit_backend: str = Field(default="log", alias="ABCONFIG_AUDIT_BACKEND")

    # ── Logging ───────────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="ABCONFIG_LOG_LEVEL")
    log_format: str = Field(default="json", alias="ABCONFIG_LOG_FORMAT")

    # ── Metrics ───────────────────────────────────────────────────────────────
    metrics_enabled: bool = Field(default=True, alias="ABCONFIG_METRICS_ENABLED")
    metrics_port: int = Field(default=8001, alias="ABCONFIG_METRICS_PORT")

    # ── Evaluation ────────────────────────────────────────────────────────────
    disable_param: str = Field(default="abconfig", alias="ABCONFIG_DISABLE_PARAM")
    cli_env_prefix: str = Field(default="ABCONFIG_", alias="ABCONFIG_CLI_ENV_PREFIX")
    session_key_prefix: str = Field(default="abconfig_", alias="ABCONFIG_SESSION_KEY_PREFIX")

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if v.lower() not in allowed:
            raise ValueError(f"environment must be one of {allowed}, got {v!r}")
        return v.lower()

    @field_validator("store_backend", "audit_backend")
    @classmethod
    def lower_backend(cls, v: str) -> str:
        return v.lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


@lru_cache(maxsize=1)
def get_settings() -> AbconfigSettings:
    """
    Return the singleton settings. Cached after first call.
    Call _reset_settings() in tests to pick up new env vars.
    """
    return AbconfigSettings()


def _reset_settings() -> None:
    """For tests - clear the settings cache."""
    get_settings.cache_clear()
