"""Application configuration utilities."""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Environment-driven configuration for the telemetry collector."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    database_url: str = Field(
        "sqlite:///collector.db", validation_alias=AliasChoices("DATABASE_URL", "database_url")
    )
    log_level: str = Field("INFO", validation_alias=AliasChoices("LOG_LEVEL", "log_level"))

    cors_enabled: bool = Field(True, validation_alias=AliasChoices("CORS_ENABLED", "cors_enabled"))
    cors_allow_origin: str = Field("*", validation_alias=AliasChoices("CORS_ALLOW_ORIGIN", "cors_allow_origin"))
    cors_allow_methods: str = Field(
        "GET, POST, OPTIONS", validation_alias=AliasChoices("CORS_ALLOW_METHODS", "cors_allow_methods")
    )
    cors_allow_headers: str = Field(
        "Content-Type", validation_alias=AliasChoices("CORS_ALLOW_HEADERS", "cors_allow_headers")
    )

    rate_limit_enabled: bool = Field(True, validation_alias=AliasChoices("RATE_LIMIT_ENABLED", "rate_limit_enabled"))
    rate_limit_max_requests: int = Field(
        1000, ge=1, validation_alias=AliasChoices("RATE_LIMIT_MAX_REQUESTS", "rate_limit_max_requests")
    )
    rate_limit_installation_max_requests: int = Field(
        100,
        ge=1,
        validation_alias=AliasChoices(
            "RATE_LIMIT_INSTALLATION_MAX_REQUESTS", "rate_limit_installation_max_requests"
        ),
    )
    rate_limit_error_max_requests: int = Field(
        100, ge=1, validation_alias=AliasChoices("RATE_LIMIT_ERROR_MAX_REQUESTS", "rate_limit_error_max_requests")
    )
    rate_limit_window_seconds: int = Field(
        3600, ge=1, validation_alias=AliasChoices("RATE_LIMIT_WINDOW_SECONDS", "rate_limit_window_seconds")
    )
    rate_limit_cleanup_probability: float = Field(
        0.01,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("RATE_LIMIT_CLEANUP_PROBABILITY", "rate_limit_cleanup_probability"),
    )

    action_name_pattern: str = Field(
        r"^[A-Za-z0-9_-]{1,64}$", validation_alias=AliasChoices("ACTION_NAME_PATTERN", "action_name_pattern")
    )
    max_action_length: int = Field(64, ge=1, validation_alias=AliasChoices("MAX_ACTION_LENGTH", "max_action_length"))

    error_group_window_seconds: int = Field(
        10, ge=0, validation_alias=AliasChoices("ERROR_GROUP_WINDOW_SECONDS", "error_group_window_seconds")
    )
    error_fetch_multiplier: int = Field(
        4, ge=1, validation_alias=AliasChoices("ERROR_FETCH_MULTIPLIER", "error_fetch_multiplier")
    )

    @property
    def cors_origins(self) -> List[str]:
        return _split_csv(self.cors_allow_origin)

    @property
    def cors_methods(self) -> List[str]:
        return _split_csv(self.cors_allow_methods)

    @property
    def cors_headers(self) -> List[str]:
        return _split_csv(self.cors_allow_headers)

    @property
    def rate_limits(self) -> Dict[str, int]:
        """Per-endpoint-type request ceilings."""

        return {
            "action": self.rate_limit_max_requests,
            "installation": self.rate_limit_installation_max_requests,
            "error": self.rate_limit_error_max_requests,
        }


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
