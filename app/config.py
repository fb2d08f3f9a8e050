"""Application configuration models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(slots=True, frozen=True)
class RateLimitSettings:
    """Per-service throttle configuration."""

    max_requests: int
    window_seconds: float


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Trakt MAL Sync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=4201, alias="PORT")

    trakt_client_id: str | None = Field(default=None, alias="TRAKT_CLIENT_ID")
    trakt_client_secret: str | None = Field(
        default=None, alias="TRAKT_CLIENT_SECRET"
    )
    trakt_access_token: str | None = Field(default=None, alias="TRAKT_ACCESS_TOKEN")
    trakt_refresh_token: str | None = Field(
        default=None, alias="TRAKT_REFRESH_TOKEN"
    )
    trakt_token_expires_at: datetime | None = Field(
        default=None, alias="TRAKT_TOKEN_EXPIRES_AT"
    )
    trakt_redirect_uri: HttpUrl | None = Field(
        default=None, alias="TRAKT_REDIRECT_URI"
    )
    trakt_username: str = Field(default="me", alias="TRAKT_USERNAME")
    trakt_watching_list: str = Field(
        default="MAL Watching", alias="TRAKT_WATCHING_LIST"
    )

    mal_client_id: str | None = Field(default=None, alias="MAL_CLIENT_ID")
    mal_client_secret: str | None = Field(default=None, alias="MAL_CLIENT_SECRET")
    mal_access_token: str | None = Field(default=None, alias="MAL_ACCESS_TOKEN")
    mal_refresh_token: str | None = Field(default=None, alias="MAL_REFRESH_TOKEN")
    mal_token_expires_at: datetime | None = Field(
        default=None, alias="MAL_TOKEN_EXPIRES_AT"
    )

    ids_moe_api_key: str | None = Field(default=None, alias="IDS_MOE_API_KEY")

    trakt_api_url: HttpUrl = Field(
        default="https://api.trakt.tv", alias="TRAKT_API_URL"
    )
    trakt_token_url: HttpUrl = Field(
        default="https://api.trakt.tv/oauth/token", alias="TRAKT_TOKEN_URL"
    )
    mal_api_url: HttpUrl = Field(
        default="https://api.myanimelist.net/v2", alias="MAL_API_URL"
    )
    mal_token_url: HttpUrl = Field(
        default="https://myanimelist.net/v1/oauth2/token", alias="MAL_TOKEN_URL"
    )
    ids_moe_api_url: HttpUrl = Field(
        default="https://api.ids.moe", alias="IDS_MOE_API_URL"
    )

    trakt_rate_limit: int = Field(default=1_000, alias="TRAKT_RATE_LIMIT", ge=1)
    trakt_rate_window: float = Field(
        default=300.0, alias="TRAKT_RATE_WINDOW", gt=0
    )
    mal_rate_limit: int = Field(default=60, alias="MAL_RATE_LIMIT", ge=1)
    mal_rate_window: float = Field(default=60.0, alias="MAL_RATE_WINDOW", gt=0)
    ids_moe_rate_limit: int = Field(default=50, alias="IDS_MOE_RATE_LIMIT", ge=1)
    ids_moe_rate_window: float = Field(
        default=60.0, alias="IDS_MOE_RATE_WINDOW", gt=0
    )
    throttle_spacing_seconds: float = Field(
        default=0.1, alias="THROTTLE_SPACING", ge=0
    )
    operation_delay_seconds: float = Field(
        default=0.1, alias="OPERATION_DELAY", ge=0
    )
    request_retry_limit: int = Field(
        default=3, alias="REQUEST_RETRY_LIMIT", ge=0, le=10
    )

    mapping_cache_seconds: int = Field(
        default=7 * 24 * 3_600, alias="MAPPING_CACHE_TTL", ge=3_600
    )
    trakt_cache_seconds: int = Field(default=3_600, alias="TRAKT_CACHE_TTL", ge=0)
    mal_cache_seconds: int = Field(default=3_600, alias="MAL_CACHE_TTL", ge=0)

    title_weight: float = Field(default=0.7, alias="MATCH_TITLE_WEIGHT", ge=0, le=1)
    year_weight: float = Field(default=0.3, alias="MATCH_YEAR_WEIGHT", ge=0, le=1)
    match_threshold: float = Field(
        default=0.7, alias="MATCH_THRESHOLD", gt=0, le=1
    )
    alt_title_threshold: float = Field(
        default=0.6, alias="ALT_TITLE_THRESHOLD", gt=0, le=1
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./trakt_mal_sync.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator(
        "trakt_client_id",
        "trakt_client_secret",
        "trakt_access_token",
        "trakt_refresh_token",
        "mal_client_id",
        "mal_client_secret",
        "mal_access_token",
        "mal_refresh_token",
        "ids_moe_api_key",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @model_validator(mode="after")
    def _check_match_configuration(self) -> "Settings":
        """Ensure the fuzzy matching weights and thresholds are coherent."""

        if abs(self.title_weight + self.year_weight - 1.0) > 1e-9:
            raise ValueError("MATCH_TITLE_WEIGHT and MATCH_YEAR_WEIGHT must sum to 1")
        if self.alt_title_threshold > self.match_threshold:
            raise ValueError(
                "ALT_TITLE_THRESHOLD must not exceed MATCH_THRESHOLD"
            )
        return self

    @property
    def trakt_rate(self) -> RateLimitSettings:
        return RateLimitSettings(self.trakt_rate_limit, self.trakt_rate_window)

    @property
    def mal_rate(self) -> RateLimitSettings:
        return RateLimitSettings(self.mal_rate_limit, self.mal_rate_window)

    @property
    def ids_moe_rate(self) -> RateLimitSettings:
        return RateLimitSettings(self.ids_moe_rate_limit, self.ids_moe_rate_window)

    @property
    def cross_reference_enabled(self) -> bool:
        """Return whether the ids.moe lookup should be consulted."""

        return bool(self.ids_moe_api_key)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
