"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .sources import (
    BUILTIN_SOURCE_MAP,
    BUILTIN_SOURCES,
    DEFAULT_SEARCH_TERMS,
    SourceDefinition,
    normalise_source_key,
)


DEFAULT_SOURCE_KEYS: tuple[str, ...] = tuple(
    source.key for source in BUILTIN_SOURCES if source.platform == "reddit"
)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="VirtualFeed", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=5000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./virtualfeed.db", alias="DATABASE_URL"
    )

    reddit_client_id: str | None = Field(default=None, alias="REDDIT_CLIENT_ID")
    reddit_client_secret: str | None = Field(
        default=None, alias="REDDIT_CLIENT_SECRET"
    )
    reddit_refresh_token: str | None = Field(
        default=None, alias="REDDIT_REFRESH_TOKEN"
    )
    reddit_user_agent: str = Field(
        default="virtualfeed-app", alias="REDDIT_USER_AGENT"
    )
    reddit_api_url: HttpUrl = Field(
        default="https://oauth.reddit.com", alias="REDDIT_API_URL"
    )
    reddit_token_url: HttpUrl = Field(
        default="https://www.reddit.com/api/v1/access_token",
        alias="REDDIT_TOKEN_URL",
    )

    youtube_api_key: str | None = Field(default=None, alias="YOUTUBE_API_KEY")
    youtube_api_url: HttpUrl = Field(
        default="https://www.googleapis.com/youtube/v3", alias="YOUTUBE_API_URL"
    )
    youtube_quota_limit: int = Field(
        default=10_000, alias="YOUTUBE_QUOTA_LIMIT", ge=0
    )
    youtube_min_view_count: int = Field(
        default=200, alias="YOUTUBE_MIN_VIEW_COUNT", ge=0
    )
    youtube_min_like_count: int = Field(
        default=10, alias="YOUTUBE_MIN_LIKE_COUNT", ge=0
    )
    youtube_min_description_length: int = Field(
        default=40, alias="YOUTUBE_MIN_DESCRIPTION_LENGTH", ge=0
    )
    youtube_max_duration_seconds: int = Field(
        default=300, alias="YOUTUBE_MAX_DURATION", ge=1
    )

    source_keys: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_SOURCE_KEYS,
        alias="SOURCES",
    )
    search_terms: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_SEARCH_TERMS,
        alias="REDDIT_SEARCH_TERMS",
    )

    enable_scraping: bool = Field(default=False, alias="ENABLE_SCRAPING")
    scrape_interval_seconds: int = Field(
        default=86_400, alias="SCRAPE_INTERVAL", ge=300
    )
    scrape_initial_delay_seconds: float = Field(
        default=10.0, alias="SCRAPE_INITIAL_DELAY", ge=0
    )
    listing_delay_seconds: float = Field(
        default=1.2, alias="LISTING_DELAY", ge=0
    )
    source_delay_seconds: float = Field(default=2.0, alias="SOURCE_DELAY", ge=0)
    refresh_delay_seconds: float = Field(
        default=0.4, alias="MEDIA_REFRESH_DELAY", ge=0
    )
    media_refresh_limit: int = Field(
        default=200, alias="MEDIA_REFRESH_LIMIT", ge=1, le=5_000
    )
    media_refresh_window_hours: float = Field(
        default=6.0, alias="MEDIA_REFRESH_WINDOW_HOURS", ge=0
    )

    retry_max_attempts: int = Field(
        default=3, alias="FETCH_MAX_ATTEMPTS", ge=1, le=10
    )
    retry_base_delay_seconds: float = Field(
        default=1.0, alias="FETCH_RETRY_BASE_DELAY", ge=0
    )
    retry_max_delay_seconds: float = Field(
        default=15.0, alias="FETCH_RETRY_MAX_DELAY", ge=0
    )

    # Empirically tuned duplicate-detection weights.
    dedup_window_hours: float = Field(default=48.0, alias="DEDUP_WINDOW_HOURS", gt=0)
    dedup_title_similarity: float = Field(
        default=0.7, alias="DEDUP_TITLE_SIMILARITY", ge=0, le=1
    )
    dedup_title_weight: float = Field(default=0.4, alias="DEDUP_TITLE_WEIGHT", ge=0)
    dedup_duration_tolerance_seconds: float = Field(
        default=5.0, alias="DEDUP_DURATION_TOLERANCE", ge=0
    )
    dedup_duration_weight: float = Field(
        default=0.3, alias="DEDUP_DURATION_WEIGHT", ge=0
    )
    dedup_cross_source_author_weight: float = Field(
        default=0.4, alias="DEDUP_CROSS_SOURCE_AUTHOR_WEIGHT", ge=0
    )
    dedup_same_source_author_weight: float = Field(
        default=0.2, alias="DEDUP_SAME_SOURCE_AUTHOR_WEIGHT", ge=0
    )
    dedup_media_id_weight: float = Field(
        default=0.5, alias="DEDUP_MEDIA_ID_WEIGHT", ge=0
    )
    dedup_threshold: float = Field(default=0.7, alias="DEDUP_THRESHOLD", gt=0)
    dedup_cross_source_threshold: float = Field(
        default=0.6, alias="DEDUP_CROSS_SOURCE_THRESHOLD", gt=0
    )

    feed_memory_ttl_hours: float = Field(
        default=24.0,
        alias="FEED_MEMORY_TTL_HOURS",
        gt=0,
    )
    feed_memory_max_ids: int = Field(
        default=300, alias="FEED_MEMORY_MAX_IDS", ge=1, le=10_000
    )

    moderation_secret: str | None = Field(
        default=None,
        alias="MODERATION_SECRET",
        validation_alias=AliasChoices("MODERATION_SECRET", "SECURE_ACTION_SECRET"),
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("source_keys", mode="before")
    @classmethod
    def _parse_source_keys(cls, value: object) -> tuple[str, ...]:
        """Normalise source selections from environment values."""

        if value is None:
            return DEFAULT_SOURCE_KEYS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("SOURCES must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            slug = normalise_source_key(entry)
            if not slug:
                continue
            if slug not in BUILTIN_SOURCE_MAP:
                raise ValueError(f"Unknown source configured: {entry}")
            if slug not in cleaned:
                cleaned.append(slug)
        if not cleaned:
            return DEFAULT_SOURCE_KEYS
        return tuple(cleaned)

    @field_validator("search_terms", mode="before")
    @classmethod
    def _parse_search_terms(cls, value: object) -> tuple[str, ...]:
        if value is None:
            return DEFAULT_SEARCH_TERMS
        if isinstance(value, str):
            raw_values = value.split(",")
        elif isinstance(value, Iterable):
            raw_values = [str(part) for part in value]
        else:
            raise TypeError("REDDIT_SEARCH_TERMS must be a string or iterable")
        cleaned = tuple(term.strip() for term in raw_values if term.strip())
        return cleaned or DEFAULT_SEARCH_TERMS

    @property
    def source_definitions(self) -> tuple[SourceDefinition, ...]:
        """Return ordered source definitions for the selected keys."""

        return tuple(BUILTIN_SOURCE_MAP[key] for key in self.source_keys)

    @property
    def reddit_configured(self) -> bool:
        return bool(
            self.reddit_client_id
            and self.reddit_client_secret
            and self.reddit_refresh_token
        )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
