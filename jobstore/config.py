"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobstore.constants import (
    DEFAULT_COLLECTION,
    DEFAULT_DATABASE,
    DEFAULT_POOL_SIZE,
    DEFAULT_REAPER_INTERVAL_SECONDS,
    DEFAULT_STORE_URI,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store
    store_uri: str = DEFAULT_STORE_URI
    store_database: str = DEFAULT_DATABASE
    store_collection: str = DEFAULT_COLLECTION
    store_pool_size: int = DEFAULT_POOL_SIZE

    # Reaper Configuration
    reaper_interval_seconds: float = DEFAULT_REAPER_INTERVAL_SECONDS

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "jobstore"
    tracing_enabled: bool = False
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class StoreConfig(BaseModel):
    """
    Immutable connection configuration for a job store.

    Built once, before the store is constructed. ``options`` are passed
    straight to ``create_async_engine`` after being merged over the
    defaults, so caller-supplied values win.
    """

    model_config = ConfigDict(frozen=True)

    uri: str = DEFAULT_STORE_URI
    database: str = DEFAULT_DATABASE
    collection: str = DEFAULT_COLLECTION
    options: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def build(
        cls,
        uri: str | None = None,
        database: str | None = None,
        collection: str | None = None,
        options: dict[str, Any] | None = None,
        settings: Settings | None = None,
    ) -> "StoreConfig":
        """
        Build a configuration from settings overlaid with explicit values.

        Args:
            uri: Store endpoint without the database part.
            database: Database name appended to the uri.
            collection: Table holding the job records.
            options: Engine options merged over the defaults.
            settings: Settings to read defaults from. Uses the cached
                application settings if not provided.

        Returns:
            The frozen configuration.
        """
        settings = settings or get_settings()
        defaults: dict[str, Any] = {
            "pool_size": settings.store_pool_size,
            # Disconnects are reported to the owner instead of silently
            # reconnecting and replaying work.
            "pool_pre_ping": False,
        }
        return cls(
            uri=uri or settings.store_uri,
            database=database or settings.store_database,
            collection=collection or settings.store_collection,
            options={**defaults, **(options or {})},
        )

    @property
    def url(self) -> str:
        """Full connection URL for the engine."""
        return f"{self.uri.rstrip('/')}/{self.database}"

    def engine_options(self) -> dict[str, Any]:
        """Get a copy of the engine options."""
        return dict(self.options)
