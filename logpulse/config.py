"""
Log Pulse - Service Configuration
=================================

Centralized configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # Service identification
    service_name: str = Field(
        default="log-pulse",
        description="Name of this service"
    )
    service_version: str = Field(
        default="0.1.0",
        description="Semantic version"
    )

    # Server configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8010)
    debug: bool = Field(default=False)

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Storage
    database_url: str = Field(
        default="sqlite:///./logpulse.db",
        description="SQLAlchemy URL of the backing store"
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging only)"
    )

    # Bulk import
    import_batch_size: int = Field(
        default=1000,
        ge=1,
        description="Session entries written per transaction"
    )
    index_batch_size: int = Field(
        default=500,
        ge=1,
        description="Error entries indexed per transaction when indexing a whole file"
    )

    # Live tailing
    tail_backfill_bytes: int = Field(
        default=50 * 1024,
        ge=0,
        description="Bytes read from the end of the file when a tail starts"
    )
    tail_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Re-check interval when no change notification arrives"
    )
    tail_read_chunk_bytes: int = Field(
        default=64 * 1024,
        ge=1,
        description="Largest read made per step while catching up on appended bytes"
    )
    tail_use_polling_observer: bool = Field(
        default=False,
        description="Use watchdog's PollingObserver instead of native notifications"
    )
    tail_event_buffer_size: int = Field(
        default=500,
        ge=1,
        description="Recent tail events retained per source for polling clients"
    )

    # Store retries
    store_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per batch write before an import fails"
    )
    store_retry_base_delay_seconds: float = Field(
        default=0.1,
        ge=0,
        description="Initial backoff between batch write attempts"
    )

    # Spike detection
    spike_threshold_multiplier: float = Field(
        default=3.0,
        gt=0,
        description="Recent/previous hour ratio above which an error is a spike"
    )

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
