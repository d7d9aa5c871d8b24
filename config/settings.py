"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Read-through cache
    cache_default_ttl_seconds: float = 120.0
    cache_stale_threshold: float = 0.75
    cache_coalesce_timeout: Optional[float] = None

    # Prefetch warm-up
    prefetch_interval_seconds: float = 300.0

    # Playback event relay
    tracking_flush_interval_seconds: float = 30.0
    tracking_max_queue_size: int = 50
    tracking_min_span_seconds: float = 1.0
    tracking_offline_storage_path: Path = Path("./data/playback_events_offline_queue.json")

    # HTTP sink (None = no remote delivery configured)
    tracking_sink_url: Optional[str] = None
    tracking_beacon_url: Optional[str] = None
    tracking_request_timeout_seconds: float = 10.0

    # Ingest database
    database_url: str = "sqlite:///./signage_events.db"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
