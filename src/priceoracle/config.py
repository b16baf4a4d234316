"""Configuration management using Pydantic Settings."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ledger gateway
    ledger_url: str = "http://localhost:9000"
    ledger_timeout_seconds: float = 10.0

    # Blob store transports, tried in order
    blob_aggregator_url: str | None = "https://aggregator.walrus-testnet.walrus.space"
    blob_publisher_url: str | None = "https://publisher.walrus-testnet.walrus.space"
    blob_dir: str | None = "~/.price-oracle/blobs"
    blob_timeout_seconds: float = 15.0
    blob_retry_attempts: int = 2

    # Attestation enclave
    attestation_enabled: bool = True
    attestation_url: str = "http://localhost:3000"
    attestation_timeout_seconds: float = 30.0
    attestation_sources: list[str] = ["myanimelist", "anilist"]
    attestation_max_age_seconds: int = 3600

    # Contribution index
    contribution_repository: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite:///./price-oracle.db"

    # Scheduler
    update_interval_seconds: float = 60.0
    commit_metrics: bool = False

    # Pricing tunables
    pricing_path: str = "pricing.yaml"

    # Live feed
    feed_host: str = "127.0.0.1"
    feed_port: int = 8765
    feed_queue_size: int = 16


settings = Settings()
