"""
Configuration management for the biostream pipeline.
Loads settings from environment variables.
"""

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "biostream"
    app_version: str = "0.1.0"
    env: Literal["development", "staging", "production"] = "development"
    debug: bool = True

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_allow_origins: list[str] = ["*"]
    cors_allow_credentials: bool = False

    # Ingestion
    max_channels: int = 16
    adc_bits: Optional[int] = None  # explicit bit-depth; inferred when unset
    sampling_rate: Optional[int] = None  # supplied by the connection layer

    # Batching / buffering
    buffer_capacity: int = 2048  # samples per channel
    queue_capacity: int = 5000
    queue_drop_fraction: float = 0.2
    tick_interval: float = 1.0 / 60.0  # seconds
    snapshot_interval: float = 0.2  # seconds
    snapshot_size: int = 512
    output_stream_capacity: int = 1024
    sequence_modulus: int = 1_000_000
    counter_report_interval: float = 5.0  # seconds

    # Spectral analysis
    bandpower_sample_rate: int = 500
    bandpower_fft_size: int = 256
    bandpower_smoother_window: int = 128
    welch_overlap: float = 0.5
    mains_frequency: float = 50.0  # Hz
    mains_notch_radius: float = 1.0  # Hz
    fft_cache_size: int = 8

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env == "production"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get settings instance.
    Useful for dependency injection in FastAPI.
    """
    return settings
