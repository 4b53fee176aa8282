"""
Configuration management using Pydantic Settings.
Loads from environment variables and .env file.
"""

from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application configuration loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="CARTOGRAPHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Endpoint model
    max_observed_values: int = Field(
        default=20,
        ge=1,
        description="Maximum literal values remembered per parameter"
    )

    # Schema inference
    max_schema_samples: int = Field(
        default=50,
        ge=1,
        description="Maximum bodies sampled per endpoint template"
    )

    # Classifiers
    pattern_confidence_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Below this confidence a pattern is reported as a low-confidence guess"
    )
    backoff_initial_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="Initial delay of the default exponential backoff"
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Growth factor of the default exponential backoff"
    )
    backoff_max_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound for any recommended delay"
    )

    # Output
    spec_title: str = Field(default="Discovered API", description="OpenAPI info.title")
    spec_format: Literal["json", "yaml"] = Field(
        default="yaml",
        description="Default serialization for exported specs"
    )

    # Persistence
    database_path: str = Field(
        default="./data/cartographer.db",
        description="SQLite database path for spec versions"
    )

    # Server
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON log lines")


# Global settings instance
settings = Settings()
