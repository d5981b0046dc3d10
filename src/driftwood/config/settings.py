"""
Runtime settings using Pydantic.

Provides environment-based configuration loading with DRIFTWOOD_ prefix.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ReplaceStrategy = Literal["delete_before_create", "create_before_destroy"]


class Settings(BaseSettings):
    """Runtime settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DRIFTWOOD_",
        extra="ignore",
    )

    # State
    state_path: str = "driftwood.state.json"

    # Execution
    parallelism: int = Field(default=10, ge=1)
    partial_failure_tolerance: bool = False
    replace_strategy: ReplaceStrategy = "delete_before_create"

    # Retries for idempotent provider calls
    max_attempts: int = Field(default=4, ge=1)
    backoff_multiplier: float = 1.0
    backoff_max: float = 30.0

    # Polling for asynchronously assigned attributes
    poll_interval: float = 5.0
    poll_timeout: float = 300.0
    poll_max_attempts: int = Field(default=60, ge=1)

    # Provider calls
    operation_timeout: float = 900.0
    http_timeout: float = 30.0

    # GCP
    gcp_access_token: str | None = None
    gcp_compute_url: str = "https://compute.googleapis.com/compute/v1"
    gcp_container_url: str = "https://container.googleapis.com/v1"
    gcp_storage_url: str = "https://storage.googleapis.com/storage/v1"
    gcp_iam_url: str = "https://iam.googleapis.com/v1"
    gcp_resource_manager_url: str = "https://cloudresourcemanager.googleapis.com/v1"

    # Logging
    log_level: str = "WARNING"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
