"""Configuration management with environment variable overrides."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HubSettings(BaseSettings):
    """
    Configuration for the backend hub.

    All settings can be overridden via environment variables with HUB_ prefix.
    Example: HUB_LOCAL_ADDRESS=http://127.0.0.1:11434 to point at Ollama directly.
    """
    model_config = SettingsConfigDict(
        env_prefix="HUB_",
        env_file=".env",
        extra="ignore",
    )

    # Fixed backends
    cloud_address: str = Field(
        default="https://api.observer-ai.com:443",
        description="Base URL of the metered cloud backend",
    )
    quota_url: str = Field(
        default="https://api.observer-ai.com/quota",
        description="Quota endpoint of the cloud backend",
    )
    local_address: str = Field(
        default="http://localhost:3838",
        description="Base URL of the local inference daemon",
    )
    local_catalog_path: str = Field(
        default="/api/tags",
        description="Local daemon path listing installed models",
    )
    local_enabled: bool = Field(default=True, description="Enable the local backend at startup")

    # Timeouts (in seconds)
    probe_timeout: float = Field(
        default=2.5,
        description="Upper bound for a single health probe",
    )
    local_catalog_timeout: float = Field(
        default=1.0,
        description="Timeout for the local installed-models check",
    )
    catalog_timeout: float = Field(
        default=10.0,
        description="Timeout for listing models on one backend",
    )
    connect_timeout: float = Field(
        default=10.0,
        description="Connect timeout for completions (no read timeout)",
    )
    health_interval: float = Field(
        default=30.0,
        description="Interval between background health sweeps, 0 disables",
    )

    # Persistence
    state_file: Path | None = Field(
        default_factory=lambda: Path.home() / ".local/share/inference-hub/state.json",
        description="JSON file holding custom backends and cached quota",
    )


_settings: HubSettings | None = None


def get_settings() -> HubSettings:
    """Get hub settings."""
    global _settings
    if _settings is None:
        _settings = HubSettings()
    return _settings
