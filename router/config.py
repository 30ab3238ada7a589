"""Router configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """HTTP service settings (ROUTER_ prefix). Hub settings use HUB_."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTER_",
        env_file=".env",
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = 5001  # 5000 is often used by AirPlay on macOS
    debug: bool = False
    event_queue_size: int = 100  # buffered signals per /events client


config = Config()
