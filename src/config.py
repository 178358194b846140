"""Application configuration loaded from environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All configuration is loaded from ``CONTEXTER_*`` environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Contexter"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | production

    # --- Context server ---
    server_url: str | None = None  # e.g. https://context.example.com
    device_id: str | None = None  # overrides the id generated in data.json
    device_secret: str | None = None
    request_timeout_seconds: float = 30.0

    # --- End-to-end encryption ---
    encryption_key: str | None = None  # passphrase; unset = upload plaintext

    # --- Local state ---
    data_dir: Path = Path.home() / ".contexter"
    screenshots_dir: Path | None = None  # folder watched by the screenshots service

    # --- Control API (localhost only) ---
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    model_config = SettingsConfigDict(
        env_prefix="CONTEXTER_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def store_path(self) -> Path:
        return self.data_dir / "data.json"


@lru_cache
def get_settings() -> Settings:
    return Settings()
