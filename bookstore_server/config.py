"""Configuration for the bookstore cart server."""

import threading
from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings, read from BOOKSTORE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BOOKSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Store API
    api_base_url: str = Field("https://localhost:7275/api", description="Bookstore REST API root")
    request_timeout: float = Field(30.0, gt=0, description="Per-request timeout in seconds")
    verify_ssl: bool = Field(True, description="Verify the API's TLS certificate")

    # Authentication
    session_file: Optional[str] = Field(None, description="Session file path")
    email: Optional[str] = None
    password: Optional[str] = None

    # Cart behaviour
    shipping_fee: Decimal = Field(Decimal("35"), ge=0, description="Flat shipping for non-empty carts")
    refresh_after_failures: int = Field(
        3, ge=0, description="Consecutive failed mutations before the cart is re-fetched (0 disables)"
    )

    # Server
    log_level: str = Field("INFO")
    host: str = Field("0.0.0.0")
    port: int = Field(8000)


_settings_instance: Optional[Settings] = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings_instance
    if _settings_instance is None:
        with _settings_lock:
            if _settings_instance is None:
                _settings_instance = Settings()
    return _settings_instance


def reset_settings() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    global _settings_instance
    with _settings_lock:
        _settings_instance = None
