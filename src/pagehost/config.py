"""Runtime configuration."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TUNNEL_COMMAND = ("lt", "--port", "{port}", "--subdomain", "{name}")


class Settings(BaseSettings):
    """Settings read from ``PAGEHOST_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(env_prefix="PAGEHOST_", env_file=".env", extra="ignore")

    api_host: str = "0.0.0.0"
    api_port: int = 3001
    bind_host: str = "127.0.0.1"
    public_host: str = "localhost"
    projects_dir: Path = Path(".pagehost/projects")
    entry_document: str = "index.html"

    port_floor: int = Field(default=3003, ge=1, le=65535)
    port_ceiling: int = Field(default=65535, ge=1, le=65535)
    max_port_attempts: int = Field(default=1000, ge=1)
    bind_retries: int = Field(default=10, ge=1)
    server_start_timeout: float = 5.0

    tunnel_enabled: bool = True
    tunnel_command: list[str] = Field(default_factory=lambda: list(DEFAULT_TUNNEL_COMMAND))
    tunnel_fallback_url: str = "https://{name}.loca.lt"
    tunnel_timeout: float = 15.0
    tunnel_attempts: int = Field(default=2, ge=1)
    tunnel_retry_delay: float = 5.0

    shutdown_timeout: float = 10.0
    log_level: str = "INFO"

    @field_validator("entry_document")
    @classmethod
    def _lowercase_entry(cls, value: str) -> str:
        return value.strip().lower()


@lru_cache
def get_settings() -> Settings:
    return Settings()
