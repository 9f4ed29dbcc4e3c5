"""
Server Settings

Process-level settings for the API server, read from ``PANELFORGE_*``
environment variables and ``.env``. Generation behavior lives in the JSON
configuration that ``config_path`` points at.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from panelforge.core.config import PanelforgeConfig, load_config


class ServerSettings(BaseSettings):
    """API server settings."""

    host: Optional[str] = Field(default=None)
    port: Optional[int] = Field(default=None)
    reload: bool = Field(default=False)
    log_level: Literal["critical", "error", "warning", "info", "debug"] = Field(default="warning")

    config_path: Optional[Path] = Field(default=None)
    state_dir: Optional[Path] = Field(default=None)
    cors_origins: Optional[List[str]] = Field(default=None)
    rate_limit_enabled: Optional[bool] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="PANELFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def apply(self, config: PanelforgeConfig) -> PanelforgeConfig:
        """Overlay the settings that were given onto a loaded configuration."""
        if self.host is not None:
            config.server.host = self.host
        if self.port is not None:
            config.server.port = self.port
        if self.cors_origins is not None:
            config.server.cors_origins = list(self.cors_origins)
        if self.rate_limit_enabled is not None:
            config.server.rate_limit_enabled = self.rate_limit_enabled
        if self.state_dir is not None:
            config.storage.state_dir = self.state_dir
        return config

    def load_config(self) -> PanelforgeConfig:
        return self.apply(load_config(self.config_path))


@lru_cache()
def get_settings() -> ServerSettings:
    """Get cached settings instance."""
    return ServerSettings()
