"""Configuration management for the MCP Hub.

Supports a YAML configuration file and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HubSettings(BaseSettings):
    """Listener and session lifecycle configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    # Session lifecycle
    session_idle_timeout_seconds: int = Field(default=3600, ge=0, description="0 disables idle sweeping")
    sweep_interval_seconds: int = Field(default=60, gt=0)
    stream_keepalive_seconds: float = Field(default=15.0, gt=0)

    # Access control
    acl_cache_ttl_seconds: float = Field(default=60.0, ge=0)

    # Audit
    enable_audit: bool = Field(default=True)
    audit_log_path: str = Field(default="logs/audit.log")

    data_dir: str = Field(default="data")

    model_config = SettingsConfigDict(
        env_prefix="MCP_HUB_",
        env_file=".env",
        extra="ignore"
    )


class SpotifySettings(BaseSettings):
    """Spotify provider configuration."""
    enabled: bool = Field(default=True)
    client_id: Optional[str] = Field(default=None)
    client_secret: Optional[str] = Field(default=None)
    redirect_uri: str = Field(default="http://127.0.0.1:3000/spotify/callback")
    acl_path: Optional[str] = Field(default=None, description="Identity directory override")

    model_config = SettingsConfigDict(
        env_prefix="SPOTIFY_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class ImageGenSettings(BaseSettings):
    """Image generation provider configuration."""
    enabled: bool = Field(default=True)
    api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("IMAGEGEN_API_KEY", "HUGGINGFACE_API_KEY", "api_key"),
    )
    model_url: str = Field(
        default="https://router.huggingface.co/hf-inference/models/black-forest-labs/FLUX.1-schnell"
    )
    default_width: int = Field(default=1024, gt=0)
    default_height: int = Field(default=1024, gt=0)
    timeout_seconds: float = Field(default=120.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="IMAGEGEN_",
        env_file=".env",
        extra="ignore"
    )


class N8nSettings(BaseSettings):
    """Workflow automation proxy configuration."""
    enabled: bool = Field(default=True)
    mcp_url: Optional[str] = Field(default=None, description="Upstream n8n MCP endpoint")
    api_key: Optional[str] = Field(default=None)
    timeout_seconds: float = Field(default=60.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="N8N_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    hub: HubSettings = Field(default_factory=HubSettings)
    spotify: SpotifySettings = Field(default_factory=SpotifySettings)
    image_gen: ImageGenSettings = Field(default_factory=ImageGenSettings)
    n8n: N8nSettings = Field(default_factory=N8nSettings)

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))

    def acl_path(self, provider_name: str, override: Optional[str] = None) -> str:
        """Identity directory location for a provider."""
        if override:
            return override
        return str(Path(self.hub.data_dir) / f"{provider_name}-acl.json")


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("MCP_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
