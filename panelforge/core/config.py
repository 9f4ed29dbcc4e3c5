"""
Panelforge Configuration Management

Centralized configuration system with JSON loading and validation.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import ConfigurationError, InvalidConfigError
from .constants import (
    DEFAULT_RECORD_CAPACITY,
    DEFAULT_RETRY_DELAY,
    GEMINI_BASE_URL,
    GEMINI_IMAGE_MODEL,
    GEMINI_TEXT_MODEL,
    GENERATION_RATE_LIMIT,
    MAX_CHARACTERS,
    MAX_PANELS,
    MAX_STORY_WORDS,
    MIN_PANELS,
    PROJECT_NAME,
    VERSION,
    XAI_BASE_URL,
    XAI_IMAGE_MODEL,
    XAI_TEXT_MODEL,
)

DEFAULT_CONFIG_PATH = Path("config/panelforge_config.json")


@dataclass
class ProviderConfig:
    """Configuration for one generation provider."""
    name: str
    api_key_env: str  # Environment variable name for API key
    base_url: str
    text_model: str
    image_model: str
    fallback_key_envs: List[str] = field(default_factory=list)
    temperature: float = 0.7
    timeout: int = 120

    @classmethod
    def from_dict(cls, data: dict) -> 'ProviderConfig':
        """Create ProviderConfig from dictionary."""
        try:
            return cls(
                name=data['name'],
                api_key_env=data['api_key_env'],
                base_url=data['base_url'],
                text_model=data['text_model'],
                image_model=data['image_model'],
                fallback_key_envs=list(data.get('fallback_key_envs', [])),
                temperature=data.get('temperature', 0.7),
                timeout=data.get('timeout', 120)
            )
        except KeyError as e:
            raise InvalidConfigError(f"Provider config missing field: {e}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'api_key_env': self.api_key_env,
            'base_url': self.base_url,
            'text_model': self.text_model,
            'image_model': self.image_model,
            'fallback_key_envs': list(self.fallback_key_envs),
            'temperature': self.temperature,
            'timeout': self.timeout,
        }


def default_primary_provider() -> ProviderConfig:
    return ProviderConfig(
        name="gemini",
        api_key_env="GOOGLE_AI_API_KEY",
        fallback_key_envs=["GEMINI_API_KEY", "GOOGLE_API_KEY"],
        base_url=GEMINI_BASE_URL,
        text_model=GEMINI_TEXT_MODEL,
        image_model=GEMINI_IMAGE_MODEL,
    )


def default_fallback_provider() -> ProviderConfig:
    return ProviderConfig(
        name="grok",
        api_key_env="XAI_API_KEY",
        fallback_key_envs=["GROK_API_KEY"],
        base_url=XAI_BASE_URL,
        text_model=XAI_TEXT_MODEL,
        image_model=XAI_IMAGE_MODEL,
    )


@dataclass
class AdapterConfig:
    """Retry and fallback behavior of the provider call adapter."""
    retry_delay: float = DEFAULT_RETRY_DELAY
    fallback_enabled: bool = True
    # Drop reference images that cannot be re-encoded for the fallback
    # instead of failing the fallback attempt.
    drop_unencodable_attachments: bool = True


@dataclass
class PipelineConfig:
    """Pipeline configuration settings."""
    max_story_words: int = MAX_STORY_WORDS
    max_characters: int = MAX_CHARACTERS
    min_panels: int = MIN_PANELS
    max_panels: int = MAX_PANELS


@dataclass
class StorageConfig:
    """Persistence configuration settings."""
    state_dir: Path = field(default_factory=lambda: Path("data/state"))
    record_capacity: int = DEFAULT_RECORD_CAPACITY


@dataclass
class ServerConfig:
    """HTTP server configuration settings."""
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )
    rate_limit: str = GENERATION_RATE_LIMIT
    rate_limit_enabled: bool = True


@dataclass
class PanelforgeConfig:
    """Main configuration class for Panelforge."""

    project_name: str = PROJECT_NAME
    version: str = VERSION

    primary_provider: ProviderConfig = field(default_factory=default_primary_provider)
    fallback_provider: Optional[ProviderConfig] = field(default_factory=default_fallback_provider)

    adapter: AdapterConfig = field(default_factory=AdapterConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    verbose_logging: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'PanelforgeConfig':
        """Create PanelforgeConfig from dictionary."""
        config = cls()

        config.project_name = data.get('project_name', config.project_name)
        config.version = data.get('version', config.version)
        config.verbose_logging = data.get('verbose_logging', config.verbose_logging)

        providers = data.get('providers', {})
        if 'primary' in providers:
            config.primary_provider = ProviderConfig.from_dict(providers['primary'])
        if 'fallback' in providers:
            fallback = providers['fallback']
            config.fallback_provider = ProviderConfig.from_dict(fallback) if fallback else None

        if 'adapter' in data:
            adapter_data = data['adapter']
            config.adapter = AdapterConfig(
                retry_delay=float(adapter_data.get('retry_delay', DEFAULT_RETRY_DELAY)),
                fallback_enabled=adapter_data.get('fallback_enabled', True),
                drop_unencodable_attachments=adapter_data.get('drop_unencodable_attachments', True)
            )
            if config.adapter.retry_delay < 0:
                raise InvalidConfigError("adapter.retry_delay must not be negative")

        if 'pipeline' in data:
            pipe_data = data['pipeline']
            config.pipeline = PipelineConfig(
                max_story_words=pipe_data.get('max_story_words', MAX_STORY_WORDS),
                max_characters=pipe_data.get('max_characters', MAX_CHARACTERS),
                min_panels=pipe_data.get('min_panels', MIN_PANELS),
                max_panels=pipe_data.get('max_panels', MAX_PANELS)
            )
            if config.pipeline.min_panels > config.pipeline.max_panels:
                raise InvalidConfigError("pipeline.min_panels exceeds pipeline.max_panels")

        if 'storage' in data:
            storage_data = data['storage']
            config.storage = StorageConfig(
                state_dir=Path(storage_data.get('state_dir', 'data/state')),
                record_capacity=storage_data.get('record_capacity', DEFAULT_RECORD_CAPACITY)
            )

        if 'server' in data:
            server_data = data['server']
            defaults = ServerConfig()
            config.server = ServerConfig(
                host=server_data.get('host', defaults.host),
                port=server_data.get('port', defaults.port),
                cors_origins=server_data.get('cors_origins', defaults.cors_origins),
                rate_limit=server_data.get('rate_limit', defaults.rate_limit),
                rate_limit_enabled=server_data.get('rate_limit_enabled', True)
            )

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a JSON-serializable dictionary."""
        return {
            'project_name': self.project_name,
            'version': self.version,
            'verbose_logging': self.verbose_logging,
            'providers': {
                'primary': self.primary_provider.to_dict(),
                'fallback': self.fallback_provider.to_dict() if self.fallback_provider else None,
            },
            'adapter': {
                'retry_delay': self.adapter.retry_delay,
                'fallback_enabled': self.adapter.fallback_enabled,
                'drop_unencodable_attachments': self.adapter.drop_unencodable_attachments,
            },
            'pipeline': {
                'max_story_words': self.pipeline.max_story_words,
                'max_characters': self.pipeline.max_characters,
                'min_panels': self.pipeline.min_panels,
                'max_panels': self.pipeline.max_panels,
            },
            'storage': {
                'state_dir': str(self.storage.state_dir),
                'record_capacity': self.storage.record_capacity,
            },
            'server': {
                'host': self.server.host,
                'port': self.server.port,
                'cors_origins': list(self.server.cors_origins),
                'rate_limit': self.server.rate_limit,
                'rate_limit_enabled': self.server.rate_limit_enabled,
            },
        }


def get_default_config() -> PanelforgeConfig:
    """Get a configuration populated with defaults."""
    return PanelforgeConfig()


def load_config(config_path: Path = None) -> PanelforgeConfig:
    """
    Load configuration from JSON file.

    Args:
        config_path: Path to configuration file. If None, uses default.

    Returns:
        Loaded PanelforgeConfig instance
    """
    config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        # Return default config if file doesn't exist
        return PanelforgeConfig()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f"Invalid JSON in config file: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to load config: {e}")
    return PanelforgeConfig.from_dict(data)


def save_config(config: PanelforgeConfig, config_path: Path = None) -> None:
    """Write configuration to a JSON file."""
    config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config.to_dict(), indent=2), encoding='utf-8')


# Global config instance
_config: Optional[PanelforgeConfig] = None


def get_config() -> PanelforgeConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: PanelforgeConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
