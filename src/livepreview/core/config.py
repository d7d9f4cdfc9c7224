"""
Configuration management for Live Preview
"""

import os
import sys
from pathlib import Path
from typing import Optional, Dict, Any, Union
from dataclasses import dataclass, field

import yaml

from ..exceptions.base import ConfigurationError


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class PreviewConfig:
    """Live Preview Configuration"""

    # Preview server
    port: int = field(default_factory=lambda: int(os.getenv("LIVE_PREVIEW_PORT", "8000")))
    host: str = field(default_factory=lambda: os.getenv("LIVE_PREVIEW_HOST", "localhost"))
    runtime: str = field(default_factory=lambda: os.getenv("LIVE_PREVIEW_RUNTIME", sys.executable))

    # Reload behaviour
    auto_reload: bool = field(default_factory=lambda: _env_bool("LIVE_PREVIEW_AUTO_RELOAD", "true"))
    debounce_ms: int = field(default_factory=lambda: int(os.getenv("LIVE_PREVIEW_DEBOUNCE_MS", "500")))

    # Project root detection
    max_root_depth: int = field(default_factory=lambda: int(os.getenv("LIVE_PREVIEW_MAX_DEPTH", "10")))

    # Process lifecycle
    startup_timeout: float = field(default_factory=lambda: float(os.getenv("LIVE_PREVIEW_STARTUP_TIMEOUT", "5.0")))
    stop_grace_period: float = field(default_factory=lambda: float(os.getenv("LIVE_PREVIEW_STOP_GRACE", "0.5")))

    # Health checks
    health_check_interval: float = field(default_factory=lambda: float(os.getenv("LIVE_PREVIEW_HEALTH_INTERVAL", "10")))
    health_check_timeout: float = field(default_factory=lambda: float(os.getenv("LIVE_PREVIEW_HEALTH_TIMEOUT", "3")))

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LIVE_PREVIEW_LOG_LEVEL", "INFO"))
    debug_mode: bool = field(default_factory=lambda: _env_bool("LIVE_PREVIEW_DEBUG", "false"))

    def __post_init__(self):
        """Validate configuration after initialization"""
        if self.port <= 0 or self.port > 65535:
            raise ConfigurationError("port must be between 1 and 65535", "port")
        if self.debounce_ms < 0:
            raise ConfigurationError("debounce_ms must be non-negative", "debounce_ms")
        if self.max_root_depth < 0:
            raise ConfigurationError("max_root_depth must be non-negative", "max_root_depth")
        if self.startup_timeout <= 0:
            raise ConfigurationError("startup_timeout must be positive", "startup_timeout")
        if self.stop_grace_period < 0:
            raise ConfigurationError("stop_grace_period must be non-negative", "stop_grace_period")
        if self.health_check_interval <= 0:
            raise ConfigurationError("health_check_interval must be positive", "health_check_interval")
        if self.health_check_timeout <= 0:
            raise ConfigurationError("health_check_timeout must be positive", "health_check_timeout")
        if not self.runtime:
            raise ConfigurationError("runtime must name a Python interpreter", "runtime")

    @classmethod
    def from_env(cls, **overrides) -> "PreviewConfig":
        """Create configuration from environment variables with optional overrides"""
        config = cls()

        for key, value in overrides.items():
            if not hasattr(config, key):
                raise ConfigurationError(f"Unknown configuration key: {key}", key)

        if overrides:
            return config.update(**overrides)
        return config

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "PreviewConfig":
        """Create configuration from dictionary"""
        unknown = set(config_dict) - set(cls.__dataclass_fields__)
        if unknown:
            key = sorted(unknown)[0]
            raise ConfigurationError(f"Unknown configuration key: {key}", key)
        return cls(**config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PreviewConfig":
        """Create configuration from a YAML file with a ``livepreview`` section"""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")

        section = data.get("livepreview", {})
        if not isinstance(section, dict):
            raise ConfigurationError("'livepreview' section must be a mapping", "livepreview")

        return cls.from_env(**section)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            field.name: getattr(self, field.name)
            for field in self.__dataclass_fields__.values()
        }

    def update(self, **updates) -> "PreviewConfig":
        """Create new configuration with updates"""
        config_dict = self.to_dict()
        config_dict.update(updates)
        return self.from_dict(config_dict)

    @property
    def preview_base_url(self) -> str:
        """Base URL of the preview server without trailing slash"""
        return f"http://{self.host}:{self.port}"

    def get(self, key: str, default=None):
        """Get configuration value by key with optional default"""
        return getattr(self, key, default)


class ConfigManager:
    """Global configuration manager"""

    _instance: Optional[PreviewConfig] = None

    @classmethod
    def get_config(cls) -> PreviewConfig:
        """Get global configuration instance"""
        if cls._instance is None:
            cls._instance = PreviewConfig.from_env()
        return cls._instance

    @classmethod
    def set_config(cls, config: PreviewConfig) -> None:
        """Set global configuration instance"""
        cls._instance = config

    @classmethod
    def reset_config(cls) -> None:
        """Reset configuration to default"""
        cls._instance = None


def get_config() -> PreviewConfig:
    """Get the global Live Preview configuration"""
    return ConfigManager.get_config()


def set_config(config: PreviewConfig) -> None:
    """Set the global Live Preview configuration"""
    ConfigManager.set_config(config)
