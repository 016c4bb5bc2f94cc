"""
Configuration loader for statesync.

This module provides configuration management with:
- Multiple configuration sources (dicts, JSON/YAML/TOML/.env files, env vars)
- Schema validation through pydantic
- Type coercion
- Priority-based merging
"""

import os
import re
import json
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

import toml
import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("statesync.config")

ENV_PREFIX = "STATESYNC_"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Optional[Path] = None
    console: bool = True
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class RegistryConfig(BaseModel):
    """Registry configuration."""
    name_pattern: Optional[str] = None

    @field_validator('name_pattern')
    @classmethod
    def validate_pattern(cls, v):
        """Ensure the pattern compiles."""
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid name pattern: {e}")
        return v


class SyncMode(str, Enum):
    """Synchronization direction."""
    ONE_WAY = "one_way"
    TWO_WAY = "two_way"


class SyncConfig(BaseModel):
    """State synchronization configuration."""
    mode: SyncMode = SyncMode.ONE_WAY
    origin_id: Optional[str] = None
    default_channel: str = "statesync"
    answer_requests: bool = True


class TransportConfig(BaseModel):
    """Channel transport configuration."""
    kind: str = "memory"
    url: Optional[str] = None
    connect_timeout: float = 10.0
    heartbeat_interval: float = 30.0
    exclude_sender: bool = False

    @field_validator('kind')
    @classmethod
    def validate_kind(cls, v):
        """Validate transport kind."""
        if v not in ("memory", "websocket"):
            raise ValueError(f"Unknown transport kind: {v}")
        return v


class StateSyncConfig(BaseModel):
    """Main statesync configuration."""
    app_name: str = "statesync"
    debug: bool = False

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        """Initialize configuration loader."""
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[StateSyncConfig] = None

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        elif suffix == ".env":
            return "env"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> StateSyncConfig:
        """
        Load configuration from all sources.

        Sources are merged lowest priority first, so higher priorities win.
        Environment variables are applied last.

        Returns:
            Merged configuration
        """
        merged_data: Dict[str, Any] = {}

        for source in self._sources:
            try:
                data = self._load_source(source)
            except ConfigurationError:
                raise
            except Exception as e:
                raise ConfigurationError(
                    f"Failed to load config source {source.path or 'dict'}: {e}",
                    cause=e
                ) from e
            merged_data = self._deep_merge(merged_data, data)

        merged_data = self._deep_merge(merged_data, self._load_env_vars())

        try:
            self._config = StateSyncConfig(**merged_data)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"])
                errors.append(f"{field}: {error['msg']}")

            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}"
            ) from e

        logger.info("configuration_loaded", sources=len(self._sources))
        return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        if source.source_type == "json":
            return json.loads(content)
        elif source.source_type == "yaml":
            return yaml.safe_load(content) or {}
        elif source.source_type == "toml":
            return toml.loads(content)
        elif source.source_type == "env":
            return self._parse_env_file(content)
        else:
            raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _parse_env_file(self, content: str) -> Dict[str, Any]:
        """Parse .env file format (SECTION__KEY=value)."""
        result: Dict[str, Any] = {}

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue

            key, value = line.split("=", 1)
            key = key.strip()
            if key.startswith(self.env_prefix):
                key = key[len(self.env_prefix):]
            self._assign_nested(
                result, key, self._convert_value(value.strip().strip('"').strip("'"))
            )

        return result

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from STATESYNC_* environment variables.

        Nested fields use a double underscore, e.g. STATESYNC_SYNC__ORIGIN_ID.
        """
        result: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if key.startswith(self.env_prefix):
                self._assign_nested(
                    result, key[len(self.env_prefix):], self._convert_value(value)
                )

        return result

    @staticmethod
    def _assign_nested(target: Dict[str, Any], key: str, value: Any) -> None:
        parts = key.lower().split("__")
        current = target
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> StateSyncConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> StateSyncConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader()

    default_paths = [
        Path.home() / ".statesync" / "config.yaml",
        Path("./statesync.yaml"),
        Path("./statesync.toml"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return loader.load()


__all__ = [
    'StateSyncConfig',
    'LoggingConfig',
    'RegistryConfig',
    'SyncConfig',
    'SyncMode',
    'TransportConfig',
    'ConfigLoader',
    'load_config',
]
