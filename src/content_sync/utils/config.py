"""
Configuration loader for the content sync bridge.

This module provides configuration management with:
- Multiple configuration sources (files, dicts, env vars)
- Schema validation through pydantic
- Type coercion
- Configuration merging by priority
"""

import os
import json
import yaml
from pathlib import Path
from urllib.parse import quote
from typing import Optional, Dict, Any, List, Union, Mapping
import toml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("content-sync.config")


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class BrokerConfig(BaseModel):
    """Message broker connection settings."""
    host: str = "localhost"
    port: int = 5672
    user: str = "guest"
    password: str = "guest"
    vhost: str = "/"
    heartbeat: int = 60
    connect_timeout: float = 10.0
    operation_timeout: float = 10.0
    max_connect_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    backoff_jitter: float = 0.1
    reconnect_cooldown: float = 5.0

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate TCP port range."""
        if not 0 < v < 65536:
            raise ValueError(f"Invalid port: {v}")
        return v

    @field_validator('max_connect_attempts')
    @classmethod
    def validate_attempts(cls, v):
        if v < 1:
            raise ValueError("max_connect_attempts must be at least 1")
        return v

    @property
    def url(self) -> str:
        """AMQP URL built from the individual settings."""
        vhost = self.vhost[1:] if self.vhost.startswith("/") else self.vhost
        credentials = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        return f"amqp://{credentials}@{self.host}:{self.port}/{quote(vhost, safe='')}"


class QueueConfig(BaseModel):
    """Queue names used on both sync paths."""
    course_created: str = "course_created"
    course_updated: str = "course_updated"
    course_deleted: str = "course_deleted"
    challenge_created: str = "challenge_created"
    challenge_updated: str = "challenge_updated"
    challenge_deleted: str = "challenge_deleted"
    sync_requests: str = "sync_requests"
    sync_responses: str = "sync_responses"
    dead_letter: str = "sync_requests.dead"

    def all_queues(self) -> List[str]:
        """Every queue the service declares at startup."""
        return list(self.model_dump().values())


class TrackerConfig(BaseModel):
    """Operation tracker settings."""
    window_ms: int = 30_000

    @field_validator('window_ms')
    @classmethod
    def validate_window(cls, v):
        if v <= 0:
            raise ValueError("window_ms must be positive")
        return v


class ProcessorConfig(BaseModel):
    """Inbound command processor settings."""
    prefetch: int = 1
    max_parse_redeliveries: int = 5
    idempotency_ttl: float = 600.0
    idempotency_max_entries: int = 10_000
    parse_failure_max_entries: int = 1_000

    @field_validator('prefetch')
    @classmethod
    def validate_prefetch(cls, v):
        if v < 1:
            raise ValueError("prefetch must be at least 1")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    json_output: bool = False
    directory: Optional[Path] = None
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


class SyncConfig(BaseModel):
    """Main content sync configuration."""
    app_name: str = "content-sync"
    version: str = "0.1.0"

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    queues: QueueConfig = Field(default_factory=QueueConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(validate_assignment=True)


# Broker variables keep their conventional RabbitMQ names
BROKER_ENV_VARS = {
    "RABBITMQ_HOST": "host",
    "RABBITMQ_PORT": "port",
    "RABBITMQ_USER": "user",
    "RABBITMQ_PASS": "password",
    "RABBITMQ_VHOST": "vhost",
}

ENV_PREFIX = "CONTENT_SYNC_"


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        """
        Args:
            environ: Environment mapping, defaults to ``os.environ``
        """
        self._sources: List[ConfigSource] = []
        self._config: Optional[SyncConfig] = None
        self._environ = environ if environ is not None else os.environ

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

        # Lowest priority first so later merges win
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
        elif suffix == ".env" or path.name == ".env":
            return "env"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> SyncConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged, validated configuration
        """
        merged_data: Dict[str, Any] = {}

        for source in self._sources:
            data = self._load_source(source)
            merged_data = self._deep_merge(merged_data, data)

        merged_data = self._deep_merge(merged_data, self._load_env_vars(self._environ))

        try:
            self._config = SyncConfig(**merged_data)
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

        try:
            if source.source_type == "json":
                return json.loads(content)
            elif source.source_type == "yaml":
                return yaml.safe_load(content) or {}
            elif source.source_type == "toml":
                return toml.loads(content)
            elif source.source_type == "env":
                return self._load_env_vars(self._parse_env_file(content))
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Could not parse {source.path}: {e}") from e

        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    @staticmethod
    def _parse_env_file(content: str) -> Dict[str, str]:
        """Parse .env file format into a flat mapping."""
        result = {}

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            result[key.strip()] = value.strip().strip('"').strip("'")

        return result

    def _load_env_vars(self, environ: Mapping[str, str]) -> Dict[str, Any]:
        """
        Build a nested config dict from environment-style variables.

        ``RABBITMQ_*`` map onto the broker section; ``CONTENT_SYNC_<SECTION>__<KEY>``
        addresses any nested field.
        """
        result: Dict[str, Any] = {}

        for env_key, field_name in BROKER_ENV_VARS.items():
            if env_key in environ:
                result.setdefault("broker", {})[field_name] = environ[env_key]

        for key, value in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            parts = key[len(ENV_PREFIX):].lower().split("__")
            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = value

        return result

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> SyncConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SyncConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge
        environ: Environment mapping, defaults to ``os.environ``

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader(environ=environ)

    default_paths = [
        Path.home() / ".content-sync" / "config.yaml",
        Path("./content-sync.yaml"),
        Path("./content-sync.json"),
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
    'SyncConfig',
    'BrokerConfig',
    'QueueConfig',
    'TrackerConfig',
    'ProcessorConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
]
