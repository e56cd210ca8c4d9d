"""
Configuration loader for the usage analytics service.

This module provides configuration management with:
- Multiple configuration sources (dicts, JSON, YAML, TOML and .env files)
- Priority-ordered merging
- Environment variable overrides
- Schema validation through pydantic
"""

import os
import json
import asyncio
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

import yaml
import toml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError, error_messages


logger = get_logger("usage-analytics.config")

ENV_PREFIX = "USAGE_ANALYTICS_"


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
    json_format: bool = True
    directory: Optional[Path] = None
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


class StorageConfig(BaseModel):
    """Durable event storage configuration."""
    backend: str = "sqlite"
    path: Path = Field(default_factory=lambda: Path("./data/analytics.db"))
    memory_max_size: int = 10000

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        if v not in ("sqlite", "memory"):
            raise ValueError(f"Unknown storage backend: {v}")
        return v


class CacheConfig(BaseModel):
    """Shared cache store configuration."""
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        if v not in ("redis", "memory"):
            raise ValueError(f"Unknown cache backend: {v}")
        return v


class IngestionConfig(BaseModel):
    """Ingestion pipeline configuration."""
    rate_limit_per_minute: int = Field(default=1000, gt=0)
    max_batch_size: int = Field(default=100, gt=0)
    buffer_size: int = Field(default=500, gt=0)
    enable_geo_enrichment: bool = True


class AggregationConfig(BaseModel):
    """Aggregation engine configuration."""
    cache_prefix: str = "analytics:dashboard"
    ttl_overrides: Dict[str, int] = Field(default_factory=dict)
    default_retention_days: List[int] = Field(default_factory=lambda: [1, 7, 14, 30])


class CostConfig(BaseModel):
    """Cost monitor configuration."""
    ttl_days: int = 90


class ExportConfig(BaseModel):
    """Export job pipeline configuration."""
    max_concurrent_exports: int = Field(default=5, gt=0)
    max_file_size: int = 100 * 1024 * 1024  # 100MB
    max_rows: int = 1_000_000
    retention_days: int = 7
    storage_prefix: str = "analytics-exports/"
    download_url_expiry_hours: int = 24
    object_store: str = "local"
    local_root: Path = Field(default_factory=lambda: Path("./data/exports"))
    base_url: str = "http://localhost:8080/downloads"
    signing_secret: str = "change-me"
    drain_timeout_seconds: float = Field(default=20, gt=0)


class ApiConfig(BaseModel):
    """HTTP boundary configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    api_keys: Dict[str, str] = Field(default_factory=dict)


class AnalyticsConfig(BaseModel):
    """Top-level service configuration."""
    app_name: str = "usage-analytics"
    version: str = "0.1.0"
    debug: bool = False

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    costs: CostConfig = Field(default_factory=CostConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[AnalyticsConfig] = None
        self._lock = asyncio.Lock()

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
            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type or self._detect_source_type(path)
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
        elif suffix == ".env":
            return "env"
        raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> AnalyticsConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration
        """
        async with self._lock:
            merged_data: Dict[str, Any] = {}

            for source in self._sources:
                data = self._load_source(source)
                merged_data = self._deep_merge(merged_data, data)

            merged_data = self._deep_merge(merged_data, self._load_env_vars(os.environ))

            try:
                self._config = AnalyticsConfig(**merged_data)
            except ValidationError as e:
                raise ConfigurationError(
                    f"Configuration validation failed: {error_messages(e.errors())}"
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
                return self._parse_env_lines(
                    line.split("=", 1) for line in content.splitlines()
                    if "=" in line and not line.strip().startswith("#")
                )
        except (ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Cannot parse {source.path}: {e}") from e

        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _load_env_vars(self, environ) -> Dict[str, Any]:
        """Load overrides such as ``USAGE_ANALYTICS_EXPORT__MAX_ROWS=10``."""
        return self._parse_env_lines(
            (key, value) for key, value in environ.items()
            if key.startswith(self.env_prefix)
        )

    def _parse_env_lines(self, pairs) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in pairs:
            key = key.strip()
            if key.startswith(self.env_prefix):
                key = key[len(self.env_prefix):]
            parts = [p for p in key.lower().split("__") if p]
            if not parts:
                continue

            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._convert_value(value.strip().strip('"').strip("'"))
        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            pass

        if value.startswith("[") or value.startswith("{"):
            try:
                return json.loads(value)
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

    def get_config(self) -> AnalyticsConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


async def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> AnalyticsConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge last

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader()

    default_paths = [
        Path("/etc/usage-analytics/config.yaml"),
        Path.home() / ".usage-analytics" / "config.yaml",
        Path("./usage-analytics.yaml"),
        Path("./usage-analytics.toml"),
    ]
    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    for i, path in enumerate(config_paths or []):
        loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return await loader.load()


__all__ = [
    'AnalyticsConfig',
    'LoggingConfig',
    'StorageConfig',
    'CacheConfig',
    'IngestionConfig',
    'AggregationConfig',
    'CostConfig',
    'ExportConfig',
    'ApiConfig',
    'ConfigLoader',
    'load_config',
]
