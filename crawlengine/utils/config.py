"""
Configuration management for the crawl engine.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field, fields, asdict

from ..crawler.exceptions import ConfigurationError

DEFAULT_USER_AGENT = 'CrawlEngine/0.1.0'

FILTER_TYPES = ('memory', 'redis', 'hybrid')


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys that are not fields of the given dataclass."""
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        logging.getLogger(__name__).warning(
            f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}"
        )
    return {k: v for k, v in data.items() if k in names}


@dataclass
class RedisConfig:
    """Configuration for the Redis duplicate store."""
    host: str = 'localhost'
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    connection_timeout: float = 5.0
    operation_timeout: float = 3.0
    max_connections: int = 10
    ssl: bool = False
    retry_on_failure: bool = True
    max_retries: int = 3

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RedisConfig':
        return cls(**_known_fields(cls, data))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data['password']:
            data['password'] = '***'
        return data


@dataclass
class DuplicateFilterConfig:
    """Configuration for URL deduplication."""
    enabled: bool = True
    type: str = 'memory'
    use_redis: bool = True
    memory_cache_size: int = 100000
    redis_ttl: int = 7 * 24 * 3600
    exclude_params: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DuplicateFilterConfig':
        return cls(**_known_fields(cls, data))


@dataclass
class EngineConfig:
    """Configuration for engine behavior."""
    max_concurrent_requests: int = 16
    request_delay: float = 0.0
    enable_retry: bool = True
    max_retries: int = 3
    retry_delay: float = 1.0
    obey_robots_txt: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    enable_deduplication: bool = False
    duplicate_filter: DuplicateFilterConfig = field(default_factory=DuplicateFilterConfig)
    redis: Optional[RedisConfig] = None
    download_timeout: float = 30.0
    download_retries: int = 0
    download_retry_delay: float = 1.0
    download_interval: float = 0.0
    download_interval_max: Optional[float] = None
    default_headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EngineConfig':
        data = dict(data)
        filter_data = data.pop('duplicate_filter', None) or {}
        redis_data = data.pop('redis', None)
        return cls(
            duplicate_filter=DuplicateFilterConfig.from_dict(filter_data),
            redis=RedisConfig.from_dict(redis_data) if redis_data is not None else None,
            **_known_fields(cls, data)
        )


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = 'INFO'
    file: str = 'logs/crawlengine.log'
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        return cls(
            engine=EngineConfig.from_dict(data.get('engine') or {}),
            logging=LoggingConfig(**_known_fields(LoggingConfig, data.get('logging') or {})),
            monitoring=MonitoringConfig(**_known_fields(MonitoringConfig, data.get('monitoring') or {}))
        )


def validate_engine_config(config: EngineConfig):
    """Validate engine configuration values."""
    if config.max_concurrent_requests < 1:
        raise ConfigurationError("max_concurrent_requests must be at least 1")

    if config.request_delay < 0:
        raise ConfigurationError("request_delay must be non-negative")

    if config.max_retries < 0 or config.download_retries < 0:
        raise ConfigurationError("retry counts must be non-negative")

    if config.retry_delay < 0 or config.download_retry_delay < 0:
        raise ConfigurationError("retry delays must be non-negative")

    if config.download_timeout <= 0:
        raise ConfigurationError("download_timeout must be positive")

    if config.download_interval < 0:
        raise ConfigurationError("download_interval must be non-negative")

    if (config.download_interval_max is not None and
            config.download_interval_max < config.download_interval):
        raise ConfigurationError("download_interval_max must not be below download_interval")

    # Validate filter type
    if str(config.duplicate_filter.type).lower() not in FILTER_TYPES:
        raise ConfigurationError(
            f"Duplicate filter type must be one of {', '.join(FILTER_TYPES)}, "
            f"got '{config.duplicate_filter.type}'"
        )

    if (config.enable_deduplication and str(config.duplicate_filter.type).lower() == 'redis'
            and config.redis is None):
        raise ConfigurationError("Redis duplicate filter requires a redis section")


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            try:
                config_data = yaml.safe_load(file) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {self.config_path}", cause=e) from e

        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        try:
            self._config = Config.from_dict(config_data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration in {self.config_path}", cause=e) from e

        self._validate_config()
        return self._config

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ConfigurationError("Configuration not loaded")

        validate_engine_config(self._config.engine)

        if self._config.monitoring.prometheus_port < 1:
            raise ConfigurationError("prometheus_port must be positive")

        logging.getLogger(__name__).info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self._config


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
