"""Configuration loading and validation tests."""

import pytest

from crawlengine.crawler.exceptions import ConfigurationError
from crawlengine.utils.config import (
    Config,
    ConfigManager,
    EngineConfig,
    RedisConfig,
    load_config,
    validate_engine_config,
)

FULL_CONFIG = """
engine:
  max_concurrent_requests: 8
  obey_robots_txt: false
  enable_deduplication: true
  duplicate_filter:
    type: hybrid
    memory_cache_size: 500
    exclude_params: [session]
  redis:
    host: redis.internal
    password: secret
logging:
  level: DEBUG
  json: true
monitoring:
  prometheus_port: 9100
  metrics_enabled: true
"""


def write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


def test_load_full_config(tmp_path):
    config = ConfigManager(write(tmp_path, FULL_CONFIG)).load_config()

    assert config.engine.max_concurrent_requests == 8
    assert not config.engine.obey_robots_txt
    assert config.engine.duplicate_filter.type == "hybrid"
    assert config.engine.duplicate_filter.memory_cache_size == 500
    assert config.engine.duplicate_filter.exclude_params == ["session"]
    assert config.engine.redis.host == "redis.internal"
    assert config.engine.redis.port == 6379
    assert config.logging.level == "DEBUG"
    assert config.logging.json
    assert config.monitoring.prometheus_port == 9100


def test_empty_file_gives_defaults(tmp_path):
    config = ConfigManager(write(tmp_path, "")).load_config()

    assert config.engine == EngineConfig()
    assert config.engine.redis is None


def test_unknown_keys_are_ignored(tmp_path):
    config = ConfigManager(write(tmp_path, "engine:\n  max_concurrent_requests: 2\n  warp_speed: 9\n")).load_config()

    assert config.engine.max_concurrent_requests == 2


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        ConfigManager("/nonexistent/config.yaml").load_config()


def test_invalid_yaml(tmp_path):
    with pytest.raises(ConfigurationError):
        ConfigManager(write(tmp_path, "engine: [unclosed")).load_config()


def test_non_mapping_root(tmp_path):
    with pytest.raises(ConfigurationError):
        ConfigManager(write(tmp_path, "- a\n- b\n")).load_config()


def test_invalid_values_rejected(tmp_path):
    with pytest.raises(ConfigurationError):
        ConfigManager(write(tmp_path, "engine:\n  max_concurrent_requests: 0\n")).load_config()


def test_config_property_requires_load():
    with pytest.raises(ConfigurationError):
        ConfigManager("config.yaml").config


def test_load_config_sets_global(tmp_path):
    config = load_config(write(tmp_path, "monitoring:\n  prometheus_port: 9200\n"))

    assert isinstance(config, Config)
    assert config.monitoring.prometheus_port == 9200


@pytest.mark.parametrize("overrides", [
    {"request_delay": -1},
    {"max_retries": -1},
    {"download_timeout": 0},
    {"download_interval": 1.0, "download_interval_max": 0.5},
    {"enable_deduplication": True, "duplicate_filter": {"type": "redis"}},
    {"duplicate_filter": {"type": "bloom"}},
])
def test_validate_engine_config_rejects(overrides):
    config = EngineConfig.from_dict(overrides)

    with pytest.raises(ConfigurationError):
        validate_engine_config(config)


def test_validate_engine_config_accepts_defaults():
    validate_engine_config(EngineConfig())


def test_redis_to_dict_masks_password():
    assert RedisConfig(password="secret").to_dict()["password"] == "***"
    assert RedisConfig().to_dict()["password"] is None
