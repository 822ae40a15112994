"""
Utility modules for the crawl engine.
"""

from .config import (
    Config, ConfigManager, EngineConfig, DuplicateFilterConfig, RedisConfig,
    load_config, get_config
)

__all__ = [
    'Config', 'ConfigManager', 'EngineConfig', 'DuplicateFilterConfig', 'RedisConfig',
    'load_config', 'get_config'
]
