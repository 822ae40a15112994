"""
Construction of duplicate filters from configuration.
"""

import logging
from enum import Enum
from typing import Optional, Union

from ..crawler.exceptions import ConfigurationError
from ..utils.config import DuplicateFilterConfig, RedisConfig
from .duplicate_filter import DuplicateFilter, MemoryDuplicateFilter
from .hybrid_duplicate_filter import HybridDuplicateFilter
from .redis_duplicate_filter import RedisDuplicateFilter
from .redis_manager import RedisManager

logger = logging.getLogger(__name__)


class DuplicateFilterType(Enum):
    """Duplicate filter backends."""
    MEMORY = 'memory'
    REDIS = 'redis'
    HYBRID = 'hybrid'

    @classmethod
    def parse(cls, value: Union[str, 'DuplicateFilterType']) -> 'DuplicateFilterType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = ', '.join(t.value for t in cls)
            raise ConfigurationError(
                f"Unknown duplicate filter type '{value}', expected one of: {valid}"
            ) from None


def create_duplicate_filter(spider_name: str,
                            config: Optional[DuplicateFilterConfig] = None,
                            redis_config: Optional[RedisConfig] = None,
                            redis_manager: Optional[RedisManager] = None) -> DuplicateFilter:
    """
    Create a duplicate filter for a spider.

    Args:
        spider_name: Namespace for fingerprints and the Redis key
        config: Filter configuration (defaults to a memory filter)
        redis_config: Redis connection settings for redis/hybrid filters
        redis_manager: Pre-built Redis manager, takes precedence over redis_config

    Returns:
        DuplicateFilter instance

    Raises:
        ConfigurationError: Unknown type, or a redis filter without Redis settings
    """
    config = config or DuplicateFilterConfig()
    filter_type = DuplicateFilterType.parse(config.type)

    needs_redis = (filter_type == DuplicateFilterType.REDIS or
                   (filter_type == DuplicateFilterType.HYBRID and config.use_redis))
    if redis_manager is None and redis_config is not None and needs_redis:
        redis_manager = RedisManager(redis_config)

    if filter_type == DuplicateFilterType.MEMORY:
        duplicate_filter = MemoryDuplicateFilter(
            spider_name,
            exclude_params=config.exclude_params,
            max_size=config.memory_cache_size
        )

    elif filter_type == DuplicateFilterType.REDIS:
        if redis_manager is None:
            raise ConfigurationError("Redis configuration is required for the redis duplicate filter")
        duplicate_filter = RedisDuplicateFilter(
            spider_name,
            redis_manager,
            ttl=config.redis_ttl,
            exclude_params=config.exclude_params
        )

    else:
        redis_filter = None
        if redis_manager is not None and config.use_redis:
            redis_filter = RedisDuplicateFilter(
                spider_name,
                redis_manager,
                ttl=config.redis_ttl,
                exclude_params=config.exclude_params
            )
        duplicate_filter = HybridDuplicateFilter(
            spider_name,
            redis_filter=redis_filter,
            use_redis=config.use_redis,
            exclude_params=config.exclude_params,
            memory_cache_size=config.memory_cache_size
        )

    logger.info(f"Created {filter_type.value} duplicate filter for spider '{spider_name}'")
    return duplicate_filter
