"""
Deduplication layer for the crawl engine.
"""

from .duplicate_filter import DuplicateFilter, DuplicateFilterStats, MemoryDuplicateFilter
from .redis_duplicate_filter import RedisDuplicateFilter
from .hybrid_duplicate_filter import HybridDuplicateFilter
from .filter_factory import DuplicateFilterType, create_duplicate_filter
from .redis_manager import RedisManager

__all__ = [
    'DuplicateFilter', 'DuplicateFilterStats', 'MemoryDuplicateFilter',
    'RedisDuplicateFilter', 'HybridDuplicateFilter',
    'DuplicateFilterType', 'create_duplicate_filter', 'RedisManager'
]
