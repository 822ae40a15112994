"""
Two-tier duplicate filter: a local memory set in front of a shared Redis set.
"""

import time
from typing import Any, Dict, Iterable, List, Optional

from ..crawler.models import Request
from .duplicate_filter import DuplicateFilter, MemoryDuplicateFilter
from .redis_duplicate_filter import RedisDuplicateFilter


class HybridDuplicateFilter(DuplicateFilter):
    """
    Checks the local tier first and falls through to Redis on a miss.

    A hit in either tier is a duplicate. Marks go to both tiers. Without a
    Redis filter, or with Redis disabled, this behaves as a memory filter.
    """

    def __init__(self, spider_name: str, redis_filter: Optional[RedisDuplicateFilter] = None,
                 use_redis: bool = True, exclude_params: Optional[Iterable[str]] = None,
                 memory_cache_size: Optional[int] = None):
        super().__init__(spider_name, exclude_params)
        self.memory_filter = MemoryDuplicateFilter(
            spider_name, exclude_params, max_size=memory_cache_size
        )
        self.redis_filter = redis_filter
        self._use_redis = use_redis and redis_filter is not None

        if use_redis and redis_filter is None:
            self.logger.warning(
                "Redis configuration not provided, falling back to memory-only deduplication"
            )

    @property
    def use_redis(self) -> bool:
        return self._use_redis

    def set_use_redis(self, enabled: bool):
        """Enable or disable the Redis tier at runtime."""
        if enabled and self.redis_filter is None:
            self.logger.warning("Cannot enable Redis tier: no Redis filter configured")
            return
        self._use_redis = enabled
        self.logger.info(f"Hybrid duplicate filter Redis tier {'enabled' if enabled else 'disabled'}")

    async def is_duplicate(self, request: Request) -> bool:
        started = time.perf_counter()
        fingerprint = self.fingerprint(request)
        duplicate = self.memory_filter.contains_fingerprint(fingerprint)
        if not duplicate and self._use_redis:
            duplicate = await self.redis_filter.contains_fingerprint(fingerprint)
        self._record_check(duplicate, started)
        return duplicate

    async def mark_as_processed(self, request: Request):
        await self.memory_filter.mark_as_processed(request)
        if self._use_redis:
            await self.redis_filter.mark_as_processed(request)
        self._record_processed()

    async def reserve(self, request: Request) -> bool:
        started = time.perf_counter()
        fingerprint = self.fingerprint(request)
        async with self.lock:
            if self.memory_filter.contains_fingerprint(fingerprint):
                self._record_check(True, started)
                return False
            self.memory_filter.add_fingerprint(fingerprint)

        is_new = True
        if self._use_redis:
            is_new = await self.redis_filter.reserve(request)
        if is_new:
            self._record_processed()
        self._record_check(not is_new, started)
        return is_new

    async def are_duplicates(self, requests: List[Request]) -> List[bool]:
        if not requests:
            return []
        started = time.perf_counter()
        results = [self.memory_filter.contains_fingerprint(self.fingerprint(r)) for r in requests]

        if self._use_redis:
            remaining = [i for i, duplicate in enumerate(results) if not duplicate]
            if remaining:
                remote = await self.redis_filter.are_duplicates([requests[i] for i in remaining])
                for index, duplicate in zip(remaining, remote):
                    results[index] = duplicate

        self._total_checked += len(requests)
        self._total_duplicates += sum(results)
        self._total_check_time += time.perf_counter() - started
        return results

    async def mark_batch_as_processed(self, requests: List[Request]):
        if not requests:
            return
        await self.memory_filter.mark_batch_as_processed(requests)
        if self._use_redis:
            await self.redis_filter.mark_batch_as_processed(requests)
        self._record_processed(len(requests))

    def _extra_stats(self) -> Dict[str, Any]:
        redis_processed = 0
        redis_available = False
        if self.redis_filter is not None:
            redis_processed = self.redis_filter.get_stats().total_processed
            redis_available = self.redis_filter.redis_manager.is_connected
        return {
            'type': 'hybrid',
            'memory_processed': self.memory_filter.get_stats().total_processed,
            'memory_usage': self.memory_filter.memory_usage,
            'redis_enabled': self._use_redis,
            'redis_available': redis_available,
            'redis_processed': redis_processed
        }

    async def clear(self):
        await self.memory_filter.clear()
        if self.redis_filter is not None:
            await self.redis_filter.clear()
        self._reset_counters()

    async def close(self):
        await self.memory_filter.close()
        if self.redis_filter is not None:
            await self.redis_filter.close()
