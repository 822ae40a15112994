"""
Duplicate filter backed by a Redis set shared across crawler processes.
"""

import time
from typing import Any, Dict, Iterable, List, Optional

from redis.exceptions import RedisError

from ..crawler.models import Request
from .duplicate_filter import DuplicateFilter
from .redis_manager import RedisManager

DEFAULT_TTL = 7 * 24 * 3600
KEY_TEMPLATE = "crawlengine:duplicates:{spider}:fingerprints"


class RedisDuplicateFilter(DuplicateFilter):
    """
    Stores fingerprints in ``crawlengine:duplicates:<spider>:fingerprints``.

    Every operation is a round trip. When Redis is unreachable checks report
    "not a duplicate" and marks are skipped.
    """

    def __init__(self, spider_name: str, redis_manager: RedisManager,
                 ttl: int = DEFAULT_TTL, exclude_params: Optional[Iterable[str]] = None):
        super().__init__(spider_name, exclude_params)
        self.redis_manager = redis_manager
        self.ttl = ttl
        self.key = KEY_TEMPLATE.format(spider=spider_name)
        self._redis_errors = 0

    def _on_error(self, operation: str, error: Exception):
        self._redis_errors += 1
        self.redis_manager.mark_unavailable(error)
        self.logger.warning(f"Redis {operation} failed for {self.key}: {error}")

    async def is_duplicate(self, request: Request) -> bool:
        started = time.perf_counter()
        duplicate = await self.contains_fingerprint(self.fingerprint(request))
        self._record_check(duplicate, started)
        return duplicate

    async def contains_fingerprint(self, fingerprint: str) -> bool:
        client = await self.redis_manager.get_client()
        if client is None:
            return False
        try:
            return bool(await client.sismember(self.key, fingerprint))
        except (RedisError, OSError) as e:
            self._on_error('SISMEMBER', e)
            return False

    async def mark_as_processed(self, request: Request):
        await self.add_fingerprints([self.fingerprint(request)])

    async def add_fingerprints(self, fingerprints: List[str]) -> int:
        """Add fingerprints and refresh the key TTL. Returns how many were new."""
        if not fingerprints:
            return 0
        client = await self.redis_manager.get_client()
        if client is None:
            self.logger.warning(f"Redis unavailable, skipping mark of {len(fingerprints)} fingerprints")
            return 0
        try:
            added = await client.sadd(self.key, *fingerprints)
            await client.expire(self.key, self.ttl)
        except (RedisError, OSError) as e:
            self._on_error('SADD', e)
            return 0
        self._record_processed(len(fingerprints))
        return int(added)

    async def reserve(self, request: Request) -> bool:
        started = time.perf_counter()
        fingerprint = self.fingerprint(request)
        client = await self.redis_manager.get_client()
        if client is None:
            self._record_check(False, started)
            return True
        try:
            added = await client.sadd(self.key, fingerprint)
            if added:
                await client.expire(self.key, self.ttl)
        except (RedisError, OSError) as e:
            self._on_error('SADD', e)
            self._record_check(False, started)
            return True
        duplicate = not added
        if not duplicate:
            self._record_processed()
        self._record_check(duplicate, started)
        return not duplicate

    async def are_duplicates(self, requests: List[Request]) -> List[bool]:
        if not requests:
            return []
        started = time.perf_counter()
        fingerprints = [self.fingerprint(request) for request in requests]
        client = await self.redis_manager.get_client()
        results = [False] * len(requests)
        if client is not None:
            try:
                async with client.pipeline(transaction=False) as pipe:
                    for fingerprint in fingerprints:
                        pipe.sismember(self.key, fingerprint)
                    results = [bool(r) for r in await pipe.execute()]
            except (RedisError, OSError) as e:
                self._on_error('pipeline SISMEMBER', e)
        self._total_checked += len(requests)
        self._total_duplicates += sum(results)
        self._total_check_time += time.perf_counter() - started
        return results

    async def mark_batch_as_processed(self, requests: List[Request]):
        await self.add_fingerprints([self.fingerprint(request) for request in requests])

    async def count(self) -> int:
        """Number of fingerprints stored for this spider."""
        client = await self.redis_manager.get_client()
        if client is None:
            return 0
        try:
            return int(await client.scard(self.key))
        except (RedisError, OSError) as e:
            self._on_error('SCARD', e)
            return 0

    def _extra_stats(self) -> Dict[str, Any]:
        return {
            'type': 'redis',
            'redis_key': self.key,
            'redis_ttl': self.ttl,
            'redis_available': self.redis_manager.is_connected,
            'redis_errors': self._redis_errors
        }

    async def clear(self):
        client = await self.redis_manager.get_client()
        if client is not None:
            try:
                await client.delete(self.key)
            except (RedisError, OSError) as e:
                self._on_error('DEL', e)
        self._reset_counters()
        self.logger.info(f"Redis duplicate filter cleared for {self.spider_name}")

    async def close(self):
        await self.redis_manager.close()
