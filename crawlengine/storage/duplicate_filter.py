"""
Request deduplication filters.

All variants share one interface and key requests by URL fingerprint,
namespaced by spider name.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from ..crawler.models import Request
from .fingerprint import generate_for_spider

BYTES_PER_FINGERPRINT = 50


@dataclass
class DuplicateFilterStats:
    """Snapshot of duplicate filter counters."""
    total_checked: int = 0
    total_duplicates: int = 0
    total_processed: int = 0
    duplicate_rate: float = 0.0
    average_check_time: float = 0.0
    last_reset_time: float = field(default_factory=time.time)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_checked': self.total_checked,
            'total_duplicates': self.total_duplicates,
            'total_processed': self.total_processed,
            'duplicate_rate': self.duplicate_rate,
            'average_check_time_ms': self.average_check_time * 1000,
            'last_reset_time': self.last_reset_time,
            **self.extra
        }


class DuplicateFilter(ABC):
    """Base class for duplicate filters."""

    def __init__(self, spider_name: str, exclude_params: Optional[Iterable[str]] = None):
        self.spider_name = spider_name
        self.exclude_params = list(exclude_params) if exclude_params else None
        self.logger = logging.getLogger(self.__class__.__module__)
        self._lock: Optional[asyncio.Lock] = None
        self._reset_counters()

    @property
    def lock(self) -> asyncio.Lock:
        """Lock guarding reserve, created inside the running event loop on first use."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _reset_counters(self):
        self._total_checked = 0
        self._total_duplicates = 0
        self._total_processed = 0
        self._total_check_time = 0.0
        self._last_reset_time = time.time()

    def fingerprint(self, request: Request) -> str:
        """Fingerprint of a request within this filter's namespace."""
        return generate_for_spider(request.url, self.spider_name, self.exclude_params)

    def _record_check(self, duplicate: bool, started: float, count: int = 1):
        self._total_checked += count
        if duplicate:
            self._total_duplicates += 1
        self._total_check_time += time.perf_counter() - started

    def _record_processed(self, count: int = 1):
        self._total_processed += count

    @abstractmethod
    async def is_duplicate(self, request: Request) -> bool:
        """Check whether a request was already processed."""

    @abstractmethod
    async def mark_as_processed(self, request: Request):
        """Record a request as processed."""

    @abstractmethod
    async def reserve(self, request: Request) -> bool:
        """
        Atomically check and mark a request.

        Returns:
            True if the request was new and is now marked, False if it was a duplicate
        """

    async def are_duplicates(self, requests: List[Request]) -> List[bool]:
        return [await self.is_duplicate(request) for request in requests]

    async def mark_batch_as_processed(self, requests: List[Request]):
        for request in requests:
            await self.mark_as_processed(request)

    def _extra_stats(self) -> Dict[str, Any]:
        return {}

    def get_stats(self) -> DuplicateFilterStats:
        """Get duplicate filter statistics."""
        checked = self._total_checked
        return DuplicateFilterStats(
            total_checked=checked,
            total_duplicates=self._total_duplicates,
            total_processed=self._total_processed,
            duplicate_rate=self._total_duplicates / checked if checked else 0.0,
            average_check_time=self._total_check_time / checked if checked else 0.0,
            last_reset_time=self._last_reset_time,
            extra=self._extra_stats()
        )

    @abstractmethod
    async def clear(self):
        """Forget every processed request and reset statistics."""

    async def close(self):
        """Release resources held by the filter."""


class MemoryDuplicateFilter(DuplicateFilter):
    """In-process fingerprint set. Nothing survives a restart."""

    def __init__(self, spider_name: str, exclude_params: Optional[Iterable[str]] = None,
                 max_size: Optional[int] = None):
        super().__init__(spider_name, exclude_params)
        self.max_size = max_size
        self._fingerprints: Set[str] = set()
        self._size_warning_logged = False

    def _add(self, fingerprint: str):
        self._fingerprints.add(fingerprint)
        self._record_processed()
        if (self.max_size and len(self._fingerprints) > self.max_size
                and not self._size_warning_logged):
            self.logger.warning(
                f"Memory duplicate filter for {self.spider_name} holds "
                f"{len(self._fingerprints)} fingerprints (configured size {self.max_size})"
            )
            self._size_warning_logged = True

    async def is_duplicate(self, request: Request) -> bool:
        started = time.perf_counter()
        duplicate = self.fingerprint(request) in self._fingerprints
        self._record_check(duplicate, started)
        return duplicate

    async def mark_as_processed(self, request: Request):
        self._add(self.fingerprint(request))

    async def reserve(self, request: Request) -> bool:
        fingerprint = self.fingerprint(request)
        async with self.lock:
            started = time.perf_counter()
            duplicate = fingerprint in self._fingerprints
            if not duplicate:
                self._add(fingerprint)
            self._record_check(duplicate, started)
        return not duplicate

    def contains_fingerprint(self, fingerprint: str) -> bool:
        return fingerprint in self._fingerprints

    def add_fingerprint(self, fingerprint: str):
        self._add(fingerprint)

    @property
    def processed_count(self) -> int:
        return len(self._fingerprints)

    @property
    def memory_usage(self) -> int:
        """Rough memory estimate in bytes."""
        return len(self._fingerprints) * BYTES_PER_FINGERPRINT

    def _extra_stats(self) -> Dict[str, Any]:
        return {
            'type': 'memory',
            'processed_count': self.processed_count,
            'memory_usage': self.memory_usage
        }

    async def clear(self):
        self._fingerprints.clear()
        self._size_warning_logged = False
        self._reset_counters()
        self.logger.info(f"Memory duplicate filter cleared for {self.spider_name}")

    async def close(self):
        self._fingerprints.clear()
