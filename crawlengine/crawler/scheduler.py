"""
Request scheduler: priority queues with a per-crawl seen-set.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Deque, Dict, Optional, Set

from .models import Request


class Scheduler(ABC):
    """Holds pending requests until the engine dispatches them."""

    @abstractmethod
    async def enqueue(self, request: Request) -> bool:
        """
        Add a request.

        Returns:
            False if the request was dropped as an already seen duplicate
        """

    @abstractmethod
    async def dequeue(self) -> Optional[Request]:
        """Pop the next request, or None when nothing is pending."""

    @abstractmethod
    def is_empty(self) -> bool:
        pass

    @abstractmethod
    def length(self) -> int:
        pass

    @abstractmethod
    async def clear(self):
        pass

    @abstractmethod
    def has_seen(self, request: Request) -> bool:
        pass

    async def close(self):
        await self.clear()

    def __len__(self) -> int:
        return self.length()


class MemoryScheduler(Scheduler):
    """
    In-memory scheduler.

    Higher priority is dequeued first, FIFO within a priority. Lower
    priorities can starve while higher ones keep receiving work.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.queues: Dict[int, Deque[Request]] = defaultdict(deque)
        self.seen: Set[str] = set()
        self._size = 0

        self.stats = {
            'total_enqueued': 0,
            'total_dequeued': 0,
            'duplicates_dropped': 0
        }

    async def enqueue(self, request: Request) -> bool:
        if not request.dont_filter:
            key = request.scheduler_key
            if key in self.seen:
                self.stats['duplicates_dropped'] += 1
                self.logger.debug(f"Dropping already seen request: {request.url}")
                return False
            self.seen.add(key)

        self.queues[request.priority].append(request)
        self._size += 1
        self.stats['total_enqueued'] += 1
        return True

    async def dequeue(self) -> Optional[Request]:
        for priority in sorted(self.queues, reverse=True):
            queue = self.queues[priority]
            if queue:
                request = queue.popleft()
                if not queue:
                    del self.queues[priority]
                self._size -= 1
                self.stats['total_dequeued'] += 1
                return request
        return None

    def is_empty(self) -> bool:
        return self._size == 0

    def length(self) -> int:
        return self._size

    def has_seen(self, request: Request) -> bool:
        return request.scheduler_key in self.seen

    async def clear(self):
        self.queues.clear()
        self.seen.clear()
        self._size = 0

    def get_stats(self) -> Dict[str, int]:
        """Get scheduler statistics."""
        return {
            **self.stats,
            'queued': self._size,
            'priorities': len(self.queues),
            'seen': len(self.seen)
        }
