"""
Crawl engine that coordinates scheduling, downloading, parsing and item processing.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .exceptions import EngineStateError, PipelineError, RetryRequest, SpiderError
from .fetcher import Downloader, create_downloader
from .middleware import MiddlewareManager
from .models import GenericItem, Item, Request, Response, SpiderOutput
from .pipeline import PipelineManager
from .robots import RobotsChecker
from .scheduler import MemoryScheduler, Scheduler
from .spider import Spider
from ..storage.duplicate_filter import DuplicateFilter
from ..storage.filter_factory import create_duplicate_filter
from ..utils.config import EngineConfig, validate_engine_config
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlMonitor

StatsListener = Callable[[Dict[str, Any]], None]
ItemListener = Callable[[Item], None]


class EngineState(Enum):
    """Engine lifecycle states."""
    IDLE = 'idle'
    STARTING = 'starting'
    RUNNING = 'running'
    PAUSED = 'paused'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    ERROR = 'error'


@dataclass
class SpiderStats:
    """Counters for one crawl. Rates and runtime are derived."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retried_requests: int = 0
    duplicate_requests: int = 0
    robots_blocked_requests: int = 0
    offsite_requests: int = 0
    total_items: int = 0
    failed_items: int = 0
    total_pages: int = 0
    total_request_time: float = 0.0
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def runtime(self) -> float:
        if self.start_time is None:
            return 0.0
        return (self.end_time or time.time()) - self.start_time

    @property
    def success_rate(self) -> float:
        return self.successful_requests / self.total_requests if self.total_requests else 0.0

    @property
    def failure_rate(self) -> float:
        return self.failed_requests / self.total_requests if self.total_requests else 0.0

    @property
    def average_request_time(self) -> float:
        return self.total_request_time / self.total_requests if self.total_requests else 0.0

    def reset(self):
        """Zero every counter and timestamp."""
        for name, value in SpiderStats().__dict__.items():
            setattr(self, name, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_requests': self.total_requests,
            'successful_requests': self.successful_requests,
            'failed_requests': self.failed_requests,
            'retried_requests': self.retried_requests,
            'duplicate_requests': self.duplicate_requests,
            'robots_blocked_requests': self.robots_blocked_requests,
            'offsite_requests': self.offsite_requests,
            'total_items': self.total_items,
            'failed_items': self.failed_items,
            'total_pages': self.total_pages,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'runtime_ms': int(self.runtime * 1000),
            'success_rate': self.success_rate,
            'failure_rate': self.failure_rate,
            'average_request_time_ms': self.average_request_time * 1000
        }


class Engine:
    """
    Drives a spider's crawl.

    A single loop pulls requests from the scheduler and hands each one to a
    worker task, with at most ``max_concurrent`` workers in flight. The
    crawl ends on its own once the scheduler is empty and no worker is
    running, or when ``stop`` is called.
    """

    def __init__(self, spider: Spider, config: Optional[EngineConfig] = None,
                 scheduler: Optional[Scheduler] = None,
                 downloader: Optional[Downloader] = None,
                 middleware: Optional[MiddlewareManager] = None,
                 pipeline: Optional[PipelineManager] = None,
                 duplicate_filter: Optional[DuplicateFilter] = None,
                 robots_checker: Optional[RobotsChecker] = None,
                 monitor: Optional[CrawlMonitor] = None):
        self.spider = spider
        self.config = config or EngineConfig()
        validate_engine_config(self.config)
        self.logger = get_crawler_logger(__name__, spider=spider.name)

        # Components
        self.scheduler = scheduler or MemoryScheduler()
        self.downloader = downloader or create_downloader(self.config)
        self.middleware = middleware or MiddlewareManager()
        self.pipeline = pipeline or PipelineManager()
        self.monitor = monitor
        self.duplicate_filter = duplicate_filter
        self.robots_checker = robots_checker
        self._owns_filter = duplicate_filter is None
        self._owns_robots = robots_checker is None

        # Spider settings override engine settings when set
        self.max_concurrent = spider.concurrent_requests or self.config.max_concurrent_requests
        self.request_delay = (self.config.request_delay if spider.download_delay is None
                              else spider.download_delay)
        self.obey_robots = (self.config.obey_robots_txt if spider.obey_robots_txt is None
                            else spider.obey_robots_txt)
        filter_config = spider.duplicate_filter or self.config.duplicate_filter
        dedup_enabled = (self.config.enable_deduplication if spider.enable_deduplication is None
                         else spider.enable_deduplication)
        self.dedup_enabled = (dedup_enabled and filter_config.enabled) or duplicate_filter is not None
        self._filter_config = filter_config

        # Crawl state
        self.state = EngineState.IDLE
        self.stats = SpiderStats()
        self._stats_listeners: List[StatsListener] = []
        self._item_listeners: List[ItemListener] = []
        self._main_task: Optional[asyncio.Task] = None
        self._workers: Set[asyncio.Task] = set()
        self._in_flight = 0
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._activity: Optional[asyncio.Event] = None
        self._resumed: Optional[asyncio.Event] = None
        self._cleaned_up = True

    # Lifecycle

    def _set_state(self, state: EngineState):
        if state != self.state:
            self.logger.debug(f"Engine state {self.state.value} -> {state.value}")
            self.state = state

    @property
    def is_active(self) -> bool:
        return self.state in (EngineState.RUNNING, EngineState.PAUSED)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _build_owned_components(self):
        if self.dedup_enabled and self._owns_filter:
            self.duplicate_filter = create_duplicate_filter(
                self.spider.name,
                self._filter_config,
                redis_config=self.spider.redis_config or self.config.redis
            )
        if self.obey_robots and self._owns_robots:
            self.robots_checker = RobotsChecker(self.config.user_agent)

    async def start(self):
        """
        Open the spider and pipelines, schedule the seed requests and start
        the crawl loop in the background.

        Raises:
            EngineStateError: if the engine is not idle or stopped
        """
        if self.state not in (EngineState.IDLE, EngineState.STOPPED):
            raise EngineStateError(f"Cannot start engine in state '{self.state.value}'")

        self._set_state(EngineState.STARTING)
        self.stats.reset()
        self.stats.start_time = time.time()
        self._cleaned_up = False
        self._in_flight = 0
        self._workers = set()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._activity = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()

        try:
            self._build_owned_components()

            try:
                await self.spider.open()
            except Exception as e:
                raise SpiderError(f"Failed to open spider {self.spider.name}", cause=e) from e

            await self.pipeline.open()

            seeded = 0
            for request in self.spider.start_requests():
                if await self._schedule(request):
                    seeded += 1

        except Exception as e:
            self._set_state(EngineState.ERROR)
            self.logger.error(f"Engine failed to start: {e}")
            self.stats.end_time = time.time()
            await self._cleanup('error')
            raise

        self.logger.info(
            f"Engine started with {seeded} seed requests, "
            f"concurrency={self.max_concurrent}, robots={self.obey_robots}, dedup={self.dedup_enabled}"
        )
        self._set_state(EngineState.RUNNING)
        self._main_task = asyncio.create_task(self._run_loop())

    async def run(self, timeout: Optional[float] = None) -> SpiderStats:
        """Start the crawl and wait until it finishes."""
        await self.start()
        return await self.wait_for_completion(timeout)

    async def wait_for_completion(self, timeout: Optional[float] = None) -> SpiderStats:
        """
        Wait for the crawl loop to finish.

        Args:
            timeout: Seconds to wait before stopping the engine (None waits forever)

        Returns:
            Final crawl statistics
        """
        task = self._main_task
        if task is None:
            return self.stats
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Crawl did not finish within {timeout}s, stopping")
            await self.stop()
        return self.stats

    async def pause(self):
        """Stop dispatching new requests. In-flight requests keep running."""
        if self.state == EngineState.RUNNING:
            self._resumed.clear()
            self._set_state(EngineState.PAUSED)
            self.logger.info("Engine paused")

    async def resume(self):
        if self.state == EngineState.PAUSED:
            self._set_state(EngineState.RUNNING)
            self._resumed.set()
            self._activity.set()
            self.logger.info("Engine resumed")

    async def stop(self):
        """
        Stop dispatching, let in-flight requests finish and release resources.

        Safe to call more than once and from any state.
        """
        if self.state in (EngineState.RUNNING, EngineState.PAUSED):
            self.logger.info("Stopping engine...")
            self._set_state(EngineState.STOPPING)
            self._resumed.set()
            self._activity.set()

        task = self._main_task
        current = asyncio.current_task()
        if task is None or task.done() or current is task or current in self._workers:
            return
        await asyncio.shield(task)

    # Crawl loop

    async def _run_loop(self):
        try:
            while self.state in (EngineState.RUNNING, EngineState.PAUSED):
                if self.state == EngineState.PAUSED:
                    await self._resumed.wait()
                    continue

                await self._semaphore.acquire()
                if self.state != EngineState.RUNNING:
                    self._semaphore.release()
                    continue

                self._activity.clear()
                request = await self.scheduler.dequeue()

                if request is None:
                    self._semaphore.release()
                    if self._in_flight == 0 and not self._activity.is_set():
                        self.logger.info("No pending or in-flight requests, crawl finished")
                        break
                    await self._activity.wait()
                    continue

                self._in_flight += 1
                worker = asyncio.create_task(self._process_request(request))
                self._workers.add(worker)
                worker.add_done_callback(self._workers.discard)
                self._publish_gauges()

                if self.request_delay > 0:
                    await asyncio.sleep(self.request_delay)

        except Exception as e:
            self.logger.error(f"Crawl loop failed: {e}", exc_info=True)
            self._set_state(EngineState.ERROR)
        finally:
            await self._finish()

    async def _finish(self):
        if self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)

        failed = self.state == EngineState.ERROR
        if not failed:
            self._set_state(EngineState.STOPPING)
        self.stats.end_time = time.time()
        await self._cleanup('error' if failed else 'finished')
        if not failed:
            self._set_state(EngineState.STOPPED)

        self._publish_stats()
        self._log_final_stats()

    async def _cleanup(self, reason: str):
        """Close every component exactly once."""
        if self._cleaned_up:
            return
        self._cleaned_up = True

        closers = [
            ('scheduler', self.scheduler.close),
            ('downloader', self.downloader.close),
            ('middleware', self.middleware.close),
            ('pipeline', self.pipeline.close),
            ('spider', lambda: self.spider.close(reason)),
        ]
        if self.duplicate_filter is not None:
            closers.append(('duplicate filter', self.duplicate_filter.close))
        if self.robots_checker is not None:
            closers.append(('robots checker', self.robots_checker.close))

        for name, close in closers:
            try:
                await close()
            except Exception as e:
                self.logger.error(f"Error closing {name}: {e}")

        self.logger.info("Engine resources released")

    # Per-request processing

    async def _process_request(self, request: Request):
        started = time.perf_counter()
        self.stats.total_requests += 1
        outcome = 'success'

        try:
            response = await self._download(request)
            response = await self.middleware.process_spider_input(response)
            results = await self._call_spider(response)
            results = await self.middleware.process_spider_output(response, results)
            await self._handle_results(results)

            self.stats.successful_requests += 1
            self.stats.total_pages += 1
            self.logger.debug(f"Processed {request.url}: {response.status}")

        except RetryRequest as signal:
            outcome = await self._handle_retry_signal(request, signal)

        except Exception as e:
            outcome = await self._handle_failure(request, e)

        finally:
            duration = time.perf_counter() - started
            self.stats.total_request_time += duration
            self._in_flight -= 1
            self._semaphore.release()
            self._activity.set()
            if self.monitor:
                self.monitor.record_request(self.spider.name, outcome, duration)
            self._publish_stats()

    async def _download(self, request: Request) -> Response:
        request = await self.middleware.process_request(request)
        try:
            response = await self.downloader.download(request)
        except RetryRequest:
            raise
        except Exception as e:
            retry = await self.middleware.process_exception(e, request)
            if retry is not None:
                raise RetryRequest(retry, str(e)) from e
            raise
        return await self.middleware.process_response(response)

    async def _call_spider(self, response: Response) -> List[SpiderOutput]:
        result = self.spider.handle_response(response)
        if inspect.isasyncgen(result):
            return [output async for output in result]
        if inspect.isawaitable(result):
            result = await result
        if result is None:
            return []
        if isinstance(result, (Request, Item, Mapping)):
            return [result]
        return list(result)

    async def _handle_results(self, results: List[SpiderOutput]):
        for output in results:
            if isinstance(output, Request):
                await self._schedule(output)
            elif isinstance(output, Item):
                await self._process_item(output)
            elif isinstance(output, Mapping):
                await self._process_item(GenericItem(output))
            elif output is not None:
                self.logger.warning(f"Ignoring unsupported spider output of type {type(output).__name__}")

    async def _process_item(self, item: Item):
        self.stats.total_items += 1
        try:
            await self.pipeline.process_item(item)
        except PipelineError as e:
            self.stats.failed_items += 1
            self.logger.warning(f"Item dropped by pipeline: {e}")
            if self.monitor:
                self.monitor.record_item(self.spider.name, 'failed')
            return

        if self.monitor:
            self.monitor.record_item(self.spider.name, 'processed')
        for listener in list(self._item_listeners):
            try:
                listener(item)
            except Exception as e:
                self.logger.error(f"Item listener failed: {e}")

    async def _handle_failure(self, request: Request, error: Exception) -> str:
        attempt = request.attempt.count
        if self.config.enable_retry and attempt < self.config.max_retries and self.is_active:
            delay = self.config.retry_delay * (2 ** attempt)
            self.logger.warning(
                f"Request {request.url} failed ({error}), retry {attempt + 1}/{self.config.max_retries} in {delay:.2f}s"
            )
            if delay > 0:
                await asyncio.sleep(delay)
            if self.is_active and await self._requeue(request.retry(str(error))):
                return 'retry'
        return await self._fail(request, error)

    async def _handle_retry_signal(self, request: Request, signal: RetryRequest) -> str:
        """Re-enqueue a request re-issued by middleware, under the same retry ceiling."""
        reason = signal.reason or str(signal)
        retry = signal.request
        # A middleware may hand back the request unchanged
        if retry.attempt.count <= request.attempt.count:
            retry = retry.replace(attempt=request.attempt.next(reason))
        if not retry.dont_filter:
            retry = retry.replace(dont_filter=True)

        if retry.attempt.count > self.config.max_retries:
            return await self._fail(request, signal)
        if self.is_active and await self._requeue(retry):
            self.logger.info(f"Re-issued {request.url} ({retry.attempt.count}/{self.config.max_retries}): {reason}")
            return 'retry'
        return await self._fail(request, signal)

    async def _fail(self, request: Request, error: Exception) -> str:
        self.stats.failed_requests += 1
        self.logger.log_request_event(
            logging.ERROR, request.url,
            f"Request {request.url} failed after {request.attempt.count} retries: {error}",
            retries=request.attempt.count, error_type=type(error).__name__
        )
        try:
            await self.spider.on_error(error, request)
        except Exception as e:
            self.logger.error(f"Spider error handler failed: {e}")
        return 'failure'

    # Scheduling

    async def _schedule(self, request: Request) -> bool:
        """Run a new request through the offsite, robots and duplicate gates."""
        if self.state not in (EngineState.STARTING, EngineState.RUNNING, EngineState.PAUSED):
            return False

        if not self.spider.is_url_allowed(request.url):
            self.stats.offsite_requests += 1
            self._record_filtered('offsite')
            self.logger.debug(f"Filtered offsite request: {request.url}")
            return False

        if self.obey_robots and self.robots_checker is not None:
            if not await self.robots_checker.is_allowed(request.url, self.config.user_agent):
                self.stats.robots_blocked_requests += 1
                self._record_filtered('robots')
                self.logger.info(f"robots.txt blocks access to: {request.url}")
                return False

        if self.duplicate_filter is not None and not request.dont_filter:
            if not await self.duplicate_filter.reserve(request):
                self.stats.duplicate_requests += 1
                self._record_filtered('duplicate')
                self.logger.debug(f"Filtered duplicate request: {request.url}")
                return False

        return await self._enqueue(request)

    async def _requeue(self, request: Request) -> bool:
        accepted = await self._enqueue(request)
        if accepted:
            self.stats.retried_requests += 1
        return accepted

    async def _enqueue(self, request: Request) -> bool:
        accepted = await self.scheduler.enqueue(request)
        if accepted:
            self._activity.set()
        else:
            self._record_filtered('scheduler')
        return accepted

    # Stats

    def _record_filtered(self, reason: str):
        if self.monitor:
            self.monitor.record_filtered(self.spider.name, reason)

    def _publish_gauges(self):
        if self.monitor:
            self.monitor.update_queue_size(self.spider.name, self.scheduler.length())
            self.monitor.update_in_flight(self.spider.name, self._in_flight)

    def _publish_stats(self):
        self._publish_gauges()
        if not self._stats_listeners:
            return
        snapshot = self.stats.to_dict()
        for listener in list(self._stats_listeners):
            try:
                listener(snapshot)
            except Exception as e:
                self.logger.error(f"Stats listener failed: {e}")

    def subscribe_stats(self, listener: StatsListener) -> Callable[[], None]:
        """
        Call ``listener`` with a stats snapshot after every request.

        Returns:
            Function that removes the listener
        """
        self._stats_listeners.append(listener)
        return lambda: self._stats_listeners.remove(listener) if listener in self._stats_listeners else None

    def subscribe_items(self, listener: ItemListener) -> Callable[[], None]:
        """Call ``listener`` with every item that passed the pipelines."""
        self._item_listeners.append(listener)
        return lambda: self._item_listeners.remove(listener) if listener in self._item_listeners else None

    def get_stats(self) -> Dict[str, Any]:
        """Get current crawl statistics."""
        stats = {
            **self.stats.to_dict(),
            'state': self.state.value,
            'queued': self.scheduler.length(),
            'in_flight': self._in_flight
        }
        if self.duplicate_filter is not None:
            stats['duplicate_filter'] = self.duplicate_filter.get_stats().to_dict()
        return stats

    def _log_final_stats(self):
        self.logger.info("=== CRAWL COMPLETED ===")
        for name, value in self.stats.to_dict().items():
            self.logger.log_crawl_stat(name, value)
