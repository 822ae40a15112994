#!/usr/bin/env python3
"""
Command line runner: load a config, import a spider class and crawl.

    python main.py --spider myproject.spiders:QuotesSpider --config config.yaml
"""

import argparse
import asyncio
import importlib
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional, Type

from crawlengine import __version__
from crawlengine.crawler.engine import Engine
from crawlengine.crawler.spider import Spider
from crawlengine.storage.redis_manager import RedisManager
from crawlengine.utils.config import Config, load_config
from crawlengine.utils.logger import setup_logging
from crawlengine.utils.monitoring import CrawlMonitor

logger = logging.getLogger(__name__)


def load_spider_class(path: str) -> Type[Spider]:
    """Import a spider class given as ``package.module:ClassName``."""
    module_name, sep, class_name = path.partition(':')
    if not sep or not module_name or not class_name:
        raise ValueError(f"Spider must be given as module:ClassName, got '{path}'")

    spider_class = getattr(importlib.import_module(module_name), class_name)
    if not (isinstance(spider_class, type) and issubclass(spider_class, Spider)):
        raise TypeError(f"{path} is not a Spider subclass")
    return spider_class


class CrawlerApp:
    """Runs one spider under the engine until it finishes or a signal arrives."""

    def __init__(self, config_path: str, spider_path: str,
                 max_duration: Optional[float] = None, dry_run: bool = False):
        self.config_path = config_path
        self.spider_path = spider_path
        self.max_duration = max_duration
        self.dry_run = dry_run
        self.engine: Optional[Engine] = None
        self._shutdown: Optional[asyncio.Event] = None

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._request_shutdown, signum)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(signum, lambda s, _frame: self._request_shutdown(s))

    def _request_shutdown(self, signum: int):
        logger.info(f"Received signal {signum}, shutting down")
        self._shutdown.set()

    async def run(self) -> int:
        self._shutdown = asyncio.Event()
        try:
            config = load_config(self.config_path)
            setup_logging(config.logging)
            self._install_signal_handlers()

            spider = load_spider_class(self.spider_path)()
            engine_config = config.engine
            logger.info(f"Crawl engine {__version__}, config {self.config_path}")
            logger.info(f"Spider: {spider.get_settings()}")
            logger.info(
                f"concurrency={engine_config.max_concurrent_requests} "
                f"robots={engine_config.obey_robots_txt} "
                f"dedup={engine_config.enable_deduplication} ({engine_config.duplicate_filter.type})"
            )

            if self.dry_run:
                await self._check_connections(config)
                return 0

            monitor = None
            if config.monitoring.metrics_enabled:
                monitor = CrawlMonitor(prometheus_port=config.monitoring.prometheus_port)
                monitor.start_server()

            self.engine = Engine(spider, engine_config, monitor=monitor)
            await self.engine.start()
            await self._wait_for_engine()

        except Exception as e:
            logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.engine is not None:
                await self.engine.stop()

        stats = self.engine.stats
        logger.info(f"Crawl finished: {stats.successful_requests} ok, {stats.failed_requests} failed, "
                    f"{stats.total_items} items in {stats.runtime:.1f}s")
        return 0

    async def _wait_for_engine(self):
        crawl = asyncio.create_task(self.engine.wait_for_completion(self.max_duration))
        shutdown = asyncio.create_task(self._shutdown.wait())
        done, pending = await asyncio.wait({crawl, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if shutdown in done:
            logger.info("Shutdown requested, waiting for in-flight requests")

    async def _check_connections(self, config: Config):
        """Validate config and ping Redis without crawling."""
        logger.info("Dry run: no requests will be made")
        if config.engine.redis is None:
            logger.info("No Redis configured")
            return
        manager = RedisManager(config.engine.redis)
        try:
            healthy = await manager.health_check()
        finally:
            await manager.close()
        if healthy:
            logger.info(f"Redis reachable at {manager.connection_info}")
        else:
            logger.error(f"Redis unreachable at {manager.connection_info}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Crawl engine runner")
    parser.add_argument('--spider', required=True, help='Spider class as module:ClassName')
    parser.add_argument('--config', default='config.yaml', help='YAML configuration file (default: config.yaml)')
    parser.add_argument('--max-duration', type=float, help='Stop the crawl after this many seconds')
    parser.add_argument('--dry-run', action='store_true', help='Check configuration and Redis, then exit')
    parser.add_argument('--version', action='version', version=f'crawlengine {__version__}')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if not Path(args.config).exists():
        print(f"Configuration file '{args.config}' not found. "
              f"Copy config.example.yaml or pass --config.", file=sys.stderr)
        return 1

    app = CrawlerApp(args.config, args.spider, args.max_duration, args.dry_run)
    return asyncio.run(app.run())


if __name__ == '__main__':
    sys.exit(main())
