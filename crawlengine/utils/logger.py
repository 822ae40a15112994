"""
Logging utilities for the crawl engine.

Modules log through ``logging.getLogger(__name__)``. The engine uses a
``CrawlerLogAdapter`` so every record carries the spider name, which the
JSON formatter emits as a field and the text formatter as a prefix.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .config import LoggingConfig

MB = 1024 * 1024

# Third-party loggers capped at WARNING
QUIET_LOGGERS = ('aiohttp', 'redis', 'asyncio', 'urllib3')

# Records from these logger prefixes never reach our handlers
NOISY_LOGGERS = ('aiohttp.access', 'aiohttp.internal')


class JSONFormatter(logging.Formatter):
    """One JSON object per record, crawl context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}.{record.funcName}:{record.lineno}"
        }
        entry.update(getattr(record, 'crawl_context', {}))
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Attaches crawl context (spider name and so on) to every record."""

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        super().__init__(logger, context or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.setdefault('extra', {})
        extra['crawl_context'] = {**self.extra, **extra.get('crawl_context', {})}
        spider = self.extra.get('spider')
        return (f"[{spider}] {msg}" if spider else msg), kwargs

    def log_request_event(self, level: int, url: str, message: str, **fields):
        """Log an event about one request, with the URL as a structured field."""
        self.log(level, message, extra={'crawl_context': {'event_type': 'request', 'url': url, **fields}})

    def log_crawl_stat(self, stat_name: str, value: Any):
        self.info(
            f"{stat_name}: {value}",
            extra={'crawl_context': {'event_type': 'crawl_stat', 'stat_name': stat_name, 'stat_value': value}}
        )


class NoiseFilter(logging.Filter):
    """Drop records from chatty third-party loggers."""

    def __init__(self, prefixes: Optional[Iterable[str]] = None):
        super().__init__()
        self.prefixes = tuple(prefixes or NOISY_LOGGERS)

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(self.prefixes)


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter,
                      max_bytes: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config: LoggingConfig,
                  enable_json: Optional[bool] = None,
                  enable_noise_filtering: bool = True) -> logging.Logger:
    """
    Configure the root logger.

    Installs a console handler (INFO), a rotating crawl log (DEBUG) and a
    rotating ``errors.log`` next to it (ERROR). Existing root handlers are
    replaced.

    Args:
        config: Logging configuration
        enable_json: Force JSON output on or off (default: ``config.json``)
        enable_noise_filtering: Drop records from noisy third-party loggers

    Returns:
        The root logger
    """
    use_json = config.json if enable_json is None else enable_json
    formatter = JSONFormatter() if use_json else logging.Formatter(config.format)

    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)

    handlers = [
        console,
        _rotating_handler(log_file, logging.DEBUG, formatter, 50 * MB, 5),
        _rotating_handler(log_file.parent / 'errors.log', logging.ERROR, formatter, 10 * MB, 3),
    ]

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    for handler in handlers:
        if enable_noise_filtering:
            handler.addFilter(NoiseFilter())
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(f"Logging to {log_file} at {config.level} (json={use_json})")
    return root


def get_crawler_logger(name: str, **context) -> CrawlerLogAdapter:
    """Logger whose records all carry ``context``."""
    return CrawlerLogAdapter(logging.getLogger(name), context)
