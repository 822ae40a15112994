"""Logging setup and formatter tests."""

import json
import logging

import pytest

from crawlengine.utils.config import LoggingConfig
from crawlengine.utils.logger import JSONFormatter, NoiseFilter, get_crawler_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_adapter_adds_spider_context():
    handler = ListHandler()
    base = logging.getLogger("crawlengine.tests.adapter")
    base.addHandler(handler)
    base.setLevel(logging.DEBUG)
    try:
        get_crawler_logger("crawlengine.tests.adapter", spider="quotes").info("hello")
    finally:
        base.removeHandler(handler)

    record = handler.records[0]
    assert record.getMessage() == "[quotes] hello"
    assert record.crawl_context == {"spider": "quotes"}


def test_json_formatter_merges_context():
    handler = ListHandler()
    base = logging.getLogger("crawlengine.tests.json")
    base.addHandler(handler)
    base.setLevel(logging.DEBUG)
    try:
        adapter = get_crawler_logger("crawlengine.tests.json", spider="quotes")
        adapter.log_request_event(logging.WARNING, "https://example.com/", "failed", retries=2)
    finally:
        base.removeHandler(handler)

    entry = json.loads(JSONFormatter().format(handler.records[0]))
    assert entry["level"] == "WARNING"
    assert entry["spider"] == "quotes"
    assert entry["url"] == "https://example.com/"
    assert entry["retries"] == 2
    assert entry["event_type"] == "request"


def test_noise_filter():
    noise = NoiseFilter()

    assert not noise.filter(logging.LogRecord("aiohttp.access", logging.INFO, "", 0, "x", None, None))
    assert noise.filter(logging.LogRecord("crawlengine.engine", logging.INFO, "", 0, "x", None, None))


def test_setup_logging_writes_files(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "crawl.log"

    root = setup_logging(LoggingConfig(level="DEBUG", file=str(log_file)), enable_json=True)
    logging.getLogger("crawlengine.tests.setup").error("disk full")
    for handler in root.handlers:
        handler.flush()

    assert root.level == logging.DEBUG
    assert len(root.handlers) == 3
    assert "disk full" in log_file.read_text()
    errors = (tmp_path / "logs" / "errors.log").read_text().strip().splitlines()
    assert json.loads(errors[-1])["message"] == "disk full"
