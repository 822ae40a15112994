"""
Prometheus metrics for the crawl engine.
"""

import time
import logging
from typing import Dict, Optional, Any

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
from prometheus_client import start_http_server


class CrawlMonitor:
    """
    Records crawl events as Prometheus metrics.

    Each monitor owns its registry so several engines (and tests) can
    coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.registry = registry or CollectorRegistry()
        self.prometheus_port = prometheus_port
        self.start_time = time.time()
        self._server_started = False

        self.requests_total = Counter(
            'crawlengine_requests_total',
            'Requests processed, by outcome',
            ['spider', 'outcome'],
            registry=self.registry
        )
        self.items_total = Counter(
            'crawlengine_items_total',
            'Items produced, by outcome',
            ['spider', 'outcome'],
            registry=self.registry
        )
        self.filtered_total = Counter(
            'crawlengine_filtered_requests_total',
            'Requests rejected before scheduling, by reason',
            ['spider', 'reason'],
            registry=self.registry
        )
        self.response_time = Histogram(
            'crawlengine_response_time_seconds',
            'Time spent processing a request end to end',
            ['spider'],
            registry=self.registry
        )
        self.queue_size = Gauge(
            'crawlengine_queue_size',
            'Requests waiting in the scheduler',
            ['spider'],
            registry=self.registry
        )
        self.in_flight = Gauge(
            'crawlengine_in_flight_requests',
            'Requests currently being processed',
            ['spider'],
            registry=self.registry
        )

        self.logger.info("Prometheus metrics initialized")

    def start_server(self):
        """Start Prometheus metrics HTTP server."""
        if self._server_started:
            return
        try:
            start_http_server(self.prometheus_port, registry=self.registry)
            self._server_started = True
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except Exception as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def record_request(self, spider: str, outcome: str, duration: Optional[float] = None):
        """Record a finished request: success, failure or retry."""
        self.requests_total.labels(spider=spider, outcome=outcome).inc()
        if duration is not None:
            self.response_time.labels(spider=spider).observe(duration)

    def record_item(self, spider: str, outcome: str = 'processed'):
        self.items_total.labels(spider=spider, outcome=outcome).inc()

    def record_filtered(self, spider: str, reason: str):
        """Record a request dropped by the offsite, robots or duplicate gate."""
        self.filtered_total.labels(spider=spider, reason=reason).inc()

    def update_queue_size(self, spider: str, size: int):
        self.queue_size.labels(spider=spider).set(size)

    def update_in_flight(self, spider: str, count: int):
        self.in_flight.labels(spider=spider).set(count)

    def get_value(self, name: str, labels: Dict[str, str]) -> float:
        """Current value of a sample, 0.0 if it has not been recorded."""
        value = self.registry.get_sample_value(name, labels)
        return value if value is not None else 0.0

    def export(self) -> bytes:
        """Metrics in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def get_summary(self, spider: str) -> Dict[str, Any]:
        """Get a summary of the metrics recorded for a spider."""
        runtime = time.time() - self.start_time
        succeeded = self.get_value('crawlengine_requests_total', {'spider': spider, 'outcome': 'success'})
        failed = self.get_value('crawlengine_requests_total', {'spider': spider, 'outcome': 'failure'})

        return {
            'runtime_seconds': runtime,
            'requests_succeeded': succeeded,
            'requests_failed': failed,
            'items': self.get_value('crawlengine_items_total', {'spider': spider, 'outcome': 'processed'}),
            'rates': {
                'requests_per_second': (succeeded + failed) / runtime if runtime > 0 else 0,
            }
        }
