"""
Prometheus Metrics Server

Exposes indexer metrics via HTTP endpoint for Prometheus scraping.
"""

from typing import Optional
from aiohttp import web
from prometheus_client import (
    Counter, Gauge, Info,
    generate_latest, CONTENT_TYPE_LATEST
)

from .logging_config import get_logger


# Event processing
events_processed_counter = Counter(
    'indexer_events_processed_total',
    'Events processed, by event name and outcome (ok, degraded, failed)',
    ['event', 'outcome']
)

block_ticks_counter = Counter(
    'indexer_block_ticks_total',
    'Block ticks processed'
)

# Writes
transaction_writes_counter = Counter(
    'indexer_transaction_writes_total',
    'Transaction record writes, by status',
    ['status']
)

position_writes_counter = Counter(
    'indexer_position_writes_total',
    'Position record writes, by status',
    ['status']
)

market_snapshots_counter = Counter(
    'indexer_market_snapshots_total',
    'Market snapshot writes, by status',
    ['status']
)

# Reads
read_failures_counter = Counter(
    'indexer_contract_read_failures_total',
    'Contract reads that fell back to their default, by function',
    ['function']
)

feed_errors_counter = Counter(
    'indexer_feed_errors_total',
    'RPC failures in the event feed, by operation',
    ['operation']
)

# Progress
current_block_gauge = Gauge(
    'indexer_current_block',
    'Last block delivered by the event feed'
)

checkpoint_block_gauge = Gauge(
    'indexer_checkpoint_block',
    'Last block fully processed and checkpointed'
)

in_flight_gauge = Gauge(
    'indexer_jobs_in_flight',
    'Event and tick jobs scheduled but not finished'
)

indexer_info = Info(
    'indexer',
    'Information about the indexer process'
)

start_time_gauge = Gauge(
    'indexer_start_time_seconds',
    'Unix timestamp when the indexer started'
)


class MetricsServer:
    """
    HTTP server that exposes Prometheus metrics.

    Serves /metrics and /health.
    """

    def __init__(self, port: int = 8000):
        self.port = port
        self.logger = get_logger("metrics_server")
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._running = False

    async def start(self):
        """Start the metrics HTTP server"""
        try:
            self.logger.info("metrics_server_starting", context={"port": self.port})

            self.app = web.Application()
            self.app.router.add_get('/metrics', self.handle_metrics)
            self.app.router.add_get('/health', self.handle_health)

            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, '0.0.0.0', self.port)
            await self.site.start()

            self._running = True
            self.logger.info("metrics_server_started", context={"url": f"http://0.0.0.0:{self.port}/metrics"})

        except Exception as e:
            self.logger.error("metrics_server_start_failed", context={"error": str(e)}, exc_info=True)
            raise

    async def stop(self):
        """Stop the metrics HTTP server"""
        self._running = False

        if self.site:
            await self.site.stop()

        if self.runner:
            await self.runner.cleanup()

        self.logger.info("metrics_server_stopped")

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """Return Prometheus metrics in text format"""
        return web.Response(
            body=generate_latest(),
            headers={'Content-Type': CONTENT_TYPE_LATEST}
        )

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.Response(text="OK", status=200)

    @staticmethod
    def record_event(event_name: str, outcome: str):
        events_processed_counter.labels(event=event_name, outcome=outcome).inc()

    @staticmethod
    def increment_block_ticks():
        block_ticks_counter.inc()

    @staticmethod
    def record_transaction_write(status: str):
        transaction_writes_counter.labels(status=status).inc()

    @staticmethod
    def record_position_write(status: str):
        position_writes_counter.labels(status=status).inc()

    @staticmethod
    def record_market_snapshot(status: str):
        market_snapshots_counter.labels(status=status).inc()

    @staticmethod
    def increment_read_failure(function_name: str):
        read_failures_counter.labels(function=function_name).inc()

    @staticmethod
    def increment_feed_error(operation: str):
        feed_errors_counter.labels(operation=operation).inc()

    @staticmethod
    def update_current_block(block_number: int):
        current_block_gauge.set(block_number)

    @staticmethod
    def update_checkpoint_block(block_number: int):
        checkpoint_block_gauge.set(block_number)

    @staticmethod
    def update_in_flight(count: int):
        in_flight_gauge.set(count)

    @staticmethod
    def set_indexer_info(network: str, chain_id: int, version: str, markets: int):
        indexer_info.info({
            'network': network,
            'chain_id': str(chain_id),
            'version': version,
            'markets': str(markets)
        })

    @staticmethod
    def set_start_time(timestamp: float):
        start_time_gauge.set(timestamp)
