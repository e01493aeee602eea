"""
Indexer Service

Entry point for the MToken indexer. Wires configuration, logging,
persistence, RPC, the reconciliation engine and the event feed together,
and shuts them down gracefully on SIGINT/SIGTERM.
"""

import argparse
import asyncio
import signal
import sys
import time
from pathlib import Path
from typing import Optional

from web3 import Web3

from . import __version__
from .config import IndexerConfig, init_config
from .logging_config import init_logging, get_logger
from .database import init_database, init_redis, DatabaseManager, RedisManager
from .contract_reader import ContractReader
from .store import StateStore
from .engine import ReconciliationEngine
from .dispatcher import EventDispatcher
from .event_feed import EventFeed
from .metrics_server import MetricsServer
from .types import IndexerError, RPCError


class IndexerService:
    """
    Service orchestrator.

    Responsibilities:
    - Initialize persistence, RPC providers and the engine
    - Run the event feed until a shutdown is requested
    - Drain in-flight work before exiting
    """

    def __init__(self, config: IndexerConfig):
        self.logger = get_logger("indexer")
        self.config = config
        self.web3: Optional[Web3] = None

        self.db_manager: Optional[DatabaseManager] = None
        self.redis_manager: Optional[RedisManager] = None
        self.reader: Optional[ContractReader] = None
        self.store: Optional[StateStore] = None
        self.engine: Optional[ReconciliationEngine] = None
        self.dispatcher: Optional[EventDispatcher] = None
        self.feed: Optional[EventFeed] = None
        self.metrics_server: Optional[MetricsServer] = None

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._feed_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._start_time = time.time()

    def _connect_rpc(self) -> Web3:
        timeout = self.config.rpc.request_timeout_seconds
        web3 = Web3(Web3.HTTPProvider(self.config.rpc.primary_http, request_kwargs={"timeout": timeout}))
        if web3.is_connected():
            return web3

        self.logger.warning("rpc_primary_unavailable", context={"url": self.config.rpc.primary_http})
        if self.config.rpc.backup_http:
            backup = Web3(Web3.HTTPProvider(self.config.rpc.backup_http, request_kwargs={"timeout": timeout}))
            if backup.is_connected():
                return backup

        raise RPCError("All RPC providers failed to connect")

    async def initialize(self):
        """Create every component; raises on unusable database or RPC"""
        try:
            self.logger.info("indexer_initializing", context={
                "network": self.config.network_name,
                "chain_id": self.config.chain_id,
                "markets": list(self.config.markets),
            })

            self.db_manager = init_database(self.config.database)
            self.redis_manager = init_redis(self.config.redis)
            if not self.db_manager.health_check():
                raise IndexerError("Database health check failed")

            self.logger.info("persistence_ready", context={
                "database": self.db_manager.dialect_name,
                "redis": "fallback" if self.redis_manager.using_fallback else "connected",
            })

            self.web3 = await asyncio.to_thread(self._connect_rpc)
            current_block = await asyncio.to_thread(lambda: self.web3.eth.block_number)
            self.logger.info("rpc_connected", context={"current_block": current_block})

            self.reader = ContractReader(self.web3)
            self.store = StateStore(self.db_manager)
            self.engine = ReconciliationEngine(self.config, self.reader, self.store)
            self.dispatcher = EventDispatcher(self.config.engine.max_in_flight)
            self.feed = EventFeed(self.config, self.web3, self.engine, self.dispatcher, self.redis_manager)

            if self.config.monitoring.metrics_enabled:
                self.metrics_server = MetricsServer(port=self.config.monitoring.metrics_port)

            self.logger.info("indexer_initialized")

        except Exception as e:
            self.logger.critical("indexer_initialization_failed", context={"error": str(e)}, exc_info=True)
            raise

    async def start(self):
        """Run until stop() is called or the feed exits"""
        self._running = True

        if self.metrics_server:
            await self.metrics_server.start()
        MetricsServer.set_indexer_info(
            network=self.config.network_name,
            chain_id=self.config.chain_id,
            version=__version__,
            markets=len(self.config.markets)
        )
        MetricsServer.set_start_time(self._start_time)

        self._feed_task = asyncio.create_task(self.feed.start())
        self._feed_task.add_done_callback(self._on_feed_exit)
        self._monitor_task = asyncio.create_task(self.monitoring_loop())

        self.logger.info("indexer_started")
        await self._shutdown_event.wait()

    def _on_feed_exit(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.critical("event_feed_failed", context={"error": str(error)})
        if self._running:
            asyncio.ensure_future(self.stop())

    async def stop(self):
        """
        Graceful shutdown: stop the feed, drain in-flight jobs within the
        grace period, then release resources. Blocks whose jobs did not
        finish are left un-checkpointed and re-delivered on the next run.
        """
        if not self._running:
            return
        self._running = False
        self.logger.info("indexer_stopping")

        if self.feed:
            await self.feed.stop()

        if self.dispatcher:
            drained = await self.dispatcher.close(self.config.engine.shutdown_grace_seconds)
            if not drained:
                self.logger.warning("shutdown_drain_incomplete", context={
                    "grace_seconds": self.config.engine.shutdown_grace_seconds
                })

        for task in (self._feed_task, self._monitor_task):
            if task and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if self.metrics_server:
            await self.metrics_server.stop()
        if self.db_manager:
            self.db_manager.dispose()

        self._shutdown_event.set()
        self.logger.info("indexer_stopped")

    async def monitoring_loop(self):
        """Periodic health checks of the checkpoint store and the head subscription"""
        while self._running:
            await asyncio.sleep(30)

            if self.redis_manager.using_fallback:
                self.redis_manager.reconnect()

            ws_manager = self.feed.ws_manager if self.feed else None
            if ws_manager and not ws_manager.check_health():
                self.logger.warning("head_subscription_stale", context={"url": ws_manager.url})

            self.logger.info("indexer_status", context={
                "head_block": self.feed.head_block,
                "next_block": self.feed.next_block,
                "in_flight": self.dispatcher.in_flight,
                "redis": "fallback" if self.redis_manager.using_fallback else "connected",
            })


async def main(argv=None):
    """
    Main entry point.

    Loads configuration, initializes logging and runs the service until
    SIGINT/SIGTERM.
    """
    parser = argparse.ArgumentParser(description='MToken lending market indexer')
    parser.add_argument('--config', type=Path, default=Path('config.yaml'), help='Path to config.yaml')
    parser.add_argument('--log-level', default=None, help='Override the configured log level')
    args = parser.parse_args(argv)

    config = init_config(args.config)

    init_logging(
        log_dir=Path(config.monitoring.log_dir),
        log_level=args.log_level or config.monitoring.log_level,
        enable_cloudwatch=config.monitoring.cloudwatch_enabled,
        cloudwatch_region=config.monitoring.cloudwatch_region,
        cloudwatch_log_group=config.monitoring.cloudwatch_log_group,
    )
    logger = get_logger("main")

    service = IndexerService(config)

    def signal_handler(sig: signal.Signals):
        logger.info("shutdown_signal", context={"signal": sig.name})
        asyncio.ensure_future(service.stop())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await service.initialize()
        await service.start()
    except Exception as e:
        logger.critical("fatal_error", context={"error": str(e)}, exc_info=True)
        await service.stop()
        sys.exit(1)

    logger.info("indexer_shutdown_complete")


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
