"""
Event Feed

Delivers decoded MToken events and periodic block ticks to the
reconciliation engine:

- new heads arrive over a WebSocket newHeads subscription (or by polling
  the HTTP provider when no WebSocket endpoint is configured)
- logs of the tracked markets are fetched in bounded block ranges and
  delivered in (block, log index) order
- a tick is emitted for every block where
  (block - start_block) % block_interval == 0
- the checkpoint advances only after a range has been fully drained, so
  a restart re-delivers any unfinished block
"""

import asyncio
import json
import logging
import time
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from eth_abi import decode
from hexbytes import HexBytes
from web3 import Web3
from websockets import connect, ConnectionClosed

from .abis import event_abis
from .config import IndexerConfig
from .database import RedisManager
from .dispatcher import EventDispatcher
from .engine import ReconciliationEngine
from .types import BlockTick, DecodedEvent, MalformedEventError, RPCError
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "checkpoint:last_block"


def _to_hex(value: Any) -> str:
    return Web3.to_hex(HexBytes(value))


# ============================================================================
# WebSocket heads
# ============================================================================

class WebSocketConnectionManager:
    """Manages WebSocket connections with automatic reconnection and failover"""

    def __init__(
        self,
        primary_ws_url: str,
        backup_ws_url: Optional[str],
        on_message: Callable[[Dict[str, Any]], Awaitable[None]],
        on_error: Optional[Callable[[Exception], None]] = None
    ):
        self.primary_ws_url = primary_ws_url
        self.backup_ws_url = backup_ws_url
        self.on_message = on_message
        self.on_error = on_error

        self.ws = None
        self.is_primary = True
        self.is_connected = False
        self.reconnect_attempts = 0
        self.max_reconnect_attempts = 10
        self.base_backoff = 1.0  # seconds
        self.max_backoff = 60.0  # seconds

        self._running = False
        self._last_message_time = time.time()
        self._health_check_interval = 30  # seconds

    @property
    def url(self) -> str:
        return self.primary_ws_url if self.is_primary else self.backup_ws_url

    async def connect(self):
        """Establish WebSocket connection and subscribe to newHeads"""
        provider_name = "primary" if self.is_primary else "backup"

        try:
            logger.info(f"Connecting to {provider_name} WebSocket: {self.url}")
            self.ws = await connect(self.url, ping_interval=20, ping_timeout=10)
            self.is_connected = True
            self.reconnect_attempts = 0
            self._last_message_time = time.time()
            logger.info(f"Connected to {provider_name} WebSocket")

            await self.subscribe_new_heads()

        except Exception as e:
            logger.error(f"Failed to connect to {provider_name} WebSocket: {e}")
            self.is_connected = False
            raise RPCError(f"WebSocket connection failed: {e}")

    async def subscribe_new_heads(self):
        if not self.ws:
            raise RPCError("WebSocket not connected")

        await self.ws.send(json.dumps({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["newHeads"]
        }))
        logger.info("Subscribed to newHeads")

    async def disconnect(self):
        if self.ws:
            await self.ws.close()
            self.ws = None
            self.is_connected = False
            logger.info("WebSocket disconnected")

    async def reconnect(self):
        """Reconnect with exponential backoff, failing over to the backup endpoint"""
        while self._running:
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                logger.error("Max reconnection attempts reached")
                if self.is_primary and self.backup_ws_url:
                    logger.info("Failing over to backup WebSocket")
                    self.is_primary = False
                    self.reconnect_attempts = 0
                else:
                    raise RPCError("All WebSocket providers failed")

            backoff = min(
                self.base_backoff * (2 ** self.reconnect_attempts),
                self.max_backoff
            )
            logger.info(f"Reconnecting in {backoff:.1f} seconds (attempt {self.reconnect_attempts + 1})")
            await asyncio.sleep(backoff)
            self.reconnect_attempts += 1

            try:
                await self.disconnect()
                await self.connect()
                return
            except Exception as e:
                logger.error(f"Reconnection failed: {e}")

    async def start(self):
        """Listen for messages until stopped"""
        self._running = True

        while self._running:
            try:
                if not self.is_connected:
                    await self.connect()

                async for message in self.ws:
                    self._last_message_time = time.time()
                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError as e:
                        logger.error(f"Failed to parse WebSocket message: {e}")
                        continue
                    await self.on_message(data)

            except ConnectionClosed as e:
                if not self._running:
                    break
                logger.warning(f"WebSocket connection closed: {e}")
                self.is_connected = False
                await self.reconnect()

            except RPCError as e:
                if not self._running:
                    break
                logger.error(f"WebSocket error: {e}")
                self.is_connected = False
                if self.on_error:
                    self.on_error(e)
                await self.reconnect()

    async def stop(self):
        self._running = False
        await self.disconnect()

    def check_health(self) -> bool:
        if not self.is_connected:
            return False

        time_since_last_message = time.time() - self._last_message_time
        if time_since_last_message > self._health_check_interval:
            logger.warning(f"No messages received for {time_since_last_message:.1f} seconds")
            return False

        return True


def parse_new_head(data: Dict[str, Any]) -> Optional[int]:
    """Block number of an eth_subscription newHeads notification, else None"""
    if data.get("method") != "eth_subscription":
        if "result" in data and "id" in data:
            logger.debug(f"Subscription confirmed: {data}")
        return None

    result = data.get("params", {}).get("result", {})
    if not isinstance(result, dict) or "number" not in result:
        return None
    return int(result["number"], 16)


# ============================================================================
# Log decoding
# ============================================================================

class LogDecoder:
    """Decodes raw eth_getLogs entries into DecodedEvents"""

    def __init__(self, abi_handle: str = "MToken"):
        self._events: Dict[str, Dict[str, Any]] = {}
        for entry in event_abis(abi_handle):
            signature = f"{entry['name']}({','.join(i['type'] for i in entry['inputs'])})"
            self._events[Web3.to_hex(Web3.keccak(text=signature))] = entry

    @property
    def topics(self) -> List[str]:
        """topic0 values of every decodable event"""
        return list(self._events)

    def decode(self, log: Dict[str, Any], block_timestamp: int) -> Optional[DecodedEvent]:
        """
        Decode one log.

        Returns:
            DecodedEvent, or None for events the indexer does not consume

        Raises:
            MalformedEventError: topic0 matches but the payload does not decode
        """
        topics = [_to_hex(topic) for topic in log.get("topics", [])]
        if not topics:
            return None

        entry = self._events.get(topics[0])
        if entry is None:
            return None

        name = entry["name"]
        location = f"{name}@{_to_hex(log['transactionHash'])}:{log['logIndex']}"

        indexed = [i for i in entry["inputs"] if i["indexed"]]
        plain = [i for i in entry["inputs"] if not i["indexed"]]

        try:
            args: Dict[str, Any] = {}
            if len(topics) - 1 != len(indexed):
                raise ValueError(f"expected {len(indexed)} indexed topics, got {len(topics) - 1}")
            for field, topic in zip(indexed, topics[1:]):
                args[field["name"]] = decode([field["type"]], HexBytes(topic))[0]

            values = decode([i["type"] for i in plain], HexBytes(log.get("data", b"")))
            for field, value in zip(plain, values):
                args[field["name"]] = value
        except Exception as e:
            raise MalformedEventError(f"{location}: cannot decode log: {e}") from e

        for field in entry["inputs"]:
            if field["type"] == "address":
                args[field["name"]] = Web3.to_checksum_address(args[field["name"]])

        return DecodedEvent(
            name=name,
            args=args,
            address=Web3.to_checksum_address(log["address"]),
            block_number=int(log["blockNumber"]),
            block_timestamp=block_timestamp,
            transaction_hash=_to_hex(log["transactionHash"]),
            log_index=int(log["logIndex"]),
        )


# ============================================================================
# Feed
# ============================================================================

def tick_blocks(from_block: int, to_block: int, start_block: int, interval: int) -> List[int]:
    """Blocks in [from_block, to_block] where (block - start_block) % interval == 0"""
    first = max(from_block, start_block)
    offset = (first - start_block) % interval
    if offset:
        first += interval - offset
    return list(range(first, to_block + 1, interval))


class EventFeed:
    """Fetches, orders and dispatches events and ticks, and keeps the checkpoint"""

    def __init__(
        self,
        config: IndexerConfig,
        web3,
        engine: ReconciliationEngine,
        dispatcher: EventDispatcher,
        redis: RedisManager,
    ):
        self.config = config
        self.web3 = web3
        self.engine = engine
        self.dispatcher = dispatcher
        self.redis = redis
        self.decoder = LogDecoder()

        self.start_block = config.feed.start_block or min(
            market.start_block for market in config.markets.values()
        )
        self.next_block = self.start_block
        self.head_block = 0

        self.ws_manager: Optional[WebSocketConnectionManager] = None
        self._sync_lock = asyncio.Lock()
        self._running = False

    # ------------------------------------------------------------------
    # Checkpoint
    # ------------------------------------------------------------------

    def load_checkpoint(self) -> int:
        """Resume point: checkpoint + 1, or the configured start block"""
        stored = self.redis.get(CHECKPOINT_KEY)
        if stored is not None:
            self.next_block = max(int(stored) + 1, self.start_block)
            logger.info(f"Resuming from checkpoint {stored}, next block {self.next_block}")
        else:
            self.next_block = self.start_block
            logger.info(f"No checkpoint found, starting at block {self.next_block}")
        return self.next_block

    def save_checkpoint(self, block_number: int):
        self.redis.set(CHECKPOINT_KEY, str(block_number))
        MetricsServer.update_checkpoint_block(block_number)
        logger.debug(f"Checkpoint saved at block {block_number}")

    # ------------------------------------------------------------------
    # Chain access (blocking web3 calls run in worker threads)
    # ------------------------------------------------------------------

    async def _get_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": [market.address for market in self.config.markets.values()],
            "topics": [self.decoder.topics],
        }
        return await asyncio.to_thread(self.web3.eth.get_logs, params)

    async def _block_timestamps(self, block_numbers: Iterable[int]) -> Dict[int, int]:
        numbers = sorted(set(block_numbers))
        blocks = await asyncio.gather(*[
            asyncio.to_thread(self.web3.eth.get_block, number) for number in numbers
        ])
        return {number: int(block["timestamp"]) for number, block in zip(numbers, blocks)}

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def submit_event(self, event: DecodedEvent) -> asyncio.Task:
        return self.dispatcher.submit(
            self.engine.ordering_keys(event),
            partial(self.engine.handle_event, event),
            name=event.source
        )

    def submit_tick(self, tick: BlockTick) -> asyncio.Task:
        return self.dispatcher.submit(
            self.engine.tick_keys(),
            partial(self.engine.handle_block_tick, tick),
            name=f"tick@{tick.block_number}"
        )

    async def process_range(self, from_block: int, to_block: int) -> int:
        """
        Deliver every event and tick in [from_block, to_block], wait for
        them to finish, then checkpoint to_block.

        Returns:
            Number of events delivered
        """
        logs = await self._get_logs(from_block, to_block)
        logs = sorted(logs, key=lambda log: (int(log["blockNumber"]), int(log["logIndex"])))
        ticks = tick_blocks(from_block, to_block, self.start_block, self.config.feed.block_interval)

        timestamps = await self._block_timestamps(
            [int(log["blockNumber"]) for log in logs] + ticks
        )

        events_by_block: Dict[int, List[DecodedEvent]] = {}
        for log in logs:
            block_number = int(log["blockNumber"])
            try:
                event = self.decoder.decode(log, timestamps[block_number])
            except MalformedEventError as e:
                logger.error(f"Skipping undecodable log: {e}")
                MetricsServer.record_event("unknown", "failed")
                continue
            if event is not None:
                events_by_block.setdefault(block_number, []).append(event)

        tasks: List[asyncio.Task] = []
        tick_set = set(ticks)
        for block_number in sorted(set(events_by_block) | tick_set):
            for event in events_by_block.get(block_number, []):
                tasks.append(self.submit_event(event))
            # Ticks follow the block's events
            if block_number in tick_set:
                tasks.append(self.submit_tick(BlockTick(
                    block_number=block_number,
                    block_timestamp=timestamps[block_number]
                )))
        delivered = len(tasks) - len(ticks)

        await self.dispatcher.drain()
        if any(task.cancelled() for task in tasks):
            logger.warning(f"Blocks {from_block}-{to_block} interrupted, checkpoint not advanced")
            return delivered
        self.save_checkpoint(to_block)
        self.next_block = to_block + 1

        if delivered or ticks:
            logger.info(
                f"Processed blocks {from_block}-{to_block}: "
                f"{delivered} events, {len(ticks)} ticks"
            )
        return delivered

    async def sync_to(self, head_block: int):
        """
        Process every block up to head_block minus the confirmation depth.

        A range that fails to fetch is retried with exponential backoff;
        next_block only moves once the range has been checkpointed.
        """
        async with self._sync_lock:
            self.head_block = max(self.head_block, head_block)
            MetricsServer.update_current_block(head_block)

            target = head_block - self.config.feed.confirmation_blocks
            max_range = self.config.feed.max_block_range
            failures = 0

            while self._running and self.next_block <= target:
                from_block = self.next_block
                to_block = min(from_block + max_range - 1, target)
                try:
                    await self.process_range(from_block, to_block)
                    failures = 0
                except Exception as e:
                    failures += 1
                    backoff = min(
                        self.config.feed.retry_backoff_seconds * (2 ** (failures - 1)),
                        self.config.feed.max_retry_backoff_seconds
                    )
                    logger.error(
                        f"Error processing blocks {from_block}-{to_block} "
                        f"(attempt {failures}): {e}, retrying in {backoff:.1f}s"
                    )
                    MetricsServer.increment_feed_error("process_range")
                    await asyncio.sleep(backoff)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _fetch_head(self) -> Optional[int]:
        try:
            return await asyncio.to_thread(lambda: self.web3.eth.block_number)
        except Exception as e:
            logger.error(f"Failed to fetch head block: {e}")
            MetricsServer.increment_feed_error("block_number")
            return None

    async def _handle_ws_message(self, data: Dict[str, Any]):
        head = parse_new_head(data)
        if head is not None:
            await self.sync_to(head)

    async def _poll_heads(self):
        while self._running:
            head = await self._fetch_head()
            if head is not None:
                await self.sync_to(head)
            await asyncio.sleep(self.config.feed.poll_interval_seconds)

    async def start(self):
        """Catch up from the checkpoint, then follow new heads until stopped"""
        self._running = True
        self.load_checkpoint()

        # Catch up before the first head arrives
        head = await self._fetch_head()
        if head is not None:
            await self.sync_to(head)

        if self.config.rpc.primary_ws:
            self.ws_manager = WebSocketConnectionManager(
                primary_ws_url=self.config.rpc.primary_ws,
                backup_ws_url=self.config.rpc.backup_ws,
                on_message=self._handle_ws_message,
                on_error=lambda e: logger.error(f"WebSocket error: {e}")
            )
            try:
                await self.ws_manager.start()
            except RPCError as e:
                if not self._running:
                    return
                logger.error(f"{e}, following heads by polling instead")
                MetricsServer.increment_feed_error("websocket")

        await self._poll_heads()

    async def stop(self):
        """Stop delivering; the range in progress is not checkpointed unless it drains"""
        self._running = False
        if self.ws_manager:
            await self.ws_manager.stop()
        logger.info("Event feed stopped")
