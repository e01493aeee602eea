"""
Reconciliation Engine

Turns decoded events and block ticks into store writes:

- each event yields its transaction record(s) and the positions it touches
- the record branch and the position branch run concurrently and never
  roll each other back
- each block tick captures one snapshot per tracked market

Failures are contained to the branch (or event) they occur in.
"""

import asyncio
import logging
from typing import List, Tuple

from .config import IndexerConfig, MarketConfig
from .contract_reader import ContractReader
from .markets import MarketSnapshotBuilder
from .positions import PositionReconciler
from .records import build_transaction_records, position_targets, PositionTarget
from .store import StateStore
from .transaction_writer import TransactionWriter
from .types import (
    BlockTick, BranchResult, BranchStatus, DecodedEvent, EventOutcome,
    MalformedEventError, TransactionRecord, snapshot_id
)
from .logging_config import get_logger, log_event_outcome
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Processes events and ticks against the configured markets"""

    def __init__(self, config: IndexerConfig, reader: ContractReader, store: StateStore):
        self.config = config
        self.reader = reader
        self.store = store

        self.transactions = TransactionWriter(store, config.engine.write_timeout_seconds)
        self.positions = PositionReconciler(reader, store, config.engine)
        self.markets = MarketSnapshotBuilder(reader, store, config.engine)

        self.audit = get_logger("reconciliation")

    @property
    def tracked_addresses(self) -> List[str]:
        return [market.address for market in self.config.markets.values()]

    def _market(self, address: str) -> MarketConfig:
        market = self.config.market_by_address(address)
        if market is None:
            raise MalformedEventError(f"Event emitted by untracked contract {address}")
        return market

    # ------------------------------------------------------------------
    # Ordering keys (used by the dispatcher)
    # ------------------------------------------------------------------

    def ordering_keys(self, event: DecodedEvent) -> List[str]:
        """
        Position ids an event touches.

        Events sharing a key are applied in delivery order. A malformed
        event touches nothing and can run anywhere.
        """
        try:
            market = self._market(event.address)
            targets = position_targets(event, market.address, self.tracked_addresses)
        except MalformedEventError:
            return []
        return sorted({target.id for target in targets})

    def tick_keys(self) -> List[str]:
        return [f"tick:{address}" for address in self.tracked_addresses]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _plan(self, event: DecodedEvent) -> Tuple[MarketConfig, List[TransactionRecord], List[PositionTarget]]:
        market = self._market(event.address)
        records = build_transaction_records(event, market.address)
        targets = position_targets(event, market.address, self.tracked_addresses)
        return market, records, targets

    async def _write_records(self, records: List[TransactionRecord], source: str) -> List[BranchResult]:
        # Sequential: the two liquidation records are written in a fixed order
        results = []
        for record in records:
            results.append(await self.transactions.write(record, source))
        return results

    async def _reconcile_positions(self, event: DecodedEvent, targets: List[PositionTarget], source: str) -> List[BranchResult]:
        results = []
        for target in targets:
            market = self._market(target.market_address)
            results.append(await self.positions.reconcile(
                target, market, event.block_number, event.block_timestamp, source
            ))
        return results

    async def handle_event(self, event: DecodedEvent) -> EventOutcome:
        """
        Process one decoded event.

        Never raises: a malformed event is reported through
        EventOutcome.error, branch failures through the branch results.
        """
        source = event.source

        try:
            _, records, targets = self._plan(event)
        except MalformedEventError as e:
            outcome = EventOutcome(source=source, error=str(e))
            logger.error(f"Malformed event {source}: {e}")
            MetricsServer.record_event(event.name, 'failed')
            log_event_outcome(self.audit, outcome.to_dict())
            return outcome

        try:
            record_results, position_results = await asyncio.gather(
                self._write_records(records, source),
                self._reconcile_positions(event, targets, source),
            )
        except Exception as e:
            # Branches report their own failures; anything here is unexpected
            outcome = EventOutcome(source=source, error=f"{type(e).__name__}: {e}")
            logger.error(f"Unexpected error processing {source}: {e}", exc_info=True)
            MetricsServer.record_event(event.name, 'failed')
            log_event_outcome(self.audit, outcome.to_dict())
            return outcome

        outcome = EventOutcome(source=source, records=record_results, positions=position_results)
        degraded = any(r.degraded_fields for r in position_results)

        if outcome.branch_failures or degraded:
            MetricsServer.record_event(event.name, 'degraded')
            log_event_outcome(self.audit, outcome.to_dict())
        else:
            MetricsServer.record_event(event.name, 'ok')
            logger.debug(f"Processed {source}")

        return outcome

    # ------------------------------------------------------------------
    # Block ticks
    # ------------------------------------------------------------------

    async def handle_block_tick(self, tick: BlockTick) -> List[BranchResult]:
        """Capture one snapshot per tracked market, concurrently across markets"""
        results = await asyncio.gather(*[
            self._capture(market, tick) for market in self.config.markets.values()
        ])
        MetricsServer.increment_block_ticks()
        return list(results)

    async def _capture(self, market: MarketConfig, tick: BlockTick) -> BranchResult:
        try:
            return await self.markets.capture(market, tick)
        except Exception as e:
            identity = snapshot_id(market.address, tick.block_number)
            logger.error(f"Snapshot of {market.name} at block {tick.block_number} failed: {e}", exc_info=True)
            return BranchResult('market_snapshot', identity, BranchStatus.FAILED, error=str(e))
