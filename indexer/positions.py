"""
Position Reconciler

Fetches the authoritative balances for a (user, market) pair and merges
them into the stored position with a whole-row last-writer-wins upsert.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from .config import EngineConfig, MarketConfig
from .contract_reader import ContractReader, read_with_default
from .records import PositionTarget
from .store import StateStore, run_write
from .types import BranchResult, BranchStatus, PositionRecord, ReadResult
from .logging_config import get_logger, log_write_failure
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


class PositionReconciler:
    """Reads balances for one position and writes the merged row"""

    def __init__(self, reader: ContractReader, store: StateStore, config: EngineConfig):
        self.reader = reader
        self.store = store
        self.config = config
        self.audit = get_logger("reconciliation")

    async def _balance(
        self,
        known: Optional[int],
        market: MarketConfig,
        function_name: str,
        target: PositionTarget,
        context: Dict[str, Any],
    ) -> ReadResult:
        if known is not None:
            return ReadResult(value=known, succeeded=True)
        return await read_with_default(
            self.reader,
            market.address,
            market.abi,
            function_name,
            args=(target.user_address,),
            default=0,
            timeout=self.config.read_timeout_seconds,
            context=context,
        )

    async def fetch(
        self,
        target: PositionTarget,
        market: MarketConfig,
        block_number: int,
        block_timestamp: int,
        source: str = "",
    ) -> Tuple[PositionRecord, List[str]]:
        """
        Build the desired position row.

        Unknown balances are read concurrently; a failed read leaves that
        balance at zero and is reported in the degraded field list.
        """
        context = {"user": target.user_address, "block_number": block_number, "source": source}

        borrow, supply = await asyncio.gather(
            self._balance(target.known_borrow_balance, market, "borrowBalanceStored", target, context),
            self._balance(target.known_supply_balance, market, "balanceOf", target, context),
        )

        degraded = []
        if not borrow.succeeded:
            degraded.append("borrow_balance")
        if not supply.succeeded:
            degraded.append("supply_balance")

        record = PositionRecord(
            id=target.id,
            user_address=target.user_address,
            market_address=target.market_address,
            borrow_balance=borrow.value,
            supply_balance=supply.value,
            last_updated_block=block_number,
            last_updated_timestamp=block_timestamp,
        )
        return record, degraded

    async def reconcile(
        self,
        target: PositionTarget,
        market: MarketConfig,
        block_number: int,
        block_timestamp: int,
        source: str = "",
    ) -> BranchResult:
        """
        Reconcile one position.

        Returns:
            BranchResult with WRITTEN, SKIPPED (empty liquidator position,
            or the stored row is from a later block) or FAILED (store write
            failed or timed out)
        """
        record, degraded = await self.fetch(target, market, block_number, block_timestamp, source)

        if target.require_nonzero and record.is_empty:
            logger.debug(f"Skipping empty position {record.id} ({source})")
            MetricsServer.record_position_write(BranchStatus.SKIPPED.value)
            return BranchResult('position', record.id, BranchStatus.SKIPPED, degraded)

        try:
            applied = await run_write(
                self.store.upsert_position, record,
                timeout=self.config.write_timeout_seconds
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            log_write_failure(self.audit, 'position', record.id, source, error)
            MetricsServer.record_position_write(BranchStatus.FAILED.value)
            return BranchResult('position', record.id, BranchStatus.FAILED, degraded, error)

        if not applied:
            logger.info(f"Position {record.id} already reflects a later block, block {block_number} ignored")
            MetricsServer.record_position_write(BranchStatus.SKIPPED.value)
            return BranchResult('position', record.id, BranchStatus.SKIPPED, degraded)

        logger.debug(
            f"Position {record.id} at block {block_number}: "
            f"borrow={record.borrow_balance} supply={record.supply_balance}"
        )
        MetricsServer.record_position_write(BranchStatus.WRITTEN.value)
        return BranchResult('position', record.id, BranchStatus.WRITTEN, degraded)
