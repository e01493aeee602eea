"""
Market Snapshot Builder

Captures market-wide parameters at each block tick. Every read is
independent and defaults on failure; exactly one row is written per
market per tick, however many reads degraded.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Tuple

from .config import EngineConfig, MarketConfig
from .contract_reader import ContractReader, read_with_default
from .store import StateStore, run_write
from .types import BlockTick, BranchResult, BranchStatus, MarketSnapshot, ReadResult, snapshot_id
from .logging_config import get_logger, log_market_snapshot, log_write_failure
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)

MANTISSA = Decimal(10) ** 18

# snapshot field -> MToken view function
MTOKEN_READS = (
    ("total_borrows", "totalBorrows"),
    ("cash", "getCash"),
    ("reserves", "totalReserves"),
    ("reserve_factor", "reserveFactorMantissa"),
)


def compute_utilization(total_borrows: int, cash: int) -> float:
    """totalBorrows / (totalBorrows + cash), or 0.0 when the pool is empty"""
    denominator = total_borrows + cash
    if denominator <= 0:
        return 0.0
    return total_borrows / denominator


class MarketSnapshotBuilder:
    """Builds and stores one MarketSnapshot per market per tick"""

    def __init__(self, reader: ContractReader, store: StateStore, config: EngineConfig):
        self.reader = reader
        self.store = store
        self.config = config
        self.audit = get_logger("reconciliation")

    def _read(self, address: str, abi: str, function_name: str, args=(), default: Any = 0, context=None):
        return read_with_default(
            self.reader, address, abi, function_name,
            args=args,
            default=default,
            timeout=self.config.read_timeout_seconds,
            context=context,
        )

    def _collateral_factor(self, market_info: ReadResult, market: MarketConfig) -> ReadResult:
        """collateralFactorMantissa from a markets() result of (isListed, collateralFactorMantissa, ...)"""
        if not market_info.succeeded:
            return ReadResult(value=0, succeeded=False, error=market_info.error)
        try:
            return ReadResult(value=int(market_info.value[1]), succeeded=True)
        except (TypeError, IndexError, ValueError) as e:
            error = f"unexpected markets() result {market_info.value!r}: {e}"
            logger.warning(f"{market.name}: {error}")
            return ReadResult(value=0, succeeded=False, error=error)

    async def _comptroller_reads(self, market: MarketConfig, context: Dict[str, Any]) -> Dict[str, ReadResult]:
        comptroller = market.comptroller_address
        mtoken = (market.address,)

        market_info, supply_cap, borrow_cap, incentive, paused = await asyncio.gather(
            self._read(comptroller, "Comptroller", "markets", mtoken, default=None, context=context),
            self._read(comptroller, "Comptroller", "supplyCaps", mtoken, context=context),
            self._read(comptroller, "Comptroller", "borrowCaps", mtoken, context=context),
            self._read(comptroller, "Comptroller", "liquidationIncentiveMantissa", context=context),
            self._read(comptroller, "Comptroller", "borrowGuardianPaused", mtoken, default=None, context=context),
        )

        collateral_factor = self._collateral_factor(market_info, market)

        if paused.succeeded:
            borrow_enabled = ReadResult(value=not paused.value, succeeded=True)
        else:
            borrow_enabled = ReadResult(value=False, succeeded=False, error=paused.error)

        return {
            "collateral_factor": collateral_factor,
            "supply_cap": supply_cap,
            "borrow_cap": borrow_cap,
            "liquidation_incentive": incentive,
            "borrow_enabled": borrow_enabled,
        }

    async def build(self, market: MarketConfig, tick: BlockTick) -> Tuple[MarketSnapshot, List[str]]:
        """
        Read the market parameters for a tick.

        Returns:
            (snapshot, names of fields that fell back to their default)
        """
        context = {"market": market.name, "block_number": tick.block_number}

        results = await asyncio.gather(*[
            self._read(market.address, market.abi, function_name, context=context)
            for _, function_name in MTOKEN_READS
        ])
        reads: Dict[str, ReadResult] = {
            field_name: result for (field_name, _), result in zip(MTOKEN_READS, results)
        }

        if market.comptroller_address:
            reads.update(await self._comptroller_reads(market, context))

        values = {field_name: result.value for field_name, result in reads.items()}
        degraded = [field_name for field_name, result in reads.items() if not result.succeeded]

        snapshot = MarketSnapshot(
            id=snapshot_id(market.address, tick.block_number),
            market_address=market.address,
            block_number=tick.block_number,
            block_timestamp=tick.block_timestamp,
            price=0,
            utilization=compute_utilization(values["total_borrows"], values["cash"]),
            **values,
        )
        return snapshot, degraded

    def _display(self, market: MarketConfig, snapshot: MarketSnapshot) -> Dict[str, str]:
        scale = Decimal(10) ** market.decimals
        return {
            "block_number": str(snapshot.block_number),
            "total_borrows": str(Decimal(snapshot.total_borrows) / scale),
            "cash": str(Decimal(snapshot.cash) / scale),
            "reserves": str(Decimal(snapshot.reserves) / scale),
            "reserve_factor_pct": f"{Decimal(snapshot.reserve_factor) / MANTISSA * 100:.2f}",
            "utilization_pct": f"{snapshot.utilization * 100:.2f}",
        }

    async def capture(self, market: MarketConfig, tick: BlockTick) -> BranchResult:
        """Build and write the snapshot for one market at one tick"""
        snapshot, degraded = await self.build(market, tick)
        log_market_snapshot(self.audit, market.name, self._display(market, snapshot), degraded)

        try:
            created = await run_write(
                self.store.insert_market_snapshot, snapshot,
                timeout=self.config.write_timeout_seconds
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            log_write_failure(self.audit, 'market_snapshot', snapshot.id, f"tick@{tick.block_number}", error)
            MetricsServer.record_market_snapshot(BranchStatus.FAILED.value)
            return BranchResult('market_snapshot', snapshot.id, BranchStatus.FAILED, degraded, error)

        status = BranchStatus.WRITTEN if created else BranchStatus.DUPLICATE
        if status == BranchStatus.DUPLICATE:
            logger.info(f"Snapshot {snapshot.id} already stored, replay ignored")
        MetricsServer.record_market_snapshot(status.value)
        return BranchResult('market_snapshot', snapshot.id, status, degraded)
