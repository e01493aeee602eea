"""
Unit tests for the market snapshot builder
"""

from unittest.mock import Mock

import pytest

from indexer.markets import MarketSnapshotBuilder, compute_utilization
from indexer.store import StateStore
from indexer.types import BlockTick, BranchStatus, StoreWriteError

from conftest import METH_MARKET, COMPTROLLER, START_BLOCK


@pytest.fixture
def tick():
    return BlockTick(block_number=START_BLOCK + 10, block_timestamp=1_700_000_020)


# ============================================================================
# Utilization
# ============================================================================

@pytest.mark.unit
@pytest.mark.parametrize("total_borrows, cash, expected", [
    (0, 0, 0.0),
    (50, 50, 0.5),
    (0, 100, 0.0),
    (100, 0, 1.0),
    (1, 3, 0.25),
])
def test_compute_utilization(total_borrows, cash, expected):
    assert compute_utilization(total_borrows, cash) == expected


# ============================================================================
# Snapshots
# ============================================================================

@pytest.mark.asyncio
async def test_snapshot_reads_market_fields(fake_reader, store, indexer_config, tick):
    fake_reader.set("totalBorrows", 50 * 10**18).set("getCash", 50 * 10**18)
    fake_reader.set("totalReserves", 10**18).set("reserveFactorMantissa", 25 * 10**16)
    builder = MarketSnapshotBuilder(fake_reader, store, indexer_config.engine)

    result = await builder.capture(indexer_config.markets["meth"], tick)

    assert result.status == BranchStatus.WRITTEN
    assert result.identity == f"{METH_MARKET}-{START_BLOCK + 10}"
    [snapshot] = store.get_market_snapshots(METH_MARKET)
    assert snapshot.total_borrows == 50 * 10**18
    assert snapshot.cash == 50 * 10**18
    assert snapshot.reserves == 10**18
    assert snapshot.reserve_factor == 25 * 10**16
    assert snapshot.utilization == 0.5
    assert snapshot.price == 0
    # No comptroller configured
    assert snapshot.collateral_factor == 0
    assert snapshot.borrow_enabled is False


@pytest.mark.asyncio
async def test_snapshot_written_when_every_read_fails(fake_reader, store, indexer_config, tick):
    fake_reader.fail("totalBorrows", "getCash", "totalReserves", "reserveFactorMantissa")
    builder = MarketSnapshotBuilder(fake_reader, store, indexer_config.engine)

    result = await builder.capture(indexer_config.markets["meth"], tick)

    assert result.status == BranchStatus.WRITTEN
    assert sorted(result.degraded_fields) == ["cash", "reserve_factor", "reserves", "total_borrows"]
    [snapshot] = store.get_market_snapshots(METH_MARKET)
    assert snapshot.total_borrows == 0
    assert snapshot.utilization == 0.0


@pytest.mark.asyncio
async def test_partial_read_failure_keeps_other_fields(fake_reader, store, indexer_config, tick):
    fake_reader.set("totalBorrows", 30).fail("getCash")
    builder = MarketSnapshotBuilder(fake_reader, store, indexer_config.engine)

    result = await builder.capture(indexer_config.markets["meth"], tick)

    assert result.degraded_fields == ["cash"]
    [snapshot] = store.get_market_snapshots(METH_MARKET)
    assert snapshot.total_borrows == 30
    assert snapshot.cash == 0
    assert snapshot.utilization == 1.0


@pytest.mark.asyncio
async def test_replayed_tick_is_duplicate(fake_reader, store, indexer_config, tick):
    builder = MarketSnapshotBuilder(fake_reader, store, indexer_config.engine)
    market = indexer_config.markets["meth"]

    first = await builder.capture(market, tick)
    second = await builder.capture(market, tick)

    assert first.status == BranchStatus.WRITTEN
    assert second.status == BranchStatus.DUPLICATE
    assert len(store.get_market_snapshots(METH_MARKET)) == 1


@pytest.mark.asyncio
async def test_comptroller_parameters(fake_reader, store, two_market_config, tick):
    market = two_market_config.markets["meth"]
    fake_reader.set("markets", (True, 8 * 10**17), METH_MARKET)
    fake_reader.set("supplyCaps", 1000 * 10**18, METH_MARKET)
    fake_reader.set("borrowCaps", 500 * 10**18, METH_MARKET)
    fake_reader.set("liquidationIncentiveMantissa", 11 * 10**17)
    fake_reader.set("borrowGuardianPaused", False, METH_MARKET)
    builder = MarketSnapshotBuilder(fake_reader, store, two_market_config.engine)

    snapshot, degraded = await builder.build(market, tick)

    assert degraded == []
    assert snapshot.collateral_factor == 8 * 10**17
    assert snapshot.supply_cap == 1000 * 10**18
    assert snapshot.borrow_cap == 500 * 10**18
    assert snapshot.liquidation_incentive == 11 * 10**17
    assert snapshot.borrow_enabled is True
    assert all(call[0] == COMPTROLLER for call in fake_reader.calls_to("supplyCaps"))


@pytest.mark.asyncio
async def test_comptroller_failures_default(fake_reader, store, two_market_config, tick):
    fake_reader.fail("markets", "borrowGuardianPaused")
    builder = MarketSnapshotBuilder(fake_reader, store, two_market_config.engine)

    snapshot, degraded = await builder.build(two_market_config.markets["meth"], tick)

    assert set(degraded) == {"collateral_factor", "borrow_enabled"}
    assert snapshot.collateral_factor == 0
    assert snapshot.borrow_enabled is False


@pytest.mark.asyncio
async def test_snapshot_write_failure_is_reported(fake_reader, indexer_config, tick):
    store = Mock(spec=StateStore)
    store.insert_market_snapshot.side_effect = StoreWriteError("market_snapshot: database is locked")
    builder = MarketSnapshotBuilder(fake_reader, store, indexer_config.engine)

    result = await builder.capture(indexer_config.markets["meth"], tick)

    assert result.status == BranchStatus.FAILED
    assert "database is locked" in result.error


@pytest.mark.asyncio
async def test_unexpected_markets_result_degrades_collateral_factor(fake_reader, store, two_market_config, tick):
    fake_reader.set("markets", True, METH_MARKET)
    fake_reader.set("borrowGuardianPaused", False, METH_MARKET)
    builder = MarketSnapshotBuilder(fake_reader, store, two_market_config.engine)

    result = await builder.capture(two_market_config.markets["meth"], tick)

    assert result.status == BranchStatus.WRITTEN
    assert result.degraded_fields == ["collateral_factor"]
    [snapshot] = store.get_market_snapshots(METH_MARKET)
    assert snapshot.collateral_factor == 0
    assert snapshot.borrow_enabled is True
