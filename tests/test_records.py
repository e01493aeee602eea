"""
Unit tests for the event classifier and record builder

Tests:
- Event name to transaction kind mapping
- Liquidation dual records and identities
- Repay self-payer omission
- Position targets, including the collateral market refresh
- Malformed event rejection
"""

import pytest

from indexer.records import build_transaction_records, position_targets
from indexer.types import TransactionKind, MalformedEventError

from conftest import METH_MARKET, USDC_MARKET, ALICE, BOB, CAROL


# ============================================================================
# Transaction records
# ============================================================================

@pytest.mark.unit
def test_borrow_record(make_event):
    event = make_event("Borrow", {
        "borrower": ALICE,
        "borrowAmount": 5 * 10**18,
        "accountBorrows": 7 * 10**18,
        "totalBorrows": 100 * 10**18,
    })

    records = build_transaction_records(event, METH_MARKET)

    assert len(records) == 1
    record = records[0]
    assert record.id == "0xAA-3"
    assert record.transaction_type == TransactionKind.BORROW
    assert record.user_address == ALICE
    assert record.market_address == METH_MARKET
    assert record.amount == 5 * 10**18
    assert record.token_amount is None
    assert record.related_address is None
    assert record.block_number == event.block_number
    assert record.transaction_hash == "0xAA"


@pytest.mark.unit
def test_mint_and_redeem_records(make_event):
    mint = make_event("Mint", {"minter": BOB, "mintAmount": 10**18, "mintTokens": 49 * 10**8})
    redeem = make_event("Redeem", {"redeemer": BOB, "redeemAmount": 10**17, "redeemTokens": 5 * 10**8}, log_index=4)

    [supply] = build_transaction_records(mint, METH_MARKET)
    [withdraw] = build_transaction_records(redeem, METH_MARKET)

    assert supply.transaction_type == TransactionKind.SUPPLY
    assert supply.amount == 10**18
    assert supply.token_amount == 49 * 10**8
    assert withdraw.transaction_type == TransactionKind.WITHDRAW
    assert withdraw.id == "0xAA-4"
    assert withdraw.token_amount == 5 * 10**8


@pytest.mark.unit
def test_repay_by_third_party_sets_related_payer(make_event):
    event = make_event("RepayBorrow", {
        "payer": BOB,
        "borrower": ALICE,
        "repayAmount": 10**18,
        "accountBorrows": 0,
        "totalBorrows": 10**20,
    })

    [record] = build_transaction_records(event, METH_MARKET)

    assert record.transaction_type == TransactionKind.REPAY
    assert record.user_address == ALICE
    assert record.related_address == BOB


@pytest.mark.unit
def test_repay_self_payer_omits_related_address(make_event):
    # Same account, different letter case
    event = make_event("RepayBorrow", {
        "payer": ALICE.lower(),
        "borrower": ALICE,
        "repayAmount": 10**18,
        "accountBorrows": 0,
        "totalBorrows": 10**20,
    })

    [record] = build_transaction_records(event, METH_MARKET)

    assert record.related_address is None


@pytest.mark.unit
def test_liquidation_produces_two_records(make_event):
    event = make_event("LiquidateBorrow", {
        "liquidator": BOB,
        "borrower": ALICE,
        "repayAmount": 3 * 10**17,
        "mTokenCollateral": METH_MARKET,
        "seizeTokens": 12 * 10**8,
    })

    records = build_transaction_records(event, METH_MARKET)
    by_id = {record.id: record for record in records}

    assert set(by_id) == {"0xAA-3-borrower", "0xAA-3-liquidator"}

    borrower = by_id["0xAA-3-borrower"]
    liquidator = by_id["0xAA-3-liquidator"]
    assert borrower.transaction_type == TransactionKind.LIQUIDATED
    assert borrower.user_address == ALICE
    assert borrower.related_address == BOB
    assert liquidator.transaction_type == TransactionKind.LIQUIDATE
    assert liquidator.user_address == BOB
    assert liquidator.related_address == ALICE

    for record in records:
        assert record.amount == 3 * 10**17
        assert record.token_amount == 12 * 10**8
        assert record.block_number == event.block_number
        assert record.block_timestamp == event.block_timestamp


@pytest.mark.unit
def test_records_are_deterministic(make_event):
    event = make_event("Mint", {"minter": BOB, "mintAmount": 1, "mintTokens": 1})
    assert build_transaction_records(event, METH_MARKET) == build_transaction_records(event, METH_MARKET)


# ============================================================================
# Malformed events
# ============================================================================

@pytest.mark.unit
def test_unknown_event_is_malformed(make_event):
    event = make_event("Transfer", {"from": ALICE, "to": BOB, "amount": 1})

    with pytest.raises(MalformedEventError, match="unsupported event"):
        build_transaction_records(event, METH_MARKET)
    with pytest.raises(MalformedEventError):
        position_targets(event, METH_MARKET)


@pytest.mark.unit
def test_missing_argument_is_malformed(make_event):
    event = make_event("Borrow", {"borrower": ALICE, "accountBorrows": 1})

    with pytest.raises(MalformedEventError, match="borrowAmount"):
        build_transaction_records(event, METH_MARKET)


@pytest.mark.unit
@pytest.mark.parametrize("args", [
    {"minter": "not-an-address", "mintAmount": 1, "mintTokens": 1},
    {"minter": ALICE, "mintAmount": "1", "mintTokens": 1},
    {"minter": ALICE, "mintAmount": True, "mintTokens": 1},
    {"minter": ALICE, "mintAmount": -1, "mintTokens": 1},
])
def test_ill_typed_argument_is_malformed(make_event, args):
    event = make_event("Mint", args)

    with pytest.raises(MalformedEventError):
        build_transaction_records(event, METH_MARKET)


# ============================================================================
# Position targets
# ============================================================================

@pytest.mark.unit
def test_borrow_target_carries_account_borrows(make_event):
    event = make_event("Borrow", {
        "borrower": ALICE,
        "borrowAmount": 5,
        "accountBorrows": 7,
        "totalBorrows": 100,
    })

    [target] = position_targets(event, METH_MARKET)

    assert target.id == f"{ALICE}-{METH_MARKET}"
    assert target.known_borrow_balance == 7
    assert target.known_supply_balance is None
    assert not target.require_nonzero


@pytest.mark.unit
def test_mint_target_reads_both_balances(make_event):
    event = make_event("Mint", {"minter": BOB, "mintAmount": 1, "mintTokens": 1})

    [target] = position_targets(event, METH_MARKET)

    assert target.user_address == BOB
    assert target.known_borrow_balance is None
    assert target.known_supply_balance is None


@pytest.mark.unit
def test_liquidation_targets_in_same_market(make_event):
    event = make_event("LiquidateBorrow", {
        "liquidator": BOB,
        "borrower": ALICE,
        "repayAmount": 1,
        "mTokenCollateral": METH_MARKET,
        "seizeTokens": 1,
    })

    targets = position_targets(event, METH_MARKET, [METH_MARKET, USDC_MARKET])

    assert [(t.user_address, t.market_address, t.require_nonzero) for t in targets] == [
        (ALICE, METH_MARKET, False),
        (BOB, METH_MARKET, True),
    ]


@pytest.mark.unit
def test_liquidation_refreshes_tracked_collateral_market(make_event):
    event = make_event("LiquidateBorrow", {
        "liquidator": BOB,
        "borrower": ALICE,
        "repayAmount": 1,
        "mTokenCollateral": USDC_MARKET.lower(),
        "seizeTokens": 1,
    })

    targets = position_targets(event, METH_MARKET, [METH_MARKET, USDC_MARKET])

    assert [(t.user_address, t.market_address, t.require_nonzero) for t in targets] == [
        (ALICE, METH_MARKET, False),
        (BOB, METH_MARKET, True),
        (ALICE, USDC_MARKET, False),
        (BOB, USDC_MARKET, True),
    ]


@pytest.mark.unit
def test_liquidation_ignores_untracked_collateral_market(make_event):
    event = make_event("LiquidateBorrow", {
        "liquidator": BOB,
        "borrower": ALICE,
        "repayAmount": 1,
        "mTokenCollateral": CAROL,
        "seizeTokens": 1,
    })

    targets = position_targets(event, METH_MARKET, [METH_MARKET])

    assert len(targets) == 2
