"""
Event Classifier & Record Builder

Maps a decoded MToken event to its transaction record(s) and to the
positions it touches. Pure functions: no reads, no writes.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .types import (
    DecodedEvent, EventName, LiquidationRole, TransactionKind, TransactionRecord,
    MalformedEventError, transaction_id, position_id
)


@dataclass(frozen=True)
class PositionTarget:
    """A (user, market) pair to reconcile, with balances already known from the event"""
    user_address: str
    market_address: str
    known_borrow_balance: Optional[int] = None
    known_supply_balance: Optional[int] = None
    require_nonzero: bool = False   # Only write if some balance is non-zero

    @property
    def id(self) -> str:
        return position_id(self.user_address, self.market_address)


def _arg(event: DecodedEvent, name: str, kind: type) -> Any:
    try:
        value = event.args[name]
    except KeyError:
        raise MalformedEventError(f"{event.source}: missing argument '{name}'")
    if kind is int and (isinstance(value, bool) or not isinstance(value, int)):
        raise MalformedEventError(f"{event.source}: argument '{name}' is not an integer: {value!r}")
    if kind is str and not (isinstance(value, str) and value.startswith('0x') and len(value) == 42):
        raise MalformedEventError(f"{event.source}: argument '{name}' is not an address: {value!r}")
    return value


def _same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


def _record(
    event: DecodedEvent,
    market_address: str,
    kind: TransactionKind,
    user: str,
    amount: int,
    token_amount: Optional[int] = None,
    related: Optional[str] = None,
    role: Optional[LiquidationRole] = None,
) -> TransactionRecord:
    return TransactionRecord(
        id=transaction_id(event.transaction_hash, event.log_index, role),
        user_address=user,
        market_address=market_address,
        transaction_type=kind,
        amount=amount,
        token_amount=token_amount,
        block_number=event.block_number,
        block_timestamp=event.block_timestamp,
        transaction_hash=event.transaction_hash,
        related_address=related,
    )


# ============================================================================
# Transaction records
# ============================================================================

def _borrow_records(event: DecodedEvent, market: str) -> List[TransactionRecord]:
    return [_record(
        event, market, TransactionKind.BORROW,
        user=_arg(event, 'borrower', str),
        amount=_arg(event, 'borrowAmount', int),
    )]


def _repay_records(event: DecodedEvent, market: str) -> List[TransactionRecord]:
    payer = _arg(event, 'payer', str)
    borrower = _arg(event, 'borrower', str)
    return [_record(
        event, market, TransactionKind.REPAY,
        user=borrower,
        amount=_arg(event, 'repayAmount', int),
        related=None if _same_address(payer, borrower) else payer,
    )]


def _mint_records(event: DecodedEvent, market: str) -> List[TransactionRecord]:
    return [_record(
        event, market, TransactionKind.SUPPLY,
        user=_arg(event, 'minter', str),
        amount=_arg(event, 'mintAmount', int),
        token_amount=_arg(event, 'mintTokens', int),
    )]


def _redeem_records(event: DecodedEvent, market: str) -> List[TransactionRecord]:
    return [_record(
        event, market, TransactionKind.WITHDRAW,
        user=_arg(event, 'redeemer', str),
        amount=_arg(event, 'redeemAmount', int),
        token_amount=_arg(event, 'redeemTokens', int),
    )]


def _liquidation_records(event: DecodedEvent, market: str) -> List[TransactionRecord]:
    liquidator = _arg(event, 'liquidator', str)
    borrower = _arg(event, 'borrower', str)
    repay_amount = _arg(event, 'repayAmount', int)
    seize_tokens = _arg(event, 'seizeTokens', int)
    _arg(event, 'mTokenCollateral', str)

    return [
        _record(
            event, market, TransactionKind.LIQUIDATED,
            user=borrower,
            amount=repay_amount,
            token_amount=seize_tokens,
            related=liquidator,
            role=LiquidationRole.BORROWER,
        ),
        _record(
            event, market, TransactionKind.LIQUIDATE,
            user=liquidator,
            amount=repay_amount,
            token_amount=seize_tokens,
            related=borrower,
            role=LiquidationRole.LIQUIDATOR,
        ),
    ]


_RECORD_BUILDERS: Dict[str, Callable[[DecodedEvent, str], List[TransactionRecord]]] = {
    EventName.BORROW.value: _borrow_records,
    EventName.REPAY_BORROW.value: _repay_records,
    EventName.MINT.value: _mint_records,
    EventName.REDEEM.value: _redeem_records,
    EventName.LIQUIDATE_BORROW.value: _liquidation_records,
}


def build_transaction_records(event: DecodedEvent, market_address: str) -> List[TransactionRecord]:
    """
    Build the transaction record drafts for an event.

    Args:
        event: Decoded event
        market_address: Tracked market the event was emitted by

    Returns:
        One record, or two for LiquidateBorrow (borrower and liquidator side)

    Raises:
        MalformedEventError: unknown event name or argument shape
    """
    builder = _RECORD_BUILDERS.get(event.name)
    if builder is None:
        raise MalformedEventError(f"{event.source}: unsupported event '{event.name}'")
    try:
        return builder(event, market_address)
    except ValueError as e:
        # Record validation (e.g. negative amount)
        raise MalformedEventError(f"{event.source}: {e}") from e


# ============================================================================
# Position targets
# ============================================================================

def position_targets(
    event: DecodedEvent,
    market_address: str,
    tracked_markets: Iterable[str] = (),
) -> List[PositionTarget]:
    """
    Positions an event implicates, in reconciliation order.

    Borrow and RepayBorrow carry the account's new borrow balance, so only
    the supply side needs a read. A liquidation also refreshes both parties
    in the collateral market when that market is tracked.

    Raises:
        MalformedEventError: unknown event name or argument shape
    """
    name = event.name

    if name == EventName.BORROW.value:
        return [PositionTarget(
            _arg(event, 'borrower', str), market_address,
            known_borrow_balance=_arg(event, 'accountBorrows', int),
        )]

    if name == EventName.REPAY_BORROW.value:
        return [PositionTarget(
            _arg(event, 'borrower', str), market_address,
            known_borrow_balance=_arg(event, 'accountBorrows', int),
        )]

    if name == EventName.MINT.value:
        return [PositionTarget(_arg(event, 'minter', str), market_address)]

    if name == EventName.REDEEM.value:
        return [PositionTarget(_arg(event, 'redeemer', str), market_address)]

    if name == EventName.LIQUIDATE_BORROW.value:
        borrower = _arg(event, 'borrower', str)
        liquidator = _arg(event, 'liquidator', str)
        collateral = _arg(event, 'mTokenCollateral', str)

        targets = [
            PositionTarget(borrower, market_address),
            PositionTarget(liquidator, market_address, require_nonzero=True),
        ]

        tracked = {address.lower(): address for address in tracked_markets}
        collateral_market = tracked.get(collateral.lower())
        if collateral_market is not None and not _same_address(collateral_market, market_address):
            targets.append(PositionTarget(borrower, collateral_market))
            targets.append(PositionTarget(liquidator, collateral_market, require_nonzero=True))

        return targets

    raise MalformedEventError(f"{event.source}: unsupported event '{name}'")
