"""
Core Data Models and Types

Defines the records, feed payloads, outcomes and errors shared across
the indexer.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, validator
from dataclasses import dataclass, field


# ============================================================================
# Enums
# ============================================================================

class TransactionKind(str, Enum):
    """User transaction classification"""
    SUPPLY = "SUPPLY"
    WITHDRAW = "WITHDRAW"
    BORROW = "BORROW"
    REPAY = "REPAY"
    LIQUIDATE = "LIQUIDATE"        # Liquidator's side of a liquidation
    LIQUIDATED = "LIQUIDATED"      # Borrower's side of a liquidation


class EventName(str, Enum):
    """MToken events consumed from the feed"""
    BORROW = "Borrow"
    REPAY_BORROW = "RepayBorrow"
    MINT = "Mint"
    REDEEM = "Redeem"
    LIQUIDATE_BORROW = "LiquidateBorrow"


class LiquidationRole(str, Enum):
    """Identity suffix for the two liquidation records"""
    BORROWER = "borrower"
    LIQUIDATOR = "liquidator"


class BranchStatus(str, Enum):
    """Terminal state of one side effect of an event or tick"""
    WRITTEN = "written"
    DUPLICATE = "duplicate"        # Identity already stored, replay was a no-op
    SKIPPED = "skipped"            # Nothing to write (e.g. empty liquidator position)
    FAILED = "failed"


# ============================================================================
# Error Types
# ============================================================================

class IndexerError(Exception):
    """Base exception for all indexer errors"""
    pass


class ConfigurationError(IndexerError):
    """Configuration validation or loading error"""
    pass


class DatabaseError(IndexerError):
    """Database connection or query error"""
    pass


class RPCError(IndexerError):
    """RPC provider connection or response error"""
    pass


class ContractReadError(RPCError):
    """A single contract call failed"""
    pass


class StoreWriteError(DatabaseError):
    """The store rejected an insert or merge"""
    pass


class MalformedEventError(IndexerError):
    """Event shape does not match what the classifier expects"""
    pass


# ============================================================================
# Identity helpers
# ============================================================================

def transaction_id(transaction_hash: str, log_index: int, role: Optional[LiquidationRole] = None) -> str:
    """Transaction record identity: {hash}-{logIndex}[-{role}]"""
    base = f"{transaction_hash}-{log_index}"
    if role is not None:
        return f"{base}-{role.value}"
    return base


def position_id(user_address: str, market_address: str) -> str:
    """Position record identity: {user}-{market}"""
    return f"{user_address}-{market_address}"


def snapshot_id(market_address: str, block_number: int) -> str:
    """Market snapshot identity: {market}-{block}"""
    return f"{market_address}-{block_number}"


def _check_address(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not isinstance(v, str) or not v.startswith('0x') or len(v) != 42:
        raise ValueError(f"Invalid Ethereum address: {v}")
    return v


# ============================================================================
# Feed payloads
# ============================================================================

class DecodedEvent(BaseModel):
    """A decoded MToken log as delivered by the event feed"""
    name: str = Field(..., description="Event name (Borrow, Mint, ...)")
    args: Dict[str, Any] = Field(default_factory=dict, description="Decoded event arguments")
    address: str = Field(..., description="Emitting market contract")
    block_number: int = Field(..., ge=0)
    block_timestamp: int = Field(..., ge=0)
    transaction_hash: str = Field(..., description="0x-prefixed transaction hash")
    log_index: int = Field(..., ge=0)

    @validator('address')
    def validate_address(cls, v):
        return _check_address(v)

    @property
    def source(self) -> str:
        """Human readable event source used in logs"""
        return f"{self.name}@{self.transaction_hash}:{self.log_index}"


class BlockTick(BaseModel):
    """Periodic block notification"""
    block_number: int = Field(..., ge=0)
    block_timestamp: int = Field(..., ge=0)


# ============================================================================
# Stored records
# ============================================================================

class TransactionRecord(BaseModel):
    """Append-only user transaction row"""
    id: str = Field(..., description="{txHash}-{logIndex}[-{role}]")
    user_address: str
    market_address: str
    transaction_type: TransactionKind
    amount: int = Field(..., ge=0, description="Underlying amount at native precision")
    token_amount: Optional[int] = Field(default=None, ge=0, description="mToken amount")
    block_number: int
    block_timestamp: int
    transaction_hash: str
    related_address: Optional[str] = None

    @validator('user_address', 'market_address', 'related_address')
    def validate_address(cls, v):
        return _check_address(v)

    def to_row(self) -> Dict[str, Any]:
        return self.dict()


class PositionRecord(BaseModel):
    """Current balances for one (user, market) pair"""
    id: str
    user_address: str
    market_address: str
    borrow_balance: int = Field(default=0, ge=0)
    supply_balance: int = Field(default=0, ge=0)
    last_updated_block: int
    last_updated_timestamp: int

    @validator('user_address', 'market_address')
    def validate_address(cls, v):
        return _check_address(v)

    @property
    def is_empty(self) -> bool:
        return self.borrow_balance == 0 and self.supply_balance == 0

    def to_row(self) -> Dict[str, Any]:
        return self.dict()


class MarketSnapshot(BaseModel):
    """Market parameters observed at one block tick"""
    id: str
    market_address: str
    block_number: int
    block_timestamp: int
    price: int = Field(default=0, description="Deferred: always 0 until an oracle is wired in")
    total_borrows: int = 0
    cash: int = 0
    utilization: float = Field(default=0.0, ge=0.0, le=1.0)
    reserves: int = 0
    reserve_factor: int = 0
    supply_cap: int = 0
    borrow_cap: int = 0
    collateral_factor: int = 0
    liquidation_incentive: int = 0
    borrow_enabled: bool = False

    @validator('market_address')
    def validate_address(cls, v):
        return _check_address(v)

    def to_row(self) -> Dict[str, Any]:
        return self.dict()


# ============================================================================
# Processing results
# ============================================================================

@dataclass
class ReadResult:
    """Value of one contract read, or its default when the read failed"""
    value: Any
    succeeded: bool
    error: Optional[str] = None


@dataclass
class BranchResult:
    """Outcome of one write branch"""
    entity: str                    # 'transaction', 'position' or 'market_snapshot'
    identity: str
    status: BranchStatus
    degraded_fields: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == BranchStatus.FAILED


@dataclass
class EventOutcome:
    """Result of processing one event (both branches)"""
    source: str
    records: List[BranchResult] = field(default_factory=list)
    positions: List[BranchResult] = field(default_factory=list)
    error: Optional[str] = None    # Set when the event itself could not be processed

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def branch_failures(self) -> int:
        return sum(1 for r in self.records + self.positions if r.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'error': self.error,
            'records': {r.identity: r.status.value for r in self.records},
            'positions': {r.identity: r.status.value for r in self.positions},
        }
