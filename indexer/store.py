"""
State Store

Keyed upsert persistence for the three indexed entities, using the
database's native INSERT ... ON CONFLICT so each write is atomic per key:

- transactions: insert, conflict on id is a no-op
- positions: insert, conflict on id overwrites balances and block stamp
- market snapshots: insert, conflict on id is a no-op
"""

import asyncio
import logging
from typing import Any, Callable, Optional, List

from sqlalchemy import select, func
from sqlalchemy.dialects import postgresql, sqlite

from .types import (
    TransactionRecord, PositionRecord, MarketSnapshot,
    DatabaseError, StoreWriteError
)
from .database import (
    DatabaseManager, UserTransactionModel, UserPositionModel, MarketParametersModel
)

logger = logging.getLogger(__name__)


# Fields overwritten when a position row already exists
POSITION_MERGE_FIELDS = (
    'borrow_balance',
    'supply_balance',
    'last_updated_block',
    'last_updated_timestamp',
)

_INSERT_BUILDERS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


class StateStore:
    """Insert-or-merge store keyed by explicit row identity"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

        dialect = db_manager.dialect_name
        if dialect not in _INSERT_BUILDERS:
            raise DatabaseError(f"Keyed upserts are not supported on dialect '{dialect}'")
        self._insert = _INSERT_BUILDERS[dialect]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_transaction(self, record: TransactionRecord) -> bool:
        """
        Insert a transaction record.

        Returns:
            True if a row was created, False if the identity already existed
        """
        stmt = (
            self._insert(UserTransactionModel)
            .values(**record.to_row())
            .on_conflict_do_nothing(index_elements=['id'])
        )
        return self._execute_write(stmt, 'transaction', record.id) == 1

    def upsert_position(self, record: PositionRecord) -> bool:
        """
        Insert a position, or overwrite its balances and block stamp.

        A row already stamped with a later block is left as is.

        Returns:
            True if the row was inserted or overwritten
        """
        stmt = self._insert(UserPositionModel).values(**record.to_row())
        stmt = stmt.on_conflict_do_update(
            index_elements=['id'],
            set_={name: stmt.excluded[name] for name in POSITION_MERGE_FIELDS},
            where=UserPositionModel.last_updated_block <= stmt.excluded.last_updated_block
        )
        return self._execute_write(stmt, 'position', record.id) == 1

    def insert_market_snapshot(self, snapshot: MarketSnapshot) -> bool:
        """
        Insert a market snapshot.

        Returns:
            True if a row was created, False if this block was already captured
        """
        stmt = (
            self._insert(MarketParametersModel)
            .values(**snapshot.to_row())
            .on_conflict_do_nothing(index_elements=['id'])
        )
        return self._execute_write(stmt, 'market_snapshot', snapshot.id) == 1

    def _execute_write(self, stmt, entity: str, identity: str) -> int:
        try:
            with self.db.get_session() as session:
                result = session.execute(stmt)
                return result.rowcount
        except DatabaseError as e:
            raise StoreWriteError(f"{entity} {identity}: {e}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, record_id: str) -> Optional[TransactionRecord]:
        with self.db.get_session() as session:
            row = session.get(UserTransactionModel, record_id)
            if row is None:
                return None
            return TransactionRecord(
                id=row.id,
                user_address=row.user_address,
                market_address=row.market_address,
                transaction_type=row.transaction_type,
                amount=row.amount,
                token_amount=row.token_amount,
                block_number=row.block_number,
                block_timestamp=row.block_timestamp,
                transaction_hash=row.transaction_hash,
                related_address=row.related_address,
            )

    def get_position(self, record_id: str) -> Optional[PositionRecord]:
        with self.db.get_session() as session:
            row = session.get(UserPositionModel, record_id)
            if row is None:
                return None
            return PositionRecord(
                id=row.id,
                user_address=row.user_address,
                market_address=row.market_address,
                borrow_balance=row.borrow_balance,
                supply_balance=row.supply_balance,
                last_updated_block=row.last_updated_block,
                last_updated_timestamp=row.last_updated_timestamp,
            )

    def get_market_snapshots(self, market_address: str, limit: int = 100) -> List[MarketSnapshot]:
        """Most recent snapshots for a market, newest first"""
        with self.db.get_session() as session:
            rows = session.execute(
                select(MarketParametersModel)
                .where(MarketParametersModel.market_address == market_address)
                .order_by(MarketParametersModel.block_number.desc())
                .limit(limit)
            ).scalars().all()
            return [
                MarketSnapshot(**{
                    column.name: getattr(row, column.name)
                    for column in MarketParametersModel.__table__.columns
                })
                for row in rows
            ]

    def count_transactions(self, user_address: Optional[str] = None) -> int:
        with self.db.get_session() as session:
            query = select(func.count()).select_from(UserTransactionModel)
            if user_address is not None:
                query = query.where(UserTransactionModel.user_address == user_address)
            return session.execute(query).scalar_one()

    def count_positions(self) -> int:
        with self.db.get_session() as session:
            return session.execute(
                select(func.count()).select_from(UserPositionModel)
            ).scalar_one()


# ============================================================================
# Bounded writes
# ============================================================================

async def run_write(write: Callable[..., Any], *args: Any, timeout: float) -> Any:
    """
    Run a blocking store write in a worker thread under a timeout.

    A worker thread cannot be interrupted, so on timeout this still waits
    for the write to settle before raising. Callers holding ordering keys
    keep them until no write of theirs can commit.

    Raises:
        StoreWriteError: the write timed out
    """
    pending = asyncio.ensure_future(asyncio.to_thread(write, *args))
    try:
        return await asyncio.wait_for(asyncio.shield(pending), timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Store write timed out after {timeout}s, waiting for it to settle")
        try:
            await pending
        except Exception as e:
            logger.warning(f"Timed out store write failed: {e}")
        else:
            logger.warning("Timed out store write completed late")
        raise StoreWriteError(f"write timed out after {timeout}s")
