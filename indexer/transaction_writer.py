"""
Transaction Writer

Appends transaction records. A record whose identity is already stored
is left untouched, so replaying an event never duplicates or rewrites it.
"""

import logging

from .store import StateStore, run_write
from .types import BranchResult, BranchStatus, TransactionRecord
from .logging_config import get_logger, log_write_failure
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


class TransactionWriter:
    """Idempotent writer for user transaction records"""

    def __init__(self, store: StateStore, write_timeout: float = 10.0):
        self.store = store
        self.write_timeout = write_timeout
        self.audit = get_logger("reconciliation")

    async def write(self, record: TransactionRecord, source: str = "") -> BranchResult:
        try:
            created = await run_write(self.store.insert_transaction, record, timeout=self.write_timeout)
        except Exception as e:
            error = str(e) or type(e).__name__
            log_write_failure(self.audit, 'transaction', record.id, source, error)
            MetricsServer.record_transaction_write(BranchStatus.FAILED.value)
            return BranchResult('transaction', record.id, BranchStatus.FAILED, error=error)

        if created:
            logger.debug(f"Stored {record.transaction_type.value} {record.id}")
            status = BranchStatus.WRITTEN
        else:
            logger.info(f"Transaction {record.id} already stored, replay ignored")
            status = BranchStatus.DUPLICATE

        MetricsServer.record_transaction_write(status.value)
        return BranchResult('transaction', record.id, status)
