"""
Pytest configuration and shared fixtures for the indexer

Provides:
- Indexer configuration for a single tracked market
- A SQLite-backed store
- A scriptable contract reader standing in for the RPC provider
- Decoded event builders
"""

import os
from typing import Any, Dict, Optional, Set, Tuple

import pytest
from web3 import Web3

from indexer.config import (
    IndexerConfig, RPCConfig, DatabaseConfig, MarketConfig, FeedConfig, EngineConfig
)
from indexer.database import DatabaseManager
from indexer.engine import ReconciliationEngine
from indexer.logging_config import init_logging
from indexer.store import StateStore
from indexer.types import ContractReadError, DecodedEvent


METH_MARKET = Web3.to_checksum_address("0x628ff693426583d9a7fb391e54366292f509d457")
USDC_MARKET = Web3.to_checksum_address("0xedc817a28e8b93b03976fbd4a3ddbc9f7d176c22")
COMPTROLLER = Web3.to_checksum_address("0xfbb21d0380bee3312b33c4353c8936a0f13ef26c")

ALICE = Web3.to_checksum_address("0x1111111111111111111111111111111111111111")
BOB = Web3.to_checksum_address("0x2222222222222222222222222222222222222222")
CAROL = Web3.to_checksum_address("0x3333333333333333333333333333333333333333")

START_BLOCK = 28205827


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    os.environ['ENVIRONMENT'] = 'test'


def pytest_collection_modifyitems(config, items):
    """Mark tests that run several components together as integration tests"""
    for item in items:
        if any(name in item.nodeid for name in ("test_engine", "test_event_feed", "test_store")):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture(scope="session", autouse=True)
def session_logging(tmp_path_factory):
    """Route log files to a temporary directory for the whole session"""
    return init_logging(log_dir=tmp_path_factory.mktemp("logs"), log_level="DEBUG")


# ============================================================================
# Fake contract reader
# ============================================================================

class FakeContractReader:
    """
    Synchronous stand-in for ContractReader.

    Values are keyed by (function, args); a value registered without args
    answers every call of that function. Unregistered reads return 0.
    """

    def __init__(self):
        self.values: Dict[Tuple[str, Optional[tuple]], Any] = {}
        self.failures: Set[str] = set()
        self.calls = []

    def set(self, function_name: str, value: Any, *args):
        self.values[(function_name, tuple(args) if args else None)] = value
        return self

    def fail(self, *function_names: str):
        self.failures.update(function_names)
        return self

    def calls_to(self, function_name: str):
        return [call for call in self.calls if call[1] == function_name]

    def read(self, address, abi, function_name, args=()):
        args = tuple(args)
        self.calls.append((address, function_name, args))
        if function_name in self.failures:
            raise ContractReadError(f"{function_name}{args} on {address} failed: execution reverted")
        if (function_name, args) in self.values:
            return self.values[(function_name, args)]
        return self.values.get((function_name, None), 0)


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'indexer.db'}"


@pytest.fixture
def indexer_config(database_url):
    """One tracked market, no comptroller, short timeouts"""
    return IndexerConfig(
        rpc=RPCConfig(primary_http="http://localhost:8545"),
        database=DatabaseConfig(url=database_url),
        markets={
            "meth": MarketConfig(
                name="Moonwell mETH",
                address=METH_MARKET,
                start_block=START_BLOCK,
            )
        },
        feed=FeedConfig(start_block=START_BLOCK, block_interval=10, max_block_range=100),
        engine=EngineConfig(
            read_timeout_seconds=1.0,
            write_timeout_seconds=5.0,
            max_in_flight=8,
            shutdown_grace_seconds=5.0,
        ),
    )


@pytest.fixture
def two_market_config(database_url):
    """mETH and USDC markets sharing a comptroller"""
    return IndexerConfig(
        rpc=RPCConfig(primary_http="http://localhost:8545"),
        database=DatabaseConfig(url=database_url),
        markets={
            "meth": MarketConfig(
                name="Moonwell mETH",
                address=METH_MARKET,
                comptroller_address=COMPTROLLER,
                start_block=START_BLOCK,
            ),
            "usdc": MarketConfig(
                name="Moonwell USDC",
                address=USDC_MARKET,
                decimals=6,
                comptroller_address=COMPTROLLER,
                start_block=START_BLOCK,
            ),
        },
        feed=FeedConfig(start_block=START_BLOCK, block_interval=10, max_block_range=100),
        engine=EngineConfig(read_timeout_seconds=1.0, write_timeout_seconds=5.0),
    )


# ============================================================================
# Persistence Fixtures
# ============================================================================

@pytest.fixture
def db_manager(database_url):
    manager = DatabaseManager(DatabaseConfig(url=database_url))
    manager.create_tables()
    yield manager
    manager.dispose()


@pytest.fixture
def store(db_manager):
    return StateStore(db_manager)


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def fake_reader():
    return FakeContractReader()


@pytest.fixture
def engine(indexer_config, fake_reader, store):
    return ReconciliationEngine(indexer_config, fake_reader, store)


@pytest.fixture
def make_event():
    """Build a DecodedEvent emitted by the mETH market"""
    def _make(
        name: str,
        args: Dict[str, Any],
        block_number: int = START_BLOCK + 5,
        block_timestamp: int = 1_700_000_000,
        transaction_hash: str = "0xAA",
        log_index: int = 3,
        address: str = METH_MARKET,
    ) -> DecodedEvent:
        return DecodedEvent(
            name=name,
            args=args,
            address=address,
            block_number=block_number,
            block_timestamp=block_timestamp,
            transaction_hash=transaction_hash,
            log_index=log_index,
        )
    return _make
