"""
Unit tests for configuration loading
"""

import pytest
import yaml

from indexer.config import ConfigLoader, MarketConfig, init_config
from indexer.types import ConfigurationError

from conftest import METH_MARKET, COMPTROLLER


def write_config(path, **overrides):
    data = {
        "rpc": {"primary_http": "http://localhost:8545"},
        "markets": {
            "meth": {
                "name": "Moonwell mETH",
                "address": METH_MARKET.lower(),
                "comptroller_address": COMPTROLLER.lower(),
                "start_block": 28205827,
            }
        },
    }
    data.update(overrides)
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("RPC_PRIMARY_HTTP", "RPC_PRIMARY_WS", "RPC_BACKUP_HTTP", "DATABASE_URL",
                 "DB_USER", "DB_PASSWORD", "DB_HOST", "REDIS_HOST", "REDIS_PASSWORD", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.unit
def test_load_defaults(tmp_path):
    config = init_config(write_config(tmp_path / "config.yaml"))

    assert config.chain_id == 8453
    assert config.network_name == "base"
    assert config.feed.block_interval == 10
    assert config.engine.max_in_flight == 32
    assert config.database.connection_string() == "postgresql://indexer:@localhost:5432/indexer"


@pytest.mark.unit
def test_market_addresses_are_checksummed(tmp_path):
    config = ConfigLoader(write_config(tmp_path / "config.yaml")).load()

    market = config.markets["meth"]
    assert market.address == METH_MARKET
    assert market.comptroller_address == COMPTROLLER
    assert config.market_by_address(METH_MARKET.lower()) is market
    assert config.market_by_address("0x" + "00" * 20) is None


@pytest.mark.unit
def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("RPC_PRIMARY_HTTP", "https://mainnet.base.org")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///indexer.db")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    config = ConfigLoader(write_config(tmp_path / "config.yaml")).load()

    assert config.rpc.primary_http == "https://mainnet.base.org"
    assert config.database.connection_string() == "sqlite:///indexer.db"
    assert config.monitoring.log_level == "DEBUG"


@pytest.mark.unit
def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        ConfigLoader(tmp_path / "missing.yaml").load()


@pytest.mark.unit
def test_markets_required(tmp_path):
    with pytest.raises(ConfigurationError):
        ConfigLoader(write_config(tmp_path / "config.yaml", markets={})).load()


@pytest.mark.unit
def test_duplicate_market_addresses_rejected(tmp_path):
    markets = {
        "a": {"name": "A", "address": METH_MARKET},
        "b": {"name": "B", "address": METH_MARKET.lower()},
    }
    with pytest.raises(ConfigurationError):
        ConfigLoader(write_config(tmp_path / "config.yaml", markets=markets)).load()


@pytest.mark.unit
def test_invalid_market_address_rejected():
    with pytest.raises(ValueError):
        MarketConfig(name="bad", address="0x1234")


@pytest.mark.unit
def test_block_interval_must_be_positive(tmp_path):
    with pytest.raises(ConfigurationError):
        ConfigLoader(write_config(tmp_path / "config.yaml", feed={"block_interval": 0})).load()
