"""
Configuration Management System

Hierarchical configuration loading:
1. Environment variables (highest priority)
2. config.yaml file
"""

import os
from typing import Optional, Dict, Any
from pathlib import Path
import yaml
from pydantic import BaseModel, Field, validator
from web3 import Web3

from .types import ConfigurationError


class RPCConfig(BaseModel):
    """RPC provider configuration"""
    primary_http: str = Field(..., description="Primary HTTP RPC endpoint")
    primary_ws: Optional[str] = Field(default=None, description="Primary WebSocket RPC endpoint")
    backup_http: Optional[str] = Field(default=None, description="Backup HTTP RPC endpoint")
    backup_ws: Optional[str] = Field(default=None, description="Backup WebSocket RPC endpoint")
    request_timeout_seconds: int = Field(default=10)


class DatabaseConfig(BaseModel):
    """Database configuration"""
    url: Optional[str] = Field(default=None, description="Full SQLAlchemy URL, overrides the fields below")
    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    database: str = Field(default="indexer")
    user: str = Field(default="indexer")
    password: str = Field(default="")
    pool_size: int = Field(default=20)
    max_overflow: int = Field(default=10)

    def connection_string(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class RedisConfig(BaseModel):
    """Redis configuration (block checkpoints)"""
    host: str = Field(default="localhost")
    port: int = Field(default=6379)
    password: Optional[str] = Field(default=None)
    db: int = Field(default=0)


class MarketConfig(BaseModel):
    """One tracked lending market (an MToken contract)"""
    name: str
    address: str
    abi: str = Field(default="MToken", description="ABI handle, see abis.ABIS")
    decimals: int = Field(default=18, description="Underlying token decimals")
    comptroller_address: Optional[str] = Field(default=None)
    start_block: int = Field(default=0)

    @validator('address', 'comptroller_address')
    def checksum_address(cls, v):
        if v is None:
            return v
        if not Web3.is_address(v):
            raise ValueError(f"Invalid Ethereum address: {v}")
        return Web3.to_checksum_address(v)


class FeedConfig(BaseModel):
    """Event feed configuration"""
    start_block: int = Field(default=0, description="First block to index when no checkpoint exists")
    block_interval: int = Field(default=10, ge=1, description="Blocks between market snapshots")
    confirmation_blocks: int = Field(default=0, ge=0)
    max_block_range: int = Field(default=500, ge=1, description="Max blocks per eth_getLogs call")
    poll_interval_seconds: float = Field(default=2.0)
    retry_backoff_seconds: float = Field(default=1.0, gt=0, description="First delay before re-fetching a failed block range")
    max_retry_backoff_seconds: float = Field(default=30.0, gt=0)


class EngineConfig(BaseModel):
    """Reconciliation engine configuration"""
    read_timeout_seconds: float = Field(default=10.0, gt=0)
    write_timeout_seconds: float = Field(default=10.0, gt=0)
    max_in_flight: int = Field(default=32, ge=1)
    shutdown_grace_seconds: float = Field(default=30.0, gt=0)


class MonitoringConfig(BaseModel):
    """Monitoring and logging configuration"""
    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="logs")
    cloudwatch_enabled: bool = Field(default=False)
    cloudwatch_region: str = Field(default="us-east-1")
    cloudwatch_log_group: str = Field(default="MTokenIndexer")
    metrics_enabled: bool = Field(default=True)
    metrics_port: int = Field(default=8000)


class IndexerConfig(BaseModel):
    """Main configuration model"""
    # Network
    chain_id: int = Field(default=8453)  # Base mainnet
    network_name: str = Field(default="base")

    # Components
    rpc: RPCConfig
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    markets: Dict[str, MarketConfig]
    feed: FeedConfig = Field(default_factory=FeedConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @validator('markets')
    def validate_markets(cls, v):
        if not v:
            raise ValueError("At least one market must be configured")
        addresses = [m.address.lower() for m in v.values()]
        if len(set(addresses)) != len(addresses):
            raise ValueError("Market addresses must be unique")
        return v

    def market_by_address(self, address: str) -> Optional[MarketConfig]:
        """Look up a tracked market by contract address (case-insensitive)"""
        address_lower = address.lower()
        for market in self.markets.values():
            if market.address.lower() == address_lower:
                return market
        return None


class ConfigLoader:
    """Configuration loader with hierarchical loading"""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else Path("config.yaml")

    def load(self) -> IndexerConfig:
        """Load configuration from all sources"""
        config_data = self._load_yaml()
        config_data = self._apply_env_overrides(config_data)

        try:
            return IndexerConfig(**config_data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def _load_yaml(self) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        if not self.config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides"""
        # RPC endpoints
        if os.getenv('RPC_PRIMARY_HTTP'):
            config_data.setdefault('rpc', {})['primary_http'] = os.getenv('RPC_PRIMARY_HTTP')
        if os.getenv('RPC_PRIMARY_WS'):
            config_data.setdefault('rpc', {})['primary_ws'] = os.getenv('RPC_PRIMARY_WS')
        if os.getenv('RPC_BACKUP_HTTP'):
            config_data.setdefault('rpc', {})['backup_http'] = os.getenv('RPC_BACKUP_HTTP')

        # Database
        if os.getenv('DATABASE_URL'):
            config_data.setdefault('database', {})['url'] = os.getenv('DATABASE_URL')
        if os.getenv('DB_USER'):
            config_data.setdefault('database', {})['user'] = os.getenv('DB_USER')
        if os.getenv('DB_PASSWORD'):
            config_data.setdefault('database', {})['password'] = os.getenv('DB_PASSWORD')
        if os.getenv('DB_HOST'):
            config_data.setdefault('database', {})['host'] = os.getenv('DB_HOST')

        # Redis
        if os.getenv('REDIS_HOST'):
            config_data.setdefault('redis', {})['host'] = os.getenv('REDIS_HOST')
        if os.getenv('REDIS_PASSWORD'):
            config_data.setdefault('redis', {})['password'] = os.getenv('REDIS_PASSWORD')

        # Monitoring
        if os.getenv('LOG_LEVEL'):
            config_data.setdefault('monitoring', {})['log_level'] = os.getenv('LOG_LEVEL')

        return config_data


def init_config(config_path: Optional[Path] = None) -> IndexerConfig:
    """Load configuration from a custom path (default: config.yaml)"""
    return ConfigLoader(config_path).load()
