"""
Database Schema and Connection Handling

SQLAlchemy models for the indexed tables, connection management, and a
Redis manager used for block checkpoints.
"""

from typing import Optional, Dict, Any, Iterator
from decimal import Decimal
from contextlib import contextmanager
import logging

from sqlalchemy import (
    create_engine, text, Column, String, BigInteger, Boolean, Float,
    Numeric, Index, Enum as SQLEnum
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.types import TypeDecorator
from sqlalchemy.exc import OperationalError, DisconnectionError
import redis
from redis.exceptions import ConnectionError as RedisConnectionError

from .types import TransactionKind, DatabaseError
from .config import DatabaseConfig, RedisConfig

logger = logging.getLogger(__name__)

Base = declarative_base()


# ============================================================================
# Column Types
# ============================================================================

class Uint256(TypeDecorator):
    """
    Exact unsigned 256-bit integer.

    NUMERIC(78, 0) on PostgreSQL; a decimal string on backends without a
    wide exact numeric type, so wei amounts never pass through float.
    """
    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(78))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return Decimal(int(value))
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


# ============================================================================
# SQLAlchemy Models
# ============================================================================

class UserTransactionModel(Base):
    """Append-only user transactions table"""
    __tablename__ = 'user_transactions'

    id = Column(String(140), primary_key=True)  # {txHash}-{logIndex}[-{role}]
    user_address = Column(String(42), nullable=False, index=True)
    market_address = Column(String(42), nullable=False, index=True)
    transaction_type = Column(SQLEnum(TransactionKind), nullable=False)
    amount = Column(Uint256(), nullable=False)
    token_amount = Column(Uint256(), nullable=True)
    block_number = Column(BigInteger, nullable=False, index=True)
    block_timestamp = Column(BigInteger, nullable=False)
    transaction_hash = Column(String(66), nullable=False, index=True)
    related_address = Column(String(42), nullable=True)

    __table_args__ = (
        Index('idx_tx_user_market', 'user_address', 'market_address'),
    )


class UserPositionModel(Base):
    """Current position per (user, market)"""
    __tablename__ = 'user_positions'

    id = Column(String(85), primary_key=True)  # {user}-{market}
    user_address = Column(String(42), nullable=False, index=True)
    market_address = Column(String(42), nullable=False, index=True)
    borrow_balance = Column(Uint256(), nullable=False)
    supply_balance = Column(Uint256(), nullable=False)
    last_updated_block = Column(BigInteger, nullable=False)
    last_updated_timestamp = Column(BigInteger, nullable=False)


class MarketParametersModel(Base):
    """Market parameter snapshots, one row per market per tick block"""
    __tablename__ = 'market_parameters'

    id = Column(String(64), primary_key=True)  # {market}-{block}
    market_address = Column(String(42), nullable=False)
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)
    price = Column(Uint256(), nullable=False)
    total_borrows = Column(Uint256(), nullable=False)
    cash = Column(Uint256(), nullable=False)
    utilization = Column(Float, nullable=False)
    reserves = Column(Uint256(), nullable=False)
    reserve_factor = Column(Uint256(), nullable=False)
    supply_cap = Column(Uint256(), nullable=False)
    borrow_cap = Column(Uint256(), nullable=False)
    collateral_factor = Column(Uint256(), nullable=False)
    liquidation_incentive = Column(Uint256(), nullable=False)
    borrow_enabled = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index('idx_market_block', 'market_address', 'block_number'),
    )


# ============================================================================
# Database Connection Manager
# ============================================================================

class DatabaseManager:
    """Database connection manager with automatic reconnection"""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine = None
        self.SessionLocal = None
        self._initialize_engine()

    def _initialize_engine(self):
        """Initialize SQLAlchemy engine with connection pooling"""
        connection_string = self.config.connection_string()

        if connection_string.startswith("sqlite"):
            # Reads and writes run in worker threads
            self.engine = create_engine(
                connection_string,
                connect_args={"check_same_thread": False},
                echo=False
            )
        else:
            self.engine = create_engine(
                connection_string,
                pool_size=self.config.pool_size,
                max_overflow=self.config.max_overflow,
                pool_pre_ping=True,
                pool_recycle=3600,
                echo=False
            )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine
        )

        logger.info(f"Database engine initialized ({self.engine.dialect.name})")

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def create_tables(self):
        """Create all tables if they don't exist"""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created/verified")
        except Exception as e:
            logger.error(f"Failed to create tables: {e}")
            raise DatabaseError(f"Table creation failed: {e}")

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """Get database session with automatic commit/rollback"""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except (OperationalError, DisconnectionError) as e:
            session.rollback()
            logger.error(f"Database connection error: {e}")
            raise DatabaseError(f"Database connection lost: {e}") from e
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise DatabaseError(f"Database operation failed: {e}") from e
        finally:
            session.close()

    def health_check(self) -> bool:
        """Check database connection health"""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except DatabaseError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def dispose(self):
        if self.engine is not None:
            self.engine.dispose()


# ============================================================================
# Redis Connection Manager
# ============================================================================

class RedisManager:
    """Redis connection manager with fallback to in-memory storage"""

    def __init__(self, config: RedisConfig):
        self.config = config
        self.client: Optional[redis.Redis] = None
        self._in_memory: Dict[str, Any] = {}
        self._use_fallback = False
        self._connect()

    def _connect(self):
        try:
            self.client = redis.Redis(
                host=self.config.host,
                port=self.config.port,
                password=self.config.password,
                db=self.config.db,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30
            )
            self.client.ping()
            self._use_fallback = False
            logger.info("Redis connection established")
        except RedisConnectionError as e:
            logger.warning(f"Redis connection failed, using in-memory fallback: {e}")
            self._use_fallback = True

    @property
    def using_fallback(self) -> bool:
        return self._use_fallback

    def set(self, key: str, value: str) -> bool:
        if self._use_fallback:
            self._in_memory[key] = value
            return True

        try:
            self.client.set(key, value)
            return True
        except RedisConnectionError:
            logger.warning("Redis set failed, switching to fallback")
            self._use_fallback = True
            self._in_memory[key] = value
            return True

    def get(self, key: str) -> Optional[str]:
        if self._use_fallback:
            return self._in_memory.get(key)

        try:
            return self.client.get(key)
        except RedisConnectionError:
            logger.warning("Redis get failed, switching to fallback")
            self._use_fallback = True
            return self.get(key)

    def health_check(self) -> bool:
        if self._use_fallback:
            return False

        try:
            self.client.ping()
            return True
        except RedisConnectionError:
            logger.warning("Redis health check failed")
            self._use_fallback = True
            return False

    def reconnect(self):
        if self._use_fallback:
            logger.info("Attempting to reconnect to Redis...")
            self._connect()


# ============================================================================
# Initialization
# ============================================================================

def init_database(config: DatabaseConfig) -> DatabaseManager:
    """Create a database manager and make sure the tables exist"""
    db_manager = DatabaseManager(config)
    db_manager.create_tables()
    return db_manager


def init_redis(config: RedisConfig) -> RedisManager:
    """Create a Redis manager"""
    return RedisManager(config)
