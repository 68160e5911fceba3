"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- SQLite support for tests and local runs (serialized writers)
- Quota table definitions
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, event, MetaData, Table, Column, Integer, String, DateTime, Boolean, Float, JSON, Text, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func, true
import logging
import os

from quota_manager.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    """Make every SQLite transaction BEGIN IMMEDIATE so concurrent units queue on the write lock."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        if ":memory:" in url:
            raise ValueError("In-memory SQLite cannot serialize concurrent units; use a file path")
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
        _enable_sqlite_immediate_transactions(_engine)
    else:
        # Create engine with connection pooling
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# User snapshots, written by the identity collaborator and read-only here
user_infos = Table(
    'user_infos',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('name', Text, nullable=True),
    Column('inviter_id', String(100), nullable=True, index=True),
    Column('github_stars', Text, nullable=True),  # comma-separated resource names
    Column('vip', Integer, nullable=False, server_default='0'),
    Column('company', String(200), nullable=True),
    Column('registered_at', DateTime(timezone=True), nullable=True),
    Column('last_accessed_at', DateTime(timezone=True), nullable=True),
)

# Grant strategies (administered elsewhere, read by the engine)
quota_strategies = Table(
    'quota_strategies',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(100), nullable=False, unique=True),
    Column('title', String(200), nullable=False),
    Column('type', String(20), nullable=False),  # 'single' | 'periodic'
    Column('amount', Float, nullable=False),
    Column('model', String(100), nullable=True),
    Column('condition', Text, nullable=False),
    Column('status', Boolean, nullable=False, server_default=true()),
    Column('expiry_days', Integer, nullable=True),
    Column('beneficiary', String(20), nullable=False, server_default='self'),  # 'self' | 'inviter'
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_quota_strategies_status', 'status'),
)

# Per-user lock anchor; one row per user that ever held quota
quota_accounts = Table(
    'quota_accounts',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Dated quota lots
quota_lots = Table(
    'quota_lots',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Float, nullable=False),
    Column('expiry_date', DateTime(timezone=True), nullable=False),
    Column('status', String(20), nullable=False, server_default='valid'),  # 'valid' | 'expired'
    Column('strategy_id', Integer, ForeignKey('quota_strategies.id'), nullable=True),
    Column('strategy_name', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Expiry scan pattern: valid lots ordered by expiry
    Index('idx_quota_lots_status_expiry', 'status', 'expiry_date'),
    Index('idx_quota_lots_user_status', 'user_id', 'status'),
)

# Strategy execution records (idempotency guard)
quota_executions = Table(
    'quota_executions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('strategy_id', Integer, ForeignKey('quota_strategies.id'), nullable=False),
    Column('user_id', String(100), nullable=False),
    Column('beneficiary_id', String(100), nullable=True),
    Column('period_key', String(40), nullable=False),
    Column('status', String(20), nullable=False),  # 'pending' | 'completed' | 'failed'
    Column('lot_id', Integer, ForeignKey('quota_lots.id'), nullable=True),
    Column('error', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_quota_executions_strategy_user', 'strategy_id', 'user_id'),
    # At most one completed execution per (strategy, user, period)
    Index(
        'uq_quota_executions_completed',
        'strategy_id', 'user_id', 'period_key',
        unique=True,
        postgresql_where=text("status = 'completed'"),
        sqlite_where=text("status = 'completed'"),
    ),
)

# Append-only audit of every ledger delta
quota_audit = Table(
    'quota_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('amount', Float, nullable=False),  # signed delta
    Column('operation', String(20), nullable=False),  # 'recharge' | 'expire' | 'consume'
    Column('strategy_id', Integer, nullable=True),
    Column('strategy_name', String(100), nullable=True),
    Column('lot_id', Integer, nullable=True),
    Column('expiry_date', DateTime(timezone=True), nullable=True),
    Column('details', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_quota_audit_user_created', 'user_id', 'created_at'),
    Index('idx_quota_audit_operation', 'operation'),
)

# Scheduled job runs (expiry passes, reconciliation)
quota_job_runs = Table(
    'quota_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('run_id', String(64), nullable=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', JSON, nullable=True),
    UniqueConstraint('job_name', 'run_id', name='uq_quota_job_runs_job_run'),
)
