"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL)
- Test database support (SQLite for local runs)
- Table definitions for subscriptions and usage logs
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Index, text
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from cvarchitect.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

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

    if url.startswith("sqlite"):
        # SQLite manages its own pool; QueuePool sizing does not apply
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the current engine (tests switch databases between runs)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back on any exception.

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
        logger.warning("[database] connection check failed", extra={"error": str(e)})
        return False


# Subscriptions: one row per user, the server-side source of truth for plan + credits
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('plan_id', String(50), nullable=False, server_default='free'),
    Column('billing_cycle', String(20), nullable=False, server_default='monthly'),
    Column('credits', Integer, nullable=False, server_default='0'),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('membership_id', String(100), nullable=True, unique=True),
    Column('provider_plan_id', String(100), nullable=True),
    # Monotonic counter; every credit mutation bumps it so clients can discard stale snapshots
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Usage logs: append-only ledger of credit-affecting actions
usage_logs = Table(
    'usage_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('action', String(50), nullable=False),
    Column('credits_used', Integer, nullable=False),
    Column('remaining_credits', Integer, nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('metadata', JSON, nullable=True),
    # Composite index for history reads: newest first per user
    Index('idx_usage_logs_user_occurred', 'user_id', 'occurred_at'),
)

# Payment-provider webhook events (idempotency + failure tracking)
webhook_events = Table(
    'webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed', Boolean, nullable=False, server_default='false'),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', String(500), nullable=True),
)
