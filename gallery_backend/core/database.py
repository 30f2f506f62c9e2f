"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory with StaticPool)
- Table definitions for the subscription lifecycle engine
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, JSON, Text, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from gallery_backend.core.config import settings


logger = logging.getLogger("gallery.database")

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
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
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

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the current engine so the next call re-initializes it."""
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
    Context manager for database sessions. Commits on clean exit, rolls
    back on any exception.

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


@contextmanager
def session_scope(session: Optional[Session] = None):
    """Reuse the caller's session when given, otherwise open a new one."""
    if session is not None:
        yield session
        return
    with get_db_session() as new_session:
        yield new_session


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Accounts: one row per photographer. Subscription state lives here and is
# only mutated through guarded updates in features/lifecycle/state_machine.py
accounts = Table(
    'accounts',
    metadata,
    Column('account_id', String(100), primary_key=True),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('email', String(320), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('plan', String(50), nullable=False, server_default='free'),
    Column('subscription_status', String(50), nullable=False, server_default='active'),
    Column('payment_failure_count', Integer, nullable=False, server_default='0'),
    Column('payment_failed_at', DateTime(timezone=True), nullable=True),
    Column('grace_period_ends_at', DateTime(timezone=True), nullable=True),
    Column('previous_plan', String(50), nullable=True),
    Column('downgraded_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_accounts_stripe_customer_id', 'stripe_customer_id'),
    # Sweep lookup: (status, grace_period_ends_at)
    Index('idx_accounts_status_grace', 'subscription_status', 'grace_period_ends_at'),
)

# Galleries: the content unit subject to capacity archival
galleries = Table(
    'galleries',
    metadata,
    Column('gallery_id', String(100), primary_key=True),
    Column('account_id', String(100), ForeignKey('accounts.account_id'), nullable=False),
    Column('title', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('archived_at', DateTime(timezone=True), nullable=True),
    Column('archived_reason', String(50), nullable=True),  # downgrade, payment_failed
    # Composite index for the oldest-first keep selection
    Index('idx_galleries_account_created', 'account_id', 'created_at'),
    Index('idx_galleries_account_archived', 'account_id', 'archived_at'),
)

# Scheduled deletions: cancellable intent to remove content after a horizon
scheduled_deletions = Table(
    'scheduled_deletions',
    metadata,
    Column('deletion_id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), ForeignKey('accounts.account_id'), nullable=False, index=True),
    Column('deletion_type', String(50), nullable=False),  # user_storage
    Column('scheduled_for', DateTime(timezone=True), nullable=False),
    Column('warning_sent_at', DateTime(timezone=True), nullable=True),
    Column('executed_at', DateTime(timezone=True), nullable=True),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Pending-deletion scans filter on (executed_at, canceled_at, scheduled_for)
    Index('idx_scheduled_deletions_pending', 'executed_at', 'canceled_at', 'scheduled_for'),
    Index('idx_scheduled_deletions_account_type', 'account_id', 'deletion_type'),
    # At most one active record per account per deletion type
    Index(
        'uq_scheduled_deletions_active',
        'account_id',
        'deletion_type',
        unique=True,
        postgresql_where=text('executed_at IS NULL AND canceled_at IS NULL'),
        sqlite_where=text('executed_at IS NULL AND canceled_at IS NULL'),
    ),
)

# Lifecycle events: append-only audit log and idempotency boundary.
# idempotency_key = "<correlation_id>:<event_type>" for step events; failure
# rows leave it NULL so every failed attempt is recorded.
lifecycle_events = Table(
    'lifecycle_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), ForeignKey('accounts.account_id'), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('previous_plan', String(50), nullable=True),
    Column('new_plan', String(50), nullable=True),
    Column('correlation_id', String(255), nullable=True),
    Column('idempotency_key', String(400), nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('idempotency_key', name='uq_lifecycle_events_idempotency_key'),
    Index('idx_lifecycle_events_account_created', 'account_id', 'created_at'),
    Index('idx_lifecycle_events_correlation', 'correlation_id'),
    Index('idx_lifecycle_events_type', 'event_type'),
)

# Job runs for sweeps and scans
lifecycle_job_runs = Table(
    'lifecycle_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(50), nullable=False),  # success, partial, failed
    Column('stats_json', Text, nullable=True),
)
