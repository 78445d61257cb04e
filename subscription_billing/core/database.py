"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (server databases only)
- Test database support
- Billing table definitions
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import event, create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Numeric, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy.engine import make_url
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from subscription_billing.core.config import settings


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

logger = logging.getLogger("billing.database")


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _enable_sqlite_savepoints(engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works on pysqlite."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


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

    if make_url(url).get_backend_name() == "sqlite":
        # SQLite keeps its own pool; sizing options do not apply
        _engine = create_engine(url, echo=False)
        _enable_sqlite_savepoints(_engine)
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
    """Drop the cached engine so the next call re-reads the database URL."""
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

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Commits on clean exit, rolls back on any exception.
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
    """Join the caller's transaction when one is given, else open a new one."""
    if session is not None:
        yield session
        return
    with get_db_session() as own:
        yield own


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
        logger.warning("Database connection check failed: %s", e)
        return False


# Tenants (central directory)
tenants = Table(
    'tenants',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('slug', String(100), nullable=False, unique=True),
    Column('name', String(200), nullable=False),
    Column('email', String(255), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Users per tenant; only active users count toward plan capacity
tenant_users = Table(
    'tenant_users',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
    Column('email', String(255), nullable=False),
    Column('is_active', Boolean, nullable=False, default=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('tenant_id', 'email', name='uq_tenant_users_email'),
    Index('idx_tenant_users_tenant_active', 'tenant_id', 'is_active'),
)

# Feature flags (written only by the plan manager)
tenant_features = Table(
    'tenant_features',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
    Column('feature', String(50), nullable=False),
    Column('enabled', Boolean, nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('tenant_id', 'feature', name='uq_tenant_features_feature'),
)

# Subscriptions (one per tenant)
billing_subscriptions = Table(
    'billing_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False, unique=True),
    Column('plan', String(20), nullable=False),  # starter, team, enterprise
    Column('status', String(20), nullable=False, index=True),  # active, past_due, canceled, paused
    Column('status_event', String(100), nullable=True),
    Column('status_changed_at', DateTime(timezone=True), nullable=True),
    Column('is_trial', Boolean, nullable=False, default=False),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('user_limit', Integer, nullable=True),  # NULL = unlimited
    Column('addons', JSON, nullable=False, default=list),
    Column('billing_period_started_at', DateTime(timezone=True), nullable=True),
    Column('billing_period_ends_at', DateTime(timezone=True), nullable=True),
    Column('next_renewal_at', DateTime(timezone=True), nullable=True),
    Column('subscription_start_date', DateTime(timezone=True), nullable=True),
    Column('pending_plan', String(20), nullable=True),
    Column('pending_user_limit', Integer, nullable=True),
    Column('pending_plan_effective_at', DateTime(timezone=True), nullable=True),
    Column('failed_renewal_attempts', Integer, nullable=False, server_default=text('0')),
    Column('grace_period_until', DateTime(timezone=True), nullable=True),
    Column('last_renewal_at', DateTime(timezone=True), nullable=True),
    Column('billing_gateway', String(20), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('version', Integer, nullable=False, server_default=text('1')),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_billing_subscriptions_renewal', 'status', 'is_trial', 'billing_period_ends_at'),
)

# Payment snapshots (append-only ledger)
billing_payments = Table(
    'billing_payments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.id'), nullable=False, index=True),
    Column('subscription_id', Integer, nullable=True),
    Column('plan', String(20), nullable=False),
    Column('user_limit', Integer, nullable=True),
    Column('addons', JSON, nullable=False, default=list),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('cycle_start', DateTime(timezone=True), nullable=False),
    Column('cycle_end', DateTime(timezone=True), nullable=False),
    Column('stripe_payment_intent_id', String(100), nullable=False, unique=True),
    Column('status', String(20), nullable=False, index=True),  # pending, paid, failed
    Column('paid_at', DateTime(timezone=True), nullable=True),
    Column('applied_at', DateTime(timezone=True), nullable=True),
    Column('metadata_json', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_billing_payments_tenant_cycle', 'tenant_id', 'cycle_start'),
)

# Plan change audit log (append-only)
subscription_plan_history = Table(
    'subscription_plan_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.id'), nullable=False, index=True),
    Column('previous_plan', String(20), nullable=True),
    Column('new_plan', String(20), nullable=False),
    Column('previous_user_limit', Integer, nullable=True),
    Column('new_user_limit', Integer, nullable=True),
    Column('changed_at', DateTime(timezone=True), nullable=False),
    Column('changed_by', String(100), nullable=False),
    Column('notes', Text, nullable=True),
)

# Payment failures awaiting resolution
billing_payment_failures = Table(
    'billing_payment_failures',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.id'), nullable=False, index=True),
    Column('stripe_invoice_id', String(100), nullable=True),
    Column('stripe_payment_intent_id', String(100), nullable=True),
    Column('reason', Text, nullable=True),
    Column('amount', Numeric(12, 2), nullable=True),
    Column('status', String(20), nullable=False, index=True),  # pending, retrying, resolved, abandoned
    Column('failed_at', DateTime(timezone=True), nullable=False),
    Column('resolved_at', DateTime(timezone=True), nullable=True),
    Column('reminder_count', Integer, nullable=False, server_default=text('0')),
    Column('resolution_method', String(100), nullable=True),
    Column('notes', Text, nullable=True),
)

# Gateway invoices mirrored for ERP processing
billing_invoices = Table(
    'billing_invoices',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.id'), nullable=False, index=True),
    Column('tenant_slug', String(100), nullable=True),
    Column('stripe_invoice_id', String(100), nullable=False, unique=True),
    Column('status', String(20), nullable=False),  # draft, open, paid, void, uncollectible
    Column('amount_due', Numeric(12, 2), nullable=False, server_default=text('0')),
    Column('amount_paid', Numeric(12, 2), nullable=False, server_default=text('0')),
    Column('currency', String(3), nullable=False),
    Column('pdf_url', Text, nullable=True),
    Column('billing_period_start', DateTime(timezone=True), nullable=True),
    Column('billing_period_end', DateTime(timezone=True), nullable=True),
    Column('metadata_json', JSON, nullable=True),
    Column('erp_processed', Boolean, nullable=False, default=False),
    Column('erp_processed_at', DateTime(timezone=True), nullable=True),
    Column('erp_deadline_at', DateTime(timezone=True), nullable=True),
    Column('erp_notes', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_billing_invoices_erp', 'erp_processed', 'erp_deadline_at'),
)

# Scheduled job ledger
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),  # success, failed
    Column('stats_json', Text, nullable=True),
)
