"""
Schema and session plumbing for LogToPost (SQLAlchemy Core).

Four tables: users, one entitlement row per user, the webhook dedup log and
the queue of trial grants awaiting an eligibility re-check. Writers go
through ``get_db_session()``, which commits on success and rolls back on error.
"""
from contextlib import contextmanager
from typing import Optional
import logging
import os

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool, QueuePool, StaticPool
from sqlalchemy.sql import func

from logtopost.core.config import settings


logger = logging.getLogger(__name__)

metadata = MetaData()


def _created_at() -> Column:
    return Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False)


users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    _created_at(),
)

user_entitlements = Table(
    "user_entitlements",
    metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("status", String(32), nullable=False),
    Column("plan", String(32), nullable=False),
    Column("generations_used_this_period", Integer, nullable=False, server_default="0"),
    Column("usage_period_start", DateTime(timezone=True), nullable=True),
    Column("has_had_trial", Boolean, nullable=False, server_default=text("false")),
    Column("trial_ends_at", DateTime(timezone=True), nullable=True),
    Column("subscription_ends_at", DateTime(timezone=True), nullable=True),
    Column("billing_customer_ref", String(255), nullable=True),
    Column("billing_subscription_ref", String(255), nullable=True),
    Column("last_event_at", DateTime(timezone=True), nullable=True),
    # bumped on every write; guards read-modify-write cycles
    Column("version", Integer, nullable=False, server_default="1"),
    _created_at(),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint("generations_used_this_period >= 0", name="ck_user_entitlements_used_non_negative"),
    Index("ix_user_entitlements_customer", "billing_customer_ref"),
    Index("ix_user_entitlements_subscription", "billing_subscription_ref"),
    Index("ix_user_entitlements_status", "status"),
)

# status: pending | processed | ignored | dropped | failed
billing_events = Table(
    "billing_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(255), nullable=False, unique=True),
    Column("event_type", String(100), nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("user_id", String(36), nullable=True),
    Column("detail", Text, nullable=True),
    Column("occurred_at", DateTime(timezone=True), nullable=True),
    Column("received_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    Index("ix_billing_events_type_status", "event_type", "status"),
    Index("ix_billing_events_received", "received_at"),
)

# resolution: eligible | revoked, null while pending
trial_eligibility_reviews = Table(
    "trial_eligibility_reviews",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("user_id", String(36), nullable=True),
    Column("reason", Text, nullable=True),
    _created_at(),
    Column("resolved_at", DateTime(timezone=True), nullable=True),
    Column("resolution", String(20), nullable=True),
    Index("ix_trial_reviews_pending", "resolved_at", "created_at"),
)


POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE_SECONDS = 3600

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL so test runs never touch real data."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _pool_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {
            "poolclass": QueuePool,
            "pool_size": POOL_SIZE,
            "max_overflow": MAX_OVERFLOW,
            "pool_timeout": POOL_TIMEOUT,
            "pool_recycle": POOL_RECYCLE_SECONDS,
            "pool_pre_ping": True,
        }
    # an in-memory database lives only as long as its one connection
    memory = ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:")
    return {
        "connect_args": {"check_same_thread": False, "timeout": 30},
        "poolclass": StaticPool if memory else NullPool,
    }


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)bind the module engine; an earlier engine is disposed first."""
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not set (environment or .env)")

    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, echo=False, **_pool_options(url))
    _session_factory = sessionmaker(bind=_engine, autoflush=False)
    logger.debug(f"Database engine initialised ({_engine.dialect.name})")
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        init_engine()
    return _session_factory


@contextmanager
def get_db_session():
    """Transactional session scope: commit on clean exit, roll back on error."""
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive; tests and local resets only."""
    metadata.drop_all(bind=get_engine())
