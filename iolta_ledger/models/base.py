"""
Database engine, session management, and base model.

Every model inherits from Base. Every request gets a session
from get_db().
"""

from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from iolta_ledger.config import get_settings

settings = get_settings()

# pool_pre_ping=True tests connections before using them, which
# handles a restarted database or a stale pooled connection.
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
)

# autocommit=False: the caller decides when a unit of work is
# committed, so a posting is all-or-nothing.
# autoflush=False: SQL is only sent on explicit flush or commit.
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime | None:
    """
    Convert a caller-supplied datetime to naive UTC.

    Aware values are shifted to UTC before the offset is dropped;
    naive values are taken to be UTC already.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def get_db():
    """
    Provide a database session for a single request.

    The try/finally guarantees the session is closed on every
    exit path. Closing an uncommitted session rolls it back,
    so an abandoned request never leaves partial writes behind.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
