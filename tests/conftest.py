"""
Shared test fixtures.

Sets up an isolated SQLite database so tests never touch the
real database. Tables are created before each test and dropped
after it, so every test starts from an empty ledger.
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from iolta_ledger.main import app
from iolta_ledger.models.base import Base, get_db
from iolta_ledger.services.iolta_service import IoltaService
from iolta_ledger.services.reconciliation_service import ReconciliationService
from iolta_ledger.services.transaction_poster import TransactionPoster
from iolta_ledger.store import LedgerStore


TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)


# pysqlite manages transactions itself and breaks SAVEPOINT;
# hand transaction control to SQLAlchemy instead. Foreign keys
# are off by default in SQLite.
@event.listens_for(engine, "connect")
def _on_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@event.listens_for(engine, "begin")
def _on_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestSessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
)


class FakeClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


@pytest.fixture(autouse=True)
def setup_database():
    """Create all tables before each test, drop them after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Provide a database session for direct service testing."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 9, 0, 0))


@pytest.fixture
def store(db_session):
    return LedgerStore(db_session)


@pytest.fixture
def poster(store, clock):
    return TransactionPoster(store, clock=clock, max_attempts=3)


@pytest.fixture
def iolta_service(store, poster, clock):
    return IoltaService(store, poster, clock=clock)


@pytest.fixture
def reconciliation_service(store, poster, clock):
    return ReconciliationService(store, poster, clock=clock, recent_limit=5)


@pytest.fixture
def client(db_session):
    """
    Provide a test client with the test database.

    The get_db dependency is overridden so the FastAPI app uses
    the test session instead of the real database.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
