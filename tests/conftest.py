import os
import secrets
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'accrual_engine' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Tests drive the scheduler and dispatcher by hand; no background threads
os.environ.setdefault("ENABLE_BACKGROUND_JOBS", "false")

from accrual_engine.main import app  # type: ignore
from accrual_engine.database import Base, configure_sqlite  # type: ignore
from accrual_engine.api import deps  # type: ignore
"""Pytest fixtures and factories.

Important: SQLAlchemy relationship configuration requires all model modules to be imported
before Base.metadata.create_all(), otherwise back_populates targets might not exist yet.
"""
from accrual_engine.models.db import User, UserBalance  # noqa: E402
from accrual_engine.services import purchase_lifecycle as lifecycle  # noqa: E402
from accrual_engine.services.accrual_scheduler import AccrualScheduler  # noqa: E402
from accrual_engine.services.cache_invalidation import CacheInvalidator  # noqa: E402
from accrual_engine.services.outbox_dispatcher import OutboxDispatcher  # noqa: E402
from accrual_engine.services.realtime import NotificationChannel  # noqa: E402
from accrual_engine.services.transaction_coordinator import TransactionCoordinator  # noqa: E402

# 10:00 on 2025-03-10 in America/Bogota (UTC-5, no DST)
NOW = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)
TODAY = NOW.date()

# File-based SQLite so sessions opened by the services and by the test share data
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_accrual.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
configure_sqlite(engine)


# WAL lets a test session hold a read open while services commit from their own connections
@event.listens_for(engine, "connect")
def _enable_wal(dbapi_connection, connection_record):
    dbapi_connection.execute("PRAGMA journal_mode=WAL")


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Services resolve database.SessionLocal lazily, so rebinding the module attribute
# points every coordinator/scheduler/dispatcher at the test database.
import accrual_engine.database as _engine_database  # noqa: E402
_engine_database.SessionLocal = TestingSessionLocal  # type: ignore


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.remove(f"test_accrual.db{suffix}")
        except OSError:
            pass


@pytest.fixture(autouse=True)
def _isolate_tables(create_test_db):
    """Empty every table after each test so factories start from a clean slate."""
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db


# ---------- Engine services ----------

@pytest.fixture()
def coordinator():
    return TransactionCoordinator()


@pytest.fixture()
def scheduler(coordinator):
    return AccrualScheduler(coordinator)


@pytest.fixture()
def redis_client():
    """MagicMock standing in for redis.Redis: no keys unless a test says otherwise."""
    client = MagicMock()
    client.scan_iter.return_value = []
    client.delete.return_value = 0
    client.ping.return_value = True
    return client


@pytest.fixture()
def cache(redis_client):
    return CacheInvalidator(client=redis_client)


@pytest.fixture()
def notifier():
    return NotificationChannel()


@pytest.fixture()
def dispatcher(cache, notifier):
    return OutboxDispatcher(cache=cache, notifier=notifier)


@pytest.fixture()
def client(coordinator, scheduler, dispatcher, cache):
    """TestClient without lifespan; services are attached to app.state by hand."""
    app.state.transaction_coordinator = coordinator
    app.state.accrual_scheduler = scheduler
    app.state.outbox_dispatcher = dispatcher
    app.state.cache_invalidator = cache
    return TestClient(app)


@pytest.fixture()
def admin_headers(monkeypatch):
    from accrual_engine import config
    token = f"adm_{secrets.token_hex(8)}"
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", token)
    return {"Authorization": f"Bearer {token}"}


# ---------- Data factory helpers ----------
# Factories use their own short-lived session and hand back detached, loaded
# objects so the test's db_session never holds a transaction open across a
# service call.

@pytest.fixture()
def user_factory():
    def _create(name: str | None = None, *, referred_by: User | None = None, is_admin: bool = False) -> User:
        name = name or f"User {secrets.token_hex(2)}"
        with TestingSessionLocal() as s:
            u = User(
                name=name,
                email=f"{secrets.token_hex(4)}@example.com",
                referred_by_id=referred_by.id if referred_by is not None else None,
                is_admin=is_admin,
            )
            s.add(u)
            s.commit()
            s.refresh(u)
            s.expunge(u)
        return u
    return _create


@pytest.fixture()
def pending_purchase_factory():
    def _create(user: User, principal="1000", *, now: datetime = NOW) -> int:
        with TestingSessionLocal() as s:
            purchase = lifecycle.create_purchase(user.id, principal, now=now)
            s.add(purchase)
            s.commit()
            return purchase.id
    return _create


@pytest.fixture()
def active_purchase_factory(coordinator, pending_purchase_factory):
    """Purchase confirmed through the coordinator, so commission schedules are seeded."""
    def _create(user: User, principal="1000", *, now: datetime = NOW, admin_id: int | None = None) -> int:
        purchase_id = pending_purchase_factory(user, principal, now=now)
        coordinator.confirm_purchase(purchase_id, admin_id, tx_hash=f"0x{secrets.token_hex(16)}", now=now)
        return purchase_id
    return _create


@pytest.fixture()
def fund_user(coordinator):
    """Credit a balance directly (atomic increment) for withdrawal tests."""
    def _fund(user_id: int, amount, currency: str = "USDT") -> None:
        def _op(uow):
            coordinator._credit(uow.session, user_id, currency, Decimal(str(amount)), uow.now)
        coordinator.execute(_op, {"operation": "test_fund", "now": NOW})
    return _fund


@pytest.fixture()
def balance_of(db_session):
    def _get(user_id: int, currency: str = "USDT") -> UserBalance | None:
        # End any open read so the query sees writes made by other sessions
        db_session.rollback()
        return db_session.query(UserBalance).filter_by(user_id=user_id, currency=currency).first()
    return _get


def days_after(n: int):
    """Operational date n days after TODAY."""
    return TODAY + timedelta(days=n)
