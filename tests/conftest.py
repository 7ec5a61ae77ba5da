import itertools
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from circulation.core.config import Settings
from circulation.core.database import Base
from circulation.models.models import Role
from circulation.services.borrowing import BorrowingEngine
from circulation.services.fines import FineService
from circulation.services.inventory import InventoryStore
from circulation.services.reservations import ReservationEngine
from circulation.services.users import UserService

START = datetime(2024, 3, 1, 12, 0)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", scheduler_enabled=False)


@pytest.fixture
def inventory(db, clock):
    return InventoryStore(db, clock)


@pytest.fixture
def users(db, clock):
    return UserService(db, clock)


@pytest.fixture
def fines(db, settings, clock):
    return FineService(db, settings, clock)


@pytest.fixture
def reservations(db, settings, clock):
    return ReservationEngine(db, settings, clock)


@pytest.fixture
def borrowing(db, settings, clock):
    return BorrowingEngine(db, settings, clock)


@pytest.fixture
def make_user(users):
    counter = itertools.count(1)

    def _make(role=Role.STUDENT, name=None):
        n = next(counter)
        return users.register_user(name or f"Reader {n}", f"reader{n}@example.com", role)

    return _make


@pytest.fixture
def make_book(inventory):
    counter = itertools.count(1)

    def _make(copies=1, title=None):
        n = next(counter)
        return inventory.add_book(f"978000000{n:04d}", title or f"Book {n}", "Some Author", copies)

    return _make
