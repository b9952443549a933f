"""Pytest fixtures for DoItTimer tests."""

import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine
from sqlmodel.pool import StaticPool

# Set up test config before importing any app modules
from config import Config, DatabaseConfig, LoggingConfig, ServerConfig, set_config

_test_config = Config(
    server=ServerConfig(host="127.0.0.1", port=8000),
    database=DatabaseConfig(url="sqlite://"),
    logging=LoggingConfig(level="DEBUG", log_api_requests=True),
)
set_config(_test_config)

import models  # noqa: E402,F401  registers the tables

USER_ID = "user-a"
OTHER_USER_ID = "user-b"


class ManualTimer:
    def __init__(self, clock: "ManualClock", due: float, seq: int, callback: Callable[[], None]):
        self.clock = clock
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: "ManualTimer") -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class ManualClock:
    """Millisecond clock whose timers only fire on ``advance``."""

    def __init__(self, start_ms: float = 1_700_000_000_000):
        self.now = float(start_ms)
        self._timers: list[ManualTimer] = []
        self._seq = itertools.count()

    def now_ms(self) -> float:
        return self.now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self, self.now + max(0.0, delay_ms), next(self._seq), callback)
        heapq.heappush(self._timers, timer)
        return timer

    def advance(self, ms: float) -> None:
        target = self.now + ms
        while self._timers and self._timers[0].due <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self.now = timer.due
            timer.callback()
        self.now = target

    @property
    def pending(self) -> int:
        return sum(1 for timer in self._timers if not timer.cancelled)


class FrozenNow:
    """Callable ``now`` for services, moved by hand."""

    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs) -> None:
        self.value = self.value + timedelta(**kwargs)


@pytest.fixture(name="engine")
def engine_fixture():
    """Create a test database engine."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="db")
def db_fixture(engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="client")
def client_fixture(engine) -> Generator[TestClient, None, None]:
    """Test client with overridden database, signed in as ``USER_ID``."""
    from database import get_db
    from main import app

    def get_test_db():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = get_test_db

    with TestClient(app, headers={"X-User-Id": USER_ID}) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def frozen_now() -> FrozenNow:
    return FrozenNow(datetime(2026, 3, 10, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def feed():
    from services.realtime import ChangeFeed

    return ChangeFeed()
