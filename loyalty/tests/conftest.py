from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from loyalty.errors import NotificationError
from loyalty.service import LedgerService
from loyalty.sql_store import SqlLedgerStore
from loyalty.store import InMemoryLedgerStore


START = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Advances one second on every read so ledger rows never share a timestamp."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        now = self.current
        self.current += timedelta(seconds=1)
        return now

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def notify(self, event_type, payload):
        self.events.append((event_type, payload))

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    def notify(self, event_type, payload):
        self.calls += 1
        raise NotificationError("event bus unavailable")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()


@pytest.fixture
def sql_store():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    store = SqlLedgerStore(engine)
    store.create_schema()
    yield store
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryLedgerStore()
    return request.getfixturevalue("sql_store")


@pytest.fixture
def service(store, notifier, clock):
    return LedgerService(store, notifier, clock=clock)
