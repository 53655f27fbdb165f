"""Shared fixtures for the test suite."""

from datetime import datetime, timedelta, timezone

import pytest

from activity_sync.config import Settings
from activity_sync.domain.errors import StoreError
from activity_sync.realtime.subscriptions import SubscriptionManager
from activity_sync.services.chat import ChatCoordinator
from activity_sync.services.notifications import NotificationCoordinator
from activity_sync.store.memory import InMemoryDocumentStore

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock advancing by ``step`` on every reading."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(milliseconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FailingStore(InMemoryDocumentStore):
    """In-memory store that raises StoreError for selected operations."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_on = set()

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StoreError(f"simulated {operation} failure")

    async def get(self, collection, doc_id):
        self._check("get")
        return await super().get(collection, doc_id)

    async def query(self, collection, filters=(), sort=None, limit=None):
        self._check("query")
        return await super().query(collection, filters, sort, limit)

    async def batch(self, ops):
        self._check("batch")
        return await super().batch(ops)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store():
    return FailingStore()


@pytest.fixture
def subscriptions(store):
    return SubscriptionManager(store)


@pytest.fixture
def chat(store, subscriptions, settings, clock):
    return ChatCoordinator(store, subscriptions=subscriptions, settings=settings, clock=clock)


@pytest.fixture
def notifications(store, subscriptions, settings, clock):
    return NotificationCoordinator(
        store, subscriptions=subscriptions, settings=settings, clock=clock
    )
