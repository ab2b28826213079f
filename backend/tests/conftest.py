"""Shared test fixtures for backend tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from automations.core.store import AUTOMATIONS_KEY, PersistentStore
from automations.models.automation import Automation, DispatchOptions
from automations.services.dispatcher import CompletedAgentInfo, Subscription
from automations.services.scheduler.scheduler import AutomationScheduler

# In-memory SQLite with StaticPool so all connections (including threads) share one DB
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@pytest.fixture(autouse=True)
def setup_test_db():
    """Create all tables before each test, drop after."""
    import automations.models.store  # noqa: F401 - register models
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


class FakeDispatcher:
    """Records run_quick calls and lets tests emit status changes by hand."""

    def __init__(self):
        self.calls: list[tuple[str, DispatchOptions]] = []
        self.completed: list[CompletedAgentInfo] = []
        self.killed: list[str] = []
        self.fail_with: Exception | None = None
        self.handlers = []
        self._counter = 0

    async def run_quick(self, prompt: str, options: DispatchOptions) -> str:
        self.calls.append((prompt, options))
        if self.fail_with:
            raise self.fail_with
        self._counter += 1
        return f"agent-{self._counter}"

    def on_status_change(self, handler) -> Subscription:
        self.handlers.append(handler)
        return Subscription(lambda: self.handlers.remove(handler))

    def emit(self, agent_id: str, status: str, prev_status: str) -> None:
        for handler in list(self.handlers):
            handler(agent_id, status, prev_status)

    def list_completed(self) -> list[CompletedAgentInfo]:
        return list(self.completed)

    def kill(self, agent_id: str) -> bool:
        self.killed.append(agent_id)
        return True


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def at(year=2026, month=2, day=15, hour=10, minute=30, second=0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def make_automation(**overrides) -> Automation:
    data = {
        "id": "auto-1",
        "name": "Test Auto",
        "cron_expression": "* * * * *",
        "prompt": "do stuff",
        "enabled": True,
        "created_at": at(hour=0, minute=0),
        "missed_run_policy": "ignore",
        "last_run_at": None,
    }
    data.update(overrides)
    return Automation.model_validate(data)


async def seed_automations(store: PersistentStore, *automations: Automation) -> None:
    await store.write(AUTOMATIONS_KEY, [a.model_dump(mode="json") for a in automations])


@pytest.fixture
def store():
    return PersistentStore(test_engine)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def clock():
    return FixedClock(at())


@pytest.fixture
def scheduler(store, dispatcher, clock):
    return AutomationScheduler(
        store,
        dispatcher,
        tick_interval=30,
        timezone_name="UTC",
        clock=clock,
    )


async def noop_tick_loop(self):
    """No-op replacement for AutomationScheduler._tick_loop."""
    return


@pytest.fixture
def client(dispatcher):
    """FastAPI TestClient with the database and dispatcher patched."""
    with (
        patch("automations.core.database.engine", test_engine),
        patch("automations.main.QuickAgentDispatcher", return_value=dispatcher),
        patch.object(AutomationScheduler, "_tick_loop", noop_tick_loop),
    ):
        from automations.main import app

        with TestClient(app) as c:
            yield c
