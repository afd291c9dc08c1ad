"""Shared test fixtures for the retry scheduler tests.

Each test gets its own SQLite file through aiosqlite, so concurrent
workers see one real database without PostgreSQL.
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from retry_service.clock import ClockMock
from retry_service.database import Base, build_session_factory
from retry_service.gateway import MockPaymentGateway
from retry_service.models import PaymentAttempt  # noqa: F401  registers the table
from retry_service.policy import RetryPolicy
from retry_service.scheduler import RetryScheduler
from retry_service.store import AttemptStore

START = datetime(2026, 1, 15, 12, 0, 0)
PAYMENT_FAILURE_RETRY_DAYS = (1, 3, 5)
PLUGIN_FAILURE_RETRY_MAX_ATTEMPTS = 3


class RecordingPublisher:
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'attempts.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return ClockMock(START)


@pytest.fixture
def store(session_factory, clock):
    return AttemptStore(session_factory, clock)


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def policy():
    return RetryPolicy(
        payment_failure_retry_days=PAYMENT_FAILURE_RETRY_DAYS,
        plugin_failure_retry_max_attempts=PLUGIN_FAILURE_RETRY_MAX_ATTEMPTS,
        plugin_failure_retry_delay=timedelta(days=1),
    )


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def scheduler(store, gateway, policy, clock, publisher):
    return RetryScheduler(store, gateway, policy, clock, publisher=publisher)
