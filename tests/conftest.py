"""Pytest configuration and fixtures for publication engine tests."""
import asyncio
import os
from typing import Optional
from uuid import uuid4

import asyncpg
import pytest

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = os.getenv("TEST_DATABASE_URL", "postgresql://localhost/publisher_test")
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise in tests

from fakes import (  # noqa: E402
    FakeCredentialProvider,
    FakeTransport,
    MemoryArticleStore,
    MemoryAttemptStore,
    MemoryDatastore,
    MemoryEmailLogStore,
    MemoryPublicationStore,
    MemoryStaticLinkStore,
    MemorySubscriberStore,
)
from publishing.credentials import RefreshCoalescer  # noqa: E402
from publishing.dispatcher import PublicationDispatcher  # noqa: E402
from publishing.email import EmailDeliveryEngine  # noqa: E402
from publishing.executor import RetryableCallExecutor  # noqa: E402
from publishing.locks import LockManager  # noqa: E402
from publishing.scheduler import PublishingScheduler  # noqa: E402
from publishing.transport import SenderIdentity  # noqa: E402


@pytest.fixture
def datastore():
    return MemoryDatastore()


@pytest.fixture
def publication_store(datastore):
    return MemoryPublicationStore(datastore)


@pytest.fixture
def article_store(datastore):
    return MemoryArticleStore(datastore)


@pytest.fixture
def email_log_store(datastore):
    return MemoryEmailLogStore(datastore)


@pytest.fixture
def locks(publication_store):
    return LockManager(publication_store)


@pytest.fixture
def credentials():
    return FakeCredentialProvider()


@pytest.fixture
def executor(credentials):
    return RetryableCallExecutor(
        coalescer=RefreshCoalescer(credentials, min_interval=0.0),
        max_attempts=3,
        base_delay=0.0,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def email_engine(datastore, article_store, email_log_store, transport, executor):
    return EmailDeliveryEngine(
        articles=article_store,
        subscribers=MemorySubscriberStore(datastore),
        email_logs=email_log_store,
        attempts=MemoryAttemptStore(datastore),
        static_links=MemoryStaticLinkStore(datastore),
        transport=transport,
        executor=executor,
        sender=SenderIdentity(email="newsletter@example.com", name="Newsletter"),
    )


@pytest.fixture
def dispatcher(locks, article_store, email_engine, executor):
    return PublicationDispatcher(
        locks=locks,
        articles=article_store,
        email_engine=email_engine,
        executor=executor,
    )


@pytest.fixture
def make_scheduler(publication_store, locks, dispatcher):
    """Build a scheduler sharing the in-memory tables; one per simulated process."""
    def _make(instance_id: Optional[str] = None, **kwargs) -> PublishingScheduler:
        return PublishingScheduler(
            store=publication_store,
            locks=locks,
            dispatcher=dispatcher,
            instance_id=instance_id or f"worker-{uuid4().hex[:6]}",
            **kwargs,
        )
    return _make


@pytest.fixture
async def db():
    """Provide a clean Postgres database; skipped when none is reachable."""
    from db.connection import db as database
    from db.migrate import reset_database

    try:
        await database.connect()
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    # Reset to clean state
    await reset_database(database)

    yield database

    # Cleanup
    await database.disconnect()


# Test markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (needs PostgreSQL)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow"
    )
