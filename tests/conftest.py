import os
import sys
from pathlib import Path
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure project root on sys.path so the package resolves without installation
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Keep test runs from writing the rotating JSON log file.
os.environ.setdefault("LOG_FILE", "")

from email_reconciler.database import Base  # type: ignore  # noqa: E402
"""Pytest fixtures.

Important: all model modules must be imported before Base.metadata.create_all().
"""
from email_reconciler.models.db import Email, EventLog, DeveloperSetting  # noqa: E402,F401
from email_reconciler.reconciliation.event_logger import ReconciliationEventLogger  # noqa: E402
from email_reconciler.reconciliation.types import TaskRegistry  # noqa: E402
from email_reconciler.services.advisory_lock import InProcessLockProvider  # noqa: E402
from email_reconciler.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER  # noqa: E402

from tests.fakes import (  # noqa: E402
    FakePostmarkAPI,
    FakeSettings,
    InMemoryEmailStore,
    RecordingEventSink,
)


@pytest.fixture(autouse=True)
def _isolate_circuit_breaker():
    """Reset the process-wide circuit breaker so failures never spill between tests."""
    GLOBAL_CIRCUIT_BREAKER.reset()
    yield
    GLOBAL_CIRCUIT_BREAKER.reset()


# In-memory SQLite shared across threads (repositories run sessions via asyncio.to_thread).
@pytest.fixture()
def engine():
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture()
def settings():
    return FakeSettings()


@pytest.fixture()
def event_sink():
    return RecordingEventSink()


@pytest.fixture()
def event_logger(event_sink):
    return ReconciliationEventLogger(event_sink)


@pytest.fixture()
def email_store():
    return InMemoryEmailStore()


@pytest.fixture()
def postmark_api():
    return FakePostmarkAPI()


@pytest.fixture()
def registry():
    return TaskRegistry()


@pytest.fixture()
def lock_provider():
    return InProcessLockProvider()
