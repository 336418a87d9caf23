"""
Log Pulse - Shared Test Fixtures
"""

import os
import sys

import pytest

# Add project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from logpulse.config import Settings
from logpulse.core.entry_parser import EntryParser
from logpulse.core.error_store import ErrorStore
from logpulse.core.session_store import SessionStore
from logpulse.db import Database


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway SQLite file, tuned for fast tests."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'logpulse.db'}",
        log_json=False,
        import_batch_size=10,
        index_batch_size=10,
        tail_backfill_bytes=1024,
        # Tests drive process_changes() directly
        tail_poll_interval_seconds=60.0,
        store_retry_attempts=2,
        store_retry_base_delay_seconds=0.0,
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def parser():
    return EntryParser()


@pytest.fixture
def error_store(database):
    return ErrorStore(database)


@pytest.fixture
def session_store(database):
    return SessionStore(database)


def header(second: int, level: str = "ERROR", message: str = "Something failed", env: str = "production") -> str:
    """Build a canonical header line stamped 2024-01-01 10:00:<second>."""
    minutes, seconds = divmod(second, 60)
    return f"[2024-01-01 10:{minutes:02d}:{seconds:02d}] {env}.{level}: {message}"
