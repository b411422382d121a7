"""Shared test fixtures for keytally tests."""

import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from core.aggregator import KeypressAggregator
from core.storage import Storage


@pytest.fixture
def temp_db_path():
    """Create a temporary database path and clean up afterwards."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        yield db_path


@pytest.fixture
def storage(temp_db_path):
    """Create storage with temporary database."""
    return Storage(temp_db_path)


@pytest.fixture
def aggregator(storage):
    """Running aggregator over temporary storage, stopped after the test."""
    agg = KeypressAggregator(storage)
    agg.start()
    yield agg
    agg.stop()


@pytest.fixture
def fixed_now():
    """Fixed local reference time: Wednesday 2024-05-15 14:30:00."""
    return datetime(2024, 5, 15, 14, 30, 0)

