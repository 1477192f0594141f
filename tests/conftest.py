"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure signal_ledger is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from signal_ledger.config import StorageConfig  # noqa: E402
from signal_ledger.storage.database import Database  # noqa: E402


@pytest.fixture
def db(tmp_path):
    """A migrated SQLite ledger in a temp directory."""
    database = Database(StorageConfig(sqlite_path=str(tmp_path / "ledger.db")))
    database.connect()
    yield database
    database.close()
