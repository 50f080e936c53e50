"""
Shared fixtures: an in-memory SQLite ledger with the full schema applied
"""

import pytest

from bank_ledger.connection import SQLiteConnection
from bank_ledger.migrations import MigrationManager


@pytest.fixture
def ledger_conn():
    """Migrated in-memory SQLite connection"""
    conn = SQLiteConnection(":memory:")
    MigrationManager(conn).migrate_up()
    yield conn
    conn.close()
