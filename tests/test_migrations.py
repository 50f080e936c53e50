"""
Tests for the schema migration system
"""

import pytest

from bank_ledger.connection import SQLiteConnection
from bank_ledger.errors import MigrationError
from bank_ledger.migrations import Migration, MigrationManager


def table_names(conn):
    rows = conn.fetch_all(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    )
    return [row["name"] for row in rows]


def index_names(conn):
    rows = conn.fetch_all("SELECT name FROM sqlite_master WHERE type = 'index' AND name LIKE 'idx_%'")
    return {row["name"] for row in rows}


@pytest.fixture
def conn():
    conn = SQLiteConnection()
    yield conn
    conn.close()


@pytest.fixture
def manager(conn):
    return MigrationManager(conn)


class TestMigration:
    """Test migration value object"""

    def test_str_and_repr(self):
        migration = Migration(2, "Create entries table", "SELECT 1")
        assert str(migration) == "Migration v002: Create entries table"
        assert repr(migration) == "Migration(version=2, name='Create entries table')"
        assert migration.applied_at is None


class TestMigrationManager:
    """Test applying and rolling back migrations"""

    def test_fresh_database(self, conn, manager):
        """Test initial state: tracking table only, everything pending"""
        assert table_names(conn) == ["schema_migrations"]
        assert manager.get_current_version() == 0
        assert [m.version for m in manager.get_pending_migrations()] == [1, 2, 3]

    def test_migrate_up_all(self, conn, manager):
        """Test applying every migration"""
        applied = manager.migrate_up()

        assert [m.version for m in applied] == [1, 2, 3]
        assert all(m.applied_at is not None for m in applied)
        assert manager.get_current_version() == 3
        assert table_names(conn) == ["accounts", "entries", "schema_migrations"]
        assert index_names(conn) == {"idx_accounts_owner", "idx_entries_account_id"}
        assert manager.migrate_up() == []

    def test_migrate_up_one_step(self, conn, manager):
        """Test applying a single migration at a time"""
        assert [m.version for m in manager.migrate_up(steps=1)] == [1]
        assert table_names(conn) == ["accounts", "schema_migrations"]

        assert [m.version for m in manager.migrate_up(steps=1)] == [2]
        assert manager.get_current_version() == 2

    def test_migrate_up_to_target(self, manager):
        """Test stopping at a target version"""
        manager.migrate_up(target_version=2)
        assert manager.get_current_version() == 2
        assert [m.version for m in manager.get_pending_migrations()] == [3]

    def test_migrate_down_one_step(self, conn, manager):
        """Test rolling back the newest migration only"""
        manager.migrate_up()

        rolledback = manager.migrate_down(steps=1)

        assert [m.version for m in rolledback] == [3]
        assert manager.get_current_version() == 2
        assert index_names(conn) == set()
        assert table_names(conn) == ["accounts", "entries", "schema_migrations"]

    def test_migrate_down_all(self, conn, manager):
        """Test that up then fully down leaves no ledger tables"""
        manager.migrate_up()

        rolledback = manager.migrate_down(0)

        assert [m.version for m in rolledback] == [3, 2, 1]
        assert manager.get_current_version() == 0
        assert table_names(conn) == ["schema_migrations"]

    def test_negative_steps_rejected(self, manager):
        """Test that a negative step count fails without touching the schema"""
        with pytest.raises(ValueError, match="steps"):
            manager.migrate_up(steps=-1)
        assert manager.get_current_version() == 0

        manager.migrate_up()
        with pytest.raises(ValueError, match="steps"):
            manager.migrate_down(steps=-1)
        assert manager.get_current_version() == 3

    def test_zero_steps(self, manager):
        """Test that zero steps is a no-op in both directions"""
        assert manager.migrate_up(steps=0) == []
        manager.migrate_up()
        assert manager.migrate_down(steps=0) == []
        assert manager.get_current_version() == 3

    def test_migrate_down_noop(self, manager):
        """Test rolling back with nothing applied"""
        assert manager.migrate_down(0) == []

    def test_failed_migration_rolls_back(self, conn, manager):
        """Test that a failing step leaves the schema at the previous version"""
        manager.migrate_up()
        manager.add_migration(4, "Broken", "CREATE TABLE audit (id INTEGER); CREATE TABLE entries (x INTEGER);")

        with pytest.raises(MigrationError) as exc_info:
            manager.migrate_up()

        assert exc_info.value.__cause__ is not None
        assert manager.get_current_version() == 3
        assert "audit" not in table_names(conn)

    def test_missing_down_sql(self, manager):
        """Test that a migration without rollback SQL cannot be rolled back"""
        manager.migrate_up()
        manager.add_migration(4, "One way", "CREATE TABLE archive (id INTEGER)")
        manager.migrate_up()

        with pytest.raises(MigrationError, match="not defined"):
            manager.migrate_down(3)

    def test_duplicate_version(self, manager):
        """Test that versions must be unique"""
        with pytest.raises(ValueError, match="Duplicate"):
            manager.add_migration(1, "Again", "SELECT 1")

    def test_validate_migrations(self, conn, manager):
        """Test checksum validation of applied migrations"""
        manager.migrate_up()
        assert manager.validate_migrations()

        conn.execute("UPDATE schema_migrations SET checksum = $1 WHERE version = $2", ("tampered", 2))
        assert not manager.validate_migrations()

    def test_migration_status(self, manager):
        """Test status reporting"""
        manager.migrate_up(steps=1)

        status = manager.get_migration_status()

        assert status["current_version"] == 1
        assert status["latest_version"] == 3
        assert status["pending_count"] == 2
        assert status["applied_count"] == 1
        assert status["needs_migration"] is True
        assert status["pending_migrations"][0] == {"version": 2, "name": "Create entries table"}

    def test_state_survives_new_manager(self, conn, manager):
        """Test that applied versions are read back from the tracking table"""
        manager.migrate_up(steps=2)

        assert MigrationManager(conn).get_current_version() == 2
