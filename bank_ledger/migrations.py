"""
Database Migration System

Versioned schema migrations for the ledger tables, applied one step at a
time or all at once in either direction. Supports both PostgreSQL and
SQLite connection handles; applied versions are tracked in
schema_migrations.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import hashlib
import logging

from .connection import ConnectionInterface
from .errors import MigrationError


logger = logging.getLogger(__name__)


# Built-in schema, keyed by version then dialect: (name, up_sql, down_sql)
SCHEMA: Dict[int, Dict[str, Any]] = {
    1: {
        "name": "Create accounts table",
        "sqlite": ("""
            CREATE TABLE accounts (
                account_id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner TEXT NOT NULL,
                balance INTEGER NOT NULL DEFAULT 0,
                currency TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
            );
        """, """
            DROP TABLE IF EXISTS accounts;
        """),
        "postgresql": ("""
            CREATE TABLE accounts (
                account_id BIGSERIAL PRIMARY KEY,
                owner VARCHAR NOT NULL,
                balance BIGINT NOT NULL DEFAULT 0,
                currency VARCHAR(3) NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
        """, """
            DROP TABLE IF EXISTS accounts;
        """),
    },
    2: {
        "name": "Create entries table",
        "sqlite": ("""
            CREATE TABLE entries (
                entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL REFERENCES accounts (account_id) ON DELETE RESTRICT,
                amount INTEGER NOT NULL,
                created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
            );
        """, """
            DROP TABLE IF EXISTS entries;
        """),
        "postgresql": ("""
            CREATE TABLE entries (
                entry_id BIGSERIAL PRIMARY KEY,
                account_id BIGINT NOT NULL REFERENCES accounts (account_id) ON DELETE RESTRICT,
                amount BIGINT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
            COMMENT ON COLUMN entries.amount IS 'can be negative or positive';
        """, """
            DROP TABLE IF EXISTS entries;
        """),
    },
    3: {
        "name": "Index lookup columns",
        "sqlite": ("""
            CREATE INDEX idx_accounts_owner ON accounts (owner);
            CREATE INDEX idx_entries_account_id ON entries (account_id);
        """, """
            DROP INDEX IF EXISTS idx_entries_account_id;
            DROP INDEX IF EXISTS idx_accounts_owner;
        """),
        "postgresql": ("""
            CREATE INDEX idx_accounts_owner ON accounts (owner);
            CREATE INDEX idx_entries_account_id ON entries (account_id);
        """, """
            DROP INDEX IF EXISTS idx_entries_account_id;
            DROP INDEX IF EXISTS idx_accounts_owner;
        """),
    },
}

MIGRATION_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    checksum TEXT NOT NULL,
    applied_at TEXT NOT NULL
)
"""


def check_steps(steps: Optional[int]) -> None:
    """Reject step counts a list slice would silently misread"""
    if steps is not None and steps < 0:
        raise ValueError(f"steps must be non-negative, got {steps}")


class Migration:
    """Represents a single database migration"""

    def __init__(self, version: int, name: str, up_sql: str, down_sql: Optional[str] = None):
        self.version = version
        self.name = name
        self.up_sql = up_sql
        self.down_sql = down_sql
        self.applied_at: Optional[datetime] = None

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


class MigrationManager:
    """Manages database migrations for one connection handle"""

    def __init__(self, conn: ConnectionInterface):
        self.conn = conn
        self.migrations: List[Migration] = []
        self._migration_table = "schema_migrations"
        self._init_migrations()
        self._ensure_migration_table()

    def _init_migrations(self) -> None:
        """Register the built-in schema for the handle's dialect"""
        for version, definition in sorted(SCHEMA.items()):
            if self.conn.dialect not in definition:
                raise ValueError(f"No schema for dialect {self.conn.dialect!r}")
            up_sql, down_sql = definition[self.conn.dialect]
            self.add_migration(version, definition["name"], up_sql, down_sql)

    def _ensure_migration_table(self) -> None:
        """Ensure the migration tracking table exists"""
        self.conn.execute(MIGRATION_TABLE_SQL)

    def add_migration(self, version: int, name: str, up_sql: str, down_sql: Optional[str] = None) -> None:
        """Add a migration to the manager"""
        if any(m.version == version for m in self.migrations):
            raise ValueError(f"Duplicate migration version {version}")
        migration = Migration(version, name, up_sql, down_sql)
        self.migrations.append(migration)
        # Keep migrations sorted by version
        self.migrations.sort(key=lambda m: m.version)

    def get_current_version(self) -> int:
        """Get the current database version"""
        row = self.conn.fetch_one(f"SELECT MAX(version) AS version FROM {self._migration_table}")
        if not row or row["version"] is None:
            return 0
        return int(row["version"])

    def get_latest_version(self) -> int:
        return max((m.version for m in self.migrations), default=0)

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = self.get_current_version()
        max_version = self.get_latest_version() if target_version is None else target_version

        return [m for m in self.migrations if current_version < m.version <= max_version]

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        return self.conn.fetch_all(
            f"SELECT version, name, checksum, applied_at FROM {self._migration_table} ORDER BY version"
        )

    def migrate_up(self, target_version: Optional[int] = None, steps: Optional[int] = None) -> List[Migration]:
        """
        Apply pending migrations.

        Args:
            target_version: Stop after this version (default: latest)
            steps: Apply at most this many migrations

        Returns:
            The migrations applied, in order
        """
        check_steps(steps)
        pending = self.get_pending_migrations(target_version)
        if steps is not None:
            pending = pending[:steps]
        applied = []

        if not pending:
            logger.info("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")

        for migration in pending:
            try:
                logger.info(f"Applying {migration}")

                with self.conn.atomic():
                    self.conn.execute_script(migration.up_sql)
                    self.conn.execute(
                        f"INSERT INTO {self._migration_table} (version, name, checksum, applied_at) "
                        "VALUES ($1, $2, $3, $4)",
                        (
                            migration.version,
                            migration.name,
                            self._calculate_checksum(migration.up_sql),
                            datetime.now(timezone.utc).isoformat(),
                        )
                    )

                migration.applied_at = datetime.now(timezone.utc)
                applied.append(migration)
                logger.info(f"Successfully applied {migration}")

            except Exception as e:
                logger.error(f"Failed to apply {migration}: {e}")
                raise MigrationError(f"Migration failed: {migration}") from e

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def migrate_down(self, target_version: int = 0, steps: Optional[int] = None) -> List[Migration]:
        """
        Roll back applied migrations, newest first.

        Args:
            target_version: Version to end at (default: 0, an empty schema)
            steps: Roll back at most this many migrations

        Returns:
            The migrations rolled back, in order
        """
        check_steps(steps)
        current_version = self.get_current_version()

        if target_version >= current_version:
            logger.info("Target version is not lower than current version")
            return []

        rollback_migrations = [
            m for m in reversed(self.migrations)
            if target_version < m.version <= current_version
        ]
        if steps is not None:
            rollback_migrations = rollback_migrations[:steps]

        rolledback = []

        logger.info(f"Rolling back {len(rollback_migrations)} migrations")

        for migration in rollback_migrations:
            if not migration.down_sql:
                logger.error(f"No rollback SQL for {migration}")
                raise MigrationError(f"Rollback not defined: {migration}")

            try:
                logger.info(f"Rolling back {migration}")

                with self.conn.atomic():
                    self.conn.execute_script(migration.down_sql)
                    self.conn.execute(
                        f"DELETE FROM {self._migration_table} WHERE version = $1",
                        (migration.version,)
                    )

                migration.applied_at = None
                rolledback.append(migration)
                logger.info(f"Successfully rolled back {migration}")

            except Exception as e:
                logger.error(f"Failed to rollback {migration}: {e}")
                raise MigrationError(f"Rollback failed: {migration}") from e

        logger.info(f"Successfully rolled back {len(rolledback)} migrations")
        return rolledback

    def _calculate_checksum(self, sql: str) -> str:
        """Calculate checksum for migration SQL"""
        return hashlib.md5(sql.encode()).hexdigest()

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        applied = self.get_applied_migrations()

        for applied_migration in applied:
            version = applied_migration["version"]
            stored_checksum = applied_migration.get("checksum", "")

            migration = next((m for m in self.migrations if m.version == version), None)
            if not migration:
                logger.warning(f"Applied migration v{version} not found in definitions")
                continue

            expected_checksum = self._calculate_checksum(migration.up_sql)
            if stored_checksum != expected_checksum:
                logger.error(f"Checksum mismatch for v{version}: expected {expected_checksum}, got {stored_checksum}")
                return False

        logger.info("All applied migrations validated successfully")
        return True

    def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        current_version = self.get_current_version()
        pending = self.get_pending_migrations()
        applied = self.get_applied_migrations()

        return {
            "current_version": current_version,
            "latest_version": self.get_latest_version(),
            "pending_count": len(pending),
            "applied_count": len(applied),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0
        }
