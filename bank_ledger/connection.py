"""
Connection Handles

Thin wrappers around a single live database connection. The query layer
is written against ConnectionInterface and never opens or closes
connections itself. SQL is written with positional placeholders ($1, $2, ...)
and each handle rewrites them into its driver's parameter style.

Driver errors are translated into the ledger error taxonomy here, with the
original exception chained as __cause__.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse
import logging
import re
import sqlite3
import threading

from .config import get_config
from .errors import ConnectivityError, ConstraintViolationError


logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\$(\d+)")

SQLITE_MEMORY = ":memory:"

# OperationalError messages that mean the database itself is unavailable
SQLITE_CONNECTIVITY_MESSAGES = (
    "unable to open database",
    "database is locked",
    "disk i/o error",
)


def split_statements(sql: str) -> List[str]:
    """Split a semicolon separated DDL script into single statements"""
    statements = []
    for chunk in sql.split(";"):
        lines = [line for line in chunk.splitlines() if not line.strip().startswith("--")]
        statement = "\n".join(lines).strip()
        if statement:
            statements.append(statement)
    return statements


class ConnectionInterface(ABC):
    """Abstract interface for connection handles"""

    dialect: str = ""

    @abstractmethod
    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Run a statement and return its first row, or None"""
        pass

    @abstractmethod
    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a statement and return every row"""
        pass

    @abstractmethod
    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the underlying connection"""
        pass

    @property
    def in_transaction(self) -> bool:
        return False

    def execute_script(self, sql: str) -> None:
        """Run each statement of a DDL script in order"""
        for statement in split_statements(sql):
            self.execute(statement)

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Context manager for atomic operations

        Nested blocks join the outermost transaction.
        """
        if self.in_transaction:
            yield
            return
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class SQLiteConnection(ConnectionInterface):
    """SQLite connection handle with foreign keys enforced"""

    dialect = "sqlite"

    def __init__(self, db_path: Union[str, Path] = SQLITE_MEMORY, timeout: float = 5.0):
        self.db_path = str(db_path)
        try:
            # Autocommit mode; transactions are opened explicitly with BEGIN
            self._connection = sqlite3.connect(
                self.db_path, timeout=timeout, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise ConnectivityError(f"Cannot open SQLite database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False

        with self._lock:
            self._connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != SQLITE_MEMORY:
                self._connection.execute("PRAGMA journal_mode = WAL")

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @staticmethod
    def _convert(sql: str) -> str:
        """Rewrite $N placeholders to SQLite's numbered ?N form"""
        return PLACEHOLDER.sub(r"?\1", sql)

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        if self._connection is None:
            raise ConnectivityError("SQLite connection is closed")
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise ConstraintViolationError(str(e)) from e
        except sqlite3.ProgrammingError as e:
            if "closed" in str(e).lower():
                raise ConnectivityError(str(e)) from e
            raise
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if any(text in message for text in SQLITE_CONNECTIVITY_MESSAGES):
                raise ConnectivityError(str(e)) from e
            raise

    def _run(self, sql: str, params: Sequence[Any]) -> sqlite3.Cursor:
        logger.debug(f"Executing SQL: {sql[:100]}")
        return self._connection.execute(self._convert(sql), tuple(params))

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Run a statement and return its first row, or None"""
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a statement and return every row"""
        with self._lock, self._translate_errors():
            cursor = self._run(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count"""
        with self._lock, self._translate_errors():
            cursor = self._run(sql, params)
            return cursor.rowcount

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock, self._translate_errors():
            if not self._in_transaction:
                self._connection.execute("BEGIN")
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock, self._translate_errors():
            if self._in_transaction:
                self._connection.execute("COMMIT")
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock, self._translate_errors():
            if self._in_transaction:
                self._in_transaction = False
                self._connection.execute("ROLLBACK")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLConnection(ConnectionInterface):
    """PostgreSQL connection handle backed by psycopg2"""

    dialect = "postgresql"

    def __init__(self, connection_string: str, connect_timeout: int = 10, autocommit: bool = False):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL connections. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._lock = threading.RLock()
        self._in_transaction = False
        try:
            self._connection = self.psycopg2.connect(
                connection_string,
                connect_timeout=connect_timeout,
                cursor_factory=self.extras.RealDictCursor
            )
        except self.psycopg2.OperationalError as e:
            raise ConnectivityError(f"Cannot connect to PostgreSQL: {e}") from e
        # We handle transactions manually unless the caller needs statements
        # that cannot run in a transaction block (CREATE DATABASE)
        self._connection.autocommit = autocommit

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @staticmethod
    def _convert(sql: str, params: Sequence[Any]):
        """Rewrite $N placeholders to psycopg2 named parameters"""
        converted = PLACEHOLDER.sub(r"%(p\1)s", sql)
        named = {f"p{index}": value for index, value in enumerate(params, start=1)}
        return converted, named

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        if self._connection is None or self._connection.closed:
            raise ConnectivityError("PostgreSQL connection is closed")
        try:
            yield
        except self.psycopg2.IntegrityError as e:
            self._discard_failed_statement()
            raise ConstraintViolationError(str(e).strip()) from e
        except (self.psycopg2.OperationalError, self.psycopg2.InterfaceError) as e:
            raise ConnectivityError(str(e).strip()) from e
        except self.psycopg2.Error:
            self._discard_failed_statement()
            raise

    def _discard_failed_statement(self) -> None:
        # An aborted implicit transaction blocks every later statement
        if not self._in_transaction and not self._connection.closed:
            self._connection.rollback()

    def _run(self, sql: str, params: Sequence[Any]):
        logger.debug(f"Executing SQL: {sql[:100]}")
        converted, named = self._convert(sql, params)
        cursor = self._connection.cursor()
        cursor.execute(converted, named or None)
        return cursor

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Run a statement and return its first row, or None"""
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a statement and return every row"""
        with self._lock, self._translate_errors():
            cursor = self._run(sql, params)
            try:
                rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
            finally:
                cursor.close()

            # Only commit if not in transaction
            if not self._in_transaction:
                self._connection.commit()
            return rows

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count"""
        with self._lock, self._translate_errors():
            cursor = self._run(sql, params)
            try:
                rowcount = cursor.rowcount
            finally:
                cursor.close()

            # Only commit if not in transaction
            if not self._in_transaction:
                self._connection.commit()
            return rowcount

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # PostgreSQL transactions start automatically
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock, self._translate_errors():
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock, self._translate_errors():
            if self._in_transaction:
                self._in_transaction = False
                self._connection.rollback()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection is not None:
                if not self._connection.closed:
                    self._connection.close()
                self._connection = None


def sqlite_path(database_url: str) -> str:
    """Extract the file path from a sqlite:// URL"""
    path = database_url[len("sqlite://"):]
    if path.startswith("/"):
        path = path[1:]
    return path or SQLITE_MEMORY


def connect(database_url: str, sqlite_timeout: float = 5.0, connect_timeout: int = 10,
            auto_migrate: Optional[bool] = None) -> ConnectionInterface:
    """
    Open a connection handle for a database URL.

    sqlite:///path/to/file.db and sqlite:// (in-memory) open SQLite;
    postgresql:// and postgres:// open PostgreSQL.

    When auto_migrate is true (default: the auto_migrate setting), pending
    schema migrations are applied before the handle is returned.
    """
    scheme = urlparse(database_url).scheme
    if scheme == "sqlite":
        conn = SQLiteConnection(sqlite_path(database_url), timeout=sqlite_timeout)
    elif scheme in ("postgresql", "postgres"):
        conn = PostgreSQLConnection(database_url, connect_timeout=connect_timeout)
    else:
        raise ValueError(f"Unsupported database URL scheme: {scheme!r}")

    if auto_migrate is None:
        auto_migrate = get_config().auto_migrate
    if auto_migrate:
        from .migrations import MigrationManager
        try:
            MigrationManager(conn).migrate_up()
        except Exception:
            conn.close()
            raise
    return conn
