"""
Async Connection Handles

Async counterparts of the connection handles: SQLite run in a worker thread
for compatibility, and native async PostgreSQL using asyncpg. Both take the
same positional ($1, $2, ...) SQL as the sync handles.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlparse
import asyncio
import logging

from .connection import SQLITE_MEMORY, SQLiteConnection, split_statements, sqlite_path
from .errors import ConnectivityError, ConstraintViolationError


logger = logging.getLogger(__name__)


class AsyncConnectionInterface(ABC):
    """Abstract interface for async connection handles"""

    dialect: str = ""

    @abstractmethod
    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Run a statement and return its first row, or None"""
        pass

    @abstractmethod
    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a statement and return every row"""
        pass

    @abstractmethod
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count"""
        pass

    async def close(self) -> None:
        """Close the underlying connection (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return False

    async def execute_script(self, sql: str) -> None:
        """Run each statement of a DDL script in order"""
        for statement in split_statements(sql):
            await self.execute(statement)

    async def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    async def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    async def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Context manager for atomic operations; nested blocks join the outer one"""
        if self.in_transaction:
            yield
            return
        await self.begin_transaction()
        try:
            yield
            await self.commit()
        except Exception:
            await self.rollback()
            raise


class AsyncSQLiteConnection(AsyncConnectionInterface):
    """Async wrapper around SQLiteConnection for compatibility"""

    dialect = "sqlite"

    def __init__(self, db_path: Union[str, Path] = SQLITE_MEMORY, timeout: float = 5.0):
        self._sync_connection = SQLiteConnection(db_path, timeout=timeout)
        self._lock = asyncio.Lock()

    @property
    def in_transaction(self) -> bool:
        return self._sync_connection.in_transaction

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Run a statement and return its first row, or None"""
        async with self._lock:
            # Run sync operation in thread pool to avoid blocking
            return await asyncio.to_thread(self._sync_connection.fetch_one, sql, params)

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a statement and return every row"""
        async with self._lock:
            return await asyncio.to_thread(self._sync_connection.fetch_all, sql, params)

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count"""
        async with self._lock:
            return await asyncio.to_thread(self._sync_connection.execute, sql, params)

    async def begin_transaction(self) -> None:
        """Start a database transaction"""
        await asyncio.to_thread(self._sync_connection.begin_transaction)

    async def commit(self) -> None:
        """Commit current transaction"""
        await asyncio.to_thread(self._sync_connection.commit)

    async def rollback(self) -> None:
        """Rollback current transaction"""
        await asyncio.to_thread(self._sync_connection.rollback)

    async def close(self) -> None:
        """Close storage connection"""
        await asyncio.to_thread(self._sync_connection.close)


class AsyncPostgreSQLConnection(AsyncConnectionInterface):
    """
    True async PostgreSQL using asyncpg

    Wraps one asyncpg connection supplied by the caller, or opened with
    from_dsn(). Pool management stays with the caller.
    """

    dialect = "postgresql"

    def __init__(self, connection):
        try:
            import asyncpg
            self.asyncpg = asyncpg
        except ImportError:
            raise ImportError("asyncpg is required for AsyncPostgreSQLConnection")
        self._connection = connection
        self._transaction = None

    @classmethod
    async def from_dsn(cls, dsn: str, timeout: float = 10) -> "AsyncPostgreSQLConnection":
        """Open a dedicated asyncpg connection"""
        try:
            import asyncpg
        except ImportError:
            raise ImportError("asyncpg is required for AsyncPostgreSQLConnection")
        try:
            connection = await asyncpg.connect(dsn, timeout=timeout)
        except (OSError, asyncio.TimeoutError, asyncpg.exceptions.PostgresConnectionError) as e:
            raise ConnectivityError(f"Cannot connect to PostgreSQL: {e}") from e
        return cls(connection)

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    @asynccontextmanager
    async def _translate_errors(self) -> AsyncIterator[None]:
        if self._connection is None or self._connection.is_closed():
            raise ConnectivityError("PostgreSQL connection is closed")
        exceptions = self.asyncpg.exceptions
        try:
            yield
        except exceptions.IntegrityConstraintViolationError as e:
            raise ConstraintViolationError(str(e)) from e
        except (exceptions.PostgresConnectionError, exceptions.InterfaceError, OSError) as e:
            raise ConnectivityError(str(e)) from e

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Run a statement and return its first row, or None"""
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a statement and return every row"""
        logger.debug(f"Executing SQL: {sql[:100]}")
        async with self._translate_errors():
            records = await self._connection.fetch(sql, *params)
        return [dict(record) for record in records]

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count"""
        logger.debug(f"Executing SQL: {sql[:100]}")
        async with self._translate_errors():
            status = await self._connection.execute(sql, *params)
        # Status tags look like "UPDATE 3" or "INSERT 0 1"
        last = status.rsplit(" ", 1)[-1]
        return int(last) if last.isdigit() else 0

    async def begin_transaction(self) -> None:
        """Start a database transaction"""
        if self._transaction is None:
            async with self._translate_errors():
                transaction = self._connection.transaction()
                await transaction.start()
            self._transaction = transaction

    async def commit(self) -> None:
        """Commit current transaction"""
        if self._transaction is not None:
            transaction, self._transaction = self._transaction, None
            async with self._translate_errors():
                await transaction.commit()

    async def rollback(self) -> None:
        """Rollback current transaction"""
        if self._transaction is not None:
            transaction, self._transaction = self._transaction, None
            async with self._translate_errors():
                await transaction.rollback()

    async def close(self) -> None:
        """Close the asyncpg connection"""
        if self._connection is not None and not self._connection.is_closed():
            await self._connection.close()
        self._connection = None


async def connect_async(database_url: str, sqlite_timeout: float = 5.0,
                        connect_timeout: float = 10) -> AsyncConnectionInterface:
    """Open an async connection handle for a database URL"""
    scheme = urlparse(database_url).scheme
    if scheme == "sqlite":
        return AsyncSQLiteConnection(sqlite_path(database_url), timeout=sqlite_timeout)
    if scheme in ("postgresql", "postgres"):
        return await AsyncPostgreSQLConnection.from_dsn(database_url, timeout=connect_timeout)
    raise ValueError(f"Unsupported database URL scheme: {scheme!r}")
