"""
Operational tooling: create or drop the database and apply or roll back
schema migrations.

    python -m bank_ledger.cli migrate up [--steps N]
    python -m bank_ledger.cli migrate down [--steps N | --all]
    python -m bank_ledger.cli status
    python -m bank_ledger.cli createdb | dropdb
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse, urlunparse

from .config import get_config
from .connection import SQLITE_MEMORY, PostgreSQLConnection, connect, sqlite_path
from .errors import LedgerError
from .logging_config import setup_logging
from .migrations import MigrationManager


def positive_int(value: str) -> int:
    """argparse type for a step count of at least one"""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {number}")
    return number


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="bank-ledger",
        description="Manage the bank ledger database schema.",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Database URL (default: BANK_LEDGER_DATABASE_URL or config default).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate = subparsers.add_parser("migrate", help="Apply or roll back migrations.")
    migrate.add_argument("direction", choices=["up", "down"])
    amount = migrate.add_mutually_exclusive_group()
    amount.add_argument(
        "--steps",
        type=positive_int,
        default=None,
        help="Number of migrations to apply or roll back (default: all for up, 1 for down).",
    )
    amount.add_argument(
        "--all",
        action="store_true",
        help="Roll back every applied migration.",
    )

    subparsers.add_parser("status", help="Show applied and pending migrations.")
    subparsers.add_parser("createdb", help="Create the database named in the URL.")
    subparsers.add_parser("dropdb", help="Drop the database named in the URL.")
    return parser.parse_args(argv)


def _open(database_url: str):
    config = get_config()
    # Schema changes here are explicit, never automatic
    return connect(database_url, sqlite_timeout=config.sqlite_timeout,
                   connect_timeout=config.connect_timeout, auto_migrate=False)


def run_migrate(database_url: str, direction: str, steps: Optional[int], all_steps: bool) -> int:
    conn = _open(database_url)
    try:
        manager = MigrationManager(conn)
        if direction == "up":
            applied = manager.migrate_up(steps=steps)
            print(f"Applied {len(applied)} migrations, now at v{manager.get_current_version():03d}")
        else:
            if all_steps:
                steps = None
            elif steps is None:
                steps = 1
            rolledback = manager.migrate_down(0, steps=steps)
            print(f"Rolled back {len(rolledback)} migrations, now at v{manager.get_current_version():03d}")
    finally:
        conn.close()
    return 0


def run_status(database_url: str) -> int:
    conn = _open(database_url)
    try:
        status = MigrationManager(conn).get_migration_status()
    finally:
        conn.close()
    print(json.dumps(status, indent=2))
    return 0


def _maintenance_url(database_url: str, maintenance_database: str):
    """Return (url of the maintenance database, name of the target database)"""
    parsed = urlparse(database_url)
    name = parsed.path.lstrip("/")
    if not name:
        raise ValueError(f"No database name in {database_url!r}")
    return urlunparse(parsed._replace(path=f"/{maintenance_database}")), name


def run_createdb(database_url: str, drop: bool = False) -> int:
    """Create or drop the target database"""
    if urlparse(database_url).scheme == "sqlite":
        path = sqlite_path(database_url)
        if path == SQLITE_MEMORY:
            print("In-memory SQLite database needs no provisioning")
            return 0
        if drop:
            for suffix in ("", "-wal", "-shm"):
                Path(path + suffix).unlink(missing_ok=True)
            print(f"Removed {path}")
        else:
            _open(database_url).close()
            print(f"Created {path}")
        return 0

    url, name = _maintenance_url(database_url, get_config().maintenance_database)
    conn = PostgreSQLConnection(url, connect_timeout=get_config().connect_timeout, autocommit=True)
    try:
        verb = "DROP DATABASE" if drop else "CREATE DATABASE"
        conn.execute(f'{verb} "{name}"')
    finally:
        conn.close()
    print(f"{'Dropped' if drop else 'Created'} database {name}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    database_url = args.database_url or config.database_url

    try:
        if args.command == "migrate":
            return run_migrate(database_url, args.direction, args.steps, args.all)
        if args.command == "status":
            return run_status(database_url)
        if args.command == "createdb":
            return run_createdb(database_url)
        if args.command == "dropdb":
            return run_createdb(database_url, drop=True)
    except LedgerError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
