"""
Ledger Query Layer

Typed operations over the accounts and entries tables. Each operation is a
single positional SQL statement run against an injected connection handle;
there is no retry and no local recovery, errors surface as raised by the
handle.

Entries are append-only. There is deliberately no statement that updates
or deletes an entry.
"""

from typing import List, Optional
import logging

from .config import get_config
from .connection import ConnectionInterface
from .errors import NotFoundError
from .models import Account, Entry


logger = logging.getLogger(__name__)


CREATE_ENTRY = """
INSERT INTO entries (
    amount,
    account_id
) VALUES (
    $1, $2
) RETURNING *
"""

GET_ENTRY = """
SELECT * FROM entries
WHERE entry_id = $1 LIMIT 1
"""

LIST_ENTRIES = """
SELECT * FROM entries
WHERE account_id = $1
ORDER BY entry_id
LIMIT $2
OFFSET $3
"""

SUM_ENTRIES = """
SELECT CAST(COALESCE(SUM(amount), 0) AS BIGINT) AS total FROM entries
WHERE account_id = $1
"""

CREATE_ACCOUNT = """
INSERT INTO accounts (
    owner,
    balance,
    currency
) VALUES (
    $1, $2, $3
) RETURNING *
"""

GET_ACCOUNT = """
SELECT * FROM accounts
WHERE account_id = $1 LIMIT 1
"""

LIST_ACCOUNTS = """
SELECT * FROM accounts
ORDER BY account_id
LIMIT $1
OFFSET $2
"""

ADD_ACCOUNT_BALANCE = """
UPDATE accounts
SET balance = balance + $2
WHERE account_id = $1
RETURNING *
"""


def check_page(limit: int, offset: int) -> None:
    """Reject page bounds the database would refuse or misread"""
    if limit < 0:
        raise ValueError(f"limit must be non-negative, got {limit}")
    if offset < 0:
        raise ValueError(f"offset must be non-negative, got {offset}")


def page_limit(limit: Optional[int]) -> int:
    """Resolve an omitted page size to the configured default"""
    if limit is None:
        return get_config().default_page_size
    return limit


class Queries:
    """
    Query bindings for the ledger schema

    The handle is owned by the caller; Queries never opens, closes or
    pools connections.
    """

    def __init__(self, conn: ConnectionInterface):
        self.conn = conn

    def create_entry(self, account_id: int, amount: int) -> Entry:
        """
        Record an amount against an account.

        Args:
            account_id: Existing account to record against
            amount: Signed amount in minor units; zero is allowed

        Returns:
            The inserted Entry with its generated entry_id and created_at

        Raises:
            ConstraintViolationError: If the account does not exist
            ConnectivityError: If the backend is unreachable
        """
        row = self.conn.fetch_one(CREATE_ENTRY, (amount, account_id))
        entry = Entry.from_dict(row)
        logger.debug(f"Created entry {entry.entry_id} for account {account_id}")
        return entry

    def get_entry(self, entry_id: int) -> Entry:
        """
        Fetch one entry by id.

        Raises:
            NotFoundError: If no entry has this id
        """
        row = self.conn.fetch_one(GET_ENTRY, (entry_id,))
        if row is None:
            raise NotFoundError("Entry", entry_id)
        return Entry.from_dict(row)

    def list_entries(self, account_id: int, limit: Optional[int] = None, offset: int = 0) -> List[Entry]:
        """
        List an account's entries in ascending entry_id order.

        An offset past the last entry, or a limit of zero, returns an empty
        list. Page through by calling again with a larger offset. Without a
        limit the default_page_size setting applies.
        """
        limit = page_limit(limit)
        check_page(limit, offset)
        rows = self.conn.fetch_all(LIST_ENTRIES, (account_id, limit, offset))
        logger.debug(f"Listed {len(rows)} entries for account {account_id} at offset {offset}")
        return [Entry.from_dict(row) for row in rows]

    def sum_entries(self, account_id: int) -> int:
        """Total of all entry amounts for an account (0 when it has none)"""
        row = self.conn.fetch_one(SUM_ENTRIES, (account_id,))
        return int(row['total'])

    def create_account(self, owner: str, currency: str, balance: int = 0) -> Account:
        """Open an account; the id and creation time are generated"""
        row = self.conn.fetch_one(CREATE_ACCOUNT, (owner, balance, currency))
        account = Account.from_dict(row)
        logger.debug(f"Created account {account.account_id} for {owner}")
        return account

    def get_account(self, account_id: int) -> Account:
        """
        Fetch one account by id.

        Raises:
            NotFoundError: If no account has this id
        """
        row = self.conn.fetch_one(GET_ACCOUNT, (account_id,))
        if row is None:
            raise NotFoundError("Account", account_id)
        return Account.from_dict(row)

    def list_accounts(self, limit: Optional[int] = None, offset: int = 0) -> List[Account]:
        """List accounts in ascending account_id order"""
        limit = page_limit(limit)
        check_page(limit, offset)
        rows = self.conn.fetch_all(LIST_ACCOUNTS, (limit, offset))
        logger.debug(f"Listed {len(rows)} accounts at offset {offset}")
        return [Account.from_dict(row) for row in rows]

    def add_account_balance(self, account_id: int, amount: int) -> Account:
        """
        Add a signed amount to an account balance and return the updated row.

        This does not record an entry; use Ledger.post_entry to keep the
        balance and the entries in step.

        Raises:
            NotFoundError: If no account has this id
        """
        row = self.conn.fetch_one(ADD_ACCOUNT_BALANCE, (account_id, amount))
        if row is None:
            raise NotFoundError("Account", account_id)
        return Account.from_dict(row)
