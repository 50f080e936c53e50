"""
Async Ledger Query Layer

Coroutine versions of the Queries bindings. The statements are shared with
the sync layer. No deadline is imposed here; wrap calls in
asyncio.wait_for() to bound them.
"""

from typing import List, Optional
import logging

from .async_connection import AsyncConnectionInterface
from .errors import NotFoundError
from .models import Account, Entry
from .queries import (
    ADD_ACCOUNT_BALANCE, CREATE_ACCOUNT, CREATE_ENTRY, GET_ACCOUNT, GET_ENTRY,
    LIST_ACCOUNTS, LIST_ENTRIES, SUM_ENTRIES, check_page, page_limit
)


logger = logging.getLogger(__name__)


class AsyncQueries:
    """Async query bindings for the ledger schema"""

    def __init__(self, conn: AsyncConnectionInterface):
        self.conn = conn

    async def create_entry(self, account_id: int, amount: int) -> Entry:
        """Record an amount against an account"""
        row = await self.conn.fetch_one(CREATE_ENTRY, (amount, account_id))
        entry = Entry.from_dict(row)
        logger.debug(f"Created entry {entry.entry_id} for account {account_id}")
        return entry

    async def get_entry(self, entry_id: int) -> Entry:
        """Fetch one entry by id, raising NotFoundError if absent"""
        row = await self.conn.fetch_one(GET_ENTRY, (entry_id,))
        if row is None:
            raise NotFoundError("Entry", entry_id)
        return Entry.from_dict(row)

    async def list_entries(self, account_id: int, limit: Optional[int] = None, offset: int = 0) -> List[Entry]:
        """List an account's entries in ascending entry_id order"""
        limit = page_limit(limit)
        check_page(limit, offset)
        rows = await self.conn.fetch_all(LIST_ENTRIES, (account_id, limit, offset))
        logger.debug(f"Listed {len(rows)} entries for account {account_id} at offset {offset}")
        return [Entry.from_dict(row) for row in rows]

    async def sum_entries(self, account_id: int) -> int:
        """Total of all entry amounts for an account (0 when it has none)"""
        row = await self.conn.fetch_one(SUM_ENTRIES, (account_id,))
        return int(row['total'])

    async def create_account(self, owner: str, currency: str, balance: int = 0) -> Account:
        """Open an account; the id and creation time are generated"""
        row = await self.conn.fetch_one(CREATE_ACCOUNT, (owner, balance, currency))
        account = Account.from_dict(row)
        logger.debug(f"Created account {account.account_id} for {owner}")
        return account

    async def get_account(self, account_id: int) -> Account:
        """Fetch one account by id, raising NotFoundError if absent"""
        row = await self.conn.fetch_one(GET_ACCOUNT, (account_id,))
        if row is None:
            raise NotFoundError("Account", account_id)
        return Account.from_dict(row)

    async def list_accounts(self, limit: Optional[int] = None, offset: int = 0) -> List[Account]:
        """List accounts in ascending account_id order"""
        limit = page_limit(limit)
        check_page(limit, offset)
        rows = await self.conn.fetch_all(LIST_ACCOUNTS, (limit, offset))
        logger.debug(f"Listed {len(rows)} accounts at offset {offset}")
        return [Account.from_dict(row) for row in rows]

    async def add_account_balance(self, account_id: int, amount: int) -> Account:
        """
        Add a signed amount to an account balance and return the updated row.

        Raises:
            NotFoundError: If no account has this id
        """
        row = await self.conn.fetch_one(ADD_ACCOUNT_BALANCE, (account_id, amount))
        if row is None:
            raise NotFoundError("Account", account_id)
        return Account.from_dict(row)
