"""
Balance-Maintaining Ledger

Posts entries and adjusts the owning account's balance in one atomic unit,
so that an account balance always equals the sum of its entry amounts.
Transfers between accounts and row locking are out of scope.
"""

from typing import Optional, Tuple
import logging

from .connection import ConnectionInterface
from .logging_config import log_action
from .models import Account, Entry
from .queries import Queries


logger = logging.getLogger(__name__)


class Ledger:
    """
    Ledger over a single connection handle

    Entries are never modified after posting; corrections are posted as
    new entries with the opposite sign.
    """

    def __init__(self, conn: ConnectionInterface, queries: Optional[Queries] = None):
        self.conn = conn
        self.queries = queries or Queries(conn)
        self.logger = logger

    def open_account(self, owner: str, currency: str, opening_amount: int = 0) -> Account:
        """Open an account at zero and post any opening amount as its first entry"""
        with self.conn.atomic():
            account = self.queries.create_account(owner, currency)
            if opening_amount:
                _, account = self.post_entry(account.account_id, opening_amount)
        return account

    def post_entry(self, account_id: int, amount: int,
                   correlation_id: Optional[str] = None) -> Tuple[Entry, Account]:
        """
        Record an entry and apply it to the account balance.

        Both writes happen in one transaction: if either fails neither the
        entry nor the balance change is kept.

        Args:
            account_id: Account to post to
            amount: Signed amount in minor units
            correlation_id: Optional tracing id carried into the log record

        Returns:
            The new Entry and the Account with its updated balance

        Raises:
            ConstraintViolationError: If the account does not exist
            ConnectivityError: If the backend is unreachable
        """
        try:
            with self.conn.atomic():
                entry = self.queries.create_entry(account_id, amount)
                account = self.queries.add_account_balance(account_id, amount)
        except Exception as e:
            log_action(
                self.logger, "error", f"Entry posting failed: {e}",
                action="post_entry", resource=f"account:{account_id}",
                correlation_id=correlation_id, extra={"amount": amount}
            )
            raise

        log_action(
            self.logger, "info", "Entry posted",
            action="post_entry", resource=f"entry:{entry.entry_id}",
            correlation_id=correlation_id,
            extra={
                "account_id": account_id,
                "amount": amount,
                "balance": account.balance
            }
        )
        return entry, account

    def verify_balance(self, account_id: int) -> bool:
        """Check that the stored balance equals the sum of the account's entries"""
        account = self.queries.get_account(account_id)
        total = self.queries.sum_entries(account_id)
        if account.balance != total:
            log_action(
                self.logger, "warning", "Balance does not match entries",
                action="verify_balance", resource=f"account:{account_id}",
                extra={"balance": account.balance, "entries_total": total}
            )
            return False
        return True
