"""
Test suite for the balance-maintaining ledger

CRITICAL: Validates that an account balance always equals the sum of its
entries, including when a posting fails halfway.
"""

import logging
import pytest

from bank_ledger.errors import ConstraintViolationError
from bank_ledger.ledger import Ledger
from bank_ledger.queries import Queries


class FailingBalanceQueries(Queries):
    """Queries whose balance update always fails after the entry insert"""

    def add_account_balance(self, account_id, amount):
        raise RuntimeError("balance update lost")


def entry_count(conn) -> int:
    return conn.fetch_one("SELECT COUNT(*) AS n FROM entries")["n"]


@pytest.fixture
def ledger(ledger_conn):
    return Ledger(ledger_conn)


class TestPostEntry:
    """Test atomic entry posting"""

    def test_post_updates_balance(self, ledger):
        """Test that posting records the entry and moves the balance"""
        account = ledger.open_account("alice", "USD")

        entry, updated = ledger.post_entry(account.account_id, 100)

        assert entry.amount == 100
        assert entry.account_id == account.account_id
        assert updated.balance == 100
        assert ledger.queries.get_entry(entry.entry_id) == entry

    def test_balance_tracks_entry_sum(self, ledger):
        """Test the balance invariant over mixed credits and debits"""
        account = ledger.open_account("bob", "USD")

        for amount in [100, -30, 50, 0, -120]:
            ledger.post_entry(account.account_id, amount)

        assert ledger.queries.get_account(account.account_id).balance == 0
        assert ledger.queries.sum_entries(account.account_id) == 0
        assert ledger.verify_balance(account.account_id)

    def test_unknown_account(self, ledger, ledger_conn):
        """Test that posting to a missing account changes nothing"""
        with pytest.raises(ConstraintViolationError):
            ledger.post_entry(9999, 100)

        assert entry_count(ledger_conn) == 0

    def test_partial_failure_is_rolled_back(self, ledger_conn):
        """Test that a failed balance update also discards the entry"""
        ledger = Ledger(ledger_conn, queries=FailingBalanceQueries(ledger_conn))
        account = ledger.queries.create_account("carol", "USD")

        with pytest.raises(RuntimeError):
            ledger.post_entry(account.account_id, 75)

        assert entry_count(ledger_conn) == 0
        assert ledger.queries.get_account(account.account_id).balance == 0

    def test_post_logs_action(self, ledger, caplog):
        """Test structured logging of postings"""
        account = ledger.open_account("dan", "USD")

        with caplog.at_level(logging.INFO, logger="bank_ledger.ledger"):
            entry, _ = ledger.post_entry(account.account_id, 42, correlation_id="req-1")

        record = next(r for r in caplog.records if r.getMessage() == "Entry posted")
        assert record.action == "post_entry"
        assert record.resource == f"entry:{entry.entry_id}"
        assert record.correlation_id == "req-1"
        assert record.extra["balance"] == 42


class TestOpenAccount:
    """Test account opening"""

    def test_open_without_deposit(self, ledger, ledger_conn):
        """Test that a plain open records no entries"""
        account = ledger.open_account("erin", "EUR")

        assert account.balance == 0
        assert entry_count(ledger_conn) == 0

    def test_open_with_deposit(self, ledger):
        """Test that the opening amount is posted as the first entry"""
        account = ledger.open_account("frank", "EUR", opening_amount=250)

        entries = ledger.queries.list_entries(account.account_id, limit=10, offset=0)
        assert account.balance == 250
        assert [e.amount for e in entries] == [250]
        assert ledger.verify_balance(account.account_id)


class TestVerifyBalance:
    """Test balance auditing"""

    def test_detects_drift(self, ledger, caplog):
        """Test that a raw entry insert is reported as a mismatch"""
        account = ledger.open_account("gina", "USD")
        ledger.queries.create_entry(account.account_id, 10)

        with caplog.at_level(logging.WARNING, logger="bank_ledger.ledger"):
            assert not ledger.verify_balance(account.account_id)

        assert any(r.getMessage() == "Balance does not match entries" for r in caplog.records)
