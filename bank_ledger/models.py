"""
Ledger Records

Accounts and the entries recorded against them. Amounts are signed integers
in minor currency units: positive values credit the account, negative values
debit it.
"""

from dataclasses import dataclass, asdict, fields
from datetime import datetime, timezone
from typing import Any, Dict, Union


def _parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Normalize a driver timestamp to an aware UTC datetime"""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        # SQLite stores naive UTC text
        value = value.replace(tzinfo=timezone.utc)
    return value


class LedgerRecord:
    """Shared dict conversion for rows returned by the query layer"""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary with ISO timestamps"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create instance from a row or a to_dict() result"""
        names = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in names}
        if 'created_at' in values:
            values['created_at'] = _parse_timestamp(values['created_at'])
        return cls(**values)


@dataclass(frozen=True)
class Account(LedgerRecord):
    """
    Ledger account

    The balance is expected to equal the sum of the account's entry amounts;
    Ledger.post_entry keeps the two in step.
    """
    account_id: int
    owner: str
    balance: int
    currency: str
    created_at: datetime


@dataclass(frozen=True)
class Entry(LedgerRecord):
    """
    A single amount recorded against one account

    Entries are append-only: once inserted they are never updated or deleted.
    """
    entry_id: int
    account_id: int
    amount: int
    created_at: datetime

    @property
    def is_credit(self) -> bool:
        return self.amount > 0

    @property
    def is_debit(self) -> bool:
        return self.amount < 0
