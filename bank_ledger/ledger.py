"""
Transaction Ledger

Append-only record of credit and debit entries per account. Entries are
immutable once appended; there is no update, delete or reversal. Balances
are derived from entries, never stored separately.
"""

from datetime import datetime
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .accounts import AccountStore
from .errors import AccountNotFound, InvalidInput
from .logging_config import get_logger
from .money import AmountLike, ZERO, parse_amount, quantize
from .storage import StorageInterface


class EntryKind(Enum):
    """Direction of a ledger entry"""
    CREDIT = "credit"  # Increases balance
    DEBIT = "debit"    # Decreases balance


@dataclass(frozen=True)
class LedgerEntry:
    """
    Posted ledger entry
    """
    id: int
    account_id: int
    kind: EntryKind
    amount: Decimal
    timestamp: datetime

    @property
    def is_credit(self) -> bool:
        return self.kind == EntryKind.CREDIT

    @property
    def is_debit(self) -> bool:
        return self.kind == EntryKind.DEBIT


class TransactionLedger:
    """
    Appends entries and sums them per account.

    append() performs no balance check. Callers that gate a debit on the
    balance must run sum_by_kind() and append() inside one critical section
    and one storage.atomic() unit.
    """

    def __init__(self, storage: StorageInterface, account_store: AccountStore):
        self.storage = storage
        self.account_store = account_store
        self.table_name = "transactions"
        self.logger = get_logger("bank_ledger.ledger")

    def _require_account(self, account_id: int) -> None:
        if not self.account_store.exists(account_id):
            raise AccountNotFound(f"Account {account_id} not found")

    def append(
        self,
        account_id: int,
        kind: EntryKind,
        amount: AmountLike,
        timestamp: datetime
    ) -> LedgerEntry:
        """
        Append an entry to the ledger

        Args:
            account_id: Owning account
            kind: CREDIT or DEBIT
            amount: Strictly positive amount
            timestamp: Posting time

        Returns:
            The persisted entry with its assigned identifier

        Raises:
            InvalidInput: If kind is not an EntryKind or timestamp is missing
            InvalidAmount: If amount is not strictly positive and finite
            AccountNotFound: If the account does not exist
        """
        if not isinstance(kind, EntryKind):
            raise InvalidInput(f"Entry kind must be credit or debit, got {kind!r}")
        if not isinstance(timestamp, datetime):
            raise InvalidInput("Entry timestamp is required")

        amount = parse_amount(amount)
        self._require_account(account_id)

        entry_id = self.storage.insert(self.table_name, {
            "account_id": account_id,
            "kind": kind.value,
            "amount": str(amount),
            "timestamp": timestamp.isoformat()
        })

        self.logger.debug(
            f"Appended {kind.value} {amount} to account {account_id} as entry {entry_id}"
        )

        return LedgerEntry(
            id=entry_id,
            account_id=account_id,
            kind=kind,
            amount=amount,
            timestamp=timestamp
        )

    def sum_by_kind(self, account_id: int, kind: EntryKind) -> Decimal:
        """
        Total amount of one kind of entry for an account

        Returns:
            Sum of amounts, 0.00 if the account has no such entries

        Raises:
            AccountNotFound: If the account does not exist
        """
        if not isinstance(kind, EntryKind):
            raise InvalidInput(f"Entry kind must be credit or debit, got {kind!r}")
        self._require_account(account_id)

        records = self.storage.find(self.table_name, {
            "account_id": account_id,
            "kind": kind.value
        })

        total = ZERO
        for record in records:
            total += Decimal(record["amount"])
        return quantize(total)

    def entries_for_account(self, account_id: int) -> List[LedgerEntry]:
        """
        All entries of an account in posting order

        Raises:
            AccountNotFound: If the account does not exist
        """
        self._require_account(account_id)
        records = self.storage.find(self.table_name, {"account_id": account_id})
        entries = [self._entry_from_dict(data) for data in records]
        entries.sort(key=lambda e: (e.timestamp, e.id))
        return entries

    def get_entry(self, entry_id: int) -> Optional[LedgerEntry]:
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return self._entry_from_dict(data)
        return None

    def _entry_from_dict(self, data: Dict[str, Any]) -> LedgerEntry:
        return LedgerEntry(
            id=data["id"],
            account_id=data["account_id"],
            kind=EntryKind(data["kind"]),
            amount=Decimal(data["amount"]),
            timestamp=datetime.fromisoformat(data["timestamp"])
        )
