"""
Balance Coordination Module

Derives balances from the ledger and posts deposits and withdrawals. A
withdrawal's balance read, funds check and debit append run as one atomic
unit per account: under the account's lock and inside a single storage
transaction, so two concurrent withdrawals can never both pass the check
against the same pre-withdrawal balance.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from .accounts import Account, AccountStore, validate_account_id
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .errors import AccountNotFound, InsufficientFunds
from .ledger import EntryKind, LedgerEntry, TransactionLedger
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .money import AmountLike, parse_amount
from .storage import StorageInterface


@dataclass(frozen=True)
class BalanceSummary:
    """Account details together with its derived balance"""
    account: Account
    balance: Decimal


class BalanceCoordinator:
    """
    Entry point for balance reads and balance-affecting postings
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_store: AccountStore,
        ledger: TransactionLedger,
        lock_manager: Optional[AccountLockManager] = None,
        clock: Optional[Clock] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.account_store = account_store
        self.ledger = ledger
        self.lock_manager = lock_manager or AccountLockManager()
        self.clock = clock or SystemClock()
        self.audit_trail = audit_trail
        self.logger = get_logger("bank_ledger.balance")

    def get_balance(self, account_id: int) -> Decimal:
        """
        Derived balance: total credits minus total debits

        Raises:
            InvalidInput: If the id is malformed
            AccountNotFound: If the account does not exist
        """
        validate_account_id(account_id)
        credits = self.ledger.sum_by_kind(account_id, EntryKind.CREDIT)
        debits = self.ledger.sum_by_kind(account_id, EntryKind.DEBIT)
        return credits - debits

    def get_balance_summary(self, account_id: int) -> BalanceSummary:
        account = self.account_store.get_account(account_id)
        return BalanceSummary(account=account, balance=self.get_balance(account_id))

    def deposit(self, account_id: int, amount: AmountLike) -> LedgerEntry:
        """
        Credit an account

        No balance precondition applies. The account lock is still taken so
        the timestamp and the append of one account's entries stay in the
        same order.

        Returns:
            The posted credit entry

        Raises:
            InvalidInput, InvalidAmount, AccountNotFound, InternalError
        """
        amount = self._validate(account_id, amount)

        with self.lock_manager.hold(account_id):
            entry = self.ledger.append(account_id, EntryKind.CREDIT, amount, self.clock.now())

        self._record_posting(entry)
        return entry

    def withdraw(self, account_id: int, amount: AmountLike) -> LedgerEntry:
        """
        Debit an account if it holds sufficient funds

        Args:
            account_id: Account to debit
            amount: Strictly positive amount

        Returns:
            The posted debit entry

        Raises:
            InvalidInput: If the id is malformed
            InvalidAmount: If amount is not strictly positive and finite
            AccountNotFound: If the account does not exist
            InsufficientFunds: If amount exceeds the current balance
            InternalError: If the account lock or storage fails
        """
        amount = self._validate(account_id, amount)

        entry = None
        with self.lock_manager.hold(account_id):
            with self.storage.atomic():
                balance = self.get_balance(account_id)
                if amount <= balance:
                    entry = self.ledger.append(
                        account_id, EntryKind.DEBIT, amount, self.clock.now()
                    )

        if entry is None:
            self._record_rejection(account_id, amount, balance)
            raise InsufficientFunds(
                f"Insufficient funds: balance {balance}, requested {amount}"
            )

        self._record_posting(entry)
        return entry

    def _validate(self, account_id: Any, amount: AmountLike) -> Decimal:
        validate_account_id(account_id)
        amount = parse_amount(amount)
        if not self.account_store.exists(account_id):
            raise AccountNotFound(f"Account {account_id} not found")
        return amount

    def _record_posting(self, entry: LedgerEntry) -> None:
        log_action(
            self.logger, "info",
            f"Posted {entry.kind.value} of {entry.amount} to account {entry.account_id}",
            action="deposit" if entry.is_credit else "withdraw",
            resource=f"account:{entry.account_id}",
            extra={"transaction_id": entry.id, "amount": str(entry.amount)}
        )
        if self.audit_trail:
            self.audit_trail.log_event_safely(
                event_type=AuditEventType.TRANSACTION_POSTED,
                entity_type="transaction",
                entity_id=entry.id,
                metadata={
                    "account_id": entry.account_id,
                    "kind": entry.kind,
                    "amount": entry.amount,
                    "timestamp": entry.timestamp
                }
            )

    def _record_rejection(self, account_id: int, amount: Decimal, balance: Decimal) -> None:
        log_action(
            self.logger, "info",
            f"Rejected withdrawal of {amount} from account {account_id}",
            action="withdraw_rejected",
            resource=f"account:{account_id}",
            extra={"amount": str(amount), "balance": str(balance)}
        )
        if self.audit_trail:
            self.audit_trail.log_event_safely(
                event_type=AuditEventType.WITHDRAWAL_REJECTED,
                entity_type="account",
                entity_id=account_id,
                metadata={"amount": amount, "balance": balance}
            )
