"""
Account Management Module

Owns account identity and account-number uniqueness. Accounts are created
once and never mutated or deleted; this module has no knowledge of
transactions or balances.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import threading

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .errors import AccountNotFound, DuplicateAccountNumber, InvalidInput
from .logging_config import get_logger, log_action
from .storage import StorageInterface


@dataclass(frozen=True)
class Account:
    """Bank account; immutable once created"""
    id: int
    holder_name: str
    account_number: str
    created_at: datetime


# Largest id storage can assign (SQLite INTEGER PRIMARY KEY)
MAX_ACCOUNT_ID = 2 ** 63 - 1


def validate_account_id(account_id: Any) -> int:
    """
    Check that an account identifier has the right shape.

    Raises:
        InvalidInput: If the id is not a positive integer
        AccountNotFound: If the id is beyond any id storage can assign
    """
    if isinstance(account_id, bool) or not isinstance(account_id, int) or account_id <= 0:
        raise InvalidInput(f"Account ID must be a positive integer, got {account_id!r}")
    if account_id > MAX_ACCOUNT_ID:
        raise AccountNotFound(f"Account {account_id} not found")
    return account_id


def _required_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{field_name} is required")
    return value.strip()


class AccountStore:
    """
    Creates and looks up accounts
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.table_name = "accounts"
        self.logger = get_logger("bank_ledger.accounts")
        # Serializes the uniqueness check with the insert
        self._create_lock = threading.Lock()

    def create_account(self, holder_name: str, account_number: str) -> Account:
        """
        Create a new account

        Args:
            holder_name: Account holder's name
            account_number: Externally visible number, unique across accounts

        Returns:
            Created Account with its assigned identifier

        Raises:
            InvalidInput: If either field is empty
            DuplicateAccountNumber: If the number is already registered
        """
        holder_name = _required_text(holder_name, "Account holder name")
        account_number = _required_text(account_number, "Account number")

        with self._create_lock:
            with self.storage.atomic():
                if self.storage.find(self.table_name, {"account_number": account_number}):
                    log_action(
                        self.logger, "info",
                        f"Rejected duplicate account number {account_number}",
                        action="create_account_rejected",
                        resource=f"account_number:{account_number}"
                    )
                    raise DuplicateAccountNumber(
                        f"Account number {account_number} already exists"
                    )

                created_at = self.clock.now()
                account_id = self.storage.insert(self.table_name, {
                    "holder_name": holder_name,
                    "account_number": account_number,
                    "created_at": created_at.isoformat()
                })

        account = Account(
            id=account_id,
            holder_name=holder_name,
            account_number=account_number,
            created_at=created_at
        )

        if self.audit_trail:
            self.audit_trail.log_event_safely(
                event_type=AuditEventType.ACCOUNT_CREATED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "account_number": account.account_number,
                    "holder_name": account.holder_name
                }
            )

        log_action(
            self.logger, "info",
            f"Created account {account.id}",
            action="create_account",
            resource=f"account:{account.id}"
        )
        return account

    def get_account(self, account_id: int) -> Account:
        """
        Get account by ID

        Raises:
            InvalidInput: If the id is malformed
            AccountNotFound: If no such account exists
        """
        validate_account_id(account_id)
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise AccountNotFound(f"Account {account_id} not found")
        return self._account_from_dict(data)

    def exists(self, account_id: int) -> bool:
        try:
            validate_account_id(account_id)
        except AccountNotFound:
            return False
        return self.storage.exists(self.table_name, account_id)

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.table_name, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def find_accounts(
        self,
        name_filter: Optional[str] = None,
        number_filter: Optional[str] = None
    ) -> List[Account]:
        """
        Search accounts by holder name and/or account number

        The name filter is a case-insensitive substring match, the number
        filter an exact match; when both are given both must hold. Empty
        strings count as absent.

        Returns:
            Matching accounts in creation order (possibly empty)

        Raises:
            InvalidInput: If neither filter is given
        """
        if not name_filter and not number_filter:
            raise InvalidInput("Please provide name or account number for search")

        filters: Dict[str, Any] = {}
        if number_filter:
            filters["account_number"] = number_filter

        records = self.storage.find(self.table_name, filters)
        accounts = [self._account_from_dict(data) for data in records]

        if name_filter:
            needle = name_filter.casefold()
            accounts = [a for a in accounts if needle in a.holder_name.casefold()]

        return sorted(accounts, key=lambda a: a.id)

    def _account_from_dict(self, data: Dict[str, Any]) -> Account:
        return Account(
            id=data["id"],
            holder_name=data["holder_name"],
            account_number=data["account_number"],
            created_at=datetime.fromisoformat(data["created_at"])
        )
