"""
Banking Error Kinds

Every failure of a core operation is raised as one of the exceptions below.
Each kind carries a stable code and the HTTP status the API layer maps it to,
so no two kinds share a caller-visible status.
"""


class BankingError(Exception):
    """Base class for all core banking errors"""

    code = "banking_error"
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidInput(BankingError):
    """Malformed or missing required fields"""

    code = "invalid_input"
    http_status = 400


class DuplicateAccountNumber(BankingError):
    """Account number already registered"""

    code = "duplicate_account_number"
    http_status = 409


class AccountNotFound(BankingError):
    """Referenced account identifier does not exist"""

    code = "account_not_found"
    http_status = 404


class InvalidAmount(BankingError):
    """Amount is zero, negative or non-finite"""

    code = "invalid_amount"
    http_status = 422


class InsufficientFunds(BankingError):
    """Withdrawal amount exceeds the current balance"""

    code = "insufficient_funds"
    http_status = 402


class InternalError(BankingError):
    """
    Storage or locking failure.

    Opaque to callers; the message is logged but not returned by the API.
    """

    code = "internal_error"
    http_status = 503


class StorageError(InternalError):
    """Storage backend failed to complete an operation"""


class LockTimeoutError(InternalError):
    """Per-account critical section could not be entered in time"""
