"""
Per-account mutual exclusion for balance-dependent postings.
"""

from contextlib import contextmanager
from typing import Dict, Optional
import threading

from .errors import LockTimeoutError
from .logging_config import get_logger, log_action


class AccountLockManager:
    """
    Hands out one lock per account identifier.

    Locks for different accounts are independent, so postings on one account
    never wait for another. Acquisition is bounded by a timeout; a caller
    that cannot enter the critical section in time gets LockTimeoutError.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        if timeout_seconds <= 0:
            raise ValueError("Lock timeout must be positive")
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.logger = get_logger("bank_ledger.locks")

    def _lock_for(self, account_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, account_id: int, timeout: Optional[float] = None):
        """Hold the account's lock for the duration of the block"""
        wait = self.timeout_seconds if timeout is None else timeout
        lock = self._lock_for(account_id)

        if not lock.acquire(timeout=wait):
            log_action(
                self.logger, "warning",
                f"Timed out after {wait}s waiting for account {account_id}",
                action="lock_timeout",
                resource=f"account:{account_id}"
            )
            raise LockTimeoutError(f"Account {account_id} is busy, try again")

        try:
            yield
        finally:
            lock.release()

    def is_locked(self, account_id: int) -> bool:
        with self._registry_lock:
            lock = self._locks.get(account_id)
        return lock is not None and lock.locked()
