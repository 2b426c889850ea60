"""
Test suite for balance coordination

Tests derived balances, deposits, withdrawals, the insufficient-funds gate
and its behaviour under concurrent withdrawals on both storage backends.
"""

import pytest
import random
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

from bank_ledger.accounts import AccountStore
from bank_ledger.audit import AuditTrail, AuditEventType
from bank_ledger.balance import BalanceCoordinator
from bank_ledger.clock import FixedClock
from bank_ledger.errors import (
    AccountNotFound, DuplicateAccountNumber, InsufficientFunds, InternalError, InvalidAmount, InvalidInput
)
from bank_ledger.ledger import TransactionLedger, EntryKind
from bank_ledger.locks import AccountLockManager
from bank_ledger.storage import InMemoryStorage, SQLiteStorage


def build_coordinator(storage, lock_timeout=5.0, clock=None, audit=True):
    audit_trail = AuditTrail(storage) if audit else None
    account_store = AccountStore(storage, audit_trail)
    ledger = TransactionLedger(storage, account_store)
    coordinator = BalanceCoordinator(
        storage,
        account_store,
        ledger,
        lock_manager=AccountLockManager(lock_timeout),
        clock=clock or FixedClock(step=timedelta(seconds=1)),
        audit_trail=audit_trail
    )
    return coordinator, account_store, ledger, audit_trail


class TestBalanceScenarios:
    """End-to-end walkthrough of the core account flow"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.coordinator, self.account_store, self.ledger, self.audit_trail = \
            build_coordinator(self.storage)

    def test_walkthrough(self):
        """Test create, deposit, rejected and accepted withdrawal, duplicate number"""
        account = self.account_store.create_account("Alice", "1001")
        assert account.id == 1

        self.coordinator.deposit(1, Decimal("100.00"))
        assert self.coordinator.get_balance(1) == Decimal("100.00")

        with pytest.raises(InsufficientFunds):
            self.coordinator.withdraw(1, Decimal("150.00"))
        assert self.coordinator.get_balance(1) == Decimal("100.00")

        self.coordinator.withdraw(1, Decimal("40.00"))
        assert self.coordinator.get_balance(1) == Decimal("60.00")

        with pytest.raises(DuplicateAccountNumber):
            self.account_store.create_account("Bob", "1001")


class TestBalanceCoordinator:
    """Test balance reads and postings"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.clock = FixedClock(step=timedelta(seconds=1))
        self.coordinator, self.account_store, self.ledger, self.audit_trail = \
            build_coordinator(self.storage, clock=self.clock)
        self.account = self.account_store.create_account("Alice", "1001")

    def test_new_account_has_zero_balance(self):
        assert self.coordinator.get_balance(self.account.id) == Decimal("0.00")

    def test_balance_of_missing_account(self):
        with pytest.raises(AccountNotFound):
            self.coordinator.get_balance(99)

    def test_balance_of_malformed_id(self):
        with pytest.raises(InvalidInput):
            self.coordinator.get_balance("1")

    def test_deposit_returns_credit_entry(self):
        entry = self.coordinator.deposit(self.account.id, "25.50")

        assert entry.kind == EntryKind.CREDIT
        assert entry.amount == Decimal("25.50")
        assert entry.account_id == self.account.id
        assert entry.id == 1

    def test_withdraw_returns_debit_entry(self):
        self.coordinator.deposit(self.account.id, 100)
        entry = self.coordinator.withdraw(self.account.id, 100)

        assert entry.kind == EntryKind.DEBIT
        assert entry.amount == Decimal("100.00")
        assert self.coordinator.get_balance(self.account.id) == Decimal("0.00")

    def test_withdraw_exact_balance_then_any_more_fails(self):
        self.coordinator.deposit(self.account.id, "10.00")
        self.coordinator.withdraw(self.account.id, "10.00")

        with pytest.raises(InsufficientFunds):
            self.coordinator.withdraw(self.account.id, "0.01")

    def test_withdraw_from_empty_account(self):
        with pytest.raises(InsufficientFunds):
            self.coordinator.withdraw(self.account.id, 1)
        assert self.storage.count("transactions") == 0

    @pytest.mark.parametrize("operation", ["deposit", "withdraw"])
    @pytest.mark.parametrize("amount", [0, "-10", "NaN", "inf"])
    def test_invalid_amounts(self, operation, amount):
        with pytest.raises(InvalidAmount):
            getattr(self.coordinator, operation)(self.account.id, amount)
        assert self.storage.count("transactions") == 0

    @pytest.mark.parametrize("operation", ["deposit", "withdraw"])
    def test_unknown_account(self, operation):
        with pytest.raises(AccountNotFound):
            getattr(self.coordinator, operation)(99, 10)

    @pytest.mark.parametrize("operation", ["deposit", "withdraw"])
    def test_malformed_input(self, operation):
        with pytest.raises(InvalidInput):
            getattr(self.coordinator, operation)(0, 10)
        with pytest.raises(InvalidInput):
            getattr(self.coordinator, operation)(self.account.id, "lots")

    def test_balance_matches_sums_after_random_operations(self):
        """Test balance equals credits minus debits and never goes negative"""
        rng = random.Random(7)
        for _ in range(200):
            amount = Decimal(rng.randint(1, 5000)) / 100
            if rng.random() < 0.5:
                self.coordinator.deposit(self.account.id, amount)
            else:
                before = self.coordinator.get_balance(self.account.id)
                try:
                    self.coordinator.withdraw(self.account.id, amount)
                    assert amount <= before
                except InsufficientFunds:
                    assert amount > before

            balance = self.coordinator.get_balance(self.account.id)
            credits = self.ledger.sum_by_kind(self.account.id, EntryKind.CREDIT)
            debits = self.ledger.sum_by_kind(self.account.id, EntryKind.DEBIT)
            assert balance == credits - debits
            assert balance >= 0

    def test_repeated_reads_are_stable(self):
        self.coordinator.deposit(self.account.id, "33.33")
        first = self.coordinator.get_balance(self.account.id)
        assert all(self.coordinator.get_balance(self.account.id) == first for _ in range(5))

    def test_entries_stamped_by_clock_in_order(self):
        self.coordinator.deposit(self.account.id, 50)
        self.coordinator.withdraw(self.account.id, 20)
        self.coordinator.deposit(self.account.id, 5)

        entries = self.ledger.entries_for_account(self.account.id)
        assert [e.kind for e in entries] == [EntryKind.CREDIT, EntryKind.DEBIT, EntryKind.CREDIT]
        timestamps = [e.timestamp for e in entries]
        assert timestamps == sorted(timestamps)
        assert len(set(timestamps)) == 3

    def test_balance_summary(self):
        self.coordinator.deposit(self.account.id, "12.00")
        summary = self.coordinator.get_balance_summary(self.account.id)

        assert summary.account == self.account
        assert summary.balance == Decimal("12.00")

    def test_postings_and_rejections_are_audited(self):
        deposit = self.coordinator.deposit(self.account.id, 10)
        with pytest.raises(InsufficientFunds):
            self.coordinator.withdraw(self.account.id, 11)

        posted = self.audit_trail.get_events_for_entity("transaction", deposit.id)
        assert [e.event_type for e in posted] == [AuditEventType.TRANSACTION_POSTED]
        assert posted[0].metadata["kind"] == "credit"
        assert posted[0].metadata["amount"] == "10.00"

        rejected = [
            e for e in self.audit_trail.get_events_for_entity("account", self.account.id)
            if e.event_type == AuditEventType.WITHDRAWAL_REJECTED
        ]
        assert len(rejected) == 1
        assert rejected[0].metadata == {"amount": "11.00", "balance": "10.00"}
        assert self.audit_trail.verify_integrity()["valid"]

    def test_lock_timeout_fails_without_posting(self):
        """Test a withdrawal that cannot enter the critical section appends nothing"""
        coordinator, account_store, _, _ = build_coordinator(InMemoryStorage(), lock_timeout=0.05)
        account = account_store.create_account("Carol", "3003")
        coordinator.deposit(account.id, 100)
        outcome = []

        def contender():
            try:
                coordinator.withdraw(account.id, 10)
                outcome.append("posted")
            except InternalError:
                outcome.append("timeout")

        with coordinator.lock_manager.hold(account.id):
            worker = threading.Thread(target=contender)
            worker.start()
            worker.join()

        assert outcome == ["timeout"]
        assert coordinator.get_balance(account.id) == Decimal("100.00")

    def test_failed_audit_write_does_not_fail_committed_posting(self, monkeypatch):
        """Test postings are reported as saved when only the audit write fails"""
        def failing_log_event(*args, **kwargs):
            raise InternalError("audit store unavailable")

        monkeypatch.setattr(self.audit_trail, "log_event", failing_log_event)

        deposit = self.coordinator.deposit(self.account.id, "100")
        assert deposit.amount == Decimal("100.00")
        assert self.coordinator.get_balance(self.account.id) == Decimal("100.00")

        withdrawal = self.coordinator.withdraw(self.account.id, "30")
        assert withdrawal.amount == Decimal("30.00")
        assert self.coordinator.get_balance(self.account.id) == Decimal("70.00")

        with pytest.raises(InsufficientFunds):
            self.coordinator.withdraw(self.account.id, "500")
        assert self.coordinator.get_balance(self.account.id) == Decimal("70.00")
        assert len(self.ledger.entries_for_account(self.account.id)) == 2

    def test_id_beyond_storage_range(self):
        storage = SQLiteStorage()
        coordinator, _, _, _ = build_coordinator(storage)
        huge_id = 2 ** 64

        with pytest.raises(AccountNotFound):
            coordinator.get_balance_summary(huge_id)
        with pytest.raises(AccountNotFound):
            coordinator.deposit(huge_id, 10)
        with pytest.raises(AccountNotFound):
            coordinator.withdraw(huge_id, 10)
        storage.close()


@pytest.fixture(params=["memory", "sqlite"])
def backend(request):
    if request.param == "memory":
        yield InMemoryStorage()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "ledger.db")
            yield storage
            storage.close()


class TestConcurrentWithdrawals:
    """Withdrawals racing on one account never overdraw it"""

    def _race(self, coordinator, account_id, amount, attempts):
        barrier = threading.Barrier(attempts)

        def attempt(_):
            barrier.wait()
            try:
                coordinator.withdraw(account_id, amount)
                return True
            except InsufficientFunds:
                return False

        with ThreadPoolExecutor(max_workers=attempts) as pool:
            return list(pool.map(attempt, range(attempts)))

    def test_two_withdrawals_from_sixty(self, backend):
        """Test exactly one of two 40.00 withdrawals from 60.00 succeeds"""
        coordinator, account_store, _, _ = build_coordinator(backend)
        account = account_store.create_account("Alice", "1001")
        coordinator.deposit(account.id, "60.00")

        results = self._race(coordinator, account.id, Decimal("40.00"), 2)

        assert sorted(results) == [False, True]
        assert coordinator.get_balance(account.id) == Decimal("20.00")

    @pytest.mark.parametrize("balance, amount, attempts", [
        (Decimal("100.00"), Decimal("40.00"), 10),
        (Decimal("100.00"), Decimal("10.00"), 16),
        (Decimal("0.05"), Decimal("0.01"), 12),
    ])
    def test_exactly_floor_of_balance_over_amount_succeed(self, backend, balance, amount, attempts):
        coordinator, account_store, _, _ = build_coordinator(backend)
        account = account_store.create_account("Alice", "1001")
        coordinator.deposit(account.id, balance)

        results = self._race(coordinator, account.id, amount, attempts)

        expected = int(balance // amount)
        assert results.count(True) == expected
        assert results.count(False) == attempts - expected
        assert coordinator.get_balance(account.id) == balance - expected * amount

    def test_other_accounts_unaffected(self, backend):
        """Test racing on two accounts keeps each balance independent"""
        coordinator, account_store, _, _ = build_coordinator(backend)
        first = account_store.create_account("Alice", "1001")
        second = account_store.create_account("Bob", "1002")
        coordinator.deposit(first.id, 50)
        coordinator.deposit(second.id, 30)

        def withdraw(account_id):
            try:
                coordinator.withdraw(account_id, 10)
                return True
            except InsufficientFunds:
                return False

        ids = [first.id, second.id] * 8
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(withdraw, ids))

        assert coordinator.get_balance(first.id) == Decimal("0.00")
        assert coordinator.get_balance(second.id) == Decimal("0.00")
