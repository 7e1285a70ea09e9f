"""
Test suite for account operations

Tests deposits, withdrawals, balance floors, status checks, reversals and
concurrent withdrawals against the same account.
"""

import pytest
import threading
from decimal import Decimal

from ledger_service.audit import AuditEventType
from ledger_service.config import LedgerConfig
from ledger_service.currency import Money, Currency
from ledger_service.errors import (
    AccountNotFound, InsufficientFunds, InvalidAccountState, InvalidAmount, InvalidState,
    UnsupportedOperation
)
from ledger_service.journal import Direction, TransactionType
from ledger_service.ledger import AccountType
from ledger_service.storage import InMemoryStorage
from ledger_service.system import LedgerSystem


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


class TestDepositWithdraw:
    """Test deposits and withdrawals"""

    def setup_method(self):
        self.system = LedgerSystem(config=LedgerConfig(), storage=InMemoryStorage())
        self.customer = self.system.customers.create_customer("Ann Lee", "ann@example.com")
        self.ledger = self.system.ledger
        self.operations = self.system.operations

    def open(self, account_type=AccountType.SAVINGS, **kwargs):
        return self.ledger.open_account(self.customer.id, account_type, **kwargs)

    def test_deposit(self):
        """Test a deposit credits the balance and journals it"""
        account = self.open()
        result = self.operations.deposit(account.id, Decimal('125.50'), description="Salary")

        assert result.new_balance == usd("125.50")
        assert result.transaction_ref.startswith("TXN")
        assert self.ledger.get_account(account.id).balance == usd("125.50")

        entry = self.system.journal.for_account(account.id)[-1]
        assert entry.transaction_type == TransactionType.DEPOSIT
        assert entry.direction == Direction.CREDIT
        assert entry.balance_before == usd("0.00")
        assert entry.balance_after == usd("125.50")

    def test_deposit_invalid_amounts(self):
        """Test zero, negative, float and wrong-currency deposits"""
        account = self.open()

        with pytest.raises(InvalidAmount):
            self.operations.deposit(account.id, Decimal('0'))
        with pytest.raises(InvalidAmount):
            self.operations.deposit(account.id, "-5")
        with pytest.raises(InvalidAmount):
            self.operations.deposit(account.id, 10.0)
        with pytest.raises(InvalidAmount):
            self.operations.deposit(account.id, Money(Decimal('5'), Currency.EUR))

        assert self.system.journal.count() == 0

    def test_deposit_unknown_account(self):
        """Test deposits to missing accounts"""
        with pytest.raises(AccountNotFound):
            self.operations.deposit("missing", Decimal('1'))

    def test_deposit_blocked_on_frozen_account(self):
        """Test frozen accounts take no deposits"""
        account = self.open()
        self.ledger.freeze_account(account.id, "review")

        with pytest.raises(InvalidAccountState):
            self.operations.deposit(account.id, Decimal('10'))

    def test_withdraw_respects_minimum_balance(self):
        """Test SAVINGS withdrawals cannot go below the minimum balance"""
        account = self.open(minimum_balance="100", opening_deposit="500")

        result = self.operations.withdraw(account.id, Decimal('400'))
        assert result.new_balance == usd("100.00")

        with pytest.raises(InsufficientFunds):
            self.operations.withdraw(account.id, Decimal('0.01'))
        assert self.ledger.get_account(account.id).balance == usd("100.00")

    def test_current_account_overdraft(self):
        """Test CURRENT accounts may dip to minimum minus overdraft"""
        account = self.open(AccountType.CURRENT, overdraft_limit="500", opening_deposit="50")

        result = self.operations.withdraw(account.id, Decimal('550'))
        assert result.new_balance == usd("-500.00")

        with pytest.raises(InsufficientFunds):
            self.operations.withdraw(account.id, Decimal('1'))

    def test_fixed_deposit_withdrawal_unsupported(self):
        """Test FIXED_DEPOSIT accounts never allow withdrawals"""
        account = self.open(AccountType.FIXED_DEPOSIT, opening_deposit="1000")

        with pytest.raises(UnsupportedOperation):
            self.operations.withdraw(account.id, Decimal('1'))
        assert self.ledger.get_account(account.id).balance == usd("1000.00")

    def test_withdraw_status_messages(self):
        """Test each blocked status has its own message"""
        frozen = self.open(opening_deposit="10")
        self.ledger.freeze_account(frozen.id, "review")
        dormant = self.open(opening_deposit="10")
        self.ledger.mark_dormant(dormant.id, "inactive")

        with pytest.raises(InvalidAccountState, match="frozen"):
            self.operations.withdraw(frozen.id, Decimal('1'))
        with pytest.raises(InvalidAccountState, match="dormant"):
            self.operations.withdraw(dormant.id, Decimal('1'))

    def test_failed_withdrawal_leaves_no_trace(self):
        """Test a rejected withdrawal writes no journal or audit entry"""
        account = self.open(opening_deposit="10")
        journal_count = self.system.journal.count()
        audit_count = self.system.audit_trail.count_events()

        with pytest.raises(InsufficientFunds):
            self.operations.withdraw(account.id, Decimal('10.01'))

        assert self.system.journal.count() == journal_count
        assert self.system.audit_trail.count_events() == audit_count

    def test_operations_are_audited(self):
        """Test each posting records a TRANSACTION_POSTED event"""
        account = self.open()
        self.operations.deposit(account.id, Decimal('10'))
        self.operations.withdraw(account.id, Decimal('4'))

        posted = self.system.audit_trail.get_events_by_type(AuditEventType.TRANSACTION_POSTED)
        assert [e.metadata["type"] for e in posted] == ["DEPOSIT", "WITHDRAWAL"]
        assert posted[-1].metadata["balance_after"] == "6.00"
        assert self.system.audit_trail.verify_integrity()["valid"]


class TestReversal:
    """Test transaction reversals"""

    def setup_method(self):
        self.system = LedgerSystem(config=LedgerConfig(), storage=InMemoryStorage())
        customer = self.system.customers.create_customer("Ben Ray", "ben@example.com")
        self.account = self.system.ledger.open_account(customer.id, AccountType.SAVINGS)
        self.operations = self.system.operations

    def entry_for(self, reference):
        return self.system.journal.get_by_reference(reference)

    def test_reverse_deposit(self):
        """Test reversing a deposit debits it back out"""
        result = self.operations.deposit(self.account.id, Decimal('80'))
        original = self.entry_for(result.transaction_ref)

        reversal = self.operations.reverse_transaction(original.id, "posted twice")

        assert reversal.transaction_type == TransactionType.REVERSAL
        assert reversal.direction == Direction.DEBIT
        assert reversal.linked_transaction_id == original.id
        assert self.system.ledger.get_account(self.account.id).balance == usd("0.00")

    def test_reverse_withdrawal(self):
        """Test reversing a withdrawal credits it back"""
        self.operations.deposit(self.account.id, Decimal('100'))
        result = self.operations.withdraw(self.account.id, Decimal('30'))

        self.operations.reverse_transaction(self.entry_for(result.transaction_ref).id, "error")
        assert self.system.ledger.get_account(self.account.id).balance == usd("100.00")

    def test_cannot_reverse_twice(self):
        """Test a second reversal is refused"""
        result = self.operations.deposit(self.account.id, Decimal('5'))
        original = self.entry_for(result.transaction_ref)
        self.operations.reverse_transaction(original.id, "first")

        with pytest.raises(InvalidState):
            self.operations.reverse_transaction(original.id, "second")

    def test_reversal_respects_floor(self):
        """Test a deposit already spent cannot be reversed"""
        result = self.operations.deposit(self.account.id, Decimal('50'))
        self.operations.withdraw(self.account.id, Decimal('40'))

        with pytest.raises(InsufficientFunds):
            self.operations.reverse_transaction(self.entry_for(result.transaction_ref).id, "late")


class TestConcurrentWithdrawals:
    """Test concurrent withdrawals from one account"""

    def setup_method(self):
        self.system = LedgerSystem(config=LedgerConfig(), storage=InMemoryStorage())
        customer = self.system.customers.create_customer("Cal Fox", "cal@example.com")
        self.account = self.system.ledger.open_account(
            customer.id, AccountType.SAVINGS, minimum_balance="100", opening_deposit="1100"
        )

    def test_withdrawals_exhaust_exactly_the_available_balance(self):
        """Test 20 threads withdrawing 100 each: exactly 10 succeed"""
        successes = []
        failures = []
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            try:
                self.system.operations.withdraw(self.account.id, Decimal('100'))
                successes.append(1)
            except InsufficientFunds:
                failures.append(1)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 10
        assert len(failures) == 10
        assert self.system.ledger.get_account(self.account.id).balance == usd("100.00")
        assert self.system.reporting.verify_account_journal(self.account.id)["valid"]
