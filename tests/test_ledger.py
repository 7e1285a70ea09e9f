"""
Test suite for the ledger store

Tests account opening, lookups and the status lifecycle.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from ledger_service.audit import AuditTrail, AuditEventType
from ledger_service.currency import Money, Currency
from ledger_service.customers import CustomerManager
from ledger_service.errors import (
    AccountNotFound, CustomerNotFound, InvalidAccountState, InvalidAmount,
    UnsupportedOperation
)
from ledger_service.journal import TransactionJournal, TransactionType
from ledger_service.ledger import Account, AccountStatus, AccountType, LedgerStore
from ledger_service.storage import InMemoryStorage


class TestAccount:
    """Test Account record validation"""

    def make_account(self, **overrides):
        now = datetime.now(timezone.utc)
        values = dict(
            id="acc-1", created_at=now, updated_at=now, account_number="ACC20240101000001",
            customer_id="cust-1", branch_code="HQ", account_type=AccountType.CURRENT,
            currency=Currency.USD, balance=Money(Decimal('50'), Currency.USD),
            minimum_balance=Money(Decimal('100'), Currency.USD),
            overdraft_limit=Money(Decimal('500'), Currency.USD)
        )
        values.update(overrides)
        return Account(**values)

    def test_balance_floor(self):
        """Test floor is minimum balance minus overdraft"""
        account = self.make_account()
        assert account.balance_floor == Money(Decimal('-400'), Currency.USD)
        assert account.available_balance == Money(Decimal('450'), Currency.USD)

    def test_overdraft_only_for_current(self):
        """Test SAVINGS accounts cannot carry an overdraft limit"""
        with pytest.raises(UnsupportedOperation):
            self.make_account(account_type=AccountType.SAVINGS)

    def test_negative_limits_rejected(self):
        """Test negative minimum balance is refused"""
        with pytest.raises(InvalidAmount):
            self.make_account(minimum_balance=Money(Decimal('-1'), Currency.USD))

    def test_currency_must_match(self):
        """Test balance currency must equal the account currency"""
        with pytest.raises(InvalidAmount):
            self.make_account(balance=Money(Decimal('1'), Currency.EUR))


class TestLedgerStore:
    """Test LedgerStore operations"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.customers = CustomerManager(self.storage, self.audit)
        self.journal = TransactionJournal(self.storage)
        self.ledger = LedgerStore(self.storage, self.journal, self.audit, self.customers)
        self.customer = self.customers.create_customer("Jane Doe", "jane@example.com",
                                                       branch_code="NORTH")

    def test_open_account_defaults(self):
        """Test a new account starts ACTIVE in the customer's branch"""
        account = self.ledger.open_account(self.customer.id, AccountType.SAVINGS,
                                           interest_rate="4.0", minimum_balance="100",
                                           opening_deposit="100")

        assert account.status == AccountStatus.ACTIVE
        assert account.balance == Money(Decimal('100'), Currency.USD)
        assert account.currency == Currency.USD
        assert account.branch_code == "NORTH"
        assert account.account_number.startswith("ACC")
        assert account.interest_rate == Decimal('4.0')

        stored = self.ledger.get_account(account.id)
        assert stored.minimum_balance == Money(Decimal('100'), Currency.USD)
        assert self.ledger.get_account_by_number(account.account_number).id == account.id

        events = self.audit.get_events_for_entity("account", account.id)
        assert events[0].event_type == AuditEventType.ACCOUNT_CREATED

    def test_open_account_with_opening_deposit(self):
        """Test the opening deposit is journaled"""
        account = self.ledger.open_account(self.customer.id, AccountType.CURRENT,
                                           currency=Currency.EUR, opening_deposit="250.00")

        assert account.balance == Money(Decimal('250.00'), Currency.EUR)
        entries = self.journal.for_account(account.id)
        assert len(entries) == 1
        assert entries[0].transaction_type == TransactionType.DEPOSIT
        assert entries[0].balance_after == account.balance

    def test_open_account_validation(self):
        """Test invalid openings write nothing"""
        with pytest.raises(CustomerNotFound):
            self.ledger.open_account("ghost", AccountType.SAVINGS)
        with pytest.raises(UnsupportedOperation):
            self.ledger.open_account(self.customer.id, AccountType.SAVINGS, overdraft_limit="10")
        with pytest.raises(InvalidAmount):
            self.ledger.open_account(self.customer.id, AccountType.SAVINGS, opening_deposit="0")
        with pytest.raises(InvalidAmount):
            self.ledger.open_account(self.customer.id, AccountType.SAVINGS, interest_rate="abc")

        assert self.ledger.count_accounts() == 0

    def test_open_account_below_floor(self):
        """Test the opening balance must reach the minimum balance"""
        with pytest.raises(InvalidAmount):
            self.ledger.open_account(self.customer.id, AccountType.SAVINGS,
                                     minimum_balance="500")
        with pytest.raises(InvalidAmount):
            self.ledger.open_account(self.customer.id, AccountType.SAVINGS,
                                     minimum_balance="500", opening_deposit="499.99")
        assert self.ledger.count_accounts() == 0
        assert self.journal.count() == 0

        account = self.ledger.open_account(self.customer.id, AccountType.SAVINGS,
                                           minimum_balance="500", opening_deposit="500")
        assert account.balance == account.balance_floor

        # An overdraft lowers the floor below zero
        current = self.ledger.open_account(self.customer.id, AccountType.CURRENT,
                                           minimum_balance="50", overdraft_limit="100")
        assert current.balance.is_zero()

    def test_require_account(self):
        """Test unknown account ids raise AccountNotFound"""
        with pytest.raises(AccountNotFound):
            self.ledger.require_account("missing")

    def test_freeze_and_unfreeze(self):
        """Test ACTIVE -> FROZEN -> ACTIVE"""
        account = self.ledger.open_account(self.customer.id, AccountType.SAVINGS)

        frozen = self.ledger.freeze_account(account.id, "fraud review", performed_by="ops")
        assert frozen.status == AccountStatus.FROZEN
        with pytest.raises(InvalidAccountState):
            self.ledger.freeze_account(account.id, "again")

        active = self.ledger.unfreeze_account(account.id, "cleared")
        assert active.status == AccountStatus.ACTIVE

    def test_dormant_and_reactivate(self):
        """Test ACTIVE -> DORMANT -> ACTIVE"""
        account = self.ledger.open_account(self.customer.id, AccountType.SAVINGS)

        assert self.ledger.mark_dormant(account.id, "inactive").status == AccountStatus.DORMANT
        with pytest.raises(InvalidAccountState):
            self.ledger.unfreeze_account(account.id, "wrong transition")
        assert self.ledger.reactivate_account(account.id, "customer visit").status == \
            AccountStatus.ACTIVE

    def test_close_requires_zero_balance(self):
        """Test closing is refused while money remains"""
        account = self.ledger.open_account(self.customer.id, AccountType.SAVINGS,
                                           opening_deposit="10")
        with pytest.raises(InvalidAccountState):
            self.ledger.close_account(account.id, "customer request")

        empty = self.ledger.open_account(self.customer.id, AccountType.SAVINGS)
        closed = self.ledger.close_account(empty.id, "customer request")
        assert closed.status == AccountStatus.CLOSED
        assert closed.closed_at is not None

        # CLOSED is terminal
        with pytest.raises(InvalidAccountState):
            self.ledger.reactivate_account(empty.id, "undo")
        with pytest.raises(InvalidAccountState):
            self.ledger.close_account(empty.id, "twice")

    def test_listing_and_chunks(self):
        """Test filters and chunked iteration"""
        other = self.customers.create_customer("John Roe", "john@example.com")
        for _ in range(3):
            self.ledger.open_account(self.customer.id, AccountType.SAVINGS)
        current = self.ledger.open_account(other.id, AccountType.CURRENT)
        self.ledger.freeze_account(current.id, "review")

        assert len(self.ledger.get_customer_accounts(self.customer.id)) == 3
        assert len(self.ledger.list_accounts(status=AccountStatus.FROZEN)) == 1
        assert len(self.ledger.list_accounts(account_type=AccountType.SAVINGS)) == 3
        assert len(self.ledger.list_accounts(branch_code="HQ")) == 1

        chunks = list(self.ledger.iter_account_chunks(2, AccountStatus.ACTIVE))
        assert [len(c) for c in chunks] == [2, 1]
