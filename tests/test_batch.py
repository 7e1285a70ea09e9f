"""
Test suite for batch jobs

Tests interest accrual, dormancy marking and loan penalties, including
per-item failure isolation, restart after interruption and parallel
chunk workers.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from ledger_service.audit import AuditEventType
from ledger_service.batch import BatchMarker, DORMANCY, INTEREST_ACCRUAL, LOAN_PENALTIES
from ledger_service.config import LedgerConfig
from ledger_service.currency import Money, Currency
from ledger_service.errors import InvalidAccountState
from ledger_service.journal import TransactionType
from ledger_service.ledger import AccountStatus, AccountType
from ledger_service.storage import InMemoryStorage
from ledger_service.system import LedgerSystem


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


class Interrupted(Exception):
    """Stands in for a process stopping between chunks"""


class Crash(BaseException):
    """Stands in for a process dying in the middle of a chunk"""


class BatchFixture:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.system = LedgerSystem(config=LedgerConfig(), storage=self.storage)
        self.ledger = self.system.ledger
        self.batch = self.system.batch
        self.customer = self.system.customers.create_customer("Max Bell", "max@example.com")

    def open(self, account_type=AccountType.SAVINGS, **kwargs):
        return self.ledger.open_account(self.customer.id, account_type, **kwargs)

    def balance(self, account):
        return self.ledger.get_account(account.id).balance


class TestInterestAccrual(BatchFixture):
    """Test the interest accrual job"""

    def test_accrual_and_eligibility(self):
        """Test eligible accounts get balance x rate / 100 / 12"""
        savings = self.open(interest_rate="12", opening_deposit="1000")
        fixed = self.open(AccountType.FIXED_DEPOSIT, interest_rate="6", opening_deposit="2000")
        current = self.open(AccountType.CURRENT, interest_rate="12", opening_deposit="1000")
        no_rate = self.open(opening_deposit="1000")
        empty = self.open(interest_rate="12")
        tiny = self.open(interest_rate="0.5", opening_deposit="1")
        frozen = self.open(interest_rate="12", opening_deposit="1000")
        self.ledger.freeze_account(frozen.id, "review")

        result = self.batch.run_interest_accrual(as_of=date(2024, 1, 31))

        assert result.period == "2024-01"
        assert result.processed == 4  # savings, fixed, empty, tiny
        assert result.succeeded == 2
        assert result.skipped == 2
        assert result.failed == 0
        assert self.balance(savings) == usd("1010.00")
        assert self.balance(fixed) == usd("2010.00")
        assert self.balance(current) == usd("1000.00")
        assert self.balance(no_rate) == usd("1000.00")
        assert self.balance(empty) == usd("0.00")
        assert self.balance(tiny) == usd("1.00")
        assert self.balance(frozen) == usd("1000.00")

        entry = self.system.journal.for_account(savings.id)[-1]
        assert entry.transaction_type == TransactionType.INTEREST
        assert entry.amount == usd("10.00")

        markers = self.batch.get_markers(INTEREST_ACCRUAL, "2024-01")
        assert {m.entity_id for m in markers} == {savings.id, fixed.id}

    def test_rerun_same_period_is_idempotent(self):
        """Test a second run for the same period applies nothing"""
        savings = self.open(interest_rate="12", opening_deposit="1000")
        self.batch.run_interest_accrual(period="2024-01")

        result = self.batch.run_interest_accrual(period="2024-01")
        assert result.succeeded == 0
        assert result.skipped == 1
        assert self.balance(savings) == usd("1010.00")

        # A new period compounds on the credited balance
        self.batch.run_interest_accrual(period="2024-02")
        assert self.balance(savings) == usd("1020.10")

    def test_accrual_in_zero_precision_currency(self):
        """Test yen accruals round to whole units and below one yen is skipped"""
        small = self.open(currency=Currency.JPY, interest_rate="4", opening_deposit="100")
        large = self.open(currency=Currency.JPY, interest_rate="4", opening_deposit="100000")

        result = self.batch.run_interest_accrual(period="2024-01")

        assert result.failed == 0
        assert result.errors == []
        assert result.succeeded == 1
        assert result.skipped == 1
        assert self.balance(small) == Money(Decimal('100'), Currency.JPY)
        assert self.balance(large) == Money(Decimal('100333'), Currency.JPY)
        assert {m.entity_id for m in self.batch.get_markers(INTEREST_ACCRUAL, "2024-01")} == {large.id}

    def test_failing_item_is_isolated(self):
        """Test one failing account is logged and skipped, the rest commit"""
        accounts = [self.open(interest_rate="12", opening_deposit="100") for _ in range(5)]
        broken = accounts[2]
        real_accrue = self.batch._accrue_interest

        def accrue(account):
            if account.id == broken.id:
                raise RuntimeError("rate table unavailable")
            return real_accrue(account)

        self.batch._accrue_interest = accrue
        result = self.batch.run_interest_accrual(period="2024-01")

        assert result.failed == 1
        assert result.succeeded == 4
        assert result.errors[0]["entity_id"] == broken.id
        assert self.balance(broken) == usd("100.00")
        for account in accounts:
            if account.id != broken.id:
                assert self.balance(account) == usd("101.00")

        # Fixed and re-run: only the failed item is applied
        del self.batch._accrue_interest
        retry = self.batch.run_interest_accrual(period="2024-01")
        assert retry.succeeded == 1
        assert retry.skipped == 4
        assert self.balance(broken) == usd("101.00")

    def test_batch_completion_is_audited(self):
        """Test each run leaves a BATCH_COMPLETED event"""
        self.open(interest_rate="12", opening_deposit="100")
        result = self.batch.run_interest_accrual(period="2024-01")

        events = self.system.audit_trail.get_events_by_type(AuditEventType.BATCH_COMPLETED)
        assert len(events) == 1
        assert events[0].entity_id == "interest_accrual:2024-01"
        assert events[0].metadata["succeeded"] == result.succeeded
        assert len(self.system.audit_trail.get_events_by_type(AuditEventType.INTEREST_POSTED)) == 1


class TestInterruptedAccrual(BatchFixture):
    """Test restarting an interrupted run over 1000 accounts"""

    def setup_method(self):
        super().setup_method()
        self.accounts = [self.open(interest_rate="6", opening_deposit="1000")
                         for _ in range(1000)]

    def assert_applied_once(self):
        for account in self.accounts:
            assert self.balance(account) == usd("1005.00")
        interest = [e for e in self.system.journal.all_entries()
                    if e.transaction_type == TransactionType.INTEREST]
        assert len(interest) == 1000
        assert len({e.account_id for e in interest}) == 1000

    def test_interrupted_between_chunks(self):
        """Test a run stopped after four chunks resumes without double credit"""
        real_process_chunk = self.batch._process_chunk
        calls = []

        def process_chunk(*args, **kwargs):
            calls.append(1)
            if len(calls) == 5:
                raise Interrupted()
            return real_process_chunk(*args, **kwargs)

        self.batch._process_chunk = process_chunk
        with pytest.raises(Interrupted):
            self.batch.run_interest_accrual(period="2024-01")
        del self.batch._process_chunk

        credited = [a for a in self.accounts if self.balance(a) == usd("1005.00")]
        assert len(credited) == 400

        result = self.batch.run_interest_accrual(period="2024-01")
        assert result.processed == 1000
        assert result.skipped == 400
        assert result.succeeded == 600
        assert result.chunks_committed == 10
        self.assert_applied_once()

    def test_crash_inside_chunk_rolls_back_whole_chunk(self):
        """Test a chunk that dies midway commits none of its items"""
        real_accrue = self.batch._accrue_interest
        seen = []

        def accrue(account):
            seen.append(account.id)
            if len(seen) == 150:
                raise Crash()
            return real_accrue(account)

        self.batch._accrue_interest = accrue
        with pytest.raises(Crash):
            self.batch.run_interest_accrual(period="2024-01")
        del self.batch._accrue_interest

        assert len(self.batch.get_markers(INTEREST_ACCRUAL, "2024-01")) == 100
        assert not self.storage.in_atomic()

        result = self.batch.run_interest_accrual(period="2024-01")
        assert result.skipped == 100
        assert result.succeeded == 900
        self.assert_applied_once()


class TestParallelChunks(BatchFixture):
    """Test chunk workers running in parallel"""

    def test_workers_apply_each_account_once(self):
        """Test four workers over five chunks"""
        accounts = [self.open(interest_rate="12", opening_deposit="100") for _ in range(250)]

        result = self.batch.run_interest_accrual(period="2024-01", workers=4, chunk_size=50)

        assert result.succeeded == 250
        assert result.chunks_committed == 5
        for account in accounts:
            assert self.balance(account) == usd("101.00")
        assert self.system.audit_trail.verify_integrity()["valid"]


class TestDormancy(BatchFixture):
    """Test the dormancy job"""

    def age(self, account, days):
        """Backdate an account and its entries so its last activity is days ago"""
        past = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        data = self.storage.load("accounts", account.id)
        data["created_at"] = past
        data["status_changed_at"] = past
        self.storage.save("accounts", account.id, data)
        for entry in self.storage.find("transactions", {"account_id": account.id}):
            entry["created_at"] = past
            self.storage.save("transactions", entry["id"], entry)

    def test_marks_inactive_accounts(self):
        """Test only customer-initiated entries count as activity"""
        idle = self.open()
        busy = self.open()
        interest_only = self.open(interest_rate="12")
        fixed = self.open(AccountType.FIXED_DEPOSIT)
        recent = self.open()
        for account in (idle, busy, interest_only, fixed):
            self.age(account, 400)

        self.system.operations.deposit(busy.id, Decimal('10'))
        self.system.operations.credit(interest_only.id, usd("1.00"), TransactionType.INTEREST)

        result = self.batch.mark_dormant_accounts()

        assert result.succeeded == 2
        assert self.ledger.get_account(idle.id).status == AccountStatus.DORMANT
        assert self.ledger.get_account(interest_only.id).status == AccountStatus.DORMANT
        assert self.ledger.get_account(busy.id).status == AccountStatus.ACTIVE
        assert self.ledger.get_account(fixed.id).status == AccountStatus.ACTIVE
        assert self.ledger.get_account(recent.id).status == AccountStatus.ACTIVE

        markers = self.batch.get_markers(DORMANCY)
        assert {m.entity_id for m in markers} == {idle.id, interest_only.id}

    def test_dormant_account_blocks_withdrawals(self):
        """Test dormant accounts must be reactivated before withdrawing"""
        account = self.open(opening_deposit="50")
        self.age(account, 400)
        self.batch.mark_dormant_accounts()

        with pytest.raises(InvalidAccountState):
            self.system.operations.withdraw(account.id, Decimal('10'))

        self.ledger.reactivate_account(account.id, "customer visit")
        assert self.system.operations.withdraw(account.id, Decimal('10')).new_balance == \
            usd("40.00")

    def test_custom_window(self):
        """Test the inactivity window can be overridden per run"""
        account = self.open()
        self.age(account, 40)

        assert self.batch.mark_dormant_accounts().succeeded == 0
        assert self.batch.mark_dormant_accounts(inactivity_days=30,
                                                period="short").succeeded == 1


class TestLoanPenaltyJob(BatchFixture):
    """Test the loan penalty job"""

    def disbursed_loan(self, account, disbursed_on):
        loans = self.system.loans
        loan = loans.apply_for_loan(self.customer.id, account.id, Decimal('12000'), "12", 12)
        loans.approve_loan(loan.id, approved_by="officer")
        loans.disburse(loan.id, approved_by="officer", as_of=disbursed_on)
        return loan

    def test_tiered_penalties(self):
        """Test each overdue loan is charged by its tier"""
        account = self.open()
        loans = {
            "1%": self.disbursed_loan(account, date(2024, 4, 20)),   # 12 days overdue
            "2%": self.disbursed_loan(account, date(2024, 3, 22)),   # 40 days
            "3%": self.disbursed_loan(account, date(2024, 2, 22)),   # 71 days
            "5%": self.disbursed_loan(account, date(2024, 1, 10)),   # 112 days
            "current": self.disbursed_loan(account, date(2024, 5, 15)),
        }

        result = self.batch.process_loan_penalties(as_of=date(2024, 6, 1))

        assert result.period == "2024-06"
        assert result.processed == 4
        assert result.succeeded == 4
        expected = {"1%": "10.66", "2%": "21.32", "3%": "31.99", "5%": "53.31"}
        for label, amount in expected.items():
            penalties = self.system.loans.get_loan_penalties(loans[label].id)
            assert [p.amount for p in penalties] == [usd(amount)]
        assert self.system.loans.get_loan_penalties(loans["current"].id) == []

    def test_penalty_once_per_period(self):
        """Test re-running for a period does not charge twice"""
        account = self.open()
        loan = self.disbursed_loan(account, date(2024, 1, 10))

        self.batch.process_loan_penalties(as_of=date(2024, 6, 1))
        rerun = self.batch.process_loan_penalties(as_of=date(2024, 6, 2))
        assert rerun.skipped == 1
        assert len(self.system.loans.get_loan_penalties(loan.id)) == 1

        self.batch.process_loan_penalties(as_of=date(2024, 7, 1))
        loan = self.system.loans.get_loan(loan.id)
        assert len(self.system.loans.get_loan_penalties(loan.id)) == 2
        assert loan.penalties_due == usd("106.62")

        marker_id = BatchMarker.key(LOAN_PENALTIES, "2024-06", loan.id)
        assert self.storage.exists("batch_markers", marker_id)
