"""
Tests for reporting queries
"""

from decimal import Decimal

from ledger_service.config import LedgerConfig
from ledger_service.ledger import AccountType
from ledger_service.storage import InMemoryStorage
from ledger_service.system import LedgerSystem


class TestLedgerReports:
    """Test statements, rankings and consistency checks"""

    def setup_method(self):
        self.system = LedgerSystem(config=LedgerConfig(), storage=InMemoryStorage())
        self.reports = self.system.reporting
        north = self.system.customers.create_customer("Ada North", "ada@example.com",
                                                      branch_code="NORTH")
        south = self.system.customers.create_customer("Bo South", "bo@example.com",
                                                      branch_code="SOUTH")
        open_account = self.system.ledger.open_account
        self.a = open_account(north.id, AccountType.SAVINGS, opening_deposit="500")
        self.b = open_account(north.id, AccountType.SAVINGS, opening_deposit="500")
        self.c = open_account(north.id, AccountType.CURRENT, opening_deposit="200")
        self.d = open_account(south.id, AccountType.SAVINGS, opening_deposit="50")

    def test_account_statement(self):
        """Test running balances and totals on a statement"""
        self.system.operations.deposit(self.a.id, Decimal('100'))
        self.system.operations.withdraw(self.a.id, Decimal('30'))

        statement = self.reports.account_statement(self.a.id)

        assert statement["opening_balance"] == "0.00"
        assert statement["closing_balance"] == "570.00"
        assert statement["total_credits"] == "600.00"
        assert statement["total_debits"] == "30.00"
        assert [line["running_balance"] for line in statement["lines"]] == [
            "500.00", "600.00", "570.00"
        ]
        assert statement["lines"][2]["debit"] == "30.00"

    def test_dense_rank_per_branch(self):
        """Test equal balances share a rank and ranks restart per branch"""
        rows = self.reports.rank_accounts_by_balance()

        north = [(r["account_id"], r["rank"]) for r in rows if r["branch_code"] == "NORTH"]
        ranks = dict(north)
        assert ranks[self.a.id] == 1
        assert ranks[self.b.id] == 1
        assert ranks[self.c.id] == 2
        south = [r for r in rows if r["branch_code"] == "SOUTH"]
        assert south[0]["rank"] == 1

    def test_rank_excludes_closed_accounts(self):
        """Test closed accounts are left out of rankings"""
        self.system.operations.withdraw(self.d.id, Decimal('50'))
        self.system.ledger.close_account(self.d.id, "moved away")

        rows = self.reports.rank_accounts_by_balance(branch_code="SOUTH")
        assert rows == []

    def test_daily_totals(self):
        """Test per-day credits and debits"""
        self.system.operations.withdraw(self.a.id, Decimal('20'))
        totals = self.reports.daily_totals(self.a.id)

        assert len(totals) == 1
        assert totals[0]["credits"] == "500.00"
        assert totals[0]["debits"] == "20.00"
        assert totals[0]["net"] == "480.00"
        assert totals[0]["entries"] == 2

    def test_journal_verification(self):
        """Test the journal chain matches the stored balance"""
        self.system.transfers.transfer(self.a.id, self.d.id, Decimal('100'))

        for account in (self.a, self.d):
            assert self.reports.verify_account_journal(account.id)["valid"]
        assert self.reports.transfer_pairs_consistent()["valid"]

    def test_verification_detects_drift(self):
        """Test a stored balance edited outside the ledger is reported"""
        data = self.system.storage.load("accounts", self.b.id)
        data["balance"] = "999.00"
        self.system.storage.save("accounts", self.b.id, data)

        result = self.reports.verify_account_journal(self.b.id)
        assert not result["valid"]
        assert result["journal_balance"] == "500.00"

    def test_csv_export(self):
        """Test report rows export as CSV"""
        csv_content = self.reports.to_csv(self.reports.rank_accounts_by_balance())
        lines = csv_content.strip().splitlines()

        assert lines[0].startswith("branch_code,rank,account_id")
        assert len(lines) == 5
        assert self.reports.to_csv([]) == ""
