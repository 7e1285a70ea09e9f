"""
Reporting Module

Read-only queries over accounts, journal entries and transfers: statements
with running balances, balance rankings per branch, daily totals and the
consistency checks used by operations staff. Nothing here mutates state.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import csv
import io

from .journal import Direction, TransactionJournal, TransactionType
from .ledger import AccountStatus, LedgerStore
from .transfers import TransferOrchestrator, TransferStatus


class LedgerReports:
    """
    Reporting queries for the ledger
    """

    def __init__(self, ledger: LedgerStore, journal: TransactionJournal,
                 transfers: TransferOrchestrator):
        self.ledger = ledger
        self.journal = journal
        self.transfers = transfers

    def account_statement(self, account_id: str, start: Optional[datetime] = None,
                          end: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Statement for one account with a running balance per line

        The opening balance is the balance before the first entry in range
        (or the current balance when the range is empty).
        """
        account = self.ledger.require_account(account_id)
        entries = self.journal.for_account(account_id, start=start, end=end)

        if entries:
            opening = entries[0].balance_before
        else:
            opening = account.balance

        running = opening
        lines = []
        credits = Decimal('0')
        debits = Decimal('0')
        for entry in entries:
            running = running + entry.signed_amount
            if entry.is_credit:
                credits += entry.amount.amount
            else:
                debits += entry.amount.amount
            lines.append({
                "date": entry.created_at.isoformat(),
                "reference": entry.reference,
                "type": entry.transaction_type.value,
                "description": entry.description,
                "credit": str(entry.amount.amount) if entry.is_credit else "",
                "debit": "" if entry.is_credit else str(entry.amount.amount),
                "running_balance": str(running.amount)
            })

        return {
            "account_id": account.id,
            "account_number": account.account_number,
            "currency": account.currency.code,
            "opening_balance": str(opening.amount),
            "closing_balance": str(running.amount),
            "total_credits": str(credits),
            "total_debits": str(debits),
            "lines": lines
        }

    def rank_accounts_by_balance(self, branch_code: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Dense rank of non-closed accounts by balance (highest first) within
        each branch
        """
        accounts = [a for a in self.ledger.list_accounts(branch_code=branch_code)
                    if a.status != AccountStatus.CLOSED]

        by_branch: Dict[str, list] = {}
        for account in accounts:
            by_branch.setdefault(account.branch_code, []).append(account)

        rows = []
        for branch in sorted(by_branch):
            ranked = sorted(by_branch[branch],
                            key=lambda a: (-a.balance.amount, a.account_number))
            rank = 0
            previous = None
            for account in ranked:
                if account.balance.amount != previous:
                    rank += 1
                    previous = account.balance.amount
                rows.append({
                    "branch_code": branch,
                    "rank": rank,
                    "account_id": account.id,
                    "account_number": account.account_number,
                    "balance": str(account.balance.amount),
                    "currency": account.currency.code
                })
        return rows

    def daily_totals(self, account_id: str) -> List[Dict[str, Any]]:
        """Credits, debits and net movement per calendar day"""
        totals: Dict[date, Dict[str, Decimal]] = {}
        for entry in self.journal.for_account(account_id):
            day = totals.setdefault(entry.created_at.date(),
                                    {"credits": Decimal('0'), "debits": Decimal('0'), "count": 0})
            if entry.direction == Direction.CREDIT:
                day["credits"] += entry.amount.amount
            else:
                day["debits"] += entry.amount.amount
            day["count"] += 1

        return [
            {
                "date": day.isoformat(),
                "credits": str(values["credits"]),
                "debits": str(values["debits"]),
                "net": str(values["credits"] - values["debits"]),
                "entries": values["count"]
            }
            for day, values in sorted(totals.items())
        ]

    def verify_account_journal(self, account_id: str) -> Dict[str, Any]:
        """
        Check that the entries of an account chain (each before-balance equals
        the previous after-balance) and end at the stored balance
        """
        account = self.ledger.require_account(account_id)
        entries = self.journal.for_account(account_id)

        breaks = []
        previous = None
        for entry in entries:
            if previous is not None and entry.balance_before != previous.balance_after:
                breaks.append({
                    "transaction_id": entry.id,
                    "expected_before": str(previous.balance_after.amount),
                    "actual_before": str(entry.balance_before.amount)
                })
            previous = entry

        final = entries[-1].balance_after if entries else None
        balance_matches = final == account.balance if entries else account.balance.is_zero()

        return {
            "account_id": account_id,
            "valid": not breaks and balance_matches,
            "entries": len(entries),
            "chain_breaks": breaks,
            "stored_balance": str(account.balance.amount),
            "journal_balance": str(final.amount) if final else "0"
        }

    def transfer_pairs_consistent(self) -> Dict[str, Any]:
        """
        Every TRANSFER_OUT has a TRANSFER_IN pointing back at it, and every
        COMPLETED transfer references both legs
        """
        entries = {entry.id: entry for entry in self.journal.all_entries()}
        problems = []

        for entry in entries.values():
            if entry.transaction_type != TransactionType.TRANSFER_OUT:
                continue
            partner = entries.get(entry.linked_transaction_id)
            if (partner is None or partner.transaction_type != TransactionType.TRANSFER_IN
                    or partner.linked_transaction_id != entry.id
                    or partner.amount != entry.amount):
                problems.append({"transaction_id": entry.id, "problem": "unpaired transfer out"})

        for entry in entries.values():
            if entry.transaction_type != TransactionType.TRANSFER_IN:
                continue
            partner = entries.get(entry.linked_transaction_id)
            if partner is None or partner.transaction_type != TransactionType.TRANSFER_OUT:
                problems.append({"transaction_id": entry.id, "problem": "unpaired transfer in"})

        for transfer in self.transfers.list_transfers(status=TransferStatus.COMPLETED):
            if (transfer.debit_transaction_id not in entries
                    or transfer.credit_transaction_id not in entries):
                problems.append({"transfer_id": transfer.id, "problem": "missing leg"})

        return {"valid": not problems, "problems": problems}

    @staticmethod
    def to_csv(rows: List[Dict[str, Any]]) -> str:
        """Export report rows as CSV"""
        output = io.StringIO()
        if rows:
            writer = csv.DictWriter(output, fieldnames=list(rows[0].keys()))
            writer.writeheader()
            for row in rows:
                writer.writerow(row)
        csv_content = output.getvalue()
        output.close()
        return csv_content
