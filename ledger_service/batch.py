"""
Batch Jobs Module

End-of-day jobs: interest accrual, dormancy marking and loan penalty
processing. Each job walks the store in bounded chunks. A chunk is one
atomic unit committed on its own; every item inside it runs in a nested
unit so a failing item is rolled back alone, logged, counted and skipped.

Each applied item leaves a BatchMarker(job, period, entity) written in the
same unit as its effect. Re-running a job for a period skips marked items,
so a run interrupted after any committed chunk can simply be started again.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union
import threading

from .audit import AuditTrail, AuditEventType
from .currency import Money, to_decimal
from .journal import TransactionJournal, TransactionType
from .ledger import Account, AccountStatus, AccountType, LedgerStore
from .loans import Loan, LoanManager, LoanStatus
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .operations import AccountOperations
from .storage import StorageInterface, StorageRecord

logger = get_logger("ledger.batch")

INTEREST_ACCRUAL = "interest_accrual"
DORMANCY = "dormancy"
LOAN_PENALTIES = "loan_penalties"

SYSTEM_USER = "system"


@dataclass
class BatchMarker(StorageRecord):
    """Proof that one item of a job was applied for a period"""
    job: str
    period: str
    entity_id: str
    outcome: str

    @staticmethod
    def key(job: str, period: str, entity_id: str) -> str:
        return f"{job}:{period}:{entity_id}"


@dataclass
class BatchResult:
    """Aggregate outcome of one job run"""
    job: str
    period: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    chunks_committed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def merge(self, other: 'BatchResult') -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped += other.skipped
        self.chunks_committed += other.chunks_committed
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "period": self.period,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "chunks_committed": self.chunks_committed,
            "errors": list(self.errors)
        }


def _as_datetime(value: Optional[Union[date, datetime]]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


class BatchJobs:
    """
    Runs the periodic jobs over accounts and loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LedgerStore,
        journal: TransactionJournal,
        operations: AccountOperations,
        loans: LoanManager,
        audit_trail: AuditTrail,
        locks: Optional[AccountLockManager] = None,
        chunk_size: int = 100,
        workers: int = 1,
        dormancy_days: int = 365,
        interest_periods_per_year: int = 12,
        interest_min_amount: Union[Decimal, str] = Decimal('0.01'),
        interest_eligible_types: Iterable[Union[AccountType, str]] = (
            AccountType.SAVINGS, AccountType.FIXED_DEPOSIT
        )
    ):
        self.storage = storage
        self.ledger = ledger
        self.journal = journal
        self.operations = operations
        self.loans = loans
        self.audit_trail = audit_trail
        self.locks = locks or ledger.locks
        self.chunk_size = chunk_size
        self.workers = workers
        self.dormancy_days = dormancy_days
        self.interest_periods_per_year = interest_periods_per_year
        self.interest_min_amount = to_decimal(interest_min_amount)
        self.interest_eligible_types = frozenset(AccountType(t) for t in interest_eligible_types)
        self.markers_table = "batch_markers"

    # Jobs

    def run_interest_accrual(
        self,
        period: Optional[str] = None,
        as_of: Optional[Union[date, datetime]] = None,
        workers: Optional[int] = None,
        chunk_size: Optional[int] = None
    ) -> BatchResult:
        """
        Credit periodic interest to eligible ACTIVE accounts

        accrual = round(balance x rate / 100 / periods_per_year, 2), credited
        as an INTEREST entry when it reaches the configured minimum.

        Args:
            period: Marker period, defaults to the as_of month (YYYY-MM)
        """
        moment = _as_datetime(as_of)
        period = period or moment.strftime("%Y-%m")
        size = chunk_size or self.chunk_size

        def eligible(account: Account) -> bool:
            return (account.account_type in self.interest_eligible_types
                    and account.interest_rate > 0)

        chunks = (
            [account for account in chunk if eligible(account)]
            for chunk in self.ledger.iter_account_chunks(size, AccountStatus.ACTIVE)
        )
        return self._run(INTEREST_ACCRUAL, period, chunks,
                         entity_id=lambda account: account.id,
                         lock_key=lambda account: account.id,
                         apply=self._accrue_interest,
                         workers=workers)

    def mark_dormant_accounts(
        self,
        as_of: Optional[Union[date, datetime]] = None,
        inactivity_days: Optional[int] = None,
        period: Optional[str] = None,
        workers: Optional[int] = None,
        chunk_size: Optional[int] = None
    ) -> BatchResult:
        """
        Move ACTIVE non-FIXED_DEPOSIT accounts with no customer-initiated
        entry inside the inactivity window to DORMANT
        """
        moment = _as_datetime(as_of)
        period = period or moment.date().isoformat()
        window = timedelta(days=inactivity_days if inactivity_days is not None
                           else self.dormancy_days)
        size = chunk_size or self.chunk_size

        chunks = (
            [account for account in chunk if account.account_type != AccountType.FIXED_DEPOSIT]
            for chunk in self.ledger.iter_account_chunks(size, AccountStatus.ACTIVE)
        )
        return self._run(DORMANCY, period, chunks,
                         entity_id=lambda account: account.id,
                         lock_key=lambda account: account.id,
                         apply=lambda account: self._mark_if_dormant(account, moment, window),
                         workers=workers)

    def process_loan_penalties(
        self,
        as_of: Optional[date] = None,
        period: Optional[str] = None,
        workers: Optional[int] = None,
        chunk_size: Optional[int] = None
    ) -> BatchResult:
        """
        Charge tiered overdue penalties to ACTIVE loans past their EMI date
        """
        day = as_of or datetime.now(timezone.utc).date()
        period = period or day.strftime("%Y-%m")
        size = chunk_size or self.chunk_size

        chunks = (
            [loan for loan in chunk if loan.next_emi_date and loan.next_emi_date < day]
            for chunk in self.loans.iter_loan_chunks(size, LoanStatus.ACTIVE)
        )
        return self._run(LOAN_PENALTIES, period, chunks,
                         entity_id=lambda loan: loan.id,
                         lock_key=lambda loan: loan.lock_key,
                         apply=lambda loan: self._penalise(loan, day, period),
                         workers=workers)

    # Per-item work; returns an outcome string, or None when nothing applied

    def _accrue_interest(self, account: Account) -> Optional[str]:
        account = self.ledger.require_account(account.id)
        if account.status != AccountStatus.ACTIVE or not account.balance.is_positive():
            return None

        # Quantized to the account currency before the minimum applies
        accrual = Money(
            account.balance.amount * account.interest_rate / Decimal('100')
            / Decimal(self.interest_periods_per_year),
            account.currency
        )
        if not accrual.is_positive() or accrual.amount < self.interest_min_amount:
            return None

        entry = self.operations.credit(
            account.id, accrual, TransactionType.INTEREST,
            description=f"Interest at {account.interest_rate}% p.a.",
            performed_by=SYSTEM_USER
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.INTEREST_POSTED,
            entity_type="account",
            entity_id=account.id,
            metadata={"amount": accrual.amount, "transaction_id": entry.id,
                      "rate": account.interest_rate},
            user_id=SYSTEM_USER
        )
        return f"interest {accrual.amount}"

    def _mark_if_dormant(self, account: Account, as_of: datetime,
                         window: timedelta) -> Optional[str]:
        account = self.ledger.require_account(account.id)
        if account.status != AccountStatus.ACTIVE:
            return None

        last_activity = account.created_at
        if account.status_changed_at and account.status_changed_at > last_activity:
            last_activity = account.status_changed_at
        last_entry = self.journal.last_activity(account.id)
        if last_entry and last_entry > last_activity:
            last_activity = last_entry

        if as_of - last_activity < window:
            return None

        self.ledger.mark_dormant(
            account.id,
            reason=f"No customer activity since {last_activity.date().isoformat()}",
            performed_by=SYSTEM_USER
        )
        return "dormant"

    def _penalise(self, loan: Loan, as_of: date, period: str) -> Optional[str]:
        penalty = self.loans.assess_penalty(loan, as_of, period, performed_by=SYSTEM_USER)
        if penalty is None:
            return None
        return f"penalty {penalty.amount.amount} at {penalty.rate}%"

    # Chunked driver

    def _run(
        self,
        job: str,
        period: str,
        chunks: Iterator[List[Any]],
        entity_id: Callable[[Any], str],
        lock_key: Callable[[Any], str],
        apply: Callable[[Any], Optional[str]],
        workers: Optional[int] = None
    ) -> BatchResult:
        workers = workers or self.workers
        result = BatchResult(job=job, period=period)
        log_action(logger, "info", "Batch job started", action=job,
                   extra={"period": period, "workers": workers})

        if workers > 1:
            merge_lock = threading.Lock()

            def run_chunk(chunk: List[Any]) -> None:
                chunk_result = self._process_chunk(job, period, chunk, entity_id, lock_key, apply)
                with merge_lock:
                    result.merge(chunk_result)

            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(run_chunk, chunk) for chunk in chunks if chunk]
                for future in futures:
                    future.result()
        else:
            for chunk in chunks:
                if chunk:
                    result.merge(
                        self._process_chunk(job, period, chunk, entity_id, lock_key, apply)
                    )

        self.audit_trail.log_event(
            event_type=AuditEventType.BATCH_COMPLETED,
            entity_type="batch",
            entity_id=f"{job}:{period}",
            metadata={k: v for k, v in result.to_dict().items() if k != "errors"},
            user_id=SYSTEM_USER
        )
        log_action(logger, "info", "Batch job finished", action=job,
                   extra={k: v for k, v in result.to_dict().items() if k != "errors"})
        return result

    def _process_chunk(
        self,
        job: str,
        period: str,
        chunk: List[Any],
        entity_id: Callable[[Any], str],
        lock_key: Callable[[Any], str],
        apply: Callable[[Any], Optional[str]]
    ) -> BatchResult:
        """Process one chunk as a single committed unit"""
        result = BatchResult(job=job, period=period)

        with self.locks.hold(*(lock_key(item) for item in chunk)), self.storage.atomic():
            for item in chunk:
                item_id = entity_id(item)
                marker_id = BatchMarker.key(job, period, item_id)
                result.processed += 1

                if self.storage.exists(self.markers_table, marker_id):
                    result.skipped += 1
                    continue

                try:
                    with self.storage.atomic():
                        outcome = apply(item)
                        if outcome is not None:
                            self._save_marker(marker_id, job, period, item_id, outcome)
                except Exception as e:
                    result.failed += 1
                    result.errors.append({"entity_id": item_id, "error": str(e)})
                    log_action(logger, "error", "Batch item failed", action=job,
                               resource=item_id, extra={"period": period, "error": str(e)},
                               exc_info=True)
                    continue

                if outcome is None:
                    result.skipped += 1
                else:
                    result.succeeded += 1

        result.chunks_committed = 1
        log_action(logger, "debug", "Batch chunk committed", action=job,
                   extra={"period": period, "items": len(chunk),
                          "succeeded": result.succeeded, "failed": result.failed})
        return result

    def _save_marker(self, marker_id: str, job: str, period: str,
                     entity_id: str, outcome: str) -> None:
        now = datetime.now(timezone.utc)
        marker = BatchMarker(id=marker_id, created_at=now, updated_at=now,
                             job=job, period=period, entity_id=entity_id, outcome=outcome)
        self.storage.save(self.markers_table, marker.id, marker.to_dict())

    def get_markers(self, job: str, period: Optional[str] = None) -> List[BatchMarker]:
        filters = {"job": job}
        if period:
            filters["period"] = period
        return [
            BatchMarker(
                id=data['id'],
                created_at=datetime.fromisoformat(data['created_at']),
                updated_at=datetime.fromisoformat(data['updated_at']),
                job=data['job'],
                period=data['period'],
                entity_id=data['entity_id'],
                outcome=data['outcome']
            )
            for data in self.storage.find(self.markers_table, filters)
        ]
