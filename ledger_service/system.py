"""
Ledger system composition root

Builds every component on one storage backend, one audit trail and one
lock manager.
"""

from typing import Optional

from .audit import AuditTrail
from .batch import BatchJobs
from .config import LedgerConfig, get_config
from .currency import Currency
from .customers import CustomerManager
from .journal import TransactionJournal
from .ledger import AccountType, LedgerStore
from .loans import LoanManager
from .locks import AccountLockManager
from .operations import AccountOperations
from .reporting import LedgerReports
from .storage import StorageInterface, create_storage
from .transfers import FlatInterBranchFeePolicy, TransferOrchestrator


class LedgerSystem:
    """Ledger service with all components initialized"""

    def __init__(self, config: Optional[LedgerConfig] = None,
                 storage: Optional[StorageInterface] = None, fee_policy=None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url,
                                                 timeout=self.config.database_timeout)
        self.locks = AccountLockManager()

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.customers = CustomerManager(self.storage, self.audit_trail,
                                         default_branch_code=self.config.default_branch_code)
        self.journal = TransactionJournal(self.storage)
        self.ledger = LedgerStore(self.storage, self.journal, self.audit_trail, self.customers,
                                  locks=self.locks,
                                  default_currency=Currency[self.config.default_currency])
        self.operations = AccountOperations(self.storage, self.ledger, self.journal,
                                            self.audit_trail, locks=self.locks)
        self.transfers = TransferOrchestrator(
            self.storage, self.ledger, self.operations, self.audit_trail, locks=self.locks,
            fee_policy=fee_policy or FlatInterBranchFeePolicy(self.config.inter_branch_transfer_fee)
        )
        self.loans = LoanManager(self.storage, self.ledger, self.operations, self.audit_trail,
                                 locks=self.locks, penalty_tiers=self.config.penalty_tiers)
        self.batch = BatchJobs(
            self.storage, self.ledger, self.journal, self.operations, self.loans,
            self.audit_trail, locks=self.locks,
            chunk_size=self.config.batch_chunk_size,
            workers=self.config.batch_workers,
            dormancy_days=self.config.dormancy_days,
            interest_periods_per_year=self.config.interest_periods_per_year,
            interest_min_amount=self.config.interest_min_amount,
            interest_eligible_types=[AccountType(t) for t in self.config.interest_eligible_types]
        )
        self.reporting = LedgerReports(self.ledger, self.journal, self.transfers)

    def close(self) -> None:
        self.storage.close()
