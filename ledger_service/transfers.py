"""
Transfer Orchestrator

Moves money between two accounts as one atomic unit: the source is debited
amount + fee, the destination credited amount, and a TRANSFER_OUT entry is
written on the source linked to a TRANSFER_IN entry on the destination
(plus a FEE entry when a fee applies), together with a COMPLETED Transfer
record. Validation happens before any write. If anything fails after the
first write the unit is rolled back, the transfer is recorded as FAILED in
a separate unit, and the error is raised to the caller.

Both account locks are taken in ascending id order.
"""

from abc import ABC, abstractmethod
from collections import namedtuple
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency, to_decimal
from .errors import (
    InsufficientFunds, LedgerError, TransferNotFound, UnexpectedError,
    UnsupportedOperation
)
from .identifiers import new_id, transfer_reference
from .journal import TransactionType
from .ledger import Account, AccountStatus, AccountType, LedgerStore
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .operations import AccountOperations, AmountLike, coerce_amount, require_status
from .storage import StorageInterface, StorageRecord

logger = get_logger("ledger.transfers")

TransferResult = namedtuple('TransferResult', ['transfer_ref', 'fee', 'message'])


class TransferStatus(Enum):
    """Transfer lifecycle states. COMPLETED and FAILED are terminal."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REVERSED = "REVERSED"


@dataclass
class Transfer(StorageRecord):
    """Record tying the legs of one transfer together"""
    reference: str
    from_account_id: str
    to_account_id: str
    amount: Money
    fee: Money
    status: TransferStatus = TransferStatus.PENDING
    description: str = ""
    performed_by: Optional[str] = None
    debit_transaction_id: Optional[str] = None
    credit_transaction_id: Optional[str] = None
    fee_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def total_debit(self) -> Money:
        return self.amount + self.fee


class FeePolicy(ABC):
    """Decides the fee charged to the source account of a transfer"""

    @abstractmethod
    def __call__(self, source: Account, destination: Account, amount: Money) -> Money:
        """Fee in the source account currency; zero for no fee"""


class NoFeePolicy(FeePolicy):
    def __call__(self, source: Account, destination: Account, amount: Money) -> Money:
        return Money.zero(source.currency)


class FlatInterBranchFeePolicy(FeePolicy):
    """Flat fee when the accounts belong to different branches, free otherwise"""

    def __init__(self, fee: Union[Decimal, str, int] = Decimal('10.00')):
        self.fee = to_decimal(fee)
        if self.fee < 0:
            raise ValueError("Transfer fee cannot be negative")

    def __call__(self, source: Account, destination: Account, amount: Money) -> Money:
        if source.branch_code != destination.branch_code:
            return Money(self.fee, source.currency)
        return Money.zero(source.currency)


class TransferOrchestrator:
    """
    Coordinates debit and credit of a transfer as one atomic unit
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LedgerStore,
        operations: AccountOperations,
        audit_trail: AuditTrail,
        locks: Optional[AccountLockManager] = None,
        fee_policy=None
    ):
        self.storage = storage
        self.ledger = ledger
        self.operations = operations
        self.audit_trail = audit_trail
        self.locks = locks or ledger.locks
        # Any callable (source, destination, amount) -> Money
        self.fee_policy = fee_policy or FlatInterBranchFeePolicy()
        self.transfers_table = "transfers"

    def transfer(self, from_id: str, to_id: str, amount: AmountLike, description: str = "",
                 performed_by: Optional[str] = None) -> TransferResult:
        """
        Transfer funds between two accounts

        Returns:
            TransferResult(transfer_ref, fee, message)

        Raises:
            UnsupportedOperation: Same account, currency mismatch or a
                FIXED_DEPOSIT source
            InvalidAmount: Non-positive or malformed amount
            AccountNotFound / InvalidAccountState: Either side missing or not ACTIVE
            InsufficientFunds: Source cannot cover amount + fee
            UnexpectedError: Failure after the first write (rolled back)
        """
        if from_id == to_id:
            raise UnsupportedOperation("Source and destination accounts must differ",
                                       {"account_id": from_id})

        with self.locks.hold(from_id, to_id):
            source = self.ledger.require_account(from_id)
            money = coerce_amount(amount, source.currency)
            require_status(source, (AccountStatus.ACTIVE,), "transfer from")
            destination = self.ledger.require_account(to_id)
            require_status(destination, (AccountStatus.ACTIVE,), "transfer to")

            if source.currency != destination.currency:
                raise UnsupportedOperation(
                    f"Cannot transfer {source.currency.code} to a {destination.currency.code} account"
                )
            if source.account_type == AccountType.FIXED_DEPOSIT:
                raise UnsupportedOperation("Fixed deposit accounts do not allow withdrawals",
                                           {"account_id": from_id})

            fee = self.fee_policy(source, destination, money)
            total = money + fee
            if source.balance - total < source.balance_floor:
                log_action(logger, "warning", "Transfer rejected", action="transfer",
                           resource=f"account:{from_id}", performed_by=performed_by,
                           extra={"amount": str(money.amount), "fee": str(fee.amount),
                                  "reason": InsufficientFunds.code})
                raise InsufficientFunds(
                    f"Insufficient funds: {total.to_string()} needed including fee "
                    f"{fee.to_string()}",
                    {"account_id": from_id, "available": str(source.available_balance.amount)}
                )

            now = datetime.now(timezone.utc)
            transfer = Transfer(
                id=new_id(),
                created_at=now,
                updated_at=now,
                reference=transfer_reference(now.date()),
                from_account_id=from_id,
                to_account_id=to_id,
                amount=money,
                fee=fee,
                description=description,
                performed_by=performed_by
            )

            try:
                self._execute(transfer)
            except Exception as e:
                self._record_failure(transfer, e)
                if isinstance(e, LedgerError):
                    raise
                raise UnexpectedError(f"Transfer {transfer.reference} failed: {e}",
                                      {"transfer_id": transfer.id}) from e

        message = f"Transferred {money.to_string()}"
        if fee.is_positive():
            message += f" (fee {fee.to_string()})"
        log_action(logger, "info", "Transfer completed", action="transfer",
                   resource=f"transfer:{transfer.id}", performed_by=performed_by,
                   extra={"reference": transfer.reference, "amount": str(money.amount),
                          "fee": str(fee.amount)})
        return TransferResult(transfer.reference, fee, message)

    def _execute(self, transfer: Transfer) -> None:
        """Write every part of the transfer in one atomic unit"""
        out_id, in_id = new_id(), new_id()
        label = transfer.description or f"Transfer {transfer.reference}"

        with self.storage.atomic():
            debit = self.operations.debit(
                transfer.from_account_id, transfer.amount, TransactionType.TRANSFER_OUT,
                description=label, performed_by=transfer.performed_by,
                linked_transaction_id=in_id, transfer_id=transfer.id, entry_id=out_id,
                operation="transfer from"
            )
            if transfer.fee.is_positive():
                fee_entry = self.operations.debit(
                    transfer.from_account_id, transfer.fee, TransactionType.FEE,
                    description=f"Transfer fee {transfer.reference}",
                    performed_by=transfer.performed_by, transfer_id=transfer.id
                )
                transfer.fee_transaction_id = fee_entry.id
            credit = self.operations.credit(
                transfer.to_account_id, transfer.amount, TransactionType.TRANSFER_IN,
                description=label, performed_by=transfer.performed_by,
                linked_transaction_id=out_id, transfer_id=transfer.id, entry_id=in_id
            )

            transfer.debit_transaction_id = debit.id
            transfer.credit_transaction_id = credit.id
            transfer.status = TransferStatus.COMPLETED
            transfer.completed_at = datetime.now(timezone.utc)
            transfer.touch()
            self._save_transfer(transfer)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_COMPLETED,
                entity_type="transfer",
                entity_id=transfer.id,
                metadata={
                    "reference": transfer.reference,
                    "from_account_id": transfer.from_account_id,
                    "to_account_id": transfer.to_account_id,
                    "amount": transfer.amount,
                    "fee": transfer.fee
                },
                user_id=transfer.performed_by
            )

    def _record_failure(self, transfer: Transfer, error: Exception) -> None:
        """Persist the transfer as FAILED after its unit was rolled back"""
        log_action(logger, "error", "Transfer rolled back", action="transfer",
                   resource=f"transfer:{transfer.id}", performed_by=transfer.performed_by,
                   extra={"reference": transfer.reference, "error": str(error)},
                   exc_info=True)

        transfer.status = TransferStatus.FAILED
        transfer.failure_reason = str(error)
        transfer.debit_transaction_id = None
        transfer.credit_transaction_id = None
        transfer.fee_transaction_id = None
        transfer.completed_at = None
        transfer.touch()

        with self.storage.atomic():
            self._save_transfer(transfer)
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_FAILED,
                entity_type="transfer",
                entity_id=transfer.id,
                metadata={"reference": transfer.reference, "reason": transfer.failure_reason},
                user_id=transfer.performed_by
            )

    def get_transfer(self, transfer_id: str) -> Optional[Transfer]:
        """Get transfer by ID"""
        data = self.storage.load(self.transfers_table, transfer_id)
        if data:
            return self._transfer_from_dict(data)
        return None

    def require_transfer(self, transfer_id: str) -> Transfer:
        transfer = self.get_transfer(transfer_id)
        if transfer is None:
            raise TransferNotFound(transfer_id)
        return transfer

    def get_transfer_by_reference(self, reference: str) -> Optional[Transfer]:
        transfers = self.storage.find(self.transfers_table, {"reference": reference})
        if transfers:
            return self._transfer_from_dict(transfers[0])
        return None

    def list_transfers(self, account_id: Optional[str] = None,
                       status: Optional[TransferStatus] = None) -> List[Transfer]:
        filters = {"status": status.value} if status else {}
        transfers = [self._transfer_from_dict(data)
                     for data in self.storage.find(self.transfers_table, filters)]
        if account_id:
            transfers = [t for t in transfers
                         if account_id in (t.from_account_id, t.to_account_id)]
        return transfers

    def _save_transfer(self, transfer: Transfer) -> None:
        result = transfer.to_dict()
        result['currency'] = transfer.amount.currency.code
        self.storage.save(self.transfers_table, transfer.id, result)

    def _transfer_from_dict(self, data: Dict) -> Transfer:
        currency = Currency[data['currency']]
        completed_at = data.get('completed_at')
        return Transfer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            reference=data['reference'],
            from_account_id=data['from_account_id'],
            to_account_id=data['to_account_id'],
            amount=Money(data['amount'], currency),
            fee=Money(data['fee'], currency),
            status=TransferStatus(data['status']),
            description=data.get('description', ""),
            performed_by=data.get('performed_by'),
            debit_transaction_id=data.get('debit_transaction_id'),
            credit_transaction_id=data.get('credit_transaction_id'),
            fee_transaction_id=data.get('fee_transaction_id'),
            failure_reason=data.get('failure_reason'),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None
        )
