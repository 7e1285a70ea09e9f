"""
Account Operations Module

Deposits, withdrawals and reversals, plus the credit/debit primitives every
other balance mutation goes through (transfers, interest, loan
disbursement and repayment). A primitive locks the account, re-reads its
balance, validates, writes the new balance and appends the journal entry,
all inside one atomic unit.
"""

from collections import namedtuple
from decimal import Decimal
from typing import Iterable, Optional, Union

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency, to_decimal
from .errors import (
    InvalidAccountState, InvalidAmount, InvalidState, InsufficientFunds,
    UnsupportedOperation
)
from .journal import Direction, Transaction, TransactionJournal, TransactionType
from .ledger import Account, AccountStatus, AccountType, LedgerStore
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .storage import StorageInterface

logger = get_logger("ledger.operations")

AmountLike = Union[Money, Decimal, str, int]

OperationResult = namedtuple('OperationResult', ['transaction_ref', 'new_balance'])

WITHDRAWAL_BLOCKED_MESSAGES = {
    AccountStatus.FROZEN: "Account is frozen; withdrawals are blocked",
    AccountStatus.DORMANT: "Account is dormant; reactivate it before withdrawing",
    AccountStatus.CLOSED: "Account is closed",
}

# Entry types that can be undone with a REVERSAL entry
REVERSIBLE_TYPES = frozenset({
    TransactionType.DEPOSIT,
    TransactionType.WITHDRAWAL,
    TransactionType.INTEREST,
    TransactionType.FEE,
})


def coerce_amount(amount: AmountLike, currency: Currency) -> Money:
    """
    Turn caller input into a positive Money in the given currency.

    Raises:
        InvalidAmount: Float, unparsable, wrong currency or not positive
    """
    if isinstance(amount, Money):
        if amount.currency != currency:
            raise InvalidAmount(
                f"Amount currency {amount.currency.code} does not match account currency {currency.code}"
            )
        money = amount
    else:
        try:
            money = Money(to_decimal(amount), currency)
        except ValueError as e:
            raise InvalidAmount(str(e))

    if not money.is_positive():
        raise InvalidAmount("Amount must be positive", {"amount": str(money.amount)})
    return money


def require_status(account: Account, allowed: Iterable[AccountStatus], operation: str) -> None:
    if account.status in allowed:
        return
    if operation == "withdraw" and account.status in WITHDRAWAL_BLOCKED_MESSAGES:
        message = WITHDRAWAL_BLOCKED_MESSAGES[account.status]
    else:
        message = f"Cannot {operation}: account is {account.status.value}"
    raise InvalidAccountState(message, {"account_id": account.id, "status": account.status.value})


class AccountOperations:
    """
    Balance-mutating operations on single accounts
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LedgerStore,
        journal: TransactionJournal,
        audit_trail: AuditTrail,
        locks: Optional[AccountLockManager] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.journal = journal
        self.audit_trail = audit_trail
        self.locks = locks or ledger.locks

    def deposit(self, account_id: str, amount: AmountLike, description: str = "",
                performed_by: Optional[str] = None) -> OperationResult:
        """
        Deposit funds into an active account

        Returns:
            OperationResult(transaction_ref, new_balance)

        Raises:
            AccountNotFound, InvalidAmount, InvalidAccountState
        """
        account = self.ledger.require_account(account_id)
        money = coerce_amount(amount, account.currency)

        try:
            entry = self.credit(account_id, money, TransactionType.DEPOSIT,
                                description=description or "Deposit",
                                performed_by=performed_by)
        except InvalidState:
            log_action(logger, "warning", "Deposit rejected", action="deposit",
                       resource=f"account:{account_id}", performed_by=performed_by,
                       extra={"status": account.status.value})
            raise

        log_action(logger, "info", "Deposit posted", action="deposit",
                   resource=f"account:{account_id}", performed_by=performed_by,
                   extra={"amount": str(money.amount), "reference": entry.reference})
        return OperationResult(entry.reference, entry.balance_after)

    def withdraw(self, account_id: str, amount: AmountLike, performed_by: Optional[str] = None,
                 description: str = "") -> OperationResult:
        """
        Withdraw funds from an active SAVINGS or CURRENT account

        Returns:
            OperationResult(transaction_ref, new_balance)

        Raises:
            AccountNotFound, InvalidAmount, InvalidAccountState (with a
            status-specific message), UnsupportedOperation (FIXED_DEPOSIT),
            InsufficientFunds (the balance floor would be broken)
        """
        account = self.ledger.require_account(account_id)
        money = coerce_amount(amount, account.currency)

        try:
            entry = self.debit(account_id, money, TransactionType.WITHDRAWAL,
                               description=description or "Withdrawal",
                               performed_by=performed_by, operation="withdraw")
        except (InvalidState, InsufficientFunds, UnsupportedOperation) as e:
            log_action(logger, "warning", "Withdrawal rejected", action="withdraw",
                       resource=f"account:{account_id}", performed_by=performed_by,
                       extra={"amount": str(money.amount), "reason": e.code})
            raise

        log_action(logger, "info", "Withdrawal posted", action="withdraw",
                   resource=f"account:{account_id}", performed_by=performed_by,
                   extra={"amount": str(money.amount), "reference": entry.reference})
        return OperationResult(entry.reference, entry.balance_after)

    def reverse_transaction(self, transaction_id: str, reason: str,
                            performed_by: Optional[str] = None) -> Transaction:
        """
        Undo a deposit, withdrawal, interest or fee entry with a REVERSAL entry
        in the opposite direction. Transfer legs cannot be reversed one at a
        time.

        Raises:
            TransactionNotFound, UnsupportedOperation, InvalidState (already
            reversed), InsufficientFunds (reversing a credit would break the floor)
        """
        original = self.journal.require(transaction_id)
        if original.transaction_type not in REVERSIBLE_TYPES:
            raise UnsupportedOperation(
                f"{original.transaction_type.value} entries cannot be reversed",
                {"transaction_id": transaction_id}
            )

        with self.locks.hold(original.account_id), self.storage.atomic():
            if self.journal.find_reversal(transaction_id) is not None:
                raise InvalidState(f"Transaction {original.reference} is already reversed",
                                   {"transaction_id": transaction_id})

            entry = self._post(
                original.account_id, original.amount, TransactionType.REVERSAL,
                direction=original.direction.opposite,
                description=f"Reversal of {original.reference}: {reason}",
                performed_by=performed_by,
                linked_transaction_id=original.id,
                allowed_statuses=(AccountStatus.ACTIVE, AccountStatus.DORMANT, AccountStatus.FROZEN),
                operation="reverse",
                enforce_floor=True
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_REVERSED,
                entity_type="transaction",
                entity_id=original.id,
                metadata={"reversal_id": entry.id, "reason": reason},
                user_id=performed_by
            )

        log_action(logger, "info", "Transaction reversed", action="reverse",
                   resource=f"transaction:{transaction_id}", performed_by=performed_by,
                   extra={"reversal_reference": entry.reference, "reason": reason})
        return entry

    # Primitives

    def credit(
        self,
        account_id: str,
        amount: Money,
        transaction_type: TransactionType,
        description: str = "",
        performed_by: Optional[str] = None,
        linked_transaction_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
        entry_id: Optional[str] = None
    ) -> Transaction:
        """Increase the balance of an ACTIVE account and journal it"""
        return self._post(account_id, amount, transaction_type, Direction.CREDIT,
                          description=description, performed_by=performed_by,
                          linked_transaction_id=linked_transaction_id,
                          transfer_id=transfer_id, entry_id=entry_id,
                          operation=transaction_type.value.lower())

    def debit(
        self,
        account_id: str,
        amount: Money,
        transaction_type: TransactionType,
        description: str = "",
        performed_by: Optional[str] = None,
        linked_transaction_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
        entry_id: Optional[str] = None,
        operation: Optional[str] = None
    ) -> Transaction:
        """
        Decrease the balance of an ACTIVE account and journal it. FIXED_DEPOSIT
        accounts are never debited; the balance floor is always enforced.
        """
        return self._post(account_id, amount, transaction_type, Direction.DEBIT,
                          description=description, performed_by=performed_by,
                          linked_transaction_id=linked_transaction_id,
                          transfer_id=transfer_id, entry_id=entry_id,
                          operation=operation or transaction_type.value.lower())

    def _post(
        self,
        account_id: str,
        amount: Money,
        transaction_type: TransactionType,
        direction: Direction,
        description: str = "",
        performed_by: Optional[str] = None,
        linked_transaction_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
        entry_id: Optional[str] = None,
        allowed_statuses: Iterable[AccountStatus] = (AccountStatus.ACTIVE,),
        operation: str = "post",
        enforce_floor: bool = True
    ) -> Transaction:
        with self.locks.hold(account_id), self.storage.atomic():
            # Fresh read under the account lock
            account = self.ledger.require_account(account_id)
            require_status(account, allowed_statuses, operation)

            if amount.currency != account.currency:
                raise InvalidAmount(
                    f"Amount currency {amount.currency.code} does not match account currency "
                    f"{account.currency.code}"
                )

            if direction == Direction.DEBIT:
                if (account.account_type == AccountType.FIXED_DEPOSIT
                        and transaction_type != TransactionType.REVERSAL):
                    raise UnsupportedOperation(
                        "Fixed deposit accounts do not allow withdrawals",
                        {"account_id": account_id}
                    )
                projected = account.balance - amount
                if enforce_floor and projected < account.balance_floor:
                    raise InsufficientFunds(
                        f"Insufficient funds: balance {account.balance.to_string()}, "
                        f"requested {amount.to_string()}, floor {account.balance_floor.to_string()}",
                        {"account_id": account_id,
                         "available": str(account.available_balance.amount)}
                    )

            entry = self.journal.new_entry(
                account_id=account_id,
                transaction_type=transaction_type,
                amount=amount,
                balance_before=account.balance,
                direction=direction,
                description=description,
                performed_by=performed_by,
                linked_transaction_id=linked_transaction_id,
                transfer_id=transfer_id,
                entry_id=entry_id
            )

            account.balance = entry.balance_after
            account.touch()
            self.ledger.save_account(account)
            self.journal.append(entry)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_POSTED,
                entity_type="transaction",
                entity_id=entry.id,
                metadata={
                    "account_id": account_id,
                    "reference": entry.reference,
                    "type": transaction_type.value,
                    "direction": direction.value,
                    "amount": amount,
                    "balance_after": entry.balance_after
                },
                user_id=performed_by
            )

        return entry
