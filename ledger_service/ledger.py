"""
Ledger Store Module

Source of truth for accounts and their balances. Accounts are opened here,
move through their status lifecycle here, and are never deleted: closing
is a terminal status.

    ACTIVE -> DORMANT   (dormancy batch job)
    ACTIVE -> FROZEN    (administrative action)
    FROZEN -> ACTIVE    (unfreeze)
    DORMANT -> ACTIVE   (reactivation)
    any non-CLOSED -> CLOSED

Balances are only changed by Account Operations (see operations.py); the
store just persists what they compute.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Union
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency, to_decimal
from .customers import CustomerManager
from .errors import (
    AccountNotFound, InvalidAccountState, InvalidAmount, UnsupportedOperation
)
from .identifiers import new_id, account_number as next_account_number
from .journal import TransactionJournal, TransactionType
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger("ledger.accounts")


class AccountType(Enum):
    """Deposit product types"""
    SAVINGS = "SAVINGS"
    CURRENT = "CURRENT"
    FIXED_DEPOSIT = "FIXED_DEPOSIT"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"      # Normal operation
    DORMANT = "DORMANT"    # No customer activity for the dormancy window
    FROZEN = "FROZEN"      # Administratively suspended
    CLOSED = "CLOSED"      # Terminal


@dataclass
class Account(StorageRecord):
    """
    Deposit account with its current balance
    """
    account_number: str
    customer_id: str
    branch_code: str
    account_type: AccountType
    currency: Currency
    balance: Money
    minimum_balance: Money
    overdraft_limit: Money
    interest_rate: Decimal = Decimal('0')  # Annual percent, e.g. 4.0
    status: AccountStatus = AccountStatus.ACTIVE
    name: str = ""
    status_changed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        for label, value in (("Balance", self.balance),
                             ("Minimum balance", self.minimum_balance),
                             ("Overdraft limit", self.overdraft_limit)):
            if value.currency != self.currency:
                raise InvalidAmount(f"{label} currency must match account currency")

        if self.minimum_balance.is_negative():
            raise InvalidAmount("Minimum balance cannot be negative")
        if self.overdraft_limit.is_negative():
            raise InvalidAmount("Overdraft limit cannot be negative")
        if self.interest_rate < 0:
            raise InvalidAmount("Interest rate cannot be negative")

        if self.account_type != AccountType.CURRENT and not self.overdraft_limit.is_zero():
            raise UnsupportedOperation("Only CURRENT accounts can have an overdraft limit")

    @property
    def balance_floor(self) -> Money:
        """Lowest balance a debit may leave behind"""
        return self.minimum_balance - self.overdraft_limit

    @property
    def available_balance(self) -> Money:
        """Amount that can be withdrawn right now"""
        available = self.balance - self.balance_floor
        return available if available.is_positive() else Money.zero(self.currency)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status == AccountStatus.CLOSED


class LedgerStore:
    """
    Manages accounts and their lifecycle
    """

    def __init__(
        self,
        storage: StorageInterface,
        journal: TransactionJournal,
        audit_trail: AuditTrail,
        customers: CustomerManager,
        locks: Optional[AccountLockManager] = None,
        default_currency: Currency = Currency.USD
    ):
        self.storage = storage
        self.journal = journal
        self.audit_trail = audit_trail
        self.customers = customers
        self.locks = locks or AccountLockManager()
        self.default_currency = default_currency
        self.accounts_table = "accounts"

    def open_account(
        self,
        customer_id: str,
        account_type: AccountType,
        currency: Optional[Currency] = None,
        interest_rate: Union[Decimal, str, int] = Decimal('0'),
        minimum_balance: Optional[Union[Money, Decimal, str, int]] = None,
        overdraft_limit: Optional[Union[Money, Decimal, str, int]] = None,
        opening_deposit: Optional[Union[Money, Decimal, str, int]] = None,
        branch_code: Optional[str] = None,
        name: str = "",
        performed_by: Optional[str] = None
    ) -> Account:
        """
        Open a new account

        Args:
            customer_id: Owner of the account
            account_type: SAVINGS, CURRENT or FIXED_DEPOSIT
            currency: Account currency; defaults to the ledger currency
            interest_rate: Annual rate in percent
            minimum_balance: Balance every debit must respect
            overdraft_limit: How far below the minimum a CURRENT account may go
            opening_deposit: Posted as a DEPOSIT entry in the same unit
            branch_code: Defaults to the customer's branch

        Returns:
            Created Account object

        Raises:
            CustomerNotFound: Unknown owner
            UnsupportedOperation: Overdraft requested for a non-CURRENT account
            InvalidAmount: Negative limits or a non-positive opening deposit,
                or an opening balance below the balance floor
        """
        customer = self.customers.require_customer(customer_id)
        currency = currency or self.default_currency

        try:
            rate = to_decimal(interest_rate)
        except ValueError as e:
            raise InvalidAmount(str(e))

        now = datetime.now(timezone.utc)
        account = Account(
            id=new_id(),
            created_at=now,
            updated_at=now,
            account_number=next_account_number(now.date()),
            customer_id=customer.id,
            branch_code=branch_code or customer.branch_code,
            account_type=account_type,
            currency=currency,
            balance=Money.zero(currency),
            minimum_balance=self._money(minimum_balance, currency),
            overdraft_limit=self._money(overdraft_limit, currency),
            interest_rate=rate,
            name=name,
            status_changed_at=now
        )

        deposit = None
        if opening_deposit is not None:
            deposit = self._money(opening_deposit, currency)
            if not deposit.is_positive():
                raise InvalidAmount("Opening deposit must be positive")

        opening_balance = deposit if deposit is not None else Money.zero(currency)
        if opening_balance < account.balance_floor:
            raise InvalidAmount(
                f"Opening balance {opening_balance.to_string()} is below the minimum "
                f"{account.balance_floor.to_string()}",
                {"balance_floor": str(account.balance_floor.amount)}
            )

        with self.locks.hold(account.id), self.storage.atomic():
            if deposit is not None:
                entry = self.journal.new_entry(
                    account_id=account.id,
                    transaction_type=TransactionType.DEPOSIT,
                    amount=deposit,
                    balance_before=account.balance,
                    description="Opening deposit",
                    performed_by=performed_by
                )
                account.balance = entry.balance_after
                self.journal.append(entry)

            self.save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CREATED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "account_number": account.account_number,
                    "customer_id": account.customer_id,
                    "account_type": account.account_type.value,
                    "currency": currency.code,
                    "opening_balance": account.balance
                },
                user_id=performed_by
            )

        log_action(logger, "info", "Account opened", action="open_account",
                   resource=f"account:{account.id}", performed_by=performed_by,
                   extra={"account_type": account_type.value,
                          "opening_balance": str(account.balance.amount)})
        return account

    @staticmethod
    def _money(value: Optional[Union[Money, Decimal, str, int]], currency: Currency) -> Money:
        if value is None:
            return Money.zero(currency)
        if isinstance(value, Money):
            if value.currency != currency:
                raise InvalidAmount(
                    f"Expected {currency.code} amount, got {value.currency.code}"
                )
            return value
        try:
            return Money(to_decimal(value), currency)
        except ValueError as e:
            raise InvalidAmount(str(e))

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def require_account(self, account_id: str) -> Account:
        """Get account by ID or raise AccountNotFound"""
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def get_customer_accounts(self, customer_id: str) -> List[Account]:
        """Get all accounts for a customer"""
        accounts_data = self.storage.find(self.accounts_table, {"customer_id": customer_id})
        return [self._account_from_dict(data) for data in accounts_data]

    def list_accounts(
        self,
        status: Optional[AccountStatus] = None,
        account_type: Optional[AccountType] = None,
        branch_code: Optional[str] = None
    ) -> List[Account]:
        filters = {}
        if status:
            filters["status"] = status.value
        if account_type:
            filters["account_type"] = account_type.value
        if branch_code:
            filters["branch_code"] = branch_code
        return [self._account_from_dict(data)
                for data in self.storage.find(self.accounts_table, filters)]

    def iter_account_chunks(
        self,
        chunk_size: int,
        status: Optional[AccountStatus] = None
    ) -> Iterator[List[Account]]:
        """Accounts in bounded chunks, for batch jobs"""
        filters = {"status": status.value} if status else None
        for chunk in self.storage.iter_chunks(self.accounts_table, chunk_size, filters):
            yield [self._account_from_dict(data) for data in chunk]

    def count_accounts(self) -> int:
        return self.storage.count(self.accounts_table)

    # Status lifecycle

    def freeze_account(self, account_id: str, reason: str,
                       performed_by: Optional[str] = None) -> Account:
        """Freeze an active account; withdrawals and deposits are blocked"""
        return self._transition(account_id, (AccountStatus.ACTIVE,), AccountStatus.FROZEN,
                                AuditEventType.ACCOUNT_FROZEN, reason, performed_by)

    def unfreeze_account(self, account_id: str, reason: str,
                         performed_by: Optional[str] = None) -> Account:
        return self._transition(account_id, (AccountStatus.FROZEN,), AccountStatus.ACTIVE,
                                AuditEventType.ACCOUNT_UNFROZEN, reason, performed_by)

    def reactivate_account(self, account_id: str, reason: str,
                           performed_by: Optional[str] = None) -> Account:
        return self._transition(account_id, (AccountStatus.DORMANT,), AccountStatus.ACTIVE,
                                AuditEventType.ACCOUNT_REACTIVATED, reason, performed_by)

    def mark_dormant(self, account_id: str, reason: str,
                     performed_by: Optional[str] = None) -> Account:
        return self._transition(account_id, (AccountStatus.ACTIVE,), AccountStatus.DORMANT,
                                AuditEventType.ACCOUNT_DORMANT, reason, performed_by)

    def close_account(self, account_id: str, reason: str,
                      performed_by: Optional[str] = None) -> Account:
        """Close an account. The balance must be exactly zero."""
        with self.locks.hold(account_id):
            account = self.require_account(account_id)
            if not account.balance.is_zero() and not account.is_closed:
                raise InvalidAccountState(
                    f"Cannot close account with non-zero balance: {account.balance.to_string()}",
                    {"account_id": account_id, "balance": str(account.balance.amount)}
                )
            return self._transition(
                account_id,
                (AccountStatus.ACTIVE, AccountStatus.DORMANT, AccountStatus.FROZEN),
                AccountStatus.CLOSED, AuditEventType.ACCOUNT_CLOSED, reason, performed_by
            )

    def _transition(
        self,
        account_id: str,
        allowed_from: Iterable[AccountStatus],
        new_status: AccountStatus,
        event_type: AuditEventType,
        reason: str,
        performed_by: Optional[str]
    ) -> Account:
        with self.locks.hold(account_id), self.storage.atomic():
            account = self.require_account(account_id)
            old_status = account.status
            if old_status not in allowed_from:
                log_action(logger, "warning", "Rejected status change",
                           action="status_change", resource=f"account:{account_id}",
                           performed_by=performed_by,
                           extra={"from": old_status.value, "to": new_status.value})
                raise InvalidAccountState(
                    f"Cannot change account status from {old_status.value} to {new_status.value}",
                    {"account_id": account_id, "status": old_status.value}
                )

            now = datetime.now(timezone.utc)
            account.status = new_status
            account.status_changed_at = now
            if new_status == AccountStatus.CLOSED:
                account.closed_at = now
            account.touch()
            self.save_account(account)

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "old_status": old_status.value,
                    "new_status": new_status.value,
                    "reason": reason
                },
                user_id=performed_by
            )

        log_action(logger, "info", f"Account {new_status.value.lower()}",
                   action="status_change", resource=f"account:{account_id}",
                   performed_by=performed_by,
                   extra={"from": old_status.value, "to": new_status.value, "reason": reason})
        return account

    def save_account(self, account: Account) -> None:
        """Persist an account. Callers hold the account lock."""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        return account.to_dict()

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        currency = Currency[data['currency']]

        def get_datetime(field: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[field]) if data.get(field) else None

        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            customer_id=data['customer_id'],
            branch_code=data['branch_code'],
            account_type=AccountType(data['account_type']),
            currency=currency,
            balance=Money(data['balance'], currency),
            minimum_balance=Money(data['minimum_balance'], currency),
            overdraft_limit=Money(data['overdraft_limit'], currency),
            interest_rate=Decimal(data['interest_rate']),
            status=AccountStatus(data['status']),
            name=data.get('name', ""),
            status_changed_at=get_datetime('status_changed_at'),
            closed_at=get_datetime('closed_at')
        )
