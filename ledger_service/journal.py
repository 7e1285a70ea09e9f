"""
Transaction Journal Module

Append-only log of every balance-affecting event. Each entry records the
balance before and after the movement and is validated on construction:
an entry whose after-balance does not equal the before-balance adjusted by
its signed amount cannot exist. Entries are never updated or deleted.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from enum import Enum
import itertools
import threading

from .currency import Money, Currency
from .errors import InvalidAmount, TransactionNotFound, UnexpectedError
from .identifiers import new_id, transaction_reference
from .storage import StorageInterface, StorageRecord


class TransactionType(Enum):
    """Kinds of journal entries"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    INTEREST = "INTEREST"
    FEE = "FEE"
    REVERSAL = "REVERSAL"


class Direction(Enum):
    """Effect of an entry on the account balance"""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"

    @property
    def opposite(self) -> 'Direction':
        return Direction.DEBIT if self is Direction.CREDIT else Direction.CREDIT


# REVERSAL takes the opposite direction of the entry it reverses
FIXED_DIRECTIONS = {
    TransactionType.DEPOSIT: Direction.CREDIT,
    TransactionType.TRANSFER_IN: Direction.CREDIT,
    TransactionType.INTEREST: Direction.CREDIT,
    TransactionType.WITHDRAWAL: Direction.DEBIT,
    TransactionType.TRANSFER_OUT: Direction.DEBIT,
    TransactionType.FEE: Direction.DEBIT,
}

# Entries that count as account activity for dormancy
CUSTOMER_INITIATED = frozenset({
    TransactionType.DEPOSIT,
    TransactionType.WITHDRAWAL,
    TransactionType.TRANSFER_IN,
    TransactionType.TRANSFER_OUT,
})


@dataclass
class Transaction(StorageRecord):
    """
    Immutable journal entry
    """
    sequence: int                       # Journal-wide posting order
    reference: str                      # Human readable, e.g. TXN20240131000042
    account_id: str
    transaction_type: TransactionType
    direction: Direction
    amount: Money
    balance_before: Money
    balance_after: Money
    description: str = ""
    performed_by: Optional[str] = None
    linked_transaction_id: Optional[str] = None  # Paired transfer leg or reversed entry
    transfer_id: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise InvalidAmount("Transaction amount must be positive")

        if not (self.amount.currency == self.balance_before.currency == self.balance_after.currency):
            raise InvalidAmount("Transaction amounts must share one currency")

        expected_direction = FIXED_DIRECTIONS.get(self.transaction_type)
        if expected_direction is not None and self.direction != expected_direction:
            raise UnexpectedError(
                f"{self.transaction_type.value} entries are always {expected_direction.value}"
            )

        if self.balance_after != self.balance_before + self.signed_amount:
            raise UnexpectedError(
                f"Balance after {self.balance_after.to_string()} does not equal "
                f"balance before {self.balance_before.to_string()} "
                f"{'+' if self.direction == Direction.CREDIT else '-'} {self.amount.to_string()}"
            )

    @property
    def signed_amount(self) -> Money:
        """Amount with the sign of its effect on the balance"""
        return self.amount if self.direction == Direction.CREDIT else -self.amount

    @property
    def is_credit(self) -> bool:
        return self.direction == Direction.CREDIT

    @property
    def currency(self) -> Currency:
        return self.amount.currency


class TransactionJournal:
    """
    Append-only store for journal entries
    """

    def __init__(self, storage: StorageInterface, table_name: str = "transactions"):
        self.storage = storage
        self.table_name = table_name
        self._sequence_lock = threading.Lock()
        existing = [entry.get('sequence', 0) for entry in storage.load_all(table_name)]
        self._sequence = itertools.count(max(existing, default=0) + 1)

    def new_entry(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount: Money,
        balance_before: Money,
        direction: Optional[Direction] = None,
        description: str = "",
        performed_by: Optional[str] = None,
        linked_transaction_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
        entry_id: Optional[str] = None
    ) -> Transaction:
        """
        Build (but do not store) a journal entry, computing the after-balance.

        Args:
            direction: Required for REVERSAL entries, fixed for all others
            entry_id: Pre-assigned id, used to link the two legs of a transfer
        """
        if direction is None:
            direction = FIXED_DIRECTIONS.get(transaction_type)
            if direction is None:
                raise UnexpectedError(f"{transaction_type.value} entries need an explicit direction")

        signed = amount if direction == Direction.CREDIT else -amount
        with self._sequence_lock:
            sequence = next(self._sequence)

        now = datetime.now(timezone.utc)
        return Transaction(
            id=entry_id or new_id(),
            created_at=now,
            updated_at=now,
            sequence=sequence,
            reference=transaction_reference(now.date()),
            account_id=account_id,
            transaction_type=transaction_type,
            direction=direction,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_before + signed,
            description=description,
            performed_by=performed_by,
            linked_transaction_id=linked_transaction_id,
            transfer_id=transfer_id
        )

    def append(self, entry: Transaction) -> Transaction:
        """Store a new entry; existing entries are never overwritten"""
        if self.storage.exists(self.table_name, entry.id):
            raise UnexpectedError(f"Journal entry {entry.id} already exists",
                                  {"transaction_id": entry.id})
        self.storage.save(self.table_name, entry.id, self._entry_to_dict(entry))
        return entry

    def get(self, transaction_id: str) -> Optional[Transaction]:
        """Get journal entry by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return self._entry_from_dict(data)
        return None

    def require(self, transaction_id: str) -> Transaction:
        entry = self.get(transaction_id)
        if entry is None:
            raise TransactionNotFound(transaction_id)
        return entry

    def get_by_reference(self, reference: str) -> Optional[Transaction]:
        entries = self.storage.find(self.table_name, {"reference": reference})
        if entries:
            return self._entry_from_dict(entries[0])
        return None

    def for_account(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        types: Optional[Iterable[TransactionType]] = None
    ) -> List[Transaction]:
        """
        Entries of one account in posting order

        Args:
            start: Include entries created at or after this time
            end: Include entries created before this time
            types: Restrict to these transaction types
        """
        entries = [self._entry_from_dict(data)
                   for data in self.storage.find(self.table_name, {"account_id": account_id})]
        if start:
            entries = [e for e in entries if e.created_at >= start]
        if end:
            entries = [e for e in entries if e.created_at < end]
        if types is not None:
            wanted = set(types)
            entries = [e for e in entries if e.transaction_type in wanted]
        return self._ordered(entries)

    def for_transfer(self, transfer_id: str) -> List[Transaction]:
        entries = [self._entry_from_dict(data)
                   for data in self.storage.find(self.table_name, {"transfer_id": transfer_id})]
        return self._ordered(entries)

    def all_entries(self) -> List[Transaction]:
        return self._ordered(self._entry_from_dict(data)
                             for data in self.storage.load_all(self.table_name))

    def find_reversal(self, transaction_id: str) -> Optional[Transaction]:
        """The REVERSAL entry pointing at transaction_id, if any"""
        matches = self.storage.find(self.table_name, {
            "linked_transaction_id": transaction_id,
            "transaction_type": TransactionType.REVERSAL.value
        })
        if matches:
            return self._entry_from_dict(matches[0])
        return None

    def last_activity(self, account_id: str,
                      types: Iterable[TransactionType] = CUSTOMER_INITIATED) -> Optional[datetime]:
        """Time of the most recent entry of the given types"""
        entries = self.for_account(account_id, types=types)
        if entries:
            return entries[-1].created_at
        return None

    def count(self) -> int:
        return self.storage.count(self.table_name)

    @staticmethod
    def _ordered(entries: Iterable[Transaction]) -> List[Transaction]:
        return sorted(entries, key=lambda e: e.sequence)

    def _entry_to_dict(self, entry: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        result = entry.to_dict()
        result['currency'] = entry.currency.code
        return result

    def _entry_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        currency = Currency[data['currency']]
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            sequence=data['sequence'],
            reference=data['reference'],
            account_id=data['account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            direction=Direction(data['direction']),
            amount=Money(data['amount'], currency),
            balance_before=Money(data['balance_before'], currency),
            balance_after=Money(data['balance_after'], currency),
            description=data.get('description', ""),
            performed_by=data.get('performed_by'),
            linked_transaction_id=data.get('linked_transaction_id'),
            transfer_id=data.get('transfer_id')
        )
