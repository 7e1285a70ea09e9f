"""
Human-readable identifiers

Account numbers and transaction, transfer and loan references carry a
prefix, the issue date and a zero-padded sequence number, for example
``TXN20240131000042``. They are for presentation only; records are keyed by
uuid4 ids.
"""

import itertools
import threading
import uuid
from datetime import date, datetime, timezone
from typing import Optional


ACCOUNT_PREFIX = "ACC"
TRANSACTION_PREFIX = "TXN"
TRANSFER_PREFIX = "TRF"
LOAN_PREFIX = "LN"

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def new_id() -> str:
    """Storage key for a new record"""
    return str(uuid.uuid4())


def next_reference(prefix: str, on: Optional[date] = None, width: int = 6) -> str:
    """Build the next reference for a prefix, e.g. ``ACC20240131000001``"""
    with _counter_lock:
        sequence = next(_counter)
    day = on or datetime.now(timezone.utc).date()
    return f"{prefix}{day.strftime('%Y%m%d')}{sequence:0{width}d}"


def account_number(on: Optional[date] = None) -> str:
    return next_reference(ACCOUNT_PREFIX, on)


def transaction_reference(on: Optional[date] = None) -> str:
    return next_reference(TRANSACTION_PREFIX, on)


def transfer_reference(on: Optional[date] = None) -> str:
    return next_reference(TRANSFER_PREFIX, on)


def loan_reference(on: Optional[date] = None) -> str:
    return next_reference(LOAN_PREFIX, on)
