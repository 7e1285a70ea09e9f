"""
Banking Ledger Service

A transactional ledger for accounts, transfers, loans and end-of-day batch
jobs. Balances use Decimal arithmetic, every balance change is journaled,
and every mutation runs inside an atomic unit.
"""

__version__ = "1.0.0"
