"""
Tests for per-entity locking
"""

import threading

import pytest

from ledger_service.config import LedgerConfig
from ledger_service.errors import AccountNotFound
from ledger_service.locks import AccountLockManager
from ledger_service.storage import InMemoryStorage
from ledger_service.system import LedgerSystem


class TestAccountLockManager:
    """Test lock ordering and lifetime"""

    def setup_method(self):
        self.locks = AccountLockManager()

    def test_keys_sorted_and_released(self):
        """Test keys are taken in order and dropped once released"""
        with self.locks.hold("b", "a", "b", None) as keys:
            assert keys == ["a", "b"]
            assert len(self.locks) == 2
        assert len(self.locks) == 0

    def test_reentrant(self):
        """Test the same thread can nest holds on one key"""
        with self.locks.hold("a"):
            with self.locks.hold("a", "c"):
                assert len(self.locks) == 2
            assert len(self.locks) == 1
        assert len(self.locks) == 0

    def test_exclusive_between_threads(self):
        """Test a second thread waits until the key is released"""
        entered = threading.Event()

        def contend():
            with self.locks.hold("a"):
                entered.set()

        with self.locks.hold("a"):
            worker = threading.Thread(target=contend)
            worker.start()
            assert not entered.wait(0.2)
        worker.join(timeout=5)

        assert entered.is_set()
        assert len(self.locks) == 0

    def test_released_on_error(self):
        """Test an exception inside the hold still releases every key"""
        with pytest.raises(RuntimeError):
            with self.locks.hold("a", "b"):
                raise RuntimeError("boom")
        assert len(self.locks) == 0

    def test_unknown_accounts_leave_no_locks(self):
        """Test transfers between missing ids do not grow the lock map"""
        system = LedgerSystem(config=LedgerConfig(), storage=InMemoryStorage())
        for n in range(50):
            with pytest.raises(AccountNotFound):
                system.transfers.transfer(f"missing-{n}", f"other-{n}", "1.00")
        assert len(system.locks) == 0
