"""
Ledger Repository Module

Loads and saves repayment ledgers as JSON documents and serializes mutation
of each ledger. A mutation works on a private copy: it is saved together with
its commit hooks inside one storage transaction, guarded by an optimistic
version check, or discarded entirely if anything raises.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional
from contextlib import contextmanager
import threading
import weakref

from .errors import ConcurrentModificationError, NotFoundError
from .logging_config import get_logger
from .models import LedgerStatus, LoanRepaymentLedger
from .storage import StorageInterface


logger = get_logger("repayment_ledger.repository")


class LedgerMutation:
    """A ledger copy being mutated, plus work to run at and after commit"""

    def __init__(self, ledger: LoanRepaymentLedger):
        self.ledger = ledger
        self.commit_hooks: List[Callable[[], None]] = []
        self.post_commit_hooks: List[Callable[[], None]] = []

    def on_commit(self, hook: Callable[[], None]) -> None:
        """Run inside the storage transaction, after the ledger is saved"""
        self.commit_hooks.append(hook)

    def after_commit(self, hook: Callable[[], None]) -> None:
        """Run once the transaction has committed; failures are only logged"""
        self.post_commit_hooks.append(hook)


class LedgerRepository:
    """Persistence and per-ledger locking for LoanRepaymentLedger"""

    table_name = "repayment_ledgers"

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        # Entries disappear once no mutation holds the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, ledger_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(ledger_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[ledger_id] = lock
            return lock

    def get(self, ledger_id: str) -> Optional[LoanRepaymentLedger]:
        data = self.storage.load(self.table_name, ledger_id)
        if data:
            return LoanRepaymentLedger.from_dict(data)
        return None

    def require(self, ledger_id: str) -> LoanRepaymentLedger:
        ledger = self.get(ledger_id)
        if ledger is None:
            raise NotFoundError(f"Ledger {ledger_id} not found")
        return ledger

    def find(self, **filters) -> List[LoanRepaymentLedger]:
        """Ledgers whose stored top-level fields equal the given values"""
        stored_filters = {
            key: value.value if isinstance(value, LedgerStatus) else value
            for key, value in filters.items()
        }
        return [LoanRepaymentLedger.from_dict(data) for data in self.storage.find(self.table_name, stored_filters)]

    def get_by_submission(self, loan_submission_id: str) -> Optional[LoanRepaymentLedger]:
        matches = self.find(loan_submission_id=loan_submission_id)
        return matches[0] if matches else None

    def insert(self, ledger: LoanRepaymentLedger) -> None:
        """Save a brand new ledger (callers hold storage.atomic())"""
        self.storage.save(self.table_name, ledger.id, ledger.to_dict())

    @contextmanager
    def mutate(self, ledger_id: str):
        """
        Mutate one ledger under its lock

        Yields a LedgerMutation. On normal exit the ledger is saved with its
        version bumped and the commit hooks run in the same storage
        transaction; post-commit hooks run afterwards.

        Raises:
            NotFoundError: Unknown ledger
            ConcurrentModificationError: The stored ledger changed since it was loaded
        """
        lock = self._lock_for(ledger_id)
        with lock:
            ledger = self.require(ledger_id)
            expected_version = ledger.version
            mutation = LedgerMutation(ledger)

            yield mutation

            with self.storage.atomic():
                stored = self.storage.load(self.table_name, ledger_id)
                stored_version = stored.get('version', 0) if stored else None
                if stored_version != expected_version:
                    raise ConcurrentModificationError(
                        f"Ledger {ledger_id} changed from version {expected_version} "
                        f"to {stored_version} during the update"
                    )
                ledger.version = expected_version + 1
                ledger.updated_at = datetime.now(timezone.utc)
                self.storage.save(self.table_name, ledger.id, ledger.to_dict())
                for hook in mutation.commit_hooks:
                    hook()

        for hook in mutation.post_commit_hooks:
            try:
                hook()
            except Exception as e:
                logger.warning(f"Post-commit work for ledger {ledger_id} failed: {e}", exc_info=True)
