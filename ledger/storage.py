import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional, TYPE_CHECKING
from uuid import UUID

from core.errors import OperationTimeoutError

from .models import AuditRecord, Balance, IdempotencyRecord, Transaction, TransactionStatus

if TYPE_CHECKING:
    from routing.models import ReviewerProfile, VerdictRequest

logger = logging.getLogger(__name__)

_TABLES = ("balances", "transactions", "idempotency_records", "audit_records", "requests", "reviewers")


class InMemoryStorage:
    """
    Single-instance data store shared by the ledger, router and
    reconciliation engine.

    Rows are frozen models and every write replaces the row, so a shallow
    copy of each table is enough to roll an atomic unit back. Units nest;
    only the outermost one snapshots and restores.
    """

    def __init__(self, lock_timeout: float = 5.0):
        self.balances: dict[UUID, Balance] = {}
        self.transactions: dict[UUID, Transaction] = {}
        self.idempotency_records: dict[str, IdempotencyRecord] = {}
        self.audit_records: list[AuditRecord] = []
        self.requests: dict[UUID, "VerdictRequest"] = {}
        self.reviewers: dict[UUID, "ReviewerProfile"] = {}
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._depth = threading.local()

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Iterator["InMemoryStorage"]:
        wait = self.lock_timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=wait):
            raise OperationTimeoutError(
                f"Data store lock not acquired within {wait}s",
                {"operation": "store.transaction", "timeout_seconds": wait},
            )
        depth = getattr(self._depth, "value", 0)
        snapshot = self._snapshot() if depth == 0 else None
        self._depth.value = depth + 1
        try:
            yield self
        except BaseException:
            if snapshot is not None:
                self._restore(snapshot)
                logger.debug("Rolled back atomic unit")
            raise
        finally:
            self._depth.value = depth
            self._lock.release()

    def _snapshot(self) -> dict:
        return {
            name: list(table) if isinstance(table, list) else dict(table)
            for name, table in ((n, getattr(self, n)) for n in _TABLES)
        }

    def _restore(self, snapshot: dict) -> None:
        for name, table in snapshot.items():
            setattr(self, name, table)

    # Balances

    def get_balance(self, user_id: UUID) -> Optional[Balance]:
        return self.balances.get(user_id)

    def insert_balance(self, balance: Balance) -> None:
        self.balances[balance.user_id] = balance

    def compare_and_set_balance(self, user_id: UUID, expected: int, new: int, now: datetime) -> bool:
        """Write ``new`` only if the row still holds ``expected``."""
        with self.transaction():
            current = self.balances.get(user_id)
            if current is None or current.credits != expected:
                return False
            self.balances[user_id] = Balance(user_id=user_id, credits=new, updated_at=now)
            return True

    # Transactions

    def insert_transaction(self, transaction: Transaction) -> None:
        self.transactions[transaction.id] = transaction

    def update_transaction(self, transaction: Transaction) -> None:
        self.transactions[transaction.id] = transaction

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        return self.transactions.get(transaction_id)

    def list_transactions(
        self,
        user_id: Optional[UUID] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        status: Optional[TransactionStatus] = None,
    ) -> list[Transaction]:
        rows = []
        for tx in self.transactions.values():
            if user_id is not None and tx.user_id != user_id:
                continue
            if since is not None and tx.updated_at < since and tx.created_at < since:
                continue
            if until is not None and tx.created_at > until:
                continue
            if status is not None and tx.status != status:
                continue
            rows.append(tx)
        rows.sort(key=lambda t: (t.created_at, str(t.id)))
        return rows

    def find_transactions_by_reference(self, external_reference: str) -> list[Transaction]:
        return [t for t in self.transactions.values() if t.external_reference == external_reference]

    # Idempotency keys

    def get_idempotency_record(self, operation_id: str) -> Optional[IdempotencyRecord]:
        return self.idempotency_records.get(operation_id)

    def insert_idempotency_record(self, record: IdempotencyRecord) -> None:
        self.idempotency_records[record.operation_id] = record

    # Audit trail

    def append_audit_record(self, record: AuditRecord) -> None:
        self.audit_records.append(record)

    # Verdict requests and reviewers

    def get_request(self, request_id: UUID) -> Optional["VerdictRequest"]:
        return self.requests.get(request_id)

    def save_request(self, request: "VerdictRequest") -> None:
        self.requests[request.id] = request

    def list_requests(self) -> list["VerdictRequest"]:
        return sorted(self.requests.values(), key=lambda r: (r.created_at, str(r.id)))

    def claim_routing(self, request_id: UUID, routed_at: datetime, **changes) -> bool:
        """Conditional update: applies only while ``routed_at`` is still null."""
        with self.transaction():
            request = self.requests.get(request_id)
            if request is None or request.routed_at is not None:
                return False
            self.requests[request_id] = request.model_copy(update={"routed_at": routed_at, **changes})
            return True

    def get_reviewer(self, user_id: UUID) -> Optional["ReviewerProfile"]:
        return self.reviewers.get(user_id)

    def save_reviewer(self, reviewer: "ReviewerProfile") -> None:
        self.reviewers[reviewer.user_id] = reviewer

    def list_reviewers(self) -> list["ReviewerProfile"]:
        return list(self.reviewers.values())
