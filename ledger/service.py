import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union
from uuid import UUID, uuid4

from core.auth import AuthContext
from core.config import Settings, get_settings
from core.errors import (
    AuditWriteFailedError,
    ConflictError,
    InsufficientCreditsError,
    PermissionDeniedError,
    TransactionNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from core.notifications import LoggingNotifier, Notifier, dispatch
from core.validation import parse_id, validate_credit_amount, validate_idempotency_key, validate_reason

from .audit import AuditLogWriter
from .idempotency import IdempotencyGuard
from .models import (
    GRANT_TYPES,
    AdjustmentResult,
    AdminRefundResult,
    Balance,
    LedgerHistoryResponse,
    LedgerIdentityCheck,
    LedgerResult,
    TipResult,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

UserId = Union[UUID, str]


class CreditLedger:
    """
    Atomic, auditable mutation of user credit balances.

    Every mutation changes the balance row and appends a completed
    transaction row in one store unit, so the sum of completed deltas
    always equals the balance. Each mutating call carries an operation id;
    replaying it returns the first result with ``duplicate=True``.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
        audit_writer: Optional[AuditLogWriter] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage(lock_timeout=self.settings.store_timeout_seconds)
        self.notifier = notifier or LoggingNotifier()
        self.audit = audit_writer or AuditLogWriter(self.storage)
        self.idempotency = IdempotencyGuard(self.storage)

    # Accounts and reads

    def open_account(self, user_id: UserId, initial_credits: int = 0) -> Balance:
        user_id = parse_id(user_id, "user_id")
        if initial_credits:
            initial_credits = self._amount(initial_credits, "initial_credits")

        opening: Optional[LedgerResult] = None
        with self._unit():
            existing = self.storage.get_balance(user_id)
            if existing is not None:
                return existing
            self.storage.insert_balance(Balance(user_id=user_id, credits=0, updated_at=_now()))
            if initial_credits:
                opening = self._mutate(
                    user_id=user_id,
                    delta=initial_credits,
                    tx_type=TransactionType.BONUS,
                    operation=f"grant:{TransactionType.BONUS.value}",
                    operation_id=f"opening:{user_id}",
                    metadata={"reason": "opening balance"},
                    message=f"Granted {initial_credits} credits",
                    notify=False,
                )
            balance = self.storage.get_balance(user_id)

        if opening is not None:
            self._notify_change(opening)
        return balance

    def get_balance(self, user_id: UserId) -> Balance:
        return self._require_balance(parse_id(user_id, "user_id"))

    def get_history(self, user_id: UserId, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        user_id = parse_id(user_id, "user_id")
        balance = self._require_balance(user_id)
        entries = self.storage.list_transactions(user_id=user_id)
        entries.sort(key=lambda t: t.created_at, reverse=True)
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=balance.credits,
        )

    def verify_ledger_identity(self, user_id: UserId) -> LedgerIdentityCheck:
        user_id = parse_id(user_id, "user_id")
        with self._unit():
            balance = self._require_balance(user_id)
            completed = self.storage.list_transactions(user_id=user_id, status=TransactionStatus.COMPLETED)
        completed_sum = sum(t.credits_delta for t in completed)
        return LedgerIdentityCheck(
            user_id=user_id,
            balance=balance.credits,
            completed_sum=completed_sum,
            consistent=completed_sum == balance.credits,
        )

    # Primitives

    def deduct(
        self,
        user_id: UserId,
        amount: int,
        idempotency_key: str,
        metadata: Optional[dict] = None,
    ) -> LedgerResult:
        user_id = parse_id(user_id, "user_id")
        amount = self._amount(amount)
        key = validate_idempotency_key(idempotency_key)
        return self._mutate(
            user_id=user_id,
            delta=-amount,
            tx_type=TransactionType.DEDUCTION,
            operation="deduct",
            operation_id=key,
            metadata=metadata,
            message=f"Deducted {amount} credits",
        )

    def refund(
        self,
        user_id: UserId,
        amount: int,
        reason: str,
        idempotency_key: str,
        metadata: Optional[dict] = None,
    ) -> LedgerResult:
        """Return credits to a user. Retries with the same key apply once."""
        user_id = parse_id(user_id, "user_id")
        amount = self._amount(amount)
        reason = validate_reason(reason, 1)
        key = validate_idempotency_key(idempotency_key)
        return self._mutate(
            user_id=user_id,
            delta=amount,
            tx_type=TransactionType.REFUND,
            operation="refund",
            operation_id=key,
            metadata={"reason": reason, **(metadata or {})},
            message=f"Refunded {amount} credits",
        )

    def grant(
        self,
        user_id: UserId,
        amount: int,
        transaction_type: TransactionType,
        idempotency_key: str,
        amount_cents: int = 0,
        external_reference: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerResult:
        """Credit-granting path for purchases, judge bonuses and tips."""
        if transaction_type not in GRANT_TYPES:
            raise ValidationError(f"{transaction_type} is not a credit-granting transaction type")
        user_id = parse_id(user_id, "user_id")
        amount = self._amount(amount)
        key = validate_idempotency_key(idempotency_key)
        if amount_cents < 0:
            raise ValidationError("amount_cents must not be negative", {"field": "amount_cents"})
        return self._mutate(
            user_id=user_id,
            delta=amount,
            tx_type=TransactionType(transaction_type),
            operation=f"grant:{TransactionType(transaction_type).value}",
            operation_id=key,
            amount_cents=amount_cents,
            external_reference=external_reference,
            metadata=metadata,
            message=f"Granted {amount} credits",
        )

    def record_pending_purchase(
        self,
        user_id: UserId,
        credits: int,
        amount_cents: int,
        external_reference: str,
        metadata: Optional[dict] = None,
    ) -> Transaction:
        """Checkout started: record the purchase without granting credits yet."""
        user_id = parse_id(user_id, "user_id")
        credits = self._amount(credits, "credits")
        if amount_cents < 0:
            raise ValidationError("amount_cents must not be negative", {"field": "amount_cents"})
        now = _now()
        tx = Transaction(
            id=uuid4(),
            user_id=user_id,
            type=TransactionType.PURCHASE,
            credits_delta=credits,
            amount_cents=amount_cents,
            status=TransactionStatus.PENDING,
            external_reference=external_reference,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        with self._unit():
            self._require_balance(user_id)
            self.storage.insert_transaction(tx)
        logger.info(f"Pending purchase {tx.id} recorded for {user_id} ({credits} credits, ref {external_reference})")
        return tx

    def complete_pending(self, transaction_id: Union[UUID, str], idempotency_key: str) -> LedgerResult:
        """Settle a pending purchase: mark it completed and apply its credits."""
        transaction_id = parse_id(transaction_id, "transaction_id")
        key = validate_idempotency_key(idempotency_key)
        params = {"transaction_id": str(transaction_id)}

        with self._unit():
            snapshot = self.idempotency.check(key, "complete_pending", params)
            if snapshot is not None:
                return self._replay(snapshot)

            tx = self.storage.get_transaction(transaction_id)
            if tx is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            balance = self._require_balance(tx.user_id)

            if tx.status == TransactionStatus.COMPLETED:
                return LedgerResult(
                    user_id=tx.user_id,
                    new_balance=balance.credits,
                    transaction=tx,
                    duplicate=True,
                    message="Transaction already completed",
                )
            if tx.status != TransactionStatus.PENDING:
                raise ConflictError(
                    f"Transaction {transaction_id} is {tx.status.value} and cannot be completed",
                    {"transaction_id": str(transaction_id), "status": tx.status.value},
                )

            now = _now()
            new_credits = balance.credits + tx.credits_delta
            if new_credits < 0:
                raise InsufficientCreditsError(str(tx.user_id), balance.credits, -tx.credits_delta)
            if not self.storage.compare_and_set_balance(tx.user_id, balance.credits, new_credits, now):
                raise ConflictError("Balance changed during the update", {"user_id": str(tx.user_id)})
            completed = tx.model_copy(update={
                "status": TransactionStatus.COMPLETED,
                "updated_at": now,
                "idempotency_key": key,
            })
            self.storage.update_transaction(completed)

            result = LedgerResult(
                user_id=tx.user_id,
                new_balance=new_credits,
                transaction=completed,
                message=f"Completed pending {tx.type.value} of {tx.credits_delta} credits",
            )
            self.idempotency.remember(key, "complete_pending", params, result.model_dump(mode="json"))

        logger.info(f"Pending transaction {transaction_id} completed, balance {balance.credits} -> {new_credits}")
        self._notify_change(result)
        return result

    def fail_pending(self, transaction_id: Union[UUID, str], reason: str) -> Transaction:
        transaction_id = parse_id(transaction_id, "transaction_id")
        with self._unit():
            tx = self.storage.get_transaction(transaction_id)
            if tx is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            if tx.status == TransactionStatus.FAILED:
                return tx
            if tx.status != TransactionStatus.PENDING:
                raise ConflictError(
                    f"Transaction {transaction_id} is {tx.status.value} and cannot be failed",
                    {"transaction_id": str(transaction_id), "status": tx.status.value},
                )
            failed = tx.model_copy(update={
                "status": TransactionStatus.FAILED,
                "updated_at": _now(),
                "metadata": {**tx.metadata, "failure_reason": reason},
            })
            self.storage.update_transaction(failed)
        logger.warning(f"Pending transaction {transaction_id} marked failed: {reason}")
        return failed

    def tip(self, from_user_id: UserId, to_user_id: UserId, amount: int, idempotency_key: str) -> TipResult:
        from_user_id = parse_id(from_user_id, "from_user_id")
        to_user_id = parse_id(to_user_id, "to_user_id")
        if from_user_id == to_user_id:
            raise ValidationError("Cannot tip yourself")
        amount = self._amount(amount)
        key = validate_idempotency_key(idempotency_key)
        params = {"from": str(from_user_id), "to": str(to_user_id), "amount": amount}

        with self._unit():
            snapshot = self.idempotency.check(key, "tip", params)
            if snapshot is not None:
                return TipResult.model_validate({**snapshot, "duplicate": True})

            self._require_balance(to_user_id)
            sent = self._mutate(
                user_id=from_user_id, delta=-amount, tx_type=TransactionType.TIP, operation="tip:debit",
                operation_id=f"{key}:debit", metadata={"to_user_id": str(to_user_id)},
                message=f"Tipped {amount} credits", notify=False,
            )
            received = self._mutate(
                user_id=to_user_id, delta=amount, tx_type=TransactionType.TIP, operation="tip:credit",
                operation_id=f"{key}:credit", metadata={"from_user_id": str(from_user_id)},
                message=f"Received a {amount} credit tip", notify=False,
            )
            result = TipResult(
                from_user_id=from_user_id,
                to_user_id=to_user_id,
                amount=amount,
                sender_balance=sent.new_balance,
                recipient_balance=received.new_balance,
            )
            self.idempotency.remember(key, "tip", params, result.model_dump(mode="json"))

        self._notify_change(sent)
        self._notify_change(received)
        return result

    # Privileged

    def adjust(
        self,
        actor: AuthContext,
        target_user_id: UserId,
        target_balance: int,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> AdjustmentResult:
        """
        Set a user's balance to ``target_balance`` on behalf of an admin.

        All validation happens before anything is written. The balance
        change and its transaction commit first; the audit record is a
        second step. If that step fails the adjustment still stands and
        the result carries ``audit_recorded=False`` with the error.
        """
        if not actor.is_admin:
            raise PermissionDeniedError("Admin access required", {"actor_id": actor.actor_id})
        user_id = parse_id(target_user_id, "target_user_id")
        reason = validate_reason(reason, self.settings.min_adjustment_reason_length)
        if isinstance(target_balance, bool) or not isinstance(target_balance, int) or target_balance < 0:
            raise ValidationError("target_balance must be a non-negative whole number",
                                  {"field": "target_balance"})
        operation_id = (validate_idempotency_key(idempotency_key) if idempotency_key
                        else f"admin_adjust:{actor.actor_id}:{uuid4()}")
        params = {"user_id": str(user_id), "target_balance": target_balance, "actor_id": actor.actor_id}

        with self._unit():
            snapshot = self.idempotency.check(operation_id, "adjust", params)
            if snapshot is not None:
                replay = AdjustmentResult.model_validate(snapshot)
                recorded = any(r.after_state.get("operation_id") == operation_id for r in self.storage.audit_records)
                return replay.model_copy(update={
                    "duplicate": True,
                    "audit_recorded": recorded,
                    "audit_error": None,
                    "message": "Adjustment already applied (idempotent return)",
                })

            old_balance = self._require_balance(user_id).credits
            delta = target_balance - old_balance
            if abs(delta) > self.settings.max_single_adjustment_credits:
                raise ValidationError(
                    f"Adjustment of {delta} credits exceeds the limit of "
                    f"{self.settings.max_single_adjustment_credits}",
                    {"delta": delta, "limit": self.settings.max_single_adjustment_credits},
                )

            metadata = {"admin_adjustment": True, "actor_id": actor.actor_id, "reason": reason}
            applied: Optional[LedgerResult] = None
            if delta:
                applied = self._mutate(
                    user_id=user_id,
                    delta=delta,
                    tx_type=TransactionType.REFUND if delta > 0 else TransactionType.DEDUCTION,
                    operation="refund" if delta > 0 else "deduct",
                    operation_id=f"{operation_id}:apply",
                    metadata=metadata,
                    message=f"Adjusted by {delta:+d} credits",
                    notify=False,
                )

            result = AdjustmentResult(
                target_user_id=user_id,
                old_balance=old_balance,
                new_balance=applied.new_balance if applied else old_balance,
                transaction=applied.transaction if applied else None,
                audit_recorded=False,
                message=f"Balance adjusted from {old_balance} to {target_balance}",
            )
            self.idempotency.remember(operation_id, "adjust", params, result.model_dump(mode="json"))

        logger.info(f"Admin {actor.actor_id} adjusted {user_id}: {old_balance} -> {result.new_balance}")
        if applied is not None:
            self._notify_change(applied)
        error = self._write_audit(actor, "credit_adjustment", reason, user_id, old_balance,
                                  result.new_balance, operation_id)
        return result.model_copy(update={"audit_recorded": error is None, "audit_error": error})

    def refund_as_admin(
        self,
        actor: AuthContext,
        user_id: UserId,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> AdminRefundResult:
        """
        Refund credits on behalf of an admin and leave an audit record.

        Same two-step shape as ``adjust``: the refund commits first and
        a failed audit write is reported on the result, not raised.
        """
        if not actor.is_admin:
            raise PermissionDeniedError("Admin access required", {"actor_id": actor.actor_id})
        user_id = parse_id(user_id, "user_id")
        reason = validate_reason(reason, self.settings.min_adjustment_reason_length)
        key = validate_idempotency_key(idempotency_key)

        applied = self.refund(user_id, amount, reason, key,
                              metadata={"admin_refund": True, "actor_id": actor.actor_id})
        result = AdminRefundResult(**applied.model_dump(), audit_recorded=False)

        if applied.duplicate:
            recorded = any(r.after_state.get("operation_id") == key for r in self.storage.audit_records)
            return result.model_copy(update={"audit_recorded": recorded})

        old_balance = applied.new_balance - applied.transaction.credits_delta
        error = self._write_audit(actor, "credit_refund", reason, user_id, old_balance,
                                  applied.new_balance, key)
        return result.model_copy(update={"audit_recorded": error is None, "audit_error": error})

    # Internals

    def _write_audit(
        self,
        actor: AuthContext,
        action: str,
        reason: str,
        user_id: UUID,
        old_balance: int,
        new_balance: int,
        operation_id: str,
    ) -> Optional[str]:
        try:
            self.audit.write(
                actor_id=actor.actor_id,
                action=action,
                reason=reason,
                target_id=str(user_id),
                before_state={"credits": old_balance},
                after_state={"credits": new_balance, "operation_id": operation_id},
            )
        except AuditWriteFailedError as e:
            logger.critical(
                f"AUDIT WRITE FAILED for {action} {operation_id} by {actor.actor_id} on {user_id} "
                f"({old_balance} -> {new_balance}); manual reconciliation required: {e}"
            )
            return str(e)
        return None

    def _mutate(
        self,
        *,
        user_id: UUID,
        delta: int,
        tx_type: TransactionType,
        operation: str,
        operation_id: str,
        message: str,
        amount_cents: int = 0,
        external_reference: Optional[str] = None,
        metadata: Optional[dict] = None,
        notify: bool = True,
    ) -> LedgerResult:
        params: dict[str, Any] = {
            "user_id": str(user_id),
            "delta": delta,
            "amount_cents": amount_cents,
            "external_reference": external_reference,
        }
        with self._unit():
            snapshot = self.idempotency.check(operation_id, operation, params)
            if snapshot is not None:
                logger.info(f"Duplicate {operation} for key {operation_id}; returning prior result")
                return self._replay(snapshot)

            balance = self._require_balance(user_id)
            new_credits = balance.credits + delta
            if new_credits < 0:
                raise InsufficientCreditsError(str(user_id), balance.credits, -delta)

            now = _now()
            if not self.storage.compare_and_set_balance(user_id, balance.credits, new_credits, now):
                raise ConflictError("Balance changed during the update", {"user_id": str(user_id)})
            tx = Transaction(
                id=uuid4(),
                user_id=user_id,
                type=tx_type,
                credits_delta=delta,
                amount_cents=amount_cents,
                status=TransactionStatus.COMPLETED,
                external_reference=external_reference,
                idempotency_key=operation_id,
                metadata=metadata or {},
                created_at=now,
                updated_at=now,
            )
            self.storage.insert_transaction(tx)

            result = LedgerResult(user_id=user_id, new_balance=new_credits, transaction=tx, message=message)
            self.idempotency.remember(operation_id, operation, params, result.model_dump(mode="json"))

        logger.info(f"{tx_type.value} {delta:+d} credits for {user_id}: {balance.credits} -> {new_credits}")
        if notify:
            self._notify_change(result)
        return result

    def _replay(self, snapshot: dict) -> LedgerResult:
        return LedgerResult.model_validate(snapshot).model_copy(update={
            "duplicate": True,
            "message": "Operation already applied (idempotent return)",
        })

    def _require_balance(self, user_id: UUID) -> Balance:
        balance = self.storage.get_balance(user_id)
        if balance is None:
            raise UserNotFoundError(f"User {user_id} has no credit account", {"user_id": str(user_id)})
        return balance

    def _amount(self, amount: Any, field: str = "amount") -> int:
        return validate_credit_amount(amount, self.settings.max_single_adjustment_credits, field)

    def _unit(self):
        return self.storage.transaction(timeout=self.settings.store_timeout_seconds)

    def _notify_change(self, result: LedgerResult) -> None:
        if result.duplicate or result.transaction is None:
            return
        dispatch(self.notifier, str(result.user_id), "credit_change", {
            "type": result.transaction.type.value,
            "credits_delta": result.transaction.credits_delta,
            "new_balance": result.new_balance,
        })


def _now() -> datetime:
    return datetime.now(timezone.utc)
