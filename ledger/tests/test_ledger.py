"""
Unit Tests for the Credit Ledger

Tests cover:
1. Deduct flow and idempotent retries
2. Non-negative balances
3. Admin adjustments and their audit trail
4. Refunds, grants, tips and pending purchases
5. Atomicity and the ledger identity
"""

import threading

import pytest
from uuid import UUID

from core.auth import AuthContext
from core.config import Settings
from core.errors import (
    AuditWriteFailedError,
    ConflictError,
    IdempotencyConflictError,
    InsufficientCreditsError,
    OperationTimeoutError,
    PermissionDeniedError,
    UserNotFoundError,
    ValidationError,
)
from core.notifications import RecordingNotifier
from ledger.audit import AuditLogWriter
from ledger.models import TransactionStatus, TransactionType
from ledger.service import CreditLedger
from ledger.storage import InMemoryStorage


# Test constants
USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_USER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
ADMIN = AuthContext(actor_id="admin-1", is_admin=True)
MEMBER = AuthContext(actor_id="member-1")


def make_ledger(storage=None, notifier=None, audit_writer=None) -> CreditLedger:
    return CreditLedger(
        storage=storage or InMemoryStorage(lock_timeout=1.0),
        settings=Settings(store_timeout_seconds=1.0),
        notifier=notifier,
        audit_writer=audit_writer,
    )


class FailingAuditWriter(AuditLogWriter):
    def write(self, *args, **kwargs):
        raise AuditWriteFailedError("audit store unavailable")


class FailingInsertStorage(InMemoryStorage):
    def insert_transaction(self, transaction):
        raise RuntimeError("disk full")


class ConcurrentDeductNotifier:
    """Deducts from the other account on a second thread while delivering a notification."""

    def __init__(self):
        self.ledger = None
        self.outcomes = []

    def notify(self, recipient, event, payload):
        if recipient == str(OTHER_USER_ID):
            return

        def deduct_other():
            try:
                result = self.ledger.deduct(OTHER_USER_ID, 1, f"during-{len(self.outcomes)}")
                self.outcomes.append(result.new_balance)
            except OperationTimeoutError:
                self.outcomes.append("blocked")

        worker = threading.Thread(target=deduct_other)
        worker.start()
        worker.join(5)


class TestDeductFlow:
    """Tests for credit deduction."""

    def test_deduct_success(self):
        """Test that a deduction lowers the balance and appends one transaction."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 5)

        result = ledger.deduct(USER_ID, 2, "sub-123")

        assert result.new_balance == 3
        assert result.duplicate is False
        assert result.transaction.type == TransactionType.DEDUCTION
        assert result.transaction.credits_delta == -2
        assert result.transaction.status == TransactionStatus.COMPLETED
        assert ledger.get_balance(USER_ID).credits == 3

    def test_retry_with_same_key_applies_once(self):
        """Test that a retried deduction returns the first result as a duplicate."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 5)

        first = ledger.deduct(USER_ID, 2, "sub-123")
        second = ledger.deduct(USER_ID, 2, "sub-123")

        assert second.duplicate is True
        assert second.new_balance == 3
        assert second.transaction.id == first.transaction.id
        assert ledger.get_balance(USER_ID).credits == 3

        deductions = [t for t in ledger.get_history(USER_ID).entries if t.type == TransactionType.DEDUCTION]
        assert len(deductions) == 1

    def test_same_key_different_amount_conflicts(self):
        """Test that reusing a key for a different operation is rejected."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 5)
        ledger.deduct(USER_ID, 2, "sub-123")

        with pytest.raises(IdempotencyConflictError):
            ledger.deduct(USER_ID, 3, "sub-123")

        assert ledger.get_balance(USER_ID).credits == 3

    def test_insufficient_credits(self):
        """Test that overdrawing fails and leaves no trace."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 1)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            ledger.deduct(USER_ID, 2, "sub-456")

        assert exc_info.value.details["current_balance"] == 1
        assert exc_info.value.details["requested"] == 2
        assert ledger.get_balance(USER_ID).credits == 1
        assert all(t.type != TransactionType.DEDUCTION for t in ledger.get_history(USER_ID).entries)

    def test_failed_key_can_be_retried_after_top_up(self):
        """Test that a rejected operation does not consume its key."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 1)

        with pytest.raises(InsufficientCreditsError):
            ledger.deduct(USER_ID, 2, "sub-789")
        ledger.grant(USER_ID, 5, TransactionType.PURCHASE, "checkout-1", amount_cents=500)

        result = ledger.deduct(USER_ID, 2, "sub-789")
        assert result.duplicate is False
        assert result.new_balance == 4

    def test_unknown_user(self):
        """Test that deducting from a missing account fails."""
        ledger = make_ledger()

        with pytest.raises(UserNotFoundError):
            ledger.deduct(USER_ID, 1, "sub-000")

    @pytest.mark.parametrize("amount", [0, -1, 1.5, float("nan"), float("inf"), True, "2", 1001])
    def test_invalid_amounts_rejected(self, amount):
        """Test that non-positive, fractional, non-finite and oversized amounts are rejected."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 5)

        with pytest.raises(ValidationError):
            ledger.deduct(USER_ID, amount, "bad-amount")

        assert ledger.get_balance(USER_ID).credits == 5

    @pytest.mark.parametrize("key", ["", "   ", None, "k" * 256])
    def test_invalid_idempotency_keys_rejected(self, key):
        """Test that empty and oversized keys are rejected."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 5)

        with pytest.raises(ValidationError):
            ledger.deduct(USER_ID, 1, key)

    def test_malformed_user_id_rejected(self):
        """Test that a non-UUID user id is a validation error."""
        ledger = make_ledger()

        with pytest.raises(ValidationError):
            ledger.get_balance("not-a-user")

    def test_concurrent_deductions_never_overdraw(self):
        """Test that two racing deductions of the last credit let exactly one through."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 1)
        outcomes = []
        barrier = threading.Barrier(2)

        def spend(key):
            barrier.wait()
            try:
                ledger.deduct(USER_ID, 1, key)
                outcomes.append("ok")
            except InsufficientCreditsError:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=spend, args=(f"race-{i}",)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["insufficient", "ok"]
        assert ledger.get_balance(USER_ID).credits == 0


class TestAtomicity:
    """Tests for all-or-nothing mutations."""

    def test_failed_transaction_insert_rolls_back_balance(self):
        """Test that a failure after the balance write leaves the balance untouched."""
        storage = FailingInsertStorage(lock_timeout=1.0)
        ledger = make_ledger(storage=storage)
        ledger.open_account(USER_ID)
        storage.balances[USER_ID] = storage.balances[USER_ID].model_copy(update={"credits": 5})

        with pytest.raises(RuntimeError):
            ledger.deduct(USER_ID, 2, "sub-rollback")

        assert ledger.get_balance(USER_ID).credits == 5
        assert storage.get_idempotency_record("sub-rollback") is None

    def test_ledger_identity_holds(self):
        """Test that the balance equals the sum of completed deltas after mixed activity."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 10)
        ledger.open_account(OTHER_USER_ID)
        ledger.deduct(USER_ID, 3, "d-1")
        ledger.refund(USER_ID, 1, "Verdict never delivered", "r-1")
        ledger.tip(USER_ID, OTHER_USER_ID, 2, "tip-1")
        ledger.record_pending_purchase(USER_ID, 50, 999, "cs_pending")

        check = ledger.verify_ledger_identity(USER_ID)
        assert check.consistent is True
        assert check.balance == 6
        assert check.completed_sum == 6
        assert ledger.verify_ledger_identity(OTHER_USER_ID).balance == 2

    def test_store_lock_timeout(self):
        """Test that a held store lock surfaces as a timeout instead of blocking."""
        storage = InMemoryStorage(lock_timeout=0.05)
        ledger = CreditLedger(storage=storage, settings=Settings(store_timeout_seconds=0.05))
        ledger.open_account(USER_ID, 5)
        held = threading.Event()
        release = threading.Event()

        def hold_lock():
            with storage.transaction():
                held.set()
                release.wait(2)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        held.wait(2)
        try:
            with pytest.raises(OperationTimeoutError):
                ledger.deduct(USER_ID, 1, "blocked")
        finally:
            release.set()
            holder.join()

        assert ledger.get_balance(USER_ID).credits == 5


class TestRefundAndGrants:
    """Tests for credit-granting paths."""

    def test_refund_requires_reason(self):
        """Test that a refund without a reason is rejected."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 1)

        with pytest.raises(ValidationError):
            ledger.refund(USER_ID, 1, "", "refund-empty")

    def test_refund_requires_key(self):
        """Test that a refund cannot be issued without an idempotency key."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 1)

        with pytest.raises(ValidationError):
            ledger.refund(USER_ID, 1, "Request cancelled", "  ")

        assert ledger.get_balance(USER_ID).credits == 1

    def test_refund_with_key_is_idempotent(self):
        """Test that a keyed refund applies once."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 1)

        ledger.refund(USER_ID, 2, "Request cancelled", "refund-sub-1")
        second = ledger.refund(USER_ID, 2, "Request cancelled", "refund-sub-1")

        assert second.duplicate is True
        assert ledger.get_balance(USER_ID).credits == 3

    def test_grant_rejects_debit_types(self):
        """Test that grant only accepts credit-granting types."""
        ledger = make_ledger()
        ledger.open_account(USER_ID)

        with pytest.raises(ValidationError):
            ledger.grant(USER_ID, 5, TransactionType.DEDUCTION, "grant-1")

    def test_open_account_is_idempotent(self):
        """Test that opening an existing account returns it unchanged."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 5)

        balance = ledger.open_account(USER_ID, 5)

        assert balance.credits == 5
        assert len(ledger.get_history(USER_ID).entries) == 1

    def test_credit_change_notification(self):
        """Test that mutations notify the user and replays do not."""
        notifier = RecordingNotifier()
        ledger = make_ledger(notifier=notifier)
        ledger.open_account(USER_ID, 5)
        notifier.sent.clear()

        ledger.deduct(USER_ID, 1, "n-1")
        ledger.deduct(USER_ID, 1, "n-1")

        events = notifier.events("credit_change")
        assert len(events) == 1
        assert events[0][0] == str(USER_ID)
        assert events[0][2]["new_balance"] == 4

    def test_notification_failure_does_not_undo(self):
        """Test that a broken notifier never fails the mutation."""
        class BrokenNotifier:
            def notify(self, recipient, event, payload):
                raise RuntimeError("smtp down")

        ledger = make_ledger(notifier=BrokenNotifier())
        ledger.open_account(USER_ID, 5)

        result = ledger.deduct(USER_ID, 1, "n-2")
        assert result.new_balance == 4


class TestTips:
    """Tests for judge tips."""

    def test_tip_moves_credits(self):
        """Test that a tip debits the sender and credits the recipient."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 5)
        ledger.open_account(OTHER_USER_ID)

        result = ledger.tip(USER_ID, OTHER_USER_ID, 2, "tip-1")

        assert result.sender_balance == 3
        assert result.recipient_balance == 2
        again = ledger.tip(USER_ID, OTHER_USER_ID, 2, "tip-1")
        assert again.duplicate is True
        assert ledger.get_balance(USER_ID).credits == 3
        assert ledger.get_balance(OTHER_USER_ID).credits == 2

    def test_tip_to_missing_recipient_debits_nothing(self):
        """Test that a tip to an unknown account leaves the sender untouched."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 5)

        with pytest.raises(UserNotFoundError):
            ledger.tip(USER_ID, OTHER_USER_ID, 2, "tip-2")

        assert ledger.get_balance(USER_ID).credits == 5

    def test_cannot_tip_self(self):
        """Test that self-tips are rejected."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 5)

        with pytest.raises(ValidationError):
            ledger.tip(USER_ID, USER_ID, 1, "tip-3")


class TestPendingPurchases:
    """Tests for the pending purchase lifecycle."""

    def test_complete_pending_grants_credits(self):
        """Test that completing a pending purchase applies its credits once."""
        ledger = make_ledger()
        ledger.open_account(USER_ID)
        tx = ledger.record_pending_purchase(USER_ID, 50, 999, "cs_123")
        assert ledger.get_balance(USER_ID).credits == 0

        result = ledger.complete_pending(tx.id, "provider:cs_123")
        again = ledger.complete_pending(tx.id, "webhook:cs_123")

        assert result.new_balance == 50
        assert result.transaction.status == TransactionStatus.COMPLETED
        assert again.duplicate is True
        assert ledger.get_balance(USER_ID).credits == 50

    def test_failed_pending_cannot_complete(self):
        """Test that a failed purchase cannot be completed later."""
        ledger = make_ledger()
        ledger.open_account(USER_ID)
        tx = ledger.record_pending_purchase(USER_ID, 10, 199, "cs_456")
        ledger.fail_pending(tx.id, "card declined")

        with pytest.raises(ConflictError):
            ledger.complete_pending(tx.id, "provider:cs_456")

        assert ledger.get_balance(USER_ID).credits == 0


class TestAdminAdjustment:
    """Tests for privileged balance adjustments."""

    def test_adjust_sets_balance_and_audits(self):
        """Test that an adjustment moves the balance and records who did it."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 10)

        result = ledger.adjust(ADMIN, USER_ID, 15, "Compensation for outage")

        assert result.old_balance == 10
        assert result.new_balance == 15
        assert result.audit_recorded is True
        assert result.transaction.credits_delta == 5
        assert result.transaction.metadata["admin_adjustment"] is True
        records = ledger.audit.list_records(actor_id="admin-1")
        assert len(records) == 1
        assert records[0].before_state["credits"] == 10
        assert records[0].after_state["credits"] == 15
        assert records[0].reason == "Compensation for outage"

    def test_adjust_down(self):
        """Test that an adjustment can lower a balance."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 10)

        result = ledger.adjust(ADMIN, USER_ID, 4, "Reversing duplicate grant")

        assert result.new_balance == 4
        assert result.transaction.type == TransactionType.DEDUCTION

    def test_short_reason_rejected_before_any_write(self):
        """Test that a weak justification changes nothing."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 10)

        with pytest.raises(ValidationError):
            ledger.adjust(ADMIN, USER_ID, 15, "oops")

        assert ledger.get_balance(USER_ID).credits == 10
        assert ledger.audit.list_records() == []

    def test_non_admin_rejected(self):
        """Test that non-admins cannot adjust."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 10)

        with pytest.raises(PermissionDeniedError):
            ledger.adjust(MEMBER, USER_ID, 15, "Compensation for outage")

        assert ledger.get_balance(USER_ID).credits == 10

    def test_adjust_limits(self):
        """Test that negative targets and oversized deltas are rejected."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 10)

        with pytest.raises(ValidationError):
            ledger.adjust(ADMIN, USER_ID, -1, "Compensation for outage")
        with pytest.raises(ValidationError):
            ledger.adjust(ADMIN, USER_ID, 1011, "Compensation for outage")

        assert ledger.get_balance(USER_ID).credits == 10

    def test_adjust_replay(self):
        """Test that replaying an adjustment key applies it once."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 10)

        ledger.adjust(ADMIN, USER_ID, 15, "Compensation for outage", idempotency_key="adj-1")
        replay = ledger.adjust(ADMIN, USER_ID, 15, "Compensation for outage", idempotency_key="adj-1")

        assert replay.duplicate is True
        assert replay.audit_recorded is True
        assert ledger.get_balance(USER_ID).credits == 15
        assert len(ledger.audit.list_records()) == 1

    def test_notifications_sent_after_lock_released(self):
        """Test that a slow notifier never holds up other accounts."""
        notifier = ConcurrentDeductNotifier()
        ledger = make_ledger(notifier=notifier)
        notifier.ledger = ledger

        ledger.open_account(OTHER_USER_ID, 5)
        ledger.open_account(USER_ID, 10)
        ledger.adjust(ADMIN, USER_ID, 15, "Compensation for outage")
        ledger.adjust(ADMIN, USER_ID, 12, "Reversing duplicate grant")

        assert notifier.outcomes == [4, 3, 2]
        assert ledger.get_balance(USER_ID).credits == 12

    def test_audit_failure_is_reported_not_hidden(self):
        """Test that a failed audit write keeps the adjustment and flags it."""
        storage = InMemoryStorage(lock_timeout=1.0)
        ledger = make_ledger(storage=storage, audit_writer=FailingAuditWriter(storage))
        ledger.open_account(USER_ID, 10)

        result = ledger.adjust(ADMIN, USER_ID, 15, "Compensation for outage")

        assert result.new_balance == 15
        assert result.audit_recorded is False
        assert "audit store unavailable" in result.audit_error
        assert ledger.get_balance(USER_ID).credits == 15


class TestAdminRefund:
    """Tests for admin-issued refunds."""

    def test_refund_is_audited(self):
        """Test that an admin refund credits the user and records who issued it."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 2)

        result = ledger.refund_as_admin(ADMIN, USER_ID, 3, "Verdict never delivered", "refund-req-9")

        assert result.new_balance == 5
        assert result.audit_recorded is True
        assert result.audit_error is None
        assert result.transaction.type == TransactionType.REFUND
        assert result.transaction.metadata["actor_id"] == "admin-1"
        records = ledger.audit.list_records(actor_id="admin-1", target_id=str(USER_ID))
        assert len(records) == 1
        assert records[0].action == "credit_refund"
        assert records[0].before_state["credits"] == 2
        assert records[0].after_state["credits"] == 5

    def test_retried_refund_applies_once(self):
        """Test that resubmitting the same refund neither credits nor audits twice."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 2)

        ledger.refund_as_admin(ADMIN, USER_ID, 3, "Verdict never delivered", "refund-req-9")
        retry = ledger.refund_as_admin(ADMIN, USER_ID, 3, "Verdict never delivered", "refund-req-9")

        assert retry.duplicate is True
        assert retry.audit_recorded is True
        assert ledger.get_balance(USER_ID).credits == 5
        assert len(ledger.audit.list_records()) == 1

    def test_non_admin_rejected(self):
        """Test that members cannot issue refunds."""
        ledger = make_ledger()
        ledger.open_account(USER_ID, 2)

        with pytest.raises(PermissionDeniedError):
            ledger.refund_as_admin(MEMBER, USER_ID, 3, "Verdict never delivered", "refund-req-9")

        assert ledger.get_balance(USER_ID).credits == 2

    def test_audit_failure_is_reported(self):
        """Test that a failed audit write keeps the refund and flags it."""
        storage = InMemoryStorage(lock_timeout=1.0)
        ledger = make_ledger(storage=storage, audit_writer=FailingAuditWriter(storage))
        ledger.open_account(USER_ID, 2)

        result = ledger.refund_as_admin(ADMIN, USER_ID, 3, "Verdict never delivered", "refund-req-9")

        assert result.new_balance == 5
        assert result.audit_recorded is False
        assert "audit store unavailable" in result.audit_error
