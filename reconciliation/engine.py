import logging
import threading
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from core.config import Settings
from core.errors import AuditWriteFailedError, DependencyUnavailableError, ValidationError
from core.notifications import dispatch
from core.resilience import call_with_timeout, retry_with_backoff
from ledger.models import LedgerResult, Transaction, TransactionStatus, TransactionType
from ledger.service import CreditLedger

from .models import (
    SAFE_TO_AUTO_FIX,
    SEVERITY_RANK,
    AutoFixResult,
    ChargeStatus,
    DiscrepancyReport,
    DiscrepancyType,
    FixDetail,
    PaymentHealthMetrics,
    ProviderCharge,
    ReconciliationJobResult,
    ReconciliationReport,
    ReconciliationSummary,
    Severity,
)
from .provider import PaymentProvider

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system:reconciliation"


class PaymentReconciliationEngine:
    """
    Detects drift between the payment provider's charges and the internal
    ledger, and repairs the subset that is safe to repair.

    Discrepancies are data, not errors. Missing and pending transactions
    are fixed through the ledger's idempotent primitives keyed on the
    provider charge id, so overlapping runs cannot grant credits twice.
    Amount mismatches and orphaned charges are only ever reported.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        provider: PaymentProvider,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.provider = provider
        self.settings = settings or ledger.settings

    def analyze_discrepancies(self, hours_back: int = 24) -> ReconciliationReport:
        hours_back = self._window(hours_back)
        end = datetime.now(timezone.utc)
        start = end - timedelta(hours=hours_back)

        with self.storage.transaction(timeout=self.settings.store_timeout_seconds):
            internal = self.storage.list_transactions(since=start, until=end)
        internal_pending = sum(1 for t in internal if t.status == TransactionStatus.PENDING)

        logger.info(f"Starting payment reconciliation for the last {hours_back}h")
        try:
            charges = self._fetch_charges(start, end)
        except DependencyUnavailableError as e:
            logger.error(f"Reconciliation cross-reference incomplete, provider unavailable: {e}")
            summary = ReconciliationSummary(
                window_start=start,
                window_end=end,
                provider_charges_checked=0,
                internal_transactions_checked=len(internal),
                total_discrepancies=0,
                critical_issues=0,
                total_credits_affected=0,
                internal_pending=internal_pending,
            )
            recommendations = ["Payment provider unreachable - cross-reference incomplete, re-run when it recovers"]
            if internal_pending:
                recommendations.append(f"{internal_pending} internal transactions are still pending")
            return ReconciliationReport(
                summary=summary,
                discrepancies=[],
                recommendations=recommendations,
                cross_reference_complete=False,
                provider_error=str(e),
            )

        discrepancies = []
        for charge in charges:
            if charge.status != ChargeStatus.SUCCEEDED:
                continue
            discrepancy = self._classify(charge, self.storage.find_transactions_by_reference(charge.id))
            if discrepancy is not None:
                discrepancies.append(discrepancy)
        discrepancies.sort(key=lambda d: (SEVERITY_RANK[d.severity], d.type.value, d.provider_charge_id))

        by_type = Counter(d.type.value for d in discrepancies)
        summary = ReconciliationSummary(
            window_start=start,
            window_end=end,
            provider_charges_checked=len(charges),
            internal_transactions_checked=len(internal),
            total_discrepancies=len(discrepancies),
            critical_issues=sum(1 for d in discrepancies if d.severity == Severity.CRITICAL),
            total_credits_affected=sum(d.expected_credits or 0 for d in discrepancies),
            by_type=dict(by_type),
            internal_pending=internal_pending,
        )
        report = ReconciliationReport(
            summary=summary,
            discrepancies=discrepancies,
            recommendations=self._recommendations(summary, by_type),
        )
        logger.info(
            f"Reconciliation found {summary.total_discrepancies} discrepancies "
            f"({summary.critical_issues} critical) across {summary.provider_charges_checked} charges"
        )
        return report

    def auto_fix_discrepancies(
        self,
        discrepancies: list[DiscrepancyReport],
        cancel_event: Optional[threading.Event] = None,
    ) -> AutoFixResult:
        result = AutoFixResult()
        for discrepancy in discrepancies[:self.settings.max_batch_size]:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.info(f"Auto-fix cancelled after {len(result.details)} items")
                break

            if discrepancy.type not in SAFE_TO_AUTO_FIX:
                result.skipped += 1
                result.details.append(FixDetail(
                    type=discrepancy.type,
                    provider_charge_id=discrepancy.provider_charge_id,
                    outcome="skipped",
                    message="Requires manual review",
                ))
                continue

            try:
                applied = self._apply_fix(discrepancy)
            except Exception as e:
                logger.error(f"Failed to auto-fix {discrepancy.type.value} for {discrepancy.provider_charge_id}: {e}")
                result.errors += 1
                result.details.append(FixDetail(
                    type=discrepancy.type,
                    provider_charge_id=discrepancy.provider_charge_id,
                    outcome="error",
                    message=str(e),
                ))
                continue

            if applied.duplicate:
                result.skipped += 1
                result.details.append(FixDetail(
                    type=discrepancy.type,
                    provider_charge_id=discrepancy.provider_charge_id,
                    outcome="skipped",
                    message="Already applied",
                    new_balance=applied.new_balance,
                ))
                continue

            result.fixed += 1
            result.credits_added += applied.transaction.credits_delta
            result.details.append(FixDetail(
                type=discrepancy.type,
                provider_charge_id=discrepancy.provider_charge_id,
                outcome="fixed",
                message=self._audit_fix(discrepancy, applied),
                new_balance=applied.new_balance,
            ))

        logger.info(f"Auto-fix completed: fixed={result.fixed} skipped={result.skipped} errors={result.errors}")
        return result

    def get_payment_health_metrics(self, hours_back: int = 24) -> PaymentHealthMetrics:
        hours_back = self._window(hours_back)
        since = datetime.now(timezone.utc) - timedelta(hours=hours_back)
        with self.storage.transaction(timeout=self.settings.store_timeout_seconds):
            rows = [t for t in self.storage.list_transactions(since=since) if t.created_at >= since]

        counts = Counter(t.status for t in rows)
        total = len(rows)
        completed = counts[TransactionStatus.COMPLETED]
        return PaymentHealthMetrics(
            window_hours=hours_back,
            total_transactions=total,
            completed_transactions=completed,
            pending_transactions=counts[TransactionStatus.PENDING],
            failed_transactions=counts[TransactionStatus.FAILED],
            transaction_success_rate=round(completed / total * 100, 2) if total else 0.0,
            pending_credits=sum(t.credits_delta for t in rows if t.status == TransactionStatus.PENDING),
        )

    def run_reconciliation_job(self, hours_back: int = 24, auto_fix: bool = True) -> ReconciliationJobResult:
        """Scheduled entry point: analyze, repair the safe subset, alert admins."""
        report = self.analyze_discrepancies(hours_back)
        fixes = self.auto_fix_discrepancies(report.discrepancies) if auto_fix and report.discrepancies else None

        if report.summary.critical_issues or not report.cross_reference_complete or (fixes and fixes.errors):
            dispatch(self.ledger.notifier, "admins", "reconciliation_alert", {
                "critical_issues": report.summary.critical_issues,
                "total_discrepancies": report.summary.total_discrepancies,
                "cross_reference_complete": report.cross_reference_complete,
                "fixed": fixes.fixed if fixes else 0,
                "fix_errors": fixes.errors if fixes else 0,
            })
        return ReconciliationJobResult(report=report, fixes=fixes)

    # Internals

    def _fetch_charges(self, start: datetime, end: datetime) -> list[ProviderCharge]:
        limit = self.settings.max_reconciliation_charges

        def fetch():
            return call_with_timeout(
                lambda: self.provider.list_charges(start, end, limit),
                self.settings.provider_timeout_seconds,
                "provider.list_charges",
            )

        return retry_with_backoff(
            fetch,
            "provider.list_charges",
            max_attempts=self.settings.provider_max_retries,
            initial_delay=self.settings.retry_backoff_seconds,
        )

    def _classify(self, charge: ProviderCharge, transactions: list[Transaction]) -> Optional[DiscrepancyReport]:
        completed = [t for t in transactions if t.status == TransactionStatus.COMPLETED]
        pending = [t for t in transactions if t.status == TransactionStatus.PENDING]

        if completed:
            recorded_cents = sum(t.amount_cents for t in completed)
            recorded_credits = sum(t.credits_delta for t in completed)
            credits_differ = charge.credits is not None and recorded_credits != charge.credits
            if recorded_cents == charge.amount_cents and not credits_differ:
                return None
            return DiscrepancyReport(
                type=DiscrepancyType.AMOUNT_MISMATCH,
                severity=Severity.MEDIUM,
                provider_charge_id=charge.id,
                user_id=completed[0].user_id,
                transaction_id=completed[0].id,
                expected_credits=charge.credits,
                actual_credits=recorded_credits,
                expected_amount_cents=charge.amount_cents,
                actual_amount_cents=recorded_cents,
                description=(f"Provider settled {charge.amount_cents} cents for {charge.credits} credits; "
                             f"ledger recorded {recorded_cents} cents for {recorded_credits} credits"),
                action_required="Review manually before adjusting the user's credits",
            )

        if pending:
            tx = pending[0]
            credits_differ = charge.credits is not None and tx.credits_delta != charge.credits
            if tx.amount_cents != charge.amount_cents or credits_differ:
                # Completing would grant credits the provider never charged for
                return DiscrepancyReport(
                    type=DiscrepancyType.AMOUNT_MISMATCH,
                    severity=Severity.MEDIUM,
                    provider_charge_id=charge.id,
                    user_id=tx.user_id,
                    transaction_id=tx.id,
                    expected_credits=charge.credits,
                    actual_credits=tx.credits_delta,
                    expected_amount_cents=charge.amount_cents,
                    actual_amount_cents=tx.amount_cents,
                    description=(f"Provider settled {charge.amount_cents} cents for {charge.credits} credits; "
                                 f"pending purchase is for {tx.amount_cents} cents and {tx.credits_delta} credits"),
                    action_required="Review manually before completing the pending purchase",
                )
            return DiscrepancyReport(
                type=DiscrepancyType.PENDING_TRANSACTION,
                severity=Severity.HIGH,
                provider_charge_id=charge.id,
                user_id=tx.user_id,
                transaction_id=tx.id,
                expected_credits=tx.credits_delta,
                expected_amount_cents=charge.amount_cents,
                actual_amount_cents=tx.amount_cents,
                description="Transaction is still pending although the provider settled the charge",
                action_required="Complete the transaction and grant its credits",
            )

        user_id = self._attributable_user(charge)
        if user_id is not None and charge.credits:
            return DiscrepancyReport(
                type=DiscrepancyType.MISSING_TRANSACTION,
                severity=Severity.CRITICAL,
                provider_charge_id=charge.id,
                user_id=user_id,
                expected_credits=charge.credits,
                actual_credits=0,
                expected_amount_cents=charge.amount_cents,
                actual_amount_cents=0,
                description=(f"Payment succeeded but no completed transaction exists; "
                             f"user paid for {charge.credits} credits and did not receive them"),
                action_required="Create a completed purchase and grant the credits",
            )

        return DiscrepancyReport(
            type=DiscrepancyType.ORPHANED_PROVIDER_CHARGE,
            severity=Severity.HIGH,
            provider_charge_id=charge.id,
            expected_credits=charge.credits,
            expected_amount_cents=charge.amount_cents,
            description="Provider charge has no internal record and cannot be attributed to an account",
            action_required="Investigate the checkout flow and contact the payer",
        )

    def _attributable_user(self, charge: ProviderCharge) -> Optional[UUID]:
        if not charge.user_id:
            return None
        try:
            user_id = UUID(charge.user_id)
        except ValueError:
            return None
        return user_id if self.storage.get_balance(user_id) is not None else None

    def _apply_fix(self, discrepancy: DiscrepancyReport) -> LedgerResult:
        key = f"provider:{discrepancy.provider_charge_id}"
        if discrepancy.type == DiscrepancyType.MISSING_TRANSACTION:
            if discrepancy.user_id is None or not discrepancy.expected_credits:
                raise ValidationError("Missing-transaction fix needs a user and a credit amount")
            return self.ledger.grant(
                discrepancy.user_id,
                discrepancy.expected_credits,
                TransactionType.PURCHASE,
                key,
                amount_cents=discrepancy.expected_amount_cents or 0,
                external_reference=discrepancy.provider_charge_id,
                metadata={"source": "reconciliation"},
            )
        if discrepancy.transaction_id is None:
            raise ValidationError("Pending-transaction fix needs the internal transaction id")
        return self.ledger.complete_pending(discrepancy.transaction_id, key)

    def _audit_fix(self, discrepancy: DiscrepancyReport, applied: LedgerResult) -> Optional[str]:
        try:
            self.ledger.audit.write(
                actor_id=SYSTEM_ACTOR,
                action=f"auto_fix_{discrepancy.type.value}",
                reason=discrepancy.description,
                target_id=str(applied.user_id),
                before_state={"credits": applied.new_balance - applied.transaction.credits_delta},
                after_state={"credits": applied.new_balance, "provider_charge_id": discrepancy.provider_charge_id},
            )
        except AuditWriteFailedError as e:
            logger.critical(f"AUDIT WRITE FAILED for auto-fix of {discrepancy.provider_charge_id}: {e}")
            return f"Fixed, but audit write failed: {e}"
        return None

    def _window(self, hours_back: int) -> int:
        if isinstance(hours_back, bool) or not isinstance(hours_back, int) or hours_back <= 0:
            raise ValidationError("hours_back must be a positive whole number", {"field": "hours_back"})
        if hours_back > self.settings.max_reconciliation_hours:
            raise ValidationError(
                f"hours_back may not exceed {self.settings.max_reconciliation_hours}",
                {"field": "hours_back"},
            )
        return hours_back

    @staticmethod
    def _recommendations(summary: ReconciliationSummary, by_type: Counter) -> list[str]:
        recommendations = []
        if summary.critical_issues > 0:
            recommendations.append(f"{summary.critical_issues} critical issues need immediate attention")
        if summary.total_discrepancies > 5:
            recommendations.append("High number of discrepancies - review webhook delivery")
        if summary.total_credits_affected > 100:
            recommendations.append("Large credit amount affected - prioritize resolution")
        fixable = sum(by_type[t.value] for t in SAFE_TO_AUTO_FIX)
        if fixable:
            recommendations.append(f"{fixable} discrepancies can be repaired automatically")
        mismatches = by_type[DiscrepancyType.AMOUNT_MISMATCH.value]
        if mismatches:
            recommendations.append(f"{mismatches} amount mismatches need manual review (possible fraud or pricing error)")
        orphaned = by_type[DiscrepancyType.ORPHANED_PROVIDER_CHARGE.value]
        if orphaned:
            recommendations.append(f"{orphaned} provider charges have no internal record - investigate checkout failures")
        if summary.total_discrepancies == 0:
            recommendations.append("No discrepancies found - payment system healthy")
        return recommendations
