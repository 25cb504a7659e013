from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class ChargeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"


class DiscrepancyType(str, Enum):
    MISSING_TRANSACTION = "missing_transaction"
    PENDING_TRANSACTION = "pending_transaction"
    AMOUNT_MISMATCH = "amount_mismatch"
    ORPHANED_PROVIDER_CHARGE = "orphaned_provider_charge"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}

# Repaired through idempotent ledger primitives keyed on the provider charge id
SAFE_TO_AUTO_FIX = (DiscrepancyType.MISSING_TRANSACTION, DiscrepancyType.PENDING_TRANSACTION)


class ProviderCharge(BaseModel):
    """A payment as the provider records it."""
    id: str
    amount_cents: int
    currency: str = "usd"
    status: ChargeStatus
    user_id: Optional[str] = None
    credits: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(frozen=True)


class DiscrepancyReport(BaseModel):
    type: DiscrepancyType
    severity: Severity
    provider_charge_id: str
    user_id: Optional[UUID] = None
    transaction_id: Optional[UUID] = None
    expected_credits: Optional[int] = None
    actual_credits: Optional[int] = None
    expected_amount_cents: Optional[int] = None
    actual_amount_cents: Optional[int] = None
    description: str
    action_required: str


class ReconciliationSummary(BaseModel):
    window_start: datetime
    window_end: datetime
    provider_charges_checked: int
    internal_transactions_checked: int
    total_discrepancies: int
    critical_issues: int
    total_credits_affected: int
    by_type: dict[str, int] = Field(default_factory=dict)
    internal_pending: int = 0


class ReconciliationReport(BaseModel):
    summary: ReconciliationSummary
    discrepancies: list[DiscrepancyReport]
    recommendations: list[str]
    cross_reference_complete: bool = True
    provider_error: Optional[str] = None


class FixDetail(BaseModel):
    type: DiscrepancyType
    provider_charge_id: str
    outcome: str  # fixed | skipped | error
    message: Optional[str] = None
    new_balance: Optional[int] = None


class AutoFixResult(BaseModel):
    fixed: int = 0
    skipped: int = 0
    errors: int = 0
    credits_added: int = 0
    cancelled: bool = False
    details: list[FixDetail] = Field(default_factory=list)


class PaymentHealthMetrics(BaseModel):
    window_hours: int
    total_transactions: int
    completed_transactions: int
    pending_transactions: int
    failed_transactions: int
    transaction_success_rate: float
    pending_credits: int


class ReconciliationJobResult(BaseModel):
    report: ReconciliationReport
    fixes: Optional[AutoFixResult] = None


class AnalyzeRequest(BaseModel):
    hours: int = Field(default=24, gt=0)


class AutoFixRequest(BaseModel):
    discrepancies: list[DiscrepancyReport]
