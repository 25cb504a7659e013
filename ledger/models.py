from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    DEDUCTION = "deduction"
    REFUND = "refund"
    BONUS = "bonus"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    TIP = "tip"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


GRANT_TYPES = (TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.TIP)


class Balance(BaseModel):
    user_id: UUID
    credits: int = Field(..., ge=0)
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class Transaction(BaseModel):
    id: UUID
    user_id: UUID
    type: TransactionType
    credits_delta: int
    amount_cents: int = 0
    status: TransactionStatus
    external_reference: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class IdempotencyRecord(BaseModel):
    operation_id: str
    operation: str
    fingerprint: str
    result_snapshot: dict[str, Any]
    created_at: datetime

    model_config = ConfigDict(frozen=True)


class AuditRecord(BaseModel):
    id: UUID
    actor_id: str
    action: str
    target_id: Optional[str] = None
    before_state: dict = Field(default_factory=dict)
    after_state: dict = Field(default_factory=dict)
    reason: str
    created_at: datetime

    model_config = ConfigDict(frozen=True)


# Request shapes validated at the HTTP boundary

class DeductRequest(BaseModel):
    amount: int = Field(..., gt=0)
    idempotency_key: str = Field(..., min_length=1, description="Stable operation id, e.g. the submission id")

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 1, "idempotency_key": "sub-123"}
    })


class OpenAccountRequest(BaseModel):
    initial_credits: int = Field(default=0, ge=0)


class RefundRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1)
    idempotency_key: str = Field(..., min_length=1)


class AdjustRequest(BaseModel):
    target_balance: int = Field(..., ge=0)
    reason: str = Field(..., description="Justification kept on the audit trail")
    idempotency_key: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"target_balance": 10, "reason": "support ticket #552 goodwill credit"}
    })


class TipRequest(BaseModel):
    to_user_id: UUID
    amount: int = Field(..., gt=0)
    idempotency_key: str = Field(..., min_length=1)


# Results

class LedgerResult(BaseModel):
    user_id: UUID
    new_balance: int
    transaction: Optional[Transaction] = None
    duplicate: bool = False
    message: str


class AdminRefundResult(LedgerResult):
    audit_recorded: bool
    audit_error: Optional[str] = None


class AdjustmentResult(BaseModel):
    target_user_id: UUID
    old_balance: int
    new_balance: int
    transaction: Optional[Transaction] = None
    duplicate: bool = False
    audit_recorded: bool
    audit_error: Optional[str] = None
    message: str


class TipResult(BaseModel):
    from_user_id: UUID
    to_user_id: UUID
    amount: int
    sender_balance: int
    recipient_balance: int
    duplicate: bool = False


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[Transaction]
    total_count: int
    current_balance: int


class LedgerIdentityCheck(BaseModel):
    user_id: UUID
    balance: int
    completed_sum: int
    consistent: bool
