from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, status

from core.auth import AuthContext, get_auth_context, require_admin
from core.errors import ServiceError
from core.http import to_http_exception

from .models import (
    AdjustRequest, AdjustmentResult, AdminRefundResult, Balance, DeductRequest, LedgerHistoryResponse,
    LedgerIdentityCheck, LedgerResult, OpenAccountRequest, RefundRequest, TipRequest, TipResult,
)
from .service import CreditLedger
from .storage import InMemoryStorage

storage = InMemoryStorage()
ledger_service = CreditLedger(storage=storage)

router = APIRouter(tags=["Credits"])


@router.get("/users/{user_id}/balance", response_model=Balance)
def get_user_balance(user_id: UUID) -> Balance:
    try:
        return ledger_service.get_balance(user_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse)
def get_user_ledger(user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    try:
        return ledger_service.get_history(user_id, limit, offset)
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("/users/{user_id}/ledger/verify", response_model=LedgerIdentityCheck)
def verify_user_ledger(user_id: UUID, admin: AuthContext = Depends(require_admin)) -> LedgerIdentityCheck:
    try:
        return ledger_service.verify_ledger_identity(user_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/users/{user_id}/credits/deduct", response_model=LedgerResult)
def deduct_credits(user_id: UUID, request: DeductRequest,
                   actor: AuthContext = Depends(get_auth_context)) -> LedgerResult:
    try:
        return ledger_service.deduct(user_id, request.amount, request.idempotency_key,
                                     metadata={"requested_by": actor.actor_id})
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/users/{user_id}/credits/refund", response_model=AdminRefundResult)
def refund_credits(user_id: UUID, request: RefundRequest,
                   admin: AuthContext = Depends(require_admin)) -> AdminRefundResult:
    try:
        return ledger_service.refund_as_admin(admin, user_id, request.amount, request.reason,
                                              request.idempotency_key)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/users/{user_id}/credits/tip", response_model=TipResult, status_code=status.HTTP_201_CREATED)
def tip_user(user_id: UUID, request: TipRequest,
             actor: AuthContext = Depends(get_auth_context)) -> TipResult:
    if actor.actor_id != str(user_id) and not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot tip on behalf of another user")
    try:
        return ledger_service.tip(user_id, request.to_user_id, request.amount, request.idempotency_key)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/admin/users/{user_id}/credits/adjust", response_model=AdjustmentResult)
def adjust_credits(user_id: UUID, request: AdjustRequest,
                   admin: AuthContext = Depends(require_admin)) -> AdjustmentResult:
    try:
        return ledger_service.adjust(admin, user_id, request.target_balance, request.reason,
                                     request.idempotency_key)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/admin/users/{user_id}/account", response_model=Balance, status_code=status.HTTP_201_CREATED)
def open_account(user_id: UUID, request: Optional[OpenAccountRequest] = None,
                 admin: AuthContext = Depends(require_admin)) -> Balance:
    try:
        return ledger_service.open_account(user_id, request.initial_credits if request else 0)
    except ServiceError as e:
        raise to_http_exception(e)
