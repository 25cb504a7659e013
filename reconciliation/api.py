from typing import Optional
from fastapi import APIRouter, Depends

from core.auth import AuthContext, require_admin
from core.errors import ServiceError
from core.http import to_http_exception
from ledger.api import ledger_service

from .engine import PaymentReconciliationEngine
from .models import (
    AnalyzeRequest, AutoFixRequest, AutoFixResult, PaymentHealthMetrics,
    ReconciliationJobResult, ReconciliationReport,
)
from .provider import InMemoryPaymentProvider, PaymentProvider, StripePaymentProvider


def build_provider() -> PaymentProvider:
    if ledger_service.settings.stripe_api_key:
        return StripePaymentProvider(ledger_service.settings.stripe_api_key)
    return InMemoryPaymentProvider()


reconciliation_engine = PaymentReconciliationEngine(ledger=ledger_service, provider=build_provider())

router = APIRouter(prefix="/billing", tags=["Billing"])


@router.post("/reconcile/analyze", response_model=ReconciliationReport)
def analyze(request: Optional[AnalyzeRequest] = None,
            admin: AuthContext = Depends(require_admin)) -> ReconciliationReport:
    request = request or AnalyzeRequest()
    try:
        return reconciliation_engine.analyze_discrepancies(request.hours)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/reconcile/auto-fix", response_model=AutoFixResult)
def auto_fix(request: AutoFixRequest, admin: AuthContext = Depends(require_admin)) -> AutoFixResult:
    return reconciliation_engine.auto_fix_discrepancies(request.discrepancies)


@router.post("/reconcile/run", response_model=ReconciliationJobResult)
def run_job(hours: int = 24, auto_fix: bool = True,
            admin: AuthContext = Depends(require_admin)) -> ReconciliationJobResult:
    try:
        return reconciliation_engine.run_reconciliation_job(hours, auto_fix)
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("/health", response_model=PaymentHealthMetrics)
def payment_health(hours: int = 24, admin: AuthContext = Depends(require_admin)) -> PaymentHealthMetrics:
    try:
        return reconciliation_engine.get_payment_health_metrics(hours)
    except ServiceError as e:
        raise to_http_exception(e)
