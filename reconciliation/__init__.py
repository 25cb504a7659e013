"""
Payment reconciliation

Cross-references payment provider charges against the internal credit
ledger, classifies the drift by severity and repairs the safe subset
through idempotent ledger operations.
"""

from .engine import PaymentReconciliationEngine
from .models import (
    AutoFixResult,
    DiscrepancyReport,
    DiscrepancyType,
    PaymentHealthMetrics,
    ProviderCharge,
    ReconciliationReport,
    Severity,
)
from .provider import InMemoryPaymentProvider, PaymentProvider, StripePaymentProvider

__all__ = [
    "PaymentReconciliationEngine",
    "AutoFixResult",
    "DiscrepancyReport",
    "DiscrepancyType",
    "PaymentHealthMetrics",
    "ProviderCharge",
    "ReconciliationReport",
    "Severity",
    "InMemoryPaymentProvider",
    "PaymentProvider",
    "StripePaymentProvider",
]
