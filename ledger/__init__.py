"""
Credit ledger

This module provides:
- Per-user credit balances that never go negative
- Append-only transaction history
- Idempotent deduct, refund, grant and tip operations
- Audited admin adjustments
"""

from .models import (
    TransactionType,
    TransactionStatus,
    Balance,
    Transaction,
    LedgerResult,
    AdjustmentResult,
)
from .service import CreditLedger
from .storage import InMemoryStorage

__all__ = [
    "TransactionType",
    "TransactionStatus",
    "Balance",
    "Transaction",
    "LedgerResult",
    "AdjustmentResult",
    "CreditLedger",
    "InMemoryStorage",
]
