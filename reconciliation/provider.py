"""
Read-only access to the payment provider's transaction records.

The engine only ever lists charges for a time window; it never writes to
the provider.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

import stripe

from core.errors import DependencyUnavailableError

from .models import ChargeStatus, ProviderCharge

logger = logging.getLogger(__name__)


class PaymentProvider(Protocol):
    def list_charges(self, start: datetime, end: datetime, limit: int) -> list[ProviderCharge]: ...


class InMemoryPaymentProvider:
    def __init__(self, charges: Optional[list[ProviderCharge]] = None):
        self.charges: list[ProviderCharge] = list(charges or [])
        self.available = True

    def add_charge(self, charge: ProviderCharge) -> None:
        self.charges.append(charge)

    def list_charges(self, start: datetime, end: datetime, limit: int) -> list[ProviderCharge]:
        if not self.available:
            raise DependencyUnavailableError("Payment provider is unavailable")
        rows = [c for c in self.charges if start <= c.created_at <= end]
        rows.sort(key=lambda c: (c.created_at, c.id))
        return rows[:limit]


class StripePaymentProvider:
    """Completed Checkout Sessions carrying ``user_id`` and ``credits`` metadata."""

    def __init__(self, api_key: str):
        self.api_key = api_key

    def list_charges(self, start: datetime, end: datetime, limit: int) -> list[ProviderCharge]:
        try:
            sessions = stripe.checkout.Session.list(
                created={"gte": int(start.timestamp()), "lte": int(end.timestamp())},
                status="complete",
                limit=min(limit, 100),
                api_key=self.api_key,
            )
            charges = []
            for session in sessions.auto_paging_iter():
                charges.append(self._to_charge(session))
                if len(charges) >= limit:
                    break
            return charges
        except stripe.StripeError as e:
            logger.error(f"Stripe session listing failed: {e}")
            raise DependencyUnavailableError(f"Stripe unavailable: {e}", {"provider": "stripe"}) from e

    @staticmethod
    def _to_charge(session) -> ProviderCharge:
        metadata = session.get("metadata") or {}
        credits = metadata.get("credits")
        return ProviderCharge(
            id=session["id"],
            amount_cents=session.get("amount_total") or 0,
            currency=session.get("currency") or "usd",
            status=ChargeStatus.SUCCEEDED if session.get("payment_status") == "paid" else ChargeStatus.PENDING,
            user_id=metadata.get("user_id"),
            credits=int(credits) if credits and str(credits).isdigit() else None,
            created_at=datetime.fromtimestamp(session["created"], tz=timezone.utc),
        )
