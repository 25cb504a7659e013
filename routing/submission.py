import logging
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID, uuid4
from pydantic import BaseModel

from core.validation import parse_id
from ledger.models import LedgerResult
from ledger.service import CreditLedger

from .models import PoolFilters, RequestTier, RoutingResult, VerdictRequest
from .router import TieredRequestRouter

logger = logging.getLogger(__name__)


class SubmissionResult(BaseModel):
    request: VerdictRequest
    charge: LedgerResult
    routing: RoutingResult


def submit_paid_request(
    ledger: CreditLedger,
    router: TieredRequestRouter,
    user_id: Union[UUID, str],
    request_tier: RequestTier = RequestTier.COMMUNITY,
    category: str = "general",
    target_verdict_count: int = 3,
    credits_cost: int = 1,
    expert_only: bool = False,
    targeting: Optional[PoolFilters] = None,
    request_id: Optional[Union[UUID, str]] = None,
) -> SubmissionResult:
    """
    Paid submission: charge credits keyed on the request id, store the
    request, then route it. Retrying with the same ``request_id`` charges
    once and routes once.
    """
    user_id = parse_id(user_id, "user_id")
    request_id = parse_id(request_id, "request_id") if request_id else uuid4()

    charge = ledger.deduct(user_id, credits_cost, f"submission:{request_id}",
                           metadata={"request_id": str(request_id), "tier": request_tier.value})

    with ledger.storage.transaction(timeout=ledger.settings.store_timeout_seconds):
        request = ledger.storage.get_request(request_id)
        if request is None:
            request = VerdictRequest(
                id=request_id,
                user_id=user_id,
                request_tier=request_tier,
                category=category,
                expert_only=expert_only,
                target_verdict_count=target_verdict_count,
                targeting=targeting or PoolFilters(),
                created_at=datetime.now(timezone.utc),
            )
            ledger.storage.save_request(request)
            logger.info(f"Request {request_id} submitted by {user_id} ({request_tier.value}, {credits_cost} credits)")

    routing = router.route_request(request_id)
    return SubmissionResult(request=ledger.storage.get_request(request_id), charge=charge, routing=routing)
