"""
Tiered request routing

Decides which reviewers may see a verdict request based on its tier,
assigns expert reviewers where the tier calls for them and builds the
reviewer-facing pickup queue.
"""

from .models import (
    EligiblePool,
    PoolFilters,
    RequestTier,
    ReviewerProfile,
    RoutingResult,
    RoutingStrategy,
    VerdictRequest,
)
from .router import TieredRequestRouter
from .submission import SubmissionResult, submit_paid_request

__all__ = [
    "EligiblePool",
    "PoolFilters",
    "RequestTier",
    "ReviewerProfile",
    "RoutingResult",
    "RoutingStrategy",
    "VerdictRequest",
    "TieredRequestRouter",
    "SubmissionResult",
    "submit_paid_request",
]
