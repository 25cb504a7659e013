import logging
import math
import threading
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from uuid import UUID

from core.config import Settings, get_settings
from core.errors import (
    ConflictError,
    DependencyUnavailableError,
    NotFoundError,
    PermissionDeniedError,
    RequestNotFoundError,
    ValidationError,
)
from core.notifications import LoggingNotifier, Notifier, dispatch
from core.validation import parse_id
from ledger.storage import InMemoryStorage

from .filters import (
    Condition,
    ConditionGroup,
    ConditionOperator,
    availability_conditions,
    expertise_conditions,
    matches,
    targeting_conditions,
)
from .models import (
    CATEGORY_INDUSTRIES,
    TIER_QUALITY_FLOOR,
    BatchRoutingFilter,
    BatchRoutingReport,
    BatchRoutingSummary,
    EligiblePool,
    PoolFilters,
    PriorityMode,
    QueueItem,
    RequestStatus,
    RequestTier,
    ReviewerProfile,
    ReviewerSummary,
    ReviewerUpsert,
    RoutingResult,
    RoutingStats,
    RoutingStrategy,
    VerdictRequest,
)

logger = logging.getLogger(__name__)

RESPONSE_TIME_FACTORS = {
    PriorityMode.SPEED: 0.7,
    PriorityMode.DIVERSITY: 1.3,
    PriorityMode.EXPERTISE: 1.1,
    PriorityMode.BALANCED: 1.0,
}

ACTIVE_STATUSES = (RequestStatus.OPEN, RequestStatus.IN_PROGRESS)

Identifier = Union[UUID, str]


def reviewer_rank(reviewer: ReviewerProfile) -> tuple:
    """Higher quality first, then the least loaded, then by id so ties never reorder."""
    return (-reviewer.quality_score, reviewer.current_daily_verdicts, str(reviewer.user_id))


class TieredRequestRouter:
    """
    Assigns open verdict requests to reviewer pools by paid tier.

    Routing happens at most once per request: the ``routed_at IS NULL``
    check and the routing write are a single conditional update in the
    store, so of two concurrent attempts exactly one performs the
    assignment and the other sees a no-op.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self.notifier = notifier or LoggingNotifier()

    def resolve_strategy(self, request: VerdictRequest) -> RoutingStrategy:
        if request.expert_only:
            return RoutingStrategy.EXPERT_ONLY
        if request.routing_strategy is not None:
            return request.routing_strategy
        if request.request_tier == RequestTier.PRO:
            return RoutingStrategy.EXPERT_ONLY
        if request.request_tier == RequestTier.STANDARD:
            return RoutingStrategy.MIXED
        return RoutingStrategy.COMMUNITY

    def route_request(self, request_id: Identifier) -> RoutingResult:
        request_id = parse_id(request_id, "request_id")
        request = self._require_request(request_id)

        if request.routed_at is not None:
            return self._already_routed(request)

        strategy = self.resolve_strategy(request)
        experts, community = self._candidates(request)
        needed = max(request.target_verdict_count - request.received_verdict_count, 0)

        partial = False
        if strategy == RoutingStrategy.COMMUNITY:
            assigned: list[ReviewerProfile] = []
        elif strategy == RoutingStrategy.MIXED:
            expert_slots = min(math.ceil(needed * self.settings.mixed_expert_share), needed)
            assigned = experts[:expert_slots]
            assigned += community[:needed - len(assigned)]
            if not assigned:
                logger.info(f"No eligible reviewers for mixed request {request_id}; left open for pickup")
                return RoutingResult(
                    request_id=request_id,
                    success=True,
                    routing_strategy=strategy,
                    warning="No eligible reviewers available; request stays open for organic pickup",
                )
        else:
            assigned = experts[:needed]
            if not assigned:
                warning = "No experts currently available; request stays open until experts pick it up"
                logger.warning(f"No experts available for expert-only request {request_id}")
                dispatch(self.notifier, "admins", "expert_supply_warning", {
                    "request_id": str(request_id),
                    "tier": request.request_tier.value,
                })
                return RoutingResult(
                    request_id=request_id,
                    success=True,
                    routing_strategy=strategy,
                    warning=warning,
                )
            partial = len(assigned) < needed

        assigned_ids = [r.user_id for r in assigned]
        now = datetime.now(timezone.utc)
        with self.storage.transaction(timeout=self.settings.store_timeout_seconds):
            claimed = self.storage.claim_routing(
                request_id,
                now,
                routing_strategy=strategy,
                assigned_reviewer_ids=assigned_ids,
                expert_pool_size=len(experts),
                status=RequestStatus.IN_PROGRESS if assigned_ids else request.status,
            )
        if not claimed:
            logger.info(f"Request {request_id} was routed concurrently; nothing to do")
            return self._already_routed(self._require_request(request_id))

        for reviewer_id in assigned_ids:
            dispatch(self.notifier, str(reviewer_id), "request_assigned", {
                "request_id": str(request_id),
                "strategy": strategy.value,
            })

        logger.info(
            f"Request {request_id} routed: strategy={strategy.value} assigned={len(assigned_ids)} "
            f"expert_pool={len(experts)} tier={request.request_tier.value}"
        )
        return RoutingResult(
            request_id=request_id,
            success=True,
            routing_strategy=strategy,
            expert_pool=[e.user_id for e in experts],
            assigned_reviewers=assigned_ids,
            partial=partial,
            routed=True,
            warning=(f"Only {len(assigned_ids)} of {needed} experts available; remaining slots fill through pickup"
                     if partial else None),
        )

    def route_batch(
        self,
        batch_filter: Optional[BatchRoutingFilter] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchRoutingReport:
        batch_filter = batch_filter or BatchRoutingFilter()
        limit = min(batch_filter.limit or self.settings.max_batch_size, self.settings.max_batch_size)

        if batch_filter.request_ids:
            request_ids = list(batch_filter.request_ids)[:limit]
        else:
            request_ids = [r.id for r in self._unrouted(batch_filter.tier)][:limit]

        results: list[RoutingResult] = []
        cancelled = False
        for request_id in request_ids:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info(f"Batch routing cancelled after {len(results)} of {len(request_ids)} requests")
                break
            try:
                results.append(self.route_request(request_id))
            except Exception as e:
                logger.error(f"Routing failed for request {request_id}: {e}")
                results.append(RoutingResult(request_id=request_id, success=False, error=str(e)))

        summary = BatchRoutingSummary(
            total_requests=len(results),
            success_count=sum(1 for r in results if r.success),
            failure_count=sum(1 for r in results if not r.success),
            total_reviewers_assigned=sum(len(r.assigned_reviewers) for r in results if r.routed),
            cancelled=cancelled,
        )
        logger.info(f"Batch routing completed: {summary.model_dump()}")
        return BatchRoutingReport(summary=summary, results=results)

    def find_eligible_pool(self, filters: Optional[PoolFilters] = None) -> EligiblePool:
        """Advisory preview of who could review a request; never raises on store trouble."""
        filters = filters or PoolFilters()
        default_minutes = self.settings.default_response_time_minutes
        try:
            with self.storage.transaction(timeout=self.settings.store_timeout_seconds):
                reviewers = self.storage.list_reviewers()
        except DependencyUnavailableError as e:
            logger.warning(f"Eligible pool preview degraded: {e}")
            return EligiblePool(
                reviewers=[],
                total_available=0,
                diversity_score=0.0,
                expertise_match=5.0,
                estimated_response_time_minutes=default_minutes,
                demographics_breakdown={},
                degraded=True,
            )

        available = availability_conditions()
        targeting = targeting_conditions(filters)
        pool = sorted((r for r in reviewers if matches(r, available, targeting)), key=reviewer_rank)
        size = len(pool)

        avg_response = (
            round(sum(r.avg_response_time_minutes or default_minutes for r in pool) / size)
            if size else default_minutes
        )
        estimate = avg_response * RESPONSE_TIME_FACTORS[filters.priority_mode]
        if filters.priority_mode == PriorityMode.SPEED:
            estimate = max(5, estimate)

        breakdown: dict[str, dict[str, int]] = {}
        for key, attribute in (("age", "age_range"), ("gender", "gender"),
                               ("profession", "profession"), ("location", "location")):
            breakdown[key] = dict(Counter(getattr(r, attribute) for r in pool if getattr(r, attribute)))

        return EligiblePool(
            reviewers=[
                ReviewerSummary(
                    user_id=r.user_id,
                    is_expert=r.is_expert,
                    quality_score=r.quality_score,
                    age_range=r.age_range,
                    gender=r.gender,
                    profession=r.profession,
                    location=r.location,
                )
                for r in pool[:self.settings.pool_preview_limit]
            ],
            total_available=size,
            diversity_score=diversity_score(pool),
            expertise_match=round(min(10.0, sum(r.quality_score for r in pool) / size), 1) if size else 5.0,
            estimated_response_time_minutes=round(estimate),
            demographics_breakdown=breakdown,
        )

    def save_reviewer_profile(self, reviewer_id: Identifier, profile: ReviewerUpsert) -> ReviewerProfile:
        """Create or replace a reviewer's profile, keeping their usage counters."""
        reviewer_id = parse_id(reviewer_id, "reviewer_id")
        with self.storage.transaction(timeout=self.settings.store_timeout_seconds):
            existing = self.storage.get_reviewer(reviewer_id)
            reviewer = ReviewerProfile(
                user_id=reviewer_id,
                current_daily_verdicts=existing.current_daily_verdicts if existing else 0,
                created_at=existing.created_at if existing else datetime.now(timezone.utc),
                **profile.model_dump(),
            )
            self.storage.save_reviewer(reviewer)
        logger.info(f"Reviewer {reviewer_id} saved (expert={reviewer.is_expert}, industry={reviewer.industry})")
        return reviewer

    def record_verdict(self, request_id: Identifier, reviewer_id: Identifier) -> VerdictRequest:
        request_id = parse_id(request_id, "request_id")
        reviewer_id = parse_id(reviewer_id, "reviewer_id")

        with self.storage.transaction(timeout=self.settings.store_timeout_seconds):
            request = self._require_request(request_id)
            if request.status == RequestStatus.CLOSED:
                raise ConflictError(f"Request {request_id} is already closed")
            if reviewer_id == request.user_id:
                raise ValidationError("Request owners cannot review their own request")
            if reviewer_id in request.responded_reviewer_ids:
                raise ConflictError(f"Reviewer {reviewer_id} already responded to {request_id}")
            reviewer = self.storage.get_reviewer(reviewer_id)
            if reviewer is None:
                raise NotFoundError(f"Reviewer {reviewer_id} not found")
            if self.resolve_strategy(request) == RoutingStrategy.EXPERT_ONLY and not reviewer.is_expert:
                raise PermissionDeniedError(f"Request {request_id} accepts verdicts from verified experts only")

            received = request.received_verdict_count + 1
            updated = request.model_copy(update={
                "received_verdict_count": received,
                "responded_reviewer_ids": [*request.responded_reviewer_ids, reviewer_id],
                "status": RequestStatus.CLOSED if received >= request.target_verdict_count
                else RequestStatus.IN_PROGRESS,
            })
            self.storage.save_request(updated)
            self.storage.save_reviewer(reviewer.model_copy(update={
                "current_daily_verdicts": reviewer.current_daily_verdicts + 1,
            }))

        if updated.status == RequestStatus.CLOSED:
            logger.info(f"Request {request_id} reached {received} verdicts and closed")
            dispatch(self.notifier, str(updated.user_id), "request_completed", {"request_id": str(request_id)})
        return updated

    def get_pickup_queue(self, reviewer_id: Identifier, limit: int = 10) -> list[QueueItem]:
        """
        Requests a reviewer may pick up, best first.

        This is how partially routed expert-only requests fill their
        remaining slots: any expert who becomes available sees them at the
        top of the queue.
        """
        reviewer_id = parse_id(reviewer_id, "reviewer_id")
        reviewer = self.storage.get_reviewer(reviewer_id)
        if reviewer is None:
            raise NotFoundError(f"Reviewer {reviewer_id} not found")

        now = datetime.now(timezone.utc)
        items = []
        for request in self.storage.list_requests():
            if request.status not in ACTIVE_STATUSES:
                continue
            if request.user_id == reviewer_id or reviewer_id in request.responded_reviewer_ids:
                continue
            expert_work = self.resolve_strategy(request) == RoutingStrategy.EXPERT_ONLY
            if expert_work and not reviewer.is_expert:
                continue

            priority = 0.0
            if expert_work:
                priority += 10
            if request.request_tier == RequestTier.STANDARD:
                priority += 5
            if reviewer_id in request.assigned_reviewer_ids:
                priority += 3
            if reviewer.industry and reviewer.industry in CATEGORY_INDUSTRIES.get(request.category, ()):
                priority += 3
            hours_old = (now - request.created_at).total_seconds() / 3600
            priority += min(hours_old / 24, 2)

            items.append(QueueItem(
                request_id=request.id,
                request_tier=request.request_tier,
                expert_only=expert_work,
                status=request.status,
                priority=round(priority, 3),
                created_at=request.created_at,
            ))

        items.sort(key=lambda i: (-i.priority, i.created_at))
        return items[:limit]

    def get_routing_stats(self, days: int = 7) -> RoutingStats:
        if days <= 0:
            raise ValidationError("days must be positive", {"field": "days"})
        since = datetime.now(timezone.utc) - timedelta(days=days)
        recent = [r for r in self.storage.list_requests() if r.created_at >= since]
        routed = [r for r in recent if r.routed_at is not None]
        return RoutingStats(
            window_days=days,
            total_requests=len(recent),
            routed_requests=len(routed),
            unrouted_requests=len(recent) - len(routed),
            by_tier=dict(Counter(r.request_tier.value for r in recent)),
            by_strategy=dict(Counter(r.routing_strategy.value for r in routed if r.routing_strategy)),
        )

    def _candidates(self, request: VerdictRequest) -> tuple[list[ReviewerProfile], list[ReviewerProfile]]:
        excluded = {request.user_id, *request.responded_reviewer_ids}
        eligible = ConditionGroup(conditions=[
            availability_conditions(),
            targeting_conditions(request.targeting),
        ])
        expert_floor = ConditionGroup(conditions=[
            Condition(
                field="quality_score",
                operator=ConditionOperator.GREATER_THAN_OR_EQUAL,
                value=TIER_QUALITY_FLOOR[request.request_tier],
            ),
            expertise_conditions(request.category),
        ])
        experts, community = [], []
        for reviewer in self.storage.list_reviewers():
            if reviewer.user_id in excluded or not matches(reviewer, eligible):
                continue
            if reviewer.is_expert and matches(reviewer, expert_floor):
                experts.append(reviewer)
            elif not reviewer.is_expert:
                community.append(reviewer)
        experts.sort(key=reviewer_rank)
        community.sort(key=reviewer_rank)
        return experts, community

    def _unrouted(self, tier: Optional[RequestTier]) -> list[VerdictRequest]:
        pending = [r for r in self.storage.list_requests() if r.routed_at is None and r.status in ACTIVE_STATUSES]
        if tier is not None:
            return [r for r in pending if r.request_tier == tier]
        return [r for r in pending if r.request_tier in (RequestTier.PRO, RequestTier.STANDARD) or r.expert_only]

    def _require_request(self, request_id: UUID) -> VerdictRequest:
        request = self.storage.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(f"Request {request_id} not found", {"request_id": str(request_id)})
        return request

    def _already_routed(self, request: VerdictRequest) -> RoutingResult:
        return RoutingResult(
            request_id=request.id,
            success=True,
            routing_strategy=request.routing_strategy,
            assigned_reviewers=list(request.assigned_reviewer_ids),
            already_routed=True,
        )


def diversity_score(pool: list[ReviewerProfile]) -> float:
    """Distinct demographic values, weighting age and gender over profession and location."""
    def distinct(attribute: str) -> int:
        return len({getattr(r, attribute) for r in pool if getattr(r, attribute)})

    score = (distinct("age_range") * 2 + distinct("gender") * 2
             + distinct("profession") * 1.5 + distinct("location") * 1)
    return round(min(10.0, score), 1)
