from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, status

from core.auth import AuthContext, get_auth_context, require_admin
from core.errors import ServiceError
from core.http import to_http_exception
from ledger.api import ledger_service

from .models import (
    BatchRoutingFilter, BatchRoutingReport, EligiblePool, PoolFilters,
    QueueItem, ReviewerProfile, ReviewerUpsert, RoutingResult, RoutingStats, SubmitRequest,
)
from .router import TieredRequestRouter
from .submission import SubmissionResult, submit_paid_request

router_service = TieredRequestRouter(storage=ledger_service.storage, notifier=ledger_service.notifier)

router = APIRouter(tags=["Routing"])


@router.post("/judge/available-pool", response_model=EligiblePool)
def available_pool(filters: PoolFilters, actor: AuthContext = Depends(get_auth_context)) -> EligiblePool:
    return router_service.find_eligible_pool(filters)


@router.get("/judge/queue", response_model=list[QueueItem])
def pickup_queue(limit: int = 10, actor: AuthContext = Depends(get_auth_context)) -> list[QueueItem]:
    try:
        return router_service.get_pickup_queue(actor.actor_id, limit)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/requests/{request_id}/route", response_model=RoutingResult)
def route_request(request_id: UUID, admin: AuthContext = Depends(require_admin)) -> RoutingResult:
    try:
        return router_service.route_request(request_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/admin/route-experts", response_model=BatchRoutingReport)
def route_experts(batch_filter: Optional[BatchRoutingFilter] = None,
                  admin: AuthContext = Depends(require_admin)) -> BatchRoutingReport:
    return router_service.route_batch(batch_filter)


@router.get("/admin/route-experts", response_model=RoutingStats)
def routing_stats(days: int = 7, admin: AuthContext = Depends(require_admin)) -> RoutingStats:
    try:
        return router_service.get_routing_stats(days)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/requests", response_model=SubmissionResult, status_code=status.HTTP_201_CREATED)
def submit_request(request: SubmitRequest, actor: AuthContext = Depends(get_auth_context)) -> SubmissionResult:
    try:
        return submit_paid_request(
            ledger_service,
            router_service,
            actor.actor_id,
            request_tier=request.request_tier,
            category=request.category,
            target_verdict_count=request.target_verdict_count,
            credits_cost=request.credits_cost,
            expert_only=request.expert_only,
            targeting=request.targeting,
            request_id=request.request_id,
        )
    except ServiceError as e:
        raise to_http_exception(e)


@router.put("/admin/reviewers/{user_id}", response_model=ReviewerProfile)
def save_reviewer(user_id: UUID, profile: ReviewerUpsert,
                  admin: AuthContext = Depends(require_admin)) -> ReviewerProfile:
    try:
        return router_service.save_reviewer_profile(user_id, profile)
    except ServiceError as e:
        raise to_http_exception(e)
