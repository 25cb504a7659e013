from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class RequestTier(str, Enum):
    COMMUNITY = "community"
    STANDARD = "standard"
    PRO = "pro"


class RoutingStrategy(str, Enum):
    COMMUNITY = "community"
    MIXED = "mixed"
    EXPERT_ONLY = "expert_only"


class RequestStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class PriorityMode(str, Enum):
    BALANCED = "balanced"
    SPEED = "speed"
    DIVERSITY = "diversity"
    EXPERTISE = "expertise"


# Minimum quality score an expert needs to be routed work of a given tier
TIER_QUALITY_FLOOR = {
    RequestTier.PRO: 8.0,
    RequestTier.STANDARD: 6.5,
    RequestTier.COMMUNITY: 5.0,
}


# Industries whose experts can judge a request category. Categories not
# listed here, "general" included, accept experts from any industry.
CATEGORY_INDUSTRIES = {
    "career": ("Technology", "Finance", "HR/Recruiting", "Marketing", "Sales"),
    "business": ("Finance", "Technology", "Marketing", "Sales"),
    "appearance": ("Design", "Marketing", "HR/Recruiting"),
    "lifestyle": ("HR/Recruiting", "Healthcare", "Real Estate"),
}


class PoolFilters(BaseModel):
    """Demographic targeting chosen by the submitter. Empty lists match everyone."""
    age_ranges: list[str] = Field(default_factory=list)
    genders: list[str] = Field(default_factory=list)
    professions: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    education_levels: list[str] = Field(default_factory=list)
    experts_only: bool = False
    priority_mode: PriorityMode = PriorityMode.BALANCED

    model_config = ConfigDict(json_schema_extra={
        "example": {"age_ranges": ["25-34"], "professions": ["Designer"], "priority_mode": "speed"}
    })


class VerdictRequest(BaseModel):
    id: UUID
    user_id: UUID
    request_tier: RequestTier = RequestTier.COMMUNITY
    routing_strategy: Optional[RoutingStrategy] = None
    category: str = "general"
    expert_only: bool = False
    status: RequestStatus = RequestStatus.OPEN
    routed_at: Optional[datetime] = None
    target_verdict_count: int = Field(default=3, gt=0)
    received_verdict_count: int = Field(default=0, ge=0)
    targeting: PoolFilters = Field(default_factory=PoolFilters)
    assigned_reviewer_ids: list[UUID] = Field(default_factory=list)
    responded_reviewer_ids: list[UUID] = Field(default_factory=list)
    expert_pool_size: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ReviewerProfile(BaseModel):
    user_id: UUID
    is_expert: bool = False
    is_available: bool = True
    max_daily_verdicts: int = Field(default=10, ge=0)
    current_daily_verdicts: int = Field(default=0, ge=0)
    age_range: Optional[str] = None
    gender: Optional[str] = None
    profession: Optional[str] = None
    location: Optional[str] = None
    education_level: Optional[str] = None
    industry: Optional[str] = None
    quality_score: float = 5.0
    avg_response_time_minutes: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def has_capacity(self) -> bool:
        return self.is_available and self.current_daily_verdicts < self.max_daily_verdicts


class ReviewerUpsert(BaseModel):
    """Reviewer attributes an admin may set. Daily usage is tracked by the router."""
    is_expert: bool = False
    is_available: bool = True
    max_daily_verdicts: int = Field(default=10, ge=0)
    age_range: Optional[str] = None
    gender: Optional[str] = None
    profession: Optional[str] = None
    location: Optional[str] = None
    education_level: Optional[str] = None
    industry: Optional[str] = None
    quality_score: float = Field(default=5.0, ge=0, le=10)
    avg_response_time_minutes: Optional[int] = Field(default=None, ge=0)


class ReviewerSummary(BaseModel):
    user_id: UUID
    is_expert: bool
    quality_score: float
    age_range: Optional[str] = None
    gender: Optional[str] = None
    profession: Optional[str] = None
    location: Optional[str] = None


class EligiblePool(BaseModel):
    reviewers: list[ReviewerSummary]
    total_available: int
    diversity_score: float
    expertise_match: float
    estimated_response_time_minutes: int
    demographics_breakdown: dict[str, dict[str, int]]
    degraded: bool = False


class RoutingResult(BaseModel):
    request_id: UUID
    success: bool
    routing_strategy: Optional[RoutingStrategy] = None
    expert_pool: list[UUID] = Field(default_factory=list)
    assigned_reviewers: list[UUID] = Field(default_factory=list)
    already_routed: bool = False
    partial: bool = False
    routed: bool = False
    warning: Optional[str] = None
    error: Optional[str] = None


class BatchRoutingFilter(BaseModel):
    request_ids: Optional[list[UUID]] = None
    tier: Optional[RequestTier] = None
    limit: Optional[int] = Field(default=None, gt=0)


class BatchRoutingSummary(BaseModel):
    total_requests: int
    success_count: int
    failure_count: int
    total_reviewers_assigned: int
    cancelled: bool = False


class BatchRoutingReport(BaseModel):
    summary: BatchRoutingSummary
    results: list[RoutingResult]


class QueueItem(BaseModel):
    request_id: UUID
    request_tier: RequestTier
    expert_only: bool
    status: RequestStatus
    priority: float
    created_at: datetime


class RoutingStats(BaseModel):
    window_days: int
    total_requests: int
    routed_requests: int
    unrouted_requests: int
    by_tier: dict[str, int]
    by_strategy: dict[str, int]


class SubmitRequest(BaseModel):
    request_tier: RequestTier = RequestTier.COMMUNITY
    category: str = Field(default="general", min_length=1)
    target_verdict_count: int = Field(default=3, gt=0)
    credits_cost: int = Field(default=1, gt=0)
    expert_only: bool = False
    targeting: Optional[PoolFilters] = None
    request_id: Optional[UUID] = None
