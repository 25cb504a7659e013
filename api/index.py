from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum
import sys
import os
from uuid import UUID

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import get_settings
from core.logging_config import configure_logging
from ledger.api import ledger_service, router as ledger_router
from routing.api import router as routing_router, router_service
from routing.models import ReviewerUpsert
from reconciliation.api import router as reconciliation_router

settings = get_settings()
configure_logging(settings.log_level)


def _seed_data():
    submitter_id = UUID("550e8400-e29b-41d4-a716-446655440000")
    expert_id = UUID("660e8400-e29b-41d4-a716-446655440001")

    ledger_service.open_account(submitter_id, 25)
    ledger_service.open_account(expert_id)
    router_service.save_reviewer_profile(expert_id, ReviewerUpsert(
        is_expert=True, quality_score=8.7, profession="Recruiter",
        industry="HR/Recruiting", avg_response_time_minutes=20,
    ))
    router_service.save_reviewer_profile(UUID("770e8400-e29b-41d4-a716-446655440002"), ReviewerUpsert(
        quality_score=6.2, profession="Designer", industry="Design", location="Berlin",
    ))


if settings.seed_demo_data:
    _seed_data()

app = FastAPI(
    title="Verdict Marketplace API",
    description="Credit ledger, tiered request routing and payment reconciliation",
    version="1.0.0",
    root_path="/api"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ledger_router)
app.include_router(routing_router)
app.include_router(reconciliation_router)


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "verdict-marketplace", "environment": settings.environment}


handler = Mangum(app)
