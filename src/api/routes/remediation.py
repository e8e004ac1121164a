from fastapi import APIRouter, Depends
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime

from src.core.models import RemediationActionType
from src.core.services.rate_limiter import RateLimiter, get_rate_limiter
from src.core.services.remediation_service import (
    RemediationService,
    get_remediation_service,
)

router = APIRouter(prefix="/api/remediation", tags=["remediation"])


class ReviewRequest(BaseModel):
    user_id: int
    topic_id: int
    alert_id: Optional[int] = None
    source: Optional[str] = None


class EffectivenessCreate(BaseModel):
    user_id: int
    topic_id: int
    action_type: RemediationActionType
    details: Dict[str, Any] = {}
    task_id: Optional[int] = None
    alert_id: Optional[int] = None


class OutcomeResponse(BaseModel):
    id: int
    user_id: int
    topic_id: int
    action_type: RemediationActionType
    task_id: Optional[int]
    alert_id: Optional[int]
    baseline_score: Optional[float]
    details: Dict[str, Any]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


@router.post("/schedule-review")
async def schedule_review(
    request: ReviewRequest,
    service: RemediationService = Depends(get_remediation_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Schedule a remediation review; returns the pending one if it already exists"""
    limiter.check(request.user_id, "remediation")
    result = service.schedule_review(
        request.user_id, request.topic_id, alert_id=request.alert_id, source=request.source
    )
    limiter.record(request.user_id, "remediation")
    return result.to_dict()


@router.post("/process-alerts/{user_id}")
async def process_alerts(
    user_id: int,
    service: RemediationService = Depends(get_remediation_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    limiter.check(user_id, "remediation")
    result = service.process_alerts(user_id)
    limiter.record(user_id, "remediation")
    return result.to_dict()


@router.post("/effectiveness", response_model=OutcomeResponse, status_code=201)
async def track_effectiveness(
    request: EffectivenessCreate,
    service: RemediationService = Depends(get_remediation_service),
):
    return service.track_effectiveness(
        request.user_id,
        request.topic_id,
        request.action_type,
        details=request.details,
        task_id=request.task_id,
        alert_id=request.alert_id,
    )


@router.get("/effectiveness/{user_id}")
async def evaluate_effectiveness(
    user_id: int,
    topic_id: Optional[int] = None,
    service: RemediationService = Depends(get_remediation_service),
):
    return service.evaluate_effectiveness(user_id, topic_id)
