from fastapi import APIRouter, Depends, HTTPException
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime

from src.core.services.readiness_service import ReadinessService, get_readiness_service

router = APIRouter(prefix="/api/readiness", tags=["readiness"])


class ReadinessResponse(BaseModel):
    id: int
    user_id: int
    plan_id: Optional[int]
    overall_score: float
    category_scores: Dict[str, float]
    weak_areas: List[int]
    strong_areas: List[int]
    weak_categories: List[str]
    projected_score: Optional[float]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


@router.post("/{user_id}", response_model=Optional[ReadinessResponse])
async def recalculate_readiness(
    user_id: int, service: ReadinessService = Depends(get_readiness_service)
):
    """Recompute readiness; null when the user has no plan or no performance data"""
    return service.calculate_readiness(user_id)


@router.get("/{user_id}/latest", response_model=ReadinessResponse)
async def get_latest_readiness(
    user_id: int, service: ReadinessService = Depends(get_readiness_service)
):
    score = service.get_latest(user_id)
    if not score:
        raise HTTPException(status_code=404, detail="No readiness score recorded")
    return score


@router.get("/{user_id}/history", response_model=List[ReadinessResponse])
async def get_readiness_history(
    user_id: int,
    limit: int = 20,
    service: ReadinessService = Depends(get_readiness_service),
):
    return service.get_history(user_id, limit=limit)
