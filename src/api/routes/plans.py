from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

from src.api.dependencies import get_db, get_db_service
from src.core.models import (
    AdaptationType,
    Difficulty,
    PreferredStudyTime,
    TaskStatus,
    TaskType,
)
from src.core.services.database import DatabaseService
from src.core.services.plan_builder import (
    Availability,
    PlanBuilderService,
    get_plan_builder_service,
)
from src.core.services.task_store import TaskStore

router = APIRouter(prefix="/api/plans", tags=["plans"])


# --- Pydantic Models ---


class AvailabilityModel(BaseModel):
    available_days: List[str]
    hours_per_day: float = Field(gt=0, le=24)
    preferred_study_time: PreferredStudyTime = PreferredStudyTime.MORNING


class PlanCreate(BaseModel):
    user_id: int
    exam_date: datetime
    availability: Optional[AvailabilityModel] = None  # defaults to the user's preferences
    weak_areas: List[int] = []
    recommended_focus: List[int] = []
    topic_ids: Optional[List[int]] = None


class PlanResponse(BaseModel):
    id: int
    user_id: int
    exam_date: datetime
    start_date: datetime
    end_date: datetime
    is_personalized: bool
    weak_areas: List[int]
    validation_report: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TaskResponse(BaseModel):
    id: int
    plan_id: int
    title: str
    description: Optional[str]
    type: TaskType
    status: TaskStatus
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    duration: int
    topic_id: int
    difficulty: Difficulty
    content_ref: Optional[str]
    task_metadata: Dict[str, Any]
    original_start_time: Optional[datetime]
    original_end_time: Optional[datetime]
    completed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class PlanBuildResponse(BaseModel):
    plan: PlanResponse
    tasks: List[TaskResponse]
    total_available_minutes: int
    allocated_minutes: Dict[int, int]
    unplaced_minutes: Dict[int, int]
    validation: Dict[str, Any]


class AdaptationResponse(BaseModel):
    id: int
    type: AdaptationType
    description: str
    reason: str
    task_id: Optional[int]
    topic_id: Optional[int]
    adaptation_metadata: Dict[str, Any]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# --- Routes ---


@router.post("/", response_model=PlanBuildResponse, status_code=201)
async def build_plan(
    request: PlanCreate,
    builder: PlanBuilderService = Depends(get_plan_builder_service),
):
    """Build a learner's plan and its task calendar"""
    availability = None
    if request.availability is not None:
        availability = Availability.from_days(
            request.availability.available_days,
            request.availability.hours_per_day,
            request.availability.preferred_study_time,
        )
    result = builder.build_plan(
        request.user_id,
        request.exam_date,
        availability=availability,
        weak_areas=request.weak_areas,
        recommended_focus=request.recommended_focus,
        topic_ids=request.topic_ids,
    )
    return PlanBuildResponse(
        plan=PlanResponse.model_validate(result.plan),
        tasks=[TaskResponse.model_validate(t) for t in result.tasks],
        total_available_minutes=result.total_available_minutes,
        allocated_minutes=result.allocated_minutes,
        unplaced_minutes=result.unplaced_minutes,
        validation=result.validation.to_dict(),
    )


@router.get("/user/{user_id}", response_model=PlanResponse)
async def get_user_plan(user_id: int, db_service: DatabaseService = Depends(get_db_service)):
    plan = db_service.get_plan_for_user(user_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Study plan not found")
    return plan


@router.get("/{plan_id}/tasks", response_model=List[TaskResponse])
async def list_plan_tasks(
    plan_id: int,
    status: Optional[List[TaskStatus]] = Query(default=None),
    start_from: Optional[datetime] = None,
    start_before: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """List a plan's tasks ordered by start time"""
    return TaskStore(db).find_tasks(
        plan_id, statuses=status, start_from=start_from, start_before=start_before
    )


@router.get("/user/{user_id}/adaptations", response_model=List[AdaptationResponse])
async def list_adaptations(user_id: int, db: Session = Depends(get_db)):
    return TaskStore(db).find_adaptations(user_id)


@router.post("/user/{user_id}/validate")
async def revalidate_plan(
    user_id: int, builder: PlanBuilderService = Depends(get_plan_builder_service)
):
    """Re-run the advisory plan checks against the current calendar"""
    return builder.revalidate_plan(user_id).to_dict()
