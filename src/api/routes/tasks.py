from fastapi import APIRouter, Depends
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

from src.api.routes.plans import TaskResponse
from src.core.models import TaskStatus
from src.core.services.task_status_service import (
    TaskStatusService,
    get_task_status_service,
)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


class StatusChange(BaseModel):
    status: TaskStatus
    score: Optional[float] = Field(default=None, ge=0, le=100)
    confidence: Optional[int] = Field(default=None, ge=1, le=5)
    time_spent: Optional[int] = Field(default=None, ge=0)


class StatusChangeResponse(BaseModel):
    task: TaskResponse
    previous_status: TaskStatus
    new_status: TaskStatus
    changed: bool
    created_performance_id: Optional[int]
    deleted_performances: int
    readiness_score: Optional[float]


class AnswerModel(BaseModel):
    selected: Any = None
    correct: Any = None


class PerformanceCreate(BaseModel):
    score: Optional[float] = Field(default=None, ge=0, le=100)
    confidence: int = Field(default=3, ge=1, le=5)
    time_spent: Optional[int] = Field(default=None, ge=0)
    answers: List[AnswerModel] = []


class PerformanceResponse(BaseModel):
    id: int
    task_id: Optional[int]
    topic_id: int
    score: Optional[float]
    time_spent: int
    completed: bool
    confidence: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RescheduleRequest(BaseModel):
    start_time: datetime
    end_time: datetime


@router.post("/{task_id}/status", response_model=StatusChangeResponse)
async def change_status(
    task_id: int,
    change: StatusChange,
    service: TaskStatusService = Depends(get_task_status_service),
):
    """Apply a status transition and report its side effects"""
    result = service.apply_status_transition(
        task_id,
        change.status,
        score=change.score,
        confidence=change.confidence,
        time_spent=change.time_spent,
    )
    return StatusChangeResponse(
        task=TaskResponse.model_validate(result.task),
        previous_status=result.previous_status,
        new_status=result.new_status,
        changed=result.changed,
        created_performance_id=(
            result.created_performance.id if result.created_performance else None
        ),
        deleted_performances=result.deleted_performances,
        readiness_score=result.readiness.overall_score if result.readiness else None,
    )


@router.post("/{task_id}/performance", response_model=PerformanceResponse, status_code=201)
async def record_performance(
    task_id: int,
    performance: PerformanceCreate,
    service: TaskStatusService = Depends(get_task_status_service),
):
    return service.record_performance(
        task_id,
        score=performance.score,
        confidence=performance.confidence,
        time_spent=performance.time_spent,
        answers=[a.model_dump() for a in performance.answers],
    )


@router.put("/{task_id}/schedule", response_model=TaskResponse)
async def reschedule_task(
    task_id: int,
    request: RescheduleRequest,
    service: TaskStatusService = Depends(get_task_status_service),
):
    return service.reschedule_task(task_id, request.start_time, request.end_time)


@router.delete("/{task_id}")
async def delete_task(
    task_id: int, service: TaskStatusService = Depends(get_task_status_service)
) -> Dict[str, Any]:
    resolved = service.delete_task(task_id)
    return {"deleted": True, "resolved_alerts": resolved}
