from fastapi import APIRouter, Depends
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

from src.core.models import AgentType, ScheduleType, SequenceType
from src.core.services.agent_scheduler import AgentScheduler, get_agent_scheduler

router = APIRouter(prefix="/api/schedules", tags=["schedules"])


class ScheduleCreate(BaseModel):
    agent_type: Optional[AgentType] = None
    sequence_type: Optional[SequenceType] = None
    schedule_type: ScheduleType = ScheduleType.RECURRING
    user_id: Optional[int] = None  # none = every user with a plan
    interval_minutes: Optional[int] = Field(default=None, gt=0)
    priority: int = Field(default=5, ge=1, le=10)
    enabled: bool = True
    params: Dict[str, Any] = {}
    options: Dict[str, Any] = {}
    next_run: Optional[datetime] = None


class ScheduleUpdate(BaseModel):
    interval_minutes: Optional[int] = Field(default=None, gt=0)
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    enabled: Optional[bool] = None
    params: Optional[Dict[str, Any]] = None
    options: Optional[Dict[str, Any]] = None
    next_run: Optional[datetime] = None


class ScheduleResponse(BaseModel):
    id: int
    agent_type: Optional[AgentType]
    sequence_type: Optional[SequenceType]
    schedule_type: ScheduleType
    user_id: Optional[int]
    interval_minutes: Optional[int]
    priority: int
    enabled: bool
    params: Dict[str, Any]
    options: Dict[str, Any]
    next_run: Optional[datetime]
    last_run: Optional[datetime]
    last_result: Optional[Dict[str, Any]]
    in_progress: bool

    model_config = ConfigDict(from_attributes=True)


class EventRunRequest(BaseModel):
    user_id: int
    agent_type: Optional[AgentType] = None
    sequence_type: Optional[SequenceType] = None
    params: Dict[str, Any] = {}


@router.post("/", response_model=ScheduleResponse, status_code=201)
async def create_schedule(
    entry: ScheduleCreate, scheduler: AgentScheduler = Depends(get_agent_scheduler)
):
    return scheduler.create_entry(**entry.model_dump())


@router.get("/", response_model=List[ScheduleResponse])
async def list_schedules(
    user_id: Optional[int] = None,
    scheduler: AgentScheduler = Depends(get_agent_scheduler),
):
    return scheduler.list_entries(user_id)


@router.get("/due", response_model=List[ScheduleResponse])
async def list_due_schedules(scheduler: AgentScheduler = Depends(get_agent_scheduler)):
    return scheduler.get_due_entries()


@router.get("/{entry_id}", response_model=ScheduleResponse)
async def get_schedule(entry_id: int, scheduler: AgentScheduler = Depends(get_agent_scheduler)):
    return scheduler.get_entry(entry_id)


@router.patch("/{entry_id}", response_model=ScheduleResponse)
async def update_schedule(
    entry_id: int,
    changes: ScheduleUpdate,
    scheduler: AgentScheduler = Depends(get_agent_scheduler),
):
    return scheduler.update_entry(entry_id, **changes.model_dump(exclude_none=True))


@router.delete("/{entry_id}")
async def delete_schedule(entry_id: int, scheduler: AgentScheduler = Depends(get_agent_scheduler)):
    scheduler.delete_entry(entry_id)
    return {"deleted": True}


@router.post("/process-due")
async def process_due(scheduler: AgentScheduler = Depends(get_agent_scheduler)):
    """Run every due entry once"""
    results = scheduler.process_due()
    return {"processed": len(results), "results": results}


@router.post("/standard-monitoring", response_model=List[ScheduleResponse])
async def schedule_standard_monitoring(
    scheduler: AgentScheduler = Depends(get_agent_scheduler),
):
    """Fan out standard monitoring to every user with a plan and no active entry"""
    return scheduler.schedule_standard_monitoring_for_all_users()


@router.post("/trigger")
async def trigger_event_run(
    request: EventRunRequest, scheduler: AgentScheduler = Depends(get_agent_scheduler)
):
    return scheduler.trigger_event_run(
        request.user_id,
        agent_type=request.agent_type,
        sequence_type=request.sequence_type,
        params=request.params,
    )
