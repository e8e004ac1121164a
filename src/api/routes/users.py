from fastapi import APIRouter, Depends, HTTPException
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

from src.api.dependencies import get_db_service
from src.core.models import PreferredStudyTime
from src.core.services.database import DatabaseService

router = APIRouter(prefix="/api/users", tags=["users"])


class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    email: Optional[str] = None
    name: Optional[str] = None
    available_days: Optional[List[str]] = None
    study_hours_per_day: float = Field(default=2, gt=0, le=24)
    preferred_study_time: PreferredStudyTime = PreferredStudyTime.MORNING
    study_start_hour: int = Field(default=9, ge=0, le=23)
    study_end_hour: int = Field(default=17, ge=1, le=24)


class PreferencesUpdate(BaseModel):
    """Availability fields to change; omitted fields are left as they are."""

    name: Optional[str] = None
    email: Optional[str] = None
    available_days: Optional[List[str]] = None
    study_hours_per_day: Optional[float] = Field(default=None, gt=0, le=24)
    preferred_study_time: Optional[PreferredStudyTime] = None
    study_start_hour: Optional[int] = Field(default=None, ge=0, le=23)
    study_end_hour: Optional[int] = Field(default=None, ge=1, le=24)


class UserResponse(BaseModel):
    id: int
    username: str
    email: Optional[str]
    name: Optional[str]
    available_days: List[str]
    study_hours_per_day: float
    preferred_study_time: PreferredStudyTime
    study_start_hour: int
    study_end_hour: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


@router.post("/", response_model=UserResponse, status_code=201)
async def create_user(
    user: UserCreate, db_service: DatabaseService = Depends(get_db_service)
):
    if user.study_end_hour <= user.study_start_hour:
        raise HTTPException(
            status_code=422, detail="study_end_hour must be after study_start_hour"
        )
    return db_service.create_user(**user.model_dump())


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, db_service: DatabaseService = Depends(get_db_service)):
    user = db_service.get_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.patch("/{user_id}/preferences", response_model=UserResponse)
async def update_preferences(
    user_id: int,
    updates: PreferencesUpdate,
    db_service: DatabaseService = Depends(get_db_service),
):
    """Update a learner's availability used by the planner and slot search"""
    return db_service.update_user_preferences(
        user_id, updates.model_dump(exclude_none=True)
    )
