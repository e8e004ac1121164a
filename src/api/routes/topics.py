from fastapi import APIRouter, Depends, HTTPException
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from src.api.dependencies import get_db_service
from src.core.models import Difficulty, Topic, TopicCategory
from src.core.services.database import DatabaseService

router = APIRouter(prefix="/api/topics", tags=["topics"])


class TopicCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category: TopicCategory
    difficulty: Difficulty = Difficulty.MEDIUM
    importance: int = Field(default=5, ge=1, le=10)
    estimated_duration: int = Field(default=60, gt=0)
    prerequisite_ids: List[int] = []


class TopicResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    category: TopicCategory
    difficulty: Difficulty
    importance: int
    estimated_duration: int
    prerequisite_ids: List[int]

    model_config = ConfigDict(from_attributes=True)


@router.post("/", response_model=TopicResponse, status_code=201)
async def create_topic(
    topic: TopicCreate, db_service: DatabaseService = Depends(get_db_service)
):
    """Create a topic; unknown prerequisites give 404 and cycles give 409"""
    return db_service.create_topic(Topic(**topic.model_dump()))


@router.get("/", response_model=List[TopicResponse])
async def list_topics(db_service: DatabaseService = Depends(get_db_service)):
    return db_service.list_topics()


@router.get("/{topic_id}", response_model=TopicResponse)
async def get_topic(topic_id: int, db_service: DatabaseService = Depends(get_db_service)):
    topic = db_service.get_topic(topic_id)
    if not topic:
        raise HTTPException(status_code=404, detail="Topic not found")
    return topic
