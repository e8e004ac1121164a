from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime

from src.api.dependencies import get_db
from src.core.models import AlertSeverity, AlertType
from src.core.services.task_store import TaskStore

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


class AlertResponse(BaseModel):
    id: int
    user_id: int
    plan_id: Optional[int]
    type: AlertType
    severity: AlertSeverity
    message: str
    related_task_id: Optional[int]
    related_topic_id: Optional[int]
    alert_metadata: Dict[str, Any]
    is_resolved: bool
    resolved_at: Optional[datetime]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ResolveRequest(BaseModel):
    resolution: Optional[str] = None


@router.get("/user/{user_id}", response_model=List[AlertResponse])
async def list_alerts(
    user_id: int,
    type: Optional[List[AlertType]] = Query(default=None),
    is_resolved: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    """List a user's alerts, newest first"""
    return TaskStore(db).find_alerts(user_id, types=type, is_resolved=is_resolved)


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: int,
    request: Optional[ResolveRequest] = None,
    db: Session = Depends(get_db),
):
    store = TaskStore(db)
    alert = store.get_alert(alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    if not alert.is_resolved:
        resolution = (request.resolution if request else None) or "MANUAL"
        store.resolve_alert(alert, resolution=resolution)
        db.commit()
    return alert
