from fastapi import APIRouter, Depends
from typing import Optional

from src.core.services.cleanup_service import CleanupService, get_cleanup_service

router = APIRouter(prefix="/api/cleanup", tags=["cleanup"])


@router.post("/remediation-duplicates")
async def collapse_remediation_duplicates(
    user_id: Optional[int] = None, service: CleanupService = Depends(get_cleanup_service)
):
    return service.collapse_remediation_duplicates(user_id)


@router.post("/time-duplicates")
async def collapse_time_duplicates(
    user_id: Optional[int] = None, service: CleanupService = Depends(get_cleanup_service)
):
    return service.collapse_time_duplicates(user_id)


@router.post("/orphaned-alerts")
async def resolve_orphaned_alerts(
    user_id: Optional[int] = None, service: CleanupService = Depends(get_cleanup_service)
):
    return service.resolve_orphaned_alerts(user_id)


@router.post("/general-alerts")
async def cap_general_alerts(
    user_id: Optional[int] = None,
    max_alerts: Optional[int] = None,
    service: CleanupService = Depends(get_cleanup_service),
):
    return service.cap_general_alerts(user_id, max_alerts=max_alerts)


@router.post("/remediation-alerts")
async def trim_excessive_remediation_alerts(
    user_id: Optional[int] = None, service: CleanupService = Depends(get_cleanup_service)
):
    return service.trim_excessive_remediation_alerts(user_id)


@router.post("/all")
async def run_all(
    user_id: Optional[int] = None, service: CleanupService = Depends(get_cleanup_service)
):
    """Run every cleanup in a fixed order"""
    return service.run_all(user_id)
