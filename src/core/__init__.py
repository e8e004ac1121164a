"""
Core module for the exam preparation engine
"""

from .models import (
    Base,
    User,
    Topic,
    StudyPlan,
    Task,
    TaskStatus,
    TaskType,
    Performance,
    ReadinessScore,
    Alert,
    Adaptation,
    ScheduleEntry,
)
from .services import (
    DatabaseService,
    get_db_service,
    init_db_service,
    LoggingService,
    get_logging_service,
    get_logger,
)

__all__ = [
    # Models
    "Base",
    "User",
    "Topic",
    "StudyPlan",
    "Task",
    "TaskStatus",
    "TaskType",
    "Performance",
    "ReadinessScore",
    "Alert",
    "Adaptation",
    "ScheduleEntry",
    # Services
    "DatabaseService",
    "get_db_service",
    "init_db_service",
    "LoggingService",
    "get_logging_service",
    "get_logger",
]
