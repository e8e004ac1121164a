"""
Models package for the exam preparation engine

This package contains all database models and enums for the application.
"""

from .models import (
    Base,
    User,
    Topic,
    StudyPlan,
    Task,
    Performance,
    ReadinessScore,
    Alert,
    Adaptation,
    RemediationOutcome,
    ScheduleEntry,
    TopicCategory,
    CATEGORY_WEIGHTS,
    Difficulty,
    DIFFICULTY_ORDER,
    PreferredStudyTime,
    TaskType,
    TaskStatus,
    AlertType,
    AlertSeverity,
    AdaptationType,
    RemediationActionType,
    AgentType,
    SequenceType,
    ScheduleType,
    DEFAULT_AVAILABLE_DAYS,
)

__all__ = [
    "Base",
    "User",
    "Topic",
    "StudyPlan",
    "Task",
    "Performance",
    "ReadinessScore",
    "Alert",
    "Adaptation",
    "RemediationOutcome",
    "ScheduleEntry",
    "TopicCategory",
    "CATEGORY_WEIGHTS",
    "Difficulty",
    "DIFFICULTY_ORDER",
    "PreferredStudyTime",
    "TaskType",
    "TaskStatus",
    "AlertType",
    "AlertSeverity",
    "AdaptationType",
    "RemediationActionType",
    "AgentType",
    "SequenceType",
    "ScheduleType",
    "DEFAULT_AVAILABLE_DAYS",
]
