"""
Core services for the exam preparation engine
"""

from .database import DatabaseService, get_db_service, init_db_service
from .logging import LoggingService, get_logging_service, get_logger
from .settings_config_service import (
    SettingsConfigService,
    get_settings_service,
    reset_settings_service,
)

# Engines
from .task_store import TaskStore
from .topic_graph import TopicGraph
from .plan_builder import Availability, PlanBuilderService, get_plan_builder_service
from .readiness_service import ReadinessService, get_readiness_service
from .task_status_service import TaskStatusService, get_task_status_service
from .monitor_service import MonitorService, get_monitor_service
from .adaptation_service import AdaptationService, get_adaptation_service
from .remediation_service import RemediationService, get_remediation_service
from .cleanup_service import CleanupService, get_cleanup_service
from .orchestrator import AgentOrchestrator, get_orchestrator
from .agent_scheduler import AgentScheduler, SqlScheduleStore, get_agent_scheduler
from .rate_limiter import RateLimiter, get_rate_limiter
from .summarizer import HttpSummarizer, Summarizer, get_summarizer

__all__ = [
    "DatabaseService",
    "get_db_service",
    "init_db_service",
    "LoggingService",
    "get_logging_service",
    "get_logger",
    "SettingsConfigService",
    "get_settings_service",
    "reset_settings_service",
    # Engines
    "TaskStore",
    "TopicGraph",
    "Availability",
    "PlanBuilderService",
    "get_plan_builder_service",
    "ReadinessService",
    "get_readiness_service",
    "TaskStatusService",
    "get_task_status_service",
    "MonitorService",
    "get_monitor_service",
    "AdaptationService",
    "get_adaptation_service",
    "RemediationService",
    "get_remediation_service",
    "CleanupService",
    "get_cleanup_service",
    "AgentOrchestrator",
    "get_orchestrator",
    "AgentScheduler",
    "SqlScheduleStore",
    "get_agent_scheduler",
    "RateLimiter",
    "get_rate_limiter",
    "HttpSummarizer",
    "Summarizer",
    "get_summarizer",
]
