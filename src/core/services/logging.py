"""
Logging service for the exam preparation engine
"""

import os
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import structlog

from .settings_config_service import get_settings_service


class LoggingService:
    """Structured logging service"""

    def __init__(self):
        self.log_dir = Path(os.getenv("EXAMPREP_LOG_DIR", "logs"))
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer(),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        self._setup_handlers()

    def _setup_handlers(self):
        """Set up logging handlers"""
        main_handler = logging.FileHandler(self.log_dir / "exam_prep.log")
        main_handler.setLevel(logging.DEBUG)
        main_handler.setFormatter(logging.Formatter("%(message)s"))

        error_handler = logging.FileHandler(self.log_dir / "errors.log")
        error_handler.setLevel(logging.WARNING)
        error_handler.setFormatter(logging.Formatter("%(message)s"))

        console_handler = logging.StreamHandler()
        level_name = get_settings_service().get("logging", "default_level", "INFO")
        if os.getenv("EXAMPREP_DEV_MODE"):
            level_name = "DEBUG"
        console_handler.setLevel(getattr(logging, level_name.upper(), logging.INFO))
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        root_logger.addHandler(main_handler)
        root_logger.addHandler(error_handler)
        root_logger.addHandler(console_handler)
        self._handlers = [main_handler, error_handler, console_handler]

    def close(self):
        """Detach and close the handlers this service installed"""
        root_logger = logging.getLogger()
        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def get_logger(self, name: str) -> structlog.BoundLogger:
        """Get a structured logger"""
        return structlog.get_logger(name)

    def log_event(
        self,
        logger_name: str,
        level: str,
        event_type: str,
        user_id: Optional[int] = None,
        **kwargs,
    ):
        """Log a structured event"""
        logger = self.get_logger(logger_name)

        log_data = {
            "user_id": user_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **kwargs,
        }

        level_method = getattr(logger, level.lower(), logger.info)
        level_method(event_type, **log_data)

    def log_agent_run(
        self,
        agent: str,
        user_id: Optional[int] = None,
        success: bool = True,
        duration_ms: Optional[int] = None,
        **kwargs,
    ):
        """Log one agent execution"""
        self.log_event(
            "agents",
            "INFO" if success else "ERROR",
            f"agent.{agent}",
            user_id=user_id,
            success=success,
            duration_ms=duration_ms,
            **kwargs,
        )

    def log_plan_mutation(
        self,
        operation: str,
        plan_id: int,
        user_id: Optional[int] = None,
        **kwargs,
    ):
        """Log a change to a plan's calendar"""
        self.log_event(
            "plans",
            "INFO",
            f"plan.{operation}",
            user_id=user_id,
            plan_id=plan_id,
            **kwargs,
        )

    def log_schedule_event(self, event: str, entry_id: Optional[int] = None, **kwargs):
        """Log an agent scheduler event"""
        self.log_event(
            "agent_scheduler", "INFO", f"schedule.{event}", entry_id=entry_id, **kwargs
        )

    def log_error(
        self,
        error_type: str,
        error_message: str,
        user_id: Optional[int] = None,
        **kwargs,
    ):
        """Log error event"""
        self.log_event(
            "error",
            "ERROR",
            f"error.{error_type}",
            user_id=user_id,
            error_message=error_message,
            **kwargs,
        )


# Global logging service instance
_logging_service: Optional[LoggingService] = None


def get_logging_service() -> LoggingService:
    """Get the global logging service instance"""
    global _logging_service
    if _logging_service is None:
        _logging_service = LoggingService()
    return _logging_service


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance"""
    return get_logging_service().get_logger(name)
