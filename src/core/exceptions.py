"""
Custom exceptions for the exam preparation engine

This module contains all custom exceptions used throughout the application.
"""


class ExamPrepException(Exception):
    """Base exception for all exam preparation engine exceptions"""


class ConfigurationError(ExamPrepException):
    """Raised when there's a configuration error"""


class PlanInfeasibleError(ExamPrepException):
    """Raised when no viable schedule can be produced"""


class NotFoundError(ExamPrepException):
    """Raised when a user, plan, topic or task does not exist"""


class DataIntegrityError(ExamPrepException):
    """Raised when stored data would violate an engine invariant"""


class InvalidTransitionError(DataIntegrityError):
    """Raised when a task status change is not allowed"""


class EnrichmentUnavailableError(ExamPrepException):
    """Raised when the optional summarizer fails"""


class RateLimitedError(ExamPrepException):
    """Raised when a user re-triggers an endpoint inside its cooldown"""

    def __init__(self, message: str, retry_after_seconds: float = 0.0):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ValidationError(ExamPrepException):
    """Raised when request or agent parameters are malformed"""
