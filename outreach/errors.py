import asyncio
from enum import Enum
from typing import Optional

import redis
import requests
from kombu.exceptions import OperationalError as BrokerOperationalError
from sqlalchemy.exc import SQLAlchemyError


class ErrorCode(str, Enum):
    API_TIMEOUT = "API_TIMEOUT"
    NETWORK_FAILURE = "NETWORK_FAILURE"
    VOICE_PROCESSING = "VOICE_PROCESSING"
    PHONE_TREE_NAV = "PHONE_TREE_NAV"
    CALENDAR_SYNC = "CALENDAR_SYNC"
    DATABASE_ACCESS = "DATABASE_ACCESS"
    DATABASE_CORRUPTION = "DATABASE_CORRUPTION"
    QUEUE_OPERATION = "QUEUE_OPERATION"
    STORAGE_ACCESS = "STORAGE_ACCESS"
    RATE_LIMITED = "RATE_LIMITED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    INVALID_JOB = "INVALID_JOB"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONFIGURATION = "CONFIGURATION"
    AUTHENTICATION = "AUTHENTICATION"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorCategory(str, Enum):
    RETRYABLE = "retryable"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    SECURITY = "security"

    @property
    def retryable(self) -> bool:
        return self in (ErrorCategory.RETRYABLE, ErrorCategory.TRANSIENT)


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


ERROR_CODE_CATEGORIES = {
    ErrorCode.API_TIMEOUT: ErrorCategory.RETRYABLE,
    ErrorCode.NETWORK_FAILURE: ErrorCategory.RETRYABLE,
    ErrorCode.PHONE_TREE_NAV: ErrorCategory.RETRYABLE,
    ErrorCode.CALENDAR_SYNC: ErrorCategory.RETRYABLE,
    ErrorCode.DATABASE_ACCESS: ErrorCategory.RETRYABLE,
    ErrorCode.STORAGE_ACCESS: ErrorCategory.RETRYABLE,
    ErrorCode.UNKNOWN_ERROR: ErrorCategory.RETRYABLE,
    ErrorCode.VOICE_PROCESSING: ErrorCategory.TRANSIENT,
    ErrorCode.QUEUE_OPERATION: ErrorCategory.TRANSIENT,
    ErrorCode.RATE_LIMITED: ErrorCategory.TRANSIENT,
    ErrorCode.CIRCUIT_OPEN: ErrorCategory.TRANSIENT,
    ErrorCode.DATABASE_CORRUPTION: ErrorCategory.PERMANENT,
    ErrorCode.INVALID_JOB: ErrorCategory.PERMANENT,
    ErrorCode.INVALID_TRANSITION: ErrorCategory.PERMANENT,
    ErrorCode.CONFIGURATION: ErrorCategory.PERMANENT,
    ErrorCode.AUTHENTICATION: ErrorCategory.SECURITY,
    ErrorCode.SECURITY_VIOLATION: ErrorCategory.SECURITY,
}

ERROR_CODE_SEVERITIES = {
    ErrorCode.API_TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorCode.NETWORK_FAILURE: ErrorSeverity.HIGH,
    ErrorCode.VOICE_PROCESSING: ErrorSeverity.HIGH,
    ErrorCode.PHONE_TREE_NAV: ErrorSeverity.MEDIUM,
    ErrorCode.CALENDAR_SYNC: ErrorSeverity.MEDIUM,
    ErrorCode.DATABASE_ACCESS: ErrorSeverity.HIGH,
    ErrorCode.QUEUE_OPERATION: ErrorSeverity.HIGH,
    ErrorCode.STORAGE_ACCESS: ErrorSeverity.HIGH,
    ErrorCode.RATE_LIMITED: ErrorSeverity.LOW,
    ErrorCode.CIRCUIT_OPEN: ErrorSeverity.MEDIUM,
    ErrorCode.UNKNOWN_ERROR: ErrorSeverity.MEDIUM,
}

# Codes that take the whole process down in production.
FATAL_ERROR_CODES = frozenset({ErrorCode.DATABASE_CORRUPTION})

ERROR_MESSAGES = {
    ErrorCode.API_TIMEOUT: "External API request timed out",
    ErrorCode.NETWORK_FAILURE: "Network connection failed",
    ErrorCode.VOICE_PROCESSING: "Voice processing operation failed",
    ErrorCode.PHONE_TREE_NAV: "Phone tree navigation error",
    ErrorCode.CALENDAR_SYNC: "Calendar synchronization failed",
    ErrorCode.DATABASE_ACCESS: "Database operation failed",
    ErrorCode.DATABASE_CORRUPTION: "Stored data is corrupted",
    ErrorCode.QUEUE_OPERATION: "Queue processing error",
    ErrorCode.STORAGE_ACCESS: "Storage operation failed",
    ErrorCode.RATE_LIMITED: "Service rate limit exceeded",
    ErrorCode.CIRCUIT_OPEN: "Service temporarily unavailable",
    ErrorCode.INVALID_JOB: "Invalid job data",
    ErrorCode.INVALID_TRANSITION: "Invalid call state transition",
    ErrorCode.CONFIGURATION: "Worker configuration error",
    ErrorCode.AUTHENTICATION: "Authentication with an external service failed",
    ErrorCode.SECURITY_VIOLATION: "Security violation",
    ErrorCode.UNKNOWN_ERROR: "Unexpected error",
}


class OutreachError(RuntimeError):
    code = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None, details: Optional[dict] = None):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.details = details

    @property
    def category(self) -> ErrorCategory:
        return category_for(self.code)


class CircuitOpenError(OutreachError):
    code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, service: str, retry_in: float):
        super().__init__(f"Circuit breaker is OPEN for service {service}; retry in {retry_in:.1f}s")
        self.service = service
        self.retry_in = retry_in


class UnknownServiceError(KeyError):
    """Raised when a component is asked about a service nobody registered."""


class RateLimitedError(OutreachError):
    code = ErrorCode.RATE_LIMITED

    def __init__(self, service: str, retry_after: float):
        super().__init__(f"Rate limit exceeded for {service}; retry after {retry_after:.1f}s")
        self.service = service
        self.retry_after = retry_after


class StateTimeoutError(OutreachError):
    code = ErrorCode.API_TIMEOUT


class InvalidTransitionError(OutreachError):
    code = ErrorCode.INVALID_TRANSITION


class InvalidJobError(OutreachError):
    code = ErrorCode.INVALID_JOB


class PersistenceCorruptedError(OutreachError):
    code = ErrorCode.DATABASE_CORRUPTION


class QueueError(OutreachError):
    code = ErrorCode.QUEUE_OPERATION


class RetryCancelledError(OutreachError):
    code = ErrorCode.UNKNOWN_ERROR


class VoiceAgentError(OutreachError):
    def __init__(self, code: ErrorCode, message: str, retryable: bool, details: Optional[dict] = None):
        super().__init__(message, code=code, details=details)
        self.retryable = retryable


def category_for(code: ErrorCode) -> ErrorCategory:
    return ERROR_CODE_CATEGORIES.get(code, ErrorCategory.RETRYABLE)


def severity_for(code: ErrorCode) -> ErrorSeverity:
    category = category_for(code)
    if category in (ErrorCategory.PERMANENT, ErrorCategory.SECURITY):
        return ErrorSeverity.CRITICAL
    return ERROR_CODE_SEVERITIES.get(code, ErrorSeverity.MEDIUM)


def error_code_for(error: BaseException) -> ErrorCode:
    """Map an exception to its error code by type.

    Order matters: PermissionError and the timeouts are OSError subclasses.
    """
    if isinstance(error, OutreachError):
        return error.code
    if isinstance(error, PermissionError):
        return ErrorCode.SECURITY_VIOLATION
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, requests.Timeout)):
        return ErrorCode.API_TIMEOUT
    if isinstance(error, (redis.exceptions.RedisError, BrokerOperationalError)):
        return ErrorCode.QUEUE_OPERATION
    if isinstance(error, SQLAlchemyError):
        return ErrorCode.DATABASE_ACCESS
    if isinstance(error, (ConnectionError, requests.ConnectionError, OSError)):
        return ErrorCode.NETWORK_FAILURE
    return ErrorCode.UNKNOWN_ERROR


class WorkerUnavailableError(OutreachError):
    code = ErrorCode.QUEUE_OPERATION


class DuplicateJobError(OutreachError):
    code = ErrorCode.QUEUE_OPERATION
