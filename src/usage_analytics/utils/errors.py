"""
Error handling framework for the usage analytics service.

This module provides:
- Hierarchical exception classes carrying an error code and HTTP status
- Error context preservation
- Structured error responses
- A decorator for logging and optionally swallowing errors
"""

from typing import Optional, Dict, Any, List, Type, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio
import functools

from .logging import get_logger


logger = get_logger("usage-analytics.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    LIMIT_EXCEEDED = "limit_exceeded"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    CONFIGURATION = "configuration"
    INFRASTRUCTURE = "infrastructure"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    project_id: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class AnalyticsError(Exception):
    """Base exception for all usage analytics errors."""

    code: str = "ANALYTICS_ERROR"
    default_message: str = "An analytics error occurred"
    status_code: int = 500
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **details
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.details = details
        super().__init__(self.message)

    def get_retry_after(self) -> Optional[int]:
        """Get retry delay in seconds."""
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        error = {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "is_retryable": self.is_retryable,
        }
        retry_after = self.get_retry_after()
        if retry_after is not None:
            error["retry_after"] = retry_after
        if self.details:
            error["details"] = self.details
        return {"error": error}


class ConfigurationError(AnalyticsError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION


class ValidationError(AnalyticsError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    status_code = 400
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, field=field, **kwargs)


class InvalidParameterError(AnalyticsError):
    """Malformed query parameters."""
    code = "INVALID_PARAMETER"
    default_message = "Invalid request parameter"
    status_code = 400
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING


class InvalidDateRangeError(AnalyticsError):
    """Date range with start not strictly before end."""
    code = "INVALID_DATE_RANGE"
    default_message = "Start date must be before end date"
    status_code = 400
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING


class RateLimitExceededError(AnalyticsError):
    """Project exceeded its per-minute event budget."""
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Rate limit exceeded"
    status_code = 429
    category = ErrorCategory.RATE_LIMIT
    severity = ErrorSeverity.WARNING
    is_retryable = True

    def __init__(self, message: Optional[str] = None, retry_after: int = 60, **kwargs):
        self.retry_after = retry_after
        super().__init__(message, **kwargs)

    def get_retry_after(self) -> Optional[int]:
        return self.retry_after


class AuthenticationError(AnalyticsError):
    """Missing or unknown API key."""
    code = "UNAUTHORIZED"
    default_message = "Invalid or missing API key"
    status_code = 401
    category = ErrorCategory.AUTHENTICATION
    severity = ErrorSeverity.WARNING


class AuthorizationError(AnalyticsError):
    """API key is not valid for the requested project."""
    code = "FORBIDDEN"
    default_message = "API key is not authorized for this project"
    status_code = 403
    category = ErrorCategory.AUTHORIZATION
    severity = ErrorSeverity.WARNING


class ProjectNotFoundError(AnalyticsError):
    """Unknown project id."""
    code = "PROJECT_NOT_FOUND"
    default_message = "Project not found"
    status_code = 404
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.WARNING

    def __init__(self, project_id: str, **kwargs):
        self.project_id = project_id
        super().__init__(f"Project {project_id} not found", **kwargs)


class StorageError(AnalyticsError):
    """Durable storage read or write failure."""
    code = "STORAGE_ERROR"
    default_message = "Storage operation failed"
    category = ErrorCategory.INFRASTRUCTURE
    is_retryable = True

    def get_retry_after(self) -> Optional[int]:
        return 5


class CacheError(AnalyticsError):
    """Cache store failure."""
    code = "CACHE_ERROR"
    default_message = "Cache operation failed"
    category = ErrorCategory.INFRASTRUCTURE
    severity = ErrorSeverity.WARNING
    is_retryable = True


class ExportNotFoundError(AnalyticsError):
    """Unknown export id."""
    code = "EXPORT_NOT_FOUND"
    default_message = "Export not found"
    status_code = 404
    category = ErrorCategory.NOT_FOUND
    severity = ErrorSeverity.WARNING

    def __init__(self, export_id: str, **kwargs):
        self.export_id = export_id
        super().__init__(f"Export {export_id} not found", **kwargs)


class ExportLimitExceededError(AnalyticsError):
    """Too many pending or processing exports for a project."""
    code = "EXPORT_LIMIT_EXCEEDED"
    default_message = "Maximum concurrent exports reached"
    status_code = 429
    category = ErrorCategory.LIMIT_EXCEEDED
    severity = ErrorSeverity.WARNING

    def __init__(self, limit: int, **kwargs):
        self.limit = limit
        super().__init__(f"Maximum concurrent exports ({limit}) reached", **kwargs)


class ExportTooLargeError(AnalyticsError):
    """Rendered export exceeds the size or row ceiling."""
    code = "EXPORT_TOO_LARGE"
    default_message = "Export exceeds the maximum allowed size"
    status_code = 413
    category = ErrorCategory.LIMIT_EXCEEDED


class InvalidExportFormatError(AnalyticsError):
    """Unsupported export format or report type."""
    code = "INVALID_EXPORT_FORMAT"
    default_message = "Invalid export format"
    status_code = 400
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, value: str, **kwargs):
        self.value = value
        super().__init__(f"Invalid export format: {value}", **kwargs)


def handle_errors(
    *error_classes: Type[Exception],
    fallback: Optional[Callable] = None,
    reraise: bool = True,
    log_level: ErrorSeverity = ErrorSeverity.ERROR
):
    """
    Decorator for handling errors in functions.

    Args:
        error_classes: Exception classes to catch
        fallback: Fallback function to call on error
        reraise: Whether to reraise the exception
        log_level: Logging level for errors
    """
    error_classes = error_classes or (Exception,)

    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except error_classes as e:
                getattr(logger, log_level.value)(
                    f"error_in_{func.__name__}",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if fallback:
                    if asyncio.iscoroutinefunction(fallback):
                        return await fallback(*args, **kwargs)
                    return fallback(*args, **kwargs)
                if reraise:
                    raise
                return None

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except error_classes as e:
                getattr(logger, log_level.value)(
                    f"error_in_{func.__name__}",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if fallback:
                    return fallback(*args, **kwargs)
                if reraise:
                    raise
                return None

        return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper

    return decorator


def error_messages(errors: List[Dict[str, Any]]) -> str:
    """Flatten pydantic error dicts into a single readable message."""
    parts = []
    for error in errors:
        loc = ".".join(str(x) for x in error.get("loc", ()))
        parts.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return "; ".join(parts)


__all__ = [
    'AnalyticsError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'ValidationError',
    'InvalidParameterError',
    'InvalidDateRangeError',
    'RateLimitExceededError',
    'AuthenticationError',
    'AuthorizationError',
    'ProjectNotFoundError',
    'StorageError',
    'CacheError',
    'ExportNotFoundError',
    'ExportLimitExceededError',
    'ExportTooLargeError',
    'InvalidExportFormatError',
    'handle_errors',
    'error_messages',
]
