"""
Consolidated exception system with error codes, context, and correlation support.

This module provides a unified exception hierarchy for the provisioning
service, with automatic logging and correlation ID tracking. Each error maps
onto an HTTP-like status code so that a façade can translate it without
knowing provisioning internals.
"""

import threading
import traceback
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .schemas.provisioning_schema import ProvisionedCredential

# Removed logger import to avoid circular dependency - calling code should handle logging

_thread_local = threading.local()


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # System errors (1xxx)
    INTERNAL_ERROR = "1000"
    DATABASE_ERROR = "1001"
    CONNECTION_ERROR = "1002"
    CONFIGURATION_ERROR = "1003"
    TIMEOUT_ERROR = "1004"
    CANCELLED = "1005"

    # Validation errors (2xxx)
    VALIDATION_FAILED = "2000"
    INVALID_FORMAT = "2001"
    MISSING_REQUIRED = "2002"

    # Resource errors (3xxx)
    NOT_FOUND = "3000"
    DUPLICATE = "3001"
    EXPIRED = "3004"

    # Business logic errors (4xxx)
    INVALID_STATE_TRANSITION = "4001"

    # Backend errors (5xxx)
    ADMINISTRATIVE_ERROR = "5005"


class BaseError(Exception):
    """Base exception with context, error codes, logging, and error chaining."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        cause: Optional[BaseException] = None,
        **context: Any,
    ):
        """
        Initialize base error with rich context.

        Args:
            message: Human-readable error message
            error_code: Standardized error code from ErrorCode enum
            status_code: HTTP status code for API responses
            cause: Original exception that caused this error
            **context: Additional context information
        """
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.error_id = str(uuid.uuid4())
        self.context = context

        correlation_id = get_correlation_id()
        if correlation_id:
            self.context["correlation_id"] = correlation_id

        self.context["error_id"] = self.error_id

        if cause:
            self.context["cause"] = {
                "type": type(cause).__name__,
                "message": str(cause),
                "traceback": traceback.format_exception(type(cause), cause, cause.__traceback__),
            }

        self._log_error()

        super().__init__(message)

    def _log_error(self) -> None:
        """Log error with appropriate level based on status code."""
        # Import logger here to avoid circular dependency at module load time
        from .utils.logger import get_logger

        logger = get_logger()

        log_data = {
            "error_id": self.error_id,
            "error_code": self.error_code.value,
            "status_code": self.status_code,
            "error_message": self.message,
            "timestamp": self.timestamp,
            "context": {k: v for k, v in self.context.items() if k not in ["cause", "traceback"]},
        }

        if self.status_code >= 500:
            logger.error(f"Error {self.error_code.value}: {self.message}", extra=log_data)
        elif self.status_code >= 400:
            logger.warning(f"Client error {self.error_code.value}: {self.message}", extra=log_data)
        else:
            logger.info(f"Error {self.error_code.value}: {self.message}", extra=log_data)

    def to_dict(
        self, include_cause: bool = False, include_traceback: bool = False
    ) -> Dict[str, Any]:
        """
        Convert to dict for API responses.

        Args:
            include_cause: Include cause information (useful for debugging)
            include_traceback: Include full traceback (only in debug mode)

        Returns:
            Dictionary representation suitable for JSON serialization
        """
        result: Dict[str, Any] = {
            "error": {
                "id": self.error_id,
                "code": self.error_code.value,
                "message": self.message,
                "timestamp": self.timestamp,
                "context": {
                    k: v
                    for k, v in self.context.items()
                    if k not in ["cause", "error_id", "correlation_id"]
                },
            }
        }

        if "correlation_id" in self.context:
            result["error"]["correlation_id"] = self.context["correlation_id"]

        if include_cause and "cause" in self.context:
            result["error"]["cause"] = {
                "type": self.context["cause"]["type"],
                "message": self.context["cause"]["message"],
            }
            if include_traceback:
                result["error"]["cause"]["traceback"] = self.context["cause"]["traceback"]

        return result

    def add_context(self, **kwargs: Any) -> "BaseError":
        """
        Add additional context to the error (fluent interface).

        Returns:
            Self for method chaining
        """
        self.context.update(kwargs)
        return self

    @property
    def error_chain(self) -> List[BaseException]:
        """Get the full chain of errors."""
        chain: List[BaseException] = [self]
        current = self.cause
        while current:
            chain.append(current)
            current = getattr(current, "cause", None)
        return chain


class ServiceError(BaseError):
    """Service layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **context,
    ):
        """Initialize service error with operation context."""
        if operation:
            context["operation"] = operation
        super().__init__(message, error_code, 500, cause, **context)


class ValidationError(BaseError):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        cause: Optional[BaseException] = None,
        **context,
    ):
        """Initialize validation error with field context."""
        if field:
            context["field"] = field
        super().__init__(message, error_code, 400, cause, **context)


# ==================== BACKEND EXCEPTIONS ====================


class BackendConnectionError(BaseError):
    """Raised when a backend connection cannot be opened, probed or closed."""

    def __init__(self, message: str = "Cannot reach backend", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.CONNECTION_ERROR, status_code=503, **kwargs
        )


class InitializationError(BaseError):
    """Raised when bootstrapping the management database or schema fails."""

    def __init__(self, message: str = "Cannot initialize management database", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.CONFIGURATION_ERROR, status_code=500, **kwargs
        )


class MetadataStoreError(BaseError):
    """Raised when a bookkeeping read or write fails."""

    def __init__(self, message: str = "Metadata store error", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.DATABASE_ERROR, status_code=500, **kwargs
        )


class DuplicateResourceError(BaseError):
    """Raised when a database name or username is already taken."""

    def __init__(self, message: str = "Resource already exists", **kwargs):
        super().__init__(message=message, error_code=ErrorCode.DUPLICATE, status_code=409, **kwargs)


class AdministrativeError(BaseError):
    """Raised by the administrative executor when a DDL statement fails."""

    def __init__(
        self,
        message: str = "Administrative statement failed",
        sqlstate: Optional[str] = None,
        **kwargs,
    ):
        self.sqlstate = sqlstate
        if sqlstate:
            kwargs["sqlstate"] = sqlstate
        super().__init__(
            message=message,
            error_code=ErrorCode.ADMINISTRATIVE_ERROR,
            status_code=500,
            **kwargs,
        )


class ProvisioningError(BaseError):
    """Raised when creating a database or credential fails after its row was written."""

    def __init__(self, message: str = "Cannot provision database", **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.ADMINISTRATIVE_ERROR,
            status_code=500,
            **kwargs,
        )


class ReclamationError(BaseError):
    """
    Raised when a sweep could not reclaim every expired database.

    Groups that were reclaimed before or after the failing ones are still
    reported through ``reclaimed``; ``failures`` maps each database name that
    could not be reclaimed to the error that stopped it.
    """

    def __init__(
        self,
        message: str = "Cannot reclaim expired databases",
        reclaimed: Optional[List["ProvisionedCredential"]] = None,
        failures: Optional[Dict[str, BaseException]] = None,
        **kwargs,
    ):
        self.reclaimed = list(reclaimed or [])
        self.failures = dict(failures or {})
        kwargs.setdefault("failed_databases", sorted(self.failures))
        super().__init__(
            message=message,
            error_code=ErrorCode.ADMINISTRATIVE_ERROR,
            status_code=500,
            **kwargs,
        )


class ContextError(BaseError):
    """Raised when an operation's call context was cancelled or ran out of time."""

    def __init__(
        self,
        message: str = "Operation cancelled",
        error_code: ErrorCode = ErrorCode.CANCELLED,
        **kwargs,
    ):
        super().__init__(message=message, error_code=error_code, status_code=504, **kwargs)


# ==================== REGISTRY EXCEPTIONS ====================


class DuplicateNameError(BaseError):
    """Raised when a provisioner name is registered twice."""

    def __init__(self, message: str = "Provisioner already registered", **kwargs):
        super().__init__(message=message, error_code=ErrorCode.DUPLICATE, status_code=409, **kwargs)


class NilEngineError(BaseError):
    """Raised when registering an absent provisioner."""

    def __init__(self, message: str = "Provisioner is None", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.MISSING_REQUIRED, status_code=400, **kwargs
        )


# Factory functions for common error patterns
def not_found(resource_type: str, cause: Optional[BaseException] = None, **identifiers) -> BaseError:
    """
    Factory for not found errors.

    Args:
        resource_type: Type of resource (e.g., 'Provisioner')
        cause: Original exception if any
        **identifiers: Resource identifiers (e.g., name='pg')

    Returns:
        Configured BaseError instance with 404 status
    """
    id_parts = [f"{k}={v}" for k, v in identifiers.items()]
    message = f"{resource_type} not found"
    if id_parts:
        message += f": {', '.join(id_parts)}"

    return BaseError(
        message,
        error_code=ErrorCode.NOT_FOUND,
        status_code=404,
        cause=cause,
        resource_type=resource_type,
        **identifiers,
    )


def validation_failed(
    field: str, value: Any, reason: str, cause: Optional[BaseException] = None
) -> ValidationError:
    """
    Factory for validation errors.

    Args:
        field: Field that failed validation
        value: The invalid value
        reason: Why validation failed
        cause: Original exception if any

    Returns:
        Configured ValidationError instance
    """
    return ValidationError(
        f"Validation failed for {field}: {reason}",
        field=field,
        error_code=ErrorCode.VALIDATION_FAILED,
        cause=cause,
        value=str(value),
        reason=reason,
    )


# Correlation ID management
def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current thread."""
    _thread_local.correlation_id = correlation_id


def get_correlation_id() -> Optional[str]:
    """Get the current thread's correlation ID."""
    return getattr(_thread_local, "correlation_id", None)


def clear_correlation_id() -> None:
    """Clear the current thread's correlation ID."""
    if hasattr(_thread_local, "correlation_id"):
        delattr(_thread_local, "correlation_id")
