"""
Consolidated exception system with error codes, context, and correlation support.

This module provides a unified exception hierarchy for the token lifecycle and
sync subsystems, with automatic logging and correlation ID tracking.
"""

import threading
import traceback
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generator, List, Optional

_thread_local = threading.local()


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # System errors (1xxx)
    INTERNAL_ERROR = "1000"
    DATABASE_ERROR = "1001"
    CONNECTION_ERROR = "1002"
    CONFIGURATION_ERROR = "1003"
    TIMEOUT_ERROR = "1004"

    # Validation errors (2xxx)
    VALIDATION_FAILED = "2000"
    INVALID_FORMAT = "2001"
    MISSING_REQUIRED = "2002"

    # Resource errors (3xxx)
    NOT_FOUND = "3000"
    DUPLICATE = "3001"
    CONFLICT = "3002"
    EXPIRED = "3004"
    LIMIT_EXCEEDED = "3005"

    # Business logic errors (4xxx)
    INVALID_STATE_TRANSITION = "4001"
    CIRCUIT_OPEN = "4005"

    # External service errors (5xxx)
    EXTERNAL_API_ERROR = "5002"
    INTEGRATION_ERROR = "5003"


class BaseError(Exception):
    """Base exception with context, error codes, logging, and error chaining."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
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
        # Lazy import, the logger module imports config which imports nothing from here
        from .utils.logger import get_logger

        logger = get_logger()

        log_data = {
            "error_id": self.error_id,
            "error_code": self.error_code.value,
            "status_code": self.status_code,
            "error_message": self.message,
            "context": {k: v for k, v in self.context.items() if k not in ["cause", "traceback"]},
        }

        if "correlation_id" in self.context:
            log_data["correlation_id"] = self.context["correlation_id"]

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

    @property
    def error_chain(self) -> List[Exception]:
        """Get the full chain of errors."""
        chain: List[Exception] = [self]
        current = self.cause
        while current:
            chain.append(current)
            current = getattr(current, "cause", None)
        return chain


# Layer-specific base exceptions
class RepositoryError(BaseError):
    """Persistence layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
        status_code: int = 500,
        cause: Optional[Exception] = None,
        **context,
    ):
        super().__init__(message, error_code, status_code, cause, **context)


class ServiceError(BaseError):
    """Service layer errors."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        operation: Optional[str] = None,
        cause: Optional[Exception] = None,
        status_code: int = 500,
        **context,
    ):
        if operation:
            context["operation"] = operation
        super().__init__(message, error_code, status_code, cause, **context)


class ValidationError(BaseError):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        cause: Optional[Exception] = None,
        **context,
    ):
        if field:
            context["field"] = field
        super().__init__(message, error_code, 400, cause, **context)


class ExternalServiceError(BaseError):
    """External service integration errors."""

    def __init__(
        self,
        message: str,
        service_name: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_API_ERROR,
        cause: Optional[Exception] = None,
        status_code: int = 502,
        **context,
    ):
        context["service_name"] = service_name
        super().__init__(message, error_code, status_code, cause, **context)


# Factory functions for common error patterns
def not_found(
    resource_type: str, cause: Optional[Exception] = None, **identifiers
) -> RepositoryError:
    """
    Factory for not found errors.

    Args:
        resource_type: Type of resource (e.g., 'OAuthCredential', 'SyncWatermark')
        cause: Original exception if any
        **identifiers: Resource identifiers (e.g., provider='hubspot')

    Returns:
        Configured RepositoryError instance with 404 status
    """
    id_parts = [f"{k}={v}" for k, v in identifiers.items()]
    message = f"{resource_type} not found"
    if id_parts:
        message += f": {', '.join(id_parts)}"

    return RepositoryError(
        message,
        error_code=ErrorCode.NOT_FOUND,
        status_code=404,
        cause=cause,
        resource_type=resource_type,
        **identifiers,
    )


def validation_failed(
    field: str, value: Any, reason: str, cause: Optional[Exception] = None
) -> ValidationError:
    """Factory for validation errors."""
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


@contextmanager
def correlation_context(prefix: str) -> Generator[str, None, None]:
    """
    Tag errors and log lines raised inside the block with a fresh correlation ID.

    The previous ID of the thread, if any, is restored on exit.
    """
    previous = get_correlation_id()
    correlation_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
    set_correlation_id(correlation_id)
    try:
        yield correlation_id
    finally:
        if previous:
            set_correlation_id(previous)
        else:
            clear_correlation_id()


# ==================== CREDENTIAL-SPECIFIC EXCEPTIONS ====================


class CredentialError(BaseError):
    """Base exception for credential-related errors."""

    def __init__(self, message: str = "Credential error", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.INTEGRATION_ERROR, status_code=500, **kwargs
        )


class CredentialNotFoundError(BaseError):
    """Raised when a requested credential is not found."""

    def __init__(self, message: str = "Credential not found", **kwargs):
        super().__init__(message=message, error_code=ErrorCode.NOT_FOUND, status_code=404, **kwargs)


class CredentialInactiveError(BaseError):
    """Raised when a credential was revoked and needs reauthorization."""

    def __init__(self, message: str = "Credential is inactive", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.INVALID_STATE_TRANSITION, status_code=409, **kwargs
        )


class RefreshConfigNotFoundError(BaseError):
    """Raised when no provider configuration is registered for a credential."""

    def __init__(self, message: str = "No refresh configuration registered", **kwargs):
        super().__init__(
            message=message, error_code=ErrorCode.CONFIGURATION_ERROR, status_code=404, **kwargs
        )


# ==================== TOKEN REFRESH EXCEPTIONS ====================


class TokenRefreshError(ExternalServiceError):
    """A refresh_token grant against a provider failed."""

    retryable = True

    def __init__(
        self,
        message: str,
        provider: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_API_ERROR,
        status_code: int = 502,
        cause: Optional[Exception] = None,
        http_status: Optional[int] = None,
        oauth_error: Optional[str] = None,
        **context,
    ):
        self.provider = provider
        self.http_status = http_status
        self.oauth_error = oauth_error
        context["provider"] = provider
        if http_status is not None:
            context["http_status"] = http_status
        if oauth_error:
            context["oauth_error"] = oauth_error
        super().__init__(
            message,
            service_name=f"{provider}_token_endpoint",
            error_code=error_code,
            cause=cause,
            status_code=status_code,
            **context,
        )


class TransientRefreshError(TokenRefreshError):
    """Network, timeout or 5xx failure. Retried with backoff."""

    retryable = True


class TerminalAuthError(TokenRefreshError):
    """The refresh token was rejected as invalid or revoked. Never retried."""

    retryable = False

    def __init__(self, message: str, provider: str, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.EXPIRED)
        kwargs.setdefault("status_code", 401)
        super().__init__(message, provider, **kwargs)


class CircuitOpenError(BaseError):
    """Raised when the circuit breaker short-circuits a refresh attempt."""

    def __init__(self, message: str, key: str, retry_after_seconds: float, **kwargs):
        self.key = key
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            message=message,
            error_code=ErrorCode.CIRCUIT_OPEN,
            status_code=503,
            circuit_key=key,
            retry_after_seconds=round(retry_after_seconds, 3),
            **kwargs,
        )


# ==================== SYNC EXCEPTIONS ====================


class RecordSyncError(BaseError):
    """A single upstream record could not be transformed or persisted."""

    def __init__(
        self,
        message: str,
        entity_type: str,
        upstream_id: str,
        cause: Optional[Exception] = None,
        **kwargs,
    ):
        self.entity_type = entity_type
        self.upstream_id = upstream_id
        super().__init__(
            message=message,
            error_code=ErrorCode.INTEGRATION_ERROR,
            status_code=422,
            cause=cause,
            entity_type=entity_type,
            upstream_id=upstream_id,
            **kwargs,
        )


class FatalSyncError(ServiceError):
    """Aborts a sync run. The watermark is not advanced."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.INTEGRATION_ERROR,
        cause: Optional[Exception] = None,
        **context,
    ):
        self.entity_type = entity_type
        if entity_type:
            context["entity_type"] = entity_type
        super().__init__(
            message, error_code=error_code, operation="incremental_sync", cause=cause, **context
        )


class UpstreamUnavailableError(FatalSyncError):
    """Upstream API unreachable or timed out."""

    def __init__(self, message: str, entity_type: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.CONNECTION_ERROR)
        super().__init__(message, entity_type=entity_type, **kwargs)


class UpstreamFetchError(FatalSyncError):
    """Upstream API answered with an error or broke pagination."""

    def __init__(self, message: str, entity_type: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.EXTERNAL_API_ERROR)
        super().__init__(message, entity_type=entity_type, **kwargs)
