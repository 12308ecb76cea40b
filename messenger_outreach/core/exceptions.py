"""Custom exceptions for the application."""

from typing import Any


class AppException(Exception):
    """Base exception for application errors."""

    status_code: int = 400

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class NotAuthenticated(AppException):
    """Raised when a request carries no valid session."""

    status_code = 401

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message, code="NOT_AUTHENTICATED")


class Forbidden(AppException):
    """Raised when the user may not touch a resource."""

    status_code = 403

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="FORBIDDEN", details=details)


class NotFound(AppException):
    """Raised when an entity does not exist or is not owned by the caller."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity} not found: {entity_id}",
            code=f"{entity.upper().replace(' ', '_')}_NOT_FOUND",
            details={"id": entity_id},
        )


class ValidationFailed(AppException):
    """Raised when request input is incomplete or inconsistent."""

    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="VALIDATION_FAILED", details=details)


class Conflict(AppException):
    """Raised when an entity already exists."""

    status_code = 409

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="CONFLICT", details=details)


class InvalidStatusTransition(AppException):
    """Raised when a message or batch is moved to a status it cannot reach."""

    status_code = 409

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move {entity} from {current} to {target}",
            code="INVALID_STATUS_TRANSITION",
            details={"entity": entity, "current": current, "target": target},
        )


class ConfigurationError(AppException):
    """Raised when there's a configuration problem."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class StorageError(AppException):
    """Raised when the storage backend fails."""

    status_code = 500

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            code="STORAGE_ERROR",
            details={"operation": operation} if operation else {},
        )


class GraphAPIError(AppException):
    """Raised when a Facebook Graph API call fails."""

    status_code = 502

    def __init__(
        self,
        message: str,
        fb_code: int | None = None,
        fb_subcode: int | None = None,
        error_type: str = "other",
        retryable: bool = False,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(
            message,
            code="GRAPH_API_ERROR",
            details={
                "fb_code": fb_code,
                "fb_subcode": fb_subcode,
                "error_type": error_type,
            },
        )
        self.fb_code = fb_code
        self.fb_subcode = fb_subcode
        self.error_type = error_type
        self.retryable = retryable
        self.retry_after = retry_after


class RateLimitExceeded(AppException):
    """Raised when a rate limit is exceeded."""

    status_code = 429

    def __init__(self, key: str, limit: int, window: float) -> None:
        super().__init__(
            f"Rate limit exceeded for {key}",
            code="RATE_LIMIT_EXCEEDED",
            details={"key": key, "limit": limit, "window_seconds": window},
        )


class LLMError(AppException):
    """Raised when LLM provider fails."""

    status_code = 502

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(
            message,
            code="LLM_ERROR",
            details={"provider": provider} if provider else {},
        )
