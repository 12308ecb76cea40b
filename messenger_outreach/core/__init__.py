"""Core module - configuration and utilities."""

from messenger_outreach.core.config import settings
from messenger_outreach.core.exceptions import (
    AppException,
    ConfigurationError,
    Forbidden,
    GraphAPIError,
    InvalidStatusTransition,
    NotAuthenticated,
    NotFound,
    RateLimitExceeded,
    ValidationFailed,
)

__all__ = [
    "settings",
    "AppException",
    "ConfigurationError",
    "Forbidden",
    "GraphAPIError",
    "InvalidStatusTransition",
    "NotAuthenticated",
    "NotFound",
    "RateLimitExceeded",
    "ValidationFailed",
]
