"""Core utilities for the Askoro backend."""

from .errors import (
    AppError,
    ErrorCode,
    InvalidLocatorError,
    NotConfiguredError,
    RequiresAuthenticationError,
    ValidationError,
)

__all__ = [
    "AppError",
    "ErrorCode",
    "InvalidLocatorError",
    "NotConfiguredError",
    "RequiresAuthenticationError",
    "ValidationError",
]
