"""
Tablefill Server Core Components
Shared error types for the enrichment engine and API
"""

from .exceptions import (
    AppException,
    ErrorCode,
    ExternalServiceError,
    InsufficientCreditsError,
    NonRetryableError,
    RunFailedError,
    RunNotFoundError,
)

__all__ = [
    "AppException",
    "ErrorCode",
    "ExternalServiceError",
    "InsufficientCreditsError",
    "NonRetryableError",
    "RunFailedError",
    "RunNotFoundError",
]
