"""
Unified exception handling for the Tablefill server.

Every error raised by the enrichment engine, the run controller and the
HTTP API derives from AppException so callers get a consistent shape.

Usage:
    from core.exceptions import AppException, ErrorCode, InsufficientCreditsError

    # Stop a run without letting the job system retry it
    raise InsufficientCreditsError(organization_id="org_1", credits_remaining=0)

    # Report a failing third-party service
    raise ExternalServiceError("serper", "HTTP 500", query="acme corp email")
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """
    Standardized error codes.

    Code ranges:
    - 3xxx: Resource errors (not found, etc.)
    - 4xxx: Enrichment errors
    - 5xxx: External service errors (Ollama, Serper, SearXNG, ScrapingBee)
    - 7xxx: Billing/credit errors
    - 9xxx: System errors
    """

    # Resource errors (3xxx)
    NOT_FOUND = "ERR_3001"
    RUN_NOT_FOUND = "ERR_3005"

    # Enrichment errors (4xxx)
    ENRICHMENT_FAILED = "ERR_4010"
    EXTRACTION_FAILED = "ERR_4011"

    # External service errors (5xxx)
    OLLAMA_ERROR = "ERR_5001"
    SEARXNG_ERROR = "ERR_5003"
    SERPER_ERROR = "ERR_5009"
    SCRAPINGBEE_ERROR = "ERR_5010"

    # Credit errors (7xxx)
    INSUFFICIENT_CREDITS = "ERR_7001"

    # System errors (9xxx)
    INTERNAL_ERROR = "ERR_9001"
    CONFIGURATION_ERROR = "ERR_9005"


class AppException(Exception):
    """
    Base class for errors that map onto an HTTP error envelope.

    `code` identifies the failure for clients, `status_code` is what the API
    answers with, and `details` carries ids useful for debugging a run.
    """

    def __init__(self, code: ErrorCode, message: str, status_code: int = 400,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# =============================================================================
# Convenience subclasses
# =============================================================================

class NotFoundError(AppException):
    """A run or table id that does not resolve."""

    def __init__(self, resource: str, identifier: str, code: ErrorCode = ErrorCode.NOT_FOUND):
        super().__init__(
            code=code,
            message=f"{resource} not found: {identifier}",
            status_code=404,
            details={"resource": resource, "identifier": identifier}
        )


class RunNotFoundError(NotFoundError):
    """Raised when a run id does not resolve to a stored run."""

    def __init__(self, run_id: str):
        super().__init__("Run", run_id, code=ErrorCode.RUN_NOT_FOUND)
        self.run_id = run_id


class ExternalServiceError(AppException):
    """Raised when external services (Ollama, Serper, SearXNG, ScrapingBee) fail."""

    def __init__(
        self,
        service: str,
        message: str,
        code: Optional[ErrorCode] = None,
        **details
    ):
        if code is None:
            code_map = {
                "ollama": ErrorCode.OLLAMA_ERROR,
                "searxng": ErrorCode.SEARXNG_ERROR,
                "serper": ErrorCode.SERPER_ERROR,
                "scrapingbee": ErrorCode.SCRAPINGBEE_ERROR,
            }
            code = code_map.get(service.lower(), ErrorCode.INTERNAL_ERROR)

        super().__init__(
            code=code,
            message=f"{service} error: {message}",
            status_code=502,
            details={"service": service, **details}
        )


class ConfigurationError(AppException):
    """Raised when a required setting is missing."""

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(
            code=ErrorCode.CONFIGURATION_ERROR,
            message=message,
            status_code=500,
            details={"setting": setting} if setting else None
        )


class ExtractionError(AppException):
    """Raised when the extraction model returns something unusable."""

    def __init__(self, message: str, **details):
        super().__init__(
            code=ErrorCode.EXTRACTION_FAILED,
            message=message,
            status_code=500,
            details=details
        )


# =============================================================================
# Run-level errors (consumed by the job worker)
# =============================================================================

class RunFailedError(AppException):
    """
    Raised when a run fails for an unexpected reason.

    The job worker retries these according to its attempt budget.
    """

    def __init__(self, run_id: str, message: str):
        super().__init__(
            code=ErrorCode.ENRICHMENT_FAILED,
            message=f"CSV enrichment failed: {message}",
            status_code=500,
            details={"run_id": run_id}
        )
        self.run_id = run_id


class NonRetryableError(AppException):
    """Marker base class: the job worker must not re-attempt these."""


class InsufficientCreditsError(NonRetryableError):
    """Raised when an organization runs out of credits mid-run."""

    def __init__(self, organization_id: str, credits_remaining: int):
        super().__init__(
            code=ErrorCode.INSUFFICIENT_CREDITS,
            message=f"Insufficient credits: {credits_remaining} remaining",
            status_code=402,
            details={
                "organization_id": organization_id,
                "credits_remaining": credits_remaining,
            }
        )
        self.organization_id = organization_id
        self.credits_remaining = credits_remaining
