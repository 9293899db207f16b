"""
Error taxonomy for the clip job service.

Every error carries a stable machine-readable ``code``, the HTTP status the
API answers with, and a short user-facing message. Internal details belong in
the logs, never in ``message``.
"""

from typing import Any, Optional


class ClipJobError(Exception):
    """Base class for all domain errors surfaced to callers."""

    code: str = "internal_error"
    status_code: int = 500
    default_message: str = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class JobValidationError(ClipJobError):
    """Bad input; the user must correct it. Never retried."""

    code = "validation_error"
    status_code = 400
    default_message = "The request is invalid."


class InvalidSourceUrlError(JobValidationError):
    code = "invalid_source_url"
    default_message = "Invalid YouTube URL."


class NotFoundError(ClipJobError):
    """Unknown or foreign-owned id. The two cases are indistinguishable."""

    code = "not_found"
    status_code = 404
    default_message = "Job not found."


class SourceNotFoundError(ClipJobError):
    code = "source_not_found_or_private"
    status_code = 404
    default_message = "Video not found. It may be private or deleted."


class UpstreamUnavailableError(ClipJobError):
    """An external service could not be reached."""

    code = "upstream_unavailable"
    status_code = 503
    default_message = "A required service is unavailable. Please try again later."


class UpstreamCredentialsError(ClipJobError):
    code = "missing_or_invalid_upstream_credentials"
    status_code = 503
    default_message = "The service is not configured correctly. Please try again later."


class GatewayUnavailableError(UpstreamUnavailableError):
    code = "gateway_unavailable"
    default_message = "Clip creation failed. The processing service is unavailable."


class ProtocolMismatchError(ClipJobError):
    """The processing service answered in a shape we do not understand."""

    code = "protocol_mismatch"
    status_code = 502
    default_message = "Clip creation failed. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.response_status = status_code
        self.body = body


class ProcessingTimeoutError(ClipJobError):
    code = "processing_timeout"
    status_code = 504
    default_message = "Processing timed out."


class AuthError(ClipJobError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Authentication required."


# Gateway failures tolerated during polling
GATEWAY_ERRORS = (GatewayUnavailableError, ProtocolMismatchError, UpstreamCredentialsError)
