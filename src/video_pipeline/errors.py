"""Error taxonomy for the ingestion pipeline.

Every error carries enough metadata for the two places that handle it:

- the queue runtime reads ``retryable`` to decide between a backoff retry and
  a permanent failure
- the API reads ``status_code`` and ``code`` to render a response
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    code = "PIPELINE_ERROR"
    status_code = 500
    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> Dict[str, Any]:
        """Serialize for an HTTP error body."""
        detail = {"code": self.code, "message": self.message}
        detail.update(self.details)
        return detail


class TransientNetworkError(PipelineError):
    """Network or provider hiccup; safe to retry with backoff."""

    code = "TRANSIENT_NETWORK_ERROR"
    status_code = 503
    retryable = True


class StoreUnavailableError(TransientNetworkError):
    """The video store could not be written after local retries."""

    code = "STORE_UNAVAILABLE"


class QueueUnavailableError(PipelineError):
    """The queue broker could not be reached."""

    code = "QUEUE_UNAVAILABLE"
    status_code = 503
    retryable = True


class AuthorizationError(PipelineError):
    """Provider credential missing, invalid or expired."""

    code = "PROVIDER_UNAUTHORIZED"
    status_code = 401
    retryable = False


class ValidationError(PipelineError):
    """Malformed input or payload."""

    code = "VALIDATION_ERROR"
    status_code = 400
    retryable = False


class ProviderProcessingError(PipelineError):
    """The provider reported that it could not process the asset."""

    code = "PROVIDER_PROCESSING_FAILED"
    status_code = 502
    retryable = False


class ProcessingTimeoutError(ProviderProcessingError):
    """The provider did not finish within the configured maximum wait."""

    code = "PROVIDER_PROCESSING_TIMEOUT"


class NotFoundError(PipelineError):
    """Video, asset or job does not exist."""

    code = "NOT_FOUND"
    status_code = 404
    retryable = False


class JobConflictError(PipelineError):
    """Another job already owns the video."""

    code = "JOB_CONFLICT"
    status_code = 409
    retryable = False


def is_retryable(error: BaseException) -> bool:
    """Unknown exceptions are retried, pipeline errors say for themselves."""
    return getattr(error, "retryable", True)
