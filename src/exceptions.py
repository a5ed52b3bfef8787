"""Custom exceptions for the render service.

Every error carries a machine-readable code from ``ERROR_CODES``; the worker
uses the code's retryability to decide whether a failed attempt is retried,
and the HTTP layer uses ``status_code`` and ``to_error_info()`` for responses.
"""

from src.constants.error_codes import get_error_spec
from src.schemas.envelope import ErrorInfo, ErrorLocation


class ScenecastError(Exception):
    """Base exception for all render service errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return bool(get_error_spec(self.code).get("retryable", False))

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            message=self.message,
            location=self.location,
            retryable=self.retryable,
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
        )


# =============================================================================
# Input errors (400)
# =============================================================================


class ValidationError(ScenecastError):
    """Malformed project or layer data. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Invalid project data"

    def __init__(
        self,
        message: str | None = None,
        *,
        scene_id: str | None = None,
        layer_id: str | None = None,
        field: str | None = None,
        code: str | None = None,
    ):
        location = None
        if scene_id or layer_id or field:
            location = ErrorLocation(scene_id=scene_id, layer_id=layer_id, field=field)
        super().__init__(message, code=code, location=location)


# =============================================================================
# Execution errors (retried within the job's attempt budget)
# =============================================================================


class ExecutionError(ScenecastError):
    """External tool failure or timeout while rendering a scene."""

    code = "EXECUTION_FAILED"
    status_code = 500
    message = "Scene render failed"


class MediaFetchError(ExecutionError):
    """A layer source could not be fetched into the working directory."""

    code = "MEDIA_FETCH_FAILED"
    status_code = 502
    message = "Failed to fetch layer media"

    def __init__(self, message: str | None = None, *, layer_id: str | None = None):
        location = ErrorLocation(layer_id=layer_id) if layer_id else None
        super().__init__(message, location=location)


class ConcatenationError(ScenecastError):
    """Final assembly of scene outputs failed."""

    code = "CONCATENATION_FAILED"
    status_code = 500
    message = "Scene concatenation failed"


class PublishError(ScenecastError):
    """The object store was unreachable or rejected the upload."""

    code = "PUBLISH_FAILED"
    status_code = 502
    message = "Failed to publish render output"


# =============================================================================
# Control-plane errors
# =============================================================================


class JobNotFoundError(ScenecastError):
    """Render job not found."""

    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Render job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Render job not found: {job_id}" if job_id else self.message
        super().__init__(message)


class JobAlreadyTerminalError(ScenecastError):
    """The job already reached completed, failed or cancelled."""

    code = "JOB_ALREADY_TERMINAL"
    status_code = 409
    message = "Render job already finished"

    def __init__(self, job_id: str | None = None, status: str | None = None):
        if job_id and status:
            message = f"Render job {job_id} is already {status}"
        else:
            message = self.message
        super().__init__(message)
        self.job_status = status


class JobCancelledError(ScenecastError):
    """Raised inside a worker when the job it is running gets cancelled."""

    code = "JOB_CANCELLED"
    status_code = 409
    message = "Render job was cancelled"
