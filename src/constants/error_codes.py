"""Error codes dictionary for the render API.

This is the single source of truth for all error codes and their
retryability. Used by exception handlers to generate machine-readable
error responses.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Input errors (not retryable, fix input)
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
        "suggested_fix": "Fix the project data and submit a new render job",
    },
    "MISSING_LAYER_PAYLOAD": {
        "retryable": False,
        "suggested_fix": "Provide a source for media layers and content for text layers",
    },
    # ==========================================================================
    # Execution errors (retried by the worker)
    # ==========================================================================
    "EXECUTION_FAILED": {
        "retryable": True,
    },
    "EXECUTION_TIMEOUT": {
        "retryable": True,
        "suggested_fix": "Shorten the scene or reduce the number of layers",
    },
    "MEDIA_FETCH_FAILED": {
        "retryable": True,
        "suggested_fix": "Check that every layer source URL is reachable",
    },
    "CONCATENATION_FAILED": {
        "retryable": True,
    },
    "PUBLISH_FAILED": {
        "retryable": True,
    },
    # ==========================================================================
    # Control-plane errors
    # ==========================================================================
    "JOB_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "List your jobs with GET /api/render/jobs",
    },
    "JOB_ALREADY_TERMINAL": {
        "retryable": False,
    },
    "JOB_CANCELLED": {
        "retryable": False,
    },
    "INTERNAL_ERROR": {
        "retryable": True,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Look up an error code, falling back to INTERNAL_ERROR."""
    return ERROR_CODES.get(code, ERROR_CODES["INTERNAL_ERROR"])
