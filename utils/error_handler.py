"""
Centralized Error Handling Module for Longshot

Provides the capture error taxonomy, consistent error responses, logging,
and user-friendly messages.
"""

import logging
import traceback
from typing import Dict, Any, Optional
from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger("longshot")


# =============================================================================
# ERROR HINTS - User-friendly troubleshooting suggestions
# =============================================================================

ERROR_HINTS = {
    "TARGET_UNAVAILABLE": {
        "message": "Nothing capturable on this page",
        "hint": "Browser-internal and local file pages cannot be captured. Open a regular web page and try again.",
    },
    "CAPTURE_THROTTLED": {
        "message": "The browser refused screenshots too quickly",
        "hint": "Increase CAPTURE_MIN_INTERVAL_MS or CAPTURE_RETRY_BACKOFF_MS.",
    },
    "CAPACITY_EXCEEDED": {
        "message": "Page is taller than the maximum image height",
        "hint": "The capture was truncated. Capture a region or a site center column instead.",
    },
    "STABILIZATION_TIMEOUT": {
        "message": "Page did not finish expanding in time",
        "hint": "Raise the pre-capture duration or disable pre-capture expansion.",
    },
    "EXPORT_FAILED": {
        "message": "Could not save the capture",
        "hint": "Check that OUTPUT_DIR exists and is writable.",
    },
    "INVALID_MESSAGE": {
        "message": "Malformed request",
        "hint": "Check the message type and its fields.",
    },
    "CAPTURE_ALREADY_ACTIVE": {
        "message": "A capture is already running for this tab",
        "hint": "Wait for it to finish or cancel it first.",
    },
    "CAPTURE_TRUNCATED": {
        "message": "Capture stopped at the maximum image height",
        "hint": "The saved image holds the top of the page. Capture a region for the rest.",
    },
}


class LongshotError(Exception):
    """Base exception for all Longshot errors"""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class TargetUnavailableError(LongshotError):
    """Raised when there is no capturable surface (restricted page, detached container)"""

    def __init__(self, message: str, tab_id: Optional[str] = None):
        super().__init__(
            message, code="TARGET_UNAVAILABLE", details={"tab_id": tab_id}
        )


class CaptureThrottledError(LongshotError):
    """Raised when the host capture rate limit is hit (retryable)"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(
            message, code="CAPTURE_THROTTLED", details={"retry_after": retry_after}
        )


class CapacityExceededError(LongshotError):
    """Raised when an append would push the composite past the raster ceiling"""

    def __init__(self, max_height: int, appended_rows: int = 0):
        super().__init__(
            f"Composite reached the {max_height}px height limit",
            code="CAPACITY_EXCEEDED",
            details={"max_height": max_height, "appended_rows": appended_rows},
        )
        self.max_height = max_height
        self.appended_rows = appended_rows


class StabilizationTimeoutError(LongshotError):
    """Raised when pre-capture stabilization exceeds its budget (non-fatal)"""

    def __init__(self, max_duration_ms: int):
        super().__init__(
            f"Stabilization did not finish within {max_duration_ms}ms",
            code="STABILIZATION_TIMEOUT",
            details={"max_duration_ms": max_duration_ms},
        )


class ExportFailedError(LongshotError):
    """Raised when the encoded output could not be delivered"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, code="EXPORT_FAILED", details={"path": path})


class InvalidMessageError(LongshotError):
    """Raised when a cross-context message fails shape validation"""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(
            message, code="INVALID_MESSAGE", details={"errors": errors or []}
        )


class CaptureAlreadyActiveError(LongshotError):
    """Raised when a capture is requested for a tab that already has one running"""

    def __init__(self, tab_id: str, session_id: str):
        super().__init__(
            "Capture already active for this tab",
            code="CAPTURE_ALREADY_ACTIVE",
            details={"tab_id": tab_id, "session_id": session_id},
        )


class CaptureCancelledError(LongshotError):
    """Raised when a session is cancelled explicitly"""

    def __init__(self, session_id: str):
        super().__init__(
            "Capture cancelled",
            code="CAPTURE_CANCELLED",
            details={"session_id": session_id},
        )


class SessionNotFoundError(LongshotError):
    """Raised when a session or tab is unknown"""

    def __init__(self, session_id: str):
        super().__init__(
            f"Session '{session_id}' not found",
            code="SESSION_NOT_FOUND",
            details={"session_id": session_id},
        )


# Errors whose constructor takes just a message (what ErrorContext can raise)
MESSAGE_ONLY_ERRORS = (
    LongshotError,
    TargetUnavailableError,
    CaptureThrottledError,
    ExportFailedError,
    InvalidMessageError,
)


def create_error_response(
    error: Exception,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    include_traceback: bool = False,
) -> JSONResponse:
    """
    Create a standardized error response

    Args:
        error: The exception that occurred
        status_code: HTTP status code
        include_traceback: Include full traceback in response (debug only)

    Returns:
        JSONResponse with error details
    """
    error_response = {
        "success": False,
        "error": {
            "message": get_user_friendly_message(error),
            "type": error.__class__.__name__,
        },
    }

    if isinstance(error, LongshotError):
        error_response["error"]["code"] = error.code
        error_response["error"]["hint"] = ERROR_HINTS.get(error.code, {}).get("hint", "")

    if include_traceback:
        error_response["error"]["traceback"] = traceback.format_exc()

    logger.error(f"{error.__class__.__name__}: {error}", exc_info=True)

    return JSONResponse(status_code=status_code, content=error_response)


def handle_api_error(error: Exception) -> JSONResponse:
    """
    Handle API errors with appropriate status codes

    Args:
        error: The exception to handle

    Returns:
        JSONResponse with appropriate status code
    """
    if isinstance(error, SessionNotFoundError):
        return create_error_response(error, status.HTTP_404_NOT_FOUND)

    elif isinstance(error, (InvalidMessageError, ValueError)):
        return create_error_response(error, status.HTTP_400_BAD_REQUEST)

    elif isinstance(error, CaptureAlreadyActiveError):
        return create_error_response(error, status.HTTP_409_CONFLICT)

    elif isinstance(error, TargetUnavailableError):
        return create_error_response(error, status.HTTP_400_BAD_REQUEST)

    elif isinstance(error, CaptureThrottledError):
        return create_error_response(error, status.HTTP_429_TOO_MANY_REQUESTS)

    else:
        return create_error_response(error, status.HTTP_500_INTERNAL_SERVER_ERROR)


def get_user_friendly_message(error: Exception) -> str:
    """
    Get a short user-facing summary for an error.

    Internal detail is never included for unexpected errors; it is logged instead.
    """
    if isinstance(error, TargetUnavailableError):
        return f"Cannot capture this page: {error.message}"

    elif isinstance(error, CaptureThrottledError):
        return "The browser kept refusing screenshots. Please try again."

    elif isinstance(error, CapacityExceededError):
        return "Page is too tall; the capture was truncated."

    elif isinstance(error, StabilizationTimeoutError):
        return "Page expansion timed out; captured the page as it was."

    elif isinstance(error, ExportFailedError):
        return "Capture finished but the image could not be saved."

    elif isinstance(error, InvalidMessageError):
        return f"Invalid request: {error.message}"

    elif isinstance(error, (CaptureAlreadyActiveError, CaptureCancelledError, SessionNotFoundError)):
        return error.message

    elif isinstance(error, ValueError):
        return str(error)

    else:
        return "An unexpected error occurred during capture."


def create_success_response(
    data: Any = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a standardized success response

    Usage:
        return create_success_response(data={"sessionId": session_id})
        return create_success_response(message="Config saved")
    """
    response = {"success": True}

    if data is not None:
        response["data"] = data

    if message is not None:
        response["message"] = message

    return response


class ErrorContext:
    """
    Context manager that logs a failed operation and re-raises it as a Longshot error

    Errors that are already LongshotErrors pass through unchanged, and so does
    anything outside `catch` (cancellation included).

    Usage:
        with ErrorContext("writing capture.png", raise_as=ExportFailedError, catch=(OSError,)):
            path.write_bytes(data)
    """

    def __init__(self, operation: str, raise_as: type = None, catch: tuple = (Exception,)):
        raise_as = raise_as or LongshotError
        if raise_as not in MESSAGE_ONLY_ERRORS:
            raise TypeError(f"{raise_as.__name__} cannot be built from a message alone")
        self.operation = operation
        self.raise_as = raise_as
        self.catch = catch

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None or isinstance(exc_val, LongshotError) or not isinstance(exc_val, self.catch):
            return False
        logger.error(f"Error during {self.operation}: {exc_val}", exc_info=True)
        raise self.raise_as(f"Failed {self.operation}: {exc_val}") from exc_val
