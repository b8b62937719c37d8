"""Custom exception hierarchy for shipyard."""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes for API responses and failed jobs."""

    # Request errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    APP_ALREADY_EXISTS = "APP_ALREADY_EXISTS"
    APP_BUSY = "APP_BUSY"

    # Lookup errors
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    APP_NOT_FOUND = "APP_NOT_FOUND"

    # Pipeline errors
    FETCH_FAILED = "FETCH_FAILED"
    COMMAND_FAILED = "COMMAND_FAILED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"

    # Auth
    UNAUTHORIZED = "UNAUTHORIZED"

    # Database errors
    DATABASE_ERROR = "DATABASE_ERROR"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ShipyardException(Exception):
    """
    Base exception for all shipyard errors.

    Provides structured error responses with:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class ValidationError(ShipyardException):
    """Deploy request rejected before a job was created."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )


class AppAlreadyExistsError(ShipyardException):
    """Create requested for a name that is registered or being provisioned."""

    def __init__(self, app_name: str):
        super().__init__(
            f"App already exists: {app_name}",
            ErrorCode.APP_ALREADY_EXISTS,
            status_code=409,
            details={"app_name": app_name}
        )


class AppBusyError(ShipyardException):
    """App is being torn down or rebuilt; the request must wait until that finishes."""

    def __init__(self, app_name: str, activity: str = "being deleted"):
        super().__init__(
            f"App is {activity}: {app_name}",
            ErrorCode.APP_BUSY,
            status_code=409,
            details={"app_name": app_name}
        )


class NotFoundError(ShipyardException):
    """Unknown job or app on query."""


class JobNotFoundError(NotFoundError):

    def __init__(self, job_id: int):
        super().__init__(
            f"Deployment job not found: {job_id}",
            ErrorCode.JOB_NOT_FOUND,
            status_code=404,
            details={"job_id": job_id}
        )


class AppNotFoundError(NotFoundError):

    def __init__(self, app_name: str):
        super().__init__(
            f"App not found: {app_name}",
            ErrorCode.APP_NOT_FOUND,
            status_code=404,
            details={"app_name": app_name}
        )


class AuthenticationError(ShipyardException):
    """Request lacks valid operator credentials."""

    def __init__(self, message: str = "Invalid or missing operator token"):
        super().__init__(
            message,
            ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


# ---------------------------------------------------------------------------
# Pipeline errors: raised inside a job, caught by the queue worker
# ---------------------------------------------------------------------------

class PipelineError(ShipyardException):
    """A pipeline stage failed. ``stage`` names the stage for the job's error message."""

    def __init__(
        self,
        stage: str,
        message: str,
        error_code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code, status_code=500, details=details)
        self.stage = stage

    def job_message(self) -> str:
        return f"{self.stage} failed: {self.message}"


class FetchError(PipelineError):
    """Source unavailable: clone/checkout failure or corrupt archive."""

    def __init__(self, message: str, output: str = ""):
        super().__init__("fetch", message, ErrorCode.FETCH_FAILED, details={"output": output[-2000:]})
        self.output = output


class CommandError(PipelineError):
    """Install or build command exited non-zero or timed out."""

    def __init__(
        self,
        stage: str,
        command: str,
        exit_code: Optional[int],
        output: str = "",
        timed_out: bool = False,
    ):
        if timed_out:
            message = f"`{command}` timed out"
        else:
            message = f"`{command}` exited with code {exit_code}"
        super().__init__(
            stage,
            message,
            ErrorCode.COMMAND_FAILED,
            details={"command": command, "exit_code": exit_code, "timed_out": timed_out},
        )
        self.command = command
        self.exit_code = exit_code
        self.output = output
        self.timed_out = timed_out


class RegistrationError(PipelineError):
    """Process supervisor or reverse proxy rejected the app."""

    def __init__(self, stage: str, message: str):
        super().__init__(stage, message, ErrorCode.REGISTRATION_FAILED)
