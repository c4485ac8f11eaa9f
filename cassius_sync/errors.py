from typing import Optional


class AppError(Exception):
    """Domain failure carrying the HTTP status it maps to."""

    def __init__(self, message: str, status_code: int = 500, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    def to_dict(self):
        return {
            "success": False,
            "error": self.message,
            "code": self.code
        }


class NotFoundError(AppError):
    def __init__(self, resource: str, resource_id: Optional[str] = None):
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message, 404, "NOT_FOUND")


class ValidationError(AppError):
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, 400, "VALIDATION_ERROR")
        self.details = details or {}


class UnreadableFileError(AppError):
    """The uploaded file could not be read at all; blocks the import wizard."""

    def __init__(self, message: str):
        super().__init__(message, 400, "UNREADABLE_FILE")


class JobStateError(AppError):
    def __init__(self, message: str):
        super().__init__(message, 409, "JOB_STATE")


class StaleJobError(AppError):
    """Content changed between validate and run; the user must re-validate."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Import job {job_id} content changed since validation, validate again",
            409,
            "STALE_JOB"
        )
        self.job_id = job_id


class IntegrationNotConfiguredError(AppError):
    def __init__(self, message: str = "Google Calendar integration is not configured"):
        super().__init__(message, 400, "NOT_CONFIGURED")


class AuthExpiredError(AppError):
    """Stored Google token is no longer usable; requires a new connect."""

    def __init__(self, message: str = "Google authorization expired, reconnect the calendar"):
        super().__init__(message, 401, "AUTH_EXPIRED")


class RetryableError(AppError):
    def __init__(self, message: str, status_code: int = 503, code: str = "RETRYABLE"):
        super().__init__(message, status_code, code)


class RateLimitedError(RetryableError):
    def __init__(self, message: str = "Google Calendar rate limit reached", retry_after: Optional[float] = None):
        super().__init__(message, 429, "RATE_LIMITED")
        self.retry_after = retry_after


class CalendarTimeoutError(RetryableError):
    def __init__(self, message: str = "Google Calendar request timed out"):
        super().__init__(message, 504, "TIMEOUT")
