"""Exception hierarchy for guest authorization.

Each error carries the HTTP status the API layer renders it with, so
service code can raise without importing FastAPI.
"""

from datetime import datetime


class GuestgateError(Exception):
    """Base exception for Guestgate."""

    status_code = 500
    error = "GuestgateError"

    def __init__(self, message: str, detail: dict | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message, "detail": self.detail}


class ValidationError(GuestgateError):
    """400: malformed email, MAC address, name or code."""

    status_code = 400
    error = "ValidationError"


DISPOSABLE_EMAIL_MESSAGE = (
    "Disposable email addresses are not allowed. Please use a permanent email address."
)


class DisposableEmailError(ValidationError):
    """400: the email belongs to a throwaway mail provider."""

    reason = "disposable_email_blocked"

    def __init__(self, message: str = DISPOSABLE_EMAIL_MESSAGE):
        super().__init__(message, {"reason": self.reason})


class CodeMismatchError(GuestgateError):
    """400: submitted code was wrong, exhausted or has no live row.

    ``status`` is one of ``wrong``, ``exhausted`` or ``expired``.
    """

    status_code = 400
    error = "CodeMismatch"

    def __init__(self, status: str, message: str, remaining_attempts: int | None = None):
        self.status = status
        self.remaining_attempts = remaining_attempts
        detail: dict = {"status": status}
        if remaining_attempts is not None:
            detail["remaining_attempts"] = remaining_attempts
        super().__init__(message, detail)


class RateLimitExceeded(GuestgateError):
    """429: too many attempts; ``locked_until`` is set for lockouts."""

    status_code = 429
    error = "RateLimitExceeded"

    def __init__(
        self,
        message: str,
        retry_after: int = 60,
        locked_until: datetime | None = None,
    ):
        self.retry_after = retry_after
        self.locked_until = locked_until
        detail: dict = {"retry_after": retry_after}
        if locked_until is not None:
            detail["locked_until"] = locked_until.isoformat()
        super().__init__(message, detail)


class AuthenticationError(GuestgateError):
    status_code = 401
    error = "AuthenticationError"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(GuestgateError):
    status_code = 404
    error = "NotFoundError"

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class ControllerUnavailable(GuestgateError):
    """503: the network controller refused or could not be reached.

    Raised only when offline authorization is disabled. No datastore write
    has happened when this is raised.
    """

    status_code = 503
    error = "NetworkAuthorizationFailed"

    RECOVERY_STEPS = (
        "Make sure you are still connected to the guest WiFi network",
        "Wait a moment and try again",
        "If the problem persists, contact the network administrator",
    )

    def __init__(self, message: str = "Network authorization failed"):
        self.recovery_steps = list(self.RECOVERY_STEPS)
        super().__init__(message, {"recovery_steps": self.recovery_steps})


class InternalError(GuestgateError):
    """500: datastore or identity failures (no internals exposed)."""

    status_code = 500
    error = "InternalError"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
