# services/errors.py
from __future__ import annotations

__all__ = [
    "CoreError",
    "ValidationError",
    "RateLimited",
    "Expired",
    "IncorrectCode",
    "Exhausted",
    "NotConfigured",
    "NotFound",
    "UpstreamDeliveryFailure",
]


class CoreError(Exception):
    """
    Base for every error the notification/verification core raises.
    `kind` is the stable machine-readable name the client switches on;
    `status_code` is what the Flask error handler answers with.
    """
    kind = "error"
    status_code = 500
    action_required: str | None = None

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.kind, "message": self.message}
        if self.action_required is not None:
            body["actionRequired"] = self.action_required
        return body


class ValidationError(CoreError):
    kind = "validation_error"
    status_code = 400


class RateLimited(CoreError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, retry_after: int, message: str | None = None):
        super().__init__(message or f"Please wait {retry_after}s before requesting a new code")
        self.retry_after = int(retry_after)

    def to_dict(self) -> dict:
        return {**super().to_dict(), "retryAfterSeconds": self.retry_after}


class Expired(CoreError):
    kind = "expired"
    status_code = 410
    action_required = "resend_required"

    def __init__(self, message: str | None = None):
        super().__init__(message or "Code expired. Please request a new code.")


class IncorrectCode(CoreError):
    kind = "incorrect_code"
    status_code = 401
    action_required = "none"

    def __init__(self, remaining_attempts: int, message: str | None = None):
        super().__init__(message or "Invalid code")
        self.remaining_attempts = int(remaining_attempts)

    def to_dict(self) -> dict:
        return {**super().to_dict(), "remainingAttempts": self.remaining_attempts}


class Exhausted(CoreError):
    kind = "exhausted"
    status_code = 429
    action_required = "code_regenerated"

    def __init__(self, new_code_sent: bool = True, message: str | None = None):
        super().__init__(message or "Too many attempts. A new code has been sent.")
        self.new_code_sent = bool(new_code_sent)

    def to_dict(self) -> dict:
        return {**super().to_dict(), "remainingAttempts": 0, "newCodeSent": self.new_code_sent}


class NotConfigured(CoreError):
    kind = "not_configured"
    status_code = 503


class NotFound(CoreError):
    kind = "not_found"
    status_code = 404


class UpstreamDeliveryFailure(CoreError):
    """Push endpoint transport error. Never rendered to end users."""
    kind = "upstream_delivery_failure"
    status_code = 502

    def __init__(self, message: str | None = None, *, status: int | None = None, gone: bool = False,
                 transient: bool = False):
        super().__init__(message or "push delivery failed")
        self.status = status
        self.gone = gone
        self.transient = transient
