from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on. ``detail`` carries the
    actionable context (remaining lock time, attempts left, retry delay).
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    error_code = "session_expired"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are deliberately indistinguishable."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials") -> None:
        super().__init__(message)


class AccountLockedError(ServiceError):
    """Too many failed password attempts (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, remaining_seconds: int) -> None:
        remaining_seconds = max(0, int(remaining_seconds))
        minutes = max(1, -(-remaining_seconds // 60))
        super().__init__(
            f"account locked due to too many failed attempts; try again in {minutes} minutes",
            detail={
                "locked_until": locked_until.isoformat(),
                "remaining_seconds": remaining_seconds,
            },
        )
        self.locked_until = locked_until
        self.remaining_seconds = remaining_seconds


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    error_code = "duplicate_email"

    def __init__(self, message: str = "email already registered") -> None:
        super().__init__(message, detail={"field": "email"})


class DuplicatePhoneError(ConflictError):
    error_code = "duplicate_phone"

    def __init__(self, message: str = "phone number already registered") -> None:
        super().__init__(message, detail={"field": "phone"})


class CodeMismatchError(ServiceError):
    """Submitted verification code did not match (400)."""
    status_code = 400
    error_code = "code_mismatch"

    def __init__(self, attempts_remaining: int) -> None:
        exhausted = attempts_remaining <= 0
        message = (
            "too many incorrect codes; request a new verification code"
            if exhausted
            else "invalid verification code"
        )
        super().__init__(
            message,
            detail={
                "attempts_remaining": max(0, attempts_remaining),
                "reissue_required": exhausted,
            },
        )
        self.attempts_remaining = max(0, attempts_remaining)


class CodeExpiredError(ServiceError):
    """Verification code is past its expiry (400)."""
    status_code = 400
    error_code = "code_expired"

    def __init__(self, message: str = "verification code expired; request a new one") -> None:
        super().__init__(message)


class CodeNotFoundError(CodeExpiredError):
    """No pending verification for this email and purpose."""

    def __init__(self, message: str = "no pending verification code; request a new one") -> None:
        super().__init__(message)


class InvalidOrExpiredTokenError(ServiceError):
    """Reset token unknown, expired or already used (400)."""
    status_code = 400
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired reset token") -> None:
        super().__init__(message)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class TooManyRequestsError(RateLimitedError):
    """A verification code was issued too recently for this address."""

    def __init__(self, retry_after_seconds: int) -> None:
        retry_after_seconds = max(1, int(retry_after_seconds))
        super().__init__(
            f"please wait {retry_after_seconds} seconds before requesting another code",
            detail={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class DeliveryFailedError(ServerError):
    """The secret was generated but could not be dispatched (503)."""
    status_code = 503
    error_code = "delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "DuplicatePhoneError",
    "CodeMismatchError",
    "CodeExpiredError",
    "CodeNotFoundError",
    "InvalidOrExpiredTokenError",
    "RateLimitedError",
    "TooManyRequestsError",
    "ServerError",
    "DeliveryFailedError",
]
