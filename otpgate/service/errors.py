from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on. ``detail`` carries only the fields the kind
    needs and never internal identifiers.
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


class BadRequestError(ValidationError):
    """Request is well-formed but not allowed in the current state (400)."""
    pass


class InvalidInputError(ValidationError):
    """Malformed email, code or purpose (400)."""
    error_code = "invalid_input"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidOrExpiredOTPError(AuthenticationError):
    """Wrong code, expired code and exhausted attempts all look the same."""
    error_code = "invalid_or_expired_otp"

    def __init__(self, message: str = "Invalid or expired OTP", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionInvalidError(AuthenticationError):
    """Refresh session is unknown, revoked or expired (401)."""
    error_code = "session_invalid"

    def __init__(self, message: str = "Session is invalid or has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class UserInactiveError(ForbiddenError):
    error_code = "user_inactive"

    def __init__(self, message: str = "Account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"

    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A downstream dependency timed out or is unreachable (503, retryable)."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(
        self, message: str = "Service temporarily unavailable", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.detail.setdefault("retryable", True)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidInputError",
    "AuthenticationError",
    "InvalidOrExpiredOTPError",
    "TokenInvalidError",
    "TokenExpiredError",
    "SessionInvalidError",
    "ForbiddenError",
    "UserInactiveError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "ServerError",
    "ServiceUnavailableError",
]
