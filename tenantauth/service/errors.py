from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
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


class InvalidCredentialsError(AuthenticationError):
    """Login rejected. The message never says whether the email exists."""

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Session has expired and cannot be recovered without a new login (401)."""

    def __init__(self, message: str = "session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshCredentialError(AuthenticationError):
    """Refresh credential could not be redeemed (401)."""


class RefreshExpiredError(RefreshCredentialError):
    def __init__(self, message: str = "refresh credential expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshNotFoundError(RefreshCredentialError):
    def __init__(self, message: str = "refresh credential not recognized", **kwargs) -> None:
        super().__init__(message, **kwargs)


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


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServiceError):
    """Deployment is misconfigured, e.g. the signing secret is missing (503).

    The message is for operators; callers only ever see a generic
    service-unavailable response.
    """
    status_code = 503
    error_code = "service_unavailable"


class TransientIOError(ServiceError):
    """Store or network failure that may succeed on retry (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionExpiredError",
    "RefreshCredentialError",
    "RefreshExpiredError",
    "RefreshNotFoundError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ConfigurationError",
    "TransientIOError",
]
