from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - invalid_credentials (401)
    - token_invalid (401)
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - session_expired (410)
    - account_locked (429)
    - validation_error / invalid_password (400)
    - upstream_unavailable (503)
    - server_error (500)
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


class InvalidPasswordError(ValidationError):
    """Current password wrong or new password confirmation mismatch (400)."""
    error_code = "invalid_password"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Identifier/password pair rejected (401)."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    """Access token malformed, forged or expired; the reason is never exposed (401)."""
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(ServiceError):
    """Refresh token unknown, rotated or expired; the client must log in again (410)."""
    status_code = 410
    error_code = "session_expired"

    def __init__(self, message: str = "session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class IdentifierConflictError(ConflictError):
    """Login identifier already registered (409)."""

    def __init__(self, message: str = "email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed logins for this identifier (429)."""
    status_code = 429
    error_code = "account_locked"

    def __init__(self, remaining_seconds: int, message: str = "account temporarily locked") -> None:
        super().__init__(message, detail={"remaining_seconds": remaining_seconds})
        self.remaining_seconds = remaining_seconds


class UpstreamUnavailableError(ServiceError):
    """Credential store or key-value store unreachable (503)."""
    status_code = 503
    error_code = "upstream_unavailable"

    def __init__(self, message: str = "authentication backend unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "SessionExpiredError",
    "ForbiddenError",
    "ConflictError",
    "IdentifierConflictError",
    "AccountLockedError",
    "UpstreamUnavailableError",
    "ServerError",
]
