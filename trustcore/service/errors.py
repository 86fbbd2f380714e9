from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for errors surfaced by the authentication core.

    Each class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so adapters can map errors without inspecting messages:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - upstream_error (502)
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
    """Caller supplied malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair rejected; never says which half was wrong."""

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class InvalidTokenError(AuthenticationError):
    """Token failed verification. ``reason`` is ``expired`` or ``invalid``."""

    def __init__(self, message: str = "invalid token", *, reason: str = "invalid") -> None:
        super().__init__(message, detail={"reason": reason})
        self.reason = reason


class InvalidStateError(AuthenticationError):
    """OAuth state unknown, already used, or expired."""

    def __init__(self) -> None:
        super().__init__("invalid state: state not found or expired")


class SessionNotFoundError(AuthenticationError):
    """Session absent or expired."""

    def __init__(self) -> None:
        super().__init__("session not found")


class ForbiddenError(ServiceError):
    """Operation not permitted (403)."""
    status_code = 403
    error_code = "forbidden"


class SignupDisabledError(ForbiddenError):
    def __init__(self) -> None:
        super().__init__("signup is disabled")


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class UserExistsError(ConflictError):
    def __init__(self) -> None:
        super().__init__("user already exists")


class UpstreamError(ServiceError):
    """User store or OAuth provider failed (502). Not retried."""
    status_code = 502
    error_code = "upstream_error"


class ProviderExchangeError(UpstreamError):
    """Provider token/profile exchange failed; terminal for the callback."""


class ProviderNotConfiguredError(UpstreamError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidStateError",
    "SessionNotFoundError",
    "ForbiddenError",
    "SignupDisabledError",
    "ConflictError",
    "UserExistsError",
    "UpstreamError",
    "ProviderExchangeError",
    "ProviderNotConfiguredError",
]
