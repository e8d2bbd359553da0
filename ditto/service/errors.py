from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Too many attempts (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidPhoneFormat(ValidationError):
    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or "Please provide a valid phone number in international format (e.g., +1234567890)",
            detail={"field": "phone"},
        )


class InvalidCode(ValidationError):
    """Submitted code is wrong, expired or was never issued."""

    def __init__(self, message: str = "Invalid or expired verification code") -> None:
        super().__init__(message)


class AccountLocked(RateLimitedError):
    """Phone is locked out after repeated failed code attempts."""

    def __init__(self, minutes: int, message: Optional[str] = None) -> None:
        self.minutes = minutes
        super().__init__(
            message or f"Account temporarily locked. Try again in {minutes} minutes.",
            detail={"retry_after_minutes": minutes},
        )


class UserNotFound(NotFoundError):
    def __init__(self, message: str = "User not found") -> None:
        super().__init__(message)


class InvalidRefreshToken(AuthenticationError):
    def __init__(self, message: str = "Invalid refresh token") -> None:
        super().__init__(message)


class InvalidProviderToken(AuthenticationError):
    def __init__(self, provider: str, message: Optional[str] = None) -> None:
        self.provider = provider
        super().__init__(
            message or f"Invalid {provider} token",
            detail={"provider": provider},
        )


class UnsupportedProvider(ValidationError):
    def __init__(self, provider: str, message: Optional[str] = None) -> None:
        self.provider = provider
        super().__init__(
            message or "Only Google Sign-In is currently supported",
            detail={"provider": provider},
        )


class SocialAuthFailed(ServerError):
    def __init__(self, message: str = "Social authentication failed") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "InvalidPhoneFormat",
    "InvalidCode",
    "AccountLocked",
    "UserNotFound",
    "InvalidRefreshToken",
    "InvalidProviderToken",
    "UnsupportedProvider",
    "SocialAuthFailed",
]
