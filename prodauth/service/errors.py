from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
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


class InvalidCredentials(AuthenticationError):
    """Unknown login, inactive account or wrong password.

    The message never says which factor failed.
    """

    def __init__(self, message: str = "invalid credentials") -> None:
        super().__init__(message)


class InvalidToken(AuthenticationError):
    """Token is malformed, wrongly signed or expired.

    ``reason`` is ``"expired"`` or ``"malformed"``; clients must treat both
    as a request to re-authenticate.
    """

    EXPIRED = "expired"
    MALFORMED = "malformed"

    def __init__(self, reason: str = MALFORMED, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(
            message or ("token expired" if reason == self.EXPIRED else "malformed token"),
            detail={"reason": reason},
        )


class RevokedOrExpired(AuthenticationError):
    """Refresh token is no longer the active one for its lineage."""

    def __init__(self, message: str = "invalid or revoked refresh token") -> None:
        super().__init__(message)


class Unauthenticated(AuthenticationError):
    """No usable access token was presented."""

    def __init__(
        self, message: str = "authentication required", *, reason: Optional[str] = None
    ) -> None:
        super().__init__(message, detail={"reason": reason} if reason else None)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class Forbidden(ForbiddenError):
    """Authenticated but below the required level for module.action."""

    def __init__(
        self,
        module: str,
        action: str,
        required_value: int,
        actual_value: int = 0,
    ) -> None:
        self.permission_key = f"{module}.{action}"
        self.required_value = required_value
        self.actual_value = actual_value
        super().__init__(
            "access forbidden - insufficient permissions",
            detail={
                "required_permission": self.permission_key,
                "required_value": required_value,
                "actual_value": actual_value,
            },
        )


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFound(NotFoundError):
    """User id no longer resolves (e.g. deleted after token issuance)."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("user not found", detail={"user_id": user_id})


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidToken",
    "RevokedOrExpired",
    "Unauthenticated",
    "ForbiddenError",
    "Forbidden",
    "NotFoundError",
    "UserNotFound",
    "ServerError",
]
