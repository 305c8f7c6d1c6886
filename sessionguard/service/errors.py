from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

# Single message for every token/session failure so callers cannot tell
# which check rejected the token.
GENERIC_SESSION_MESSAGE = "Invalid or expired session"
GENERIC_LOGIN_MESSAGE = "Invalid email or password"


class ServiceError(Exception):
    """Root of every error the token services raise.

    ``status_code`` and ``error_code`` are class defaults a subclass or a
    single raise may override; ``detail`` carries structured context for logs
    and the response envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        self.status_code = status_code or type(self).status_code
        self.error_code = error_code or type(self).error_code

    @property
    def public_message(self) -> str:
        """Message that is safe to return to the caller."""
        return self.message

    def to_envelope(self) -> Dict[str, Any]:
        """Error body in the shape an HTTP layer returns: status plus error object."""
        return {
            "status": "error",
            "error": {
                "code": self.error_code,
                "message": self.public_message,
                "details": self.detail or None,
            },
        }


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidPayloadError(ValidationError):
    """Token claims are missing required fields (400)."""
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthenticationFailedError(AuthenticationError):
    """Bad credentials. Never says whether the user exists."""

    def __init__(self, message: str = GENERIC_LOGIN_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenError(AuthenticationError):
    """A presented token was rejected.

    ``reason`` names the failed check for logs and tests; the public message
    is the same for every reason.
    """

    reason: str = "invalid"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or f"token rejected: {self.reason}", **kwargs)

    @property
    def public_message(self) -> str:
        return GENERIC_SESSION_MESSAGE


class TokenMissingError(TokenError):
    reason = "missing"


class TokenMalformedError(TokenError):
    reason = "malformed"


class TokenExpiredError(TokenError):
    reason = "expired"


class TokenRevokedError(TokenError):
    reason = "revoked"


class TokenWrongKindError(TokenError):
    reason = "wrong_kind"


class SessionNotFoundError(TokenError):
    """Token is structurally valid but no stored session matches it."""
    reason = "session_not_found"


class RateLimitedError(ServiceError):
    """Too many failed login attempts (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many failed login attempts. Account temporarily locked.",
        *,
        retry_after: Optional[int] = None,
        blocked_until: Optional[datetime] = None,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        if retry_after is not None:
            detail = {**detail, "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after
        self.blocked_until = blocked_until


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class RevocationStoreError(ServerError):
    """Both the primary cache and the local fallback failed."""
    pass


__all__ = [
    "GENERIC_SESSION_MESSAGE",
    "GENERIC_LOGIN_MESSAGE",
    "ServiceError",
    "ValidationError",
    "InvalidPayloadError",
    "ConflictError",
    "AuthenticationError",
    "AuthenticationFailedError",
    "TokenError",
    "TokenMissingError",
    "TokenMalformedError",
    "TokenExpiredError",
    "TokenRevokedError",
    "TokenWrongKindError",
    "SessionNotFoundError",
    "RateLimitedError",
    "ServerError",
    "RevocationStoreError",
]
