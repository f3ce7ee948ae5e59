"""
Error taxonomy for the auth core.

Credential and token failures carry fixed messages so responses never reveal
which check failed (unknown email vs. wrong password, bad signature vs. expiry).
Validation, permission and rate limit errors are reported as raised.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class AuthError(Exception):
    status = 400
    code = "BAD_REQUEST"
    default_message = "Bad request"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    status = 401
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials"

    def __init__(self, reason: Optional[str] = None):
        # reason is for the audit trail only and never reaches the client
        self.reason = reason
        super().__init__(self.default_message)


class AccountInactive(InvalidCredentials):
    def __init__(self):
        super().__init__(reason="account_inactive")


class TokenInvalidOrExpired(AuthError):
    status = 401
    code = "INVALID_TOKEN"
    default_message = "Invalid or expired token"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(self.default_message)


class TokenRevoked(TokenInvalidOrExpired):
    def __init__(self):
        super().__init__(reason="revoked")


class ValidationFailed(AuthError):
    status = 400
    code = "VALIDATION_FAILED"
    default_message = "Validation failed"


class RateLimitExceeded(AuthError):
    status = 429
    code = "RATE_LIMITED"
    default_message = "Too many requests, please try again later"

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        self.retry_after = max(0, int(retry_after))
        super().__init__(message, details={"retry_after": self.retry_after})


class PermissionDenied(AuthError):
    status = 403
    code = "FORBIDDEN"
    default_message = "Insufficient permissions"


class ResourceNotFound(AuthError):
    status = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class Conflict(AuthError):
    status = 409
    code = "CONFLICT"
    default_message = "Conflict"
