from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable failure kinds raised by the auth core.

    The value is the machine-readable code placed in the error envelope.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_CODE = "invalid_code"
    INVALID_PASSWORD = "invalid_password"
    ADMIN_EXEMPT = "admin_exempt"
    ALREADY_ENABLED = "already_enabled"
    NOT_CONFIGURED = "not_configured"
    CANNOT_MODIFY_ADMIN = "cannot_modify_admin"
    CANNOT_MODIFY_PROTECTED_ROLE = "cannot_modify_protected_role"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_USED = "token_used"
    TOKEN_INVALID = "token_invalid"
    ACCOUNT_INACTIVE = "account_inactive"
    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    VALIDATION_ERROR = "validation_error"
    INTERNAL_ERROR = "internal_error"


_DEFAULT_STATUS = {
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.INVALID_CODE: 400,
    ErrorKind.INVALID_PASSWORD: 400,
    ErrorKind.ADMIN_EXEMPT: 403,
    ErrorKind.ALREADY_ENABLED: 400,
    ErrorKind.NOT_CONFIGURED: 400,
    ErrorKind.CANNOT_MODIFY_ADMIN: 400,
    ErrorKind.CANNOT_MODIFY_PROTECTED_ROLE: 400,
    ErrorKind.TOKEN_EXPIRED: 400,
    ErrorKind.TOKEN_USED: 400,
    ErrorKind.TOKEN_INVALID: 400,
    ErrorKind.ACCOUNT_INACTIVE: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.INTERNAL_ERROR: 500,
}


def default_status(kind: ErrorKind) -> int:
    return _DEFAULT_STATUS[kind]


class ServiceError(Exception):
    """Base class for failures raised by the service layer.

    Every error carries an explicit ``kind``; the HTTP boundary decides the
    status code and whether the message is safe to show to the caller.
    """

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.status_code = status_code or default_status(self.kind)
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class InvalidCredentialsError(ServiceError):
    kind = ErrorKind.INVALID_CREDENTIALS


class InvalidCodeError(ServiceError):
    kind = ErrorKind.INVALID_CODE


class InvalidPasswordError(ServiceError):
    kind = ErrorKind.INVALID_PASSWORD


class AdminExemptError(ServiceError):
    """Administrators never enroll in 2FA."""

    kind = ErrorKind.ADMIN_EXEMPT


class AlreadyEnabledError(ServiceError):
    kind = ErrorKind.ALREADY_ENABLED


class NotConfiguredError(ServiceError):
    kind = ErrorKind.NOT_CONFIGURED


class CannotModifyAdminError(ServiceError):
    kind = ErrorKind.CANNOT_MODIFY_ADMIN


class CannotModifyProtectedRoleError(ServiceError):
    kind = ErrorKind.CANNOT_MODIFY_PROTECTED_ROLE


class TokenExpiredError(ServiceError):
    kind = ErrorKind.TOKEN_EXPIRED


class TokenUsedError(ServiceError):
    kind = ErrorKind.TOKEN_USED


class TokenInvalidError(ServiceError):
    kind = ErrorKind.TOKEN_INVALID


class AccountInactiveError(ServiceError):
    kind = ErrorKind.ACCOUNT_INACTIVE


class UnauthenticatedError(ServiceError):
    """Missing, malformed, expired or revoked session token (401)."""

    kind = ErrorKind.UNAUTHENTICATED


class UnauthorizedError(ServiceError):
    """Authenticated but lacking the required permission (403)."""

    kind = ErrorKind.UNAUTHORIZED


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    kind = ErrorKind.CONFLICT


class RateLimitedError(ServiceError):
    kind = ErrorKind.RATE_LIMITED


class ValidationError(ServiceError):
    kind = ErrorKind.VALIDATION_ERROR


class InternalError(ServiceError):
    kind = ErrorKind.INTERNAL_ERROR


__all__ = [
    "ErrorKind",
    "default_status",
    "ServiceError",
    "InvalidCredentialsError",
    "InvalidCodeError",
    "InvalidPasswordError",
    "AdminExemptError",
    "AlreadyEnabledError",
    "NotConfiguredError",
    "CannotModifyAdminError",
    "CannotModifyProtectedRoleError",
    "TokenExpiredError",
    "TokenUsedError",
    "TokenInvalidError",
    "AccountInactiveError",
    "UnauthenticatedError",
    "UnauthorizedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ValidationError",
    "InternalError",
]
