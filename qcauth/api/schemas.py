from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from qcauth.logging import get_correlation_id
from qcauth.service.errors import ErrorKind

MAX_IDENTIFIER_LENGTH = 254
MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width characters and apply NFKC so look-alike identifiers collapse."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the stable error kinds."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# requests
class LoginRequest(BaseModel):
    username: str = Field(
        ...,
        min_length=1,
        max_length=MAX_IDENTIFIER_LENGTH,
        validation_alias=AliasChoices("username", "email", "identifier"),
    )
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    code: Optional[str] = Field(
        default=None, max_length=10, validation_alias=AliasChoices("code", "totpCode")
    )

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class TwoFactorCheckRequest(BaseModel):
    username: str = Field(
        ...,
        min_length=1,
        max_length=MAX_IDENTIFIER_LENGTH,
        validation_alias=AliasChoices("username", "email", "identifier"),
    )
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class TwoFactorLoginVerifyRequest(TwoFactorCheckRequest):
    code: str = Field(
        ..., min_length=1, max_length=10, validation_alias=AliasChoices("code", "token")
    )


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(
        ..., min_length=1, max_length=10, validation_alias=AliasChoices("code", "token")
    )


class TwoFactorDisableRequest(BaseModel):
    code: str = Field(..., max_length=10, validation_alias=AliasChoices("code", "token"))
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=MAX_IDENTIFIER_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=256)
    password: str = Field(
        ...,
        max_length=MAX_PASSWORD_LENGTH,
        validation_alias=AliasChoices("password", "newPassword", "new_password"),
    )


class VerifyResetTokenRequest(BaseModel):
    token: str = Field(..., max_length=256)


class RoleCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=128, alias="displayName")
    level: int = Field(..., ge=0, le=1000)
    description: Optional[str] = Field(default=None, max_length=1024)
    permission_ids: List[str] = Field(default_factory=list, alias="permissionIds")


class RoleUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    display_name: Optional[str] = Field(
        default=None, min_length=1, max_length=128, alias="displayName"
    )
    level: Optional[int] = Field(default=None, ge=0, le=1000)
    description: Optional[str] = Field(default=None, max_length=1024)
    permission_ids: Optional[List[str]] = Field(default=None, alias="permissionIds")


# responses
class SessionResponse(_CamelModel):
    token: str
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_at: datetime = Field(..., alias="expiresAt")
    expires_in: int = Field(..., alias="expiresIn")
    user: Dict[str, Any]


class TwoFactorRequirementResponse(_CamelModel):
    requires_2fa: bool = Field(..., alias="requires2FA")
    is_admin: bool = Field(..., alias="isAdmin")


class TwoFactorStatusResponse(_CamelModel):
    enabled: bool
    has_secret: bool = Field(..., alias="hasSecret")
    is_admin: bool = Field(..., alias="isAdmin")


class TwoFactorSetupResponse(_CamelModel):
    secret: str
    qr_code: str = Field(..., alias="qrCode")
    manual_entry_key: str = Field(..., alias="manualEntryKey")


class PermissionResponse(_CamelModel):
    id: str
    name: str
    display_name: str = Field(..., alias="displayName")
    resource: str
    action: str
    description: Optional[str] = None


class RoleResponse(_CamelModel):
    id: str
    name: str
    display_name: str = Field(..., alias="displayName")
    level: int
    description: Optional[str] = None
    is_system: bool = Field(..., alias="isSystem")
    is_protected: bool = Field(..., alias="isProtected")
    user_count: int = Field(..., alias="userCount")
    permissions: List[PermissionResponse] = Field(default_factory=list)
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class IdleConfigResponse(_CamelModel):
    timeout_ms: int = Field(..., alias="timeoutMs")
    warning_ms: int = Field(..., alias="warningMs")
    countdown_step_ms: int = Field(..., alias="countdownStepMs")
    events: List[str]
