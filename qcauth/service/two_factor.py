"""Two-factor (TOTP) enrollment, verification and removal.

Per-user state is derived from the stored row::

    NOT_ENROLLED -> ENROLLED_PENDING -> ENROLLED_ACTIVE
          ^                                   |
          +------------- disable -------------+

Administrators are exempt: they can never enroll and are never asked for a code.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

import pyotp

from qcauth.logging import get_logger
from qcauth.service.audit import AuditSink
from qcauth.service.errors import (
    AdminExemptError,
    AlreadyEnabledError,
    CannotModifyAdminError,
    InvalidCodeError,
    InvalidPasswordError,
    NotConfiguredError,
    NotFoundError,
    UnauthorizedError,
)
from qcauth.service.passwords import PasswordManager
from qcauth.service.permissions import PermissionEvaluator
from qcauth.service.tokens import ClaimSet
from qcauth.storage.models import Role, User

logger = get_logger(__name__)

SECRET_LENGTH = 32  # base32 chars, 160 bits


class TwoFactorState(str, Enum):
    NOT_ENROLLED = "NOT_ENROLLED"
    ENROLLED_PENDING = "ENROLLED_PENDING"
    ENROLLED_ACTIVE = "ENROLLED_ACTIVE"


def state_of(user: User) -> TwoFactorState:
    if not user.two_factor_secret:
        return TwoFactorState.NOT_ENROLLED
    if user.two_factor_enabled:
        return TwoFactorState.ENROLLED_ACTIVE
    return TwoFactorState.ENROLLED_PENDING


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    provisioning_uri: str

    @property
    def manual_entry_key(self) -> str:
        return self.secret


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    has_secret: bool
    is_admin: bool


class TwoFactorService:
    def __init__(
        self,
        store,
        audit: AuditSink,
        evaluator: PermissionEvaluator,
        passwords: PasswordManager,
        *,
        issuer: str = "Control de Calidad",
        valid_window: int = 2,
        interval: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.audit = audit
        self.evaluator = evaluator
        self.passwords = passwords
        self.issuer = issuer
        self.valid_window = valid_window
        self.interval = interval
        self.clock = clock

    # primitives
    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, interval=self.interval, issuer=self.issuer)

    def verify_code(self, secret: Optional[str], code: Optional[str]) -> bool:
        """Accept codes up to ``valid_window`` steps either side of now."""
        if not secret or not code:
            return False
        candidate = code.strip().replace(" ", "")
        if len(candidate) != 6 or not candidate.isdigit():
            return False
        return self._totp(secret).verify(
            candidate, for_time=int(self.clock()), valid_window=self.valid_window
        )

    def requires_step_up(self, user: User, roles: Iterable[Role]) -> bool:
        if self.evaluator.roles_grant_admin(roles):
            return False
        return bool(user.two_factor_enabled and user.two_factor_secret)

    def _load_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    # self-service
    def status(self, actor: ClaimSet) -> TwoFactorStatus:
        user = self._load_user(actor.user_id)
        return TwoFactorStatus(
            enabled=user.two_factor_enabled,
            has_secret=bool(user.two_factor_secret),
            is_admin=self.evaluator.is_admin(actor),
        )

    def setup(self, actor: ClaimSet) -> TwoFactorSetup:
        if self.evaluator.is_admin(actor):
            raise AdminExemptError("administrators do not use two-factor authentication")
        user = self._load_user(actor.user_id)
        if state_of(user) is TwoFactorState.ENROLLED_ACTIVE:
            raise AlreadyEnabledError("two-factor authentication is already enabled")
        secret = pyotp.random_base32(length=SECRET_LENGTH)
        self.store.set_two_factor_secret(user.id, secret)
        uri = self._totp(secret).provisioning_uri(name=f"{self.issuer} ({user.email})")
        self.audit.record(
            "2fa.setup.initiated",
            "auth",
            user_id=user.id,
            metadata={"userEmail": user.email},
        )
        return TwoFactorSetup(secret=secret, provisioning_uri=uri)

    def enable(self, actor: ClaimSet, code: str) -> TwoFactorState:
        if self.evaluator.is_admin(actor):
            self.audit.record(
                "2fa.verification.failed",
                "auth",
                user_id=actor.user_id,
                metadata={"userEmail": actor.email, "reason": "admin_exempt"},
            )
            raise AdminExemptError("administrators do not use two-factor authentication")
        user = self._load_user(actor.user_id)
        if not user.two_factor_secret:
            self.audit.record(
                "2fa.verification.failed",
                "auth",
                user_id=user.id,
                metadata={"userEmail": user.email, "reason": "not_configured"},
            )
            raise NotConfiguredError("two-factor authentication has not been set up")
        if not self.verify_code(user.two_factor_secret, code):
            self.audit.record(
                "2fa.verification.failed",
                "auth",
                user_id=user.id,
                metadata={"userEmail": user.email, "reason": "invalid_token"},
            )
            raise InvalidCodeError("invalid verification code")
        self.store.enable_two_factor(user.id)
        self.audit.record("2fa.enabled", "auth", user_id=user.id, metadata={"userEmail": user.email})
        return TwoFactorState.ENROLLED_ACTIVE

    def disable(self, actor: ClaimSet, code: str, password: str) -> TwoFactorState:
        """Remove 2FA after re-checking the password and a current code.

        Every failed step is audited with its reason before raising.
        """
        user = self._load_user(actor.user_id)

        def _fail(reason: str, exc: Exception) -> None:
            self.audit.record(
                "2fa.disable.failed",
                "auth",
                user_id=user.id,
                metadata={"userEmail": user.email, "reason": reason},
            )
            raise exc

        if self.evaluator.is_admin(actor):
            _fail("admin_exempt", AdminExemptError("administrators do not use two-factor authentication"))
        if state_of(user) is not TwoFactorState.ENROLLED_ACTIVE:
            _fail("not_enabled", NotConfiguredError("two-factor authentication is not enabled"))
        if not self.passwords.verify(user.id, password or ""):
            _fail("invalid_password", InvalidPasswordError("incorrect password"))
        if not self.verify_code(user.two_factor_secret, code):
            _fail("invalid_token", InvalidCodeError("invalid verification code"))

        self.store.clear_two_factor(user.id)
        self.audit.record("2fa.disabled", "auth", user_id=user.id, metadata={"userEmail": user.email})
        return TwoFactorState.NOT_ENROLLED

    # administrative override
    def admin_disable(self, actor: ClaimSet, target_user_id: str) -> User:
        def _fail(reason: str, exc: Exception, target_email: Optional[str] = None) -> None:
            self.audit.record(
                "2fa.admin.disable.failed",
                "users",
                user_id=actor.user_id,
                resource_id=target_user_id,
                metadata={
                    "targetUserId": target_user_id,
                    "targetUserEmail": target_email,
                    "adminId": actor.user_id,
                    "adminEmail": actor.email,
                    "reason": reason,
                },
            )
            raise exc

        if not self.evaluator.is_admin(actor):
            _fail("not_admin", UnauthorizedError("administrator authority required"))

        target = self.store.get_user(target_user_id)
        if not target:
            _fail("user_not_found", NotFoundError("user not found"))
        if self.evaluator.roles_grant_admin(self.store.list_user_roles(target.id)):
            _fail(
                "target_is_admin",
                CannotModifyAdminError("cannot modify two-factor settings of an administrator"),
                target.email,
            )
        if not target.two_factor_enabled:
            _fail(
                "not_enabled",
                NotConfiguredError("two-factor authentication is not enabled for this user"),
                target.email,
            )

        self.store.clear_two_factor(target.id)
        self.audit.record(
            "2fa.admin.disabled",
            "users",
            user_id=actor.user_id,
            resource_id=target.id,
            metadata={
                "targetUserId": target.id,
                "targetUserEmail": target.email,
                "adminId": actor.user_id,
                "adminEmail": actor.email,
            },
        )
        logger.info("two_factor_admin_disabled", target_user_id=target.id, admin_id=actor.user_id)
        return self.store.get_user(target.id)
