from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from qcauth.logging import get_logger
from qcauth.service.audit import AuditSink
from qcauth.service.email import EmailService
from qcauth.service.errors import (
    AccountInactiveError,
    ErrorKind,
    InvalidCodeError,
    InvalidCredentialsError,
    TokenExpiredError,
    TokenInvalidError,
    TokenUsedError,
    UnauthenticatedError,
    ValidationError,
)
from qcauth.service.passwords import PasswordManager
from qcauth.service.permissions import PermissionEvaluator
from qcauth.service.rbac import RbacService
from qcauth.service.tokens import ClaimSet, IssuedToken, RoleClaim, SessionTokenIssuer
from qcauth.service.two_factor import TwoFactorService
from qcauth.storage.models import PasswordResetToken, Permission, Role, Session, User

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 32

_RESET_FAILURE_REASONS = {
    ErrorKind.TOKEN_INVALID: "token_invalid",
    ErrorKind.TOKEN_EXPIRED: "token_expired",
    ErrorKind.TOKEN_USED: "token_used",
    ErrorKind.ACCOUNT_INACTIVE: "user_inactive",
}


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    user: User
    roles: Tuple[Role, ...]
    permissions: Tuple[Permission, ...]
    is_admin: bool
    requires_2fa: bool

    def to_claims(self, session_id: Optional[str] = None) -> ClaimSet:
        return ClaimSet(
            user_id=self.user.id,
            email=self.user.email,
            name=self.user.display_name,
            username=self.user.username,
            roles=tuple(
                RoleClaim(id=r.id, name=r.name, display_name=r.display_name, level=r.level)
                for r in self.roles
            ),
            permissions=tuple(p.name for p in self.permissions),
            two_factor_enabled=self.user.two_factor_enabled,
            requires_2fa=self.requires_2fa,
            session_id=session_id,
        )


@dataclass(frozen=True)
class LoginResult:
    token: IssuedToken
    session: Session

    @property
    def claims(self) -> ClaimSet:
        return self.token.claims


@dataclass(frozen=True)
class TwoFactorRequirement:
    requires_2fa: bool
    is_admin: bool
    two_factor_enabled: bool


class AuthService:
    """Credential checks, session minting and the password reset flow."""

    def __init__(
        self,
        store,
        *,
        rbac: RbacService,
        audit: AuditSink,
        passwords: PasswordManager,
        two_factor: TwoFactorService,
        tokens: SessionTokenIssuer,
        evaluator: PermissionEvaluator,
        email: Optional[EmailService] = None,
        reset_ttl_minutes: int = 60,
        rehydrate_on_refresh: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.rbac = rbac
        self.audit = audit
        self.passwords = passwords
        self.two_factor = two_factor
        self.tokens = tokens
        self.evaluator = evaluator
        self.email = email or EmailService()
        self.reset_ttl = timedelta(minutes=reset_ttl_minutes)
        self.rehydrate_on_refresh = rehydrate_on_refresh
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    # credential authenticator
    def principal_for(self, user: User) -> AuthenticatedPrincipal:
        access = self.rbac.effective_access(user.id)
        return AuthenticatedPrincipal(
            user=user,
            roles=access.roles,
            permissions=access.permissions,
            is_admin=self.evaluator.roles_grant_admin(access.roles),
            requires_2fa=self.two_factor.requires_step_up(user, access.roles),
        )

    def authenticate(self, identifier: str, password: str) -> AuthenticatedPrincipal:
        """Verify email-or-username plus password.

        Unknown account, inactive account, missing hash and wrong password all
        raise the same ``InvalidCredentialsError``.
        """
        identifier = (identifier or "").strip()
        user = self.store.find_active_user(identifier) if identifier else None
        if user is None and "@" in identifier:
            user = self.store.find_active_user(identifier.lower())
        if not self.passwords.verify(user.id if user else None, password or ""):
            raise InvalidCredentialsError("invalid credentials")
        if self.passwords.needs_rehash(user.id):
            self.passwords.set_password(user.id, password)
        return self.principal_for(user)

    def _authenticate_audited(
        self, identifier: str, password: str, *, ip_address: Optional[str]
    ) -> AuthenticatedPrincipal:
        try:
            return self.authenticate(identifier, password)
        except InvalidCredentialsError:
            self.audit.record(
                "auth.login.failed",
                "auth",
                metadata={"reason": "invalid_credentials"},
                ip_address=ip_address,
            )
            logger.warning("login_failed", reason="invalid_credentials")
            raise

    # session issuance
    def _mint(
        self,
        principal: AuthenticatedPrincipal,
        *,
        user_agent: Optional[str],
        ip_address: Optional[str],
        method: str,
    ) -> LoginResult:
        session = self.store.create_session(
            principal.user.id,
            ttl_minutes=self.tokens.ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_address,
        )
        issued = self.tokens.mint(principal.to_claims(session.id), now=self._now())
        self.store.record_login(principal.user.id, self._now())
        self.audit.record(
            "auth.login.success",
            "auth",
            user_id=principal.user.id,
            metadata={"method": method},
            ip_address=ip_address,
        )
        logger.info("login_succeeded", user_id=principal.user.id, method=method)
        return LoginResult(token=issued, session=session)

    def login(
        self,
        identifier: str,
        password: str,
        *,
        code: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        principal = self._authenticate_audited(identifier, password, ip_address=ip_address)
        if principal.requires_2fa:
            if not code:
                raise InvalidCodeError(
                    "two-factor code required", detail={"requires2FA": True}
                )
            if not self.two_factor.verify_code(principal.user.two_factor_secret, code):
                self.audit.record(
                    "2fa.login.failed",
                    "auth",
                    user_id=principal.user.id,
                    metadata={"reason": "invalid_token"},
                    ip_address=ip_address,
                )
                raise InvalidCodeError("invalid verification code")
        return self._mint(
            principal,
            user_agent=user_agent,
            ip_address=ip_address,
            method="password+totp" if principal.requires_2fa else "password",
        )

    def check_two_factor_required(self, identifier: str, password: str) -> TwoFactorRequirement:
        principal = self.authenticate(identifier, password)
        if principal.is_admin:
            return TwoFactorRequirement(requires_2fa=False, is_admin=True, two_factor_enabled=False)
        return TwoFactorRequirement(
            requires_2fa=principal.requires_2fa,
            is_admin=False,
            two_factor_enabled=principal.user.two_factor_enabled,
        )

    def verify_login_two_factor(
        self,
        identifier: str,
        password: str,
        code: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Second login step: password and code are re-checked together.

        Non-enrolled accounts, administrators and bad codes all fail with the
        same ``InvalidCodeError`` so the caller cannot tell them apart.
        """
        principal = self._authenticate_audited(identifier, password, ip_address=ip_address)
        reason = None
        if not principal.requires_2fa:
            reason = "admin_exempt" if principal.is_admin else "not_enabled"
        elif not self.two_factor.verify_code(principal.user.two_factor_secret, code):
            reason = "invalid_token"
        if reason:
            self.audit.record(
                "2fa.login.failed",
                "auth",
                user_id=principal.user.id,
                metadata={"reason": reason},
                ip_address=ip_address,
            )
            raise InvalidCodeError("invalid verification code")
        self.audit.record(
            "2fa.login.success",
            "auth",
            user_id=principal.user.id,
            ip_address=ip_address,
        )
        return self._mint(
            principal, user_agent=user_agent, ip_address=ip_address, method="password+totp"
        )

    # per-request validation
    def authenticate_token(self, token: Optional[str]) -> ClaimSet:
        claims = self.tokens.validate(token)
        if not claims.session_id:
            raise UnauthenticatedError("invalid session token")
        session = self.store.get_session(claims.session_id)
        if session is None or session.user_id != claims.user_id:
            raise UnauthenticatedError("session revoked")
        if session.is_expired(self._now()):
            raise UnauthenticatedError("session expired")
        return claims

    def logout(self, claims: ClaimSet) -> None:
        if claims.session_id:
            self.store.revoke_session(claims.session_id)
        self.audit.record("auth.logout", "auth", user_id=claims.user_id)

    def refresh(
        self,
        claims: ClaimSet,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        """Rotate the session row and re-sign the claims.

        The snapshot is reused unchanged unless re-hydration is enabled.
        """
        snapshot = claims
        if self.rehydrate_on_refresh:
            user = self.store.get_user(claims.user_id)
            if user is None or not user.is_active:
                raise UnauthenticatedError("account no longer active")
            snapshot = self.principal_for(user).to_claims()
        if claims.session_id:
            self.store.revoke_session(claims.session_id)
        session = self.store.create_session(
            claims.user_id,
            ttl_minutes=self.tokens.ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_address,
        )
        issued = self.tokens.refresh(snapshot.with_session(session.id), now=self._now())
        return LoginResult(token=issued, session=session)

    # password reset
    def request_password_reset(self, email: str, *, ip_address: Optional[str] = None) -> None:
        """Issue a reset token when the account exists and is active.

        Always returns normally so callers cannot probe for accounts.
        """
        normalized = (email or "").strip().lower()
        if not normalized:
            raise ValidationError("email is required")
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self.audit.record(
                "password.reset.attempt",
                "auth",
                metadata={"email": normalized, "result": "email_not_found"},
                ip_address=ip_address,
            )
            return
        if not user.is_active:
            self.audit.record(
                "password.reset.attempt",
                "auth",
                user_id=user.id,
                metadata={
                    "email": normalized,
                    "result": "user_inactive",
                    "userStatus": user.status.value,
                },
                ip_address=ip_address,
            )
            return
        token = secrets.token_hex(RESET_TOKEN_BYTES)
        expires_at = self._now() + self.reset_ttl
        self.store.replace_password_reset_token(user.id, token, expires_at)
        self.audit.record(
            "password.reset.requested",
            "auth",
            user_id=user.id,
            metadata={
                "email": normalized,
                "tokenGenerated": True,
                "expiresAt": expires_at.isoformat(),
            },
            ip_address=ip_address,
        )
        self.email.send_password_reset(
            user.email, token, ttl_minutes=int(self.reset_ttl.total_seconds() // 60)
        )

    def _live_reset_token(self, token: str) -> Tuple[PasswordResetToken, User]:
        row = self.store.get_password_reset_token(token) if token else None
        if row is None:
            raise TokenInvalidError("invalid or expired token")
        if self._now() >= row.expires_at:
            raise TokenExpiredError("token has expired")
        if row.used_at is not None:
            raise TokenUsedError("token has already been used")
        user = self.store.get_user(row.user_id)
        if user is None or not user.is_active:
            raise AccountInactiveError("account is not active")
        return row, user

    def verify_reset_token(self, token: str) -> PasswordResetToken:
        row, _ = self._live_reset_token(token)
        return row

    def _reset_failed(
        self,
        token: str,
        reason: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        self.audit.record(
            "password.reset.failed",
            "auth",
            user_id=user_id,
            metadata={"reason": reason, "tokenUsed": token[:8] + "..."},
            ip_address=ip_address,
        )

    def reset_password(
        self, token: str, new_password: str, *, ip_address: Optional[str] = None
    ) -> User:
        if not token or not new_password:
            raise ValidationError("token and password are required")
        if len(new_password) < self.passwords.min_length:
            raise ValidationError(
                f"password must be at least {self.passwords.min_length} characters",
                detail={"field": "password", "min_length": self.passwords.min_length},
            )
        try:
            row, user = self._live_reset_token(token)
        except (TokenInvalidError, TokenExpiredError, TokenUsedError, AccountInactiveError) as exc:
            stale = self.store.get_password_reset_token(token)
            self._reset_failed(
                token,
                _RESET_FAILURE_REASONS[exc.kind],
                user_id=stale.user_id if stale else None,
                ip_address=ip_address,
            )
            raise
        if not self.store.mark_password_reset_used(token, self._now()):
            self._reset_failed(token, "token_used", user_id=user.id, ip_address=ip_address)
            raise TokenUsedError("token has already been used")
        self.passwords.set_password(user.id, new_password)
        revoked = self.store.revoke_user_sessions(user.id)
        self.audit.record(
            "password.reset.completed",
            "auth",
            user_id=user.id,
            metadata={"email": user.email, "tokenUsed": token[:8] + "..."},
            ip_address=ip_address,
        )
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
