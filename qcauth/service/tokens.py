from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

import jwt

from qcauth.logging import get_logger
from qcauth.service.errors import UnauthenticatedError

JWT_ALGORITHM = "HS256"

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoleClaim:
    id: str
    name: str
    display_name: str
    level: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "displayName": self.display_name,
            "level": self.level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoleClaim":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            display_name=str(data.get("displayName") or data["name"]),
            level=int(data["level"]),
        )


def _dedupe(names: Iterable[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(str(name) for name in names))


@dataclass(frozen=True)
class ClaimSet:
    """Immutable snapshot of a principal, built once at login.

    Permission names are deduplicated on construction, preserving first-seen
    order, so no claim set can ever carry the same permission twice.
    """

    user_id: str
    email: str
    name: str
    username: Optional[str] = None
    roles: Tuple[RoleClaim, ...] = ()
    permissions: Tuple[str, ...] = ()
    two_factor_enabled: bool = False
    requires_2fa: bool = False
    session_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", tuple(self.roles))
        object.__setattr__(self, "permissions", _dedupe(self.permissions))

    def with_session(self, session_id: str) -> "ClaimSet":
        return replace(self, session_id=session_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.user_id,
            "email": self.email,
            "name": self.name,
            "username": self.username,
            "roles": [role.to_dict() for role in self.roles],
            "permissions": list(self.permissions),
            "twoFactorEnabled": self.two_factor_enabled,
            "requires2FA": self.requires_2fa,
        }

    def to_payload(self) -> Dict[str, Any]:
        payload = self.to_dict()
        payload.pop("id")
        payload["sub"] = self.user_id
        if self.session_id:
            payload["sid"] = self.session_id
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ClaimSet":
        return cls(
            user_id=str(payload["sub"]),
            email=str(payload.get("email") or ""),
            name=str(payload.get("name") or ""),
            username=payload.get("username"),
            roles=tuple(RoleClaim.from_dict(r) for r in payload.get("roles") or []),
            permissions=tuple(payload.get("permissions") or []),
            two_factor_enabled=bool(payload.get("twoFactorEnabled", False)),
            requires_2fa=bool(payload.get("requires2FA", False)),
            session_id=payload.get("sid"),
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    claims: ClaimSet
    expires_in: int = field(default=0)


class SessionTokenIssuer:
    """Signs and validates stateless session tokens (HS256)."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int = 24 * 60,
    ) -> None:
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self.ttl_minutes = ttl_minutes

    def mint(self, claims: ClaimSet, *, now: Optional[datetime] = None) -> IssuedToken:
        issued_at = now or datetime.now(timezone.utc)
        expires_in = self.ttl_minutes * 60
        expires_at = issued_at + timedelta(seconds=expires_in)
        payload = claims.to_payload()
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "iat": int(issued_at.timestamp()),
                "exp": int(expires_at.timestamp()),
                "jti": str(uuid.uuid4()),
            }
        )
        token = jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)
        return IssuedToken(token=token, expires_at=expires_at, claims=claims, expires_in=expires_in)

    def validate(self, token: Optional[str]) -> ClaimSet:
        """Decode ``token``; every failure is reported as unauthenticated."""
        if not token:
            raise UnauthenticatedError("authentication required")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise UnauthenticatedError("session expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.warning("session_token_invalid", error_type=type(exc).__name__)
            raise UnauthenticatedError("invalid session token") from exc
        if not payload.get("sub"):
            raise UnauthenticatedError("invalid session token")
        try:
            return ClaimSet.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise UnauthenticatedError("invalid session token") from exc

    def refresh(self, claims: ClaimSet, *, now: Optional[datetime] = None) -> IssuedToken:
        """Re-sign the same snapshot with a fresh expiry."""
        return self.mint(claims, now=now)


__all__ = [
    "ClaimSet",
    "IssuedToken",
    "JWT_ALGORITHM",
    "RoleClaim",
    "SessionTokenIssuer",
]
