from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    name: Optional[str] = None
    status: UserStatus = UserStatus.ACTIVE
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def display_name(self) -> str:
        return self.name or self.username or self.email


@dataclass
class Role:
    id: str
    name: str
    display_name: str
    level: int
    description: Optional[str] = None
    is_system: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    name: str
    display_name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RolePermission:
    role_id: str
    permission_id: str


@dataclass(frozen=True)
class UserRole:
    user_id: str
    role_id: str
    assigned_by: Optional[str] = None
    assigned_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """Server-side row backing a minted token; deleting it revokes the token."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class PasswordResetToken:
    token: str
    user_id: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    user_id: Optional[str]
    action: str
    resource: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    resource_id: Optional[str] = None
