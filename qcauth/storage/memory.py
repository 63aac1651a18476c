from __future__ import annotations

import base64
import hashlib
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from cryptography.fernet import Fernet, InvalidToken

from qcauth.logging import get_logger
from qcauth.storage.errors import ConstraintViolation
from qcauth.storage.models import (
    AuditLogEntry,
    PasswordResetToken,
    Permission,
    Role,
    RolePermission,
    Session,
    User,
    UserRole,
    UserStatus,
    utcnow,
)

_ROLE_FIELDS = {"name", "display_name", "description", "level"}


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class MemoryStore:
    """In-process repository used by tests and local development."""

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Set[RolePermission] = set()
        self.user_roles: Dict[Tuple[str, str], UserRole] = {}
        self.sessions: Dict[str, Session] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so compound operations can call other locked helpers
        self._data_lock = threading.RLock()
        self._mfa_cipher = Fernet(derive_cipher_key(mfa_encryption_key))

    def close(self) -> None:
        self.logger.info("memory_store_closed", users=len(self.users))

    # 2fa secret encryption
    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            return secret

    def _public_user(self, user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        return replace(user, two_factor_secret=self._decrypt_secret(user.two_factor_secret))

    # users
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        name: Optional[str] = None,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and any(
                existing.username == username for existing in self.users.values()
            ):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                name=name,
                status=status,
            )
            self.users[user.id] = user
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._public_user(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return self._public_user(user)

    def find_active_user(self, identifier: str) -> Optional[User]:
        """Return the active user whose email or username equals ``identifier``."""
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.status == UserStatus.ACTIVE
                    and (u.email == identifier or u.username == identifier)
                ),
                None,
            )
            return self._public_user(user)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [self._public_user(u) for u in ordered[:limit]]

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            user.updated_at = utcnow()
            return self._public_user(user)

    def record_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = when or utcnow()

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            for key in [k for k in self.user_roles if k[0] == user_id]:
                self.user_roles.pop(key, None)
            self.revoke_user_sessions(user_id)
            for token, row in list(self.reset_tokens.items()):
                if row.user_id == user_id:
                    self.reset_tokens.pop(token, None)
            return True

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self.users[user_id].updated_at = utcnow()

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_two_factor_secret(self, user_id: str, secret: str) -> None:
        """Store a fresh enrollment secret with 2FA left disabled."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            user.two_factor_secret = self._encrypt_secret(secret)
            user.two_factor_enabled = False
            user.updated_at = utcnow()

    def enable_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            user.two_factor_enabled = True
            user.updated_at = utcnow()

    def clear_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            user.two_factor_secret = None
            user.two_factor_enabled = False
            user.updated_at = utcnow()

    # roles and permissions
    def create_role(
        self,
        name: str,
        display_name: str,
        level: int,
        *,
        description: Optional[str] = None,
        is_system: bool = False,
    ) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                display_name=display_name,
                level=level,
                description=description,
                is_system=is_system,
            )
            self.roles[role.id] = role
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return replace(role) if role else None

    def list_roles(
        self, search: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[Role]:
        with self._data_lock:
            roles = list(self.roles.values())
            if search:
                needle = search.lower()
                roles = [
                    r
                    for r in roles
                    if needle in r.name.lower() or needle in r.display_name.lower()
                ]
            roles.sort(key=lambda r: (-r.level, r.name))
            return [replace(r) for r in roles[offset : offset + limit]]

    def count_roles(self, search: Optional[str] = None) -> int:
        return len(self.list_roles(search=search, limit=len(self.roles) or 1))

    def update_role(self, role_id: str, **fields) -> Optional[Role]:
        unknown = set(fields) - _ROLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported role fields: {sorted(unknown)}")
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            new_name = fields.get("name")
            if new_name and any(
                r.name == new_name and r.id != role_id for r in self.roles.values()
            ):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            for key, value in fields.items():
                if value is not None:
                    setattr(role, key, value)
            role.updated_at = utcnow()
            return replace(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            self.role_permissions = {
                rp for rp in self.role_permissions if rp.role_id != role_id
            }
            for key in [k for k in self.user_roles if k[1] == role_id]:
                self.user_roles.pop(key, None)
            return True

    def count_role_users(self, role_id: str) -> int:
        with self._data_lock:
            return sum(1 for key in self.user_roles if key[1] == role_id)

    def upsert_permission(
        self,
        name: str,
        display_name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        with self._data_lock:
            existing = next((p for p in self.permissions.values() if p.name == name), None)
            if existing:
                existing.display_name = display_name
                existing.description = description
                return replace(existing)
            perm = Permission(
                id=str(uuid.uuid4()),
                name=name,
                display_name=display_name,
                resource=resource,
                action=action,
                description=description,
            )
            self.permissions[perm.id] = perm
            return replace(perm)

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            perm = next((p for p in self.permissions.values() if p.name == name), None)
            return replace(perm) if perm else None

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            ordered = sorted(self.permissions.values(), key=lambda p: (p.resource, p.action))
            return [replace(p) for p in ordered]

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> List[str]:
        """Replace a role's grants; ids that do not exist are skipped."""
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            valid = [pid for pid in dict.fromkeys(permission_ids) if pid in self.permissions]
            self.role_permissions = {
                rp for rp in self.role_permissions if rp.role_id != role_id
            }
            self.role_permissions.update(RolePermission(role_id, pid) for pid in valid)
            return valid

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            perms = [
                self.permissions[rp.permission_id]
                for rp in self.role_permissions
                if rp.role_id == role_id and rp.permission_id in self.permissions
            ]
            perms.sort(key=lambda p: p.name)
            return [replace(p) for p in perms]

    def assign_role(
        self, user_id: str, role_id: str, assigned_by: Optional[str] = None
    ) -> UserRole:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            key = (user_id, role_id)
            if key in self.user_roles:
                return self.user_roles[key]
            row = UserRole(user_id=user_id, role_id=role_id, assigned_by=assigned_by)
            self.user_roles[key] = row
            return row

    def revoke_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            return self.user_roles.pop((user_id, role_id), None) is not None

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            roles = [
                self.roles[role_id]
                for (uid, role_id) in self.user_roles
                if uid == user_id and role_id in self.roles
            ]
            roles.sort(key=lambda r: (-r.level, r.name))
            return [replace(r) for r in roles]

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
            self.sessions[sess.id] = sess
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # password reset
    def replace_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        """Drop every token for ``user_id`` and store ``token`` in one step."""
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for existing, row in list(self.reset_tokens.items()):
                if row.user_id == user_id:
                    self.reset_tokens.pop(existing, None)
            row = PasswordResetToken(token=token, user_id=user_id, expires_at=expires_at)
            self.reset_tokens[token] = row
            return replace(row)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            row = self.reset_tokens.get(token)
            return replace(row) if row else None

    def mark_password_reset_used(self, token: str, when: Optional[datetime] = None) -> bool:
        with self._data_lock:
            row = self.reset_tokens.get(token)
            if not row or row.used_at is not None:
                return False
            row.used_at = when or utcnow()
            return True

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._data_lock:
            self.audit_log.append(entry)

    def list_audit_entries(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [
                e
                for e in self.audit_log
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
            ]
            return list(reversed(entries))[:limit]
