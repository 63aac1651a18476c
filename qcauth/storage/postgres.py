from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from qcauth.logging import get_logger
from qcauth.storage.errors import ConstraintViolation
from qcauth.storage.memory import derive_cipher_key
from qcauth.storage.models import (
    AuditLogEntry,
    PasswordResetToken,
    Permission,
    Role,
    Session,
    User,
    UserRole,
    UserStatus,
    utcnow,
)

_ROLE_COLUMNS = ("name", "display_name", "description", "level")


class PostgresStore:
    """Repository over PostgreSQL; mirrors the ``MemoryStore`` surface."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = Fernet(derive_cipher_key(mfa_encryption_key))
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the auth tables have not been installed."""

        required_tables = [
            "app_user",
            "user_auth_credential",
            "role",
            "permission",
            "role_permission",
            "user_role",
            "auth_session",
            "password_reset_token",
            "audit_log",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mapping
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

    def _user_from_row(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            name=row.get("name"),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            two_factor_secret=self._decrypt_secret(row.get("two_factor_secret")),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _role_from_row(row: dict) -> Role:
        return Role(
            id=str(row["id"]),
            name=row["name"],
            display_name=row["display_name"],
            level=int(row["level"]),
            description=row.get("description"),
            is_system=bool(row.get("is_system", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _permission_from_row(row: dict) -> Permission:
        return Permission(
            id=str(row["id"]),
            name=row["name"],
            display_name=row["display_name"],
            resource=row["resource"],
            action=row["action"],
            description=row.get("description"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        name: Optional[str] = None,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, name, status)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, username, name, status.value),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_active_user(self, identifier: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE status = 'ACTIVE' AND (email = %s OR username = %s)
                ORDER BY created_at
                LIMIT 1
                """,
                (identifier, identifier),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (status.value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (when or utcnow(), user_id),
            )

    def delete_user(self, user_id: str) -> bool:
        # role assignments, credentials, sessions and reset tokens cascade
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def _update_two_factor(self, user_id: str, secret: Any, enabled: bool, *, keep_secret: bool = False) -> None:
        with self._connect() as conn:
            if keep_secret:
                result = conn.execute(
                    "UPDATE app_user SET two_factor_enabled = %s, updated_at = now() WHERE id = %s",
                    (enabled, user_id),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE app_user
                    SET two_factor_secret = %s, two_factor_enabled = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (secret, enabled, user_id),
                )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})

    def set_two_factor_secret(self, user_id: str, secret: str) -> None:
        self._update_two_factor(user_id, self._encrypt_secret(secret), False)

    def enable_two_factor(self, user_id: str) -> None:
        self._update_two_factor(user_id, None, True, keep_secret=True)

    def clear_two_factor(self, user_id: str) -> None:
        self._update_two_factor(user_id, None, False)

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role (id, name, display_name, level, description, is_system)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, display_name, level, description, is_system),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(
        self, search: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[Role]:
        with self._connect() as conn:
            if search:
                pattern = f"%{search}%"
                rows = conn.execute(
                    """
                    SELECT * FROM role
                    WHERE name ILIKE %s OR display_name ILIKE %s
                    ORDER BY level DESC, name
                    LIMIT %s OFFSET %s
                    """,
                    (pattern, pattern, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM role ORDER BY level DESC, name LIMIT %s OFFSET %s",
                    (limit, offset),
                ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def count_roles(self, search: Optional[str] = None) -> int:
        with self._connect() as conn:
            if search:
                pattern = f"%{search}%"
                row = conn.execute(
                    "SELECT count(*) AS n FROM role WHERE name ILIKE %s OR display_name ILIKE %s",
                    (pattern, pattern),
                ).fetchone()
            else:
                row = conn.execute("SELECT count(*) AS n FROM role").fetchone()
        return int(row["n"]) if row else 0

    def update_role(self, role_id: str, **fields) -> Optional[Role]:
        unknown = set(fields) - set(_ROLE_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported role fields: {sorted(unknown)}")
        updates = [(col, fields[col]) for col in _ROLE_COLUMNS if fields.get(col) is not None]
        if not updates:
            return self.get_role(role_id)
        assignments = ", ".join(f"{col} = %s" for col, _ in updates)
        params = [value for _, value in updates] + [role_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE role SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
            return result.rowcount > 0

    def count_role_users(self, role_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM user_role WHERE role_id = %s", (role_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def upsert_permission(
        self,
        name: str,
        display_name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO permission (id, name, display_name, resource, action, description)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (name) DO UPDATE
                SET display_name = EXCLUDED.display_name, description = EXCLUDED.description
                RETURNING *
                """,
                (str(uuid.uuid4()), name, display_name, resource, action, description),
            ).fetchone()
        return self._permission_from_row(row)

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE name = %s", (name,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission ORDER BY resource, action"
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> List[str]:
        requested = list(dict.fromkeys(permission_ids))
        with self._connect() as conn, conn.transaction():
            if not conn.execute("SELECT 1 FROM role WHERE id = %s", (role_id,)).fetchone():
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            valid: List[str] = []
            if requested:
                rows = conn.execute(
                    "SELECT id FROM permission WHERE id::text = ANY(%s)", (requested,)
                ).fetchall()
                known = {str(row["id"]) for row in rows}
                valid = [pid for pid in requested if pid in known]
            conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
            for pid in valid:
                conn.execute(
                    "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                    (role_id, pid),
                )
        return valid

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM role_permission rp
                JOIN permission p ON p.id = rp.permission_id
                WHERE rp.role_id = %s
                ORDER BY p.name
                """,
                (role_id,),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def assign_role(
        self, user_id: str, role_id: str, assigned_by: Optional[str] = None
    ) -> UserRole:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id, assigned_by)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, role_id) DO NOTHING
                    """,
                    (user_id, role_id, assigned_by),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or role does not exist", {"user_id": user_id, "role_id": role_id}
            )
        return UserRole(user_id=user_id, role_id=role_id, assigned_by=assigned_by)

    def revoke_role(self, user_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return result.rowcount > 0

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM user_role ur
                JOIN role r ON r.id = ur.role_id
                WHERE ur.user_id = %s
                ORDER BY r.level DESC, r.name
                """,
                (user_id,),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id, ttl_minutes=ttl_minutes, user_agent=user_agent, ip_addr=ip_addr
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=str(row["ip_addr"]) if row.get("ip_addr") else None,
        )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return result.rowcount

    # password reset
    def replace_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        row = PasswordResetToken(token=token, user_id=user_id, expires_at=expires_at)
        try:
            with self._connect() as conn, conn.transaction():
                # serialize concurrent requests for the same user on the user row
                conn.execute("SELECT 1 FROM app_user WHERE id = %s FOR UPDATE", (user_id,))
                conn.execute(
                    "DELETE FROM password_reset_token WHERE user_id = %s", (user_id,)
                )
                conn.execute(
                    """
                    INSERT INTO password_reset_token (token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token, user_id, expires_at, row.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return row

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    def mark_password_reset_used(self, token: str, when: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE password_reset_token SET used_at = %s WHERE token = %s AND used_at IS NULL",
                (when or utcnow(), token),
            )
            return result.rowcount > 0

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, user_id, action, resource, resource_id, metadata, ip_address, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.resource,
                    entry.resource_id,
                    json.dumps(entry.metadata, default=str),
                    entry.ip_address,
                    entry.created_at,
                ),
            )

    def list_audit_entries(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        clauses = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        entries = []
        for row in rows:
            metadata = row.get("metadata") or {}
            if isinstance(metadata, str):
                metadata = json.loads(metadata)
            entries.append(
                AuditLogEntry(
                    id=str(row["id"]),
                    user_id=str(row["user_id"]) if row.get("user_id") else None,
                    action=row["action"],
                    resource=row["resource"],
                    metadata=metadata,
                    created_at=row["created_at"],
                    ip_address=row.get("ip_address"),
                    resource_id=row.get("resource_id"),
                )
            )
        return entries
