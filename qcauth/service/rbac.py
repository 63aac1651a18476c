from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from qcauth.logging import get_logger
from qcauth.service.audit import AuditSink
from qcauth.service.errors import (
    CannotModifyProtectedRoleError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from qcauth.service.permissions import (
    CATALOG,
    Action,
    PermissionEvaluator,
    PermissionName,
    Resource,
    grouped_catalog,
)
from qcauth.service.tokens import ClaimSet
from qcauth.storage.errors import ConstraintViolation
from qcauth.storage.models import Permission, Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoleTemplate:
    name: str
    display_name: str
    description: str
    level: int


SUPERADMIN = RoleTemplate("superadmin", "Super Administrador", "Acceso total al sistema - Root", 200)
ADMINISTRATOR = RoleTemplate("administrador", "Administrador", "Acceso completo al sistema", 100)
WORKER = RoleTemplate("trabajador", "Trabajador", "Operaciones básicas del sistema", 50)

DEFAULT_ROLES: Tuple[RoleTemplate, ...] = (SUPERADMIN, ADMINISTRATOR, WORKER)

# Workers handle content day to day but cannot delete or approve it.
WORKER_GRANTS = frozenset(
    PermissionName(Resource.CONTENT, action)
    for action in (Action.READ, Action.CREATE, Action.UPDATE)
)


@dataclass
class RoleSummary:
    role: Role
    is_protected: bool
    user_count: int
    permissions: List[Permission] = field(default_factory=list)


@dataclass(frozen=True)
class EffectiveAccess:
    roles: Tuple[Role, ...]
    permissions: Tuple[Permission, ...]

    @property
    def permission_names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.permissions)


class RbacService:
    """Role-permission store operations with the protected-role rule."""

    def __init__(self, store, audit: AuditSink, evaluator: PermissionEvaluator) -> None:
        self.store = store
        self.audit = audit
        self.evaluator = evaluator

    # lookups
    def effective_access(self, user_id: str) -> EffectiveAccess:
        """Union of permissions over every role the user holds, deduplicated by name."""
        roles = self.store.list_user_roles(user_id)
        seen: Dict[str, Permission] = {}
        for role in roles:
            for perm in self.store.list_role_permissions(role.id):
                seen.setdefault(perm.name, perm)
        return EffectiveAccess(roles=tuple(roles), permissions=tuple(seen.values()))

    def _summarize(self, role: Role) -> RoleSummary:
        return RoleSummary(
            role=role,
            is_protected=self.evaluator.is_protected_level(role.level),
            user_count=self.store.count_role_users(role.id),
            permissions=self.store.list_role_permissions(role.id),
        )

    def list_roles(
        self, search: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[RoleSummary]:
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        search = search.strip() if search else None
        return [self._summarize(role) for role in self.store.list_roles(search, limit, offset)]

    def get_role(self, role_id: str) -> RoleSummary:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return self._summarize(role)

    def list_permissions(self) -> Tuple[List[Permission], Dict[str, List[Permission]]]:
        permissions = self.store.list_permissions()
        return permissions, grouped_catalog(permissions)

    # mutations
    def _require_admin(self, actor: ClaimSet) -> None:
        if not self.evaluator.is_admin(actor):
            raise UnauthorizedError("administrator authority required")

    def _guard_protected(self, role: Role, verb: str) -> None:
        if self.evaluator.is_protected_level(role.level):
            raise CannotModifyProtectedRoleError(
                f"cannot {verb} protected system role",
                detail={"role_id": role.id, "level": role.level},
            )

    def create_role(
        self,
        actor: ClaimSet,
        *,
        name: str,
        display_name: str,
        level: int,
        description: Optional[str] = None,
        permission_ids: Optional[Iterable[str]] = None,
    ) -> RoleSummary:
        self._require_admin(actor)
        if not name or not display_name:
            raise ValidationError("name, display name and level are required")
        try:
            role = self.store.create_role(
                name.strip(), display_name.strip(), int(level), description=description
            )
        except ConstraintViolation as exc:
            raise ConflictError("role name already exists", detail=exc.detail) from exc
        if permission_ids:
            self.store.set_role_permissions(role.id, permission_ids)
        self.audit.record(
            "role.created",
            "roles",
            user_id=actor.user_id,
            resource_id=role.id,
            metadata={"roleId": role.id, "roleName": role.name, "level": role.level},
        )
        return self._summarize(role)

    def update_role(
        self,
        actor: ClaimSet,
        role_id: str,
        *,
        name: Optional[str] = None,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        level: Optional[int] = None,
        permission_ids: Optional[Sequence[str]] = None,
    ) -> RoleSummary:
        self._require_admin(actor)
        existing = self.store.get_role(role_id)
        if not existing:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        self._guard_protected(existing, "modify")
        try:
            updated = self.store.update_role(
                role_id,
                name=name,
                display_name=display_name,
                description=description,
                level=int(level) if level is not None else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError("role name already exists", detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        if permission_ids is not None:
            self.store.set_role_permissions(role_id, permission_ids)
        self.audit.record(
            "role.updated",
            "roles",
            user_id=actor.user_id,
            resource_id=role_id,
            metadata={"roleId": role_id, "roleName": updated.name, "level": updated.level},
        )
        return self._summarize(updated)

    def delete_role(self, actor: ClaimSet, role_id: str) -> None:
        self._require_admin(actor)
        existing = self.store.get_role(role_id)
        if not existing:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        self._guard_protected(existing, "delete")
        assigned = self.store.count_role_users(role_id)
        if assigned:
            raise ConflictError(
                "cannot delete role with assigned users", detail={"user_count": assigned}
            )
        self.store.delete_role(role_id)
        self.audit.record(
            "role.deleted",
            "roles",
            user_id=actor.user_id,
            resource_id=role_id,
            metadata={"roleId": role_id, "roleName": existing.name, "level": existing.level},
        )

    def assign_role(self, user_id: str, role_name: str, *, assigned_by: Optional[str] = None) -> Role:
        role = self.store.get_role_by_name(role_name)
        if not role:
            raise NotFoundError("role not found", detail={"role": role_name})
        try:
            self.store.assign_role(user_id, role.id, assigned_by=assigned_by)
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail=exc.detail) from exc
        return role

    # seeding
    def seed_defaults(self) -> Dict[str, Role]:
        """Install the permission catalog and default roles; safe to re-run."""
        permissions = {
            entry.name: self.store.upsert_permission(
                entry.name,
                entry.display_name,
                entry.permission.resource.value,
                entry.permission.action.value,
                entry.description,
            )
            for entry in CATALOG
        }
        worker_names = {str(name) for name in WORKER_GRANTS}
        roles: Dict[str, Role] = {}
        for template in DEFAULT_ROLES:
            role = self.store.get_role_by_name(template.name)
            if role is None:
                role = self.store.create_role(
                    template.name,
                    template.display_name,
                    template.level,
                    description=template.description,
                    is_system=True,
                )
            if template is WORKER:
                grant_ids = [p.id for name, p in permissions.items() if name in worker_names]
            else:
                grant_ids = [p.id for p in permissions.values()]
            self.store.set_role_permissions(role.id, grant_ids)
            roles[template.name] = role
        logger.info("rbac_defaults_seeded", permissions=len(permissions), roles=len(roles))
        return roles
