"""Permission catalog and evaluator.

Permission names are ``resource:action`` pairs drawn from closed enumerations.
The evaluator is pure: it only reads the role/permission snapshot embedded in
a principal's session claims and never touches storage, so answers stay
stable for the lifetime of one token.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Union

DEFAULT_ADMIN_LEVEL = 80
DEFAULT_SUPER_ADMIN_LEVEL = 100


class Resource(str, Enum):
    USERS = "users"
    ROLES = "roles"
    PERMISSIONS = "permissions"
    DASHBOARD = "dashboard"
    ANALYTICS = "analytics"
    SYSTEM = "system"
    CONTENT = "content"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"
    PUBLISH = "publish"
    EXPORT = "export"
    SETTINGS = "settings"
    BACKUP = "backup"
    AUDIT = "audit"
    ADMIN = "admin"


@dataclass(frozen=True)
class PermissionName:
    resource: Resource
    action: Action

    def __post_init__(self) -> None:
        # coerce raw strings so comparisons never fall back to string matching
        object.__setattr__(self, "resource", Resource(self.resource))
        object.__setattr__(self, "action", Action(self.action))

    @classmethod
    def parse(cls, raw: str) -> "PermissionName":
        """Parse ``"resource:action"``; raises ``ValueError`` outside the catalog."""
        resource, sep, action = raw.strip().partition(":")
        if not sep:
            raise ValueError(f"permission name must be resource:action, got {raw!r}")
        return cls(Resource(resource), Action(action))

    def __str__(self) -> str:
        return f"{self.resource.value}:{self.action.value}"


PermissionLike = Union[str, PermissionName]


@dataclass(frozen=True)
class CatalogEntry:
    permission: PermissionName
    display_name: str
    description: str

    @property
    def name(self) -> str:
        return str(self.permission)


def _entry(resource: Resource, action: Action, display_name: str, description: str) -> CatalogEntry:
    return CatalogEntry(PermissionName(resource, action), display_name, description)


CATALOG: tuple[CatalogEntry, ...] = (
    _entry(Resource.USERS, Action.READ, "Leer Usuarios", "Leer usuarios"),
    _entry(Resource.USERS, Action.CREATE, "Crear Usuarios", "Crear usuarios"),
    _entry(Resource.USERS, Action.UPDATE, "Actualizar Usuarios", "Actualizar usuarios"),
    _entry(Resource.USERS, Action.DELETE, "Eliminar Usuarios", "Eliminar usuarios"),
    _entry(Resource.ROLES, Action.READ, "Ver roles", "Consultar roles del sistema"),
    _entry(Resource.ROLES, Action.CREATE, "Crear roles", "Definir nuevos roles"),
    _entry(Resource.ROLES, Action.UPDATE, "Editar roles", "Modificar roles existentes"),
    _entry(Resource.ROLES, Action.DELETE, "Eliminar roles", "Borrar roles sin usuarios"),
    _entry(Resource.PERMISSIONS, Action.READ, "Ver permisos", "Consultar el catalogo de permisos"),
    _entry(Resource.PERMISSIONS, Action.ASSIGN, "Asignar permisos", "Asignar permisos a roles"),
    _entry(Resource.DASHBOARD, Action.READ, "Ver panel", "Acceder al panel principal"),
    _entry(Resource.ANALYTICS, Action.READ, "Leer Reportes", "Leer reportes"),
    _entry(Resource.ANALYTICS, Action.EXPORT, "Exportar Reportes", "Exportar reportes"),
    _entry(Resource.SYSTEM, Action.SETTINGS, "Configuracion", "Cambiar la configuracion del sistema"),
    _entry(Resource.SYSTEM, Action.BACKUP, "Respaldos", "Generar respaldos"),
    _entry(Resource.SYSTEM, Action.AUDIT, "Auditoria", "Consultar el registro de auditoria"),
    _entry(Resource.SYSTEM, Action.ADMIN, "Administrar Sistema", "Administración del sistema"),
    _entry(Resource.CONTENT, Action.READ, "Leer Contenido", "Leer contenido"),
    _entry(Resource.CONTENT, Action.CREATE, "Crear Contenido", "Crear contenido"),
    _entry(Resource.CONTENT, Action.UPDATE, "Actualizar Contenido", "Actualizar contenido"),
    _entry(Resource.CONTENT, Action.DELETE, "Eliminar Contenido", "Eliminar contenido"),
    _entry(Resource.CONTENT, Action.PUBLISH, "Aprobar registros", "Aprobar o publicar registros"),
)

# Domain groups that reuse the generic content and analytics grants.
ALIASES: Dict[str, Dict[str, PermissionName]] = {
    "products": {
        "create": PermissionName(Resource.CONTENT, Action.CREATE),
        "read": PermissionName(Resource.CONTENT, Action.READ),
        "update": PermissionName(Resource.CONTENT, Action.UPDATE),
        "delete": PermissionName(Resource.CONTENT, Action.DELETE),
    },
    "records": {
        "create": PermissionName(Resource.CONTENT, Action.CREATE),
        "read": PermissionName(Resource.CONTENT, Action.READ),
        "update": PermissionName(Resource.CONTENT, Action.UPDATE),
        "delete": PermissionName(Resource.CONTENT, Action.DELETE),
        "approve": PermissionName(Resource.CONTENT, Action.PUBLISH),
    },
    "reports": {
        "read": PermissionName(Resource.ANALYTICS, Action.READ),
        "export": PermissionName(Resource.ANALYTICS, Action.EXPORT),
    },
}


def resolve_alias(group: str, action: str) -> PermissionName:
    try:
        return ALIASES[group][action]
    except KeyError as exc:
        raise ValueError(f"unknown permission alias {group}.{action}") from exc


def catalog_entry(name: PermissionLike) -> Optional[CatalogEntry]:
    target = str(name)
    return next((entry for entry in CATALOG if entry.name == target), None)


def grouped_catalog(entries: Optional[Iterable] = None) -> Dict[str, List]:
    """Group catalog entries (or stored permissions) by resource for presentation."""
    grouped: Dict[str, List] = {}
    for entry in entries if entries is not None else CATALOG:
        resource = getattr(entry, "resource", None)
        if resource is None:
            resource = entry.permission.resource.value
        grouped.setdefault(str(resource), []).append(entry)
    return grouped


class RoleLike(Protocol):
    name: str
    level: int


class Principal(Protocol):
    roles: Sequence[RoleLike]
    permissions: Sequence[str]


def _normalize(name: Optional[PermissionLike]) -> Optional[PermissionName]:
    if isinstance(name, PermissionName):
        return name
    if not name:
        return None
    try:
        return PermissionName.parse(name)
    except ValueError:
        return None


class PermissionEvaluator:
    """Answers authorization questions against a claims snapshot."""

    def __init__(
        self,
        admin_level: int = DEFAULT_ADMIN_LEVEL,
        super_admin_level: int = DEFAULT_SUPER_ADMIN_LEVEL,
    ) -> None:
        self.admin_level = admin_level
        self.super_admin_level = super_admin_level

    def roles_grant_admin(self, roles: Iterable[RoleLike]) -> bool:
        return any(role.level >= self.admin_level for role in roles)

    def is_admin(self, principal: Optional[Principal]) -> bool:
        if principal is None:
            return False
        return self.roles_grant_admin(principal.roles)

    def is_super_admin(self, principal: Optional[Principal]) -> bool:
        if principal is None:
            return False
        return any(role.level >= self.super_admin_level for role in principal.roles)

    def is_protected_level(self, level: int) -> bool:
        return level >= self.admin_level

    def highest_role_level(self, principal: Optional[Principal]) -> int:
        if principal is None or not principal.roles:
            return 0
        return max(role.level for role in principal.roles)

    def has_role(self, principal: Optional[Principal], role_name: str) -> bool:
        if principal is None:
            return False
        return any(role.name == role_name for role in principal.roles)

    def has_minimum_role_level(self, principal: Optional[Principal], minimum: int) -> bool:
        return self.highest_role_level(principal) >= minimum

    @staticmethod
    def _granted(principal: Principal) -> set[PermissionName]:
        granted = set()
        for raw in principal.permissions:
            parsed = _normalize(raw)
            if parsed is not None:
                granted.add(parsed)
        return granted

    def has_permission(
        self, principal: Optional[Principal], name: Optional[PermissionLike]
    ) -> bool:
        """Administrators hold every permission; a missing name is never granted."""
        if principal is None or not name:
            return False
        if self.is_admin(principal):
            return True
        parsed = _normalize(name)
        return parsed is not None and parsed in self._granted(principal)

    def has_any_permission(
        self, principal: Optional[Principal], names: Iterable[PermissionLike]
    ) -> bool:
        if principal is None:
            return False
        if self.is_admin(principal):
            return True
        granted = self._granted(principal)
        return any(_normalize(name) in granted for name in names)

    def has_all_permissions(
        self, principal: Optional[Principal], names: Iterable[PermissionLike]
    ) -> bool:
        if principal is None:
            return False
        if self.is_admin(principal):
            return True
        granted = self._granted(principal)
        return all(_normalize(name) in granted for name in names)

    def can_perform_action(
        self,
        principal: Optional[Principal],
        resource: Union[str, Resource],
        action: Union[str, Action],
    ) -> bool:
        if principal is None:
            return False
        if self.is_admin(principal):
            return True
        try:
            wanted = PermissionName(Resource(resource), Action(action))
        except ValueError:
            return False
        return wanted in self._granted(principal)

    def permissions_by_resource(
        self, principal: Optional[Principal], resource: Union[str, Resource]
    ) -> List[str]:
        """Explicit grants for one resource; no administrator expansion."""
        if principal is None:
            return []
        try:
            wanted = Resource(resource)
        except ValueError:
            return []
        return sorted(str(p) for p in self._granted(principal) if p.resource == wanted)


default_evaluator = PermissionEvaluator()


__all__ = [
    "Action",
    "ALIASES",
    "CATALOG",
    "CatalogEntry",
    "DEFAULT_ADMIN_LEVEL",
    "DEFAULT_SUPER_ADMIN_LEVEL",
    "PermissionEvaluator",
    "PermissionName",
    "Principal",
    "Resource",
    "catalog_entry",
    "default_evaluator",
    "grouped_catalog",
    "resolve_alias",
]
