from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.concurrency import run_in_threadpool

from qcauth.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    IdleConfigResponse,
    LoginRequest,
    PermissionResponse,
    ResetPasswordRequest,
    RoleCreateRequest,
    RoleResponse,
    RoleUpdateRequest,
    SessionResponse,
    TwoFactorCheckRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorLoginVerifyRequest,
    TwoFactorRequirementResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    VerifyResetTokenRequest,
)
from qcauth.logging import get_logger
from qcauth.service.auth import LoginResult
from qcauth.service.errors import RateLimitedError, UnauthenticatedError, UnauthorizedError
from qcauth.service.idle import COUNTDOWN_STEP_MS, DEFAULT_ACTIVITY_EVENTS
from qcauth.service.permissions import Action, PermissionName, Resource
from qcauth.service.rbac import RoleSummary
from qcauth.service.runtime import RATE_LIMIT_WINDOW_SECONDS, Runtime
from qcauth.service.tokens import ClaimSet
from qcauth.storage.models import Permission
from qcauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

USERS_READ = PermissionName(Resource.USERS, Action.READ)

FORGOT_PASSWORD_MESSAGE = "If the email is registered, a reset link has been sent"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer_token(request: Request, authorization: Optional[str], cookie_name: str) -> Optional[str]:
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
        return None
    return request.cookies.get(cookie_name)


def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> ClaimSet:
    token = _bearer_token(request, authorization, runtime.settings.session_cookie_name)
    if not token:
        raise UnauthenticatedError("authentication required")
    return runtime.auth.authenticate_token(token)


def require_permission(permission: PermissionName):
    def _dependency(
        principal: ClaimSet = Depends(get_principal),
        runtime: Runtime = Depends(get_runtime),
    ) -> ClaimSet:
        if not runtime.evaluator.has_permission(principal, permission):
            raise UnauthorizedError(
                "permission denied", detail={"permission": str(permission)}
            )
        return principal

    return _dependency


async def _enforce_rate_limit(runtime: Runtime, scope: str, subject: str, limit: int) -> None:
    allowed = await runtime.check_rate_limit(
        RedisCache.rate_key(scope, subject.lower()), limit, RATE_LIMIT_WINDOW_SECONDS
    )
    if not allowed:
        logger.warning("rate_limited", scope=scope)
        raise RateLimitedError("too many attempts, try again later")


def _apply_session_cookie(response: Response, runtime: Runtime, result: LoginResult) -> None:
    response.set_cookie(
        runtime.settings.session_cookie_name,
        result.token.token,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
        expires=result.token.expires_at,
        path="/",
    )


def _session_payload(result: LoginResult) -> dict:
    return SessionResponse(
        token=result.token.token,
        expires_at=result.token.expires_at,
        expires_in=result.token.expires_in,
        user=result.claims.to_dict(),
    ).dump()


def _permission_model(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id,
        name=permission.name,
        display_name=permission.display_name,
        resource=permission.resource,
        action=permission.action,
        description=permission.description,
    )


def _permission_payload(permission: Permission) -> dict:
    return _permission_model(permission).dump()


def _role_payload(summary: RoleSummary) -> dict:
    role = summary.role
    return RoleResponse(
        id=role.id,
        name=role.name,
        display_name=role.display_name,
        level=role.level,
        description=role.description,
        is_system=role.is_system,
        is_protected=summary.is_protected,
        user_count=summary.user_count,
        permissions=[_permission_model(p) for p in summary.permissions],
        created_at=role.created_at,
        updated_at=role.updated_at,
    ).dump()


# session
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Password login; accounts with active 2FA must also send ``code``."""
    await _enforce_rate_limit(
        runtime, "login", body.username, runtime.settings.login_rate_limit_per_minute
    )
    result = await run_in_threadpool(
        runtime.auth.login,
        body.username,
        body.password,
        code=body.code,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    _apply_session_cookie(response, runtime, result)
    return Envelope(status="ok", data=_session_payload(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(
    response: Response,
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.auth.logout(principal)
    response.delete_cookie(runtime.settings.session_cookie_name, path="/")
    return Envelope(status="ok", data={"loggedOut": True})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(
    request: Request,
    response: Response,
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    result = runtime.auth.refresh(
        principal,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    _apply_session_cookie(response, runtime, result)
    return Envelope(status="ok", data=_session_payload(result))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
def me(
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    data = principal.to_dict()
    data["isAdmin"] = runtime.evaluator.is_admin(principal)
    data["isSuperAdmin"] = runtime.evaluator.is_super_admin(principal)
    return Envelope(status="ok", data=data)


@router.get("/auth/idle-config", response_model=Envelope, tags=["auth"])
def idle_config(runtime: Runtime = Depends(get_runtime)):
    return Envelope(
        status="ok",
        data=IdleConfigResponse(
            timeout_ms=runtime.settings.idle_timeout_ms,
            warning_ms=runtime.settings.idle_warning_ms,
            countdown_step_ms=COUNTDOWN_STEP_MS,
            events=sorted(DEFAULT_ACTIVITY_EVENTS),
        ).dump(),
    )


# two-factor
@router.post("/auth/2fa/check-required", response_model=Envelope, tags=["2fa"])
async def check_two_factor_required(
    body: TwoFactorCheckRequest, runtime: Runtime = Depends(get_runtime)
):
    await _enforce_rate_limit(
        runtime, "login", body.username, runtime.settings.login_rate_limit_per_minute
    )
    requirement = await run_in_threadpool(
        runtime.auth.check_two_factor_required, body.username, body.password
    )
    return Envelope(
        status="ok",
        data=TwoFactorRequirementResponse(
            requires_2fa=requirement.requires_2fa, is_admin=requirement.is_admin
        ).dump(),
    )


@router.post("/auth/2fa/login-verify", response_model=Envelope, tags=["2fa"])
async def login_verify_two_factor(
    body: TwoFactorLoginVerifyRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime, "mfa", body.username, runtime.settings.mfa_rate_limit_per_minute
    )
    result = await run_in_threadpool(
        runtime.auth.verify_login_two_factor,
        body.username,
        body.password,
        body.code,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    _apply_session_cookie(response, runtime, result)
    return Envelope(status="ok", data=_session_payload(result))


@router.get("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
def two_factor_status(
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    status = runtime.two_factor.status(principal)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled, has_secret=status.has_secret, is_admin=status.is_admin
        ).dump(),
    )


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
def two_factor_setup(
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    setup = runtime.two_factor.setup(principal)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret,
            qr_code=setup.provisioning_uri,
            manual_entry_key=setup.manual_entry_key,
        ).dump(),
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def two_factor_verify(
    body: TwoFactorCodeRequest,
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime, "mfa", principal.user_id, runtime.settings.mfa_rate_limit_per_minute
    )
    await run_in_threadpool(runtime.two_factor.enable, principal, body.code)
    return Envelope(status="ok", data={"enabled": True})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorDisableRequest,
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime, "mfa", principal.user_id, runtime.settings.mfa_rate_limit_per_minute
    )
    await run_in_threadpool(runtime.two_factor.disable, principal, body.code, body.password)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/users/{user_id}/disable-2fa", response_model=Envelope, tags=["users"])
def admin_disable_two_factor(
    user_id: str,
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user = runtime.two_factor.admin_disable(principal, user_id)
    return Envelope(
        status="ok",
        data={
            "userId": user.id,
            "email": user.email,
            "twoFactorEnabled": user.two_factor_enabled,
        },
    )


# password reset
@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    """Always answers with the same message whether or not the account exists."""
    await _enforce_rate_limit(
        runtime, "reset", body.email or "-", runtime.settings.reset_rate_limit_per_minute
    )
    await run_in_threadpool(
        runtime.auth.request_password_reset, body.email, ip_address=_client_ip(request)
    )
    return Envelope(status="ok", data={"message": FORGOT_PASSWORD_MESSAGE})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    ip_address = _client_ip(request)
    await _enforce_rate_limit(
        runtime, "reset", ip_address or "-", runtime.settings.reset_rate_limit_per_minute
    )
    await run_in_threadpool(
        runtime.auth.reset_password, body.token, body.password, ip_address=ip_address
    )
    return Envelope(status="ok", data={"reset": True})


@router.post("/auth/verify-reset-token", response_model=Envelope, tags=["auth"])
async def verify_reset_token(
    body: VerifyResetTokenRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        "reset-verify",
        _client_ip(request) or "-",
        runtime.settings.reset_rate_limit_per_minute,
    )
    row = await run_in_threadpool(runtime.auth.verify_reset_token, body.token)
    return Envelope(status="ok", data={"valid": True, "expiresAt": row.expires_at.isoformat()})


# roles and permissions
@router.get("/roles", response_model=Envelope, tags=["roles"])
def list_roles(
    search: Optional[str] = Query(None, max_length=64),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _: ClaimSet = Depends(require_permission(USERS_READ)),
    runtime: Runtime = Depends(get_runtime),
):
    roles = runtime.rbac.list_roles(search, limit, offset)
    return Envelope(
        status="ok",
        data={
            "roles": [_role_payload(summary) for summary in roles],
            "total": runtime.store.count_roles(search.strip() if search else None),
            "limit": limit,
            "offset": offset,
        },
    )


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
def create_role(
    body: RoleCreateRequest,
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    summary = runtime.rbac.create_role(
        principal,
        name=body.name,
        display_name=body.display_name,
        level=body.level,
        description=body.description,
        permission_ids=body.permission_ids,
    )
    return Envelope(status="ok", data=_role_payload(summary))


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
def get_role(
    role_id: str,
    _: ClaimSet = Depends(require_permission(USERS_READ)),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=_role_payload(runtime.rbac.get_role(role_id)))


@router.put("/roles/{role_id}", response_model=Envelope, tags=["roles"])
def update_role(
    role_id: str,
    body: RoleUpdateRequest,
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    summary = runtime.rbac.update_role(
        principal,
        role_id,
        name=body.name,
        display_name=body.display_name,
        description=body.description,
        level=body.level,
        permission_ids=body.permission_ids,
    )
    return Envelope(status="ok", data=_role_payload(summary))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
def delete_role(
    role_id: str,
    principal: ClaimSet = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.rbac.delete_role(principal, role_id)
    return Envelope(status="ok", data={"deleted": True, "id": role_id})


@router.get("/permissions", response_model=Envelope, tags=["roles"])
def list_permissions(
    _: ClaimSet = Depends(require_permission(USERS_READ)),
    runtime: Runtime = Depends(get_runtime),
):
    permissions, grouped = runtime.rbac.list_permissions()
    return Envelope(
        status="ok",
        data={
            "permissions": [_permission_payload(p) for p in permissions],
            "grouped": {
                resource: [_permission_payload(p) for p in items]
                for resource, items in grouped.items()
            },
        },
    )
