from __future__ import annotations

import math
from typing import Callable, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from prodauth.api.schemas import (
    AccessTokenResponse,
    AssignRoleRequest,
    CreateRoleRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PaginationResponse,
    PermissionCatalogResponse,
    PermissionLevelsRequest,
    PermissionLevelsResponse,
    PermissionResponse,
    RoleListResponse,
    RoleResponse,
    RoleSummaryResponse,
    UpdateRoleRequest,
    UserDetailsResponse,
    UserProfileResponse,
    UserRolesResponse,
    UserStatusRequest,
    UserStatusResponse,
)
from prodauth.config import Settings
from prodauth.logging import get_logger
from prodauth.service.errors import NotFoundError, Unauthenticated, ValidationError
from prodauth.service.gate import extract_bearer
from prodauth.service.permissions import nest_permissions
from prodauth.service.runtime import get_runtime
from prodauth.service.tokens import AccessClaims
from prodauth.storage.common import split_permission_key
from prodauth.storage.models import Permission, PermissionGrant, Role

logger = get_logger(__name__)

router = APIRouter()


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_principal(authorization: Optional[str] = Header(None)) -> AccessClaims:
    runtime = get_runtime()
    return runtime.gate.authenticate(extract_bearer(authorization))


def require_permission(
    module: str, action: str, minimum_level: int = 1
) -> Callable[..., AccessClaims]:
    """Dependency factory: authenticate, then demand ``module.action >= minimum_level``."""

    async def _dependency(principal: AccessClaims = Depends(get_principal)) -> AccessClaims:
        get_runtime().gate.authorize(principal, module, action, minimum_level)
        return principal

    return _dependency


def _cookie_options(settings: Settings) -> dict:
    secure = settings.secure_cookies
    return {
        "httponly": True,
        "secure": secure,
        # cross-site cookies are only honoured by browsers when Secure is set
        "samesite": "none" if secure else "lax",
        "path": "/",
    }


def _set_refresh_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        token,
        max_age=settings.refresh_token_ttl_seconds,
        **_cookie_options(settings),
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.refresh_cookie_name, **_cookie_options(settings))


def _read_refresh_cookie(
    settings: Settings, cookies: Dict[str, str]
) -> Optional[str]:
    return cookies.get(settings.refresh_cookie_name) or None


def _permission_to_response(perm: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=perm.id, module=perm.module, action=perm.action, description=perm.description
    )


def _grants_to_map(grants: List[PermissionGrant]) -> Dict[str, int]:
    return {grant.key: grant.value for grant in grants}


def _lookup_permission(runtime, key: str) -> Permission:
    module, action = split_permission_key(key)
    perm = runtime.store.get_permission(module, action)
    if not perm:
        raise ValidationError("unknown permission", detail={"permission": key})
    return perm


@router.post("/auth/login", response_model=LoginResponse, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with login and password.

    Returns the sanitized user and an access token; the refresh token is
    only ever delivered as an httpOnly cookie.

    Raises:
        401: If credentials are invalid or the account is inactive
    """
    runtime = get_runtime()
    result = await runtime.sessions.login(body.login, body.password)
    _set_refresh_cookie(response, runtime.settings, result.refresh_token)
    return LoginResponse(
        user=UserProfileResponse(
            id=result.user.id,
            login=result.user.login,
            first_name=result.user.first_name,
            last_name=result.user.last_name,
            email=result.user.email,
        ),
        access_token=result.access_token,
    )


@router.post("/auth/refresh-token", response_model=AccessTokenResponse, tags=["auth"])
async def refresh_token(request: Request, response: Response):
    runtime = get_runtime()
    token = _read_refresh_cookie(runtime.settings, request.cookies)
    if not token:
        raise Unauthenticated("refresh token required", reason="missing")
    pair = await runtime.sessions.refresh(token)
    _set_refresh_cookie(response, runtime.settings, pair.refresh_token)
    return AccessTokenResponse(access_token=pair.access_token)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(request: Request, response: Response):
    """Revoke the presented refresh token and clear the cookie.

    Always succeeds; an unusable token simply means nothing was revoked.
    """
    runtime = get_runtime()
    token = _read_refresh_cookie(runtime.settings, request.cookies)
    if token:
        await runtime.sessions.logout(token)
    _clear_refresh_cookie(response, runtime.settings)
    return MessageResponse(message="logged out successfully")


@router.get("/auth/me", response_model=UserDetailsResponse, tags=["auth"])
async def me(principal: AccessClaims = Depends(get_principal)):
    runtime = get_runtime()
    details = await runtime.sessions.get_user_details(principal.user_id)
    return UserDetailsResponse(
        id=details.id,
        login=details.login,
        first_name=details.first_name,
        last_name=details.last_name,
        email=details.email,
        phone_number=details.phone_number,
        is_active=details.is_active,
        last_login=details.last_login,
        roles=[RoleSummaryResponse(id=r.id, name=r.name) for r in details.roles],
        permissions=details.permissions,
        permissions_by_module=nest_permissions(details.permissions),
    )


@router.get("/permissions", response_model=PermissionCatalogResponse, tags=["permissions"])
async def list_permissions(
    principal: AccessClaims = Depends(require_permission("permissions", "read")),
):
    """Return the permission catalog, flat and grouped by module."""
    runtime = get_runtime()
    catalog = runtime.resolver.permission_catalog()
    grouped = {
        module: [_permission_to_response(p) for p in perms]
        for module, perms in catalog.items()
    }
    flat = [item for module in sorted(grouped) for item in grouped[module]]
    return PermissionCatalogResponse(permissions=flat, grouped_by_module=grouped)


def _role_response(runtime, role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        permissions=_grants_to_map(runtime.store.list_role_permissions(role.id)),
        user_count=runtime.store.count_role_users(role.id),
    )


def _get_role_or_404(runtime, role_id: str) -> Role:
    role = runtime.store.get_role(role_id)
    if not role:
        raise NotFoundError("role not found", detail={"role_id": role_id})
    return role


def _grant_ids(runtime, levels: Dict[str, int]) -> Dict[str, int]:
    """Map ``module.action`` levels onto permission ids, rejecting unknown keys."""
    return {_lookup_permission(runtime, key).id: level for key, level in levels.items()}


@router.get("/roles", response_model=RoleListResponse, tags=["roles"])
async def list_roles(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: AccessClaims = Depends(require_permission("roles", "read")),
):
    runtime = get_runtime()
    roles = runtime.store.list_roles()
    offset = (page - 1) * limit
    return RoleListResponse(
        roles=[_role_response(runtime, role) for role in roles[offset : offset + limit]],
        pagination=PaginationResponse(
            total=len(roles),
            page=page,
            limit=limit,
            pages=math.ceil(len(roles) / limit),
        ),
    )


@router.get("/roles/{role_id}", response_model=RoleResponse, tags=["roles"])
async def get_role(
    role_id: UUID,
    principal: AccessClaims = Depends(require_permission("roles", "read")),
):
    runtime = get_runtime()
    return _role_response(runtime, _get_role_or_404(runtime, str(role_id)))


@router.post("/roles", response_model=RoleResponse, status_code=201, tags=["roles"])
async def create_role(
    body: CreateRoleRequest,
    principal: AccessClaims = Depends(require_permission("roles", "create")),
):
    """Create a role and its grant levels in one step.

    Raises:
        400: If a permission key is not in the catalog
        409: If the name is already taken
    """
    runtime = get_runtime()
    role = runtime.store.create_role(
        body.name,
        body.description,
        grants=_grant_ids(runtime, body.permissions),
    )
    logger.info(
        "role_created",
        role_id=role.id,
        actor_id=principal.user_id,
        keys=sorted(body.permissions),
    )
    return _role_response(runtime, role)


@router.put("/roles/{role_id}", response_model=RoleResponse, tags=["roles"])
async def update_role(
    role_id: UUID,
    body: UpdateRoleRequest,
    principal: AccessClaims = Depends(require_permission("roles", "update")),
):
    """Update name and description; ``permissions``, when sent, replaces every grant."""
    runtime = get_runtime()
    _get_role_or_404(runtime, str(role_id))
    grants = None if body.permissions is None else _grant_ids(runtime, body.permissions)
    role = runtime.store.update_role(
        str(role_id), name=body.name, description=body.description, grants=grants
    )
    if not role:
        raise NotFoundError("role not found", detail={"role_id": str(role_id)})
    logger.info(
        "role_updated",
        role_id=role.id,
        actor_id=principal.user_id,
        replaced_grants=grants is not None,
    )
    return _role_response(runtime, role)


@router.delete("/roles/{role_id}", response_model=MessageResponse, tags=["roles"])
async def delete_role(
    role_id: UUID,
    principal: AccessClaims = Depends(require_permission("roles", "delete")),
):
    """Delete an unassigned role.

    Raises:
        404: If the role does not exist
        409: If the role is still assigned to users
    """
    runtime = get_runtime()
    if not runtime.store.delete_role(str(role_id)):
        raise NotFoundError("role not found", detail={"role_id": str(role_id)})
    logger.info("role_deleted", role_id=str(role_id), actor_id=principal.user_id)
    return MessageResponse(message="role deleted successfully")


@router.put(
    "/roles/{role_id}/permissions",
    response_model=PermissionLevelsResponse,
    tags=["permissions"],
)
async def update_role_permissions(
    role_id: UUID,
    body: PermissionLevelsRequest,
    principal: AccessClaims = Depends(require_permission("permissions", "assign")),
):
    """Set role grant levels; a ``null`` level removes the grant.

    Keys not present in the body are left untouched.
    """
    runtime = get_runtime()
    role = _get_role_or_404(runtime, str(role_id))
    resolved = {key: _lookup_permission(runtime, key) for key in body.permissions}
    for key, level in body.permissions.items():
        perm = resolved[key]
        if level is None:
            runtime.store.remove_role_permission(role.id, perm.id)
        else:
            runtime.store.set_role_permission(role.id, perm.id, level)
    logger.info(
        "role_permissions_updated",
        role_id=role.id,
        actor_id=principal.user_id,
        keys=sorted(body.permissions),
    )
    return PermissionLevelsResponse(
        permissions=_grants_to_map(runtime.store.list_role_permissions(role.id))
    )


def _get_user_or_404(runtime, user_id: str):
    user = runtime.store.get_user(user_id)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    return user


@router.put(
    "/users/{user_id}/permissions",
    response_model=PermissionLevelsResponse,
    tags=["permissions"],
)
async def update_user_permissions(
    user_id: UUID,
    body: PermissionLevelsRequest,
    principal: AccessClaims = Depends(require_permission("permissions", "assign")),
):
    """Set per-user overrides; a ``null`` level removes the override.

    An override replaces whatever the user's roles grant, including with a
    lower level or ``0``.
    """
    runtime = get_runtime()
    user = _get_user_or_404(runtime, str(user_id))
    resolved = {key: _lookup_permission(runtime, key) for key in body.permissions}
    for key, level in body.permissions.items():
        perm = resolved[key]
        if level is None:
            runtime.store.remove_user_permission(user.id, perm.id)
        else:
            runtime.store.set_user_permission(user.id, perm.id, level)
    logger.info(
        "user_permissions_updated",
        user_id=user.id,
        actor_id=principal.user_id,
        keys=sorted(body.permissions),
    )
    return PermissionLevelsResponse(
        permissions=_grants_to_map(runtime.store.list_user_overrides(user.id))
    )


@router.put("/users/{user_id}/status", response_model=UserStatusResponse, tags=["users"])
async def update_user_status(
    user_id: UUID,
    body: UserStatusRequest,
    principal: AccessClaims = Depends(require_permission("users", "update")),
):
    """Activate or deactivate an account.

    A deactivated user can no longer log in or refresh; access tokens
    already issued run until they expire.
    """
    runtime = get_runtime()
    user = runtime.store.set_user_active(str(user_id), body.is_active)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": str(user_id)})
    logger.info(
        "user_status_updated",
        user_id=user.id,
        is_active=user.is_active,
        actor_id=principal.user_id,
    )
    return UserStatusResponse(id=user.id, login=user.login, is_active=user.is_active)


@router.delete("/users/{user_id}", response_model=MessageResponse, tags=["users"])
async def delete_user(
    user_id: UUID,
    principal: AccessClaims = Depends(require_permission("users", "delete", 2)),
):
    runtime = get_runtime()
    if str(user_id) == principal.user_id:
        raise ValidationError(
            "cannot delete your own account", detail={"user_id": str(user_id)}
        )
    if not runtime.store.delete_user(str(user_id)):
        raise NotFoundError("user not found", detail={"user_id": str(user_id)})
    logger.info("user_deleted", user_id=str(user_id), actor_id=principal.user_id)
    return MessageResponse(message="user deleted successfully")


def _user_roles_response(runtime, user_id: str) -> UserRolesResponse:
    roles = runtime.store.list_user_roles(user_id)
    return UserRolesResponse(
        user_id=user_id,
        roles=[RoleSummaryResponse(id=r.id, name=r.name) for r in roles],
    )


@router.post("/users/{user_id}/roles", response_model=UserRolesResponse, tags=["roles"])
async def assign_user_role(
    user_id: UUID,
    body: AssignRoleRequest,
    principal: AccessClaims = Depends(require_permission("users", "update")),
):
    runtime = get_runtime()
    user = _get_user_or_404(runtime, str(user_id))
    role = _get_role_or_404(runtime, str(body.role_id))
    runtime.store.assign_role(user.id, role.id)
    logger.info(
        "user_role_assigned",
        user_id=user.id,
        role_id=role.id,
        actor_id=principal.user_id,
    )
    return _user_roles_response(runtime, user.id)


@router.delete(
    "/users/{user_id}/roles/{role_id}", response_model=UserRolesResponse, tags=["roles"]
)
async def unassign_user_role(
    user_id: UUID,
    role_id: UUID,
    principal: AccessClaims = Depends(require_permission("users", "update")),
):
    runtime = get_runtime()
    if not runtime.store.unassign_role(str(user_id), str(role_id)):
        raise _http_error(
            "not_found",
            "role assignment not found",
            status_code=404,
            details={"user_id": str(user_id), "role_id": str(role_id)},
        )
    logger.info(
        "user_role_unassigned",
        user_id=str(user_id),
        role_id=str(role_id),
        actor_id=principal.user_id,
    )
    return _user_roles_response(runtime, str(user_id))
