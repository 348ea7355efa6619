from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from cms_access.api.deps import Assignments, Authz, Store, require_permission
from cms_access.api.errors import HANDLED_ERRORS, handle_access_error, not_found
from cms_access.domain.models import (
    EffectivePermissionsRead,
    PermissionCheckRead,
    RoleCheckRead,
    UserCreate,
    UserPermissionAssignRequest,
    UserPermissionRead,
    UserRead,
    UserRoleAssignRequest,
    UserRoleRead,
    UserRolesReplaceRequest,
    UserUpdate,
    UserWithRolesAndPermissions,
)
from cms_access.domain.permissions import (
    PERM_USERS_CREATE,
    PERM_USERS_DELETE,
    PERM_USERS_MANAGE_ROLES,
    PERM_USERS_READ,
    PERM_USERS_UPDATE,
)
from cms_access.infra.audit import set_audit_context

router = APIRouter()

RoleManager = Annotated[int, Depends(require_permission(PERM_USERS_MANAGE_ROLES))]


def _require_user(store: Store, user_id: int) -> None:
    if store.get_user(user_id) is None:
        raise not_found("user")


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


@router.get(
    "",
    response_model=list[UserRead],
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def list_users(store: Store) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in store.list_users()]


@router.post(
    "",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_USERS_CREATE))],
)
def create_user(payload: UserCreate, request: Request, store: Store) -> UserRead:
    try:
        user = store.create_user(payload)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    set_audit_context(request, action="user.create", resource=f"user:{user.id}")
    return UserRead.model_validate(user)


@router.get(
    "/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def get_user(user_id: int, store: Store) -> UserRead:
    user = store.get_user(user_id)
    if user is None:
        raise not_found("user")
    return UserRead.model_validate(user)


@router.put(
    "/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_permission(PERM_USERS_UPDATE))],
)
def update_user(user_id: int, payload: UserUpdate, request: Request, store: Store) -> UserRead:
    try:
        user = store.update_user(user_id, payload)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    if user is None:
        raise not_found("user")
    set_audit_context(
        request,
        action="user.update",
        resource=f"user:{user_id}",
        detail={"changed": sorted(payload.model_fields_set - {"password"})},
    )
    return UserRead.model_validate(user)


@router.delete(
    "/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_permission(PERM_USERS_DELETE))],
)
def delete_user(user_id: int, request: Request, store: Store) -> Response:
    if not store.delete_user(user_id):
        raise not_found("user")
    set_audit_context(request, action="user.delete", resource=f"user:{user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{user_id}/roles-permissions",
    response_model=UserWithRolesAndPermissions,
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def get_user_roles_and_permissions(user_id: int, assignments: Assignments) -> UserWithRolesAndPermissions:
    aggregate = assignments.get_user_with_roles_and_permissions(user_id)
    if aggregate is None:
        raise not_found("user")
    return aggregate


@router.get(
    "/{user_id}/effective-permissions",
    response_model=EffectivePermissionsRead,
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def get_effective_permissions(user_id: int, store: Store, engine: Authz) -> EffectivePermissionsRead:
    _require_user(store, user_id)
    return EffectivePermissionsRead(
        user_id=user_id,
        permissions=sorted(engine.effective_permissions(user_id)),
    )


@router.get(
    "/{user_id}/check-permission",
    response_model=PermissionCheckRead,
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def check_permission(
    user_id: int,
    engine: Authz,
    resource: Annotated[str | None, Query()] = None,
    action: Annotated[str | None, Query()] = None,
) -> PermissionCheckRead:
    if _blank(resource) or _blank(action):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Resource and action are required"},
        )
    return PermissionCheckRead(
        user_id=user_id,
        resource=resource,
        action=action,
        has_permission=engine.has_permission(user_id, resource, action),
    )


@router.get(
    "/{user_id}/check-role",
    response_model=RoleCheckRead,
    dependencies=[Depends(require_permission(PERM_USERS_READ))],
)
def check_role(
    user_id: int,
    engine: Authz,
    role_name: Annotated[str | None, Query(alias="roleName")] = None,
) -> RoleCheckRead:
    if _blank(role_name):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Role name is required"},
        )
    return RoleCheckRead(user_id=user_id, role_name=role_name, has_role=engine.has_role(user_id, role_name))


@router.get(
    "/{user_id}/roles",
    response_model=list[UserRoleRead],
    dependencies=[Depends(require_permission(PERM_USERS_MANAGE_ROLES))],
)
def list_user_roles(user_id: int, store: Store, assignments: Assignments) -> list[UserRoleRead]:
    _require_user(store, user_id)
    return [UserRoleRead.model_validate(item) for item in assignments.list_user_roles(user_id)]


@router.post("/{user_id}/roles", response_model=UserRoleRead, status_code=status.HTTP_201_CREATED)
def assign_user_role(
    user_id: int,
    payload: UserRoleAssignRequest,
    request: Request,
    actor_id: RoleManager,
    assignments: Assignments,
) -> UserRoleRead:
    assigned_by = payload.assigned_by if payload.assigned_by is not None else actor_id
    try:
        link = assignments.assign_user_role(
            user_id,
            payload.role_id,
            assigned_by=assigned_by,
            expires_at=payload.expires_at,
        )
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    set_audit_context(
        request,
        action="rbac.user_role.assign",
        resource=f"user:{user_id}",
        detail={"role_id": payload.role_id, "expires_at": link.expires_at.isoformat() if link.expires_at else None},
    )
    return UserRoleRead.model_validate(link)


@router.put("/{user_id}/roles", response_model=list[UserRoleRead])
def replace_user_roles(
    user_id: int,
    payload: UserRolesReplaceRequest,
    request: Request,
    actor_id: RoleManager,
    assignments: Assignments,
) -> list[UserRoleRead]:
    assigned_by = payload.assigned_by if payload.assigned_by is not None else actor_id
    try:
        links = assignments.replace_user_roles(user_id, payload.role_ids, assigned_by=assigned_by)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    set_audit_context(
        request,
        action="rbac.user_role.replace",
        resource=f"user:{user_id}",
        detail={"role_ids": payload.role_ids},
    )
    return [UserRoleRead.model_validate(item) for item in links]


@router.delete("/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_user_role(
    user_id: int,
    role_id: int,
    request: Request,
    _actor_id: RoleManager,
    assignments: Assignments,
) -> Response:
    assignments.revoke_user_role(user_id, role_id)
    set_audit_context(
        request,
        action="rbac.user_role.revoke",
        resource=f"user:{user_id}",
        detail={"role_id": role_id},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{user_id}/permissions",
    response_model=list[UserPermissionRead],
    dependencies=[Depends(require_permission(PERM_USERS_MANAGE_ROLES))],
)
def list_user_permissions(user_id: int, store: Store, assignments: Assignments) -> list[UserPermissionRead]:
    _require_user(store, user_id)
    return [UserPermissionRead.model_validate(item) for item in assignments.list_user_permissions(user_id)]


@router.post("/{user_id}/permissions", response_model=UserPermissionRead, status_code=status.HTTP_201_CREATED)
def assign_user_permission(
    user_id: int,
    payload: UserPermissionAssignRequest,
    request: Request,
    actor_id: RoleManager,
    assignments: Assignments,
) -> UserPermissionRead:
    assigned_by = payload.assigned_by if payload.assigned_by is not None else actor_id
    try:
        link = assignments.assign_user_permission(
            user_id,
            payload.permission_id,
            granted=payload.granted,
            assigned_by=assigned_by,
            expires_at=payload.expires_at,
        )
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    set_audit_context(
        request,
        action="rbac.user_permission.assign",
        resource=f"user:{user_id}",
        detail={"permission_id": payload.permission_id, "granted": payload.granted},
    )
    return UserPermissionRead.model_validate(link)


@router.delete("/{user_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_user_permission(
    user_id: int,
    permission_id: int,
    request: Request,
    _actor_id: RoleManager,
    assignments: Assignments,
) -> Response:
    assignments.revoke_user_permission(user_id, permission_id)
    set_audit_context(
        request,
        action="rbac.user_permission.revoke",
        resource=f"user:{user_id}",
        detail={"permission_id": permission_id},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
