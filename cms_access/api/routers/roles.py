from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response, status

from cms_access.api.deps import Assignments, Store, require_permission
from cms_access.api.errors import HANDLED_ERRORS, handle_access_error, not_found
from cms_access.domain.models import (
    RoleCreate,
    RolePermissionAssignRequest,
    RolePermissionRead,
    RoleRead,
    RoleUpdate,
    RoleWithPermissions,
    UserRead,
)
from cms_access.domain.permissions import (
    PERM_ROLES_CREATE,
    PERM_ROLES_DELETE,
    PERM_ROLES_MANAGE_PERMISSIONS,
    PERM_ROLES_READ,
    PERM_ROLES_UPDATE,
)
from cms_access.infra.audit import set_audit_context

router = APIRouter()


@router.get(
    "",
    response_model=list[RoleRead],
    dependencies=[Depends(require_permission(PERM_ROLES_READ))],
)
def list_roles(store: Store) -> list[RoleRead]:
    return [RoleRead.model_validate(item) for item in store.list_roles()]


@router.post(
    "",
    response_model=RoleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_ROLES_CREATE))],
)
def create_role(payload: RoleCreate, request: Request, store: Store) -> RoleRead:
    try:
        role = store.create_role(payload)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    set_audit_context(request, action="rbac.role.create", resource=f"role:{role.id}")
    return RoleRead.model_validate(role)


@router.get(
    "/{role_id}",
    response_model=RoleRead,
    dependencies=[Depends(require_permission(PERM_ROLES_READ))],
)
def get_role(role_id: int, store: Store) -> RoleRead:
    role = store.get_role(role_id)
    if role is None:
        raise not_found("role")
    return RoleRead.model_validate(role)


@router.put(
    "/{role_id}",
    response_model=RoleRead,
    dependencies=[Depends(require_permission(PERM_ROLES_UPDATE))],
)
def update_role(role_id: int, payload: RoleUpdate, request: Request, store: Store) -> RoleRead:
    try:
        role = store.update_role(role_id, payload)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    if role is None:
        raise not_found("role")
    set_audit_context(
        request,
        action="rbac.role.update",
        resource=f"role:{role_id}",
        detail={"changed": sorted(payload.model_fields_set)},
    )
    return RoleRead.model_validate(role)


@router.delete(
    "/{role_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_permission(PERM_ROLES_DELETE))],
)
def delete_role(role_id: int, request: Request, store: Store) -> Response:
    if not store.delete_role(role_id):
        raise not_found("role")
    set_audit_context(request, action="rbac.role.delete", resource=f"role:{role_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{role_id}/permissions",
    response_model=RoleWithPermissions,
    dependencies=[Depends(require_permission(PERM_ROLES_READ))],
)
def get_role_permissions(role_id: int, assignments: Assignments) -> RoleWithPermissions:
    role = assignments.get_role_with_permissions(role_id)
    if role is None:
        raise not_found("role")
    return role


@router.get(
    "/{role_id}/users",
    response_model=list[UserRead],
    dependencies=[Depends(require_permission(PERM_ROLES_READ))],
)
def list_role_users(role_id: int, store: Store, assignments: Assignments) -> list[UserRead]:
    if store.get_role(role_id) is None:
        raise not_found("role")
    return [UserRead.model_validate(item) for item in assignments.list_users_by_role(role_id)]


def _assign(role_id: int, permission_id: int, request: Request, assignments: Assignments) -> RolePermissionRead:
    try:
        link = assignments.assign_role_permission(role_id, permission_id)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    set_audit_context(
        request,
        action="rbac.role_permission.assign",
        resource=f"role:{role_id}",
        detail={"permission_id": permission_id},
    )
    return RolePermissionRead.model_validate(link)


@router.post(
    "/{role_id}/permissions",
    response_model=RolePermissionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_ROLES_MANAGE_PERMISSIONS))],
)
def assign_role_permission(
    role_id: int,
    payload: RolePermissionAssignRequest,
    request: Request,
    assignments: Assignments,
) -> RolePermissionRead:
    return _assign(role_id, payload.permission_id, request, assignments)


@router.post(
    "/{role_id}/permissions/{permission_id}",
    response_model=RolePermissionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_ROLES_MANAGE_PERMISSIONS))],
)
def assign_role_permission_by_path(
    role_id: int,
    permission_id: int,
    request: Request,
    assignments: Assignments,
) -> RolePermissionRead:
    return _assign(role_id, permission_id, request, assignments)


@router.delete(
    "/{role_id}/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_permission(PERM_ROLES_MANAGE_PERMISSIONS))],
)
def revoke_role_permission(
    role_id: int,
    permission_id: int,
    request: Request,
    assignments: Assignments,
) -> Response:
    assignments.revoke_role_permission(role_id, permission_id)
    set_audit_context(
        request,
        action="rbac.role_permission.revoke",
        resource=f"role:{role_id}",
        detail={"permission_id": permission_id},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
