from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response, status

from cms_access.api.deps import Store, require_permission
from cms_access.api.errors import HANDLED_ERRORS, handle_access_error, not_found
from cms_access.domain.models import PermissionCreate, PermissionRead, PermissionUpdate
from cms_access.domain.permissions import (
    PERM_ROLES_CREATE,
    PERM_ROLES_DELETE,
    PERM_ROLES_READ,
    PERM_ROLES_UPDATE,
)
from cms_access.infra.audit import set_audit_context

router = APIRouter()


@router.get(
    "",
    response_model=list[PermissionRead],
    dependencies=[Depends(require_permission(PERM_ROLES_READ))],
)
def list_permissions(store: Store) -> list[PermissionRead]:
    return [PermissionRead.model_validate(item) for item in store.list_permissions()]


@router.post(
    "",
    response_model=PermissionRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permission(PERM_ROLES_CREATE))],
)
def create_permission(payload: PermissionCreate, request: Request, store: Store) -> PermissionRead:
    try:
        permission = store.create_permission(payload)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    set_audit_context(request, action="rbac.permission.create", resource=f"permission:{permission.key}")
    return PermissionRead.model_validate(permission)


@router.get(
    "/{permission_id}",
    response_model=PermissionRead,
    dependencies=[Depends(require_permission(PERM_ROLES_READ))],
)
def get_permission(permission_id: int, store: Store) -> PermissionRead:
    permission = store.get_permission(permission_id)
    if permission is None:
        raise not_found("permission")
    return PermissionRead.model_validate(permission)


@router.put(
    "/{permission_id}",
    response_model=PermissionRead,
    dependencies=[Depends(require_permission(PERM_ROLES_UPDATE))],
)
def update_permission(
    permission_id: int,
    payload: PermissionUpdate,
    request: Request,
    store: Store,
) -> PermissionRead:
    try:
        permission = store.update_permission(permission_id, payload)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    if permission is None:
        raise not_found("permission")
    set_audit_context(
        request,
        action="rbac.permission.update",
        resource=f"permission:{permission.key}",
        detail={"changed": sorted(payload.model_fields_set)},
    )
    return PermissionRead.model_validate(permission)


@router.delete(
    "/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_permission(PERM_ROLES_DELETE))],
)
def delete_permission(permission_id: int, request: Request, store: Store) -> Response:
    if not store.delete_permission(permission_id):
        raise not_found("permission")
    set_audit_context(request, action="rbac.permission.delete", resource=f"permission:{permission_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
