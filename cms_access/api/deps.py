from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.exc import SQLAlchemyError

from cms_access.domain.permissions import PermissionKey, format_permission, parse_permission
from cms_access.infra.auth import decode_access_token, user_id_from_claims
from cms_access.services.assignment_service import AssignmentManager
from cms_access.services.authorization_service import AuthorizationEngine
from cms_access.services.entity_store import EntityStore

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

AUTH_REQUIRED = "Authentication required"


def get_entity_store() -> EntityStore:
    return EntityStore()


def get_assignment_manager() -> AssignmentManager:
    return AssignmentManager()


def get_authorization_engine() -> AuthorizationEngine:
    return AuthorizationEngine()


Store = Annotated[EntityStore, Depends(get_entity_store)]
Assignments = Annotated[AssignmentManager, Depends(get_assignment_manager)]
Authz = Annotated[AuthorizationEngine, Depends(get_authorization_engine)]


def _unauthenticated(detail: str = AUTH_REQUIRED) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"message": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_claims(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)],
) -> dict[str, Any]:
    if not token:
        raise _unauthenticated()
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise _unauthenticated("Invalid token") from exc
    request.state.claims = claims
    return claims


def get_current_user_id(
    request: Request,
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    store: Store,
) -> int:
    user_id = user_id_from_claims(claims)
    if user_id is None:
        raise _unauthenticated("Invalid token")
    try:
        user = store.get_user(user_id)
    except SQLAlchemyError as exc:
        logger.exception("identity lookup failed; denying", extra={"user_id": user_id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Insufficient permissions"},
        ) from exc
    if user is None or not user.is_active:
        raise _unauthenticated("Account not found or inactive")
    request.state.user_id = user_id
    return user_id


CurrentUserId = Annotated[int, Depends(get_current_user_id)]


def require_permission(resource: str | PermissionKey, action: str | None = None) -> Callable[..., int]:
    if isinstance(resource, PermissionKey):
        resource, action = resource.resource, resource.action
    elif action is None:
        resource, action = parse_permission(resource)
    required = format_permission(resource, action)

    def _checker(user_id: CurrentUserId, engine: Authz) -> int:
        if not engine.has_permission(user_id, resource, action):
            logger.info("permission denied", extra={"user_id": user_id, "required": required})
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"message": "Insufficient permissions", "required": required},
            )
        return user_id

    return _checker


def require_role(*role_names: str) -> Callable[..., int]:
    expected = [item for item in role_names if item]

    def _checker(user_id: CurrentUserId, engine: Authz) -> int:
        if not engine.has_any_role(user_id, expected):
            logger.info("role denied", extra={"user_id": user_id, "required": expected})
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"message": "Insufficient role privileges", "required": expected},
            )
        return user_id

    return _checker
