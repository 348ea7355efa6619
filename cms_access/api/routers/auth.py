from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from cms_access.api.deps import CurrentUserId, Store
from cms_access.api.errors import HANDLED_ERRORS, handle_access_error, not_found
from cms_access.domain.models import BootstrapAdminRequest, LoginRequest, TokenResponse, UserRead
from cms_access.infra.auth import create_access_token
from cms_access.services.bootstrap_service import BootstrapService
from cms_access.services.errors import AuthError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_bootstrap_service() -> BootstrapService:
    return BootstrapService()


Bootstrap = Annotated[BootstrapService, Depends(get_bootstrap_service)]


def _authenticate(store: Store, username: str, password: str) -> UserRead:
    user = store.get_user_by_username(username)
    if user is None or not store.verify_password(user, password):
        logger.info("login rejected", extra={"username": username})
        raise AuthError("invalid credentials")
    if not user.is_active:
        raise AuthError("account is inactive")
    store.touch_last_login(user.id)
    refreshed = store.get_user(user.id) or user
    return UserRead.model_validate(refreshed)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, store: Store) -> TokenResponse:
    try:
        user = _authenticate(store, payload.username, payload.password)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    token = create_access_token(user_id=user.id, username=user.username)
    return TokenResponse(access_token=token, user=user)


@router.get("/me", response_model=UserRead)
def me(user_id: CurrentUserId, store: Store) -> UserRead:
    user = store.get_user(user_id)
    if user is None:
        raise not_found("user")
    return UserRead.model_validate(user)


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Bootstrap) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
    except HANDLED_ERRORS as exc:
        handle_access_error(exc)
    return UserRead.model_validate(user)
