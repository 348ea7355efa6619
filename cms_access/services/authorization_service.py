from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from cms_access.domain.models import Permission, Role, RolePermission, UserPermission, UserRole, now_utc
from cms_access.domain.permissions import format_permission
from cms_access.infra.db import get_engine
from cms_access.infra.permission_cache import PermissionCache, permission_cache

logger = logging.getLogger(__name__)

REVOKE_OVERRIDES_ROLE = os.getenv("RBAC_REVOKE_OVERRIDES_ROLE", "1") in {"1", "true", "yes"}


def _not_expired(expires_at: Any, now: datetime) -> Any:
    return or_(col(expires_at).is_(None), col(expires_at) > now)


def _earliest(current: datetime | None, expires_at: datetime | None) -> datetime | None:
    if expires_at is None:
        return current
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return expires_at if current is None else min(current, expires_at)


class AuthorizationEngine:
    def __init__(
        self,
        *,
        revoke_overrides_role: bool = REVOKE_OVERRIDES_ROLE,
        cache: PermissionCache | None = None,
    ) -> None:
        self.revoke_overrides_role = revoke_overrides_role
        self._cache = cache or permission_cache

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _has_direct(
        self,
        session: Session,
        user_id: int,
        resource: str,
        action: str,
        *,
        granted: bool,
        now: datetime,
    ) -> bool:
        statement = (
            select(UserPermission.id)
            .join(Permission, col(Permission.id) == col(UserPermission.permission_id))
            .where(UserPermission.user_id == user_id)
            .where(Permission.resource == resource)
            .where(Permission.action == action)
            .where(col(UserPermission.granted).is_(granted))
            .where(_not_expired(UserPermission.expires_at, now))
        )
        if granted:
            statement = statement.where(col(Permission.is_active).is_(True))
        return session.exec(statement.limit(1)).first() is not None

    def _has_via_role(self, session: Session, user_id: int, resource: str, action: str, now: datetime) -> bool:
        statement = (
            select(RolePermission.id)
            .join(UserRole, col(UserRole.role_id) == col(RolePermission.role_id))
            .join(Role, col(Role.id) == col(UserRole.role_id))
            .join(Permission, col(Permission.id) == col(RolePermission.permission_id))
            .where(UserRole.user_id == user_id)
            .where(Permission.resource == resource)
            .where(Permission.action == action)
            .where(col(Permission.is_active).is_(True))
            .where(col(Role.is_active).is_(True))
            .where(_not_expired(UserRole.expires_at, now))
            .limit(1)
        )
        return session.exec(statement).first() is not None

    def has_permission(self, user_id: int, resource: str, action: str) -> bool:
        now = now_utc()
        try:
            with self._session() as session:
                if self._has_direct(session, user_id, resource, action, granted=True, now=now):
                    return True
                if not self._has_via_role(session, user_id, resource, action, now):
                    return False
                if self.revoke_overrides_role and self._has_direct(
                    session, user_id, resource, action, granted=False, now=now
                ):
                    logger.info(
                        "role grant vetoed by direct revoke",
                        extra={"user_id": user_id, "permission": format_permission(resource, action)},
                    )
                    return False
                return True
        except SQLAlchemyError:
            logger.exception(
                "permission check failed; denying",
                extra={"user_id": user_id, "permission": format_permission(resource, action)},
            )
            return False

    def has_role(self, user_id: int, role_name: str) -> bool:
        return self.has_any_role(user_id, [role_name])

    def has_any_role(self, user_id: int, role_names: Iterable[str]) -> bool:
        names = sorted({name for name in role_names if name})
        if not names:
            return False
        now = now_utc()
        statement = (
            select(UserRole.id)
            .join(Role, col(Role.id) == col(UserRole.role_id))
            .where(UserRole.user_id == user_id)
            .where(col(Role.name).in_(names))
            .where(col(Role.is_active).is_(True))
            .where(_not_expired(UserRole.expires_at, now))
            .limit(1)
        )
        try:
            with self._session() as session:
                return session.exec(statement).first() is not None
        except SQLAlchemyError:
            logger.exception("role check failed; denying", extra={"user_id": user_id, "roles": names})
            return False

    def _collect_effective(
        self, session: Session, user_id: int, now: datetime
    ) -> tuple[set[str], datetime | None]:
        direct_rows = session.exec(
            select(
                Permission.resource,
                Permission.action,
                Permission.is_active,
                UserPermission.granted,
                UserPermission.expires_at,
            )
            .join(UserPermission, col(UserPermission.permission_id) == col(Permission.id))
            .where(UserPermission.user_id == user_id)
            .where(_not_expired(UserPermission.expires_at, now))
        ).all()
        granted: set[str] = set()
        revoked: set[str] = set()
        # Earliest future expiry among the rows that shaped the result.
        expires_first: datetime | None = None
        for resource, action, is_active, is_granted, expires_at in direct_rows:
            expires_first = _earliest(expires_first, expires_at)
            if not is_granted:
                revoked.add(format_permission(resource, action))
            elif is_active:
                granted.add(format_permission(resource, action))

        role_rows = session.exec(
            select(Permission.resource, Permission.action, UserRole.expires_at)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .join(UserRole, col(UserRole.role_id) == col(RolePermission.role_id))
            .join(Role, col(Role.id) == col(UserRole.role_id))
            .where(UserRole.user_id == user_id)
            .where(col(Permission.is_active).is_(True))
            .where(col(Role.is_active).is_(True))
            .where(_not_expired(UserRole.expires_at, now))
        ).all()
        role_derived: set[str] = set()
        for resource, action, expires_at in role_rows:
            expires_first = _earliest(expires_first, expires_at)
            role_derived.add(format_permission(resource, action))
        if self.revoke_overrides_role:
            role_derived -= revoked

        return granted | role_derived, expires_first

    def effective_permissions(self, user_id: int) -> set[str]:
        cached = self._cache.get(user_id)
        if cached is not None:
            return cached
        generation = self._cache.current_generation()
        now = now_utc()
        try:
            with self._session() as session:
                permissions, expires_first = self._collect_effective(session, user_id, now)
        except SQLAlchemyError:
            logger.exception("effective permission lookup failed", extra={"user_id": user_id})
            return set()
        if generation is None:
            return permissions
        ttl_sec = None
        if expires_first is not None:
            ttl_sec = int((expires_first - now).total_seconds())
            if ttl_sec < 1:
                return permissions
        self._cache.put(user_id, permissions, generation=generation, ttl_sec=ttl_sec)
        return permissions
