from __future__ import annotations

import logging

from sqlalchemy import func
from sqlmodel import Session, select

from cms_access.domain.models import (
    BootstrapAdminRequest,
    Permission,
    Role,
    RolePermission,
    User,
    UserRole,
)
from cms_access.domain.permissions import DEFAULT_PERMISSIONS, SUPER_ADMIN_ROLE, PermissionKey
from cms_access.infra.db import get_engine
from cms_access.infra.permission_cache import PermissionCache, permission_cache
from cms_access.services.entity_store import hash_password
from cms_access.services.errors import ConflictError

logger = logging.getLogger(__name__)


def _display_name(key: PermissionKey) -> str:
    return f"{key.action.replace('_', ' ').title()} {key.resource.title()}"


class BootstrapService:
    def __init__(self, cache: PermissionCache | None = None) -> None:
        self._cache = cache or permission_cache

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def ensure_default_permissions(self, session: Session) -> list[Permission]:
        rows = session.exec(select(Permission)).all()
        existing = {(item.resource, item.action) for item in rows}
        names = {item.name for item in rows}
        created: list[Permission] = []
        for key in DEFAULT_PERMISSIONS:
            if (key.resource, key.action) in existing:
                continue
            # A custom permission may already hold the default name for another pair.
            name = next((item for item in (str(key), f"{key.resource}:{key.action}") if item not in names), None)
            if name is None:
                logger.warning("default permission name taken, skipping", extra={"permission": str(key)})
                continue
            names.add(name)
            permission = Permission(
                name=name,
                display_name=_display_name(key),
                description=f"default permission {key}",
                resource=key.resource,
                action=key.action,
            )
            session.add(permission)
            created.append(permission)
        if created:
            session.commit()
            logger.info("default permissions seeded", extra={"count": len(created)})
        return list(session.exec(select(Permission)).all())

    def ensure_super_admin_role(self, session: Session) -> Role:
        permissions = self.ensure_default_permissions(session)
        role = session.exec(select(Role).where(Role.name == SUPER_ADMIN_ROLE)).first()
        if role is None:
            role = Role(
                name=SUPER_ADMIN_ROLE,
                display_name="Super Admin",
                description="Full system access with all permissions",
                level=100,
            )
            session.add(role)
            session.commit()
            session.refresh(role)

        linked = set(
            session.exec(select(RolePermission.permission_id).where(RolePermission.role_id == role.id)).all()
        )
        for permission in permissions:
            if permission.id not in linked:
                session.add(RolePermission(role_id=role.id, permission_id=permission.id))
        session.commit()
        return role

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            if session.exec(select(func.count()).select_from(User)).one():
                raise ConflictError("system already initialized")

            role = self.ensure_super_admin_role(session)
            admin = User(
                username=payload.username,
                email=payload.email,
                password_hash=hash_password(payload.password),
                first_name=payload.first_name,
                last_name=payload.last_name,
                is_active=True,
            )
            session.add(admin)
            session.commit()
            session.refresh(admin)

            session.add(UserRole(user_id=admin.id, role_id=role.id, assigned_by=admin.id))
            session.commit()
        self._cache.invalidate()
        logger.info("administrator bootstrapped", extra={"user_id": admin.id, "username": admin.username})
        return admin
