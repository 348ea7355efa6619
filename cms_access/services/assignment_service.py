from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from cms_access.domain.models import (
    Permission,
    PermissionRead,
    Role,
    RolePermission,
    RolePermissionDetail,
    RoleWithPermissions,
    User,
    UserPermission,
    UserPermissionDetail,
    UserRole,
    UserRoleDetail,
    UserWithRolesAndPermissions,
    now_utc,
)
from cms_access.infra.db import get_engine
from cms_access.infra.permission_cache import PermissionCache, permission_cache
from cms_access.services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

LinkT = TypeVar("LinkT", UserRole, RolePermission, UserPermission)


class AssignmentManager:
    def __init__(self, cache: PermissionCache | None = None) -> None:
        self._cache = cache or permission_cache

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _require(self, session: Session, model: type, entity_id: int, label: str) -> None:
        if session.get(model, entity_id) is None:
            raise NotFoundError(f"{label} not found")

    def _require_assigner(self, session: Session, assigned_by: int | None) -> None:
        if assigned_by is not None:
            self._require(session, User, assigned_by, "assigning user")

    def _find_user_role(self, session: Session, user_id: int, role_id: int) -> UserRole | None:
        return session.exec(
            select(UserRole).where(UserRole.user_id == user_id).where(UserRole.role_id == role_id)
        ).first()

    def _find_role_permission(self, session: Session, role_id: int, permission_id: int) -> RolePermission | None:
        return session.exec(
            select(RolePermission)
            .where(RolePermission.role_id == role_id)
            .where(RolePermission.permission_id == permission_id)
        ).first()

    def _find_user_permission(self, session: Session, user_id: int, permission_id: int) -> UserPermission | None:
        return session.exec(
            select(UserPermission)
            .where(UserPermission.user_id == user_id)
            .where(UserPermission.permission_id == permission_id)
        ).first()

    def _save_link(
        self,
        session: Session,
        link: LinkT,
        find: Callable[[], LinkT | None],
        apply: Callable[[LinkT], None],
    ) -> LinkT:
        apply(link)
        session.add(link)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent writer inserted the same pair first; update its row instead.
            session.rollback()
            existing = find()
            if existing is None:
                raise ConflictError("assignment changed concurrently") from None
            link = existing
            apply(link)
            session.add(link)
            session.commit()
        session.refresh(link)
        return link

    # User <-> Role

    def list_user_roles(self, user_id: int) -> list[UserRole]:
        with self._session() as session:
            statement = select(UserRole).where(UserRole.user_id == user_id).order_by(col(UserRole.id))
            return list(session.exec(statement).all())

    def assign_user_role(
        self,
        user_id: int,
        role_id: int,
        assigned_by: int | None = None,
        expires_at: datetime | None = None,
    ) -> UserRole:
        with self._session() as session:
            self._require(session, User, user_id, "user")
            self._require(session, Role, role_id, "role")
            self._require_assigner(session, assigned_by)

            def apply(item: UserRole) -> None:
                item.assigned_at = now_utc()
                item.assigned_by = assigned_by
                item.expires_at = expires_at

            link = self._find_user_role(session, user_id, role_id) or UserRole(user_id=user_id, role_id=role_id)
            link = self._save_link(
                session, link, lambda: self._find_user_role(session, user_id, role_id), apply
            )
        self._cache.invalidate()
        logger.info(
            "role assigned",
            extra={"user_id": user_id, "role_id": role_id, "assigned_by": assigned_by},
        )
        return link

    def revoke_user_role(self, user_id: int, role_id: int) -> None:
        with self._session() as session:
            result = session.exec(
                delete(UserRole)
                .where(col(UserRole.user_id) == user_id)
                .where(col(UserRole.role_id) == role_id)
            )
            session.commit()
        if result.rowcount:
            self._cache.invalidate()
            logger.info("role revoked", extra={"user_id": user_id, "role_id": role_id})

    def replace_user_roles(
        self,
        user_id: int,
        role_ids: list[int],
        assigned_by: int | None = None,
    ) -> list[UserRole]:
        wanted = list(dict.fromkeys(role_ids))
        with self._session() as session:
            self._require(session, User, user_id, "user")
            self._require_assigner(session, assigned_by)
            if wanted:
                found = set(session.exec(select(Role.id).where(col(Role.id).in_(wanted))).all())
                missing = [item for item in wanted if item not in found]
                if missing:
                    raise NotFoundError(f"role not found: {missing}")

            existing = list(session.exec(select(UserRole).where(UserRole.user_id == user_id)).all())
            kept = {item.role_id for item in existing if item.role_id in wanted}
            for item in existing:
                if item.role_id not in kept:
                    session.delete(item)
            for role_id in wanted:
                if role_id not in kept:
                    session.add(UserRole(user_id=user_id, role_id=role_id, assigned_by=assigned_by))
            session.commit()
        self._cache.invalidate()
        logger.info("roles replaced", extra={"user_id": user_id, "role_ids": wanted})
        return self.list_user_roles(user_id)

    def list_users_by_role(self, role_id: int) -> list[User]:
        with self._session() as session:
            statement = (
                select(User)
                .join(UserRole, col(UserRole.user_id) == col(User.id))
                .where(UserRole.role_id == role_id)
                .order_by(col(User.id))
            )
            return list(session.exec(statement).all())

    # Role <-> Permission

    def list_role_permissions(self, role_id: int) -> list[RolePermission]:
        with self._session() as session:
            statement = (
                select(RolePermission)
                .where(RolePermission.role_id == role_id)
                .order_by(col(RolePermission.id))
            )
            return list(session.exec(statement).all())

    def assign_role_permission(self, role_id: int, permission_id: int) -> RolePermission:
        with self._session() as session:
            self._require(session, Role, role_id, "role")
            self._require(session, Permission, permission_id, "permission")
            link = self._find_role_permission(session, role_id, permission_id)
            if link is not None:
                return link
            link = self._save_link(
                session,
                RolePermission(role_id=role_id, permission_id=permission_id),
                lambda: self._find_role_permission(session, role_id, permission_id),
                lambda item: None,
            )
        self._cache.invalidate()
        logger.info("permission granted to role", extra={"role_id": role_id, "permission_id": permission_id})
        return link

    def revoke_role_permission(self, role_id: int, permission_id: int) -> None:
        with self._session() as session:
            result = session.exec(
                delete(RolePermission)
                .where(col(RolePermission.role_id) == role_id)
                .where(col(RolePermission.permission_id) == permission_id)
            )
            session.commit()
        if result.rowcount:
            self._cache.invalidate()
            logger.info(
                "permission revoked from role",
                extra={"role_id": role_id, "permission_id": permission_id},
            )

    def get_role_with_permissions(self, role_id: int) -> RoleWithPermissions | None:
        with self._session() as session:
            role = session.get(Role, role_id)
            if role is None:
                return None
            rows = session.exec(
                select(RolePermission, Permission)
                .join(Permission, col(Permission.id) == col(RolePermission.permission_id))
                .where(RolePermission.role_id == role_id)
                .order_by(col(Permission.resource), col(Permission.action))
            ).all()
            details = [
                RolePermissionDetail(
                    id=link.id,
                    role_id=link.role_id,
                    permission_id=link.permission_id,
                    created_at=link.created_at,
                    permission=PermissionRead.model_validate(permission),
                )
                for link, permission in rows
            ]
            return RoleWithPermissions.model_validate(
                {**role.model_dump(), "role_permissions": details}
            )

    # User <-> Permission (direct)

    def list_user_permissions(self, user_id: int) -> list[UserPermission]:
        with self._session() as session:
            statement = (
                select(UserPermission)
                .where(UserPermission.user_id == user_id)
                .order_by(col(UserPermission.id))
            )
            return list(session.exec(statement).all())

    def assign_user_permission(
        self,
        user_id: int,
        permission_id: int,
        granted: bool = True,
        assigned_by: int | None = None,
        expires_at: datetime | None = None,
    ) -> UserPermission:
        with self._session() as session:
            self._require(session, User, user_id, "user")
            self._require(session, Permission, permission_id, "permission")
            self._require_assigner(session, assigned_by)

            def apply(item: UserPermission) -> None:
                item.granted = granted
                item.assigned_at = now_utc()
                item.assigned_by = assigned_by
                item.expires_at = expires_at

            link = self._find_user_permission(session, user_id, permission_id) or UserPermission(
                user_id=user_id, permission_id=permission_id
            )
            link = self._save_link(
                session, link, lambda: self._find_user_permission(session, user_id, permission_id), apply
            )
        self._cache.invalidate()
        logger.info(
            "direct permission assigned",
            extra={"user_id": user_id, "permission_id": permission_id, "granted": granted},
        )
        return link

    def revoke_user_permission(self, user_id: int, permission_id: int) -> None:
        with self._session() as session:
            result = session.exec(
                delete(UserPermission)
                .where(col(UserPermission.user_id) == user_id)
                .where(col(UserPermission.permission_id) == permission_id)
            )
            session.commit()
        if result.rowcount:
            self._cache.invalidate()
            logger.info(
                "direct permission removed",
                extra={"user_id": user_id, "permission_id": permission_id},
            )

    def get_user_with_roles_and_permissions(self, user_id: int) -> UserWithRolesAndPermissions | None:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            role_rows = session.exec(
                select(UserRole, Role)
                .join(Role, col(Role.id) == col(UserRole.role_id))
                .where(UserRole.user_id == user_id)
                .order_by(col(Role.level).desc(), col(Role.name))
            ).all()
            permission_rows = session.exec(
                select(UserPermission, Permission)
                .join(Permission, col(Permission.id) == col(UserPermission.permission_id))
                .where(UserPermission.user_id == user_id)
                .order_by(col(Permission.resource), col(Permission.action))
            ).all()

        user_roles = []
        for link, role in role_rows:
            role_detail = self.get_role_with_permissions(role.id)
            if role_detail is None:
                continue
            user_roles.append(
                UserRoleDetail.model_validate(
                    {**link.model_dump(), "role": role_detail}
                )
            )
        user_permissions = [
            UserPermissionDetail.model_validate(
                {**link.model_dump(), "permission": PermissionRead.model_validate(permission)}
            )
            for link, permission in permission_rows
        ]
        return UserWithRolesAndPermissions.model_validate(
            {
                **user.model_dump(exclude={"password_hash"}),
                "user_roles": user_roles,
                "user_permissions": user_permissions,
            }
        )
