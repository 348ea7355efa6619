from __future__ import annotations

import hashlib
import hmac
import logging
import os

from sqlalchemy import delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from cms_access.domain.models import (
    Permission,
    PermissionCreate,
    PermissionUpdate,
    Role,
    RoleCreate,
    RolePermission,
    RoleUpdate,
    User,
    UserCreate,
    UserPermission,
    UserRole,
    UserUpdate,
    now_utc,
)
from cms_access.infra.db import get_engine
from cms_access.infra.permission_cache import PermissionCache, permission_cache
from cms_access.services.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

PASSWORD_SALT = os.getenv("PASSWORD_SALT", "cms-access-dev-salt")


def hash_password(raw_password: str) -> str:
    return hashlib.sha256(f"{PASSWORD_SALT}:{raw_password}".encode()).hexdigest()


NULLABLE_USER_FIELDS = {"first_name", "last_name"}


def _reject_nulls(changes: dict[str, object], nullable: set[str]) -> None:
    nulled = sorted(name for name, value in changes.items() if value is None and name not in nullable)
    if nulled:
        raise ValidationError(f"fields cannot be null: {', '.join(nulled)}")


class EntityStore:
    def __init__(self, cache: PermissionCache | None = None) -> None:
        self._cache = cache or permission_cache

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _commit(self, session: Session, conflict_message: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(conflict_message) from exc

    # Users

    def get_user(self, user_id: int) -> User | None:
        with self._session() as session:
            return session.get(User, user_id)

    def get_user_by_username(self, username: str) -> User | None:
        with self._session() as session:
            return session.exec(select(User).where(User.username == username)).first()

    def get_user_by_email(self, email: str) -> User | None:
        with self._session() as session:
            return session.exec(select(User).where(User.email == email)).first()

    def list_users(self) -> list[User]:
        with self._session() as session:
            statement = select(User).order_by(col(User.created_at).desc(), col(User.id).desc())
            return list(session.exec(statement).all())

    def count_users(self) -> int:
        with self._session() as session:
            return int(session.exec(select(func.count()).select_from(User)).one())

    def create_user(self, payload: UserCreate) -> User:
        with self._session() as session:
            user = User(
                username=payload.username,
                email=payload.email,
                password_hash=hash_password(payload.password),
                first_name=payload.first_name,
                last_name=payload.last_name,
                is_active=payload.is_active,
            )
            session.add(user)
            self._commit(session, "username or email already exists")
            session.refresh(user)
            logger.info("user created", extra={"user_id": user.id, "username": user.username})
            return user

    def update_user(self, user_id: int, payload: UserUpdate) -> User | None:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            changes = payload.model_dump(exclude_unset=True)
            _reject_nulls(changes, NULLABLE_USER_FIELDS)
            password = changes.pop("password", None)
            if password is not None:
                user.password_hash = hash_password(password)
            for field_name, value in changes.items():
                setattr(user, field_name, value)
            user.updated_at = now_utc()
            session.add(user)
            self._commit(session, "username or email already exists")
            session.refresh(user)
            return user

    def touch_last_login(self, user_id: int) -> None:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                return
            user.last_login_at = now_utc()
            user.updated_at = user.last_login_at
            session.add(user)
            session.commit()

    def verify_password(self, user: User, raw_password: str) -> bool:
        return hmac.compare_digest(user.password_hash, hash_password(raw_password))

    def delete_user(self, user_id: int) -> bool:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                return False
            session.exec(delete(UserRole).where(col(UserRole.user_id) == user_id))
            session.exec(delete(UserPermission).where(col(UserPermission.user_id) == user_id))
            session.delete(user)
            session.commit()
        self._cache.invalidate()
        logger.info("user deleted", extra={"user_id": user_id})
        return True

    # Roles

    def get_role(self, role_id: int) -> Role | None:
        with self._session() as session:
            return session.get(Role, role_id)

    def get_role_by_name(self, name: str) -> Role | None:
        with self._session() as session:
            return session.exec(select(Role).where(Role.name == name)).first()

    def list_roles(self) -> list[Role]:
        with self._session() as session:
            statement = select(Role).order_by(col(Role.level).desc(), col(Role.name))
            return list(session.exec(statement).all())

    def create_role(self, payload: RoleCreate) -> Role:
        with self._session() as session:
            role = Role(**payload.model_dump())
            session.add(role)
            self._commit(session, "role name already exists")
            session.refresh(role)
            logger.info("role created", extra={"role_id": role.id, "role_name": role.name})
            return role

    def update_role(self, role_id: int, payload: RoleUpdate) -> Role | None:
        with self._session() as session:
            role = session.get(Role, role_id)
            if role is None:
                return None
            changes = payload.model_dump(exclude_unset=True)
            _reject_nulls(changes, {"description"})
            for field_name, value in changes.items():
                setattr(role, field_name, value)
            role.updated_at = now_utc()
            session.add(role)
            self._commit(session, "role name already exists")
            session.refresh(role)
        self._cache.invalidate()
        return role

    def delete_role(self, role_id: int) -> bool:
        with self._session() as session:
            role = session.get(Role, role_id)
            if role is None:
                return False
            session.exec(delete(RolePermission).where(col(RolePermission.role_id) == role_id))
            session.exec(delete(UserRole).where(col(UserRole.role_id) == role_id))
            session.delete(role)
            session.commit()
        self._cache.invalidate()
        logger.info("role deleted", extra={"role_id": role_id})
        return True

    # Permissions

    def get_permission(self, permission_id: int) -> Permission | None:
        with self._session() as session:
            return session.get(Permission, permission_id)

    def get_permission_by_name(self, name: str) -> Permission | None:
        with self._session() as session:
            return session.exec(select(Permission).where(Permission.name == name)).first()

    def get_permission_by_key(self, resource: str, action: str) -> Permission | None:
        with self._session() as session:
            statement = (
                select(Permission)
                .where(Permission.resource == resource)
                .where(Permission.action == action)
            )
            return session.exec(statement).first()

    def list_permissions(self) -> list[Permission]:
        with self._session() as session:
            statement = select(Permission).order_by(col(Permission.resource), col(Permission.action))
            return list(session.exec(statement).all())

    def create_permission(self, payload: PermissionCreate) -> Permission:
        with self._session() as session:
            duplicate = session.exec(
                select(Permission.id).where(
                    or_(
                        col(Permission.name) == payload.name,
                        (col(Permission.resource) == payload.resource)
                        & (col(Permission.action) == payload.action),
                    )
                )
            ).first()
            if duplicate is not None:
                raise ConflictError("permission name or resource/action pair already exists")
            permission = Permission(**payload.model_dump())
            session.add(permission)
            self._commit(session, "permission name or resource/action pair already exists")
            session.refresh(permission)
            logger.info("permission created", extra={"permission": permission.key})
            return permission

    def update_permission(self, permission_id: int, payload: PermissionUpdate) -> Permission | None:
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                return None
            changes = payload.model_dump(exclude_unset=True)
            _reject_nulls(changes, {"description"})
            for field_name, value in changes.items():
                setattr(permission, field_name, value)
            session.add(permission)
            self._commit(session, "permission name or resource/action pair already exists")
            session.refresh(permission)
        self._cache.invalidate()
        return permission

    def delete_permission(self, permission_id: int) -> bool:
        with self._session() as session:
            permission = session.get(Permission, permission_id)
            if permission is None:
                return False
            session.exec(delete(RolePermission).where(col(RolePermission.permission_id) == permission_id))
            session.exec(delete(UserPermission).where(col(UserPermission.permission_id) == permission_id))
            session.delete(permission)
            session.commit()
        self._cache.invalidate()
        logger.info("permission deleted", extra={"permission_id": permission_id})
        return True
