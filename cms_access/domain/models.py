from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: int | None = Field(default=None, primary_key=True)
    actor_id: int | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool = Field(default=True)
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Role(SQLModel, table=True):
    __tablename__ = "roles"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    display_name: str
    description: str | None = None
    level: int = Field(default=1, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),
    )

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    display_name: str
    description: str | None = None
    resource: str = Field(index=True)
    action: str = Field(index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc)

    @property
    def key(self) -> str:
        return f"{self.resource}.{self.action}"


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
        Index("ix_user_roles_role", "role_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    role_id: int = Field(foreign_key="roles.id", ondelete="CASCADE")
    assigned_at: datetime = Field(default_factory=now_utc)
    assigned_by: int | None = Field(default=None, foreign_key="users.id", ondelete="SET NULL")
    expires_at: datetime | None = None


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permissions_role_permission"),
        Index("ix_role_permissions_permission", "permission_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    role_id: int = Field(foreign_key="roles.id", ondelete="CASCADE", index=True)
    permission_id: int = Field(foreign_key="permissions.id", ondelete="CASCADE")
    created_at: datetime = Field(default_factory=now_utc)


class UserPermission(SQLModel, table=True):
    __tablename__ = "user_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "permission_id", name="uq_user_permissions_user_permission"),
        Index("ix_user_permissions_permission", "permission_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    permission_id: int = Field(foreign_key="permissions.id", ondelete="CASCADE")
    granted: bool = Field(default=True)
    assigned_at: datetime = Field(default_factory=now_utc)
    assigned_by: int | None = Field(default=None, foreign_key="users.id", ondelete="SET NULL")
    expires_at: datetime | None = None


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    username: str = PydanticField(min_length=1, max_length=150)
    email: str = PydanticField(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = PydanticField(min_length=1)
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool = True


class UserUpdate(BaseModel):
    username: str | None = PydanticField(default=None, min_length=1, max_length=150)
    email: str | None = PydanticField(
        default=None, min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$"
    )
    password: str | None = PydanticField(default=None, min_length=1)
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: int
    username: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class RoleCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=100, pattern=r"^[a-z0-9_\-]+$")
    display_name: str = PydanticField(min_length=1)
    description: str | None = None
    level: int = PydanticField(default=1, ge=1, le=100)
    is_active: bool = True


class RoleUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=100, pattern=r"^[a-z0-9_\-]+$")
    display_name: str | None = PydanticField(default=None, min_length=1)
    description: str | None = None
    level: int | None = PydanticField(default=None, ge=1, le=100)
    is_active: bool | None = None


class RoleRead(ORMReadModel):
    id: int
    name: str
    display_name: str
    description: str | None = None
    level: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class PermissionCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=150)
    display_name: str = PydanticField(min_length=1)
    description: str | None = None
    resource: str = PydanticField(min_length=1, max_length=100)
    action: str = PydanticField(min_length=1, max_length=100)
    is_active: bool = True

    @field_validator("resource", "action")
    @classmethod
    def reject_separator(cls, value: str) -> str:
        if "." in value or value.strip() != value:
            raise ValueError("must not contain '.' or surrounding whitespace")
        return value


class PermissionUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=150)
    display_name: str | None = PydanticField(default=None, min_length=1)
    description: str | None = None
    resource: str | None = PydanticField(default=None, min_length=1, max_length=100)
    action: str | None = PydanticField(default=None, min_length=1, max_length=100)
    is_active: bool | None = None

    @field_validator("resource", "action")
    @classmethod
    def reject_separator(cls, value: str | None) -> str | None:
        if value is not None and ("." in value or value.strip() != value):
            raise ValueError("must not contain '.' or surrounding whitespace")
        return value


class PermissionRead(ORMReadModel):
    id: int
    name: str
    display_name: str
    description: str | None = None
    resource: str
    action: str
    is_active: bool
    created_at: datetime


class UserRoleAssignRequest(BaseModel):
    role_id: int
    assigned_by: int | None = None
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def normalize_expires_at(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class UserRolesReplaceRequest(BaseModel):
    role_ids: list[int] = PydanticField(default_factory=list)
    assigned_by: int | None = None


class UserRoleRead(ORMReadModel):
    id: int
    user_id: int
    role_id: int
    assigned_at: datetime
    assigned_by: int | None = None
    expires_at: datetime | None = None


class RolePermissionAssignRequest(BaseModel):
    permission_id: int


class RolePermissionRead(ORMReadModel):
    id: int
    role_id: int
    permission_id: int
    created_at: datetime


class UserPermissionAssignRequest(BaseModel):
    permission_id: int
    granted: bool = True
    assigned_by: int | None = None
    expires_at: datetime | None = None

    @field_validator("expires_at")
    @classmethod
    def normalize_expires_at(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class UserPermissionRead(ORMReadModel):
    id: int
    user_id: int
    permission_id: int
    granted: bool
    assigned_at: datetime
    assigned_by: int | None = None
    expires_at: datetime | None = None


class RolePermissionDetail(RolePermissionRead):
    permission: PermissionRead


class RoleWithPermissions(RoleRead):
    role_permissions: list[RolePermissionDetail] = PydanticField(default_factory=list)


class UserRoleDetail(UserRoleRead):
    role: RoleWithPermissions


class UserPermissionDetail(UserPermissionRead):
    permission: PermissionRead


class UserWithRolesAndPermissions(UserRead):
    user_roles: list[UserRoleDetail] = PydanticField(default_factory=list)
    user_permissions: list[UserPermissionDetail] = PydanticField(default_factory=list)


class PermissionCheckRead(BaseModel):
    user_id: int
    resource: str
    action: str
    has_permission: bool


class RoleCheckRead(BaseModel):
    user_id: int
    role_name: str
    has_role: bool


class EffectivePermissionsRead(BaseModel):
    user_id: int
    permissions: list[str]


class LoginRequest(BaseModel):
    username: str
    password: str


class BootstrapAdminRequest(BaseModel):
    username: str = PydanticField(min_length=1, max_length=150)
    email: str = PydanticField(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = PydanticField(min_length=1)
    first_name: str | None = None
    last_name: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead
