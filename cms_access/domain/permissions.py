from __future__ import annotations

from typing import NamedTuple


class PermissionKey(NamedTuple):
    resource: str
    action: str

    def __str__(self) -> str:
        return format_permission(self.resource, self.action)


def format_permission(resource: str, action: str) -> str:
    return f"{resource}.{action}"


def parse_permission(value: str) -> PermissionKey:
    resource, sep, action = value.partition(".")
    if not sep or not resource or not action:
        raise ValueError(f"invalid permission key: {value!r}")
    return PermissionKey(resource, action)


PERM_USERS_CREATE = PermissionKey("users", "create")
PERM_USERS_READ = PermissionKey("users", "read")
PERM_USERS_UPDATE = PermissionKey("users", "update")
PERM_USERS_DELETE = PermissionKey("users", "delete")
PERM_USERS_MANAGE_ROLES = PermissionKey("users", "manage_roles")

PERM_ROLES_CREATE = PermissionKey("roles", "create")
PERM_ROLES_READ = PermissionKey("roles", "read")
PERM_ROLES_UPDATE = PermissionKey("roles", "update")
PERM_ROLES_DELETE = PermissionKey("roles", "delete")
PERM_ROLES_MANAGE_PERMISSIONS = PermissionKey("roles", "manage_permissions")

PERM_PAGES_CREATE = PermissionKey("pages", "create")
PERM_PAGES_READ = PermissionKey("pages", "read")
PERM_PAGES_UPDATE = PermissionKey("pages", "update")
PERM_PAGES_DELETE = PermissionKey("pages", "delete")
PERM_PAGES_PUBLISH = PermissionKey("pages", "publish")

PERM_POSTS_CREATE = PermissionKey("posts", "create")
PERM_POSTS_READ = PermissionKey("posts", "read")
PERM_POSTS_UPDATE = PermissionKey("posts", "update")
PERM_POSTS_DELETE = PermissionKey("posts", "delete")
PERM_POSTS_PUBLISH = PermissionKey("posts", "publish")

PERM_SETTINGS_READ = PermissionKey("settings", "read")
PERM_SETTINGS_UPDATE = PermissionKey("settings", "update")

PERM_DASHBOARD_ACCESS = PermissionKey("dashboard", "access")

DEFAULT_PERMISSIONS: tuple[PermissionKey, ...] = (
    PERM_USERS_CREATE,
    PERM_USERS_READ,
    PERM_USERS_UPDATE,
    PERM_USERS_DELETE,
    PERM_USERS_MANAGE_ROLES,
    PERM_ROLES_CREATE,
    PERM_ROLES_READ,
    PERM_ROLES_UPDATE,
    PERM_ROLES_DELETE,
    PERM_ROLES_MANAGE_PERMISSIONS,
    PERM_PAGES_CREATE,
    PERM_PAGES_READ,
    PERM_PAGES_UPDATE,
    PERM_PAGES_DELETE,
    PERM_PAGES_PUBLISH,
    PERM_POSTS_CREATE,
    PERM_POSTS_READ,
    PERM_POSTS_UPDATE,
    PERM_POSTS_DELETE,
    PERM_POSTS_PUBLISH,
    PERM_SETTINGS_READ,
    PERM_SETTINGS_UPDATE,
    PERM_DASHBOARD_ACCESS,
)

SUPER_ADMIN_ROLE = "super_admin"
