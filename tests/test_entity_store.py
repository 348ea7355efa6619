from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine, select

from cms_access.domain.models import (
    PermissionCreate,
    PermissionUpdate,
    Role,
    RoleCreate,
    RoleUpdate,
    UserCreate,
    UserPermission,
    UserRole,
    UserUpdate,
)
from cms_access.infra import db
from cms_access.infra.permission_cache import PermissionCache
from cms_access.services.assignment_service import AssignmentManager
from cms_access.services.entity_store import EntityStore, hash_password
from cms_access.services.errors import ConflictError, ValidationError


@pytest.fixture()
def store_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "store_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture()
def store(store_engine: Engine) -> EntityStore:
    return EntityStore(cache=PermissionCache(enabled=False))


@pytest.fixture()
def assignments(store_engine: Engine) -> AssignmentManager:
    return AssignmentManager(cache=PermissionCache(enabled=False))


def _user_payload(username: str, **overrides: object) -> UserCreate:
    data: dict[str, object] = {
        "username": username,
        "email": f"{username}@example.com",
        "password": f"{username}-pass",
    }
    data.update(overrides)
    return UserCreate.model_validate(data)


def _permission_payload(resource: str, action: str) -> PermissionCreate:
    return PermissionCreate(
        name=f"{resource}.{action}",
        display_name=f"{action} {resource}",
        resource=resource,
        action=action,
    )


def test_user_crud_and_password(store: EntityStore) -> None:
    user = store.create_user(_user_payload("alice", first_name="Alice"))
    assert user.id is not None
    assert user.password_hash == hash_password("alice-pass")
    assert store.verify_password(user, "alice-pass") is True
    assert store.verify_password(user, "wrong") is False

    assert store.get_user_by_username("alice").id == user.id
    assert store.get_user_by_email("alice@example.com").id == user.id
    assert store.get_user(user.id + 100) is None

    updated = store.update_user(user.id, UserUpdate(last_name="Liddell", password="new-pass"))
    assert updated is not None
    assert updated.first_name == "Alice"
    assert updated.last_name == "Liddell"
    assert store.verify_password(updated, "new-pass") is True
    assert store.update_user(user.id + 100, UserUpdate(first_name="x")) is None


def test_duplicate_username_or_email_conflicts(store: EntityStore) -> None:
    store.create_user(_user_payload("bob"))
    with pytest.raises(ConflictError):
        store.create_user(_user_payload("bob", email="other@example.com"))
    with pytest.raises(ConflictError):
        store.create_user(_user_payload("bobby", email="bob@example.com"))
    assert store.count_users() == 1


def test_list_users_newest_first(store: EntityStore) -> None:
    first = store.create_user(_user_payload("first"))
    second = store.create_user(_user_payload("second"))
    third = store.create_user(_user_payload("third"))
    ids = [item.id for item in store.list_users()]
    assert ids == [third.id, second.id, first.id]


def test_list_roles_by_level_then_name(store: EntityStore) -> None:
    store.create_role(RoleCreate(name="viewer", display_name="Viewer", level=10))
    store.create_role(RoleCreate(name="admin", display_name="Admin", level=90))
    store.create_role(RoleCreate(name="author", display_name="Author", level=10))
    assert [item.name for item in store.list_roles()] == ["admin", "author", "viewer"]

    with pytest.raises(ConflictError):
        store.create_role(RoleCreate(name="admin", display_name="Again"))


def test_update_role_keeps_unset_fields(store: EntityStore) -> None:
    role = store.create_role(RoleCreate(name="editor", display_name="Editor", description="edits", level=20))
    updated = store.update_role(role.id, RoleUpdate(level=30))
    assert updated is not None
    assert updated.level == 30
    assert updated.display_name == "Editor"
    assert updated.description == "edits"
    assert store.get_role_by_name("editor").level == 30


def test_permission_pair_is_unique(store: EntityStore) -> None:
    store.create_permission(_permission_payload("pages", "read"))
    with pytest.raises(ConflictError):
        store.create_permission(
            PermissionCreate(name="read-pages", display_name="dup", resource="pages", action="read")
        )
    with pytest.raises(ConflictError):
        store.create_permission(
            PermissionCreate(name="pages.read", display_name="dup", resource="pages", action="list")
        )
    assert store.get_permission_by_key("pages", "read").name == "pages.read"
    assert store.get_permission_by_name("pages.read") is not None


def test_list_permissions_sorted(store: EntityStore) -> None:
    store.create_permission(_permission_payload("users", "read"))
    store.create_permission(_permission_payload("pages", "update"))
    store.create_permission(_permission_payload("pages", "create"))
    keys = [item.key for item in store.list_permissions()]
    assert keys == ["pages.create", "pages.update", "users.read"]


def test_update_permission_toggles_active(store: EntityStore) -> None:
    permission = store.create_permission(_permission_payload("posts", "publish"))
    updated = store.update_permission(permission.id, PermissionUpdate(is_active=False))
    assert updated is not None
    assert updated.is_active is False
    assert updated.resource == "posts"


def test_delete_user_removes_assignments(store: EntityStore, assignments: AssignmentManager) -> None:
    admin = store.create_user(_user_payload("admin"))
    user = store.create_user(_user_payload("carol"))
    role = store.create_role(RoleCreate(name="editor", display_name="Editor"))
    permission = store.create_permission(_permission_payload("posts", "create"))
    assignments.assign_user_role(user.id, role.id, assigned_by=admin.id)
    assignments.assign_user_permission(user.id, permission.id, assigned_by=admin.id)
    assignments.assign_user_role(admin.id, role.id, assigned_by=user.id)

    assert store.delete_user(user.id) is True
    assert store.delete_user(user.id) is False

    assert assignments.list_user_roles(user.id) == []
    assert assignments.list_user_permissions(user.id) == []
    remaining = assignments.list_user_roles(admin.id)
    assert len(remaining) == 1
    assert remaining[0].assigned_by is None


def test_delete_permission_removes_links(store: EntityStore, assignments: AssignmentManager) -> None:
    user = store.create_user(_user_payload("dave"))
    role = store.create_role(RoleCreate(name="editor", display_name="Editor"))
    permission = store.create_permission(_permission_payload("posts", "delete"))
    assignments.assign_role_permission(role.id, permission.id)
    assignments.assign_user_permission(user.id, permission.id)

    assert store.delete_permission(permission.id) is True
    assert store.get_permission(permission.id) is None
    assert assignments.list_role_permissions(role.id) == []
    assert assignments.list_user_permissions(user.id) == []
    assert store.delete_permission(permission.id) is False


def test_foreign_key_cascade_without_store(store: EntityStore, store_engine: Engine) -> None:
    user = store.create_user(_user_payload("erin"))
    role = store.create_role(RoleCreate(name="viewer", display_name="Viewer"))
    with Session(store_engine) as session:
        session.add(UserRole(user_id=user.id, role_id=role.id))
        session.commit()
    with Session(store_engine) as session:
        session.exec(select(UserRole)).one()
        session.delete(session.get(Role, role.id))
        session.commit()
        assert session.exec(select(UserRole)).all() == []


def test_assignment_rows_require_existing_entities(store_engine: Engine) -> None:
    with Session(store_engine) as session:
        session.add(UserPermission(user_id=404, permission_id=404))
        with pytest.raises(IntegrityError):
            session.commit()


def test_explicit_null_on_required_field_is_rejected(store: EntityStore) -> None:
    user = store.create_user(_user_payload("frank", first_name="Frank"))
    role = store.create_role(RoleCreate(name="auditor", display_name="Auditor", description="reads logs"))

    with pytest.raises(ValidationError):
        store.update_user(user.id, UserUpdate(email=None))
    with pytest.raises(ValidationError):
        store.update_role(role.id, RoleUpdate(level=None))

    cleared = store.update_user(user.id, UserUpdate(first_name=None))
    assert cleared is not None
    assert cleared.first_name is None
    assert cleared.email == "frank@example.com"
    assert store.update_role(role.id, RoleUpdate(description=None)).description is None


def test_explicit_null_password_is_rejected(store: EntityStore) -> None:
    user = store.create_user(_user_payload("gwen"))

    with pytest.raises(ValidationError):
        store.update_user(user.id, UserUpdate(password=None))

    unchanged = store.get_user(user.id)
    assert unchanged is not None
    assert store.verify_password(unchanged, "gwen-pass") is True
