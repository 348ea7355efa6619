from __future__ import annotations

from collections.abc import Generator
from datetime import UTC, timedelta
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from cms_access.domain.models import (
    PermissionCreate,
    RoleCreate,
    RolePermission,
    UserCreate,
    UserPermission,
    UserRole,
    now_utc,
)
from cms_access.infra import db
from cms_access.infra.permission_cache import PermissionCache
from cms_access.services.assignment_service import AssignmentManager
from cms_access.services.entity_store import EntityStore
from cms_access.services.errors import NotFoundError


class CountingCache(PermissionCache):
    def __init__(self) -> None:
        super().__init__(enabled=False)
        self.invalidations = 0

    def invalidate(self) -> None:
        self.invalidations += 1


@pytest.fixture()
def assignment_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "assignment_test.db"
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
def cache() -> CountingCache:
    return CountingCache()


@pytest.fixture()
def store(assignment_engine: Engine, cache: CountingCache) -> EntityStore:
    return EntityStore(cache=cache)


@pytest.fixture()
def assignments(assignment_engine: Engine, cache: CountingCache) -> AssignmentManager:
    return AssignmentManager(cache=cache)


def _seed(store: EntityStore) -> tuple[int, int, int, int]:
    admin = store.create_user(UserCreate(username="admin", email="admin@example.com", password="pw"))
    user = store.create_user(UserCreate(username="alice", email="alice@example.com", password="pw"))
    role = store.create_role(RoleCreate(name="editor", display_name="Editor", level=20))
    permission = store.create_permission(
        PermissionCreate(name="posts.publish", display_name="Publish Posts", resource="posts", action="publish")
    )
    return admin.id, user.id, role.id, permission.id


def test_assign_user_role_records_metadata(store: EntityStore, assignments: AssignmentManager) -> None:
    admin_id, user_id, role_id, _ = _seed(store)
    expires_at = now_utc() + timedelta(days=7)

    link = assignments.assign_user_role(user_id, role_id, assigned_by=admin_id, expires_at=expires_at)

    assert link.user_id == user_id
    assert link.role_id == role_id
    assert link.assigned_by == admin_id
    assert link.assigned_at is not None
    stored_expiry = link.expires_at if link.expires_at.tzinfo else link.expires_at.replace(tzinfo=UTC)
    assert abs(stored_expiry - expires_at) < timedelta(seconds=1)


def test_assign_user_role_twice_updates_in_place(store: EntityStore, assignments: AssignmentManager) -> None:
    admin_id, user_id, role_id, _ = _seed(store)
    first = assignments.assign_user_role(user_id, role_id)
    second = assignments.assign_user_role(user_id, role_id, assigned_by=admin_id)

    assert second.id == first.id
    assert second.assigned_by == admin_id
    assert len(assignments.list_user_roles(user_id)) == 1


def test_assign_to_missing_entities_raises(store: EntityStore, assignments: AssignmentManager) -> None:
    _, user_id, role_id, permission_id = _seed(store)

    with pytest.raises(NotFoundError):
        assignments.assign_user_role(9999, role_id)
    with pytest.raises(NotFoundError):
        assignments.assign_user_role(user_id, 9999)
    with pytest.raises(NotFoundError):
        assignments.assign_user_role(user_id, role_id, assigned_by=9999)
    with pytest.raises(NotFoundError):
        assignments.assign_role_permission(9999, permission_id)
    with pytest.raises(NotFoundError):
        assignments.assign_user_permission(user_id, 9999)
    assert assignments.list_user_roles(user_id) == []


def test_role_permission_assignment_is_idempotent(store: EntityStore, assignments: AssignmentManager) -> None:
    _, _, role_id, permission_id = _seed(store)
    first = assignments.assign_role_permission(role_id, permission_id)
    second = assignments.assign_role_permission(role_id, permission_id)

    assert first.id == second.id
    assert len(assignments.list_role_permissions(role_id)) == 1


def test_user_permission_upsert_flips_granted(store: EntityStore, assignments: AssignmentManager) -> None:
    _, user_id, _, permission_id = _seed(store)
    granted = assignments.assign_user_permission(user_id, permission_id, granted=True)
    revoked = assignments.assign_user_permission(user_id, permission_id, granted=False)

    assert revoked.id == granted.id
    assert revoked.granted is False
    rows = assignments.list_user_permissions(user_id)
    assert [row.granted for row in rows] == [False]


class StaleReadManager(AssignmentManager):
    """Misses the existing row on the first lookup, as a concurrent insert would."""

    def __init__(self, cache: PermissionCache) -> None:
        super().__init__(cache=cache)
        self.stale_reads = {"user_role": 1, "user_permission": 1, "role_permission": 1}

    def _stale(self, kind: str) -> bool:
        if self.stale_reads[kind]:
            self.stale_reads[kind] -= 1
            return True
        return False

    def _find_user_role(self, session: Session, user_id: int, role_id: int) -> UserRole | None:
        return None if self._stale("user_role") else super()._find_user_role(session, user_id, role_id)

    def _find_user_permission(self, session: Session, user_id: int, permission_id: int) -> UserPermission | None:
        if self._stale("user_permission"):
            return None
        return super()._find_user_permission(session, user_id, permission_id)

    def _find_role_permission(self, session: Session, role_id: int, permission_id: int) -> RolePermission | None:
        if self._stale("role_permission"):
            return None
        return super()._find_role_permission(session, role_id, permission_id)


def test_lost_insert_race_updates_existing_row(
    store: EntityStore,
    assignments: AssignmentManager,
    cache: CountingCache,
) -> None:
    admin_id, user_id, role_id, permission_id = _seed(store)
    first_role = assignments.assign_user_role(user_id, role_id)
    first_grant = assignments.assign_user_permission(user_id, permission_id, granted=True)
    first_role_permission = assignments.assign_role_permission(role_id, permission_id)
    racing = StaleReadManager(cache=cache)

    role_link = racing.assign_user_role(user_id, role_id, assigned_by=admin_id)
    grant_link = racing.assign_user_permission(user_id, permission_id, granted=False)
    role_permission_link = racing.assign_role_permission(role_id, permission_id)

    assert role_link.id == first_role.id
    assert role_link.assigned_by == admin_id
    assert grant_link.id == first_grant.id
    assert grant_link.granted is False
    assert role_permission_link.id == first_role_permission.id
    assert len(assignments.list_user_roles(user_id)) == 1
    assert [row.granted for row in assignments.list_user_permissions(user_id)] == [False]
    assert len(assignments.list_role_permissions(role_id)) == 1


def test_replace_user_roles(store: EntityStore, assignments: AssignmentManager) -> None:
    admin_id, user_id, editor_id, _ = _seed(store)
    author_id = store.create_role(RoleCreate(name="author", display_name="Author")).id
    viewer_id = store.create_role(RoleCreate(name="viewer", display_name="Viewer")).id
    assignments.assign_user_role(user_id, editor_id)
    assignments.assign_user_role(user_id, author_id)

    links = assignments.replace_user_roles(user_id, [author_id, viewer_id, viewer_id], assigned_by=admin_id)

    assert sorted(link.role_id for link in links) == sorted([author_id, viewer_id])
    viewer_link = next(link for link in links if link.role_id == viewer_id)
    assert viewer_link.assigned_by == admin_id

    assert assignments.replace_user_roles(user_id, []) == []


def test_replace_user_roles_with_unknown_role_changes_nothing(
    store: EntityStore,
    assignments: AssignmentManager,
) -> None:
    _, user_id, editor_id, _ = _seed(store)
    assignments.assign_user_role(user_id, editor_id)

    with pytest.raises(NotFoundError):
        assignments.replace_user_roles(user_id, [9999])

    assert [link.role_id for link in assignments.list_user_roles(user_id)] == [editor_id]


def test_list_users_by_role(store: EntityStore, assignments: AssignmentManager) -> None:
    admin_id, user_id, role_id, _ = _seed(store)
    assignments.assign_user_role(user_id, role_id)
    assignments.assign_user_role(admin_id, role_id)

    assert [user.id for user in assignments.list_users_by_role(role_id)] == sorted([admin_id, user_id])


def test_role_with_permissions_aggregate(store: EntityStore, assignments: AssignmentManager) -> None:
    _, _, role_id, permission_id = _seed(store)
    other = store.create_permission(
        PermissionCreate(name="pages.read", display_name="Read Pages", resource="pages", action="read")
    )
    assignments.assign_role_permission(role_id, permission_id)
    assignments.assign_role_permission(role_id, other.id)

    aggregate = assignments.get_role_with_permissions(role_id)

    assert aggregate is not None
    assert aggregate.name == "editor"
    keys = [f"{item.permission.resource}.{item.permission.action}" for item in aggregate.role_permissions]
    assert keys == ["pages.read", "posts.publish"]
    assert assignments.get_role_with_permissions(9999) is None


def test_user_with_roles_and_permissions_aggregate(store: EntityStore, assignments: AssignmentManager) -> None:
    _, user_id, role_id, permission_id = _seed(store)
    assignments.assign_role_permission(role_id, permission_id)
    assignments.assign_user_role(user_id, role_id)
    assignments.assign_user_permission(user_id, permission_id, granted=False)

    aggregate = assignments.get_user_with_roles_and_permissions(user_id)

    assert aggregate is not None
    assert aggregate.username == "alice"
    assert not hasattr(aggregate, "password_hash")
    assert [item.role.name for item in aggregate.user_roles] == ["editor"]
    assert aggregate.user_roles[0].role.role_permissions[0].permission_id == permission_id
    assert aggregate.user_permissions[0].granted is False
    assert aggregate.user_permissions[0].permission.action == "publish"
    assert assignments.get_user_with_roles_and_permissions(9999) is None


def test_mutations_invalidate_cache(
    store: EntityStore,
    assignments: AssignmentManager,
    cache: CountingCache,
) -> None:
    _, user_id, role_id, permission_id = _seed(store)
    baseline = cache.invalidations

    assignments.assign_user_role(user_id, role_id)
    assignments.assign_role_permission(role_id, permission_id)
    assignments.assign_user_permission(user_id, permission_id)
    assert cache.invalidations == baseline + 3

    assignments.revoke_user_role(user_id, role_id)
    assignments.revoke_user_role(user_id, role_id)
    assert cache.invalidations == baseline + 4

    store.delete_role(role_id)
    assert cache.invalidations == baseline + 5
