"""Tests for the client-side permission store."""

import json
from datetime import timedelta

import pytest

from portal.store import PermissionStore
from rbac.conditions import RequestContext
from rbac.schemas import RoleResponse, UserPermissions
from rbac.utils import utcnow


def _permissions(effective, roles=(), now=None, user_id="u1"):
    now = now or utcnow()
    return UserPermissions(
        user_id=user_id,
        roles=[
            RoleResponse(id=f"role-{name}", name=name, category="academic", level=level)
            for name, level in roles
        ],
        effective_permissions=list(effective),
        last_updated=now,
        cache_expiry=now + timedelta(minutes=5),
    )


@pytest.fixture
def store(clock):
    return PermissionStore(ttl_seconds=300, clock=clock)


# ── Queries ──────────────────────────────────────────────────────────


class TestQueries:
    def test_empty_store_denies(self, store):
        assert not store.is_loaded()
        assert not store.has_permission("courses:read")
        assert not store.has_role("student")
        assert store.user_roles == []
        assert store.get_highest_role_level() == 0

    def test_student_scenario(self, store, clock):
        store.set_user_permissions(_permissions(["courses:read", "grades:read"], [("student", 1)], clock.now))

        assert store.has_permission("courses:read")
        assert not store.has_permission("courses:update")
        assert store.has_any_role(["admin", "student"])
        assert store.has_role("role-student")
        assert not store.is_admin()

    def test_any_and_all(self, store, clock):
        store.set_user_permissions(_permissions(["courses:read"], now=clock.now))

        assert store.has_any_permission(["grades:update", "courses:read"])
        assert not store.has_all_permissions(["grades:update", "courses:read"])
        assert store.has_all_permissions(["courses:read"])
        assert not store.has_any_permission([])
        assert store.has_all_permissions([])

    def test_wildcard_grants_everything(self, store, clock):
        store.set_user_permissions(_permissions(["*"], [("super_admin", 10)], clock.now))

        for name in ("courses:read", "system:restore", "anything:else"):
            assert store.has_permission(name)
        assert store.can_access_resource("payments", "approve")
        assert store.is_system_admin()
        assert store.is_admin()
        assert store.get_highest_role_level() == 10

    def test_resource_wildcard(self, store, clock):
        store.set_user_permissions(_permissions(["grades:*"], now=clock.now))
        assert store.can_access_resource("grades", "approve")
        assert not store.can_access_resource("courses", "read")

    def test_admin_role(self, store, clock):
        store.set_user_permissions(_permissions(["users:read"], [("admin", 9)], clock.now))
        assert store.is_admin()
        assert not store.is_system_admin()

    def test_conditional_check(self, store, clock):
        store.set_user_permissions(_permissions(["grades:update"], now=clock.now))
        store.set_context(RequestContext(user_id="u1", department="CS"))

        assert store.has_permission("grades:update", {"department": "CS"})
        assert not store.has_permission("grades:update", {"department": "EE"})

        store.set_context(RequestContext(user_id="u1", department="EE"))
        assert store.has_permission("grades:update", {"department": "EE"})


# ── Lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:
    def test_set_resets_expiry_and_memo(self, store, clock):
        store.set_user_permissions(_permissions(["courses:read"], now=clock.now))
        assert store.cache_expiry == clock.now + timedelta(seconds=300)
        assert store.has_permission("courses:read")
        assert store.snapshot().memo

        store.set_user_permissions(_permissions(["grades:read"], now=clock.now))
        assert not store.snapshot().memo
        assert not store.has_permission("courses:read")
        assert store.has_permission("grades:read")

    def test_clear_denies_everything(self, store, clock):
        store.set_user_permissions(_permissions(["*"], [("super_admin", 10)], clock.now))
        store.clear_user_permissions()

        assert not store.has_permission("courses:read")
        assert store.user_roles == []
        assert store.effective_permissions == frozenset()

    def test_expired_snapshot_still_answers(self, store, clock):
        store.set_user_permissions(_permissions(["courses:read"], now=clock.now))
        clock.advance(seconds=301)

        assert store.is_expired()
        assert store.has_permission("courses:read")
        assert ("grades:read", "-") not in store.snapshot().memo
        store.has_permission("grades:read")
        assert ("grades:read", "-") not in store.snapshot().memo


# ── Persistence ──────────────────────────────────────────────────────


class TestPersistence:
    def test_round_trip_keeps_expiry(self, store, clock, tmp_path):
        path = tmp_path / "permissions.json"
        store.set_user_permissions(_permissions(["courses:read"], [("student", 1)], clock.now))
        assert store.save(path)

        restored = PermissionStore(clock=clock)
        assert restored.load(path, user_id="u1")
        assert restored.has_permission("courses:read")
        assert restored.cache_expiry == store.cache_expiry

    def test_other_user_ignored(self, store, clock, tmp_path):
        path = tmp_path / "permissions.json"
        store.set_user_permissions(_permissions(["courses:read"], now=clock.now))
        store.save(path)

        assert not PermissionStore(clock=clock).load(path, user_id="someone-else")

    def test_expired_file_ignored(self, store, clock, tmp_path):
        path = tmp_path / "permissions.json"
        store.set_user_permissions(_permissions(["courses:read"], now=clock.now))
        store.save(path)
        clock.advance(minutes=10)

        assert not PermissionStore(clock=clock).load(path)

    def test_corrupt_or_missing_file(self, clock, tmp_path):
        path = tmp_path / "permissions.json"
        assert not PermissionStore(clock=clock).load(path)

        path.write_text("{not json")
        assert not PermissionStore(clock=clock).load(path)

        path.write_text(json.dumps({"user_permissions": {}}))
        assert not PermissionStore(clock=clock).load(path)

    def test_saving_empty_store_removes_file(self, store, tmp_path):
        path = tmp_path / "permissions.json"
        path.write_text("{}")
        assert not store.save(path)
        assert not path.exists()
