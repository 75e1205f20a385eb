"""Tests for the account-role fallback permission sets."""

from datetime import datetime, timedelta

import pytest

from rbac.fallback import (
    FALLBACK_PERMISSIONS,
    AccountRole,
    build_fallback_permissions,
    get_fallback_permissions,
    parse_account_role,
)


class TestFallbackTable:
    def test_every_account_role_has_an_entry(self):
        assert set(FALLBACK_PERMISSIONS) == set(AccountRole)

    def test_student_gets_exactly_the_minimal_set(self):
        assert set(get_fallback_permissions("student")) == {
            "courses:read", "grades:read", "payments:read", "support:create"
        }

    def test_staff(self):
        assert set(get_fallback_permissions(AccountRole.STAFF)) == {
            "students:read", "courses:read", "grades:read", "reports:read"
        }

    def test_admin_is_wildcard(self):
        assert get_fallback_permissions("ADMIN") == ["*"]

    @pytest.mark.parametrize("value", [None, "", "guest", "superuser"])
    def test_unknown_role_gets_nothing(self, value):
        assert parse_account_role(value) is None
        assert get_fallback_permissions(value) == []

    def test_returned_list_is_a_copy(self):
        get_fallback_permissions("student").append("users:delete")
        assert "users:delete" not in get_fallback_permissions("student")


class TestBuildFallback:
    def test_synthetic_snapshot(self):
        now = datetime(2026, 3, 2, 9, 0)
        snapshot = build_fallback_permissions("u1", "staff", now=now, ttl_seconds=60)

        assert snapshot.user_id == "u1"
        assert snapshot.last_updated == now
        assert snapshot.cache_expiry == now + timedelta(seconds=60)
        assert [r.name for r in snapshot.roles] == ["staff"]
        assert snapshot.roles[0].id == "fallback-staff"
        assert all(p.id.startswith("fallback-") for p in snapshot.permissions)
        assert {p.name for p in snapshot.permissions} == set(snapshot.effective_permissions)

    def test_unknown_role_builds_empty_snapshot(self):
        snapshot = build_fallback_permissions("u1", "guest")
        assert snapshot.roles == []
        assert snapshot.effective_permissions == []
