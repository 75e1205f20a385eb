"""Tests for permission identifier parsing and wildcard matching."""

import pytest

from rbac.identifiers import PermissionId, grant_reason, is_granted, normalize, resource_action


# ── Parsing ──────────────────────────────────────────────────────────


class TestPermissionId:
    def test_parse_resource_action(self):
        pid = PermissionId.parse("Grades:Update")
        assert pid == PermissionId("grades", "update")
        assert str(pid) == "grades:update"

    @pytest.mark.parametrize("value", ["*", "*:*", " * "])
    def test_global_wildcard_forms(self, value):
        pid = PermissionId.parse(value)
        assert pid.is_wildcard
        assert str(pid) == "*"

    @pytest.mark.parametrize("value", ["grades", "grades:", ":read", "a:b:c", ""])
    def test_malformed_rejected(self, value):
        with pytest.raises(ValueError):
            PermissionId.parse(value)
        assert PermissionId.try_parse(value) is None

    def test_non_string_rejected(self):
        with pytest.raises(ValueError):
            PermissionId.parse(42)

    def test_covers(self):
        assert PermissionId.parse("*").covers(PermissionId.parse("payments:approve"))
        assert PermissionId.parse("grades:*").covers(PermissionId.parse("grades:delete"))
        assert not PermissionId.parse("grades:*").covers(PermissionId.parse("courses:read"))
        assert PermissionId.parse("grades:read").covers(PermissionId.parse("grades:read"))
        assert not PermissionId.parse("grades:read").covers(PermissionId.parse("grades:update"))

    def test_normalize_and_resource_action(self):
        assert normalize(" Courses:READ ") == "courses:read"
        assert resource_action("Students", "Read") == "students:read"
        assert resource_action("*", "*") == "*"


# ── Matching ─────────────────────────────────────────────────────────


class TestGrantReason:
    def test_direct(self):
        assert grant_reason({"courses:read"}, "courses:read") == "direct"

    def test_wildcard_grants_everything(self):
        for requested in ("courses:read", "system:restore", "anything:goes", "custom-flag"):
            assert grant_reason({"*"}, requested) == "wildcard"
        assert is_granted({"*:*"}, "grades:approve")

    def test_resource_wildcard(self):
        assert grant_reason({"grades:*"}, "grades:approve") == "resource_wildcard"
        assert grant_reason({"grades:*"}, "courses:read") is None

    def test_not_granted(self):
        assert grant_reason({"courses:read", "grades:read"}, "courses:update") is None
        assert not is_granted(set(), "courses:read")

    def test_requested_wildcard_needs_wildcard(self):
        assert grant_reason({"grades:*"}, "*") is None

    def test_custom_names_match_exactly(self):
        assert is_granted({"beta-dashboard"}, "beta-dashboard")
        assert not is_granted({"beta-dashboard"}, "beta")

    def test_requested_is_normalized(self):
        assert is_granted({"courses:read"}, "COURSES:Read")
