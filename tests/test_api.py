"""End-to-end tests for the auth and RBAC endpoints."""

import pytest
from fastapi.testclient import TestClient

from apps.api.main import app
from auth.models import AuditLog
from rbac.config import rbac_config
from rbac.errors import ResolutionUnavailable
from rbac.repository import AssignmentRepository, RoleRepository
from rbac.resolver import permission_resolver
from rbac.schemas import AssignRoleRequest, ConditionSchema, PermissionCreateRequest, RoleCreateRequest
from rbac.service import AssignmentService, PermissionService, RoleService


@pytest.fixture
def client(engine):
    return TestClient(app)


@pytest.fixture
def admin(make_user):
    return make_user(roles=("admin",), account_role="admin", email="admin@university.edu")


@pytest.fixture
def student(make_user):
    return make_user(roles=("student",), email="student@university.edu", department="CS")


# ── Auth ─────────────────────────────────────────────────────────────


class TestAuth:
    def test_login_and_me(self, client, student):
        response = client.post("/auth/login", json={"email": "student@university.edu", "password": "password123"})
        assert response.status_code == 200
        token = response.json()["access_token"]

        me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["department"] == "CS"

    def test_login_wrong_password(self, client, student):
        response = client.post("/auth/login", json={"email": "student@university.edu", "password": "nope-nope"})
        assert response.status_code == 401

    def test_missing_token(self, client, engine):
        assert client.get("/auth/me").status_code == 401

    def test_logout_revokes_token(self, client, student, auth_headers):
        headers = auth_headers(student)
        assert client.post("/auth/logout", headers=headers).status_code == 200
        assert client.get("/auth/me", headers=headers).status_code == 401

    def test_register_requires_users_create(self, client, student, auth_headers):
        response = client.post("/auth/register", headers=auth_headers(student), json={
            "email": "new@university.edu", "password": "password123", "full_name": "New Student"
        })
        assert response.status_code == 403

    def test_register_provisions_role(self, client, admin, auth_headers):
        response = client.post("/auth/register", headers=auth_headers(admin), json={
            "email": "new@university.edu", "password": "password123", "full_name": "New Student",
            "department": "EE",
        })
        assert response.status_code == 200
        user_id = response.json()["user_id"]

        login = client.post("/auth/login", json={"email": "new@university.edu", "password": "password123"})
        headers = {"Authorization": f"Bearer {login.json()['access_token']}"}
        permissions = client.get(f"/api/rbac/users/{user_id}/permissions", headers=headers).json()
        assert set(permissions["effective_permissions"]) == {
            "courses:read", "grades:read", "payments:read", "support:create"
        }

    def test_register_duplicate_email(self, client, admin, student, auth_headers):
        response = client.post("/auth/register", headers=auth_headers(admin), json={
            "email": "student@university.edu", "password": "password123", "full_name": "Dup"
        })
        assert response.status_code == 400


# ── Enforcement ──────────────────────────────────────────────────────


class TestEnforcement:
    def test_denied_request_is_audited(self, client, db, student, auth_headers):
        response = client.get("/api/rbac/roles", headers=auth_headers(student))
        assert response.status_code == 403

        db.expire_all()
        denied = db.query(AuditLog).filter(AuditLog.event_type == "access_denied").all()
        assert len(denied) == 1
        assert denied[0].user_id == student.user_id

    def test_unknown_account_is_unauthorized(self, client, engine, auth_headers):
        class Ghost:
            user_id = "ghost"
            email = "ghost@university.edu"
            account_role = "student"

        assert client.get("/api/rbac/roles", headers=auth_headers(Ghost())).status_code == 401

    def test_resolver_unavailable_is_503(self, client, admin, auth_headers, monkeypatch):
        def unavailable(*args, **kwargs):
            raise ResolutionUnavailable("Permission store unavailable")

        monkeypatch.setattr(permission_resolver, "get_permissions", unavailable)
        assert client.get("/api/rbac/roles", headers=auth_headers(admin)).status_code == 503

    def test_assignment_takes_effect_immediately(self, client, db, admin, student, auth_headers):
        url = f"/api/rbac/users/{student.user_id}/permissions"
        before = client.get(url, headers=auth_headers(student)).json()
        assert "grades:update" not in before["effective_permissions"]

        instructor = RoleRepository.get_by_name(db, "instructor")
        response = client.post("/api/rbac/user-roles/assign", headers=auth_headers(admin), json={
            "user_id": student.user_id, "role_id": instructor.id
        })
        assert response.status_code == 201

        after = client.get(url, headers=auth_headers(student)).json()
        assert "grades:update" in after["effective_permissions"]

    def test_revocation_takes_effect_immediately(self, client, db, admin, student, auth_headers):
        role = RoleRepository.get_by_name(db, "student")
        assignment = AssignmentRepository.get_pair(db, student.user_id, role.id)
        client.get(f"/api/rbac/users/{student.user_id}/permissions", headers=auth_headers(student))

        response = client.delete(f"/api/rbac/user-roles/{assignment.id}", headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["is_active"] is False

        after = client.get(f"/api/rbac/users/{student.user_id}/permissions", headers=auth_headers(student)).json()
        assert after["effective_permissions"] == []


# ── Roles and permissions ────────────────────────────────────────────


class TestAdministration:
    def test_list_roles(self, client, admin, auth_headers):
        response = client.get("/api/rbac/roles", headers=auth_headers(admin))
        assert response.status_code == 200
        names = [r["name"] for r in response.json()]
        assert names[0] == "super_admin"
        assert "student" in names

    def test_role_lifecycle(self, client, admin, auth_headers):
        headers = auth_headers(admin)
        body = {"name": "exam_officer", "permissions": ["grades:read", "grades:approve"],
                "category": "academic", "level": 4}

        created = client.post("/api/rbac/roles", headers=headers, json=body)
        assert created.status_code == 201
        role_id = created.json()["id"]

        assert client.post("/api/rbac/roles", headers=headers, json=body).status_code == 409

        updated = client.put(f"/api/rbac/roles/{role_id}", headers=headers, json={"level": 6})
        assert updated.json()["level"] == 6

        clone = client.post(f"/api/rbac/roles/{role_id}/clone", headers=headers, json={"name": "exam_officer_2"})
        assert clone.status_code == 201
        assert clone.json()["permissions"] == ["grades:read", "grades:approve"]

        assert client.delete(f"/api/rbac/roles/{role_id}", headers=headers).status_code == 200
        assert client.get(f"/api/rbac/roles/{role_id}", headers=headers).status_code == 404

    def test_unknown_permission_in_role(self, client, admin, auth_headers):
        response = client.post("/api/rbac/roles", headers=auth_headers(admin), json={
            "name": "broken", "permissions": ["spaceships:fly"], "category": "academic"
        })
        assert response.status_code == 400
        assert response.json()["detail"]["permissions"] == ["spaceships:fly"]

    def test_system_role_cannot_be_deleted(self, client, db, admin, auth_headers):
        role = RoleRepository.get_by_name(db, "registrar")
        response = client.delete(f"/api/rbac/roles/{role.id}", headers=auth_headers(admin))
        assert response.status_code == 403

    def test_role_in_use_cannot_be_deleted(self, client, db, make_user, admin, auth_headers):
        headers = auth_headers(admin)
        role_id = client.post("/api/rbac/roles", headers=headers, json={
            "name": "lab_assistant", "permissions": ["courses:read"], "category": "academic"
        }).json()["id"]
        user = make_user()
        client.post("/api/rbac/user-roles/assign", headers=headers, json={"user_id": user.user_id, "role_id": role_id})

        response = client.delete(f"/api/rbac/roles/{role_id}", headers=headers)
        assert response.status_code == 400
        assert response.json()["detail"]["active_assignments"] == 1

    def test_permission_endpoints(self, client, make_user, admin, auth_headers):
        listing = client.get("/api/rbac/permissions", headers=auth_headers(admin))
        assert listing.status_code == 200
        assert "courses:read" in {p["name"] for p in listing.json()}

        categories = client.get("/api/rbac/permissions/categories", headers=auth_headers(admin)).json()
        assert "academic" in categories

        body = {"resource": "transcripts", "action": "export", "display_name": "Export", "category": "academic"}
        assert client.post("/api/rbac/permissions", headers=auth_headers(admin), json=body).status_code == 403

        root = make_user(roles=("super_admin",), account_role="admin")
        created = client.post("/api/rbac/permissions", headers=auth_headers(root), json=body)
        assert created.status_code == 201
        permission_id = created.json()["id"]

        url = f"/api/rbac/permissions/{permission_id}/deactivate"
        assert client.post(url, headers=auth_headers(admin)).status_code == 403
        deactivated = client.post(url, headers=auth_headers(root))
        assert deactivated.json()["is_active"] is False

    def test_role_users(self, client, db, make_user, admin, student, auth_headers):
        role = RoleRepository.get_by_name(db, "student")
        url = f"/api/rbac/roles/{role.id}/users"

        listing = client.get(url, headers=auth_headers(admin))
        assert listing.status_code == 200
        assert [a["user_id"] for a in listing.json()] == [student.user_id]

        staff = make_user(roles=("staff",), account_role="staff")
        assert client.get(url, headers=auth_headers(staff)).status_code == 403


# ── Assignments ──────────────────────────────────────────────────────


class TestAssignments:
    def test_assign_validation(self, client, db, admin, student, auth_headers):
        role = RoleRepository.get_by_name(db, "student")
        headers = auth_headers(admin)

        duplicate = client.post("/api/rbac/user-roles/assign", headers=headers, json={
            "user_id": student.user_id, "role_id": role.id
        })
        assert duplicate.status_code == 409

        past = client.post("/api/rbac/user-roles/assign", headers=headers, json={
            "user_id": student.user_id, "role_id": RoleRepository.get_by_name(db, "staff").id,
            "expires_at": "2020-01-01T00:00:00"
        })
        assert past.status_code == 400

        ghost = client.post("/api/rbac/user-roles/assign", headers=headers, json={
            "user_id": "ghost", "role_id": role.id
        })
        assert ghost.status_code == 404

    def test_bulk_assign(self, client, db, make_user, admin, student, auth_headers):
        other = make_user()
        role = RoleRepository.get_by_name(db, "student")

        response = client.post("/api/rbac/user-roles/bulk-assign", headers=auth_headers(admin), json={
            "assignments": [
                {"user_id": other.user_id, "role_id": role.id},
                {"user_id": student.user_id, "role_id": role.id},
            ]
        })
        body = response.json()
        assert response.status_code == 200
        assert body["success"] is False
        assert len(body["assigned"]) == 1
        assert body["errors"][0]["index"] == 1

    def test_extend_and_expiring(self, client, db, admin, student, auth_headers):
        headers = auth_headers(admin)
        staff = RoleRepository.get_by_name(db, "staff")
        assignment = client.post("/api/rbac/user-roles/assign", headers=headers, json={
            "user_id": student.user_id, "role_id": staff.id
        }).json()

        extended = client.post(f"/api/rbac/user-roles/{assignment['id']}/extend", headers=headers, json={"days": 5})
        assert extended.status_code == 200
        assert extended.json()["expires_at"] is not None

        expiring = client.get("/api/rbac/user-roles/expiring", headers=headers, params={"days": 7}).json()
        assert [a["id"] for a in expiring] == [assignment["id"]]

        assert client.post(f"/api/rbac/user-roles/{assignment['id']}/extend", headers=headers,
                           json={"days": 0}).status_code == 422

    def test_deactivate_expired_requires_admin_role(self, client, make_user, admin, auth_headers):
        assert client.post("/api/rbac/user-roles/deactivate-expired", headers=auth_headers(admin)).json() == {
            "success": True, "deactivated": 0
        }
        registrar = make_user(roles=("registrar",), account_role="staff")
        response = client.post("/api/rbac/user-roles/deactivate-expired", headers=auth_headers(registrar))
        assert response.status_code == 403

    def test_list_user_roles(self, client, admin, student, auth_headers):
        own = client.get(f"/api/rbac/users/{student.user_id}/roles", headers=auth_headers(student))
        assert own.status_code == 200
        assert len(own.json()) == 1

        other = client.get(f"/api/rbac/users/{admin.user_id}/roles", headers=auth_headers(student))
        assert other.status_code == 403


# ── Request context ──────────────────────────────────────────────────


class TestRequestContext:
    @pytest.fixture
    def exam_reader(self, db, make_user):
        PermissionService.create(db, PermissionCreateRequest(
            resource="exams",
            action="read",
            display_name="Read exam papers",
            category="academic",
            conditions=[ConditionSchema(type="semester", value="2026-spring")],
        ))
        role = RoleService.create(db, RoleCreateRequest(
            name="exam_reader", permissions=["exams:read"], category="academic"
        ))
        user = make_user()
        AssignmentService.assign(db, AssignRoleRequest(user_id=user.user_id, role_id=role.id))
        return user

    def test_semester_and_location_headers_are_ignored(self, client, exam_reader, auth_headers, monkeypatch):
        monkeypatch.setattr(rbac_config, "current_semester", None)
        headers = {**auth_headers(exam_reader), "X-Semester": "2026-spring", "X-Location": "campus"}

        response = client.get(f"/api/rbac/users/{exam_reader.user_id}/permissions", headers=headers)
        assert response.status_code == 200
        assert "exams:read" not in response.json()["effective_permissions"]

        check = client.post(
            f"/api/rbac/users/{exam_reader.user_id}/permissions/check",
            headers=headers, json={"permission": "exams:read"},
        )
        assert check.json()["has_permission"] is False

    def test_configured_semester_applies(self, client, exam_reader, auth_headers, monkeypatch):
        monkeypatch.setattr(rbac_config, "current_semester", "2026-spring")

        url = f"/api/rbac/users/{exam_reader.user_id}/permissions"
        response = client.get(url, headers=auth_headers(exam_reader))
        assert response.json()["effective_permissions"] == ["exams:read"]


# ── Resolution endpoints ─────────────────────────────────────────────


class TestResolution:
    def test_other_users_permissions_need_roles_read(self, client, admin, student, auth_headers):
        url = f"/api/rbac/users/{admin.user_id}/permissions"
        assert client.get(url, headers=auth_headers(student)).status_code == 403

        response = client.get(f"/api/rbac/users/{student.user_id}/permissions", headers=auth_headers(admin))
        assert response.status_code == 200
        assert [r["name"] for r in response.json()["roles"]] == ["student"]

    def test_check(self, client, student, auth_headers):
        url = f"/api/rbac/users/{student.user_id}/permissions/check"
        headers = auth_headers(student)

        granted = client.post(url, headers=headers, json={"permission": "courses:read"}).json()
        assert granted == {"has_permission": True, "reason": "direct", "conditions": None}

        denied = client.post(url, headers=headers, json={"permission": "courses:update"}).json()
        assert denied["has_permission"] is False
        assert denied["reason"] == "not_granted"

        conditional = client.post(url, headers=headers, json={
            "permission": "courses:read", "conditions": {"department": "EE"}
        }).json()
        assert conditional["reason"] == "conditions_not_met"

    def test_summary(self, client, student, auth_headers):
        response = client.get(f"/api/rbac/users/{student.user_id}/permissions/summary", headers=auth_headers(student))
        body = response.json()
        assert body["total_roles"] == 1
        assert body["highest_role_level"] == 1
        assert body["is_admin"] is False

    def test_root_and_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
        paths = {r["path"] for r in client.get("/").json()["routes"]}
        assert "/api/rbac/users/{user_id}/permissions" in paths
