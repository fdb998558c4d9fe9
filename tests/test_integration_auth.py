"""Integration tests for the HTTP auth flow.

Covers:
- Login with the refresh cookie
- Refresh rotation and replay rejection
- Logout
- The /auth/me projection
- Permission-gated admin routes
- Role management and account status
- Malformed ids
"""

import pytest
from fastapi.testclient import TestClient

from prodauth import app as app_module
from prodauth.service.runtime import get_runtime
from prodauth.service.seed import seed_defaults


COOKIE = "refreshToken"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def create_user():
    def _create(login="jkowalski", password="Secret123!", **kwargs):
        runtime = get_runtime()
        user = runtime.store.create_user(login, **kwargs)
        runtime.sessions.save_password(user.id, password)
        return user

    return _create


@pytest.fixture
def seeded():
    runtime = get_runtime()
    return seed_defaults(runtime.store, runtime.sessions)


def _login(client, login="jkowalski", password="Secret123!"):
    response = client.post("/auth/login", json={"login": login, "password": password})
    assert response.status_code == 200, response.text
    return response


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    def test_login_returns_user_and_access_token(self, client, create_user):
        create_user(first_name="Jan", last_name="Kowalski", email="jan@example.com")

        response = _login(client)
        data = response.json()

        assert set(data) == {"user", "accessToken"}
        assert data["user"]["login"] == "jkowalski"
        assert data["user"]["firstName"] == "Jan"
        assert "password" not in str(data).lower()
        assert response.cookies.get(COOKIE)

        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie
        assert "path=/" in set_cookie
        assert response.headers["cache-control"].startswith("no-store")

    def test_wrong_password_is_401(self, client, create_user):
        create_user()
        response = client.post(
            "/auth/login", json={"login": "jkowalski", "password": "nope"}
        )
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "invalid credentials"
        assert COOKIE not in response.cookies

    def test_unknown_and_inactive_look_the_same(self, client, create_user):
        create_user(login="sleeper", is_active=False)
        unknown = client.post("/auth/login", json={"login": "ghost", "password": "x"})
        inactive = client.post(
            "/auth/login", json={"login": "sleeper", "password": "Secret123!"}
        )
        assert unknown.status_code == inactive.status_code == 401
        assert unknown.json()["error"]["message"] == inactive.json()["error"]["message"]

    @pytest.mark.parametrize(
        "payload", [{}, {"login": "jkowalski"}, {"password": "x"}, {"login": "", "password": "x"}]
    )
    def test_missing_fields_are_422(self, client, payload):
        response = client.post("/auth/login", json=payload)
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)


class TestRefresh:
    def test_rotation_and_replay(self, client, create_user):
        create_user()
        first = _login(client).cookies[COOKIE]

        rotated = client.post("/auth/refresh-token")
        assert rotated.status_code == 200
        assert set(rotated.json()) == {"accessToken"}
        second = rotated.cookies[COOKIE]
        assert second != first

        replay = TestClient(app_module.app)
        replay.cookies.set(COOKIE, first)
        response = replay.post("/auth/refresh-token")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

        # the successor still works after the replay was rejected
        assert client.post("/auth/refresh-token").status_code == 200

    def test_new_access_token_works(self, client, create_user):
        create_user()
        _login(client)
        access = client.post("/auth/refresh-token").json()["accessToken"]
        assert client.get("/auth/me", headers=_bearer(access)).status_code == 200

    def test_missing_cookie_is_401(self, client):
        response = client.post("/auth/refresh-token")
        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "missing"}

    def test_garbage_cookie_is_401(self, client):
        client.cookies.set(COOKIE, "garbage")
        response = client.post("/auth/refresh-token")
        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "malformed"}


class TestLogout:
    def test_logout_revokes_refresh(self, client, create_user):
        create_user()
        token = _login(client).cookies[COOKIE]

        response = client.post("/auth/logout")
        assert response.status_code == 200
        assert response.json() == {"message": "logged out successfully"}
        assert get_runtime().store.get_refresh_token(token).revoked is True

        replay = TestClient(app_module.app)
        replay.cookies.set(COOKIE, token)
        assert replay.post("/auth/refresh-token").status_code == 401

    def test_logout_without_cookie_succeeds(self, client):
        response = client.post("/auth/logout")
        assert response.status_code == 200
        assert response.json()["message"] == "logged out successfully"

    def test_logout_with_garbage_cookie_succeeds(self, client):
        client.cookies.set(COOKIE, "garbage")
        assert client.post("/auth/logout").status_code == 200


class TestMe:
    def test_requires_token(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "missing"}

    def test_rejects_bad_token(self, client):
        response = client.get("/auth/me", headers=_bearer("not.a.token"))
        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "malformed"}

    def test_user_without_roles(self, client, create_user):
        create_user(login="admin", password="admin123")
        access = _login(client, "admin", "admin123").json()["accessToken"]

        data = client.get("/auth/me", headers=_bearer(access)).json()
        assert data["login"] == "admin"
        assert data["roles"] == []
        assert data["permissions"] == {}
        assert data["isActive"] is True
        assert data["lastLogin"] is not None

    def test_administrator_role_uses_stored_level(self, client, create_user):
        store = get_runtime().store
        user = create_user(login="boss")
        role = store.create_role("Administrator")
        perm = store.create_permission("users", "read")
        store.set_role_permission(role.id, perm.id, 2)
        store.assign_role(user.id, role.id)

        access = _login(client, "boss").json()["accessToken"]
        data = client.get("/auth/me", headers=_bearer(access)).json()
        assert data["roles"] == [{"id": role.id, "name": "Administrator"}]
        assert data["permissions"] == {"users.read": 2}
        assert data["permissionsByModule"] == {"users": {"read": 2}}

    def test_deleted_user_is_404(self, client, create_user):
        user = create_user()
        access = _login(client).json()["accessToken"]
        get_runtime().store.delete_user(user.id)
        response = client.get("/auth/me", headers=_bearer(access))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestPermissionRoutes:
    def test_catalog_requires_permission(self, client, seeded, create_user):
        create_user()
        access = _login(client).json()["accessToken"]
        response = client.get("/permissions", headers=_bearer(access))
        assert response.status_code == 403
        assert response.json()["error"]["details"] == {
            "required_permission": "permissions.read",
            "required_value": 1,
            "actual_value": 0,
        }

    def test_admin_reads_grouped_catalog(self, client, seeded):
        access = _login(client, "admin", "admin123").json()["accessToken"]
        response = client.get("/permissions", headers=_bearer(access))
        assert response.status_code == 200
        data = response.json()
        assert len(data["permissions"]) == 25
        assert {p["action"] for p in data["groupedByModule"]["leave"]} >= {"approve", "viewAll"}

    def test_override_applies_on_next_login(self, client, seeded, create_user):
        store = get_runtime().store
        user = create_user()
        store.assign_role(user.id, store.get_role_by_name("Manager").id)
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]

        response = client.put(
            f"/users/{user.id}/permissions",
            json={"permissions": {"users.read": 0}},
            headers=_bearer(admin_token),
        )
        assert response.status_code == 200
        assert response.json() == {"permissions": {"users.read": 0}}

        other = TestClient(app_module.app)
        access = _login(other).json()["accessToken"]
        me = other.get("/auth/me", headers=_bearer(access)).json()
        assert me["permissions"]["users.read"] == 0
        assert me["permissions"]["users.update"] == 2

        cleared = client.put(
            f"/users/{user.id}/permissions",
            json={"permissions": {"users.read": None}},
            headers=_bearer(admin_token),
        )
        assert cleared.json() == {"permissions": {}}

    def test_role_update_rejects_unknown_permission(self, client, seeded):
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]
        role_id = get_runtime().store.get_role_by_name("User").id
        response = client.put(
            f"/roles/{role_id}/permissions",
            json={"permissions": {"reports.launch": 1}},
            headers=_bearer(admin_token),
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"permission": "reports.launch"}

    def test_role_update_rejects_negative_level(self, client, seeded):
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]
        role_id = get_runtime().store.get_role_by_name("User").id
        response = client.put(
            f"/roles/{role_id}/permissions",
            json={"permissions": {"users.read": -1}},
            headers=_bearer(admin_token),
        )
        assert response.status_code == 422

    def test_role_assignment_round_trip(self, client, seeded, create_user):
        store = get_runtime().store
        user = create_user()
        role = store.get_role_by_name("User")
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]

        added = client.post(
            f"/users/{user.id}/roles",
            json={"roleId": role.id},
            headers=_bearer(admin_token),
        )
        assert added.status_code == 200
        assert added.json()["roles"] == [{"id": role.id, "name": "User"}]

        removed = client.delete(
            f"/users/{user.id}/roles/{role.id}", headers=_bearer(admin_token)
        )
        assert removed.status_code == 200
        assert removed.json()["roles"] == []

        missing = client.delete(
            f"/users/{user.id}/roles/{role.id}", headers=_bearer(admin_token)
        )
        assert missing.status_code == 404
        assert missing.json()["error"]["message"] == "role assignment not found"


class TestRoleRoutes:
    def test_list_roles_paginates(self, client, seeded):
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]

        first = client.get("/roles?limit=2", headers=_bearer(admin_token)).json()
        assert [r["name"] for r in first["roles"]] == ["Admin", "Manager"]
        assert first["roles"][0]["userCount"] == 1
        assert first["roles"][0]["permissions"]["roles.delete"] == 3
        assert first["pagination"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}

        second = client.get("/roles?page=2&limit=2", headers=_bearer(admin_token)).json()
        assert [r["name"] for r in second["roles"]] == ["User"]

    def test_create_update_delete(self, client, seeded):
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]

        created = client.post(
            "/roles",
            json={
                "name": "Shift Lead",
                "description": "Approves leave",
                "permissions": {"leave.read": 2, "leave.approve": 1},
            },
            headers=_bearer(admin_token),
        )
        assert created.status_code == 201, created.text
        role = created.json()
        assert role["permissions"] == {"leave.read": 2, "leave.approve": 1}
        assert role["userCount"] == 0

        fetched = client.get(f"/roles/{role['id']}", headers=_bearer(admin_token))
        assert fetched.json() == role

        replaced = client.put(
            f"/roles/{role['id']}",
            json={"permissions": {"leave.read": 1}},
            headers=_bearer(admin_token),
        ).json()
        assert replaced["permissions"] == {"leave.read": 1}
        assert replaced["name"] == "Shift Lead"
        assert replaced["description"] == "Approves leave"

        renamed = client.put(
            f"/roles/{role['id']}",
            json={"name": "Line Lead"},
            headers=_bearer(admin_token),
        ).json()
        assert renamed["name"] == "Line Lead"
        assert renamed["permissions"] == {"leave.read": 1}

        deleted = client.delete(f"/roles/{role['id']}", headers=_bearer(admin_token))
        assert deleted.status_code == 200
        assert deleted.json() == {"message": "role deleted successfully"}
        missing = client.get(f"/roles/{role['id']}", headers=_bearer(admin_token))
        assert missing.status_code == 404
        again = client.delete(f"/roles/{role['id']}", headers=_bearer(admin_token))
        assert again.status_code == 404

    def test_duplicate_name_is_409(self, client, seeded):
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]
        response = client.post(
            "/roles", json={"name": "Manager"}, headers=_bearer(admin_token)
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert response.json()["error"]["details"] == {"field": "name"}

        user_role = get_runtime().store.get_role_by_name("User")
        rename = client.put(
            f"/roles/{user_role.id}", json={"name": "Manager"}, headers=_bearer(admin_token)
        )
        assert rename.status_code == 409

    def test_unknown_permission_creates_nothing(self, client, seeded):
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]
        response = client.post(
            "/roles",
            json={"name": "Ghost", "permissions": {"reports.launch": 1}},
            headers=_bearer(admin_token),
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"permission": "reports.launch"}
        assert get_runtime().store.get_role_by_name("Ghost") is None

    def test_assigned_role_cannot_be_deleted(self, client, seeded, create_user):
        store = get_runtime().store
        manager = store.get_role_by_name("Manager")
        store.assign_role(create_user().id, manager.id)
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]

        response = client.delete(f"/roles/{manager.id}", headers=_bearer(admin_token))
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {
            "role_id": manager.id,
            "user_count": 1,
        }
        assert store.get_role(manager.id) is not None

    def test_manager_reads_but_cannot_write_roles(self, client, seeded, create_user):
        store = get_runtime().store
        store.assign_role(create_user().id, store.get_role_by_name("Manager").id)
        access = _login(client).json()["accessToken"]

        assert client.get("/roles", headers=_bearer(access)).status_code == 200
        response = client.post("/roles", json={"name": "X"}, headers=_bearer(access))
        assert response.status_code == 403
        assert response.json()["error"]["details"]["required_permission"] == "roles.create"


class TestUserAdminRoutes:
    def test_deactivated_user_cannot_refresh(self, client, seeded, create_user):
        user = create_user()
        user_client = TestClient(app_module.app)
        _login(user_client)
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]

        response = client.put(
            f"/users/{user.id}/status",
            json={"isActive": False},
            headers=_bearer(admin_token),
        )
        assert response.status_code == 200
        assert response.json() == {"id": user.id, "login": "jkowalski", "isActive": False}
        assert user_client.post("/auth/refresh-token").status_code == 401

    def test_delete_user_needs_level_two(self, client, seeded, create_user):
        store = get_runtime().store
        target = create_user(login="target")
        token = _login(TestClient(app_module.app), "target").cookies[COOKIE]
        manager = create_user()
        store.assign_role(manager.id, store.get_role_by_name("Manager").id)
        manager_token = _login(client).json()["accessToken"]

        denied = client.delete(f"/users/{target.id}", headers=_bearer(manager_token))
        assert denied.status_code == 403
        assert denied.json()["error"]["details"]["required_value"] == 2

        admin_token = _login(client, "admin", "admin123").json()["accessToken"]
        deleted = client.delete(f"/users/{target.id}", headers=_bearer(admin_token))
        assert deleted.status_code == 200
        assert store.get_user(target.id) is None
        assert store.get_refresh_token(token).user_id == target.id

    def test_admin_cannot_delete_self(self, client, seeded):
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]
        response = client.delete(f"/users/{seeded.admin_user_id}", headers=_bearer(admin_token))
        assert response.status_code == 400


class TestIdValidation:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/roles/not-a-uuid"),
            ("delete", "/roles/not-a-uuid"),
            ("delete", "/users/not-a-uuid"),
            ("delete", "/users/not-a-uuid/roles/also-not"),
        ],
    )
    def test_malformed_path_id_is_422(self, client, seeded, method, path):
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]
        response = getattr(client, method)(path, headers=_bearer(admin_token))
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_malformed_body_and_path_ids_are_422(self, client, seeded, create_user):
        user = create_user()
        admin_token = _login(client, "admin", "admin123").json()["accessToken"]
        body = client.post(
            f"/users/{user.id}/roles", json={"roleId": "7"}, headers=_bearer(admin_token)
        )
        assert body.status_code == 422
        path = client.put(
            "/users/42/permissions",
            json={"permissions": {"users.read": 1}},
            headers=_bearer(admin_token),
        )
        assert path.status_code == 422


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert "X-Request-ID" in response.headers
