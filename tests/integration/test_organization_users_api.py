"""
Integration tests for organization settings and user management.

Key SDET Concepts Demonstrated:
- Role-based access control (admin-only endpoints)
- Tenant isolation on user lookups
- Multipart upload and public download of a logo
"""

from __future__ import annotations

import io

import pytest

from tracker_app.workflow import UserRole

pytestmark = pytest.mark.integration

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class TestOrganization:
    """Tests for /api/organization."""

    def test_get_organization(self, client, db_session, organization, member_headers):
        response = client.get("/api/organization", headers=member_headers)
        assert response.status_code == 200
        assert response.get_json()["organization"]["name"] == organization.name

    def test_admin_updates_name_and_merges_settings(self, client, db_session, admin_headers):
        """Test that settings are merged rather than replaced."""
        # Arrange
        client.put(
            "/api/organization",
            headers=admin_headers,
            json={"name": "Acme", "settings": {"week_start": "monday"}},
        )

        # Act
        response = client.put(
            "/api/organization",
            headers=admin_headers,
            json={"name": "Acme Corp Ltd", "timezone": "Europe/Berlin", "settings": {"theme": "dark"}},
        )

        # Assert
        assert response.status_code == 200
        organization = response.get_json()["organization"]
        assert organization["name"] == "Acme Corp Ltd"
        assert organization["timezone"] == "Europe/Berlin"
        assert organization["settings"] == {"week_start": "monday", "theme": "dark"}

    def test_member_cannot_update(self, client, db_session, member_headers):
        response = client.put("/api/organization", headers=member_headers, json={"name": "Hijack"})
        assert response.status_code == 403

    def test_update_requires_name(self, client, db_session, admin_headers):
        response = client.put("/api/organization", headers=admin_headers, json={"industry": "Retail"})
        assert response.status_code == 400

    def test_user_count_and_listing_are_tenant_scoped(
        self, client, db_session, admin, member, outsider, member_headers
    ):
        # Act
        count = client.get("/api/organization/users/count", headers=member_headers)
        listing = client.get("/api/organization/users", headers=member_headers)

        # Assert
        assert count.get_json()["count"] == 2
        emails = {user["email"] for user in listing.get_json()["users"]}
        assert emails == {admin.email, member.email}

    def test_logo_upload_and_public_download(self, client, db_session, admin, admin_headers):
        """Test that an uploaded logo is stored and served without auth."""
        # Arrange
        headers = {"Authorization": admin_headers["Authorization"]}
        data = {"logo": (io.BytesIO(PNG_BYTES), "brand.png")}

        # Act
        response = client.post(
            "/api/organization/logo", headers=headers, data=data, content_type="multipart/form-data"
        )

        # Assert
        assert response.status_code == 200
        logo_url = response.get_json()["logo_url"]
        assert logo_url.startswith(f"/api/organization/logo/org_{admin.organization_id}_")
        download = client.get(logo_url)
        assert download.status_code == 200
        assert download.data == PNG_BYTES

    def test_replacing_logo_removes_previous_file(self, client, db_session, admin_headers):
        # Arrange
        headers = {"Authorization": admin_headers["Authorization"]}

        def upload():
            return client.post(
                "/api/organization/logo",
                headers=headers,
                data={"logo": (io.BytesIO(PNG_BYTES), "brand.png")},
                content_type="multipart/form-data",
            ).get_json()["logo_url"]

        # Act
        first_url = upload()
        second_url = upload()

        # Assert
        assert first_url != second_url
        assert client.get(first_url).status_code == 404
        assert client.get(second_url).status_code == 200

    def test_logo_rejects_non_images(self, client, db_session, admin_headers):
        headers = {"Authorization": admin_headers["Authorization"]}
        data = {"logo": (io.BytesIO(b"MZ"), "tool.exe")}
        response = client.post(
            "/api/organization/logo", headers=headers, data=data, content_type="multipart/form-data"
        )
        assert response.status_code == 400

    def test_logo_too_large_returns_413(self, app, client, db_session, admin_headers, monkeypatch):
        # Arrange
        monkeypatch.setitem(app.config, "MAX_LOGO_BYTES", 16)
        headers = {"Authorization": admin_headers["Authorization"]}
        data = {"logo": (io.BytesIO(PNG_BYTES), "brand.png")}

        # Act
        response = client.post(
            "/api/organization/logo", headers=headers, data=data, content_type="multipart/form-data"
        )

        # Assert
        assert response.status_code == 413


class TestUserManagement:
    """Tests for /api/users."""

    def test_admin_creates_user_with_one_time_password(
        self, client, db_session, admin_headers, organization
    ):
        """Test that a user created without a password gets a unique temporary one."""
        # Act
        first = client.post(
            "/api/users",
            headers=admin_headers,
            json={"email": "hire@acme.test", "name": "New Hire", "role": "project_manager"},
        )
        second = client.post(
            "/api/users",
            headers=admin_headers,
            json={"email": "other.hire@acme.test", "name": "Other Hire"},
        )
        temporary_password = first.get_json()["temporary_password"]
        login = client.post(
            "/api/auth/login", json={"email": "hire@acme.test", "password": temporary_password}
        )

        # Assert
        assert first.status_code == 201
        user = first.get_json()["user"]
        assert user["organization_id"] == organization.id
        assert user["role"] == UserRole.PROJECT_MANAGER.value
        assert user["must_change_password"] is True
        assert temporary_password != second.get_json()["temporary_password"]
        assert login.status_code == 200
        assert login.get_json()["user"]["must_change_password"] is True

    def test_explicit_password_is_not_echoed(self, client, db_session, admin_headers):
        response = client.post(
            "/api/users",
            headers=admin_headers,
            json={"email": "set@acme.test", "name": "Set Pass", "password": "Chosen123"},
        )
        assert response.status_code == 201
        assert "temporary_password" not in response.get_json()
        assert response.get_json()["user"]["must_change_password"] is False

    def test_member_cannot_create_users(self, client, db_session, member_headers):
        response = client.post(
            "/api/users", headers=member_headers, json={"email": "x@acme.test", "name": "X"}
        )
        assert response.status_code == 403

    def test_list_users_filters(self, client, db_session, admin, manager, member, admin_headers):
        # Act
        by_role = client.get("/api/users?role=project_manager", headers=admin_headers)
        by_search = client.get(f"/api/users?search={member.name.split()[0]}", headers=admin_headers)

        # Assert
        assert [u["id"] for u in by_role.get_json()["users"]] == [manager.id]
        assert member.id in [u["id"] for u in by_search.get_json()["users"]]

    def test_get_user_includes_project_ids(self, client, db_session, project, member, admin_headers):
        response = client.get(f"/api/users/{member.id}", headers=admin_headers)
        assert response.status_code == 200
        assert response.get_json()["user"]["project_ids"] == [project.id]

    def test_user_of_other_tenant_is_not_found(self, client, db_session, outsider, admin_headers):
        response = client.get(f"/api/users/{outsider.id}", headers=admin_headers)
        assert response.status_code == 404

    def test_change_role(self, client, db_session, member, admin_headers):
        response = client.patch(
            f"/api/users/{member.id}/role", headers=admin_headers, json={"role": "pmo"}
        )
        assert response.status_code == 200
        assert response.get_json()["user"]["role"] == "pmo"

    def test_admin_cannot_demote_self(self, client, db_session, admin, admin_headers):
        response = client.patch(
            f"/api/users/{admin.id}/role", headers=admin_headers, json={"role": "member"}
        )
        assert response.status_code == 400

    def test_deactivate_user(self, client, db_session, member, admin_headers, member_headers):
        """Test that a deactivated user is locked out immediately."""
        # Act
        response = client.delete(f"/api/users/{member.id}", headers=admin_headers)
        after = client.get("/api/auth/profile", headers=member_headers)

        # Assert
        assert response.status_code == 200
        assert after.status_code == 401

    def test_admin_cannot_deactivate_self(self, client, db_session, admin, admin_headers):
        response = client.delete(f"/api/users/{admin.id}", headers=admin_headers)
        assert response.status_code == 400

    def test_update_user_duplicate_email_returns_409(
        self, client, db_session, member, manager, admin_headers
    ):
        response = client.put(
            f"/api/users/{member.id}", headers=admin_headers, json={"email": manager.email}
        )
        assert response.status_code == 409


class TestProjectAssignment:
    def test_assign_and_unassign(self, client, db_session, project, other_member, manager_headers):
        # Act
        assigned = client.post(
            f"/api/users/{other_member.id}/projects/{project.id}", headers=manager_headers
        )
        again = client.post(
            f"/api/users/{other_member.id}/projects/{project.id}", headers=manager_headers
        )
        removed = client.delete(
            f"/api/users/{other_member.id}/projects/{project.id}", headers=manager_headers
        )
        missing = client.delete(
            f"/api/users/{other_member.id}/projects/{project.id}", headers=manager_headers
        )

        # Assert
        assert assigned.status_code == 201
        assert again.status_code == 400
        assert removed.status_code == 200
        assert missing.status_code == 404


class TestPreferences:
    def test_preferences_are_merged(self, client, db_session, member_headers):
        # Arrange
        client.put("/api/users/me/preferences", headers=member_headers, json={"theme": "dark"})

        # Act
        client.put("/api/users/me/preferences", headers=member_headers, json={"density": "compact"})
        response = client.get("/api/users/me/preferences", headers=member_headers)

        # Assert
        assert response.get_json()["preferences"] == {"theme": "dark", "density": "compact"}

    def test_preferences_must_be_object(self, client, db_session, member_headers):
        response = client.put("/api/users/me/preferences", headers=member_headers, json=["x"])
        assert response.status_code == 400
