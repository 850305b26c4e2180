"""
Integration tests for activities and their approval workflow.

Key SDET Concepts Demonstrated:
- Driving a state machine end to end (draft -> submitted -> approved -> closed)
- Conflict responses (409) for illegal lifecycle actions
- Edit rights that change with the lifecycle state
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tracker_app.models import Activity
from tracker_app.workflow import IN_PROGRESS, TODO, ApprovalState

pytestmark = pytest.mark.integration


@pytest.fixture
def draft(activity_factory, project, member):
    """A draft activity created by the project member."""
    return activity_factory(project, member, assignees=[member], title="Write copy")


@pytest.fixture
def submitted(activity_factory, project, member):
    return activity_factory(
        project, member, assignees=[member], approval_state=ApprovalState.SUBMITTED.value
    )


class TestCreateActivity:
    def test_member_creates_draft(self, client, db_session, project, other_member, member_headers):
        # Arrange
        start = datetime.now(timezone.utc).replace(microsecond=0)
        payload = {
            "title": "Homepage copy",
            "project_id": project.id,
            "priority": "HIGH",
            "start_date": start.isoformat(),
            "end_date": (start + timedelta(days=2)).isoformat(),
            "assignee_ids": [other_member.id],
            "tags": ["copy"],
        }

        # Act
        response = client.post("/api/activities", headers=member_headers, json=payload)

        # Assert
        assert response.status_code == 201
        activity = response.get_json()["activity"]
        assert activity["approval_state"] == ApprovalState.DRAFT.value
        assert activity["status"] == TODO
        assert activity["priority"] == "high"
        assert activity["ticket_number"].startswith("ACT-")
        assert [a["id"] for a in activity["assignees"]] == [other_member.id]

    @pytest.mark.parametrize(
        "payload",
        [
            {"project_id": None},
            {"title": "   "},
            {"title": "Bad priority", "priority": "critical"},
            {"title": "Bad assignee", "assignee_ids": [99999]},
            {
                "title": "Backwards",
                "start_date": "2024-05-10",
                "end_date": "2024-05-01",
            },
        ],
    )
    def test_invalid_payloads_return_400(self, client, db_session, project, member_headers, payload):
        # Arrange
        body = {"project_id": project.id, **payload}

        # Act
        response = client.post("/api/activities", headers=member_headers, json=body)

        # Assert
        assert response.status_code == 400

    def test_project_from_other_tenant_returns_400(
        self, client, db_session, project_factory, outsider, member_headers
    ):
        foreign = project_factory(outsider)
        response = client.post(
            "/api/activities", headers=member_headers, json={"title": "X", "project_id": foreign.id}
        )
        assert response.status_code == 400

    def test_non_member_gets_403(self, client, db_session, project, other_member, headers_for):
        response = client.post(
            "/api/activities",
            headers=headers_for(other_member),
            json={"title": "Sneaky", "project_id": project.id},
        )
        assert response.status_code == 403


class TestVisibility:
    def test_members_see_own_and_assigned(
        self, client, db_session, draft, activity_factory, project, manager, member_headers
    ):
        # Arrange
        activity_factory(project, manager, title="Manager only")

        # Act
        response = client.get("/api/activities", headers=member_headers)

        # Assert
        assert [a["id"] for a in response.get_json()["activities"]] == [draft.id]

    def test_pmo_sees_everything(self, client, db_session, draft, activity_factory, project, manager, pmo_headers):
        activity_factory(project, manager)
        response = client.get("/api/activities", headers=pmo_headers)
        assert response.get_json()["count"] == 2

    def test_filter_by_approval_state(self, client, db_session, draft, submitted, manager_headers):
        response = client.get("/api/activities?approval_state=submitted", headers=manager_headers)
        assert [a["id"] for a in response.get_json()["activities"]] == [submitted.id]

    @pytest.mark.parametrize("spelling", ["working on it", "IN_PROGRESS", "in-progress"])
    def test_status_filter_accepts_aliases(
        self, client, db_session, activity_factory, project, manager, manager_headers, spelling
    ):
        """Test that the status filter matches whatever spelling of a status is sent."""
        # Arrange
        started = activity_factory(project, manager, status=IN_PROGRESS)
        activity_factory(project, manager, status=TODO)

        # Act
        response = client.get(f"/api/activities?status={spelling}", headers=manager_headers)

        # Assert
        assert response.status_code == 200
        assert [a["id"] for a in response.get_json()["activities"]] == [started.id]

    def test_blank_status_filter_is_ignored(self, client, db_session, draft, manager_headers):
        response = client.get("/api/activities?status=", headers=manager_headers)
        assert response.get_json()["count"] == 1

    def test_unrelated_member_gets_403(self, client, db_session, draft, other_member, headers_for):
        response = client.get(f"/api/activities/{draft.id}", headers=headers_for(other_member))
        assert response.status_code == 403

    def test_other_tenant_gets_404(self, client, db_session, draft, outsider_headers):
        response = client.get(f"/api/activities/{draft.id}", headers=outsider_headers)
        assert response.status_code == 404


class TestUpdateAndDelete:
    def test_creator_edits_draft(self, client, db_session, draft, member_headers):
        # Act
        response = client.patch(
            f"/api/activities/{draft.id}",
            headers=member_headers,
            json={"title": "Write final copy", "status": "working on it"},
        )

        # Assert
        assert response.status_code == 200
        activity = response.get_json()["activity"]
        assert activity["title"] == "Write final copy"
        assert activity["status"] == IN_PROGRESS

    def test_creator_cannot_edit_after_submit(self, client, db_session, submitted, member_headers):
        response = client.patch(
            f"/api/activities/{submitted.id}", headers=member_headers, json={"title": "Late edit"}
        )
        assert response.status_code == 403

    def test_manager_can_edit_submitted(self, client, db_session, submitted, manager_headers):
        response = client.patch(
            f"/api/activities/{submitted.id}", headers=manager_headers, json={"priority": "low"}
        )
        assert response.status_code == 200
        assert response.get_json()["activity"]["priority"] == "low"

    def test_end_before_start_returns_400(self, client, db_session, draft, member_headers):
        before = (draft.start_date - timedelta(days=1)).isoformat()
        response = client.patch(
            f"/api/activities/{draft.id}", headers=member_headers, json={"end_date": before}
        )
        assert response.status_code == 400

    def test_creator_deletes_draft(self, client, db_session, draft, member_headers):
        # Act
        response = client.delete(f"/api/activities/{draft.id}", headers=member_headers)

        # Assert
        assert response.status_code == 200
        assert db_session.session.get(Activity, draft.id) is None

    def test_creator_cannot_delete_submitted(self, client, db_session, submitted, member_headers):
        response = client.delete(f"/api/activities/{submitted.id}", headers=member_headers)
        assert response.status_code == 403

    def test_manager_cannot_delete_but_admin_can(
        self, client, db_session, submitted, manager_headers, admin_headers
    ):
        assert client.delete(f"/api/activities/{submitted.id}", headers=manager_headers).status_code == 403
        assert client.delete(f"/api/activities/{submitted.id}", headers=admin_headers).status_code == 200


class TestApprovalWorkflow:
    def test_full_lifecycle(self, client, db_session, draft, manager, member_headers, manager_headers):
        """Test draft -> submitted -> approved -> closed -> reopened -> submitted."""
        base = f"/api/activities/{draft.id}"

        # Act / Assert
        submitted = client.post(f"{base}/submit", headers=member_headers)
        assert submitted.get_json()["activity"]["approval_state"] == "submitted"

        approved = client.post(f"{base}/approve", headers=manager_headers).get_json()["activity"]
        assert approved["approval_state"] == "approved"
        assert approved["approved_by_id"] == manager.id
        assert approved["approved_at"] is not None

        closed = client.post(f"{base}/close", headers=manager_headers)
        assert closed.get_json()["activity"]["approval_state"] == "closed"

        reopened = client.post(f"{base}/reopen", headers=manager_headers).get_json()["activity"]
        assert reopened["approval_state"] == "reopened"
        assert reopened["approved_by_id"] is None

        again = client.post(f"{base}/submit", headers=member_headers)
        assert again.get_json()["activity"]["approval_state"] == "submitted"

    @pytest.mark.parametrize("action", ["approve", "close", "reopen"])
    def test_member_cannot_review(self, client, db_session, submitted, member_headers, action):
        response = client.post(f"/api/activities/{submitted.id}/{action}", headers=member_headers)
        assert response.status_code == 403

    @pytest.mark.parametrize("action", ["approve", "close", "reopen"])
    def test_illegal_action_on_draft_conflicts(self, client, db_session, draft, manager_headers, action):
        response = client.post(f"/api/activities/{draft.id}/{action}", headers=manager_headers)
        assert response.status_code == 409

    def test_submit_twice_conflicts(self, client, db_session, submitted, member_headers):
        response = client.post(f"/api/activities/{submitted.id}/submit", headers=member_headers)
        assert response.status_code == 409

    def test_reject_requires_comment(self, client, db_session, submitted, manager_headers):
        response = client.post(
            f"/api/activities/{submitted.id}/reject", headers=manager_headers, json={}
        )
        assert response.status_code == 400

    def test_reject_stores_comment(self, client, db_session, submitted, manager, manager_headers, member_headers):
        # Act
        response = client.post(
            f"/api/activities/{submitted.id}/reject",
            headers=manager_headers,
            json={"comment": "Needs screenshots"},
        )
        comments = client.get(f"/api/activities/{submitted.id}/comments", headers=member_headers)

        # Assert
        assert response.get_json()["activity"]["approval_state"] == "rejected"
        body = comments.get_json()
        assert body["count"] == 1
        assert body["comments"][0]["body"] == "Needs screenshots"
        assert body["comments"][0]["author_id"] == manager.id

    def test_reject_draft_conflicts_without_comment_row(
        self, client, db_session, draft, manager_headers
    ):
        response = client.post(
            f"/api/activities/{draft.id}/reject", headers=manager_headers, json={"comment": "No"}
        )
        assert response.status_code == 409
        assert db_session.session.get(Activity, draft.id).comments == []


class TestActivityComments:
    def test_assignee_comments(self, client, db_session, draft, member_headers):
        # Act
        created = client.post(
            f"/api/activities/{draft.id}/comments", headers=member_headers, json={"body": "Half done"}
        )
        detail = client.get(f"/api/activities/{draft.id}", headers=member_headers)

        # Assert
        assert created.status_code == 201
        assert [c["body"] for c in detail.get_json()["activity"]["comments"]] == ["Half done"]

    def test_comment_body_required(self, client, db_session, draft, member_headers):
        response = client.post(
            f"/api/activities/{draft.id}/comments", headers=member_headers, json={"body": ""}
        )
        assert response.status_code == 400
