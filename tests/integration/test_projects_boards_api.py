"""
Integration tests for projects, project members, boards and board moves.

Key SDET Concepts Demonstrated:
- Visibility rules that depend on role and membership
- Tenant isolation (foreign rows are 404, not 403)
- Position invariants after drag-and-drop moves
"""

from __future__ import annotations

import csv
import io

import pytest
from sqlalchemy import select

from tracker_app.models import (
    Activity,
    ApprovalRequest,
    AuditLog,
    Board,
    StatusConfiguration,
    Task,
    TaskHistory,
)
from tracker_app.routes.boards import BOARD_CSV_COLUMNS
from tracker_app.workflow import DONE, IN_PROGRESS, TODO, ChangeType, ReviewState

pytestmark = pytest.mark.integration


class TestProjects:
    """Tests for /api/projects."""

    def test_pm_creates_project_and_becomes_owner(self, client, db_session, manager, manager_headers):
        # Act
        response = client.post(
            "/api/projects", headers=manager_headers, json={"name": "Mobile App"}
        )

        # Assert
        assert response.status_code == 201
        project = response.get_json()["project"]
        assert project["owner_id"] == manager.id
        assert project["member_count"] == 1
        assert project["status"] == "active"

    def test_member_cannot_create_project(self, client, db_session, member_headers):
        response = client.post("/api/projects", headers=member_headers, json={"name": "Nope"})
        assert response.status_code == 403

    def test_members_only_see_their_projects(
        self, client, db_session, project, project_factory, manager, member_headers, pmo_headers
    ):
        """Test that members see their projects while PMO sees all of them."""
        # Arrange
        project_factory(manager, name="Secret Project")

        # Act
        as_member = client.get("/api/projects", headers=member_headers)
        as_pmo = client.get("/api/projects", headers=pmo_headers)

        # Assert
        assert [p["id"] for p in as_member.get_json()["projects"]] == [project.id]
        assert as_pmo.get_json()["count"] == 2

    def test_non_member_gets_403(self, client, db_session, project, other_member_headers):
        response = client.get(f"/api/projects/{project.id}", headers=other_member_headers)
        assert response.status_code == 403

    def test_foreign_tenant_gets_404(self, client, db_session, project, outsider_headers):
        response = client.get(f"/api/projects/{project.id}", headers=outsider_headers)
        assert response.status_code == 404

    def test_get_project_lists_members(self, client, db_session, project, member, member_headers):
        response = client.get(f"/api/projects/{project.id}", headers=member_headers)
        members = response.get_json()["project"]["members"]
        assert {m["id"] for m in members} >= {member.id}
        assert {m["project_role"] for m in members} == {"owner", "member"}

    def test_update_project_by_owner(self, client, db_session, project, manager_headers):
        response = client.put(
            f"/api/projects/{project.id}",
            headers=manager_headers,
            json={"status": "completed", "description": "Shipped"},
        )
        assert response.status_code == 200
        assert response.get_json()["project"]["status"] == "completed"

    def test_update_project_rejects_unknown_status(self, client, db_session, project, manager_headers):
        response = client.put(
            f"/api/projects/{project.id}", headers=manager_headers, json={"status": "paused"}
        )
        assert response.status_code == 400

    def test_delete_project_with_tasks_returns_409(
        self, client, db_session, project, member_task, manager_headers
    ):
        response = client.delete(f"/api/projects/{project.id}", headers=manager_headers)
        assert response.status_code == 409

    def test_delete_empty_project_removes_boards(
        self, client, db_session, project, board, manager_headers
    ):
        # Act
        response = client.delete(f"/api/projects/{project.id}", headers=manager_headers)

        # Assert
        assert response.status_code == 200
        assert db_session.session.scalar(select(Board).where(Board.project_id == project.id)) is None

    def test_member_cannot_delete_project(self, client, db_session, project, member_headers):
        response = client.delete(f"/api/projects/{project.id}", headers=member_headers)
        assert response.status_code == 403


class TestProjectMembers:
    def test_add_and_remove_member(self, client, db_session, project, other_member, manager_headers):
        # Act
        added = client.post(
            f"/api/projects/{project.id}/members",
            headers=manager_headers,
            json={"user_id": other_member.id},
        )
        duplicate = client.post(
            f"/api/projects/{project.id}/members",
            headers=manager_headers,
            json={"user_id": other_member.id},
        )
        removed = client.delete(
            f"/api/projects/{project.id}/members/{other_member.id}", headers=manager_headers
        )

        # Assert
        assert added.status_code == 201
        assert other_member.id in {m["id"] for m in added.get_json()["members"]}
        assert duplicate.status_code == 400
        assert removed.status_code == 200

    def test_cannot_add_user_of_other_tenant(self, client, db_session, project, outsider, manager_headers):
        response = client.post(
            f"/api/projects/{project.id}/members",
            headers=manager_headers,
            json={"user_id": outsider.id},
        )
        assert response.status_code == 400


class TestProjectTasks:
    """Tests for task creation through a project."""

    def test_pm_creates_assigned_task(
        self, client, db_session, project, other_member, manager_headers, valid_task_data
    ):
        """Test that the assignee joins the project and the task starts in To Do."""
        # Arrange
        payload = {**valid_task_data, "assignee_id": other_member.id}

        # Act
        response = client.post(
            f"/api/projects/{project.id}/tasks", headers=manager_headers, json=payload
        )

        # Assert
        assert response.status_code == 201
        task = response.get_json()["task"]
        assert task["status"] == TODO
        assert task["priority"] == "High"
        assert task["section"] == "To-Do"
        assert task["board_id"] is not None
        assert project.has_member(other_member.id)

    def test_pm_task_requires_assignee(self, client, db_session, project, manager_headers):
        response = client.post(
            f"/api/projects/{project.id}/tasks", headers=manager_headers, json={"title": "Orphan"}
        )
        assert response.status_code == 400

    def test_member_self_task_links_activity(self, client, db_session, project, member, member_headers):
        """Test that a self-created task starts In Progress with a draft activity."""
        # Act
        response = client.post(
            f"/api/projects/{project.id}/tasks/self",
            headers=member_headers,
            json={"title": "Fix footer", "priority": "urgent", "assignee_id": 999},
        )

        # Assert
        assert response.status_code == 201
        data = response.get_json()
        assert data["task"]["status"] == IN_PROGRESS
        assert data["task"]["assignee_id"] == member.id
        assert data["task"]["activity_id"] == data["activity"]["id"]
        assert data["activity"]["approval_state"] == "draft"
        assert data["activity"]["priority"] == "high"
        assert data["activity"]["task_id"] == data["task"]["id"]

    def test_non_member_cannot_self_create(self, client, db_session, project, other_member_headers):
        response = client.post(
            f"/api/projects/{project.id}/tasks/self",
            headers=other_member_headers,
            json={"title": "Sneaky"},
        )
        assert response.status_code == 403

    def test_list_project_tasks_with_filters_and_groups(
        self, client, db_session, project, board, task_factory, manager, member, manager_headers
    ):
        # Arrange
        task_factory(board, manager, assignee=member, priority="High", tags=["web"])
        task_factory(board, manager, assignee=member, status=DONE, tags=["web"])
        task_factory(board, manager, priority="Low")

        # Act
        by_tag = client.get(f"/api/projects/{project.id}/tasks?tag=web", headers=manager_headers)
        grouped = client.get(
            f"/api/projects/{project.id}/tasks?group_by=status", headers=manager_headers
        )
        paged = client.get(
            f"/api/projects/{project.id}/tasks?per_page=2&page=2", headers=manager_headers
        )

        # Assert
        assert by_tag.get_json()["pagination"]["total"] == 2
        groups = grouped.get_json()["groups"]
        assert len(groups[TODO]) == 2
        assert len(groups[DONE]) == 1
        assert paged.get_json()["count"] == 1
        assert paged.get_json()["pagination"]["pages"] == 2

    def test_invalid_group_by_returns_400(self, client, db_session, project, manager_headers):
        response = client.get(
            f"/api/projects/{project.id}/tasks?group_by=color", headers=manager_headers
        )
        assert response.status_code == 400


class TestBoards:
    """Tests for /api/boards."""

    def test_create_and_list_boards(self, client, db_session, project, member_headers):
        # Act
        created = client.post(
            "/api/boards", headers=member_headers, json={"name": "Sprint 1", "project_id": project.id}
        )
        listing = client.get(f"/api/boards?project_id={project.id}", headers=member_headers)

        # Assert
        assert created.status_code == 201
        assert created.get_json()["board"]["id"] in [b["id"] for b in listing.get_json()["boards"]]

    def test_archived_board_is_not_found(self, client, db_session, board, manager_headers):
        # Arrange
        client.delete(f"/api/boards/{board.id}", headers=manager_headers)

        # Act
        response = client.get(f"/api/boards/{board.id}", headers=manager_headers)

        # Assert
        assert response.status_code == 404
        assert db_session.session.get(Board, board.id).is_active is False

    def test_non_member_cannot_open_project_board(self, client, db_session, board, other_member_headers):
        response = client.get(f"/api/boards/{board.id}", headers=other_member_headers)
        assert response.status_code == 403

    def test_create_board_task_appends_to_section(
        self, client, db_session, board, member_task, member_headers
    ):
        # Act
        response = client.post(
            f"/api/boards/{board.id}/tasks",
            headers=member_headers,
            json={"title": "Second", "status": "todo"},
        )

        # Assert
        assert response.status_code == 201
        task = response.get_json()["task"]
        assert task["section"] == "To-Do"
        assert task["position"] == member_task.position + 1

    def test_board_task_rejects_unknown_status(self, client, db_session, board, member_headers):
        response = client.post(
            f"/api/boards/{board.id}/tasks",
            headers=member_headers,
            json={"title": "Odd", "status": "Waiting for Legal"},
        )
        assert response.status_code == 400

    def test_board_tasks_default_to_position_order(
        self, client, db_session, board, task_factory, manager, member_headers
    ):
        # Arrange
        second = task_factory(board, manager, position=1, title="Second")
        first = task_factory(board, manager, position=0, title="First")

        # Act
        response = client.get(f"/api/boards/{board.id}/tasks", headers=member_headers)

        # Assert
        assert [t["id"] for t in response.get_json()["tasks"]] == [first.id, second.id]

    def test_my_boards_lists_only_own_active_boards(
        self, client, db_session, board, board_factory, manager, member, manager_headers
    ):
        # Arrange
        archived = board_factory(manager, name="Old")
        archived.is_active = False
        board_factory(member, name="Not Mine")
        db_session.session.commit()

        # Act
        response = client.get("/api/boards/me", headers=manager_headers)

        # Assert
        assert response.status_code == 200
        assert [b["id"] for b in response.get_json()["boards"]] == [board.id]

    def test_board_csv_export_honours_filters(
        self, client, db_session, board, task_factory, manager, member, manager_headers
    ):
        """Test that the export uses the listing filters and is audited."""
        # Arrange
        task_factory(board, manager, assignee=member, title="Open", tags=["web", "seo"])
        task_factory(board, manager, status=DONE, title="Finished")

        # Act
        response = client.get(f"/api/boards/{board.id}/tasks.csv?status=todo", headers=manager_headers)

        # Assert
        assert response.status_code == 200
        assert response.mimetype == "text/csv"
        assert f"board-{board.id}-tasks.csv" in response.headers["Content-Disposition"]
        rows = list(csv.DictReader(io.StringIO(response.get_data(as_text=True))))
        assert tuple(rows[0].keys()) == BOARD_CSV_COLUMNS
        assert [row["title"] for row in rows] == ["Open"]
        assert rows[0]["tags"] == "web; seo"
        assert rows[0]["assignee_name"] == member.name
        entry = db_session.session.scalar(select(AuditLog).where(AuditLog.action == "export"))
        assert entry.entity_id == board.id

    def test_member_cannot_export_board(self, client, db_session, board, member_headers):
        response = client.get(f"/api/boards/{board.id}/tasks.csv", headers=member_headers)
        assert response.status_code == 403


class TestBoardMove:
    """Tests for POST /api/boards/<id>/move."""

    @pytest.fixture
    def lane(self, task_factory, board, manager, member):
        return [task_factory(board, manager, assignee=member, title=f"Task {i}") for i in range(3)]

    def test_move_within_section_renumbers(self, client, db_session, board, lane, manager_headers):
        # Act
        response = client.post(
            f"/api/boards/{board.id}/move",
            headers=manager_headers,
            json={"task_id": lane[0].id, "section": "To-Do", "index": 2},
        )

        # Assert
        assert response.status_code == 200
        positions = {
            task.id: task.position
            for task in db_session.session.scalars(select(Task).where(Task.board_id == board.id))
        }
        assert positions == {lane[1].id: 0, lane[2].id: 1, lane[0].id: 2}
        assert response.get_json()["task"]["status"] == TODO

    def test_move_to_completed_group_marks_done(self, client, db_session, board, lane, manager_headers):
        """Test that crossing into the completed lane changes the status."""
        # Act
        response = client.post(
            f"/api/boards/{board.id}/move",
            headers=manager_headers,
            json={"task_id": lane[1].id, "group": "completed", "index": 0},
        )

        # Assert
        task = response.get_json()["task"]
        assert task["section"] == "Completed"
        assert task["status"] == DONE
        assert task["position"] == 0
        history = db_session.session.scalars(
            select(TaskHistory).where(TaskHistory.task_id == lane[1].id)
        ).all()
        assert history[-1].change_type == ChangeType.STATUS_CHANGED.value
        remaining = sorted(
            (t.position, t.id)
            for t in db_session.session.scalars(
                select(Task).where(Task.board_id == board.id, Task.section == "To-Do")
            )
        )
        assert remaining == [(0, lane[0].id), (1, lane[2].id)]

    def test_move_back_to_todo_group_sets_in_progress(
        self, client, db_session, board, task_factory, manager, manager_headers
    ):
        # Arrange
        done = task_factory(board, manager, status=DONE)

        # Act
        response = client.post(
            f"/api/boards/{board.id}/move",
            headers=manager_headers,
            json={"task_id": done.id, "group": "todo"},
        )

        # Assert
        assert response.get_json()["task"]["status"] == IN_PROGRESS
        assert response.get_json()["task"]["section"] == "To-Do"

    def test_member_cannot_skip_workflow_by_moving(
        self, client, db_session, board, member_task, member_headers
    ):
        """Test that dragging a To Do task into Completed follows the status workflow."""
        # Act
        response = client.post(
            f"/api/boards/{board.id}/move",
            headers=member_headers,
            json={"task_id": member_task.id, "group": "completed"},
        )

        # Assert
        assert response.status_code == 400
        assert "Invalid status transition" in response.get_json()["error"]
        db_session.session.refresh(member_task)
        assert member_task.status == TODO
        assert member_task.section == "To-Do"

    def test_lane_name_is_treated_as_its_group(
        self, client, db_session, board, member_task, member_headers
    ):
        """Test that naming the Completed lane cannot bypass the status checks either."""
        response = client.post(
            f"/api/boards/{board.id}/move",
            headers=member_headers,
            json={"task_id": member_task.id, "section": "completed"},
        )
        assert response.status_code == 400

    def test_move_respects_inactive_catalog_status(
        self, client, db_session, board, lane, organization, manager_headers
    ):
        # Arrange
        done_status = db_session.session.scalar(
            select(StatusConfiguration).where(
                StatusConfiguration.organization_id == organization.id,
                StatusConfiguration.type == "task",
                StatusConfiguration.name == DONE,
            )
        )
        done_status.is_active = False
        db_session.session.commit()

        # Act
        response = client.post(
            f"/api/boards/{board.id}/move",
            headers=manager_headers,
            json={"task_id": lane[0].id, "group": "completed"},
        )

        # Assert
        assert response.status_code == 400
        assert response.get_json()["error"].startswith("Invalid status")

    def test_member_move_syncs_activity_and_opens_review(
        self, client, db_session, board, project, task_factory, activity_factory,
        manager, member, member_headers
    ):
        """Test that finishing work by drag-and-drop has the same effects as a status change."""
        # Arrange
        task = task_factory(board, manager, assignee=member, status=IN_PROGRESS)
        activity = activity_factory(project, member, assignees=[member], status=IN_PROGRESS)
        task.activity_id = activity.id
        db_session.session.commit()

        # Act
        response = client.post(
            f"/api/boards/{board.id}/move",
            headers=member_headers,
            json={"task_id": task.id, "group": "completed"},
        )

        # Assert
        assert response.status_code == 200
        assert response.get_json()["task"]["status"] == DONE
        db_session.session.refresh(activity)
        assert activity.status == DONE
        review = db_session.session.scalar(
            select(ApprovalRequest).where(
                ApprovalRequest.entity_type == "task", ApprovalRequest.entity_id == task.id
            )
        )
        assert review.state == ReviewState.PENDING.value
        assert review.approver_id == manager.id

    def test_move_requires_target(self, client, db_session, board, lane, manager_headers):
        response = client.post(
            f"/api/boards/{board.id}/move", headers=manager_headers, json={"task_id": lane[0].id}
        )
        assert response.status_code == 400

    def test_move_unknown_group_returns_400(self, client, db_session, board, lane, manager_headers):
        response = client.post(
            f"/api/boards/{board.id}/move",
            headers=manager_headers,
            json={"task_id": lane[0].id, "group": "backlog"},
        )
        assert response.status_code == 400

    def test_move_task_from_other_board_is_404(
        self, client, db_session, board, board_factory, task_factory, manager, manager_headers
    ):
        # Arrange
        other_board = board_factory(manager)
        stray = task_factory(other_board, manager)

        # Act
        response = client.post(
            f"/api/boards/{board.id}/move",
            headers=manager_headers,
            json={"task_id": stray.id, "section": "To-Do"},
        )

        # Assert
        assert response.status_code == 404


def test_self_task_activity_is_listed_for_member(client, db_session, project, member_headers):
    """Test that the linked activity shows up in the member's activity list."""
    # Arrange
    created = client.post(
        f"/api/projects/{project.id}/tasks/self", headers=member_headers, json={"title": "Audit"}
    )
    activity_id = created.get_json()["activity"]["id"]

    # Act
    response = client.get("/api/activities", headers=member_headers)

    # Assert
    assert activity_id in [a["id"] for a in response.get_json()["activities"]]
    assert db_session.session.get(Activity, activity_id).task_id == created.get_json()["task"]["id"]
